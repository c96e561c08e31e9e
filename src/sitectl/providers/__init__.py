"""Provider interfaces for sitectl."""
from __future__ import annotations

from .hosts import HostsError, HostsProvider, HostsResult
from .nginx import LinkResult, NginxError, NginxProvider
from .service import CheckResult, NginxServiceController, ServiceController, ServiceError
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "CheckResult",
    "HostsError",
    "HostsProvider",
    "HostsResult",
    "LinkResult",
    "NginxError",
    "NginxProvider",
    "NginxServiceController",
    "ServiceController",
    "ServiceError",
    "SystemdError",
    "SystemdProvider",
]
