"""Service controller interface used by the validation gate and diagnostics.

The rest of sitectl only talks to the web server through
:class:`ServiceController`; :class:`NginxServiceController` is the production
implementation built from the nginx and systemd providers. Tests substitute a
recording double.
"""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from .nginx import NginxError, NginxProvider
from .systemd import SystemdError, SystemdProvider


class ServiceError(RuntimeError):
    """Raised when the service controller cannot complete a request."""


@dataclass(slots=True)
class CheckResult:
    """Outcome of a configuration syntax check."""

    ok: bool
    diagnostics: str = ""


@runtime_checkable
class ServiceController(Protocol):
    """Narrow contract the core needs from the web server."""

    def check(self) -> CheckResult:
        """Validate the live configuration tree."""
        ...

    def reload(self) -> str:
        """Reload the service and return a short status description."""
        ...

    def query_status(self) -> bool:
        """Return ``True`` when the service is running."""
        ...

    def list_listening_ports(self) -> str:
        """Return a text listing of listening sockets."""
        ...


@dataclass(slots=True)
class NginxServiceController:
    """Controller backed by ``nginx -t``, ``systemctl`` and ``ss``."""

    nginx: NginxProvider
    systemd: SystemdProvider
    ss_bin: str = "ss"

    def check(self) -> CheckResult:
        """Run ``nginx -t`` and return its combined output verbatim."""
        try:
            result = self.nginx.test_config()
        except NginxError as exc:
            return CheckResult(ok=False, diagnostics=str(exc))
        output = (result.stdout or "") + (result.stderr or "")
        return CheckResult(ok=result.returncode == 0, diagnostics=output)

    def reload(self) -> str:
        """Reload nginx via systemd."""
        try:
            result = self.systemd.reload()
        except SystemdError as exc:
            raise ServiceError(str(exc)) from exc
        return f"{' '.join(str(arg) for arg in result.args)} rc={result.returncode}"

    def query_status(self) -> bool:
        """Return whether the nginx unit is active."""
        return self.systemd.is_active()

    def list_listening_ports(self) -> str:
        """Return ``ss -tlnp`` output."""
        try:
            result = subprocess.run(  # noqa: S603, S607
                [self.ss_bin, "-tlnp"],
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ServiceError(f"{self.ss_bin} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise ServiceError(f"{self.ss_bin} -tlnp failed (exit {result.returncode}): {message}")
        return result.stdout


__all__ = ["CheckResult", "NginxServiceController", "ServiceController", "ServiceError"]
