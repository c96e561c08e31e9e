"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import pytest

from sitectl.gate import ValidationGate
from sitectl.locking import LockManager
from sitectl.orchestrator import SiteOrchestrator
from sitectl.providers.hosts import HostsProvider
from sitectl.providers.nginx import NginxProvider
from sitectl.providers.service import CheckResult, ServiceError
from sitectl.state import RenameJournal, SiteRegistry
from sitectl.templates import TemplateEngine


@dataclass
class FakeController:
    """Recording stand-in for :class:`sitectl.providers.service.ServiceController`."""

    check_ok: bool = True
    diagnostics: str = "nginx: configuration file /etc/nginx/nginx.conf test is successful\n"
    reload_error: str | None = None
    active: bool = True
    ports: str = "LISTEN 0 511 0.0.0.0:80 0.0.0.0:*\n"
    calls: list[str] = field(default_factory=list)

    def check(self) -> CheckResult:
        """Record the check and return the configured outcome."""
        self.calls.append("check")
        return CheckResult(ok=self.check_ok, diagnostics=self.diagnostics)

    def reload(self) -> str:
        """Record the reload, failing when configured to."""
        self.calls.append("reload")
        if self.reload_error:
            raise ServiceError(self.reload_error)
        return "reloaded"

    def query_status(self) -> bool:
        """Return the configured service state."""
        self.calls.append("status")
        return self.active

    def list_listening_ports(self) -> str:
        """Return canned ``ss`` output."""
        self.calls.append("ports")
        return self.ports


@pytest.fixture
def controller() -> FakeController:
    """Return a controller whose checks pass."""
    return FakeController()


@pytest.fixture
def nginx(tmp_path: Path) -> NginxProvider:
    """Return an nginx provider bound to temporary directories."""
    return NginxProvider(
        templates=TemplateEngine.with_overrides(None),
        sites_available=tmp_path / "sites-available",
        sites_enabled=tmp_path / "sites-enabled",
        nginx_bin="nginx",
    )


@pytest.fixture
def hosts_file(tmp_path: Path) -> Path:
    """Return a hosts file seeded with the usual loopback entries."""
    path = tmp_path / "hosts"
    path.write_text("127.0.0.1\tlocalhost\n::1\tlocalhost ip6-localhost\n", encoding="utf-8")
    return path


@pytest.fixture
def orchestrator(
    tmp_path: Path,
    nginx: NginxProvider,
    hosts_file: Path,
    controller: FakeController,
) -> SiteOrchestrator:
    """Return a fully wired orchestrator over temporary state."""
    registry = SiteRegistry(tmp_path / "base" / "nginx_data" / "config_index")
    registry.ensure_root()
    clock_values = iter(range(1_700_000_000_000, 1_700_000_100_000))
    return SiteOrchestrator(
        registry=registry,
        nginx=nginx,
        hosts=HostsProvider(path=hosts_file),
        gate=ValidationGate(controller),
        journal=RenameJournal(registry.root / "rename.journal"),
        locks=LockManager(tmp_path / "run", default_timeout=1.0),
        clock=lambda: next(clock_values),
    )
