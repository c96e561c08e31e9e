"""Tests for the nginx-backed service controller."""
from __future__ import annotations

import subprocess

import pytest

from sitectl.providers.nginx import NginxError, NginxProvider
from sitectl.providers.service import NginxServiceController, ServiceError
from sitectl.providers.systemd import SystemdError, SystemdProvider


def _controller(nginx: NginxProvider) -> NginxServiceController:
    return NginxServiceController(nginx=nginx, systemd=SystemdProvider(), ss_bin="ss")


def test_check_combines_output_verbatim(
    monkeypatch: pytest.MonkeyPatch,
    nginx: NginxProvider,
) -> None:
    """Both output streams of ``nginx -t`` are kept, unmodified."""

    def fake_test(self: NginxProvider) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(
            ["nginx", "-t"],
            returncode=1,
            stdout="",
            stderr="nginx: [emerg] invalid port in \"x\"\nnginx: configuration file test failed\n",
        )

    monkeypatch.setattr(NginxProvider, "test_config", fake_test)

    result = _controller(nginx).check()

    assert result.ok is False
    assert result.diagnostics == (
        "nginx: [emerg] invalid port in \"x\"\nnginx: configuration file test failed\n"
    )


def test_check_reports_missing_binary(
    monkeypatch: pytest.MonkeyPatch,
    nginx: NginxProvider,
) -> None:
    """A missing nginx binary is a failed check rather than a crash."""

    def fake_test(self: NginxProvider) -> subprocess.CompletedProcess[str]:
        raise NginxError("nginx not found")

    monkeypatch.setattr(NginxProvider, "test_config", fake_test)

    result = _controller(nginx).check()

    assert result.ok is False
    assert "not found" in result.diagnostics


def test_reload_wraps_systemd_errors(
    monkeypatch: pytest.MonkeyPatch,
    nginx: NginxProvider,
) -> None:
    """Systemd failures surface as ServiceError."""

    def fake_reload(self: SystemdProvider) -> None:
        raise SystemdError("systemctl reload failed (exit 1): boom")

    monkeypatch.setattr(SystemdProvider, "reload", fake_reload)

    with pytest.raises(ServiceError):
        _controller(nginx).reload()


def test_reload_describes_command(
    monkeypatch: pytest.MonkeyPatch,
    nginx: NginxProvider,
) -> None:
    """Successful reloads return the command that ran."""

    def fake_reload(self: SystemdProvider) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(["systemctl", "reload", "nginx"], returncode=0)

    monkeypatch.setattr(SystemdProvider, "reload", fake_reload)

    assert _controller(nginx).reload() == "systemctl reload nginx rc=0"


def test_list_listening_ports(
    monkeypatch: pytest.MonkeyPatch,
    nginx: NginxProvider,
) -> None:
    """``ss -tlnp`` output is returned as-is and failures raise."""
    outputs = [
        subprocess.CompletedProcess(["ss", "-tlnp"], 0, stdout="LISTEN 0 511 *:80\n", stderr=""),
        subprocess.CompletedProcess(["ss", "-tlnp"], 1, stdout="", stderr="permission denied"),
    ]

    def fake_run(command: list[str], **_kwargs: object) -> subprocess.CompletedProcess[str]:
        assert command == ["ss", "-tlnp"]
        return outputs.pop(0)

    monkeypatch.setattr("sitectl.providers.service.subprocess.run", fake_run)
    controller = _controller(nginx)

    assert controller.list_listening_ports() == "LISTEN 0 511 *:80\n"
    with pytest.raises(ServiceError):
        controller.list_listening_ports()


def test_query_status_uses_is_active(
    monkeypatch: pytest.MonkeyPatch,
    nginx: NginxProvider,
) -> None:
    """Service status reflects ``systemctl is-active``."""
    monkeypatch.setattr(SystemdProvider, "is_active", lambda self: False)

    assert _controller(nginx).query_status() is False
