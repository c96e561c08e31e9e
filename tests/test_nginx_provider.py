"""Tests for the nginx provider."""
from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

import pytest

from sitectl.providers.nginx import NginxError, NginxProvider


class DummyResult:
    """Stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


STAMP = datetime(2024, 1, 1, tzinfo=UTC)


def test_render_is_deterministic_apart_from_timestamp(nginx: NginxProvider) -> None:
    """Identical inputs render identically; only the Generated line uses the clock."""
    first = nginx.render("svc.test", "8080", generated_at=STAMP)
    second = nginx.render("svc.test", "8080", generated_at=STAMP)
    later = nginx.render("svc.test", "8080", generated_at=datetime(2025, 6, 1, tzinfo=UTC))

    assert first == second
    differing = [
        (a, b) for a, b in zip(first.splitlines(), later.splitlines(), strict=True) if a != b
    ]
    assert len(differing) == 1
    assert differing[0][0].startswith("# Generated:")


def test_render_includes_proxy_directives(nginx: NginxProvider) -> None:
    """The rendered block proxies to the backend with the expected headers."""
    output = nginx.render("svc.test www.svc.test", "3000", backend_host="10.0.0.5")

    assert "listen 80;" in output
    assert "server_name svc.test www.svc.test;" in output
    assert "proxy_pass http://10.0.0.5:3000;" in output
    assert "proxy_set_header Upgrade $http_upgrade;" in output
    assert "proxy_set_header X-Forwarded-Proto $scheme;" in output
    assert "proxy_read_timeout 60s;" in output
    assert "location /nginx-health {" in output
    assert "# Domain: svc.test www.svc.test | Port: 3000 | Host: 10.0.0.5" in output


def test_site_path_uses_primary_domain(nginx: NginxProvider, tmp_path: Path) -> None:
    """Files are named after the first server name."""
    assert nginx.site_path("svc.test www.svc.test") == tmp_path / "sites-available" / "svc.test"
    with pytest.raises(NginxError):
        nginx.site_name("   ")


def test_write_site_creates_file(nginx: NginxProvider) -> None:
    """Writing renders the site definition to disk."""
    path = nginx.site_path("svc.test")

    nginx.write_site(path, "svc.test", "8080")

    assert "proxy_pass http://127.0.0.1:8080;" in path.read_text(encoding="utf-8")
    assert (path.stat().st_mode & 0o777) == 0o644


def test_enable_is_idempotent(nginx: NginxProvider) -> None:
    """Enabling twice leaves a single symlink and reports no change the second time."""
    path = nginx.site_path("svc.test")
    nginx.write_site(path, "svc.test", "8080")

    first = nginx.enable(path, path.name)
    second = nginx.enable(path, path.name)

    assert first.changed is True
    assert second.changed is False
    assert first.link.is_symlink()
    assert first.link.resolve() == path.resolve()
    assert nginx.is_enabled(path.name, path)


def test_enable_replaces_broken_symlink(nginx: NginxProvider) -> None:
    """A dangling link is replaced by one pointing at the site file."""
    path = nginx.site_path("svc.test")
    nginx.write_site(path, "svc.test", "8080")
    link = nginx.enabled_path(path.name)
    link.parent.mkdir(parents=True, exist_ok=True)
    link.symlink_to(path.parent / "gone")

    result = nginx.enable(path, path.name)

    assert result.changed is True
    assert link.resolve() == path.resolve()


def test_enable_refuses_to_replace_regular_file(nginx: NginxProvider) -> None:
    """A regular file at the link location is never overwritten."""
    path = nginx.site_path("svc.test")
    nginx.write_site(path, "svc.test", "8080")
    link = nginx.enabled_path(path.name)
    link.parent.mkdir(parents=True, exist_ok=True)
    link.write_text("hand written", encoding="utf-8")

    with pytest.raises(NginxError):
        nginx.enable(path, path.name)
    assert link.read_text(encoding="utf-8") == "hand written"


def test_enable_falls_back_to_ln(
    monkeypatch: pytest.MonkeyPatch,
    nginx: NginxProvider,
) -> None:
    """When the direct symlink fails, ``ln -sf`` is used and a warning returned."""
    path = nginx.site_path("svc.test")
    nginx.write_site(path, "svc.test", "8080")
    calls: list[tuple[str, ...]] = []

    def refuse(self: Path, target: Path) -> None:
        raise PermissionError("denied")

    def fake_run(
        self: NginxProvider,
        args: Sequence[str],
        *,
        sudo: bool = False,
        check: bool = True,
    ) -> DummyResult:
        calls.append(tuple(args))
        return DummyResult()

    monkeypatch.setattr(Path, "symlink_to", refuse)
    monkeypatch.setattr(NginxProvider, "_run_command", fake_run)

    result = nginx.enable(path, path.name, allow_fallback=True)

    assert result.method == "ln"
    assert result.warning is not None
    assert calls == [("ln", "-sf", str(path), str(nginx.enabled_path(path.name)))]


def test_enable_without_fallback_raises(
    monkeypatch: pytest.MonkeyPatch,
    nginx: NginxProvider,
) -> None:
    """Symlink failures propagate as NginxError when no fallback is allowed."""
    path = nginx.site_path("svc.test")

    def refuse(self: Path, target: Path) -> None:
        raise PermissionError("denied")

    monkeypatch.setattr(Path, "symlink_to", refuse)

    with pytest.raises(NginxError):
        nginx.enable(path, path.name)


def test_disable_tolerates_missing_link(nginx: NginxProvider) -> None:
    """Disabling removes the link once and is a no-op afterwards."""
    path = nginx.site_path("svc.test")
    nginx.write_site(path, "svc.test", "8080")
    nginx.enable(path, path.name)

    assert nginx.disable(path.name) is True
    assert nginx.disable(path.name) is False
    assert path.exists()


def test_move_and_remove_site_are_idempotent(nginx: NginxProvider) -> None:
    """Moving a missing source and removing a missing file are no-ops."""
    old = nginx.site_path("old.test")
    new = nginx.site_path("new.test")
    nginx.write_site(old, "old.test", "8080")

    assert nginx.move_site(old, new) is True
    assert nginx.move_site(old, new) is False
    assert new.exists() and not old.exists()
    assert nginx.remove_site(new) is True
    assert nginx.remove_site(new) is False


def test_test_config_returns_failures_verbatim(
    monkeypatch: pytest.MonkeyPatch,
    nginx: NginxProvider,
) -> None:
    """A failing ``nginx -t`` is returned rather than raised, via sudo when enabled."""
    calls: list[list[str]] = []

    def fake_run(command: list[str], **_kwargs: object) -> DummyResult:
        calls.append(command)
        return DummyResult(returncode=1, stderr="nginx: [emerg] unexpected end of file\n")

    monkeypatch.setattr("sitectl.providers.nginx.subprocess.run", fake_run)
    nginx.use_sudo = True

    result = nginx.test_config()

    assert result.returncode == 1
    assert result.stderr == "nginx: [emerg] unexpected end of file\n"
    assert calls == [["sudo", "nginx", "-t"]]


def test_run_command_missing_binary(
    monkeypatch: pytest.MonkeyPatch,
    nginx: NginxProvider,
) -> None:
    """A missing executable surfaces as NginxError."""

    def fake_run(command: list[str], **_kwargs: object) -> DummyResult:
        raise FileNotFoundError(command[0])

    monkeypatch.setattr("sitectl.providers.nginx.subprocess.run", fake_run)

    with pytest.raises(NginxError):
        nginx.test_config()
