"""Nginx provider for managing proxy site definitions."""
from __future__ import annotations

import os
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from ..templates import TemplateEngine, TemplateError, write_if_changed

PROXY_TEMPLATE = "nginx/proxy_site.conf.j2"
HEALTH_PATH = "/nginx-health"
PROXY_TIMEOUT = "60s"


class NginxError(RuntimeError):
    """Raised when nginx operations fail."""


@dataclass(slots=True)
class LinkResult:
    """Outcome of enabling a site."""

    link: Path
    changed: bool
    method: str = "symlink"
    warning: str | None = None


@dataclass(slots=True)
class NginxProvider:
    """Render site files and manage the sites-enabled symlinks."""

    templates: TemplateEngine
    sites_available: Path = Path("/etc/nginx/sites-available")
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"
    ln_bin: str = "ln"
    use_sudo: bool = False
    sudo_bin: str = "sudo"

    def site_name(self, domain: str) -> str:
        """Return the file name used for *domain* (its first server name)."""
        names = domain.split()
        if not names:
            raise NginxError("Domain must be a non-empty string.")
        return names[0].replace("/", "-")

    def site_path(self, domain: str) -> Path:
        """Return the canonical sites-available path for *domain*."""
        return self.sites_available / self.site_name(domain)

    def enabled_path(self, site_name: str) -> Path:
        """Return the path of the symlink in sites-enabled for *site_name*."""
        return self.sites_enabled / site_name

    # ------------------------------------------------------------------
    def render(
        self,
        domain: str,
        port: str | int,
        *,
        backend_host: str = "127.0.0.1",
        generated_at: datetime | None = None,
    ) -> str:
        """Return the site definition for *domain* proxying to *port*.

        Only the ``# Generated:`` comment depends on the clock; everything
        else is a pure function of the arguments.
        """
        stamp = (generated_at or datetime.now(UTC)).isoformat(timespec="seconds")
        context = {
            "server_names": domain.split(),
            "listen_port": 80,
            "upstream_host": backend_host,
            "upstream_port": str(port),
            "timeout": PROXY_TIMEOUT,
            "health_path": HEALTH_PATH,
            "generated_at": stamp,
        }
        return self.templates.render_to_string(PROXY_TEMPLATE, context)

    def write_site(
        self,
        path: Path,
        domain: str,
        port: str | int,
        *,
        backend_host: str = "127.0.0.1",
    ) -> Path:
        """Render the site definition into *path*."""
        try:
            content = self.render(domain, port, backend_host=backend_host)
        except TemplateError as exc:
            raise NginxError(str(exc)) from exc
        try:
            write_if_changed(path, content, mode=0o644)
        except OSError as exc:
            raise NginxError(f"Failed to write nginx config {path}: {exc}") from exc
        return path

    def move_site(self, source: Path, destination: Path) -> bool:
        """Move *source* to *destination*, replacing any existing file.

        Returns ``False`` when *source* is already gone (step already done).
        """
        if not source.exists():
            return False
        if source == destination:
            return False
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            os.replace(source, destination)
        except OSError as exc:
            raise NginxError(f"Failed to move config file {source} -> {destination}: {exc}") from exc
        return True

    def remove_site(self, path: Path) -> bool:
        """Delete the site file at *path*; absent files are ignored."""
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise NginxError(f"Failed to remove config file {path}: {exc}") from exc
        return True

    # ------------------------------------------------------------------
    def enable(
        self,
        source: Path,
        site_name: str,
        *,
        allow_fallback: bool = False,
    ) -> LinkResult:
        """Enable the site by creating a symlink in sites-enabled.

        Already-enabled sites are left untouched. When *allow_fallback* is set
        and the direct symlink call fails, ``ln -sf`` is invoked instead.
        """
        target = self.enabled_path(site_name)
        if target.is_symlink():
            try:
                if target.resolve() == source.resolve():
                    return LinkResult(link=target, changed=False)
            except (FileNotFoundError, RuntimeError):
                # Broken or looping symlink; replace it with a fresh one.
                pass
            target.unlink()
        elif target.exists():
            raise NginxError(f"{target} exists and is not a symlink.")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.symlink_to(source)
            return LinkResult(link=target, changed=True)
        except OSError as exc:
            if not allow_fallback:
                raise NginxError(f"Failed to create symlink {target}: {exc}") from exc
            primary_error = str(exc)
        try:
            self._run_command([self.ln_bin, "-sf", str(source), str(target)], sudo=True)
        except NginxError as exc:
            raise NginxError(
                f"Failed to create symlink {target}: {primary_error}; ln fallback: {exc}"
            ) from exc
        return LinkResult(
            link=target,
            changed=True,
            method="ln",
            warning=f"Direct symlink failed ({primary_error}); created with {self.ln_bin} -sf.",
        )

    def disable(self, site_name: str) -> bool:
        """Remove the symlink; returns ``False`` when it was already absent."""
        target = self.enabled_path(site_name)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise NginxError(f"Failed to remove symlink {target}: {exc}") from exc
        return True

    def is_enabled(self, site_name: str, source: Path | None = None) -> bool:
        """Return True when the sites-enabled symlink exists (and targets *source*)."""
        target = self.enabled_path(site_name)
        if not target.is_symlink():
            return False
        if source is None:
            return True
        try:
            return target.resolve() == source.resolve()
        except (FileNotFoundError, RuntimeError):
            return False

    def diagnostics(self, path: Path) -> dict[str, object]:
        """Return diagnostic metadata for the site stored at *path*."""
        enabled_path = self.enabled_path(path.name)
        return {
            "site_path": path,
            "site_exists": path.exists(),
            "enabled_path": enabled_path,
            "enabled": self.is_enabled(path.name, path),
        }

    # ------------------------------------------------------------------
    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` against the live configuration tree.

        The completed process is returned whatever the exit status; callers
        inspect ``returncode`` and the combined output themselves.
        """
        return self._run_command([self.nginx_bin, "-t"], sudo=True, check=False)

    def _run_command(
        self,
        args: Sequence[str],
        *,
        sudo: bool = False,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = list(args)
        if sudo and self.use_sudo:
            command = [self.sudo_bin, *command]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise NginxError(f"{command[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            output = "\n".join(
                part for part in ((result.stdout or "").strip(), (result.stderr or "").strip()) if part
            )
            raise NginxError(
                f"{' '.join(args)} failed (exit {result.returncode}): {output or 'no output'}"
            )
        return result


__all__ = ["LinkResult", "NginxError", "NginxProvider"]
