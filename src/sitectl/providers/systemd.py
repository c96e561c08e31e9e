"""Systemd provider for reloading and querying the web server unit."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Drive ``systemctl`` for the unit serving the proxy sites."""

    systemctl_bin: str = "systemctl"
    unit: str = "nginx"
    use_sudo: bool = False
    sudo_bin: str = "sudo"

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Reload the unit so it picks up configuration changes."""
        return self._systemctl("reload", self.unit, privileged=True)

    def is_active(self) -> bool:
        """Return ``True`` when ``systemctl is-active`` reports the unit running."""
        try:
            result = self._systemctl("is-active", self.unit, check=False)
        except SystemdError:
            return False
        return result.returncode == 0

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
        privileged: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        if privileged and self.use_sudo:
            args = [self.sudo_bin, *args]
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdProvider", "SystemdError"]
