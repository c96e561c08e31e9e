"""Hosts file provider for managing sitectl's alias lines.

Lines owned by sitectl look like ``<ip>\\t<domain>\\t# <marker>``. Only those
lines, or a bare ``<ip> <domain>`` line naming exactly the target domain, are
ever rewritten; every other line is preserved byte for byte and in order.
"""
from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

_LOG = logging.getLogger(__name__)


class HostsError(RuntimeError):
    """Raised when the hosts file cannot be read or written."""

    def __init__(self, message: str, *, manual_line: str | None = None) -> None:
        """Store the line a user should add by hand, if known."""
        super().__init__(message)
        self.manual_line = manual_line


@dataclass(slots=True)
class HostsResult:
    """Outcome of a hosts file change."""

    action: str
    line: str | None = None
    warning: str | None = None

    @property
    def changed(self) -> bool:
        """Return ``True`` when the file was rewritten."""
        return self.action in {"updated", "added", "removed"}


@dataclass(slots=True)
class _ParsedLine:
    ip: str
    names: list[str]
    comment: str


def _parse(line: str) -> _ParsedLine | None:
    body, _, comment = line.partition("#")
    fields = body.split()
    if len(fields) < 2:
        return None
    return _ParsedLine(ip=fields[0], names=fields[1:], comment=comment.strip())


@dataclass(slots=True)
class HostsProvider:
    """Find, update, add, or remove marker-tagged alias lines."""

    path: Path = Path("/etc/hosts")
    marker: str = "Added by FastNginx"

    def format_line(self, domain: str, ip: str) -> str:
        """Return the owned alias line for *domain*."""
        return f"{ip}\t{' '.join(domain.split())}\t# {self.marker}"

    def manual_instruction(self, domain: str, ip: str) -> str:
        """Return the instruction shown when the file cannot be written."""
        return f"Add this line to {self.path} manually: {self.format_line(domain, ip)}"

    # ------------------------------------------------------------------
    def upsert(self, old_domain: str, new_domain: str, ip: str) -> HostsResult:
        """Rewrite the alias for *old_domain* to point *new_domain* at *ip*.

        When no line for *old_domain* exists a new owned line is appended,
        unless some line already references *new_domain*.
        """
        new_line = self.format_line(new_domain, ip)
        lines = self._read(manual_line=new_line)
        for index, line in enumerate(lines):
            if self._owns(line, old_domain):
                ending = line[len(line.rstrip("\r\n")) :]
                if line.rstrip("\r\n") == new_line:
                    return HostsResult(action="unchanged", line=new_line)
                lines[index] = new_line + ending
                self._write(lines, manual_line=new_line)
                return HostsResult(action="updated", line=new_line)

        if any(line.rstrip("\r\n") == new_line for line in lines):
            return HostsResult(action="unchanged", line=new_line)
        if any(self._references(line, new_domain) for line in lines):
            return HostsResult(
                action="exists",
                warning=f"Domain {new_domain} already exists in {self.path}; left untouched.",
            )
        if lines and not lines[-1].endswith("\n"):
            lines[-1] = lines[-1] + "\n"
        lines.append(new_line + "\n")
        self._write(lines, manual_line=new_line)
        return HostsResult(action="added", line=new_line)

    def add(self, domain: str, ip: str) -> HostsResult:
        """Add an owned alias line for *domain* (or update an existing one)."""
        return self.upsert(domain, domain, ip)

    def remove(self, domain: str) -> HostsResult:
        """Delete every owned line for *domain*."""
        lines = self._read()
        kept = [line for line in lines if not self._is_owned_line(line, domain)]
        if len(kept) == len(lines):
            return HostsResult(action="unchanged")
        self._write(kept)
        return HostsResult(action="removed")

    def find(self, domain: str) -> str | None:
        """Return the owned alias line for *domain*, if present."""
        for line in self._read():
            if self._owns(line, domain):
                return line.rstrip("\r\n")
        return None

    # ------------------------------------------------------------------
    def _is_owned_line(self, line: str, domain: str) -> bool:
        parsed = _parse(line)
        if parsed is None or parsed.comment != self.marker:
            return False
        return parsed.names == domain.split()

    def _owns(self, line: str, domain: str) -> bool:
        if line.lstrip().startswith("#"):
            return False
        parsed = _parse(line)
        if parsed is None:
            return False
        names = domain.split()
        if not names:
            return False
        if parsed.comment == self.marker:
            return parsed.names[0] == names[0]
        return not parsed.comment and parsed.names == names

    def _references(self, line: str, domain: str) -> bool:
        if line.lstrip().startswith("#"):
            return False
        parsed = _parse(line)
        if parsed is None:
            return False
        return any(name in parsed.names for name in domain.split())

    def _read(self, *, manual_line: str | None = None) -> list[str]:
        try:
            return self.path.read_text(encoding="utf-8").splitlines(keepends=True)
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise HostsError(
                f"Failed to read hosts file {self.path}: {exc}", manual_line=manual_line
            ) from exc

    def _write(self, lines: list[str], *, manual_line: str | None = None) -> None:
        payload = "".join(lines)
        try:
            mode = self.path.stat().st_mode & 0o777 if self.path.exists() else 0o644
        except OSError as exc:
            raise HostsError(
                f"Failed to inspect hosts file {self.path}: {exc}", manual_line=manual_line
            ) from exc
        try:
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}."
            )
        except OSError as exc:
            _LOG.debug("Atomic hosts write unavailable (%s); writing in place.", exc)
            self._write_in_place(payload, manual_line=manual_line)
            return
        tmp_path = Path(tmp_name)
        try:
            try:
                with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.chmod(tmp_path, mode)
            except OSError as exc:
                raise HostsError(
                    f"Failed to stage hosts file update for {self.path}: {exc}",
                    manual_line=manual_line,
                ) from exc
            try:
                os.replace(tmp_path, self.path)
            except OSError as exc:
                # Bind-mounted hosts files (containers) cannot be replaced.
                _LOG.debug("Replacing %s failed (%s); writing in place.", self.path, exc)
                self._write_in_place(payload, manual_line=manual_line)
        finally:
            tmp_path.unlink(missing_ok=True)

    def _write_in_place(self, payload: str, *, manual_line: str | None) -> None:
        try:
            self.path.write_text(payload, encoding="utf-8")
        except OSError as exc:
            raise HostsError(
                f"Failed to update hosts file {self.path}: {exc}", manual_line=manual_line
            ) from exc


__all__ = ["HostsError", "HostsProvider", "HostsResult"]
