"""Helpers for interacting with the sitectl registry index.

The registry index (``<base_path>/nginx_data/config_index``) stores one
:class:`~sitectl.state.records.SiteRecord` per line. Loading is lenient: lines
without any ``key=value`` pair are dropped and reported through
:attr:`RegistryLoad.warnings`. Full rewrites go through a temporary file and
``os.replace`` so concurrent readers never observe a partially written index;
new records are appended in place.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .records import SiteRecord, parse_record, serialize_record


class StateRegistryError(RuntimeError):
    """Raised when registry operations fail."""


@dataclass(slots=True)
class RegistryLoad:
    """Records read from the index together with any parse warnings."""

    records: list[SiteRecord] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SiteRegistry:
    """Line-oriented store for site records."""

    index_file: Path

    def __post_init__(self) -> None:
        """Normalise the index path after initialisation."""
        object.__setattr__(self, "index_file", self.index_file.expanduser())

    @property
    def root(self) -> Path:
        """Return the directory holding the index file."""
        return self.index_file.parent

    def ensure_root(self) -> None:
        """Create the data directory and an empty index if missing."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            if not self.index_file.exists():
                self.index_file.write_text("", encoding="utf-8")
        except OSError as exc:
            raise StateRegistryError(f"Unable to initialise registry {self.index_file}: {exc}") from exc

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def load(self) -> RegistryLoad:
        """Read every record from the index."""
        result = RegistryLoad()
        if not self.index_file.exists():
            return result
        try:
            text = self.index_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise StateRegistryError(f"Failed to read registry {self.index_file}: {exc}") from exc
        for number, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            record = parse_record(line)
            if record is None:
                result.warnings.append(f"Skipped malformed registry line {number}: {line!r}")
                continue
            if not record.domain:
                result.warnings.append(f"Registry line {number} has no domain.")
            result.records.append(record)
        return result

    def records(self) -> list[SiteRecord]:
        """Return the records without parse warnings."""
        return self.load().records

    def save(self, records: Iterable[SiteRecord]) -> None:
        """Atomically rewrite the index with *records*."""
        lines = [serialize_record(record) for record in records]
        payload = "".join(f"{line}\n" for line in lines)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.root), prefix=f".{self.index_file.name}."
            )
        except OSError as exc:
            raise StateRegistryError(f"Failed to write registry {self.index_file}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_path, self.index_file)
            os.chmod(self.index_file, 0o644)
        except OSError as exc:
            raise StateRegistryError(f"Failed to write registry {self.index_file}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def append(self, record: SiteRecord) -> None:
        """Append *record* as a new line at the end of the index."""
        line = serialize_record(record)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            needs_newline = False
            if self.index_file.exists() and self.index_file.stat().st_size > 0:
                with self.index_file.open("rb") as handle:
                    handle.seek(-1, os.SEEK_END)
                    needs_newline = handle.read(1) != b"\n"
            with self.index_file.open("a", encoding="utf-8") as handle:
                if needs_newline:
                    handle.write("\n")
                handle.write(f"{line}\n")
        except OSError as exc:
            raise StateRegistryError(f"Failed to append to registry {self.index_file}: {exc}") from exc

    # Lookup helpers ---------------------------------------------------
    def find(self, domain: str) -> tuple[int, SiteRecord] | None:
        """Return ``(index, record)`` for the first record whose primary name is *domain*."""
        return find_domain(self.records(), domain)


def find_domain(records: Sequence[SiteRecord], domain: str) -> tuple[int, SiteRecord] | None:
    """Return the first ``(index, record)`` matching *domain* case-insensitively."""
    wanted = domain.split()[0].lower() if domain.split() else ""
    if not wanted:
        return None
    for index, record in enumerate(records):
        if record.primary_domain.lower() == wanted:
            return index, record
    return None


__all__ = ["RegistryLoad", "SiteRegistry", "StateRegistryError", "find_domain"]
