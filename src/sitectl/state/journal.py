"""Write-ahead journal for multi-step domain renames.

A rename touches four artefacts (config file, enable symlink, hosts alias and
registry record). Before the first side effect the full plan is written to
``rename.journal`` in the data directory; each step is marked complete as it
finishes and the journal is removed once every step has run. A journal left
behind by a crash or failure can be replayed with
:meth:`sitectl.orchestrator.SiteOrchestrator.resume`, since every step is
idempotent.
"""
from __future__ import annotations

import json
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path

from .registry import StateRegistryError

RENAME_STEPS: tuple[str, ...] = (
    "unlink_old_link",
    "move_file",
    "link_new",
    "render",
    "registry",
    "hosts",
)


@dataclass(slots=True)
class RenamePlan:
    """Everything needed to (re)play a rename."""

    old_domain: str
    new_domain: str
    old_path: str
    new_path: str
    port: str
    ip: str
    backend_host: str
    record_index: int
    record_line: str
    completed: list[str] = field(default_factory=list)

    @property
    def pending(self) -> list[str]:
        """Return the steps that have not completed yet."""
        return [step for step in RENAME_STEPS if step not in self.completed]


@dataclass(frozen=True)
class RenameJournal:
    """Persist a :class:`RenamePlan` next to the registry index."""

    path: Path

    def begin(self, plan: RenamePlan) -> None:
        """Record *plan* before any step runs."""
        self._write(plan)

    def mark(self, plan: RenamePlan, step: str) -> None:
        """Mark *step* as completed and persist the updated plan."""
        if step not in plan.completed:
            plan.completed.append(step)
        self._write(plan)

    def load(self) -> RenamePlan | None:
        """Return the pending plan, if any."""
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StateRegistryError(f"Unable to read rename journal {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StateRegistryError(f"Rename journal {self.path} is not a mapping.")
        try:
            return RenamePlan(**data)
        except TypeError as exc:
            raise StateRegistryError(f"Rename journal {self.path} is invalid: {exc}") from exc

    def clear(self) -> None:
        """Remove the journal after a completed rename."""
        self.path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    def _write(self, plan: RenamePlan) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}."
            )
        except OSError as exc:
            raise StateRegistryError(f"Unable to write rename journal {self.path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(asdict(plan), handle, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StateRegistryError(f"Unable to write rename journal {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = ["RENAME_STEPS", "RenameJournal", "RenamePlan"]
