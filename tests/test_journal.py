"""Rename journal tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from sitectl.state import RENAME_STEPS, RenameJournal, RenamePlan, StateRegistryError


def _plan() -> RenamePlan:
    return RenamePlan(
        old_domain="old.test",
        new_domain="new.test",
        old_path="/sites/old.test",
        new_path="/sites/new.test",
        port="8080",
        ip="127.0.0.1",
        backend_host="127.0.0.1",
        record_index=0,
        record_line="domain=new.test,port=8080",
    )


def test_begin_mark_and_load(tmp_path: Path) -> None:
    """Completed steps persist and are excluded from the pending list."""
    journal = RenameJournal(tmp_path / "rename.journal")
    plan = _plan()

    journal.begin(plan)
    assert journal.load() == plan
    assert plan.pending == list(RENAME_STEPS)

    journal.mark(plan, "unlink_old_link")
    journal.mark(plan, "unlink_old_link")
    loaded = journal.load()

    assert loaded is not None
    assert loaded.completed == ["unlink_old_link"]
    assert loaded.pending == list(RENAME_STEPS[1:])


def test_clear_removes_journal(tmp_path: Path) -> None:
    """Clearing removes the file; loading afterwards yields nothing."""
    journal = RenameJournal(tmp_path / "rename.journal")
    journal.begin(_plan())

    journal.clear()
    journal.clear()

    assert journal.load() is None
    assert not journal.path.exists()


def test_invalid_journal_raises(tmp_path: Path) -> None:
    """Unreadable journals surface as registry errors."""
    path = tmp_path / "rename.journal"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(StateRegistryError):
        RenameJournal(path).load()

    path.write_text('{"old_domain": "a"}', encoding="utf-8")
    with pytest.raises(StateRegistryError):
        RenameJournal(path).load()
