"""State management helpers for sitectl."""
from __future__ import annotations

from .journal import RENAME_STEPS, RenameJournal, RenamePlan
from .records import RecordError, SiteRecord, SiteStatus, parse_record, serialize_record
from .registry import RegistryLoad, SiteRegistry, StateRegistryError, find_domain

__all__ = [
    "RENAME_STEPS",
    "RecordError",
    "RegistryLoad",
    "RenameJournal",
    "RenamePlan",
    "SiteRecord",
    "SiteRegistry",
    "SiteStatus",
    "StateRegistryError",
    "find_domain",
    "parse_record",
    "serialize_record",
]
