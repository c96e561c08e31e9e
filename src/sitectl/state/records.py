"""Typed registry records and their line codec.

A record is persisted as a single line of comma separated ``key=value``
pairs::

    domain=svc.test,port=8080,type=proxy,ip=127.0.0.1,path=/etc/nginx/sites-available/svc.test,status=active,created=1700000000000

The seven recognised keys are always written first, in :data:`FIELD_ORDER`.
Any other keys found on load (for example ``host`` from older builds) are
kept in their original order and written after them. Values are not escaped,
so neither ``,`` nor ``=`` may appear inside a value.
"""
from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum

FIELD_ORDER: tuple[str, ...] = ("domain", "port", "type", "ip", "path", "status", "created")
SUPPORTED_TYPES = frozenset({"proxy"})
DEFAULT_IP = "127.0.0.1"
DEFAULT_BACKEND_HOST = "127.0.0.1"
_RESERVED_CHARS = (",", "=", "\n", "\r")


class RecordError(ValueError):
    """Raised when a record value cannot be represented in the index."""


class SiteStatus(str, Enum):
    """Activation state of a registered site."""

    ACTIVE = "active"
    INACTIVE = "inactive"

    @classmethod
    def parse(cls, raw: str | None) -> SiteStatus:
        """Return the status for *raw*; anything but ``inactive`` is active."""
        if raw is not None and raw.strip().lower() == cls.INACTIVE.value:
            return cls.INACTIVE
        return cls.ACTIVE

    def flipped(self) -> SiteStatus:
        """Return the opposite status."""
        return SiteStatus.INACTIVE if self is SiteStatus.ACTIVE else SiteStatus.ACTIVE


@dataclass(frozen=True, slots=True)
class SiteRecord:
    """One registered proxy site."""

    domain: str
    port: str
    path: str
    type: str = "proxy"
    ip: str = DEFAULT_IP
    status: SiteStatus = SiteStatus.ACTIVE
    created: int = 0
    extra: Mapping[str, str] = field(default_factory=dict)

    @property
    def server_names(self) -> list[str]:
        """Return every name listed in ``domain`` (space separated)."""
        return self.domain.split()

    @property
    def primary_domain(self) -> str:
        """Return the first server name, used for file and link names."""
        names = self.server_names
        return names[0] if names else ""

    @property
    def backend_host(self) -> str:
        """Return the upstream host, defaulting to loopback."""
        return self.extra.get("host") or DEFAULT_BACKEND_HOST

    @property
    def is_active(self) -> bool:
        """Return ``True`` when the record is marked active."""
        return self.status is SiteStatus.ACTIVE

    def with_updates(self, **changes: object) -> SiteRecord:
        """Return a copy of the record with *changes* applied."""
        return replace(self, **changes)  # type: ignore[arg-type]

    def with_backend_host(self, host: str | None) -> SiteRecord:
        """Return a copy with the ``host`` extra set.

        The key is only written when it differs from loopback or was already
        present, so records created without a custom host keep seven fields.
        """
        if not host or (host == DEFAULT_BACKEND_HOST and "host" not in self.extra):
            return self
        extra = dict(self.extra)
        extra["host"] = host
        return replace(self, extra=extra)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly mapping of the record."""
        payload: dict[str, object] = {
            "domain": self.domain,
            "port": self.port,
            "type": self.type,
            "ip": self.ip,
            "path": self.path,
            "status": self.status.value,
            "created": self.created,
        }
        payload.update(self.extra)
        return payload


def now_millis() -> int:
    """Return the current wall clock time in milliseconds."""
    return int(time.time() * 1000)


def parse_pairs(line: str) -> dict[str, str]:
    """Split *line* into its ``key=value`` pairs, ignoring malformed segments."""
    pairs: dict[str, str] = {}
    for part in line.split(","):
        key, sep, value = part.partition("=")
        if not sep:
            continue
        key = key.strip()
        if not key:
            continue
        pairs[key] = value.strip()
    return pairs


def parse_record(line: str) -> SiteRecord | None:
    """Parse a single index line.

    Returns ``None`` when the line contains no ``key=value`` pair at all.
    Missing fields fall back to their defaults.
    """
    pairs = parse_pairs(line)
    if not pairs:
        return None
    created_raw = pairs.get("created", "")
    try:
        created = int(created_raw) if created_raw else 0
    except ValueError:
        created = 0
    extra = {key: value for key, value in pairs.items() if key not in FIELD_ORDER}
    return SiteRecord(
        domain=pairs.get("domain", ""),
        port=pairs.get("port", ""),
        type=pairs.get("type") or "proxy",
        ip=pairs.get("ip") or DEFAULT_IP,
        path=pairs.get("path", ""),
        status=SiteStatus.parse(pairs.get("status")),
        created=created,
        extra=extra,
    )


def serialize_record(record: SiteRecord) -> str:
    """Return the index line for *record* (without a trailing newline)."""
    values: list[tuple[str, str]] = [
        ("domain", record.domain),
        ("port", record.port),
        ("type", record.type),
        ("ip", record.ip),
        ("path", record.path),
        ("status", record.status.value),
        ("created", str(record.created)),
    ]
    values.extend((key, value) for key, value in record.extra.items())
    for key, value in values:
        check_value(key, value)
    return ",".join(f"{key}={value}" for key, value in values)


def check_value(key: str, value: str) -> None:
    """Raise :class:`RecordError` when *value* cannot be stored unescaped."""
    for char in _RESERVED_CHARS:
        if char in value:
            raise RecordError(f"Value for '{key}' may not contain {char!r}: {value!r}")


__all__ = [
    "DEFAULT_BACKEND_HOST",
    "DEFAULT_IP",
    "FIELD_ORDER",
    "SUPPORTED_TYPES",
    "RecordError",
    "SiteRecord",
    "SiteStatus",
    "check_value",
    "now_millis",
    "parse_pairs",
    "parse_record",
    "serialize_record",
]
