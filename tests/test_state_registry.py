"""Site registry index tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from sitectl.state import SiteRecord, SiteRegistry, SiteStatus, StateRegistryError, find_domain


def _registry(tmp_path: Path) -> SiteRegistry:
    return SiteRegistry(tmp_path / "nginx_data" / "config_index")


def _record(domain: str, port: str = "8080", **kwargs: object) -> SiteRecord:
    return SiteRecord(domain=domain, port=port, path=f"/sites/{domain.split()[0]}", **kwargs)  # type: ignore[arg-type]


def test_ensure_root_creates_empty_index(tmp_path: Path) -> None:
    """The data directory and an empty index are created on demand."""
    registry = _registry(tmp_path)

    registry.ensure_root()

    assert registry.index_file.exists()
    assert registry.index_file.read_text(encoding="utf-8") == ""
    assert registry.load().records == []


def test_missing_index_loads_empty(tmp_path: Path) -> None:
    """A missing index behaves as an empty registry."""
    registry = _registry(tmp_path)
    loaded = registry.load()

    assert loaded.records == []
    assert loaded.warnings == []


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    """Saved records load back identically and in order."""
    registry = _registry(tmp_path)
    records = [
        _record("a.test", created=1),
        _record("b.test", "9000", status=SiteStatus.INACTIVE, created=2),
    ]

    registry.save(records)

    assert registry.records() == records
    assert (registry.index_file.stat().st_mode & 0o777) == 0o644
    assert registry.index_file.read_text(encoding="utf-8").endswith("\n")


def test_append_adds_line_after_unterminated_last_line(tmp_path: Path) -> None:
    """Appending never glues the new record onto an unterminated line."""
    registry = _registry(tmp_path)
    registry.ensure_root()
    registry.index_file.write_text("domain=a.test,port=80", encoding="utf-8")

    registry.append(_record("b.test"))

    lines = registry.index_file.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "domain=a.test,port=80"
    assert lines[1].startswith("domain=b.test,")
    assert [record.domain for record in registry.records()] == ["a.test", "b.test"]


def test_load_skips_blank_and_malformed_lines_with_warnings(tmp_path: Path) -> None:
    """Blank lines are ignored and malformed lines are reported, not fatal."""
    registry = _registry(tmp_path)
    registry.ensure_root()
    registry.index_file.write_text(
        "domain=a.test,port=80\n\nnot a record\nport=81\n",
        encoding="utf-8",
    )

    loaded = registry.load()

    assert [record.port for record in loaded.records] == ["80", "81"]
    assert any("line 3" in warning for warning in loaded.warnings)
    assert any("line 4 has no domain" in warning for warning in loaded.warnings)


def test_save_failure_raises_registry_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """I/O errors surface as StateRegistryError and leave the index intact."""
    registry = _registry(tmp_path)
    registry.save([_record("a.test")])
    before = registry.index_file.read_text(encoding="utf-8")

    def fail_replace(*_args: object, **_kwargs: object) -> None:
        raise OSError("read-only")

    monkeypatch.setattr("sitectl.state.registry.os.replace", fail_replace)

    with pytest.raises(StateRegistryError):
        registry.save([_record("b.test")])
    assert registry.index_file.read_text(encoding="utf-8") == before
    assert sorted(path.name for path in registry.root.iterdir()) == ["config_index"]


def test_find_domain_matches_primary_case_insensitively(tmp_path: Path) -> None:
    """Lookups compare the primary server name ignoring case."""
    records = [_record("a.test www.a.test"), _record("B.test")]

    assert find_domain(records, "A.TEST") == (0, records[0])
    assert find_domain(records, "b.test") == (1, records[1])
    assert find_domain(records, "www.a.test") is None
    assert find_domain(records, "") is None

    registry = _registry(tmp_path)
    registry.save(records)
    found = registry.find("a.test")
    assert found is not None and found[0] == 0
