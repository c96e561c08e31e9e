"""Sequencing of registry, site file, symlink, hosts alias and reload.

:class:`SiteOrchestrator` is the recovery boundary for every provider error:
its public operations take plain data and return an :class:`OperationResult`,
never raising for expected failures. Presentation is left to the caller.

Mutating operations hold the registry lock for their whole read-modify-write
cycle. Renames are journalled step by step (see
:mod:`sitectl.state.journal`) so an interrupted rename can be resumed.
"""
from __future__ import annotations

import ipaddress
import re
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from .exit_codes import ExitCode
from .gate import GateOutcome, GateStatus, ValidationGate
from .locking import LockError, LockManager
from .logging import OperationScope
from .providers.hosts import HostsError, HostsProvider
from .providers.nginx import NginxError, NginxProvider
from .providers.service import ServiceError
from .state.journal import RenameJournal, RenamePlan
from .state.records import (
    DEFAULT_BACKEND_HOST,
    DEFAULT_IP,
    SUPPORTED_TYPES,
    SiteRecord,
    SiteStatus,
    now_millis,
    parse_record,
    serialize_record,
)
from .state.registry import SiteRegistry, StateRegistryError, find_domain

_NAME_RE = re.compile(r"[a-z0-9_](?:[a-z0-9_.-]*[a-z0-9_])?")
_HOST_RE = re.compile(r"[A-Za-z0-9](?:[A-Za-z0-9.-]*[A-Za-z0-9])?")


class SiteInputError(ValueError):
    """Raised when user supplied site values are invalid."""


class _StepFailed(RuntimeError):
    """Internal signal that a mandatory step failed."""

    def __init__(self, message: str, exit_code: ExitCode = ExitCode.PROVIDER) -> None:
        super().__init__(message)
        self.exit_code = exit_code


@dataclass(slots=True)
class SiteInput:
    """Values supplied when deploying a new site."""

    domain: str
    port: str
    type: str = "proxy"
    backend_host: str | None = None
    add_hosts_entry: bool = False
    ip: str | None = None


@dataclass(slots=True)
class SiteEdit:
    """Overrides for an existing site; empty values keep the current one."""

    domain: str | None = None
    port: str | None = None
    ip: str | None = None
    backend_host: str | None = None


@dataclass(slots=True)
class SiteView:
    """A registry record together with its observed symlink state."""

    index: int
    record: SiteRecord
    enabled: bool

    @property
    def consistent(self) -> bool:
        """Return ``True`` when status and symlink existence agree."""
        return self.enabled == self.record.is_active


@dataclass(slots=True)
class OperationResult:
    """What an orchestrator operation did, for the caller to present."""

    ok: bool
    message: str
    exit_code: ExitCode = ExitCode.OK
    record: SiteRecord | None = None
    index: int | None = None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    diagnostics: str = ""
    changed: int = 0


# ----------------------------------------------------------------------
# Input validation
# ----------------------------------------------------------------------
def validate_domain(value: str) -> str:
    """Validate and normalise a (space separated) list of server names."""
    names = value.strip().lower().split()
    if not names:
        raise SiteInputError("Domain parameter required.")
    for name in names:
        if len(name) > 253:
            raise SiteInputError(f"Domain '{name}' must be 253 characters or fewer.")
        if not _NAME_RE.fullmatch(name):
            raise SiteInputError(
                f"Domain '{name}' may contain letters, numbers, dots, hyphens "
                "and underscores only; wildcard names are not supported."
            )
    return " ".join(names)


def validate_port(value: str | int) -> str:
    """Validate a backend port, returning it as a string."""
    text = str(value).strip()
    if not text.isdigit():
        raise SiteInputError("Valid port number required.")
    port = int(text)
    if not 1 <= port <= 65535:
        raise SiteInputError("Port must be between 1 and 65535.")
    return str(port)


def validate_ip(value: str) -> str:
    """Validate the hosts alias address."""
    text = value.strip()
    try:
        return str(ipaddress.ip_address(text))
    except ValueError as exc:
        raise SiteInputError(f"Invalid IP address for hosts file: {value!r}.") from exc


def validate_backend_host(value: str) -> str:
    """Validate the upstream host name or address."""
    text = value.strip()
    if not text:
        raise SiteInputError("Backend host must be a non-empty string.")
    try:
        return str(ipaddress.ip_address(text))
    except ValueError:
        pass
    if not _HOST_RE.fullmatch(text):
        raise SiteInputError(f"Invalid backend host: {value!r}.")
    return text


def validate_type(value: str) -> str:
    """Validate the site type."""
    normalised = value.strip().lower()
    if normalised not in SUPPORTED_TYPES:
        raise SiteInputError("Only proxy protocol supported in current build.")
    return normalised


# ----------------------------------------------------------------------
@dataclass(slots=True)
class SiteOrchestrator:
    """Keep registry record, site file, symlink and hosts alias in sync."""

    registry: SiteRegistry
    nginx: NginxProvider
    hosts: HostsProvider
    gate: ValidationGate
    journal: RenameJournal
    locks: LockManager | None = None
    default_ip: str = DEFAULT_IP
    default_backend_host: str = DEFAULT_BACKEND_HOST
    clock: Callable[[], int] = now_millis

    # Queries ----------------------------------------------------------
    def list_sites(self) -> tuple[list[SiteView], list[str]]:
        """Return every record with its symlink state, plus load warnings."""
        loaded = self.registry.load()
        views = [
            SiteView(index=index, record=record, enabled=self._is_enabled(record))
            for index, record in enumerate(loaded.records)
        ]
        return views, loaded.warnings

    def resolve(self, selector: str) -> int:
        """Translate a 1-based index or a domain into a 0-based record index."""
        text = selector.strip()
        records = self.registry.records()
        if not text:
            raise SiteInputError("Selection required.")
        if text.isdigit():
            position = int(text)
            if not 1 <= position <= len(records):
                raise SiteInputError("Invalid selection.")
            return position - 1
        found = find_domain(records, text.lower())
        if found is None:
            raise SiteInputError(f"No site registered for '{text}'.")
        return found[0]

    # Deploy -----------------------------------------------------------
    def deploy(self, site: SiteInput, op: OperationScope | None = None) -> OperationResult:
        """Render, enable and validate a new site, then register it."""
        try:
            validate_type(site.type)
            domain = validate_domain(site.domain)
            port = validate_port(site.port)
            host = (
                validate_backend_host(site.backend_host)
                if site.backend_host
                else self.default_backend_host
            )
            ip = validate_ip(site.ip) if site.ip else self.default_ip
        except SiteInputError as exc:
            return self._failure(str(exc), ExitCode.VALIDATION)

        primary = domain.split()[0]
        warnings: list[str] = []
        try:
            with self._locked([primary], op):
                records = self.registry.records()
                if find_domain(records, primary) is not None:
                    return self._failure(
                        f"Domain {primary} is already registered.", ExitCode.VALIDATION
                    )
                path = self.nginx.site_path(domain)
                self.nginx.write_site(path, domain, port, backend_host=host)
                self._step(op, "file.write", detail=str(path))
                link = self.nginx.enable(path, path.name)
                self._step(
                    op,
                    "nginx.enable",
                    status="success" if link.changed else "skipped",
                    detail=str(link.link),
                )

                outcome = self.gate.validate_and_activate()
                self._record_gate(op, outcome)
                if outcome.status is GateStatus.REJECTED:
                    return OperationResult(
                        ok=False,
                        message="Configuration validation FAILED; site not registered.",
                        exit_code=ExitCode.VALIDATION,
                        errors=["validation rejected"],
                        warnings=[f"{path} and {link.link} remain on disk."],
                        diagnostics=outcome.diagnostics,
                        changed=2,
                    )
                if outcome.status is GateStatus.RELOAD_FAILED:
                    warnings.append(f"Reload failed: {outcome.reload_detail}")

                if site.add_hosts_entry:
                    warnings.extend(self._hosts_upsert(domain, domain, ip, op))

                record = SiteRecord(
                    domain=domain,
                    port=port,
                    type="proxy",
                    ip=ip,
                    path=str(path),
                    status=SiteStatus.ACTIVE,
                    created=self.clock(),
                ).with_backend_host(host)
                self.registry.append(record)
                self._step(op, "registry.append", detail=primary)
                index = len(records)
        except _StepFailed as exc:
            return self._failure(str(exc), exc.exit_code, warnings=warnings)
        except LockError as exc:
            return self._failure(str(exc), ExitCode.ENVIRONMENT)
        except (NginxError, StateRegistryError) as exc:
            return self._failure(str(exc), ExitCode.PROVIDER, warnings=warnings)

        return OperationResult(
            ok=True,
            message=f"Site {primary} deployed and registered.",
            record=record,
            index=index,
            warnings=warnings,
            diagnostics=outcome.diagnostics,
            changed=4 if site.add_hosts_entry else 3,
        )

    # Edit -------------------------------------------------------------
    def edit(
        self,
        index: int,
        changes: SiteEdit,
        op: OperationScope | None = None,
    ) -> OperationResult:
        """Apply *changes* to the record at *index* (renaming if needed)."""
        try:
            new_domain = validate_domain(changes.domain) if changes.domain else None
            new_port = validate_port(changes.port) if changes.port else None
            new_ip = validate_ip(changes.ip) if changes.ip else None
            new_host = (
                validate_backend_host(changes.backend_host) if changes.backend_host else None
            )
        except SiteInputError as exc:
            return self._failure(str(exc), ExitCode.VALIDATION)

        try:
            current = self._record_at(index)
        except SiteInputError as exc:
            return self._failure(str(exc), ExitCode.VALIDATION)
        except StateRegistryError as exc:
            return self._failure(str(exc), ExitCode.PROVIDER)

        domain = new_domain or current.domain
        touched = {current.primary_domain, domain.split()[0]}
        try:
            with self._locked(touched, op):
                records = self.registry.records()
                if index >= len(records) or records[index] != current:
                    return self._failure(
                        "Registry changed while editing; retry.", ExitCode.ENVIRONMENT
                    )
                updated = current.with_updates(
                    domain=domain,
                    port=new_port or current.port,
                    ip=new_ip or current.ip,
                ).with_backend_host(new_host)
                if not updated.port:
                    return self._failure("Valid port number required.", ExitCode.VALIDATION)

                if updated.primary_domain != current.primary_domain:
                    clash = find_domain(records, updated.primary_domain)
                    if clash is not None and clash[0] != index:
                        return self._failure(
                            f"Domain {updated.primary_domain} is already registered.",
                            ExitCode.VALIDATION,
                        )
                    return self._rename(index, current, updated, op)
                return self._edit_in_place(index, records, current, updated, op)
        except LockError as exc:
            return self._failure(str(exc), ExitCode.ENVIRONMENT)

    def _edit_in_place(
        self,
        index: int,
        records: list[SiteRecord],
        current: SiteRecord,
        updated: SiteRecord,
        op: OperationScope | None,
    ) -> OperationResult:
        warnings: list[str] = []
        path = Path(current.path) if current.path else self.nginx.site_path(current.domain)
        updated = updated.with_updates(path=str(path))
        try:
            self.nginx.write_site(
                path, updated.domain, updated.port, backend_host=updated.backend_host
            )
            self._step(op, "file.write", detail=str(path))
            records[index] = updated
            self.registry.save(records)
            self._step(op, "registry.save", detail=f"index={index}")
        except (NginxError, StateRegistryError) as exc:
            return self._failure(str(exc), ExitCode.PROVIDER)

        if updated.domain != current.domain or updated.ip != current.ip:
            warnings.extend(self._hosts_upsert(current.domain, updated.domain, updated.ip, op))
        warnings.extend(self._reload(op))
        return OperationResult(
            ok=True,
            message=f"Site {updated.primary_domain} updated.",
            record=updated,
            index=index,
            warnings=warnings,
            changed=2,
        )

    def _rename(
        self,
        index: int,
        current: SiteRecord,
        updated: SiteRecord,
        op: OperationScope | None,
    ) -> OperationResult:
        old_path = Path(current.path) if current.path else self.nginx.site_path(current.domain)
        new_path = old_path.parent / self.nginx.site_name(updated.domain)
        updated = updated.with_updates(path=str(new_path))
        plan = RenamePlan(
            old_domain=current.domain,
            new_domain=updated.domain,
            old_path=str(old_path),
            new_path=str(new_path),
            port=updated.port,
            ip=updated.ip,
            backend_host=updated.backend_host,
            record_index=index,
            record_line=serialize_record(updated),
        )
        try:
            self.journal.begin(plan)
        except StateRegistryError as exc:
            return self._failure(str(exc), ExitCode.PROVIDER)
        self._step(op, "journal.begin", detail=f"{current.primary_domain} -> {updated.primary_domain}")
        return self._complete_rename(plan, op)

    # Resume -----------------------------------------------------------
    def pending_rename(self) -> RenamePlan | None:
        """Return the journalled rename awaiting completion, if any."""
        return self.journal.load()

    def resume(self, op: OperationScope | None = None) -> OperationResult:
        """Replay the pending steps of an interrupted rename."""
        try:
            plan = self.journal.load()
        except StateRegistryError as exc:
            return self._failure(str(exc), ExitCode.PROVIDER)
        if plan is None:
            return OperationResult(ok=True, message="No interrupted rename to resume.")
        touched = [plan.old_domain.split()[0], plan.new_domain.split()[0]]
        try:
            with self._locked(touched, op):
                return self._complete_rename(plan, op)
        except LockError as exc:
            return self._failure(str(exc), ExitCode.ENVIRONMENT)

    def _complete_rename(self, plan: RenamePlan, op: OperationScope | None) -> OperationResult:
        warnings: list[str] = []
        record = parse_record(plan.record_line)
        old_path = Path(plan.old_path)
        new_path = Path(plan.new_path)
        steps: dict[str, Callable[[], list[str]]] = {
            "unlink_old_link": lambda: self._rename_unlink(old_path, op),
            "move_file": lambda: self._rename_move(old_path, new_path, op),
            "link_new": lambda: self._rename_link(record, new_path, op),
            "render": lambda: self._rename_render(plan, new_path, op),
            "registry": lambda: self._rename_registry(plan, op),
            "hosts": lambda: self._hosts_upsert(plan.old_domain, plan.new_domain, plan.ip, op),
        }
        try:
            for step in plan.pending:
                warnings.extend(steps[step]())
                self.journal.mark(plan, step)
            self.journal.clear()
            self._step(op, "journal.clear")
        except (_StepFailed, NginxError, StateRegistryError) as exc:
            self._step(op, "journal.pending", status="error", detail=", ".join(plan.pending))
            return self._failure(
                f"{exc} (rename incomplete; run `sitectl site resume` to finish)",
                getattr(exc, "exit_code", ExitCode.PROVIDER),
                warnings=warnings,
            )

        outcome = self.gate.validate_and_activate()
        self._record_gate(op, outcome)
        primary = record.primary_domain if record else plan.new_domain
        if outcome.status is GateStatus.REJECTED:
            return OperationResult(
                ok=False,
                message=(
                    f"Configuration test FAILED after renaming to {primary}; "
                    "filesystem changes were kept."
                ),
                exit_code=ExitCode.VALIDATION,
                record=record,
                index=plan.record_index,
                warnings=warnings,
                errors=["validation rejected"],
                diagnostics=outcome.diagnostics,
                changed=5,
            )
        if outcome.status is GateStatus.RELOAD_FAILED:
            warnings.append(f"Reload failed: {outcome.reload_detail}")
        return OperationResult(
            ok=True,
            message=f"Site renamed to {primary} and activated.",
            record=record,
            index=plan.record_index,
            warnings=warnings,
            diagnostics=outcome.diagnostics,
            changed=5,
        )

    def _rename_unlink(self, old_path: Path, op: OperationScope | None) -> list[str]:
        try:
            removed = self.nginx.disable(old_path.name)
        except NginxError as exc:
            self._step(op, "nginx.disable", status="warning", detail=str(exc))
            return [f"Could not delete old symlink {old_path.name}: {exc}"]
        self._step(op, "nginx.disable", status="success" if removed else "skipped")
        return []

    def _rename_move(self, old_path: Path, new_path: Path, op: OperationScope | None) -> list[str]:
        moved = self.nginx.move_site(old_path, new_path)
        self._step(
            op,
            "file.move",
            status="success" if moved else "skipped",
            detail=f"{old_path} -> {new_path}",
        )
        return []

    def _rename_link(
        self,
        record: SiteRecord | None,
        new_path: Path,
        op: OperationScope | None,
    ) -> list[str]:
        if record is not None and not record.is_active:
            self._step(op, "nginx.enable", status="skipped", detail="inactive")
            return []
        try:
            link = self.nginx.enable(new_path, new_path.name, allow_fallback=True)
        except NginxError as exc:
            self._step(op, "nginx.enable", status="warning", detail=str(exc))
            return [f"Could not create new symlink: {exc}"]
        self._step(op, "nginx.enable", status="success", detail=link.method)
        return [link.warning] if link.warning else []

    def _rename_render(self, plan: RenamePlan, new_path: Path, op: OperationScope | None) -> list[str]:
        self.nginx.write_site(new_path, plan.new_domain, plan.port, backend_host=plan.backend_host)
        self._step(op, "file.write", detail=str(new_path))
        return []

    def _rename_registry(self, plan: RenamePlan, op: OperationScope | None) -> list[str]:
        replacement = parse_record(plan.record_line)
        if replacement is None:
            raise _StepFailed("Journalled registry record is malformed.")
        records = self.registry.records()
        position: int | None = None
        if plan.record_index < len(records):
            candidate = records[plan.record_index].primary_domain.lower()
            if candidate in {
                plan.old_domain.split()[0].lower(),
                replacement.primary_domain.lower(),
            }:
                position = plan.record_index
        if position is None:
            found = find_domain(records, plan.old_domain) or find_domain(
                records, replacement.primary_domain
            )
            if found is None:
                raise _StepFailed(f"Record for {plan.old_domain} no longer in registry.")
            position = found[0]
        records[position] = replacement
        self.registry.save(records)
        self._step(op, "registry.save", detail=f"index={position}")
        return []

    # Delete -----------------------------------------------------------
    def delete(self, index: int, op: OperationScope | None = None) -> OperationResult:
        """Remove the site file, symlink, hosts alias and record at *index*."""
        try:
            current = self._record_at(index)
        except SiteInputError as exc:
            return self._failure(str(exc), ExitCode.VALIDATION)
        except StateRegistryError as exc:
            return self._failure(str(exc), ExitCode.PROVIDER)

        warnings: list[str] = []
        try:
            with self._locked([current.primary_domain], op):
                records = self.registry.records()
                if index >= len(records) or records[index] != current:
                    return self._failure(
                        "Registry changed while deleting; retry.", ExitCode.ENVIRONMENT
                    )
                path = self._site_path(current)
                file_removed = self.nginx.remove_site(path)
                self._step(op, "file.remove", status="success" if file_removed else "skipped")
                link_removed = self.nginx.disable(path.name)
                self._step(op, "nginx.disable", status="success" if link_removed else "skipped")
                try:
                    result = self.hosts.remove(current.domain)
                    self._step(
                        op,
                        "hosts.remove",
                        status="success" if result.changed else "skipped",
                    )
                except HostsError as exc:
                    self._step(op, "hosts.remove", status="warning", detail=str(exc))
                    warnings.append(str(exc))
                del records[index]
                self.registry.save(records)
                self._step(op, "registry.save", detail=f"removed index={index}")
        except LockError as exc:
            return self._failure(str(exc), ExitCode.ENVIRONMENT)
        except (NginxError, StateRegistryError) as exc:
            return self._failure(str(exc), ExitCode.PROVIDER, warnings=warnings)

        warnings.extend(self._reload(op))
        return OperationResult(
            ok=True,
            message=f"Site {current.primary_domain} deleted.",
            record=current,
            index=index,
            warnings=warnings,
            changed=4,
        )

    # Toggle -----------------------------------------------------------
    def toggle(self, index: int, op: OperationScope | None = None) -> OperationResult:
        """Flip the status of the record at *index* and its symlink."""
        try:
            current = self._record_at(index)
        except SiteInputError as exc:
            return self._failure(str(exc), ExitCode.VALIDATION)
        except StateRegistryError as exc:
            return self._failure(str(exc), ExitCode.PROVIDER)

        new_status = current.status.flipped()
        try:
            with self._locked([current.primary_domain], op):
                records = self.registry.records()
                if index >= len(records) or records[index] != current:
                    return self._failure(
                        "Registry changed while toggling; retry.", ExitCode.ENVIRONMENT
                    )
                path = self._site_path(current)
                if new_status is SiteStatus.ACTIVE:
                    link = self.nginx.enable(path, path.name)
                    self._step(
                        op, "nginx.enable", status="success" if link.changed else "skipped"
                    )
                else:
                    removed = self.nginx.disable(path.name)
                    self._step(op, "nginx.disable", status="success" if removed else "skipped")
                updated = current.with_updates(status=new_status)
                records[index] = updated
                self.registry.save(records)
                self._step(op, "registry.save", detail=f"status={new_status.value}")
        except LockError as exc:
            return self._failure(str(exc), ExitCode.ENVIRONMENT)
        except (NginxError, StateRegistryError) as exc:
            return self._failure(str(exc), ExitCode.PROVIDER)

        warnings = self._reload(op)
        return OperationResult(
            ok=True,
            message=f"Site {current.primary_domain} {new_status.value}.",
            record=updated,
            index=index,
            warnings=warnings,
            changed=2,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _locked(self, domains: Iterable[str], op: OperationScope | None) -> Iterator[None]:
        if self.locks is None:
            yield
            return
        with self.locks.mutate_registry(domains) as bundle:
            if op is not None:
                op.set_lock_wait_ms(bundle.wait_ms)
            yield

    def _record_at(self, index: int) -> SiteRecord:
        records = self.registry.records()
        if not 0 <= index < len(records):
            raise SiteInputError("Invalid selection.")
        return records[index]

    def _site_path(self, record: SiteRecord) -> Path:
        if record.path:
            return Path(record.path)
        return self.nginx.site_path(record.domain)

    def _is_enabled(self, record: SiteRecord) -> bool:
        if not record.domain and not record.path:
            return False
        return self.nginx.is_enabled(self._site_path(record).name)

    def _hosts_upsert(
        self,
        old_domain: str,
        new_domain: str,
        ip: str,
        op: OperationScope | None,
    ) -> list[str]:
        try:
            result = self.hosts.upsert(old_domain, new_domain, ip)
        except HostsError as exc:
            self._step(op, "hosts.upsert", status="warning", detail=str(exc))
            return [f"{exc}. {self.hosts.manual_instruction(new_domain, ip)}"]
        if result.warning:
            self._step(op, "hosts.upsert", status="warning", detail=result.warning)
            return [result.warning]
        self._step(op, "hosts.upsert", status="success", detail=result.action)
        return []

    def _reload(self, op: OperationScope | None) -> list[str]:
        try:
            detail = self.gate.reload_unconditionally()
        except ServiceError as exc:
            self._step(op, "service.reload", status="warning", detail=str(exc))
            return [f"Reload failed: {exc}"]
        self._step(op, "service.reload", detail=detail)
        return []

    def _record_gate(self, op: OperationScope | None, outcome: GateOutcome) -> None:
        if outcome.status is GateStatus.REJECTED:
            self._step(op, "gate.check", status="error", detail="rejected")
            self._step(op, "service.reload", status="skipped", detail="check failed")
            return
        self._step(op, "gate.check")
        if outcome.status is GateStatus.RELOAD_FAILED:
            self._step(op, "service.reload", status="warning", detail=outcome.reload_detail)
        else:
            self._step(op, "service.reload", detail=outcome.reload_detail)

    @staticmethod
    def _step(
        op: OperationScope | None,
        name: str,
        *,
        status: str = "success",
        detail: str | None = None,
    ) -> None:
        if op is not None:
            op.add_step(name, status=status, detail=detail)

    @staticmethod
    def _failure(
        message: str,
        exit_code: ExitCode,
        *,
        warnings: list[str] | None = None,
    ) -> OperationResult:
        return OperationResult(
            ok=False,
            message=message,
            exit_code=exit_code,
            warnings=list(warnings or []),
            errors=[message],
        )


__all__ = [
    "OperationResult",
    "SiteEdit",
    "SiteInput",
    "SiteInputError",
    "SiteOrchestrator",
    "SiteView",
    "validate_backend_host",
    "validate_domain",
    "validate_ip",
    "validate_port",
    "validate_type",
]
