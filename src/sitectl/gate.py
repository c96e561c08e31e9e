"""Validate-before-reload gate.

The gate is the only place that decides whether a configuration change takes
effect: it runs the service controller's syntax check and reloads only when
the check passes. A rejected check never triggers a reload, so whatever the
service was serving before keeps being served.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from .providers.service import ServiceController, ServiceError

_LOG = logging.getLogger(__name__)


class GateStatus(str, Enum):
    """Outcome of a gate run."""

    ACTIVATED = "activated"
    REJECTED = "rejected"
    RELOAD_FAILED = "reload-failed"


@dataclass(slots=True)
class GateOutcome:
    """Result of :meth:`ValidationGate.validate_and_activate`."""

    status: GateStatus
    diagnostics: str = ""
    reload_detail: str | None = None

    @property
    def activated(self) -> bool:
        """Return ``True`` when the check passed and the reload succeeded."""
        return self.status is GateStatus.ACTIVATED

    @property
    def check_passed(self) -> bool:
        """Return ``True`` when the syntax check passed."""
        return self.status is not GateStatus.REJECTED


@dataclass(slots=True)
class ValidationGate:
    """Check the live configuration and reload only on success."""

    controller: ServiceController

    def validate_and_activate(
        self,
        on_activated: Callable[[GateOutcome], None] | None = None,
    ) -> GateOutcome:
        """Run the syntax check, then reload when it passes.

        *on_activated* is invoked with the outcome only after a successful
        reload.
        """
        check = self.controller.check()
        if not check.ok:
            _LOG.debug("Configuration check rejected: %s", check.diagnostics)
            return GateOutcome(status=GateStatus.REJECTED, diagnostics=check.diagnostics)
        try:
            detail = self.controller.reload()
        except ServiceError as exc:
            return GateOutcome(
                status=GateStatus.RELOAD_FAILED,
                diagnostics=check.diagnostics,
                reload_detail=str(exc),
            )
        outcome = GateOutcome(
            status=GateStatus.ACTIVATED,
            diagnostics=check.diagnostics,
            reload_detail=detail,
        )
        if on_activated is not None:
            on_activated(outcome)
        return outcome

    def reload_unconditionally(self) -> str:
        """Reload without a syntax check (removal and toggling)."""
        return self.controller.reload()


__all__ = ["GateOutcome", "GateStatus", "ValidationGate"]
