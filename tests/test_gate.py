"""Tests for the validate-before-reload gate."""
from __future__ import annotations

from sitectl.gate import GateOutcome, GateStatus, ValidationGate
from sitectl.providers.service import ServiceController

from conftest import FakeController


def test_fake_controller_satisfies_protocol(controller: FakeController) -> None:
    """The recording double implements the controller contract."""
    assert isinstance(controller, ServiceController)


def test_passing_check_reloads_once(controller: FakeController) -> None:
    """A passing check is followed by exactly one reload."""
    seen: list[GateOutcome] = []

    outcome = ValidationGate(controller).validate_and_activate(seen.append)

    assert outcome.status is GateStatus.ACTIVATED
    assert outcome.activated and outcome.check_passed
    assert controller.calls == ["check", "reload"]
    assert seen == [outcome]


def test_failing_check_never_reloads(controller: FakeController) -> None:
    """A rejected check returns verbatim diagnostics and never reloads."""
    controller.check_ok = False
    controller.diagnostics = 'nginx: [emerg] unknown directive "prox_pass" in x:7\n'
    seen: list[GateOutcome] = []

    outcome = ValidationGate(controller).validate_and_activate(seen.append)

    assert outcome.status is GateStatus.REJECTED
    assert outcome.diagnostics == 'nginx: [emerg] unknown directive "prox_pass" in x:7\n'
    assert "reload" not in controller.calls
    assert seen == []


def test_reload_failure_is_reported(controller: FakeController) -> None:
    """A failed reload after a passing check is distinguished from rejection."""
    controller.reload_error = "Job for nginx.service failed"
    seen: list[GateOutcome] = []

    outcome = ValidationGate(controller).validate_and_activate(seen.append)

    assert outcome.status is GateStatus.RELOAD_FAILED
    assert outcome.check_passed and not outcome.activated
    assert outcome.reload_detail == "Job for nginx.service failed"
    assert seen == []


def test_reload_unconditionally_skips_check(controller: FakeController) -> None:
    """Unconditional reloads go straight to the controller."""
    assert ValidationGate(controller).reload_unconditionally() == "reloaded"
    assert controller.calls == ["reload"]
