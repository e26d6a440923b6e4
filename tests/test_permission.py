from __future__ import annotations

from typing import List, Optional

from errors import MicrophoneDenied, MicrophoneNotFound
from models import PermissionState
from permission import PermissionGate


class FakeProbe:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.calls = 0

    def probe(self) -> None:
        self.calls += 1
        if self.error is not None:
            raise self.error


def test_initial_status_is_prompt() -> None:
    gate = PermissionGate(FakeProbe())
    assert gate.status == PermissionState.PROMPT
    assert gate.supported


def test_probe_outcome_mapping() -> None:
    assert PermissionGate(FakeProbe()).request_permission() == PermissionState.GRANTED
    assert PermissionGate(FakeProbe(MicrophoneDenied("no"))).request_permission() == PermissionState.DENIED
    assert PermissionGate(FakeProbe(MicrophoneNotFound("none"))).request_permission() == PermissionState.UNAVAILABLE
    assert PermissionGate(FakeProbe(OSError("busy"))).request_permission() == PermissionState.DENIED


def test_without_probe_is_unavailable() -> None:
    gate = PermissionGate(None)

    assert gate.status == PermissionState.UNAVAILABLE
    assert gate.check() == PermissionState.UNAVAILABLE
    assert gate.request_permission() == PermissionState.UNAVAILABLE
    assert not gate.supported
    assert gate._run_probe() == PermissionState.UNAVAILABLE


def test_check_reports_checking_first() -> None:
    statuses: List[PermissionState] = []
    gate = PermissionGate(FakeProbe(), on_status_change=statuses.append)

    gate.check()

    assert statuses == [PermissionState.CHECKING, PermissionState.GRANTED]


def test_on_granted_fires_once_per_grant() -> None:
    grants: List[int] = []
    probe = FakeProbe()
    gate = PermissionGate(probe, on_granted=lambda: grants.append(1))

    gate.check()
    gate.request_permission()
    gate.check()

    assert probe.calls == 3
    assert len(grants) == 1


def test_on_granted_rearms_after_losing_access() -> None:
    grants: List[int] = []
    probe = FakeProbe()
    gate = PermissionGate(probe, on_granted=lambda: grants.append(1))

    gate.request_permission()
    probe.error = MicrophoneDenied("revoked")
    gate.request_permission()
    probe.error = None
    gate.request_permission()

    assert len(grants) == 2


def test_denied_can_be_retried() -> None:
    probe = FakeProbe(RuntimeError("transient"))
    gate = PermissionGate(probe)

    assert gate.request_permission() == PermissionState.DENIED
    probe.error = None
    assert gate.request_permission() == PermissionState.GRANTED
