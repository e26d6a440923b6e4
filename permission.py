"""Microphone permission gate."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from errors import MicrophoneDenied, MicrophoneNotFound
from interfaces import MicrophoneProbe
from models import PermissionState

log = logging.getLogger(__name__)

StatusCallback = Callable[[PermissionState], None]


class PermissionGate:
    """Tracks microphone authorization and fires ``on_granted`` once per grant.

    A gate built without a probe means the runtime has no capture API at all;
    its status is ``unavailable`` and stays that way.
    """

    def __init__(
        self,
        probe: Optional[MicrophoneProbe],
        on_granted: Optional[Callable[[], None]] = None,
        on_status_change: Optional[StatusCallback] = None,
    ) -> None:
        self._probe = probe
        self._on_granted = on_granted
        self._on_status_change = on_status_change
        self._lock = threading.Lock()
        self._status = PermissionState.PROMPT if probe is not None else PermissionState.UNAVAILABLE
        self._auto_started = False

    @property
    def status(self) -> PermissionState:
        return self._status

    @property
    def supported(self) -> bool:
        return self._probe is not None

    def check(self) -> PermissionState:
        """Initial probe, reporting ``checking`` while it runs."""
        if self._probe is None:
            return self._status
        self._set_status(PermissionState.CHECKING)
        return self.request_permission()

    def request_permission(self) -> PermissionState:
        if self._probe is None:
            log.warning("Microphone capture is not supported in this runtime")
            return self._set_status(PermissionState.UNAVAILABLE)
        return self._set_status(self._run_probe())

    def _run_probe(self) -> PermissionState:
        if self._probe is None:
            return PermissionState.UNAVAILABLE
        log.info("Requesting microphone access ...")
        try:
            self._probe.probe()
        except MicrophoneDenied as exc:
            log.warning("Microphone access denied: %s", exc)
            return PermissionState.DENIED
        except MicrophoneNotFound as exc:
            log.warning("No microphone found: %s", exc)
            return PermissionState.UNAVAILABLE
        except Exception as exc:
            log.warning("Microphone probe failed, treating as denied: %s", exc)
            return PermissionState.DENIED
        log.info("Microphone access granted")
        return PermissionState.GRANTED

    def _set_status(self, status: PermissionState) -> PermissionState:
        fire_granted = False
        with self._lock:
            changed = status != self._status
            self._status = status
            if status == PermissionState.GRANTED:
                if not self._auto_started:
                    self._auto_started = True
                    fire_granted = True
            elif status != PermissionState.CHECKING:
                self._auto_started = False
        if changed and self._on_status_change:
            self._on_status_change(status)
        if fire_granted and self._on_granted:
            self._on_granted()
        return status
