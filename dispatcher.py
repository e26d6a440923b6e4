"""Turns newly finalized speech into confirmed relay requests."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from intent import extract_command
from protocol import CommandRequest

log = logging.getLogger(__name__)


class CommandDispatcher:
    def __init__(
        self,
        send: Callable[[CommandRequest], Any],
        cwd: Optional[str] = None,
    ) -> None:
        self._send = send
        self._cwd = cwd
        self._last_processed = ""

    @property
    def last_processed(self) -> str:
        return self._last_processed

    def reset(self) -> None:
        self._last_processed = ""

    def extract_new_command(self, final_transcript: str) -> Optional[str]:
        """Look for an instruction in text finalized since the last call.

        The final transcript only grows during a session, so the new part is
        the suffix past what was already processed. A transcript that does
        not extend the previous one is treated as a fresh session.
        """
        final_transcript = final_transcript.strip()
        if not final_transcript or final_transcript == self._last_processed:
            return None
        if self._last_processed and final_transcript.startswith(self._last_processed):
            fresh = final_transcript[len(self._last_processed):]
        else:
            fresh = final_transcript
        self._last_processed = final_transcript
        command = extract_command(fresh)
        if command:
            log.info("Instruction detected: %s", command)
        return command

    def submit(self, command: str, confirmed: bool) -> Optional[CommandRequest]:
        if not confirmed:
            log.info("Command declined: %s", command)
            return None
        request = CommandRequest.create(command, cwd=self._cwd, confirm=True)
        self._send(request)
        return request
