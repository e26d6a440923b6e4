"""Wire format of the local command relay.

Client to agent::

    {"kind": "execute-command", "id": str, "command": str, "cwd"?: str, "confirm": true}

Agent to client::

    {"kind": "event", "id": str, "event": {"type": "started", "command": str}}
    {"kind": "event", "id": str, "event": {"type": "stdout", "chunk": str}}
    {"kind": "event", "id": str, "event": {"type": "stderr", "chunk": str}}
    {"kind": "event", "id": str, "event": {"type": "exit", "code": int | null}}
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

EXECUTE_COMMAND = "execute-command"
EVENT = "event"


@dataclass(frozen=True)
class CommandRequest:
    id: str
    command: str
    cwd: Optional[str] = None
    confirm: bool = False

    @classmethod
    def create(cls, command: str, cwd: Optional[str] = None, confirm: bool = False) -> "CommandRequest":
        return cls(id=uuid.uuid4().hex, command=command, cwd=cwd, confirm=confirm)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "kind": EXECUTE_COMMAND,
            "id": self.id,
            "command": self.command,
            "confirm": self.confirm,
        }
        if self.cwd:
            data["cwd"] = self.cwd
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass(frozen=True)
class Started:
    command: str
    type: str = "started"


@dataclass(frozen=True)
class Stdout:
    chunk: str
    type: str = "stdout"


@dataclass(frozen=True)
class Stderr:
    chunk: str
    type: str = "stderr"


@dataclass(frozen=True)
class Exit:
    code: Optional[int]
    type: str = "exit"


CommandEvent = Union[Started, Stdout, Stderr, Exit]


def _load_object(raw: Union[str, bytes]) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def parse_request(raw: Union[str, bytes]) -> Optional[CommandRequest]:
    """Decode an execute request; None for anything that must not run.

    Only ``confirm`` being literally ``true`` is accepted; truthy strings or
    numbers are not.
    """
    data = _load_object(raw)
    if data is None or data.get("kind") != EXECUTE_COMMAND:
        return None
    if data.get("confirm") is not True:
        return None
    command = data.get("command")
    if not isinstance(command, str) or not command.strip():
        return None
    request_id = data.get("id")
    if not isinstance(request_id, str) or not request_id:
        request_id = uuid.uuid4().hex
    cwd = data.get("cwd")
    if not isinstance(cwd, str) or not cwd:
        cwd = None
    return CommandRequest(id=request_id, command=command, cwd=cwd, confirm=True)


def event_to_dict(event: CommandEvent) -> Dict[str, Any]:
    if isinstance(event, Started):
        return {"type": event.type, "command": event.command}
    if isinstance(event, (Stdout, Stderr)):
        return {"type": event.type, "chunk": event.chunk}
    return {"type": event.type, "code": event.code}


def encode_event(request_id: str, event: CommandEvent) -> str:
    return json.dumps({"kind": EVENT, "id": request_id, "event": event_to_dict(event)})


def decode_event(raw: Union[str, bytes]) -> Optional[Tuple[str, CommandEvent]]:
    """Decode an agent event frame; None when the frame is malformed."""
    data = _load_object(raw)
    if data is None or data.get("kind") != EVENT:
        return None
    request_id = data.get("id")
    payload = data.get("event")
    if not isinstance(request_id, str) or not isinstance(payload, dict):
        return None

    event_type = payload.get("type")
    event: CommandEvent
    if event_type == "started" and isinstance(payload.get("command"), str):
        event = Started(command=payload["command"])
    elif event_type == "stdout" and isinstance(payload.get("chunk"), str):
        event = Stdout(chunk=payload["chunk"])
    elif event_type == "stderr" and isinstance(payload.get("chunk"), str):
        event = Stderr(chunk=payload["chunk"])
    elif event_type == "exit":
        code = payload.get("code")
        if code is not None and (not isinstance(code, int) or isinstance(code, bool)):
            return None
        event = Exit(code=code)
    else:
        return None
    return request_id, event
