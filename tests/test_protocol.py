from __future__ import annotations

import json

from protocol import (
    CommandRequest,
    Exit,
    Started,
    Stderr,
    Stdout,
    decode_event,
    encode_event,
    parse_request,
)


def _request(**fields) -> str:  # noqa: ANN003
    data = {"kind": "execute-command", "id": "r1", "command": "dir", "confirm": True}
    data.update(fields)
    return json.dumps(data)


# ---------------------------------------------------------------
# Requests
# ---------------------------------------------------------------

def test_request_to_json_has_wire_fields() -> None:
    request = CommandRequest(id="r1", command="echo hi", cwd="/tmp", confirm=True)
    assert json.loads(request.to_json()) == {
        "kind": "execute-command",
        "id": "r1",
        "command": "echo hi",
        "cwd": "/tmp",
        "confirm": True,
    }


def test_create_generates_unique_ids() -> None:
    first = CommandRequest.create("dir", confirm=True)
    second = CommandRequest.create("dir", confirm=True)
    assert first.id != second.id
    assert "cwd" not in first.to_dict()


def test_parse_confirmed_request() -> None:
    request = parse_request(_request(cwd="C:\\Users"))
    assert request == CommandRequest(id="r1", command="dir", cwd="C:\\Users", confirm=True)


def test_parse_requires_literal_true_confirm() -> None:
    assert parse_request(_request(confirm=False)) is None
    assert parse_request(_request(confirm="true")) is None
    assert parse_request(_request(confirm=1)) is None
    data = json.loads(_request())
    del data["confirm"]
    assert parse_request(json.dumps(data)) is None


def test_parse_rejects_malformed_frames() -> None:
    assert parse_request("not json") is None
    assert parse_request("[1, 2]") is None
    assert parse_request(_request(kind="something-else")) is None
    assert parse_request(_request(command="")) is None
    assert parse_request(_request(command=42)) is None


def test_parse_generates_missing_id() -> None:
    data = json.loads(_request())
    del data["id"]
    request = parse_request(json.dumps(data))
    assert request is not None
    assert len(request.id) == 32


# ---------------------------------------------------------------
# Events
# ---------------------------------------------------------------

def test_encode_event_frames() -> None:
    assert json.loads(encode_event("r1", Started(command="dir"))) == {
        "kind": "event",
        "id": "r1",
        "event": {"type": "started", "command": "dir"},
    }
    assert json.loads(encode_event("r1", Exit(code=None)))["event"] == {"type": "exit", "code": None}


def test_decode_event_variants() -> None:
    for event in (Started(command="ls"), Stdout(chunk="a\n"), Stderr(chunk="err"), Exit(code=0), Exit(code=None)):
        assert decode_event(encode_event("r9", event)) == ("r9", event)


def test_decode_event_rejects_malformed() -> None:
    assert decode_event("{") is None
    assert decode_event(json.dumps({"kind": "event", "id": "r1"})) is None
    assert decode_event(json.dumps({"kind": "event", "id": "r1", "event": {"type": "bogus"}})) is None
    assert decode_event(json.dumps({"kind": "event", "id": "r1", "event": {"type": "exit", "code": "0"}})) is None
    assert decode_event(json.dumps({"kind": "event", "id": "r1", "event": {"type": "exit", "code": True}})) is None
    assert decode_event(json.dumps({"kind": "event", "id": "r1", "event": {"type": "stdout"}})) is None
