"""Tests for CommandRelayClient and CommandOutputBuffer."""

from __future__ import annotations

import asyncio
from typing import List, Optional

from agent import LocalExecutionAgent
from protocol import CommandRequest, Exit, Started, Stdout, encode_event
from relay_client import (
    CONNECTED_NOTICE,
    DISCONNECTED_NOTICE,
    BackgroundRelay,
    CommandOutputBuffer,
    CommandRelayClient,
)


class FakeConnection:
    def __init__(self) -> None:
        self.sent: List[str] = []

    async def send(self, message: str) -> None:
        self.sent.append(message)


class EchoLauncher:
    """Answers every command with its own text on stdout."""

    def argv(self, command: str) -> List[str]:
        return ["echo", command]

    async def spawn(self, command: str, cwd: Optional[str] = None):  # noqa: ANN201
        return _Finished(command.encode("utf-8") + b"\n")

    def kill(self, process) -> None:  # noqa: ANN001
        pass


class _Finished:
    def __init__(self, out: bytes) -> None:
        self.pid = 1
        self.returncode: Optional[int] = None
        self.stdout = asyncio.StreamReader()
        self.stdout.feed_data(out)
        self.stdout.feed_eof()
        self.stderr = asyncio.StreamReader()
        self.stderr.feed_eof()

    async def wait(self) -> int:
        self.returncode = 0
        return 0


# ---------------------------------------------------------------
# CommandOutputBuffer
# ---------------------------------------------------------------

def test_buffer_banners() -> None:
    changes: List[str] = []
    buffer = CommandOutputBuffer(on_change=changes.append)

    buffer.apply(Started(command="dir"))
    buffer.apply(Stdout(chunk="a.txt\r\n"))
    buffer.apply(Exit(code=0))
    buffer.apply(Exit(code=None))

    assert buffer.text() == "\n$ dir\na.txt\r\n\n[exit 0]\n\n[exit null]\n"
    assert len(changes) == 4

    buffer.clear()
    assert buffer.text() == ""


# ---------------------------------------------------------------
# send / handle_message
# ---------------------------------------------------------------

def _connected_client() -> tuple:
    client = CommandRelayClient()
    connection = FakeConnection()
    client._connection = connection
    return client, connection


def test_send_requires_confirmation() -> None:
    client, connection = _connected_client()

    sent = asyncio.run(client.send(CommandRequest(id="r1", command="dir", confirm=False)))

    assert sent is False
    assert connection.sent == []


def test_send_requires_connection() -> None:
    client = CommandRelayClient()
    assert asyncio.run(client.send(CommandRequest.create("dir", confirm=True))) is False


def test_send_rejects_id_still_open() -> None:
    client, connection = _connected_client()
    request = CommandRequest(id="r1", command="dir", confirm=True)

    assert asyncio.run(client.send(request)) is True
    assert asyncio.run(client.send(request)) is False
    assert len(connection.sent) == 1
    assert client.open_ids == {"r1"}


def test_events_update_buffer_and_exit_closes_id() -> None:
    received: list = []
    client = CommandRelayClient(on_event=lambda rid, event: received.append((rid, event)))
    client._connection = FakeConnection()
    asyncio.run(client.send(CommandRequest(id="r1", command="dir", confirm=True)))

    client.handle_message(encode_event("r1", Started(command="dir")))
    client.handle_message(encode_event("r1", Stdout(chunk="ok\n")))
    client.handle_message(encode_event("r1", Exit(code=0)))
    client.handle_message(encode_event("r1", Stdout(chunk="late\n")))

    assert client.buffer.text() == "\n$ dir\nok\n\n[exit 0]\n"
    assert client.open_ids == set()
    assert [event.type for _, event in received] == ["started", "stdout", "exit"]


def test_unknown_ids_and_malformed_frames_are_dropped() -> None:
    client, _ = _connected_client()

    client.handle_message(encode_event("never-sent", Stdout(chunk="x")))
    client.handle_message("{not json")
    client.handle_message('{"kind": "event", "id": 5}')

    assert client.buffer.text() == ""


# ---------------------------------------------------------------
# Against a running agent
# ---------------------------------------------------------------

def test_round_trip_with_agent() -> None:
    async def scenario() -> CommandRelayClient:
        agent = LocalExecutionAgent(port=0, launcher=EchoLauncher())
        await agent.start()
        done = asyncio.Event()
        client = CommandRelayClient(
            f"ws://127.0.0.1:{agent.bound_port}",
            on_event=lambda rid, event: done.set() if isinstance(event, Exit) else None,
        )
        try:
            assert await client.connect()
            assert await client.send(CommandRequest(id="r1", command="hi", confirm=True))
            await asyncio.wait_for(done.wait(), timeout=10)
            await client.close()
        finally:
            await agent.stop()
        return client

    client = asyncio.run(scenario())

    assert client.buffer.text() == (
        CONNECTED_NOTICE + "\n$ hi\nhi\n\n[exit 0]\n" + DISCONNECTED_NOTICE
    )
    assert not client.connected


def test_connect_failure_returns_false() -> None:
    client = CommandRelayClient("ws://127.0.0.1:9", open_timeout=1.0)

    assert asyncio.run(client.connect()) is False
    assert client.buffer.text() == ""


def test_background_relay_round_trip() -> None:
    relay = BackgroundRelay(CommandRelayClient("ws://127.0.0.1:9", open_timeout=0.5), timeout_s=2.0)
    relay.start()
    try:
        assert relay.connect() is False
        future = relay.submit(CommandRequest.create("dir", confirm=True))
        assert future.result(timeout=2.0) is False
    finally:
        relay.stop()
