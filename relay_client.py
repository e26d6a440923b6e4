"""Client side of the local command relay."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Callable, List, Optional, Set, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from protocol import CommandEvent, CommandRequest, Exit, Started, Stderr, Stdout, decode_event

log = logging.getLogger(__name__)

DEFAULT_AGENT_URI = "ws://127.0.0.1:5111"
CONNECTED_NOTICE = "[agent] connected\n"
DISCONNECTED_NOTICE = "[agent] disconnected\n"


class CommandOutputBuffer:
    """Accumulated text shown in the command output window."""

    def __init__(self, on_change: Optional[Callable[[str], None]] = None) -> None:
        self._parts: List[str] = []
        self._lock = threading.Lock()
        self._on_change = on_change

    def append(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            self._parts.append(text)
        if self._on_change:
            self._on_change(text)

    def apply(self, event: CommandEvent) -> None:
        if isinstance(event, Started):
            self.append(f"\n$ {event.command}\n")
        elif isinstance(event, (Stdout, Stderr)):
            self.append(event.chunk)
        elif isinstance(event, Exit):
            code = "null" if event.code is None else event.code
            self.append(f"\n[exit {code}]\n")

    def text(self) -> str:
        with self._lock:
            return "".join(self._parts)

    def clear(self) -> None:
        with self._lock:
            self._parts.clear()


class CommandRelayClient:
    """One WebSocket connection to the execution agent, without reconnect."""

    def __init__(
        self,
        uri: str = DEFAULT_AGENT_URI,
        buffer: Optional[CommandOutputBuffer] = None,
        on_event: Optional[Callable[[str, CommandEvent], None]] = None,
        on_connection_change: Optional[Callable[[bool], None]] = None,
        open_timeout: float = 5.0,
    ) -> None:
        self.uri = uri
        self.buffer = buffer or CommandOutputBuffer()
        self._on_event = on_event
        self._on_connection_change = on_connection_change
        self._open_timeout = open_timeout
        self._connection: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._open_ids: Set[str] = set()

    @property
    def connected(self) -> bool:
        return self._connection is not None

    @property
    def open_ids(self) -> Set[str]:
        return set(self._open_ids)

    async def connect(self) -> bool:
        if self._connection is not None:
            return True
        try:
            self._connection = await websockets.connect(self.uri, open_timeout=self._open_timeout)
        except (OSError, TimeoutError, asyncio.TimeoutError, WebSocketException) as exc:
            log.warning("Agent unreachable at %s: %s", self.uri, exc)
            return False
        log.info("Connected to agent at %s", self.uri)
        self.buffer.append(CONNECTED_NOTICE)
        if self._on_connection_change:
            self._on_connection_change(True)
        self._reader = asyncio.create_task(self._read_loop(self._connection))
        return True

    async def send(self, request: CommandRequest) -> bool:
        """Send a confirmed request; False when it was not transmitted."""
        if request.confirm is not True:
            log.warning("[%s] not sent: command was not confirmed", request.id)
            return False
        if self._connection is None:
            log.warning("[%s] not sent: agent is not connected", request.id)
            return False
        if request.id in self._open_ids:
            log.warning("[%s] not sent: id is still open", request.id)
            return False
        self._open_ids.add(request.id)
        try:
            await self._connection.send(request.to_json())
        except ConnectionClosed:
            self._open_ids.discard(request.id)
            return False
        log.info("[%s] sent: %s", request.id, request.command)
        return True

    def handle_message(self, raw: Union[str, bytes]) -> None:
        decoded = decode_event(raw)
        if decoded is None:
            log.debug("Discarded malformed frame: %.200r", raw)
            return
        request_id, event = decoded
        if request_id not in self._open_ids:
            log.debug("[%s] discarded %s event for unknown id", request_id, event.type)
            return
        if isinstance(event, Exit):
            self._open_ids.discard(request_id)
        self.buffer.apply(event)
        if self._on_event:
            self._on_event(request_id, event)

    async def close(self) -> None:
        connection = self._connection
        if connection is not None:
            await connection.close()
        if self._reader is not None:
            await self._reader
            self._reader = None

    async def _read_loop(self, connection: Any) -> None:
        try:
            async for raw in connection:
                self.handle_message(raw)
        except ConnectionClosed as exc:
            log.debug("Agent connection closed: %s", exc)
        finally:
            self._connection = None
            self._open_ids.clear()
            log.info("Disconnected from agent")
            self.buffer.append(DISCONNECTED_NOTICE)
            if self._on_connection_change:
                self._on_connection_change(False)


class BackgroundRelay:
    """Runs a CommandRelayClient on an event loop in a daemon thread."""

    def __init__(self, client: CommandRelayClient, timeout_s: float = 5.0) -> None:
        self.client = client
        self._timeout_s = timeout_s
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._ready.clear()

        def run_loop() -> None:
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            self._ready.set()
            try:
                self._loop.run_forever()
            finally:
                self._loop.close()

        self._thread = threading.Thread(target=run_loop, daemon=True)
        self._thread.start()
        self._ready.wait(timeout=self._timeout_s)

    def connect(self) -> bool:
        try:
            return bool(self._run(self.client.connect()).result(timeout=self._timeout_s + 1.0))
        except concurrent.futures.TimeoutError:
            log.warning("Timed out connecting to agent")
            return False

    def submit(self, request: CommandRequest) -> concurrent.futures.Future:
        return self._run(self.client.send(request))

    def stop(self) -> None:
        loop = self._loop
        if loop is None or not loop.is_running():
            return
        try:
            self._run(self.client.close()).result(timeout=self._timeout_s)
        except concurrent.futures.TimeoutError:
            log.warning("Timed out closing agent connection")
        loop.call_soon_threadsafe(loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=self._timeout_s)
        self._loop = None
        self._thread = None

    def _run(self, coro: Any) -> concurrent.futures.Future:
        if self._loop is None:
            self.start()
        assert self._loop is not None
        return asyncio.run_coroutine_threadsafe(coro, self._loop)
