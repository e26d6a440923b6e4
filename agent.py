"""Kaia local execution agent.

A WebSocket server bound to the loopback interface. Confirmed
``execute-command`` requests are run in the platform shell and their output
is streamed back as ``started``/``stdout``/``stderr``/``exit`` events.

Usage::

    kaia-agent --port 5111 --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import codecs
import ipaddress
import logging
import os
from typing import Any, Dict, Optional, Type, Union

import websockets
from websockets.exceptions import ConnectionClosed
from websockets.frames import CloseCode

from interfaces import ShellLauncher
from protocol import CommandEvent, CommandRequest, Exit, Started, Stderr, Stdout, encode_event, parse_request
from shell import select_launcher

log = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5111
READ_SIZE = 4096


def _setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def is_loopback_address(address: Any) -> bool:
    """True for a peer address (host string or socket tuple) on loopback."""
    if not address:
        return False
    host = address[0] if isinstance(address, (tuple, list)) else address
    try:
        ip = ipaddress.ip_address(str(host).split("%", 1)[0])
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped.is_loopback
    return ip.is_loopback


class _ConnectionSession:
    """Requests running for one client connection."""

    def __init__(self, connection: Any, launcher: ShellLauncher) -> None:
        self._connection = connection
        self._launcher = launcher
        self._tasks: Dict[str, asyncio.Task] = {}
        self._processes: Dict[str, asyncio.subprocess.Process] = {}
        self._closing = False

    @property
    def open_ids(self) -> list:
        return list(self._tasks)

    def dispatch(self, raw: Union[str, bytes]) -> Optional[asyncio.Task]:
        request = parse_request(raw)
        if request is None:
            log.debug("Ignored message: %.200r", raw)
            return None
        if request.id in self._tasks:
            log.warning("[%s] ignored, id is still running", request.id)
            return None
        task = asyncio.create_task(self._run(request))
        self._tasks[request.id] = task
        task.add_done_callback(lambda _t, rid=request.id: self._tasks.pop(rid, None))
        return task

    async def shutdown(self) -> None:
        self._closing = True
        for request_id, process in list(self._processes.items()):
            if process.returncode is None:
                log.warning("[%s] connection dropped, killing pid %s", request_id, process.pid)
                try:
                    self._launcher.kill(process)
                except OSError as exc:
                    log.error("[%s] kill failed: %s", request_id, exc)
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, request: CommandRequest) -> None:
        log.info("[%s] $ %s", request.id, request.command)
        await self._send(request.id, Started(command=request.command))
        try:
            process = await self._launcher.spawn(request.command, cwd=request.cwd)
        except (OSError, ValueError) as exc:
            log.error("[%s] spawn failed: %s", request.id, exc)
            await self._send(request.id, Exit(code=None))
            return

        if self._closing:
            log.warning("[%s] connection dropped during spawn, killing pid %s", request.id, process.pid)
            try:
                self._launcher.kill(process)
            except OSError as exc:
                log.error("[%s] kill failed: %s", request.id, exc)
        self._processes[request.id] = process
        try:
            await asyncio.gather(
                self._pump(request.id, process.stdout, Stdout),
                self._pump(request.id, process.stderr, Stderr),
            )
            returncode = await process.wait()
        finally:
            self._processes.pop(request.id, None)

        # Negative return codes mean the process was killed by a signal.
        code = returncode if returncode is not None and returncode >= 0 else None
        log.info("[%s] exit %s", request.id, code)
        await self._send(request.id, Exit(code=code))

    async def _pump(
        self,
        request_id: str,
        stream: Optional[asyncio.StreamReader],
        event_type: Type[Union[Stdout, Stderr]],
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(READ_SIZE)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    await self._send(request_id, event_type(chunk=tail))
                return
            text = decoder.decode(data)
            if text:
                await self._send(request_id, event_type(chunk=text))

    async def _send(self, request_id: str, event: CommandEvent) -> None:
        try:
            await self._connection.send(encode_event(request_id, event))
        except ConnectionClosed:
            log.debug("[%s] dropped %s event, connection closed", request_id, event.type)


class LocalExecutionAgent:
    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        launcher: Optional[ShellLauncher] = None,
    ) -> None:
        self.host = host
        self.port = port
        self._launcher = launcher or select_launcher()
        self._server: Any = None

    @property
    def bound_port(self) -> Optional[int]:
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    async def start(self) -> None:
        if not is_loopback_address(self.host):
            log.warning("Binding to non-loopback host %s; remote peers are still rejected", self.host)
        self._server = await websockets.serve(self.handle_connection, self.host, self.port)
        log.info("Kaia agent listening on ws://%s:%s", self.host, self.bound_port)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()

    async def handle_connection(self, connection: Any) -> None:
        peer = connection.remote_address
        if not is_loopback_address(peer):
            log.warning("Rejected connection from %s", peer)
            await connection.close(CloseCode.POLICY_VIOLATION, "Forbidden")
            return

        log.info("Client connected: %s", peer)
        session = _ConnectionSession(connection, self._launcher)
        try:
            async for message in connection:
                session.dispatch(message)
        except ConnectionClosed as exc:
            log.debug("Connection closed abnormally: %s", exc)
        finally:
            await session.shutdown()
            log.info("Client disconnected: %s", peer)


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Kaia local execution agent")
    parser.add_argument("--host", default=DEFAULT_HOST, help="Interface to bind (default: %(default)s)")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("KAIA_AGENT_PORT", DEFAULT_PORT)),
        help="Port to listen on (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("KAIA_LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
    )
    args = parser.parse_args(argv)

    _setup_logging(args.log_level)
    agent = LocalExecutionAgent(host=args.host, port=args.port)
    try:
        asyncio.run(agent.serve_forever())
    except KeyboardInterrupt:
        log.info("Agent stopped.")
    except OSError as exc:
        log.error("Agent could not start: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
