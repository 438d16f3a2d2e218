"""
Transport layer for frida_remote.

Responsibilities:
    * Own one JSON-lines stream to the instrumentation server.
    * Correlate requests and replies through the ``seq`` field.
    * Hand every unsolicited frame to the event handler, in arrival order.
    * Reject whatever is still pending when the stream goes away.

Framing: one UTF-8 JSON object per ``\\n`` terminated line.  Replies carry
``seq`` and ``status``; events carry ``type`` and never ``status``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import ConnectError, ConnectionClosed, ProtocolError, RpcError


logger = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 27042

EventHandler = Callable[[Dict[str, Any]], None]
CloseCallback = Callable[[str], None]


@dataclass
class ConnectionConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    connect_timeout: float = 5.0
    handshake_timeout: float = 5.0
    client_name: str = "frida-remote"
    token: Optional[str] = None
    features: Optional[List[str]] = None
    max_frame_bytes: int = 16 * 1024 * 1024
    message_backlog: int = 256

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


def parse_host(value: str, default_port: int = DEFAULT_PORT) -> Tuple[str, int]:
    """Split ``host``, ``host:port`` or ``[v6]:port`` into its parts."""

    text = value.strip()
    if not text:
        raise ValueError("empty host")
    if text.startswith("["):
        end = text.find("]")
        if end < 0:
            raise ValueError(f"invalid host: {value!r}")
        host = text[1:end]
        rest = text[end + 1 :]
        if not rest:
            return host, default_port
        if not rest.startswith(":"):
            raise ValueError(f"invalid host: {value!r}")
        port_text = rest[1:]
    elif text.count(":") == 1:
        host, port_text = text.split(":", 1)
    else:
        return text, default_port
    try:
        port = int(port_text)
    except ValueError as exc:
        raise ValueError(f"invalid port in {value!r}") from exc
    if not 0 < port < 65536:
        raise ValueError(f"port out of range in {value!r}")
    return host or DEFAULT_HOST, port


def encode_frame(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8") + b"\n"


def decode_frame(line: bytes) -> Dict[str, Any]:
    try:
        message = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"malformed frame: {exc}") from exc
    if not isinstance(message, dict):
        raise ProtocolError(f"frame is not an object: {type(message).__name__}")
    return message


@dataclass
class PendingRequest:
    seq: int
    method: str
    future: "asyncio.Future[Dict[str, Any]]"
    issued_at: float = field(default_factory=time.monotonic)


class FridaTransport:
    """Asynchronous JSON-lines RPC transport over an asyncio stream pair."""

    # Cancelled requests remembered so their late replies are not counted as violations.
    abandoned_limit = 1024

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        config: Optional[ConnectionConfig] = None,
        label: str = "",
    ) -> None:
        self.config = config or ConnectionConfig()
        self.label = label or self.config.address
        self._reader = reader
        self._writer = writer
        self._write_lock = asyncio.Lock()
        self._state = "connecting"
        self._close_reason: Optional[str] = None
        self._next_id = 1
        self._pending: Dict[int, PendingRequest] = {}
        self._abandoned: "OrderedDict[int, None]" = OrderedDict()
        self._reader_task: Optional[asyncio.Task] = None
        self._event_handler: Optional[EventHandler] = None
        self._on_close: List[CloseCallback] = []
        self.protocol_violations = 0

    #
    # Connection lifecycle helpers
    #
    @classmethod
    async def dial(cls, host: str, port: int, config: Optional[ConnectionConfig] = None) -> "FridaTransport":
        """Open a TCP stream to ``host:port``; failures raise ConnectError."""

        config = config or ConnectionConfig(host=host, port=port)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, limit=config.max_frame_bytes),
                timeout=config.connect_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ConnectError(f"connect to {host}:{port} timed out") from exc
        except OSError as exc:
            raise ConnectError(f"connect to {host}:{port} failed: {exc}") from exc
        logger.debug("connected to %s:%s", host, port)
        return cls(reader, writer, config=config, label=f"{host}:{port}")

    @property
    def state(self) -> str:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state == "closed"

    @property
    def close_reason(self) -> Optional[str]:
        return self._close_reason

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def abandoned_count(self) -> int:
        return len(self._abandoned)

    def set_event_handler(self, handler: Optional[EventHandler]) -> None:
        self._event_handler = handler

    def register_on_close(self, callback: CloseCallback) -> None:
        self._on_close.append(callback)

    def start(self) -> None:
        """Begin demultiplexing inbound frames.  Call once the handshake is done."""

        if self._reader_task is not None or self.closed:
            return
        self._state = "open"
        self._reader_task = asyncio.get_running_loop().create_task(self._reader_loop())

    async def close(self) -> None:
        self._teardown("closed by client")
        task = self._reader_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        try:
            await self._writer.wait_closed()
        except (OSError, RuntimeError) as exc:
            logger.debug("error while closing %s: %s", self.label, exc)

    #
    # Framing
    #
    async def write_frame(self, payload: Dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionClosed(self._closed_message())
        data = encode_frame(payload)
        async with self._write_lock:
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (OSError, RuntimeError) as exc:
                self._teardown(f"write failed: {exc}")
                raise ConnectionClosed(f"connection to {self.label} lost: {exc}") from exc
        logger.debug("-> %s", payload.get("cmd"))

    async def read_frame(self) -> Optional[Dict[str, Any]]:
        """Read the next frame directly; returns None at end of stream.

        Only valid before :meth:`start`; afterwards the reader loop owns the
        stream.
        """

        while True:
            try:
                line = await self._reader.readline()
            except (asyncio.LimitOverrunError, ValueError) as exc:
                raise ProtocolError(f"frame exceeds {self.config.max_frame_bytes} bytes") from exc
            if not line or not line.endswith(b"\n"):
                return None
            if len(line) > self.config.max_frame_bytes:
                raise ProtocolError(f"frame exceeds {self.config.max_frame_bytes} bytes")
            if line.strip():
                return decode_frame(line)

    #
    # Requests
    #
    def _next_seq(self) -> int:
        seq = self._next_id
        self._next_id += 1
        return seq

    async def request(self, cmd: str, **args: Any) -> Dict[str, Any]:
        """Send ``cmd`` and wait for its reply.

        Raises RpcError when the server answers with an error status and
        ConnectionClosed when the connection ends first.
        """

        if self.closed:
            raise ConnectionClosed(self._closed_message())
        seq = self._next_seq()
        future: asyncio.Future[Dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[seq] = PendingRequest(seq=seq, method=cmd, future=future)
        payload: Dict[str, Any] = {"seq": seq, "cmd": cmd}
        payload.update({key: value for key, value in args.items() if value is not None})
        try:
            try:
                await self.write_frame(payload)
            except BaseException:
                # Nobody will await the future; teardown may already have rejected it.
                if future.done() and not future.cancelled():
                    future.exception()
                else:
                    future.cancel()
                raise
            return await future
        except asyncio.CancelledError:
            if seq in self._pending:
                self._abandon(seq)
            raise
        finally:
            self._pending.pop(seq, None)

    def _abandon(self, seq: int) -> None:
        self._abandoned[seq] = None
        while len(self._abandoned) > self.abandoned_limit:
            self._abandoned.popitem(last=False)

    #
    # Internal helpers
    #
    async def _reader_loop(self) -> None:
        reason = "connection closed by server"
        try:
            while True:
                try:
                    line = await self._reader.readline()
                except (asyncio.LimitOverrunError, ValueError):
                    reason = f"frame exceeds {self.config.max_frame_bytes} bytes"
                    logger.warning("%s: %s", self.label, reason)
                    break
                if not line or not line.endswith(b"\n"):
                    break
                if not line.strip():
                    continue
                if len(line) > self.config.max_frame_bytes:
                    reason = f"frame exceeds {self.config.max_frame_bytes} bytes"
                    logger.warning("%s: %s", self.label, reason)
                    break
                try:
                    message = decode_frame(line)
                except ProtocolError as exc:
                    self.protocol_violations += 1
                    logger.warning("%s: dropping %s", self.label, exc)
                    continue
                if self._is_event(message):
                    self._dispatch_event(message)
                    continue
                self._handle_response(message)
        except OSError as exc:
            reason = f"read failed: {exc}"
        self._teardown(reason)

    def _handle_response(self, message: Dict[str, Any]) -> None:
        seq = message.get("seq")
        pending = self._pending.get(seq) if isinstance(seq, int) else None
        if pending is None:
            if isinstance(seq, int) and seq in self._abandoned:
                del self._abandoned[seq]
                logger.debug("%s: reply for abandoned request %s", self.label, seq)
                return
            self.protocol_violations += 1
            logger.warning("%s: reply with unknown seq %r: %s", self.label, seq, message)
            return
        del self._pending[seq]
        if pending.future.done():
            return
        status = message.get("status")
        if status == "ok":
            pending.future.set_result(message)
            return
        description = str(message.get("error") or f"{pending.method} failed with status {status!r}")
        code = message.get("code")
        pending.future.set_exception(
            RpcError(description, code=str(code) if code else None, method=pending.method)
        )

    def _dispatch_event(self, message: Dict[str, Any]) -> None:
        handler = self._event_handler
        if not handler:
            logger.debug("%s: no event handler for %s", self.label, message.get("type"))
            return
        try:
            handler(message)
        except Exception:
            logger.exception("%s: event handler failed for %s", self.label, message.get("type"))

    def _is_event(self, message: Dict[str, Any]) -> bool:
        return "type" in message and "status" not in message

    def _closed_message(self) -> str:
        return f"connection to {self.label} is closed ({self._close_reason or 'closed'})"

    def _teardown(self, reason: str) -> None:
        if self.closed:
            return
        self._state = "closed"
        self._close_reason = reason
        logger.debug("%s: closing (%s)", self.label, reason)
        try:
            self._writer.close()
        except (OSError, RuntimeError) as exc:
            logger.debug("error while closing %s: %s", self.label, exc)
        pending = list(self._pending.values())
        self._pending.clear()
        self._abandoned.clear()
        for request in pending:
            if not request.future.done():
                request.future.set_exception(
                    ConnectionClosed(f"{request.method} aborted: connection to {self.label} closed ({reason})")
                )
        for callback in list(self._on_close):
            try:
                callback(reason)
            except Exception:
                logger.exception("%s: close callback failed", self.label)
