"""Connection object and the public control operations."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

from .errors import AttachError, ConnectError, RpcError, SpawnError
from .events import EventRouter
from .handshake import ServerHello, perform_handshake
from .models import ApplicationInfo, Metadata, ProcessInfo
from .scripts import build_direct_script, build_managed_runtime_wrapper
from .session import Script, Session, SessionState
from .transport import ConnectionConfig, FridaTransport, parse_host


logger = logging.getLogger(__name__)

StreamPair = Tuple[asyncio.StreamReader, asyncio.StreamWriter]

_REUSABLE_STATES = {SessionState.ATTACHED, SessionState.RESUMED}


@dataclass(frozen=True)
class SpawnResult:
    session: Session
    pid: int


@dataclass(frozen=True)
class AttachResult:
    session: Session


@dataclass(frozen=True)
class InjectResult:
    session: Session
    script: Script


class Connection:
    """One live client-server relationship.

    Build it with :func:`connect`.  Every Connection owns its transport,
    pending-request table and session registry; nothing is shared between
    Connections.
    """

    def __init__(self, transport: FridaTransport, hello: ServerHello) -> None:
        self.transport = transport
        self.config = transport.config
        self.server = hello
        self._loop = asyncio.get_running_loop()
        self._router = EventRouter()
        transport.set_event_handler(self._router.dispatch)
        transport.register_on_close(self._handle_transport_closed)
        transport.start()

    def __repr__(self) -> str:
        return f"<Connection {self.host} state={self.state}>"

    async def __aenter__(self) -> "Connection":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    @property
    def host(self) -> str:
        return self.transport.label

    @property
    def state(self) -> str:
        return self.transport.state

    @property
    def sessions(self) -> List[Session]:
        return self._router.sessions()

    # ------------------------------------------------------------------
    # Host queries
    # ------------------------------------------------------------------

    async def query_metadata(self) -> Metadata:
        reply = await self.transport.request("host.query_metadata")
        return Metadata.from_payload(reply.get("metadata") or {})

    async def enumerate_processes(self) -> List[ProcessInfo]:
        reply = await self.transport.request("host.enumerate_processes")
        return [ProcessInfo.from_payload(entry) for entry in reply.get("processes") or [] if isinstance(entry, dict)]

    async def enumerate_applications(self) -> List[ApplicationInfo]:
        reply = await self.transport.request("host.enumerate_applications")
        return [
            ApplicationInfo.from_payload(entry) for entry in reply.get("applications") or [] if isinstance(entry, dict)
        ]

    # ------------------------------------------------------------------
    # Target control
    # ------------------------------------------------------------------

    async def spawn_with_script(self, path: str, args: Sequence[str], script_source: str) -> SpawnResult:
        """Spawn ``path`` suspended, load the script, then resume it.

        The resume is only issued after the server acknowledged the load.
        On ScriptLoadError the target stays suspended; ``exc.session`` can
        be used to kill it.
        """

        session = Session(self.transport, self._router, state=SessionState.SPAWNING, loop=self._loop)
        try:
            reply = await self.transport.request("host.spawn", program=path, argv=[path, *args])
        except RpcError as exc:
            raise SpawnError.wrap(exc) from exc
        pid = reply.get("pid")
        if not isinstance(pid, int):
            raise SpawnError(f"spawn reply missing pid: {reply}", method="host.spawn")
        session._spawned(pid)
        logger.debug("spawned %s as pid %s", path, pid)

        await self._attach_session(session)
        await session.load_script(build_direct_script(script_source), backlog=self.config.message_backlog)
        await session.resume()
        return SpawnResult(session=session, pid=pid)

    async def attach_to_process(self, pid: int) -> AttachResult:
        session = Session(self.transport, self._router, pid=pid, loop=self._loop)
        await self._attach_session(session)
        return AttachResult(session=session)

    async def inject_into_process(self, pid: int, script_source: str) -> InjectResult:
        session = self._reusable_session(pid)
        if session is None:
            session = (await self.attach_to_process(pid)).session
        script = await session.load_script(script_source, backlog=self.config.message_backlog)
        return InjectResult(session=session, script=script)

    async def inject_into_nodejs_process(self, pid: int, code_text: str) -> InjectResult:
        return await self.inject_into_process(pid, build_managed_runtime_wrapper(code_text))

    async def disconnect(self) -> None:
        """Close the link.  Targets keep running; sessions end as detached."""

        await self.transport.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _attach_session(self, session: Session) -> None:
        try:
            reply = await self.transport.request("host.attach", pid=session.pid)
        except RpcError as exc:
            raise AttachError.wrap(exc) from exc
        session_id = reply.get("session")
        if session_id is None:
            raise AttachError("attach reply missing session id", method="host.attach")
        session._bind(str(session_id))
        logger.debug("attached to pid %s (session %s)", session.pid, session.id)

    def _reusable_session(self, pid: int) -> Optional[Session]:
        for session in self._router.find_by_pid(pid):
            if session.state in _REUSABLE_STATES and session.accepts_script:
                return session
        return None

    def _handle_transport_closed(self, reason: str) -> None:
        logger.debug("connection to %s closed: %s", self.host, reason)
        for session in self._router.sessions():
            session._end("connection-terminated")


async def connect(
    host: Optional[str] = None,
    *,
    stream: Optional[StreamPair] = None,
    config: Optional[ConnectionConfig] = None,
) -> Connection:
    """Open a Connection and complete the handshake.

    ``host`` is ``"host"`` or ``"host:port"`` (default ``localhost:27042``).
    With ``stream`` an already-open ``(reader, writer)`` pair is used and
    ``host`` is only a label sent in the handshake.
    """

    config = dataclasses.replace(config) if config is not None else ConnectionConfig()
    if host is not None:
        try:
            config.host, config.port = parse_host(host, config.port)
        except ValueError as exc:
            raise ConnectError(f"cannot connect to {host!r}: {exc}") from exc
    if stream is not None:
        reader, writer = stream
        transport = FridaTransport(reader, writer, config=config, label=config.address)
    else:
        transport = await FridaTransport.dial(config.host, config.port, config)
    try:
        hello = await perform_handshake(transport)
    except BaseException:
        await transport.close()
        raise
    return Connection(transport, hello)
