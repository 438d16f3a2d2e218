"""Session and script lifecycle tracking."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Optional

from .errors import ConnectionClosed, InvalidOperationError, RpcError, ScriptLoadError
from .events import EventRouter, ListenerSet, Message, MessageListener
from .transport import FridaTransport


logger = logging.getLogger(__name__)

DetachListener = Callable[[str], Any]


class SessionState(str, Enum):
    SPAWNING = "spawning"
    SPAWNED = "spawned"
    ATTACHED = "attached"
    RESUMED = "resumed"
    DETACHED = "detached"
    KILLED = "killed"


class ScriptState(str, Enum):
    LOADING = "loading"
    LOADED = "loaded"
    UNLOADED = "unloaded"
    CRASHED = "crashed"


_ENDED_SESSION_STATES = {SessionState.DETACHED, SessionState.KILLED}
_ENDED_SCRIPT_STATES = {ScriptState.UNLOADED, ScriptState.CRASHED}


class Script:
    """One unit of injected code and its message channel."""

    def __init__(self, session: "Session", script_id: str, *, backlog: int = 256) -> None:
        self.session = session
        self.id = script_id
        self.state = ScriptState.LOADING
        self._listeners: ListenerSet[Message] = ListenerSet(session._loop, name="message listener")
        self._backlog: Deque[Message] = deque()
        self._backlog_limit = backlog

    def __repr__(self) -> str:
        return f"<Script id={self.id} state={self.state.value} session={self.session.id}>"

    @property
    def is_alive(self) -> bool:
        return self.state not in _ENDED_SCRIPT_STATES

    def on_message(self, listener: MessageListener) -> None:
        """Receive every later message; the first listener also gets the backlog."""

        self._listeners.add(listener)
        if self._backlog:
            pending = list(self._backlog)
            self._backlog.clear()
            for message in pending:
                self._listeners.emit(message)

    def off_message(self, listener: MessageListener) -> bool:
        return self._listeners.remove(listener)

    async def unload(self) -> None:
        if not self.is_alive:
            return
        await self.session._transport.request("script.unload", session=self.session.id, script=self.id)
        self._end(ScriptState.UNLOADED)

    async def post(self, message: Any, data: Optional[bytes] = None) -> None:
        """Deliver a JSON message to the script's ``recv()`` handlers."""

        if not self.is_alive:
            raise InvalidOperationError(f"script {self.id} is {self.state.value}")
        await self.session._transport.request(
            "script.post",
            session=self.session.id,
            script=self.id,
            message=message,
            data=data.hex() if data is not None else None,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _loaded(self) -> None:
        if self.state is ScriptState.LOADING:
            self.state = ScriptState.LOADED

    def _deliver(self, message: Message) -> None:
        if not self.is_alive:
            return
        if len(self._listeners):
            self._listeners.emit(message)
            return
        if len(self._backlog) >= self._backlog_limit:
            self._backlog.popleft()
            logger.warning("script %s: message backlog full, dropping oldest message", self.id)
        self._backlog.append(message)

    def _destroyed(self, reason: str) -> None:
        self._end(ScriptState.CRASHED if reason == "crashed" else ScriptState.UNLOADED)

    def _end(self, state: ScriptState) -> None:
        if not self.is_alive:
            return
        self.state = state
        self._listeners.clear()
        self._backlog.clear()
        logger.debug("script %s ended (%s)", self.id, state.value)


class Session:
    """Client-side handle for one target process."""

    def __init__(
        self,
        transport: FridaTransport,
        router: EventRouter,
        *,
        pid: Optional[int] = None,
        session_id: Optional[str] = None,
        state: SessionState = SessionState.ATTACHED,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.pid = pid
        self.id = session_id
        self.state = state
        self.script: Optional[Script] = None
        self.detach_reason: Optional[str] = None
        self._transport = transport
        self._router = router
        self._loop = loop or asyncio.get_running_loop()
        self._detached_listeners: ListenerSet[str] = ListenerSet(self._loop, name="detach listener")
        self._kill_requested = False
        self._loading = False

    def __repr__(self) -> str:
        return f"<Session id={self.id} pid={self.pid} state={self.state.value}>"

    @property
    def ended(self) -> bool:
        return self.state in _ENDED_SESSION_STATES

    @property
    def accepts_script(self) -> bool:
        """True when a new script could be loaded into this session right now."""

        return not self.ended and not self._loading and (self.script is None or not self.script.is_alive)

    def on_message(self, listener: MessageListener) -> None:
        self._require_script().on_message(listener)

    def off_message(self, listener: MessageListener) -> bool:
        if self.script is None:
            return False
        return self.script.off_message(listener)

    def on_detached(self, listener: DetachListener) -> None:
        self._detached_listeners.add(listener)

    def off_detached(self, listener: DetachListener) -> bool:
        return self._detached_listeners.remove(listener)

    async def load_script(self, source: str, *, name: Optional[str] = None, backlog: int = 256) -> Script:
        """Create and load ``source``; returns once the server acknowledged the load."""

        self._require_live()
        if self._loading:
            raise InvalidOperationError(f"session {self.id} is already loading a script")
        if self.script is not None and self.script.is_alive:
            raise InvalidOperationError(f"session {self.id} already owns script {self.script.id}")
        # The slot is claimed before the first await.
        self._loading = True
        try:
            return await self._create_and_load(source, name, backlog)
        finally:
            self._loading = False

    async def resume(self) -> None:
        self._require_live()
        await self._transport.request("host.resume", pid=self.pid)
        if not self.ended:
            self.state = SessionState.RESUMED

    async def kill(self) -> None:
        """Ask the server to terminate the target; returns on acknowledgement."""

        self._require_live()
        # The server may report the detach before it acknowledges the kill.
        self._kill_requested = True
        try:
            await self._transport.request("host.kill", pid=self.pid)
        except BaseException:
            if not self.ended:
                self._kill_requested = False
            raise
        self._end("process-terminated")

    async def detach(self) -> None:
        if self.ended:
            return
        await self._transport.request("session.detach", session=self.id)
        self._end("application-requested")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _create_and_load(self, source: str, name: Optional[str], backlog: int) -> Script:
        try:
            reply = await self._transport.request("session.create_script", session=self.id, source=source, name=name)
        except RpcError as exc:
            raise self._load_error(exc) from exc
        script_id = reply.get("script")
        if script_id is None:
            raise self._load_error(RpcError("create_script reply missing script id", method="session.create_script"))
        script = Script(self, str(script_id), backlog=backlog)
        self.script = script
        try:
            await self._transport.request("script.load", session=self.id, script=script.id)
        except RpcError as exc:
            script._end(ScriptState.UNLOADED)
            self.script = None
            raise self._load_error(exc) from exc
        script._loaded()
        logger.debug("session %s: script %s loaded", self.id, script.id)
        return script

    def _spawned(self, pid: int) -> None:
        self.pid = pid
        self.state = SessionState.SPAWNED

    def _bind(self, session_id: str) -> None:
        self.id = session_id
        self._router.register(self)

    def _end(self, reason: str) -> None:
        if self.ended:
            return
        self.state = SessionState.KILLED if self._kill_requested else SessionState.DETACHED
        self.detach_reason = reason
        if self.script is not None:
            self.script._end(ScriptState.UNLOADED)
        self._router.unregister(self)
        logger.debug("session %s ended: %s", self.id, reason)
        self._detached_listeners.emit(reason)
        self._detached_listeners.clear()

    def _require_live(self) -> None:
        if self._transport.closed:
            raise ConnectionClosed(f"session {self.id}: connection is closed")
        if self.ended:
            raise InvalidOperationError(f"session {self.id} is {self.state.value}")

    def _require_script(self) -> Script:
        if self.script is None:
            raise InvalidOperationError(f"session {self.id} has no script")
        return self.script

    def _load_error(self, exc: RpcError) -> ScriptLoadError:
        error = ScriptLoadError.wrap(exc)
        error.session = self
        return error
