"""Script messages, listener fan-out and routing of server events."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Generic, Iterator, List, Optional, TypeVar, Union

from .errors import ProtocolError

if TYPE_CHECKING:  # pragma: no cover
    from .session import Session


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _to_int(value: Any) -> int:
    try:
        if value is None:
            return 0
        return int(value)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class SendMessage:
    payload: Any
    data: Optional[bytes] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "send", "payload": self.payload}


@dataclass(frozen=True)
class LogMessage:
    level: str
    payload: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "log", "level": self.level, "payload": self.payload}


@dataclass(frozen=True)
class ErrorMessage:
    description: str
    stack: str = ""
    file_name: str = ""
    line_number: int = 0
    column_number: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "error",
            "description": self.description,
            "stack": self.stack,
            "fileName": self.file_name,
            "lineNumber": self.line_number,
            "columnNumber": self.column_number,
        }


Message = Union[SendMessage, LogMessage, ErrorMessage]
MessageListener = Callable[[Message], Any]


def parse_message(raw: Any, data: Optional[bytes] = None) -> Message:
    """Convert a raw script message into its typed variant."""

    if not isinstance(raw, dict):
        raise ProtocolError(f"script message is not an object: {raw!r}")
    kind = raw.get("type")
    if kind == "send":
        return SendMessage(payload=raw.get("payload"), data=data)
    if kind == "log":
        return LogMessage(level=str(raw.get("level") or "info"), payload=str(raw.get("payload") or ""))
    if kind == "error":
        return ErrorMessage(
            description=str(raw.get("description") or ""),
            stack=str(raw.get("stack") or ""),
            file_name=str(raw.get("fileName") or ""),
            line_number=_to_int(raw.get("lineNumber")),
            column_number=_to_int(raw.get("columnNumber")),
        )
    raise ProtocolError(f"unknown script message type: {kind!r}")


def _decode_data(value: Any) -> Optional[bytes]:
    if not isinstance(value, str):
        return None
    try:
        return bytes.fromhex(value)
    except ValueError:
        return None


class ListenerSet(Generic[T]):
    """Ordered listeners, each invoked as its own loop callback."""

    def __init__(self, loop: asyncio.AbstractEventLoop, name: str = "listener") -> None:
        self._loop = loop
        self._name = name
        self._listeners: List[Callable[[T], Any]] = []

    def __len__(self) -> int:
        return len(self._listeners)

    def __iter__(self) -> Iterator[Callable[[T], Any]]:
        return iter(list(self._listeners))

    def add(self, listener: Callable[[T], Any]) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove(self, listener: Callable[[T], Any]) -> bool:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return False
        return True

    def clear(self) -> None:
        self._listeners.clear()

    def emit(self, value: T) -> None:
        for listener in list(self._listeners):
            self._loop.call_soon(self._invoke, listener, value)

    def _invoke(self, listener: Callable[[T], Any], value: T) -> None:
        try:
            result = listener(value)
        except Exception:
            logger.exception("%s %r failed", self._name, listener)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result, loop=self._loop)
            task.add_done_callback(self._report_task)

    def _report_task(self, task: "asyncio.Future[Any]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s task failed", self._name, exc_info=exc)


class EventRouter:
    """Route unsolicited frames to the session and script they name."""

    def __init__(self) -> None:
        self._sessions: Dict[str, "Session"] = {}
        self.dropped = 0

    def register(self, session: "Session") -> None:
        if session.id is None:
            raise ValueError("session has no server id yet")
        self._sessions[session.id] = session

    def unregister(self, session: "Session") -> None:
        if session.id is not None and self._sessions.get(session.id) is session:
            del self._sessions[session.id]

    def sessions(self) -> List["Session"]:
        return list(self._sessions.values())

    def find_by_pid(self, pid: int) -> List["Session"]:
        return [session for session in self._sessions.values() if session.pid == pid]

    def dispatch(self, event: Dict[str, Any]) -> None:
        event_type = str(event.get("type") or "")
        session_id = event.get("session")
        session = self._sessions.get(str(session_id)) if session_id is not None else None
        if session is None:
            self.dropped += 1
            logger.debug("dropping %s event for unknown session %r", event_type, session_id)
            return

        if event_type == "session.detached":
            session._end(str(event.get("reason") or "process-terminated"))
            return

        script_id = event.get("script")
        script = session.script
        if script is None or script_id is None or str(script_id) != script.id or not script.is_alive:
            self.dropped += 1
            logger.debug("dropping %s event for unknown script %r", event_type, script_id)
            return

        if event_type == "script.message":
            try:
                message = parse_message(event.get("message"), _decode_data(event.get("data")))
            except ProtocolError as exc:
                logger.warning("session %s: %s", session.id, exc)
                return
            script._deliver(message)
        elif event_type == "script.destroyed":
            script._destroyed(str(event.get("reason") or "unloaded"))
        else:
            logger.debug("ignoring unknown event type %r", event_type)
