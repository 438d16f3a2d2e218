"""Exception taxonomy for frida_remote."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .session import Session


class FridaError(Exception):
    """Base class for every error raised by this package."""


class ConnectError(FridaError, ConnectionError):
    """Dialing the server or completing the handshake failed."""


class ProtocolError(FridaError):
    """The peer sent a frame that does not follow the wire protocol."""


class ConnectionClosed(FridaError):
    """The connection ended before (or while) the call could complete."""


class RpcError(FridaError):
    """The server explicitly rejected a control call."""

    def __init__(self, description: str, *, code: Optional[str] = None, method: Optional[str] = None) -> None:
        super().__init__(description)
        self.description = description
        self.code = code
        self.method = method

    @classmethod
    def wrap(cls, exc: "RpcError") -> "RpcError":
        return cls(exc.description, code=exc.code, method=exc.method)


class SpawnError(RpcError):
    """The server refused to spawn the requested program."""


class AttachError(RpcError):
    """The server refused to attach to the requested process."""


class ScriptLoadError(RpcError):
    """A script could not be created or loaded into its session."""

    session: Optional["Session"] = None


class InvalidOperationError(FridaError):
    """The operation is not valid in the current session or script state."""
