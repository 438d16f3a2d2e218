"""
frida_remote - asyncio client for a remote instrumentation server.

The package speaks the control protocol of a Frida-style server (default
``localhost:27042``): enumerate targets, spawn/attach/resume/kill, load
scripts and receive their messages.  Each module keeps one responsibility:

    transport.py  → JSON-lines framing, request correlation, reader loop
    handshake.py  → protocol negotiation before the first control call
    events.py     → script messages, listener fan-out, event routing
    session.py    → session and script lifecycle
    client.py     → Connection and the public operations
    scripts.py    → script source builders (direct, Node.js wrapper)
    errors.py     → exception taxonomy
    models.py     → host query records
"""

from .client import AttachResult, Connection, InjectResult, SpawnResult, connect  # noqa: F401
from .errors import (  # noqa: F401
    AttachError,
    ConnectError,
    ConnectionClosed,
    FridaError,
    InvalidOperationError,
    ProtocolError,
    RpcError,
    ScriptLoadError,
    SpawnError,
)
from .events import ErrorMessage, ListenerSet, LogMessage, Message, SendMessage, parse_message  # noqa: F401
from .handshake import PROTOCOL_VERSION, ServerHello  # noqa: F401
from .models import ApplicationInfo, Metadata, ProcessInfo  # noqa: F401
from .scripts import build_direct_script, build_managed_runtime_wrapper  # noqa: F401
from .session import Script, ScriptState, Session, SessionState  # noqa: F401
from .transport import DEFAULT_PORT, ConnectionConfig, FridaTransport, parse_host  # noqa: F401

__all__ = [
    "connect",
    "Connection",
    "ConnectionConfig",
    "FridaTransport",
    "parse_host",
    "DEFAULT_PORT",
    "PROTOCOL_VERSION",
    "ServerHello",
    "Session",
    "SessionState",
    "Script",
    "ScriptState",
    "SpawnResult",
    "AttachResult",
    "InjectResult",
    "Message",
    "SendMessage",
    "LogMessage",
    "ErrorMessage",
    "ListenerSet",
    "parse_message",
    "Metadata",
    "ProcessInfo",
    "ApplicationInfo",
    "build_direct_script",
    "build_managed_runtime_wrapper",
    "FridaError",
    "ConnectError",
    "ConnectionClosed",
    "ProtocolError",
    "RpcError",
    "SpawnError",
    "AttachError",
    "ScriptLoadError",
    "InvalidOperationError",
]

__version__ = "0.1.0"
