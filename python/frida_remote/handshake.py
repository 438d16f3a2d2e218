"""One-time protocol negotiation performed before any control call."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .errors import ConnectError, ConnectionClosed, ProtocolError
from .transport import FridaTransport


logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1
DEFAULT_FEATURES = ["spawn", "attach", "scripts", "events"]


@dataclass(frozen=True)
class ServerHello:
    version: int
    server: str = ""
    features: List[str] = field(default_factory=list)


async def perform_handshake(transport: FridaTransport) -> ServerHello:
    """Exchange the hello frame on a fresh transport.

    Every failure is reported as ConnectError; the caller owns closing the
    transport afterwards.
    """

    config = transport.config
    payload: Dict[str, Any] = {
        "seq": 0,
        "cmd": "hello",
        "version": PROTOCOL_VERSION,
        "client": config.client_name,
        "host": transport.label,
        "features": list(config.features or DEFAULT_FEATURES),
    }
    if config.token is not None:
        payload["token"] = config.token
    try:
        await transport.write_frame(payload)
        response = await asyncio.wait_for(transport.read_frame(), timeout=config.handshake_timeout)
    except asyncio.TimeoutError as exc:
        raise ConnectError(f"handshake with {transport.label} timed out") from exc
    except (ProtocolError, ConnectionClosed, OSError) as exc:
        raise ConnectError(f"handshake with {transport.label} failed: {exc}") from exc
    if response is None:
        raise ConnectError(f"handshake with {transport.label} failed: server closed the connection")
    if response.get("status") != "ok":
        reason = response.get("error") or response
        raise ConnectError(f"handshake with {transport.label} rejected: {reason}")
    version = response.get("version")
    if version != PROTOCOL_VERSION:
        raise ConnectError(
            f"handshake with {transport.label} failed: unsupported protocol version {version!r}"
        )
    features = response.get("features")
    hello = ServerHello(
        version=PROTOCOL_VERSION,
        server=str(response.get("server") or ""),
        features=[str(item) for item in features] if isinstance(features, list) else [],
    )
    logger.debug("handshake with %s complete (server=%s)", transport.label, hello.server)
    return hello
