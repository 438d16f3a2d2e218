"""Value records returned by host queries."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional


def _to_int(value: Any) -> Optional[int]:
    try:
        if value is None:
            return None
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Metadata:
    """Snapshot of the server host (``host.query_metadata``)."""

    arch: str
    platform: str
    os: Dict[str, Any] = field(default_factory=dict)
    name: str = ""
    access: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Metadata":
        os_block = payload.get("os")
        return cls(
            arch=str(payload.get("arch") or ""),
            platform=str(payload.get("platform") or ""),
            os=dict(os_block) if isinstance(os_block, Mapping) else {},
            name=str(payload.get("name") or ""),
            access=str(payload.get("access") or ""),
        )


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    name: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ProcessInfo":
        params = payload.get("parameters")
        return cls(
            pid=_to_int(payload.get("pid")) or 0,
            name=str(payload.get("name") or ""),
            parameters=dict(params) if isinstance(params, Mapping) else {},
        )


@dataclass(frozen=True)
class ApplicationInfo:
    identifier: str
    name: str
    pid: Optional[int] = None
    parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ApplicationInfo":
        params = payload.get("parameters")
        pid = _to_int(payload.get("pid"))
        return cls(
            identifier=str(payload.get("identifier") or ""),
            name=str(payload.get("name") or ""),
            # The server reports 0 for applications that are not running.
            pid=pid or None,
            parameters=dict(params) if isinstance(params, Mapping) else {},
        )
