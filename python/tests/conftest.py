"""
Pytest configuration and fixtures for frida_remote tests.

``DummyFridaServer`` speaks the JSON-lines control protocol on a loopback
port from background threads, so the asyncio client under test talks to it
over a real socket.  Script sources are interpreted with a tiny pattern
matcher: ``send('x')``, ``console.warn('x')`` and ``throw new Error('x')``
emit the corresponding messages right after the load is acknowledged, and a
source containing ``syntax error`` fails to compile.
"""

from __future__ import annotations

import json
import os
import platform
import re
import socket
import sys
import threading
import time
from typing import Any, Dict, List, Optional, Set

import pytest


_SCRIPT_STATEMENT = re.compile(r"(send|console\.warn|console\.log|throw new Error)\('([^']*)'\)")


def _host_arch() -> str:
    machine = platform.machine().lower()
    return {"x86_64": "x64", "amd64": "x64", "aarch64": "arm64", "i686": "ia32"}.get(machine, machine)


class DummyFridaServer:
    def __init__(
        self,
        *,
        version: int = 1,
        token: Optional[str] = None,
        drop_on_accept: bool = False,
        hello_delay: float = 0.0,
    ) -> None:
        self.version = version
        self.token = token
        self.drop_on_accept = drop_on_accept
        self.hello_delay = hello_delay
        self.frames: List[Dict[str, Any]] = []
        self.processes: List[Dict[str, Any]] = [
            {"pid": 1, "name": "init"},
            {"pid": os.getpid(), "name": "python"},
        ]
        self.deny_attach: Set[int] = set()
        self.delays: Dict[str, float] = {}
        self.silent: Set[str] = set()
        self.stray_reply = False
        self.suspended: Set[int] = set()
        self.killed: List[int] = []
        self.sessions: Dict[str, int] = {}
        self.scripts: Dict[str, Dict[str, Any]] = {}
        self._next_pid = 4000
        self._next_session = 1
        self._next_script = 1
        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._clients: List[socket.socket] = []
        self._stop = threading.Event()
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self.port = self._sock.getsockname()[1]
        self.address = f"127.0.0.1:{self.port}"
        self._sock.listen(5)
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def commands(self) -> List[str]:
        with self._lock:
            return [str(frame.get("cmd")) for frame in self.frames]

    def frames_for(self, cmd: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [frame for frame in self.frames if frame.get("cmd") == cmd]

    def emit(self, event: Dict[str, Any]) -> None:
        """Push an unsolicited frame to every connected client."""

        for conn in list(self._clients):
            self._send(conn, event)

    def script_message(self, script_id: str, message: Dict[str, Any]) -> Dict[str, Any]:
        script = self.scripts[script_id]
        return {"type": "script.message", "session": script["session"], "script": script_id, "message": message}

    def stop(self) -> None:
        self._stop.set()
        for conn in list(self._clients):
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            conn.close()
        try:
            dummy = socket.create_connection(("127.0.0.1", self.port), timeout=0.2)
            dummy.close()
        except OSError:
            pass
        self._sock.close()
        self._thread.join(timeout=0.5)

    # ------------------------------------------------------------------
    # Server loop
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = self._sock.accept()
            except OSError:
                break
            if self._stop.is_set() or self.drop_on_accept:
                conn.close()
                continue
            self._clients.append(conn)
            thread = threading.Thread(target=self._handle_client, args=(conn,), daemon=True)
            thread.start()

    def _handle_client(self, conn: socket.socket) -> None:
        buffer = b""
        conn.settimeout(1.0)
        while not self._stop.is_set():
            try:
                chunk = conn.recv(4096)
            except socket.timeout:
                continue
            except OSError:
                break
            if not chunk:
                break
            buffer += chunk
            while b"\n" in buffer:
                line, buffer = buffer.split(b"\n", 1)
                if not line:
                    continue
                msg = json.loads(line.decode("utf-8"))
                with self._lock:
                    self.frames.append(msg)
                if msg.get("cmd") == "debug.close":
                    conn.close()
                    return
                self._handle_command(conn, msg)
        if conn in self._clients:
            self._clients.remove(conn)

    def _send(self, conn: socket.socket, payload: Dict[str, Any]) -> None:
        data = json.dumps(payload).encode("utf-8") + b"\n"
        with self._send_lock:
            try:
                conn.sendall(data)
            except OSError:
                pass

    def _reply(self, conn: socket.socket, msg: Dict[str, Any], result: Dict[str, Any], events=()) -> None:
        cmd = msg.get("cmd")
        if cmd in self.silent:
            return
        payload = {"seq": msg.get("seq"), **result}

        def deliver() -> None:
            if self.stray_reply and cmd != "hello":
                self._send(conn, {"seq": 9999, "status": "ok"})
            self._send(conn, payload)
            for event in events:
                self._send(conn, event)

        delay = self.delays.get(str(cmd), 0.0)
        if delay:
            threading.Timer(delay, deliver).start()
        else:
            deliver()

    def _error(self, conn: socket.socket, msg: Dict[str, Any], error: str, code: Optional[str] = None) -> None:
        result: Dict[str, Any] = {"status": "error", "error": error}
        if code:
            result["code"] = code
        self._reply(conn, msg, result)

    def _handle_command(self, conn: socket.socket, msg: Dict[str, Any]) -> None:
        cmd = msg.get("cmd")
        if cmd == "hello":
            if self.hello_delay:
                time.sleep(self.hello_delay)
            if self.token is not None and msg.get("token") != self.token:
                self._error(conn, msg, "incorrect token")
                return
            self._reply(conn, msg, {"status": "ok", "version": self.version, "server": "dummy-frida", "features": ["events"]})
            return
        if cmd == "host.query_metadata":
            metadata = {
                "arch": _host_arch(),
                "platform": sys.platform,
                "os": {"id": sys.platform, "version": platform.release()},
                "name": socket.gethostname(),
                "access": "full",
            }
            self._reply(conn, msg, {"status": "ok", "metadata": metadata})
            return
        if cmd == "host.enumerate_processes":
            self._reply(conn, msg, {"status": "ok", "processes": list(self.processes)})
            return
        if cmd == "host.enumerate_applications":
            self._reply(conn, msg, {"status": "ok", "applications": []})
            return
        if cmd == "host.spawn":
            program = str(msg.get("program"))
            if not os.path.exists(program):
                self._error(conn, msg, f"Unable to find executable at '{program}'", "executable-not-found")
                return
            with self._lock:
                pid = self._next_pid
                self._next_pid += 1
                self.processes.append({"pid": pid, "name": os.path.basename(program)})
                self.suspended.add(pid)
            self._reply(conn, msg, {"status": "ok", "pid": pid})
            return
        if cmd == "host.resume":
            self.suspended.discard(msg.get("pid"))
            self._reply(conn, msg, {"status": "ok"})
            return
        if cmd == "host.attach":
            pid = msg.get("pid")
            if pid in self.deny_attach:
                self._error(
                    conn, msg, f"Unable to access process with pid {pid} from the current user account", "permission-denied"
                )
                return
            if pid not in {proc["pid"] for proc in self.processes}:
                self._error(conn, msg, f"Unable to find process with pid {pid}", "process-not-found")
                return
            with self._lock:
                session_id = f"session-{self._next_session}"
                self._next_session += 1
                self.sessions[session_id] = pid
            self._reply(conn, msg, {"status": "ok", "session": session_id})
            return
        if cmd == "host.kill":
            pid = msg.get("pid")
            self.killed.append(pid)
            self.processes = [proc for proc in self.processes if proc["pid"] != pid]
            detached = [
                {"type": "session.detached", "session": sid, "reason": "process-terminated"}
                for sid, owner in self.sessions.items()
                if owner == pid
            ]
            self._reply(conn, msg, {"status": "ok"}, events=detached)
            return
        if cmd == "session.detach":
            session_id = msg.get("session")
            event = {"type": "session.detached", "session": session_id, "reason": "application-requested"}
            self._reply(conn, msg, {"status": "ok"}, events=[event])
            return
        if cmd == "session.create_script":
            source = str(msg.get("source") or "")
            if "syntax error" in source:
                self._error(conn, msg, "Script(line 1): SyntaxError: unexpected token", "invalid-argument")
                return
            with self._lock:
                script_id = str(self._next_script)
                self._next_script += 1
                self.scripts[script_id] = {"session": msg.get("session"), "source": source, "name": msg.get("name")}
            self._reply(conn, msg, {"status": "ok", "script": script_id})
            return
        if cmd == "script.load":
            script_id = str(msg.get("script"))
            self._reply(conn, msg, {"status": "ok"}, events=self._script_events(script_id))
            return
        if cmd == "script.unload":
            self._reply(conn, msg, {"status": "ok"})
            return
        if cmd == "script.post":
            script_id = str(msg.get("script"))
            echo = self.script_message(script_id, {"type": "send", "payload": {"echo": msg.get("message")}})
            self._reply(conn, msg, {"status": "ok"}, events=[echo])
            return
        if cmd == "debug.emit":
            self._reply(conn, msg, {"status": "ok"}, events=[msg.get("event") or {}])
            return
        self._error(conn, msg, f"unsupported command {cmd!r}", "not-supported")

    def _script_events(self, script_id: str) -> List[Dict[str, Any]]:
        source = self.scripts[script_id]["source"]
        events = []
        for kind, text in _SCRIPT_STATEMENT.findall(source):
            if kind == "send":
                message = {"type": "send", "payload": text}
            elif kind == "console.warn":
                message = {"type": "log", "level": "warning", "payload": text}
            elif kind == "console.log":
                message = {"type": "log", "level": "info", "payload": text}
            else:
                file_name = f"/script{script_id}.js"
                message = {
                    "type": "error",
                    "description": f"Error: {text}",
                    "stack": f"Error: {text}\n    at <eval> ({file_name}:1)",
                    "fileName": file_name,
                    "lineNumber": 1,
                    "columnNumber": 1,
                }
            events.append(self.script_message(script_id, message))
            if kind == "throw new Error":
                break
        return events


@pytest.fixture
def server():
    dummy = DummyFridaServer()
    try:
        yield dummy
    finally:
        dummy.stop()


@pytest.fixture
def server_factory():
    started: List[DummyFridaServer] = []

    def factory(**kwargs: Any) -> DummyFridaServer:
        dummy = DummyFridaServer(**kwargs)
        started.append(dummy)
        return dummy

    try:
        yield factory
    finally:
        for dummy in started:
            dummy.stop()
