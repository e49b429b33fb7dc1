"""Dev-server process supervision.

A :class:`DevServerProcess` wraps one shell-spawned child and publishes its
lifecycle on an :class:`EventEmitter` with four events:

- ``log``   ``(entry)`` a :class:`LogEntry` for every stdout/stderr line
- ``port``  ``(port)`` once, after a listening port has been confirmed
- ``exit``  ``(returncode, signal_name)`` when the child terminates
- ``error`` ``(exc)`` when the child cannot be spawned or supervised

Command handlers only consume these events; they never look at the child
process directly.
"""

from __future__ import annotations

import asyncio
import collections
import inspect
import logging
import os
import re
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

from .logging_utils import log_event, truncate_for_log
from .ports import is_port_open
from .utils import subprocess_env

_PORT_PATTERNS = (
    re.compile(r"(?:localhost|127\.0\.0\.1|0\.0\.0\.0|\[::\]|\[::1\]):(\d{2,5})"),
    re.compile(r"\bport\s*:?\s*(\d{2,5})\b", re.IGNORECASE),
)
_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")
_MAX_LOG_LINES = 2000
_STOP_TIMEOUT_SECONDS = 10.0
_PORT_PROBE_INTERVAL_SECONDS = 1.0

Handler = Callable[..., Any]


class EventEmitter:
    """Minimal async-aware event emitter; handlers run in registration order."""

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = collections.defaultdict(list)

    def on(self, event: str, handler: Handler) -> None:
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    async def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result


@dataclass(frozen=True)
class LogEntry:
    cursor: int
    stream: str
    data: str
    at: float


def detect_port(line: str) -> Optional[int]:
    """Extract a candidate listening port from a dev-server log line."""
    clean = _ANSI_RE.sub("", line)
    for pattern in _PORT_PATTERNS:
        match = pattern.search(clean)
        if not match:
            continue
        port = int(match.group(1))
        if 0 < port < 65536:
            return port
    return None


def _signal_name(returncode: Optional[int]) -> Optional[str]:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return None


class DevServerProcess:
    def __init__(
        self,
        project_id: str,
        command: str,
        cwd: Path,
        *,
        env: Optional[Mapping[str, str]] = None,
        expected_port: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.project_id = project_id
        self.command = command
        self.cwd = Path(cwd)
        self.env = dict(env or {})
        self.expected_port = expected_port
        self.emitter = EventEmitter()
        self.process: Optional[asyncio.subprocess.Process] = None
        self.port: Optional[int] = None
        self.started_at = time.monotonic()
        self.stopping = False
        self._logger = logger or logging.getLogger(__name__)
        self._logs: Deque[LogEntry] = collections.deque(maxlen=_MAX_LOG_LINES)
        self._next_cursor = 0
        self._exited = asyncio.Event()
        self._tasks: List[asyncio.Task[None]] = []
        self._port_lock = asyncio.Lock()

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    @property
    def has_exited(self) -> bool:
        return self._exited.is_set()

    def logs_since(self, cursor: Optional[int] = None, limit: Optional[int] = None) -> List[LogEntry]:
        entries = [e for e in self._logs if cursor is None or e.cursor > cursor]
        if limit is not None:
            entries = entries[-limit:]
        return entries

    async def start(self) -> None:
        if not self.cwd.is_dir():
            self._exited.set()
            await self.emitter.emit(
                "error",
                FileNotFoundError(f"Working directory does not exist: {self.cwd}"),
            )
            return
        env = subprocess_env(self.env)
        try:
            self.process = await asyncio.create_subprocess_shell(
                self.command,
                cwd=str(self.cwd),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            self._exited.set()
            log_event(
                self._logger,
                logging.ERROR,
                "dev_server.spawn_failed",
                project_id=self.project_id,
                command=self.command,
                exc=exc,
            )
            await self.emitter.emit("error", exc)
            return
        log_event(
            self._logger,
            logging.INFO,
            "dev_server.started",
            project_id=self.project_id,
            pid=self.process.pid,
            command=self.command,
            cwd=str(self.cwd),
        )
        readers = [
            asyncio.create_task(self._drain(self.process.stdout, "stdout")),
            asyncio.create_task(self._drain(self.process.stderr, "stderr")),
        ]
        self._tasks.extend(readers)
        if self.expected_port:
            self._tasks.append(asyncio.create_task(self._probe_expected_port()))
        self._tasks.append(asyncio.create_task(self._wait_exit(readers)))

    async def _drain(self, stream: Optional[asyncio.StreamReader], name: str) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace")
            entry = LogEntry(
                cursor=self._next_cursor, stream=name, data=text, at=time.time()
            )
            self._next_cursor += 1
            self._logs.append(entry)
            await self.emitter.emit("log", entry)
            candidate = detect_port(text)
            if candidate is not None and self.port is None:
                await self._confirm_port(candidate)

    async def _probe_expected_port(self) -> None:
        while not self._exited.is_set() and self.port is None:
            await asyncio.sleep(_PORT_PROBE_INTERVAL_SECONDS)
            if self.expected_port and not self._exited.is_set():
                await self._confirm_port(self.expected_port)

    async def _confirm_port(self, port: int) -> None:
        async with self._port_lock:
            if self.port is not None or self._exited.is_set():
                return
            if not await is_port_open(port):
                return
            self.port = port
        log_event(
            self._logger,
            logging.INFO,
            "dev_server.port_verified",
            project_id=self.project_id,
            port=port,
        )
        await self.emitter.emit("port", port)

    async def _wait_exit(self, readers: List[asyncio.Task[None]]) -> None:
        process = self.process
        if process is None:
            return
        returncode = await process.wait()
        await asyncio.gather(*readers, return_exceptions=True)
        self._exited.set()
        log_event(
            self._logger,
            logging.INFO if returncode == 0 or self.stopping else logging.WARNING,
            "dev_server.exited",
            project_id=self.project_id,
            pid=process.pid,
            returncode=returncode,
            stopping=self.stopping,
            last_output=truncate_for_log(
                "".join(e.data for e in list(self._logs)[-5:]), 500
            )
            if returncode not in (0, None) and not self.stopping
            else None,
        )
        await self.emitter.emit("exit", returncode, _signal_name(returncode))

    def _signal_group(self, sig: int) -> None:
        process = self.process
        if process is None or process.returncode is not None:
            return
        try:
            os.killpg(process.pid, sig)
        except (ProcessLookupError, PermissionError):
            try:
                process.send_signal(sig)
            except ProcessLookupError:
                pass

    async def stop(self, timeout: float = _STOP_TIMEOUT_SECONDS) -> None:
        """SIGTERM the process group, escalating to SIGKILL after ``timeout``."""
        if self.process is None or self._exited.is_set():
            return
        self.stopping = True
        self._signal_group(signal.SIGTERM)
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            log_event(
                self._logger,
                logging.WARNING,
                "dev_server.kill",
                project_id=self.project_id,
                pid=self.pid,
            )
            self._signal_group(signal.SIGKILL)
            try:
                await asyncio.wait_for(self._exited.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                pass

    async def wait_exited(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


__all__ = ["DevServerProcess", "EventEmitter", "LogEntry", "detect_port"]
