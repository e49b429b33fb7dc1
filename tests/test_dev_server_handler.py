import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from build_runner.errors import DevServerNotFoundError
from build_runner.handlers.dev_server import (
    fetch_logs,
    start_dev_server,
    stop_dev_server,
)
from build_runner.protocol import Command
from build_runner.supervisor import EventEmitter, LogEntry


class FakeDevServer:
    def __init__(
        self,
        project_id: str,
        command: str,
        cwd: Path,
        *,
        env: Optional[Dict[str, str]] = None,
        expected_port: Optional[int] = None,
    ) -> None:
        self.project_id = project_id
        self.command = command
        self.cwd = cwd
        self.env = env or {}
        self.expected_port = expected_port
        self.emitter = EventEmitter()
        self.pid = 4242
        self.port: Optional[int] = None
        self.started = False
        self.stopped = False
        self.logs: List[LogEntry] = []
        self._exited = asyncio.Event()

    async def start(self) -> None:
        self.started = True

    async def stop(self, timeout: float = 10.0) -> None:
        self.stopped = True
        await self.exit(None, "SIGTERM")

    async def exit(self, returncode: Optional[int], signal_name: Optional[str]) -> None:
        if self._exited.is_set():
            return
        self._exited.set()
        await self.emitter.emit("exit", returncode, signal_name)

    async def wait_exited(self, timeout: Optional[float] = None) -> bool:
        return self._exited.is_set()

    async def log(self, stream: str, data: str) -> None:
        entry = LogEntry(cursor=len(self.logs), stream=stream, data=data, at=0.0)
        self.logs.append(entry)
        await self.emitter.emit("log", entry)

    def logs_since(self, cursor: Optional[int] = None, limit: Optional[int] = None):
        entries = [e for e in self.logs if cursor is None or e.cursor > cursor]
        return entries[-limit:] if limit else entries


@pytest.fixture
def spawned(session) -> List[FakeDevServer]:
    created: List[FakeDevServer] = []

    def factory(project_id, command, cwd, *, env=None, expected_port=None):
        proc = FakeDevServer(project_id, command, cwd, env=env, expected_port=expected_port)
        created.append(proc)
        return proc

    session.dev_server_factory = factory
    return created


def _command(command_type: str, payload: Dict[str, Any] = None, command_id: str = "cmd-1") -> Command:
    return Command(
        id=command_id, type=command_type, projectId="proj-1", payload=payload or {}
    )


def _start(**payload: Any) -> Command:
    body = {"runCommand": "npm run dev", "workingDirectory": "app", "framework": "vite"}
    body.update(payload)
    return _command("start-dev-server", body)


@pytest.mark.anyio
async def test_start_seeds_port_env_and_working_directory(
    session, spawned, workspace: Path
) -> None:
    await start_dev_server(session, _start(env={"NODE_ENV": "development"}))

    proc = spawned[0]
    assert proc.started
    assert proc.cwd == workspace / "app"
    port = proc.expected_port
    assert port
    assert proc.env["PORT"] == proc.env["VITE_PORT"] == proc.env["ASTRO_PORT"] == str(port)
    assert proc.env["NODE_ENV"] == "development"
    assert session.dev_servers["proj-1"] is proc


@pytest.mark.anyio
async def test_port_and_log_events_are_forwarded(session, spawned, events) -> None:
    await start_dev_server(session, _start())
    proc = spawned[0]

    await proc.log("stdout", "ready on http://localhost:5173\n")
    await proc.emitter.emit("port", 5173)

    assert session.verified_ports["proj-1"] == 5173
    chunk, detected = events
    assert chunk["type"] == "log-chunk"
    assert chunk["stream"] == "stdout"
    assert chunk["cursor"] == "0"
    assert detected["type"] == "port-detected"
    assert detected["port"] == 5173
    assert detected["framework"] == "vite"
    assert detected["commandId"] == "cmd-1"


@pytest.mark.anyio
async def test_exit_clears_verified_port_and_closes_tunnel(
    session, spawned, events, tunnels
) -> None:
    await start_dev_server(session, _start())
    proc = spawned[0]
    await proc.emitter.emit("port", 3000)
    session.tunnel_ports["proj-1"] = 3000

    await proc.exit(1, None)

    assert "proj-1" not in session.verified_ports
    assert "proj-1" not in session.tunnel_ports
    assert "proj-1" not in session.dev_servers
    assert tunnels.closed == [3000]
    exited = events[-1]
    assert exited["type"] == "process-exited"
    assert exited["exitCode"] == 1
    assert exited["durationMs"] >= 0


@pytest.mark.anyio
async def test_signal_exit_reports_null_exit_code(session, spawned, events) -> None:
    await start_dev_server(session, _start())

    await spawned[0].exit(-15, "SIGTERM")

    exited = events[-1]
    assert exited["type"] == "process-exited"
    assert exited["exitCode"] is None
    assert exited["signal"] == "SIGTERM"


@pytest.mark.anyio
async def test_restart_stops_previous_process(session, spawned) -> None:
    await start_dev_server(session, _start())
    await start_dev_server(session, _start())

    first, second = spawned
    assert first.stopped
    assert session.dev_servers["proj-1"] is second


@pytest.mark.anyio
async def test_stop_dev_server(session, spawned, events) -> None:
    await start_dev_server(session, _start())
    await stop_dev_server(session, _command("stop-dev-server", command_id="cmd-2"))

    assert spawned[0].stopped
    assert session.dev_servers == {}
    assert events[-1]["type"] == "process-exited"
    assert events[-1]["signal"] == "SIGTERM"

    with pytest.raises(DevServerNotFoundError):
        await stop_dev_server(session, _command("stop-dev-server", command_id="cmd-3"))


@pytest.mark.anyio
async def test_spawn_error_is_reported(session, spawned, events) -> None:
    await start_dev_server(session, _start())
    await spawned[0].emitter.emit("error", FileNotFoundError("Working directory does not exist"))

    assert events[-1]["type"] == "error"
    assert "Working directory does not exist" in events[-1]["error"]
    assert "proj-1" not in session.dev_servers


@pytest.mark.anyio
async def test_fetch_logs_replays_buffer(session, spawned, events) -> None:
    with pytest.raises(DevServerNotFoundError):
        await fetch_logs(session, _command("fetch-logs"))

    await start_dev_server(session, _start())
    proc = spawned[0]
    for line in ("one\n", "two\n", "three\n"):
        await proc.log("stdout", line)
    events.clear()

    await fetch_logs(session, _command("fetch-logs", {"cursor": "0", "limit": 5}))
    assert [e["data"] for e in events] == ["two\n", "three\n"]
    assert all(e["type"] == "log-chunk" for e in events)
