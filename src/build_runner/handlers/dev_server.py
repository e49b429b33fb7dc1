from __future__ import annotations

import logging
import time
import traceback
from pathlib import Path
from typing import Optional

from ..errors import DevServerNotFoundError
from ..logging_utils import log_event
from ..ports import allocate_port, is_port_free
from ..protocol import Command, FetchLogsPayload, StartDevServerPayload, make_event
from ..session import RunnerSession
from ..supervisor import DevServerProcess, LogEntry

_logger = logging.getLogger(__name__)

PORT_ENV_VARS = ("PORT", "VITE_PORT", "ASTRO_PORT")


def _choose_port(preferred: Optional[int]) -> int:
    if preferred and is_port_free(preferred):
        return preferred
    return allocate_port()


def _working_directory(session: RunnerSession, raw: str) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = session.config.workspace_root / path
    return path


def _attach(
    session: RunnerSession,
    command: Command,
    process: DevServerProcess,
    framework: Optional[str],
) -> None:
    project_id = command.project_id
    started = time.monotonic()

    def _event(event_type: str, **fields):
        return make_event(event_type, project_id, command.id, **fields)

    async def on_log(entry: LogEntry) -> None:
        await session.emit(
            _event(
                "log-chunk",
                stream=entry.stream,
                data=entry.data,
                cursor=str(entry.cursor),
            )
        )

    async def on_port(port: int) -> None:
        session.verified_ports[project_id] = port
        await session.emit(
            _event("port-detected", port=port, framework=framework or "unknown")
        )

    async def on_exit(returncode: Optional[int], signal_name: Optional[str]) -> None:
        await session.clear_verified_port(project_id)
        if session.dev_servers.get(project_id) is process:
            session.dev_servers.pop(project_id, None)
        event = _event(
            "process-exited",
            signal=signal_name,
            durationMs=int((time.monotonic() - started) * 1000),
        )
        # killed by a signal: no exit code
        event["exitCode"] = returncode if returncode is not None and returncode >= 0 else None
        await session.emit(event)

    async def on_error(exc: BaseException) -> None:
        if session.dev_servers.get(project_id) is process:
            session.dev_servers.pop(project_id, None)
        await session.clear_verified_port(project_id)
        await session.emit(
            _event(
                "error",
                error=str(exc) or "Dev server error",
                stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            )
        )

    process.emitter.on("log", on_log)
    process.emitter.on("port", on_port)
    process.emitter.on("exit", on_exit)
    process.emitter.on("error", on_error)


async def start_dev_server(session: RunnerSession, command: Command) -> None:
    payload: StartDevServerPayload = command.parsed_payload()
    project_id = command.project_id
    async with session.project_lock(project_id):
        if project_id in session.dev_servers:
            log_event(
                _logger,
                logging.INFO,
                "dev_server.restart",
                project_id=project_id,
            )
            await session.stop_dev_server(project_id)
            await session.clear_verified_port(project_id)

        port = _choose_port(payload.preferred_port)
        env = dict(payload.env)
        for name in PORT_ENV_VARS:
            env[name] = str(port)
        cwd = _working_directory(session, payload.working_directory)
        process = session.dev_server_factory(
            project_id,
            payload.run_command,
            cwd,
            env=env,
            expected_port=port,
        )
        _attach(session, command, process, payload.framework)
        session.dev_servers[project_id] = process
        log_event(
            _logger,
            logging.INFO,
            "dev_server.start",
            project_id=project_id,
            command=payload.run_command,
            cwd=str(cwd),
            port=port,
        )
        await process.start()


async def stop_dev_server(session: RunnerSession, command: Command) -> None:
    async with session.project_lock(command.project_id):
        stopped = await session.stop_dev_server(command.project_id)
    if not stopped:
        raise DevServerNotFoundError("No running dev server found for project")


async def fetch_logs(session: RunnerSession, command: Command) -> None:
    payload: FetchLogsPayload = command.parsed_payload()
    process = session.dev_servers.get(command.project_id)
    if process is None:
        raise DevServerNotFoundError("No running dev server found for project")
    cursor: Optional[int] = None
    if payload.cursor is not None:
        try:
            cursor = int(payload.cursor)
        except ValueError:
            cursor = None
    for entry in process.logs_since(cursor, payload.limit):
        await session.emit(
            make_event(
                "log-chunk",
                command.project_id,
                command.id,
                stream=entry.stream,
                data=entry.data,
                cursor=str(entry.cursor),
            )
        )


__all__ = ["fetch_logs", "start_dev_server", "stop_dev_server"]
