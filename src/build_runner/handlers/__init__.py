from __future__ import annotations

from typing import Awaitable, Callable, Dict

from ..build.pipeline import BuildPipeline
from ..protocol import Command
from ..session import RunnerSession
from ..status import publish_status
from .dev_server import fetch_logs, start_dev_server, stop_dev_server
from .files import delete_project_files, list_files, read_file, write_file
from .tunnels import start_tunnel, stop_tunnel

CommandHandler = Callable[[RunnerSession, Command], Awaitable[None]]


async def runner_health_check(session: RunnerSession, command: Command) -> None:
    await publish_status(session, command.project_id, command.id)


async def start_build(session: RunnerSession, command: Command) -> None:
    await BuildPipeline(session, command).run()


COMMAND_HANDLERS: Dict[str, CommandHandler] = {
    "start-build": start_build,
    "start-dev-server": start_dev_server,
    "stop-dev-server": stop_dev_server,
    "start-tunnel": start_tunnel,
    "stop-tunnel": stop_tunnel,
    "fetch-logs": fetch_logs,
    "runner-health-check": runner_health_check,
    "delete-project-files": delete_project_files,
    "read-file": read_file,
    "write-file": write_file,
    "list-files": list_files,
}

__all__ = ["COMMAND_HANDLERS", "CommandHandler"]
