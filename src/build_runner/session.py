"""Per-connection runner state shared by all command handlers.

:class:`RunnerSession` owns the only mutable state handlers touch: the
dev-server process table, the verified-port map and the project-to-tunnel
map. Handlers receive the session explicitly; nothing here is module-global.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import (
    Any,
    Awaitable,
    Callable,
    Coroutine,
    Dict,
    Mapping,
    Optional,
    Set,
)

from .config import RunnerConfig
from .logging_utils import log_event
from .supervisor import DevServerProcess
from .tunnels import TunnelManager

EventSink = Callable[[Dict[str, Any]], Awaitable[None]]
DevServerFactory = Callable[..., DevServerProcess]

_STOP_WAIT_SECONDS = 10.0


def default_dev_server_factory(
    project_id: str,
    command: str,
    cwd: Any,
    *,
    env: Optional[Mapping[str, str]] = None,
    expected_port: Optional[int] = None,
) -> DevServerProcess:
    return DevServerProcess(
        project_id, command, cwd, env=env, expected_port=expected_port
    )


class RunnerSession:
    def __init__(
        self,
        config: RunnerConfig,
        send: EventSink,
        tunnels: TunnelManager,
        *,
        dev_server_factory: DevServerFactory = default_dev_server_factory,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.tunnels = tunnels
        self.dev_server_factory = dev_server_factory
        self.dev_servers: Dict[str, DevServerProcess] = {}
        self.verified_ports: Dict[str, int] = {}
        self.tunnel_ports: Dict[str, int] = {}
        self.started_at = time.monotonic()
        self.logger = logger or logging.getLogger("build_runner.session")
        self._send = send
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task[Any]] = set()

    async def emit(self, event: Dict[str, Any]) -> None:
        await self._send(event)

    def project_lock(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[project_id] = lock
        return lock

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: Optional[str] = None) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def uptime_seconds(self) -> int:
        return int(round(time.monotonic() - self.started_at))

    async def close_project_tunnel(self, project_id: str) -> Optional[int]:
        port = self.tunnel_ports.pop(project_id, None)
        if port is None:
            return None
        try:
            await self.tunnels.close_tunnel(port)
        except Exception as exc:
            log_event(
                self.logger,
                logging.WARNING,
                "tunnel.close_failed",
                project_id=project_id,
                port=port,
                exc=exc,
            )
        return port

    async def clear_verified_port(self, project_id: str) -> Optional[int]:
        """Forget the verified port and tear down any tunnel pointing at it."""
        port = self.verified_ports.pop(project_id, None)
        tunnel_port = self.tunnel_ports.get(project_id)
        if tunnel_port is not None and (port is None or tunnel_port == port):
            await self.close_project_tunnel(project_id)
        return port

    async def stop_dev_server(self, project_id: str, *, wait: bool = True) -> bool:
        process = self.dev_servers.get(project_id)
        if process is None:
            return False
        await process.stop()
        if wait:
            await process.wait_exited(timeout=_STOP_WAIT_SECONDS)
        if self.dev_servers.get(project_id) is process:
            self.dev_servers.pop(project_id, None)
        return True

    async def shutdown(self) -> None:
        for project_id in list(self.dev_servers):
            try:
                await self.stop_dev_server(project_id)
            except Exception as exc:
                log_event(
                    self.logger,
                    logging.WARNING,
                    "session.stop_failed",
                    project_id=project_id,
                    exc=exc,
                )
        self.tunnel_ports.clear()
        await self.tunnels.close_all()


__all__ = ["DevServerFactory", "EventSink", "RunnerSession", "default_dev_server_factory"]
