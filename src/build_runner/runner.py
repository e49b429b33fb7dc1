"""Top-level wiring of one runner process.

Builds the control-plane client, the tunnel manager, the session, the command
router and the health monitor around a single :class:`ConnectionManager`,
then runs until a shutdown signal arrives or reconnection gives up.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, Callable, List, Optional, Union

import websockets

from .config import RunnerConfig
from .connection import ConnectionManager
from .control_plane import ControlPlaneClient
from .logging_utils import log_event
from .orphans import HealthMonitor, OrphanReport, cleanup_orphans
from .router import CommandRouter
from .session import RunnerSession
from .status import publish_status
from .tunnels import CloudflaredTunnelManager, TunnelManager

_logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def build_control_plane(config: RunnerConfig) -> ControlPlaneClient:
    return ControlPlaneClient(
        config.api_base_url,
        config.shared_secret,
        timeout=config.api_timeout_seconds,
    )


async def run_cleanup(
    config: RunnerConfig, client: Optional[ControlPlaneClient] = None
) -> OrphanReport:
    """One-shot reconciliation of the control plane's registry for this runner."""
    owned = client is None
    client = client or build_control_plane(config)
    try:
        return await cleanup_orphans(client, config.runner_id, ())
    finally:
        if owned:
            await client.close()


class Runner:
    def __init__(
        self,
        config: RunnerConfig,
        *,
        control_plane: Optional[ControlPlaneClient] = None,
        tunnels: Optional[TunnelManager] = None,
        connect: Callable[..., Any] = websockets.connect,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.logger = logger or _logger
        self.control_plane = control_plane or build_control_plane(config)
        self.tunnels = tunnels or CloudflaredTunnelManager()
        self.connection = ConnectionManager(
            config,
            on_message=self._on_message,
            on_open=self._publish_status,
            on_heartbeat=self._publish_status,
            connect=connect,
        )
        self.session = RunnerSession(config, self.connection.send, self.tunnels)
        self.router = CommandRouter(self.session)
        self.health = HealthMonitor(
            self.control_plane,
            lambda: list(self.session.dev_servers.values()),
            interval=config.health_check_interval_seconds,
        )
        self._stop = asyncio.Event()
        self._closed = False

    async def _on_message(self, raw: Union[str, bytes]) -> None:
        await self.router.handle_raw(raw)

    async def _publish_status(self) -> None:
        await publish_status(self.session)

    def tracked_pids(self) -> List[int]:
        return [
            proc.pid for proc in self.session.dev_servers.values() if proc.pid is not None
        ]

    def request_shutdown(self, signame: Optional[str] = None) -> None:
        if not self._stop.is_set():
            log_event(self.logger, logging.INFO, "runner.shutdown_requested", signal=signame)
        self._stop.set()

    def _install_signal_handlers(self) -> List[signal.Signals]:
        loop = asyncio.get_running_loop()
        installed: List[signal.Signals] = []
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError):
                continue
            installed.append(sig)
        return installed

    async def _startup_cleanup(self) -> None:
        try:
            await cleanup_orphans(
                self.control_plane, self.config.runner_id, self.tracked_pids()
            )
        except Exception as exc:
            log_event(self.logger, logging.WARNING, "runner.cleanup_failed", exc=exc)

    async def run(self) -> int:
        """Serve until shutdown; returns a process exit code."""
        installed = self._install_signal_handlers()
        log_event(
            self.logger,
            logging.INFO,
            "runner.start",
            runner_id=self.config.runner_id,
            workspace=str(self.config.workspace_root),
        )
        tasks: List[asyncio.Task[Any]] = []
        try:
            self.config.workspace_root.mkdir(parents=True, exist_ok=True)
            await self._startup_cleanup()
            health_task = asyncio.create_task(self.health.run(), name="runner-health")
            connection_task = asyncio.create_task(
                self.connection.run(), name="runner-connection"
            )
            stop_task = asyncio.create_task(self._stop.wait(), name="runner-stop")
            tasks.extend((health_task, connection_task, stop_task))
            await asyncio.wait(
                {connection_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            await self.shutdown()
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            loop = asyncio.get_running_loop()
            for sig in installed:
                loop.remove_signal_handler(sig)
        return 1 if self.connection.gave_up else 0

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.connection.shutting_down = True
        self.health.stop()
        try:
            await self.session.shutdown()
        except Exception as exc:
            log_event(self.logger, logging.WARNING, "runner.session_shutdown_failed", exc=exc)
        await self.connection.shutdown()
        await self.control_plane.close()
        log_event(self.logger, logging.INFO, "runner.stopped")


__all__ = ["Runner", "build_control_plane", "run_cleanup"]
