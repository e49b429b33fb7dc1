"""Reconciliation between the control plane's process registry and this host.

The in-memory process table does not survive a restart, so on startup the
runner asks the control plane which dev servers it believes this runner owns
and signal-probes each PID. A periodic health loop then TCP-probes every
tracked dev server with a verified port and reports the result.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Protocol

from .control_plane import ControlPlaneClient
from .errors import ControlPlaneError
from .logging_utils import log_event
from .ports import is_port_open
from .protocol import now_iso

HEALTH_FAILURE_THRESHOLD = 3

Kill = Callable[[int, int], None]
PortProbe = Callable[[int], Awaitable[bool]]


class HealthTarget(Protocol):
    project_id: str
    port: Optional[int]

    @property
    def pid(self) -> Optional[int]:
        ...


def pid_alive(pid: int, *, kill: Kill = os.kill) -> bool:
    """Signal-0 probe; a permission error still means the PID exists."""
    if pid <= 0:
        return False
    try:
        kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def signal_process_group(pid: int, sig: int) -> None:
    """Signal the process group led by ``pid``, or ``pid`` alone if it leads none."""
    try:
        os.killpg(pid, sig)
    except (ProcessLookupError, PermissionError):
        os.kill(pid, sig)


@dataclass
class OrphanReport:
    checked: int = 0
    kept: List[str] = field(default_factory=list)
    unregistered: List[str] = field(default_factory=list)
    terminated: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


async def cleanup_orphans(
    client: ControlPlaneClient,
    runner_id: str,
    tracked_pids: Iterable[int],
    *,
    kill: Kill = os.kill,
    logger: Optional[logging.Logger] = None,
) -> OrphanReport:
    logger = logger or logging.getLogger(__name__)
    report = OrphanReport()
    tracked = set(tracked_pids)
    try:
        processes = await client.list_processes(runner_id)
    except ControlPlaneError as exc:
        log_event(
            logger, logging.WARNING, "orphans.list_failed", runner_id=runner_id, exc=exc
        )
        report.errors.append(str(exc))
        return report

    for proc in processes:
        if not proc.project_id:
            continue
        report.checked += 1
        pid = proc.pid
        if pid is not None and pid in tracked:
            report.kept.append(proc.project_id)
            continue
        alive = pid is not None and pid_alive(pid, kill=kill)
        if alive:
            try:
                kill(pid, signal.SIGTERM)
            except ProcessLookupError:
                pass
            except OSError as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "orphans.terminate_failed",
                    project_id=proc.project_id,
                    pid=pid,
                    exc=exc,
                )
            else:
                report.terminated.append(proc.project_id)
        try:
            await client.unregister_process(proc.project_id)
        except ControlPlaneError as exc:
            report.errors.append(str(exc))
            log_event(
                logger,
                logging.WARNING,
                "orphans.unregister_failed",
                project_id=proc.project_id,
                exc=exc,
            )
            continue
        report.unregistered.append(proc.project_id)
        log_event(
            logger,
            logging.INFO,
            "orphans.unregistered",
            project_id=proc.project_id,
            pid=pid,
            reason="untracked" if alive else "dead",
        )
    log_event(
        logger,
        logging.INFO,
        "orphans.cleanup_done",
        checked=report.checked,
        unregistered=len(report.unregistered),
        terminated=len(report.terminated),
    )
    return report


class HealthMonitor:
    def __init__(
        self,
        client: ControlPlaneClient,
        targets: Callable[[], Iterable[HealthTarget]],
        *,
        interval: float = 30.0,
        failure_threshold: int = HEALTH_FAILURE_THRESHOLD,
        probe: PortProbe = is_port_open,
        kill: Kill = signal_process_group,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._client = client
        self._targets = targets
        self._interval = interval
        self._threshold = failure_threshold
        self._probe = probe
        self._kill = kill
        self._logger = logger or logging.getLogger(__name__)
        self._failures: Dict[str, int] = {}
        self._stop = asyncio.Event()

    def failure_count(self, project_id: str) -> int:
        return self._failures.get(project_id, 0)

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                break
            try:
                await self.check_once()
            except Exception as exc:
                log_event(self._logger, logging.WARNING, "health.loop_error", exc=exc)

    async def check_once(self) -> Dict[str, bool]:
        results: Dict[str, bool] = {}
        seen = set()
        for target in list(self._targets()):
            if target.port is None:
                continue
            seen.add(target.project_id)
            healthy = await self._probe(target.port)
            results[target.project_id] = healthy
            if healthy:
                self._failures.pop(target.project_id, None)
                fail_count = 0
            else:
                fail_count = self._failures.get(target.project_id, 0) + 1
                self._failures[target.project_id] = fail_count
                log_event(
                    self._logger,
                    logging.WARNING,
                    "health.unhealthy",
                    project_id=target.project_id,
                    port=target.port,
                    fail_count=fail_count,
                )
            try:
                await self._client.report_health(
                    target.project_id,
                    healthy=healthy,
                    port=target.port,
                    fail_count=fail_count,
                    pid=target.pid,
                    checked_at=now_iso(),
                )
            except ControlPlaneError as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "health.report_failed",
                    project_id=target.project_id,
                    exc=exc,
                )
            if fail_count >= self._threshold:
                self._terminate(target)
                self._failures.pop(target.project_id, None)
        for project_id in list(self._failures):
            if project_id not in seen:
                self._failures.pop(project_id, None)
        return results

    def _terminate(self, target: HealthTarget) -> None:
        pid = target.pid
        if pid is None:
            return
        log_event(
            self._logger,
            logging.WARNING,
            "health.terminate",
            project_id=target.project_id,
            pid=pid,
            threshold=self._threshold,
        )
        try:
            self._kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        except OSError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "health.terminate_failed",
                project_id=target.project_id,
                pid=pid,
                exc=exc,
            )


__all__ = [
    "HEALTH_FAILURE_THRESHOLD",
    "HealthMonitor",
    "OrphanReport",
    "cleanup_orphans",
    "pid_alive",
    "signal_process_group",
]
