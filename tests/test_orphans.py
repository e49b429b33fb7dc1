import os
import signal
from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx
import pytest

from build_runner.control_plane import ControlPlaneClient, RegisteredProcess
from build_runner.errors import ControlPlaneError
from build_runner.orphans import (
    HealthMonitor,
    cleanup_orphans,
    pid_alive,
    signal_process_group,
)


class FakeControlPlane:
    def __init__(self, processes: List[RegisteredProcess], *, fail_list: bool = False) -> None:
        self.processes = processes
        self.fail_list = fail_list
        self.unregistered: List[str] = []
        self.health: List[Dict[str, object]] = []

    async def list_processes(self, runner_id: Optional[str] = None) -> List[RegisteredProcess]:
        if self.fail_list:
            raise ControlPlaneError("list failed", status_code=500)
        return self.processes

    async def unregister_process(self, project_id: str) -> None:
        self.unregistered.append(project_id)

    async def report_health(self, project_id: str, **fields: object) -> None:
        self.health.append({"project_id": project_id, **fields})


class FakeKill:
    def __init__(self, alive: List[int]) -> None:
        self.alive = set(alive)
        self.signals: List[tuple] = []

    def __call__(self, pid: int, sig: int) -> None:
        self.signals.append((pid, sig))
        if pid not in self.alive:
            raise ProcessLookupError(pid)


def _proc(project_id: str, pid: Optional[int]) -> RegisteredProcess:
    return RegisteredProcess(project_id=project_id, pid=pid, port=3000, command="npm run dev", runner_id="r1")


def test_pid_alive_treats_permission_error_as_alive() -> None:
    def denied(pid: int, sig: int) -> None:
        raise PermissionError()

    assert pid_alive(10, kill=denied)
    assert not pid_alive(10, kill=FakeKill([]))
    assert pid_alive(10, kill=FakeKill([10]))


@pytest.mark.anyio
async def test_cleanup_unregisters_dead_and_terminates_untracked() -> None:
    client = FakeControlPlane([_proc("dead", 100), _proc("stray", 200), _proc("ours", 300), _proc("nopid", None)])
    kill = FakeKill(alive=[200, 300])

    report = await cleanup_orphans(client, "r1", tracked_pids=[300], kill=kill)

    assert report.checked == 4
    assert report.kept == ["ours"]
    assert report.terminated == ["stray"]
    assert sorted(client.unregistered) == ["dead", "nopid", "stray"]
    assert (200, signal.SIGTERM) in kill.signals
    assert all(pid != 300 for pid, _ in kill.signals)


@pytest.mark.anyio
async def test_cleanup_survives_list_failure() -> None:
    client = FakeControlPlane([], fail_list=True)
    report = await cleanup_orphans(client, "r1", tracked_pids=[], kill=FakeKill([]))
    assert report.errors == ["list failed"]
    assert client.unregistered == []


@dataclass
class Target:
    project_id: str
    port: Optional[int]
    pid: Optional[int]


@pytest.mark.anyio
async def test_health_monitor_terminates_after_threshold() -> None:
    client = FakeControlPlane([])
    kill = FakeKill(alive=[77])
    healthy = {"up": True, "down": False}

    async def probe(port: int) -> bool:
        return healthy["up" if port == 3000 else "down"]

    targets = [Target("ok", 3000, 11), Target("bad", 4000, 77), Target("pending", None, 12)]
    monitor = HealthMonitor(client, lambda: targets, probe=probe, kill=kill, failure_threshold=3)

    for _ in range(2):
        results = await monitor.check_once()
    assert results == {"ok": True, "bad": False}
    assert monitor.failure_count("bad") == 2
    assert kill.signals == []

    await monitor.check_once()
    assert kill.signals == [(77, signal.SIGTERM)]
    assert monitor.failure_count("bad") == 0

    bad_reports = [h for h in client.health if h["project_id"] == "bad"]
    assert [h["fail_count"] for h in bad_reports] == [1, 2, 3]
    assert all(h["healthy"] is False for h in bad_reports)
    ok_reports = [h for h in client.health if h["project_id"] == "ok"]
    assert ok_reports[0]["port"] == 3000
    assert ok_reports[0]["pid"] == 11


@pytest.mark.anyio
async def test_health_recovery_resets_count() -> None:
    client = FakeControlPlane([])
    state = {"up": False}

    async def probe(port: int) -> bool:
        return state["up"]

    monitor = HealthMonitor(client, lambda: [Target("p", 3000, 5)], probe=probe, kill=FakeKill([5]))
    await monitor.check_once()
    assert monitor.failure_count("p") == 1
    state["up"] = True
    await monitor.check_once()
    assert monitor.failure_count("p") == 0


@pytest.mark.anyio
async def test_cleanup_reports_html_response_as_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<!doctype html><p>proxy error</p>")

    client = ControlPlaneClient(
        "https://api.example.com", "secret", transport=httpx.MockTransport(handler)
    )
    report = await cleanup_orphans(client, "runner-1", tracked_pids=(), kill=FakeKill([]))
    await client.close()

    assert report.checked == 0
    assert len(report.errors) == 1
    assert "invalid JSON body" in report.errors[0]


@pytest.mark.anyio
async def test_health_monitor_terminates_whole_process_group(monkeypatch) -> None:
    group_signals: List[tuple] = []
    direct_signals: List[tuple] = []
    monkeypatch.setattr(os, "killpg", lambda pid, sig: group_signals.append((pid, sig)))
    monkeypatch.setattr(os, "kill", lambda pid, sig: direct_signals.append((pid, sig)))

    async def probe(port: int) -> bool:
        return False

    monitor = HealthMonitor(
        FakeControlPlane([]),
        lambda: [Target("dev", 5173, 900)],
        probe=probe,
        failure_threshold=2,
    )
    await monitor.check_once()
    await monitor.check_once()

    assert group_signals == [(900, signal.SIGTERM)]
    assert direct_signals == []


def test_signal_process_group_falls_back_to_pid(monkeypatch) -> None:
    direct_signals: List[tuple] = []

    def no_group(pid: int, sig: int) -> None:
        raise ProcessLookupError(pid)

    monkeypatch.setattr(os, "killpg", no_group)
    monkeypatch.setattr(os, "kill", lambda pid, sig: direct_signals.append((pid, sig)))

    signal_process_group(321, signal.SIGTERM)

    assert direct_signals == [(321, signal.SIGTERM)]
