import asyncio
import dataclasses
import json
from typing import Any, List

import httpx
import pytest
from websockets import State

from build_runner.control_plane import ControlPlaneClient
from build_runner.runner import Runner, run_cleanup


class FakeControlPlane:
    def __init__(self) -> None:
        self.listed: List[str] = []
        self.closed = False

    async def list_processes(self, runner_id=None):
        self.listed.append(runner_id)
        return []

    async def unregister_process(self, project_id: str) -> None:
        return None

    async def report_health(self, project_id: str, **fields: Any) -> None:
        return None

    async def close(self) -> None:
        self.closed = True


class OpenSocket:
    def __init__(self) -> None:
        self.state = State.OPEN
        self.sent: List[dict] = []
        self.closed_with = None
        self.first_send = asyncio.Event()
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))
        self.first_send.set()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.state = State.CLOSED
        self.closed_with = code
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.state = State.CLOSED


@pytest.mark.anyio
async def test_runner_publishes_status_and_shuts_down(runner_config, tunnels) -> None:
    ws = OpenSocket()
    control_plane = FakeControlPlane()
    runner = Runner(
        runner_config,
        control_plane=control_plane,
        tunnels=tunnels,
        connect=lambda url, **kwargs: ws,
    )
    task = asyncio.create_task(runner.run())
    await asyncio.wait_for(ws.first_send.wait(), timeout=2)

    assert control_plane.listed == ["runner-1"]
    status = ws.sent[0]
    assert status["type"] == "runner-status"
    assert "commandId" not in status
    assert status["payload"]["status"] == "online"

    runner.request_shutdown()
    code = await asyncio.wait_for(task, timeout=2)

    assert code == 0
    assert ws.closed_with == 1000
    assert tunnels.closed_all
    assert control_plane.closed


@pytest.mark.anyio
async def test_run_cleanup_uses_given_client(runner_config) -> None:
    control_plane = FakeControlPlane()
    report = await run_cleanup(runner_config, control_plane)
    assert report.checked == 0
    assert control_plane.listed == ["runner-1"]
    assert not control_plane.closed


@pytest.mark.anyio
async def test_runner_survives_unreadable_control_plane(runner_config, tunnels) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>login</html>")

    control_plane = ControlPlaneClient(
        "https://api.example.com", "secret", transport=httpx.MockTransport(handler)
    )
    connect_calls: List[str] = []

    def refuse(url: str, **kwargs: Any) -> Any:
        connect_calls.append(url)
        raise OSError("connection refused")

    config = dataclasses.replace(
        runner_config, max_reconnect_attempts=1, reconnect_base_delay_seconds=0.01
    )
    runner = Runner(config, control_plane=control_plane, tunnels=tunnels, connect=refuse)

    code = await asyncio.wait_for(runner.run(), timeout=5)

    assert code == 1
    assert len(connect_calls) == 2
    assert tunnels.closed_all
    assert control_plane._client.is_closed
