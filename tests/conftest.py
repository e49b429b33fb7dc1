"""Test harness configuration.

This repo uses a `src/` layout. In some developer environments an older
installed `build_runner` package can shadow the local sources.

Ensure tests always import the in-repo code.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeTunnels:
    def __init__(self) -> None:
        self.created: List[int] = []
        self.closed: List[int] = []
        self.closed_all = False

    async def create_tunnel(self, port: int) -> str:
        self.created.append(port)
        return f"https://tunnel-{port}.trycloudflare.com"

    async def close_tunnel(self, port: int) -> bool:
        self.closed.append(port)
        return True

    async def close_all(self) -> None:
        self.closed_all = True


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def runner_config(workspace: Path):
    # Import lazily so `pytest_configure()` can prepend the local src/ directory
    # before any `build_runner` modules are loaded.
    from build_runner.config import load_config

    return load_config(
        workspace=workspace,
        shared_secret="test-secret",
        runner_id="runner-1",
        env={},
    )


@pytest.fixture
def tunnels() -> FakeTunnels:
    return FakeTunnels()


@pytest.fixture
def events() -> List[Dict[str, Any]]:
    return []


@pytest.fixture
def session(runner_config, tunnels, events):
    from build_runner.session import RunnerSession

    async def send(event: Dict[str, Any]) -> None:
        events.append(event)

    return RunnerSession(runner_config, send, tunnels)
