from pathlib import Path
from typing import Any, List, Optional

import pytest

from build_runner.agents.codex import (
    STOP_COMPLETED,
    STOP_EMPTY_TURN,
    STOP_ERROR,
    STOP_MAX_TURNS,
    CodexAdapter,
    CodexExecClient,
)
from build_runner.agents.prompts import CODEX_CONTINUATION_PROMPT
from build_runner.errors import BuildFailedError


class ScriptedTurns:
    def __init__(self, turns: List[List[Any]]) -> None:
        self.turns = list(turns)
        self.calls: List[tuple] = []

    def run_turn(self, prompt: str, working_directory: Path, thread_id: Optional[str]):
        self.calls.append((prompt, thread_id))
        events = self.turns.pop(0) if self.turns else []

        async def gen():
            for event in events:
                if isinstance(event, Exception):
                    raise event
                yield event

        return gen()


def _text(text: str, item_id: str = "m") -> dict:
    return {"type": "item.completed", "item": {"id": item_id, "type": "agent_message", "text": text}}


THREAD = {"type": "thread.started", "thread_id": "th-1"}
DONE = {"type": "turn.completed"}


async def _collect(
    adapter: CodexAdapter,
    *,
    system_prompt: Optional[str] = None,
    thread_id: Optional[str] = None,
) -> List[dict]:
    stream = adapter.stream(
        "Build a todo app", Path("/tmp/project"), system_prompt, thread_id=thread_id
    )
    return [m async for m in stream]


@pytest.mark.anyio
async def test_stops_on_completion_phrase() -> None:
    runner = ScriptedTurns(
        [
            [THREAD, _text("Scaffolded the app."), DONE],
            [_text("Build complete! Everything works."), DONE],
            [_text("should never run"), DONE],
        ]
    )
    adapter = CodexAdapter(runner, max_turns=5)
    messages = await _collect(adapter)

    assert adapter.state.stop_reason == STOP_COMPLETED
    assert adapter.state.turn == 2
    assert len(runner.calls) == 2
    assert runner.calls[0][1] is None
    assert runner.calls[1] == (CODEX_CONTINUATION_PROMPT, "th-1")
    assert messages[0]["thread_id"] == "th-1"
    assert messages[0]["message"]["content"] == []
    assert [m["type"] for m in messages[1:]] == ["assistant", "result", "assistant", "result"]


@pytest.mark.anyio
async def test_stops_on_empty_turn() -> None:
    runner = ScriptedTurns([[THREAD, _text("Working on it."), DONE], []])
    adapter = CodexAdapter(runner, max_turns=5)
    await _collect(adapter)
    assert adapter.state.stop_reason == STOP_EMPTY_TURN
    assert adapter.state.turn == 2


@pytest.mark.anyio
async def test_turn_ceiling() -> None:
    runner = ScriptedTurns([[THREAD, _text("step 1"), DONE], [_text("step 2"), DONE]])
    adapter = CodexAdapter(runner, max_turns=2)
    await _collect(adapter)
    assert adapter.state.stop_reason == STOP_MAX_TURNS
    assert len(runner.calls) == 2


@pytest.mark.anyio
async def test_resumed_thread_is_announced_first() -> None:
    runner = ScriptedTurns([[_text("All tasks complete."), DONE]])
    adapter = CodexAdapter(runner, max_turns=3)
    messages = await _collect(adapter, thread_id="th-9")

    assert messages[0]["thread_id"] == "th-9"
    assert runner.calls[0][1] == "th-9"
    assert sum(1 for m in messages if m.get("thread_id")) == 1
    assert adapter.state.stop_reason == STOP_COMPLETED


@pytest.mark.anyio
async def test_process_failure_becomes_error_message() -> None:
    runner = ScriptedTurns([[THREAD, BuildFailedError("codex exited with code 1")]])
    adapter = CodexAdapter(runner)
    messages = await _collect(adapter)
    assert messages[-1] == {"type": "error", "error": "codex exited with code 1"}
    assert adapter.state.stop_reason == STOP_ERROR


@pytest.mark.anyio
async def test_error_event_stops_the_loop() -> None:
    runner = ScriptedTurns([[THREAD, {"type": "error", "message": "quota"}], [_text("x")]])
    adapter = CodexAdapter(runner)
    messages = await _collect(adapter)
    assert messages[-1] == {"type": "error", "error": "quota"}
    assert len(runner.calls) == 1


@pytest.mark.anyio
async def test_missing_thread_id_cannot_continue() -> None:
    runner = ScriptedTurns([[_text("step 1"), DONE]])
    adapter = CodexAdapter(runner)
    messages = await _collect(adapter)
    assert messages[-1]["type"] == "error"
    assert "thread id" in messages[-1]["error"]
    assert adapter.state.stop_reason == STOP_ERROR


@pytest.mark.anyio
async def test_first_prompt_combines_system_prompts() -> None:
    runner = ScriptedTurns([[THREAD, _text("Implementation complete."), DONE]])
    adapter = CodexAdapter(runner, base_system_prompt="BASE RULES")
    await _collect(adapter, system_prompt="Use TypeScript.")
    first_prompt = runner.calls[0][0]
    assert first_prompt == "BASE RULES\n\nUse TypeScript.\n\nBuild a todo app"


def test_exec_command_line() -> None:
    client = CodexExecClient("codex", model="gpt-5-codex")
    fresh = client.build_command("do it", Path("/w/app"), None)
    assert fresh[:3] == ["codex", "exec", "--json"]
    assert fresh[fresh.index("--cd") + 1] == "/w/app"
    assert fresh[fresh.index("--model") + 1] == "gpt-5-codex"
    assert "resume" not in fresh
    assert fresh[-1] == "do it"

    resumed = client.build_command("continue", Path("/w/app"), "th-1")
    assert resumed[-3:] == ["resume", "th-1", "continue"]
