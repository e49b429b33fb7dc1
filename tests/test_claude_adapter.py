from pathlib import Path
from typing import Any, Dict, List

import pytest

from build_runner.agents.claude import ClaudeAdapter, map_claude_event
from build_runner.errors import BuildFailedError


def _streamer(events: List[Any], calls: List[Dict[str, Any]]):
    def stream(argv, *, cwd, logger=None, label=None):
        calls.append({"argv": argv, "cwd": cwd})

        async def gen():
            for event in events:
                if isinstance(event, Exception):
                    raise event
                yield event

        return gen()

    return stream


def test_map_assistant_keeps_text_and_tool_blocks() -> None:
    mapped = map_claude_event(
        {
            "type": "assistant",
            "message": {
                "id": "msg_1",
                "content": [
                    {"type": "thinking", "thinking": "hmm"},
                    {"type": "text", "text": "Creating files"},
                    {"type": "tool_use", "id": "toolu_1", "name": "Write", "input": {"file_path": "a.ts"}},
                ],
            },
        }
    )
    assert mapped["message"]["id"] == "msg_1"
    assert [b["type"] for b in mapped["message"]["content"]] == ["text", "tool_use"]


def test_map_result_and_error() -> None:
    ok = map_claude_event({"type": "result", "subtype": "success", "result": "Done", "usage": {"x": 1}})
    assert ok == {"type": "result", "result": "Done", "usage": {"x": 1}}
    failed = map_claude_event({"type": "result", "subtype": "error_max_turns", "is_error": True})
    assert failed == {"type": "error", "error": "error_max_turns"}
    assert map_claude_event({"type": "system", "subtype": "init"}) is None
    assert map_claude_event({"type": "user", "message": {"content": "plain"}}) is None


@pytest.mark.anyio
async def test_stream_yields_canonical_messages(tmp_path: Path) -> None:
    calls: List[Dict[str, Any]] = []
    events = [
        {"type": "system", "subtype": "init", "session_id": "sess-1"},
        {"type": "assistant", "message": {"id": "m1", "content": [{"type": "text", "text": "hi"}]}},
        {
            "type": "user",
            "message": {"content": [{"type": "tool_result", "tool_use_id": "t1", "content": "ok"}]},
        },
        {"type": "result", "subtype": "success", "result": "All done"},
    ]
    adapter = ClaudeAdapter("claude", model="sonnet", streamer=_streamer(events, calls))
    messages = [m async for m in adapter.stream("build it", tmp_path, "Be brief.")]

    assert [m["type"] for m in messages] == ["assistant", "user", "result"]
    assert adapter.session_id == "sess-1"
    argv = calls[0]["argv"]
    assert argv[:3] == ["claude", "-p", "build it"]
    assert argv[argv.index("--output-format") + 1] == "stream-json"
    assert argv[argv.index("--add-dir") + 1] == str(tmp_path)
    assert argv[argv.index("--model") + 1] == "sonnet"
    assert argv[argv.index("--append-system-prompt") + 1].endswith("Be brief.")
    assert calls[0]["cwd"] == tmp_path


@pytest.mark.anyio
async def test_process_failure_is_an_error_message(tmp_path: Path) -> None:
    calls: List[Dict[str, Any]] = []
    events = [
        {"type": "assistant", "message": {"id": "m1", "content": [{"type": "text", "text": "hi"}]}},
        BuildFailedError("claude exited with code 2"),
    ]
    adapter = ClaudeAdapter(streamer=_streamer(events, calls))
    messages = [m async for m in adapter.stream("build it", tmp_path)]
    assert messages[-1] == {"type": "error", "error": "claude exited with code 2"}
