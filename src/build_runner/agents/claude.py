"""Single-call streaming adapter around ``claude -p --output-format stream-json``."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from ..errors import BuildFailedError
from ..logging_utils import log_event
from ..utils import join_prompt_segments
from .messages import CanonicalMessage, error_message, result_message
from .process import stream_json_lines
from .prompts import CLAUDE_SYSTEM_PROMPT

ALLOWED_TOOLS = ("Read", "Write", "Edit", "Glob", "Grep", "Bash", "TodoWrite")

LineStreamer = Callable[..., AsyncIterator[Dict[str, Any]]]


def _keep_blocks(blocks: Any, kinds: tuple) -> List[Dict[str, Any]]:
    if not isinstance(blocks, list):
        return []
    return [b for b in blocks if isinstance(b, dict) and b.get("type") in kinds]


def map_claude_event(event: Dict[str, Any]) -> Optional[CanonicalMessage]:
    """Translate one stream-json record; ``None`` for records with no counterpart."""
    event_type = event.get("type")
    message = event.get("message") if isinstance(event.get("message"), dict) else {}

    if event_type == "assistant":
        blocks = _keep_blocks(message.get("content"), ("text", "tool_use"))
        if not blocks:
            return None
        return {
            "type": "assistant",
            "message": {"id": message.get("id"), "content": blocks},
        }
    if event_type == "user":
        blocks = _keep_blocks(message.get("content"), ("tool_result",))
        if not blocks:
            return None
        return {"type": "user", "message": {"content": blocks}}
    if event_type == "result":
        subtype = str(event.get("subtype") or "")
        if event.get("is_error") or subtype.startswith("error"):
            return error_message(event.get("result") or subtype or "Claude run failed")
        return result_message(event.get("result"), event.get("usage"))
    return None


class ClaudeAdapter:
    agent_id = "claude-code"

    def __init__(
        self,
        binary: str = "claude",
        *,
        model: Optional[str] = None,
        max_turns: int = 100,
        base_system_prompt: str = CLAUDE_SYSTEM_PROMPT,
        streamer: LineStreamer = stream_json_lines,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._binary = binary
        self._model = model
        self._max_turns = max_turns
        self._base_system_prompt = base_system_prompt
        self._streamer = streamer
        self._logger = logger or logging.getLogger(__name__)
        self.session_id: Optional[str] = None

    def build_command(
        self, prompt: str, working_directory: Path, system_prompt: Optional[str]
    ) -> List[str]:
        args = [
            self._binary,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--max-turns",
            str(self._max_turns),
            "--permission-mode",
            "acceptEdits",
            "--add-dir",
            str(working_directory),
            "--allowedTools",
            ",".join(ALLOWED_TOOLS),
        ]
        if self._model:
            args.extend(["--model", self._model])
        combined = join_prompt_segments(self._base_system_prompt, system_prompt)
        if combined:
            args.extend(["--append-system-prompt", combined])
        return args

    async def stream(
        self,
        prompt: str,
        working_directory: Path,
        system_prompt: Optional[str] = None,
        **_: Any,
    ) -> AsyncIterator[CanonicalMessage]:
        argv = self.build_command(prompt, working_directory, system_prompt)
        try:
            async for event in self._streamer(
                argv, cwd=working_directory, logger=self._logger, label="claude"
            ):
                if event.get("type") == "system" and event.get("subtype") == "init":
                    self.session_id = event.get("session_id")
                    log_event(
                        self._logger,
                        logging.INFO,
                        "claude.session_started",
                        session_id=self.session_id,
                    )
                    continue
                message = map_claude_event(event)
                if message is not None:
                    yield message
        except BuildFailedError as exc:
            log_event(self._logger, logging.ERROR, "claude.failed", exc=exc)
            yield error_message(str(exc))


__all__ = ["ALLOWED_TOOLS", "ClaudeAdapter", "map_claude_event"]
