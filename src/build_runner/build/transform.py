"""Canonical agent message -> wire frames.

One :class:`WireFrameTransformer` exists per build. It tracks which assistant
message is open so that ``start``/``finish`` frames bracket each message, and
it numbers text blocks so frame ids are stable within a build.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..agents.messages import content_blocks, error_text
from ..logging_utils import log_event, truncate_for_log

Frame = Dict[str, Any]

_PATH_CHECKED_TOOLS = frozenset({"Bash", "Read", "Write", "Edit", "command_execution"})
_HOME_MARKERS = ("/Users/", "/home/")


def detect_path_violation(
    tool_name: str, tool_input: Any, expected_cwd: Optional[Path] = None
) -> Optional[str]:
    """Describe a suspicious absolute path in a tool call, if any."""
    if tool_name not in _PATH_CHECKED_TOOLS or not isinstance(tool_input, dict):
        return None
    candidate = (
        tool_input.get("command")
        or tool_input.get("file_path")
        or tool_input.get("path")
        or ""
    )
    if not isinstance(candidate, str) or not candidate:
        return None
    cwd = str(expected_cwd) if expected_cwd is not None else None
    if "/Desktop/" in candidate and not (cwd and "/Desktop/" in cwd):
        return f"Desktop path outside project: {candidate}"
    if any(marker in candidate for marker in _HOME_MARKERS):
        if cwd and cwd in candidate:
            return None
        user = os.environ.get("USER") or ""
        if "/Users/" in candidate and user and f"/Users/{user}" not in candidate:
            return f"Path uses a different user's home: {candidate}"
        return f"Absolute home path outside project: {candidate}"
    return None


class WireFrameTransformer:
    def __init__(
        self,
        expected_cwd: Optional[Path] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.expected_cwd = expected_cwd
        self._logger = logger or logging.getLogger(__name__)
        self._current_message_id: Optional[str] = None
        self._text_counter = 0
        self.path_violations: List[str] = []

    @property
    def message_open(self) -> bool:
        return self._current_message_id is not None

    def _finish_open(self, frames: List[Frame]) -> None:
        if self._current_message_id is not None:
            frames.append({"type": "finish"})
            self._current_message_id = None

    def transform(self, message: Any) -> List[Frame]:
        if not isinstance(message, dict):
            return []
        kind = message.get("type")
        if kind == "assistant":
            return self._assistant(message)
        if kind == "user":
            return self._user(message)
        frames: List[Frame] = []
        if kind == "result":
            self._finish_open(frames)
            frame: Frame = {"type": "result", "result": message.get("result")}
            if message.get("usage") is not None:
                frame["usage"] = message["usage"]
            frames.append(frame)
        elif kind == "error":
            self._finish_open(frames)
            frames.append({"type": "error", "error": error_text(message.get("error"))})
        elif "raw" in message and kind is None:
            frames.append({"type": "raw", "raw": message["raw"]})
        return frames

    def _assistant(self, message: Dict[str, Any]) -> List[Frame]:
        thread_id = message.get("thread_id")
        if thread_id:
            return [{"type": "thread-id", "threadId": thread_id}]
        frames: List[Frame] = []
        inner = message.get("message")
        message_id = None
        if isinstance(inner, dict):
            message_id = inner.get("id")
        if not message_id:
            message_id = self._current_message_id or f"msg-{uuid.uuid4().hex[:12]}"
        if message_id != self._current_message_id:
            self._finish_open(frames)
            self._current_message_id = message_id
            frames.append({"type": "start", "messageId": message_id})

        for block in content_blocks(message):
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                self._text_counter += 1
                text_id = f"{message_id}-text-{self._text_counter}"
                frames.append({"type": "text-start", "id": text_id})
                frames.append({"type": "text-delta", "id": text_id, "delta": block["text"]})
                frames.append({"type": "text-end", "id": text_id})
            elif block.get("type") == "tool_use":
                name = block.get("name") or "tool"
                violation = detect_path_violation(name, block.get("input"), self.expected_cwd)
                if violation:
                    self.path_violations.append(violation)
                    log_event(
                        self._logger,
                        logging.WARNING,
                        "build.path_violation",
                        tool=name,
                        detail=truncate_for_log(violation),
                        expected_cwd=str(self.expected_cwd) if self.expected_cwd else None,
                    )
                frames.append(
                    {
                        "type": "tool-input-available",
                        "toolCallId": block.get("id"),
                        "toolName": name,
                        "input": block.get("input"),
                    }
                )
        return frames

    def _user(self, message: Dict[str, Any]) -> List[Frame]:
        frames: List[Frame] = []
        for block in content_blocks(message):
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            frame: Frame = {
                "type": "tool-output-available",
                "toolCallId": block.get("tool_use_id"),
                "output": block.get("content"),
            }
            if block.get("is_error"):
                frame["isError"] = True
            frames.append(frame)
        return frames

    def close(self) -> List[Frame]:
        frames: List[Frame] = []
        self._finish_open(frames)
        return frames


__all__ = ["Frame", "WireFrameTransformer", "detect_path_violation"]
