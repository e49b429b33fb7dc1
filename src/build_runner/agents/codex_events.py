"""Map ``codex exec --json`` events onto canonical messages.

Codex emits one JSON object per line. Items carry their logical type and id
under several aliases depending on the CLI version, so both are resolved
through an ordered list of candidate keys.
"""

from __future__ import annotations

import uuid
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional, Set

from .messages import (
    CanonicalMessage,
    assistant_text,
    assistant_tool_use,
    error_message,
    result_message,
    user_tool_result,
)

TOOL_ITEM_TYPES = frozenset({"tool_call", "mcp_tool_call"})
COMMAND_ITEM_TYPES = frozenset({"command_execution"})
FILE_CHANGE_ITEM_TYPES = frozenset({"file_change"})
TEXT_ITEM_TYPES = frozenset({"agent_message", "assistant_message", "reasoning"})

_ITEM_ID_KEYS = ("id", "item_id", "tool_call_id", "tool_use_id")
_TOOL_INPUT_KEYS = ("arguments", "args", "input")
_TOOL_OUTPUT_KEYS = (
    "aggregated_output",
    "output",
    "stdout",
    "result",
    "response",
    "content",
)


def resolve_item_type(item: Optional[Dict[str, Any]]) -> str:
    if not item:
        return ""
    for key in ("type", "item_type"):
        value = item.get(key)
        if isinstance(value, str):
            return value
    return ""


def resolve_item_id(item: Optional[Dict[str, Any]]) -> str:
    if item:
        for key in _ITEM_ID_KEYS:
            value = item.get(key)
            if isinstance(value, str) and value.strip():
                return value
    return str(uuid.uuid4())


def extract_tool_input(item: Optional[Dict[str, Any]]) -> Any:
    if not item:
        return {}
    for key in _TOOL_INPUT_KEYS:
        if key in item and item[key] is not None:
            return item[key]
    return {}


def extract_tool_output(item: Optional[Dict[str, Any]]) -> Any:
    if not item:
        return None
    for key in _TOOL_OUTPUT_KEYS:
        if key in item and item[key] is not None:
            return item[key]
    return None


def _tool_name(item: Dict[str, Any], item_type: str) -> str:
    if item_type in COMMAND_ITEM_TYPES:
        return "command_execution"
    if item_type in FILE_CHANGE_ITEM_TYPES:
        return "file_change"
    for key in ("name", "tool_name", "tool"):
        value = item.get(key)
        if isinstance(value, str) and value:
            server = item.get("server")
            if key == "tool" and isinstance(server, str) and server:
                return f"{server}.{value}"
            return value
    return "tool_call"


def _tool_input(item: Dict[str, Any], item_type: str) -> Any:
    if item_type in COMMAND_ITEM_TYPES:
        return {"command": item.get("command") or item.get("cmd") or ""}
    if item_type in FILE_CHANGE_ITEM_TYPES:
        return {"changes": item.get("changes") or []}
    return extract_tool_input(item)


def _is_error(item: Dict[str, Any]) -> bool:
    exit_code = item.get("exit_code")
    if isinstance(exit_code, int) and not isinstance(exit_code, bool):
        return exit_code != 0
    return item.get("status") in ("failed", "error")


def _is_tool_item(item_type: str) -> bool:
    return (
        item_type in TOOL_ITEM_TYPES
        or item_type in COMMAND_ITEM_TYPES
        or item_type in FILE_CHANGE_ITEM_TYPES
    )


class CodexEventNormalizer:
    """Stateful per-turn converter; remembers the thread id and last reply."""

    def __init__(self) -> None:
        self.thread_id: Optional[str] = None
        self.last_text: Optional[str] = None
        self._started: Set[str] = set()

    def normalize(self, event: Any) -> List[CanonicalMessage]:
        if not isinstance(event, dict):
            return []
        event_type = event.get("type")
        item = event.get("item") if isinstance(event.get("item"), dict) else None

        if event_type == "thread.started":
            thread_id = event.get("thread_id")
            if isinstance(thread_id, str) and thread_id:
                self.thread_id = thread_id
            return []

        if event_type == "item.started" and item is not None:
            item_type = resolve_item_type(item)
            if not _is_tool_item(item_type):
                return []
            item_id = resolve_item_id(item)
            self._started.add(item_id)
            return [
                assistant_tool_use(
                    item_id, item_id, _tool_name(item, item_type), _tool_input(item, item_type)
                )
            ]

        if event_type == "item.completed" and item is not None:
            return self._completed(item)

        if event_type == "turn.completed":
            final = event.get("finalResponse")
            if final is None:
                final = self.last_text
            return [result_message(final, event.get("usage"))]

        if event_type in ("error", "turn.failed"):
            error = event.get("error")
            if error is None:
                error = event.get("message")
            return [error_message(error)]

        return []

    def _completed(self, item: Dict[str, Any]) -> List[CanonicalMessage]:
        item_type = resolve_item_type(item)
        item_id = resolve_item_id(item)
        if item_type in TEXT_ITEM_TYPES:
            text = item.get("text")
            if not isinstance(text, str) or not text.strip():
                return []
            if item_type != "reasoning":
                self.last_text = text
            return [assistant_text(item_id, text)]
        if not _is_tool_item(item_type):
            return []
        messages: List[CanonicalMessage] = []
        if item_id not in self._started:
            # file changes are reported only once they are applied
            messages.append(
                assistant_tool_use(
                    item_id, item_id, _tool_name(item, item_type), _tool_input(item, item_type)
                )
            )
        self._started.discard(item_id)
        exit_code = item.get("exit_code")
        status = item.get("status")
        messages.append(
            user_tool_result(
                item_id,
                extract_tool_output(item),
                is_error=_is_error(item),
                status=status if isinstance(status, str) else None,
                exit_code=exit_code if isinstance(exit_code, int) else None,
            )
        )
        return messages


async def normalize_codex_events(
    events: AsyncIterable[Any],
    normalizer: Optional[CodexEventNormalizer] = None,
) -> AsyncIterator[CanonicalMessage]:
    normalizer = normalizer or CodexEventNormalizer()
    async for event in events:
        for message in normalizer.normalize(event):
            yield message


__all__ = [
    "CodexEventNormalizer",
    "extract_tool_input",
    "extract_tool_output",
    "normalize_codex_events",
    "resolve_item_id",
    "resolve_item_type",
]
