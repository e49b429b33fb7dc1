"""Canonical agent messages.

Every adapter yields only these shapes, regardless of backend:

- ``assistant``: ``{"type": "assistant", "message": {"id", "content": [blocks]}}``
  where blocks are ``text`` or ``tool_use`` blocks
- ``user``: ``{"type": "user", "message": {"content": [tool_result blocks]}}``
- ``result``: ``{"type": "result", "result", "usage"}``
- ``error``: ``{"type": "error", "error"}``

A thread identifier for a resumable session travels as an ``assistant``
message with empty content and a ``thread_id`` field.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

CanonicalMessage = Dict[str, Any]

MESSAGE_TYPES = ("assistant", "user", "result", "error")


def assistant_text(message_id: str, text: str) -> CanonicalMessage:
    return {
        "type": "assistant",
        "message": {"id": message_id, "content": [{"type": "text", "text": text}]},
    }


def assistant_tool_use(
    message_id: str, tool_id: str, name: str, tool_input: Any
) -> CanonicalMessage:
    return {
        "type": "assistant",
        "message": {
            "id": message_id,
            "content": [
                {"type": "tool_use", "id": tool_id, "name": name, "input": tool_input}
            ],
        },
    }


def user_tool_result(
    tool_use_id: str,
    content: Any,
    *,
    is_error: bool = False,
    status: Optional[str] = None,
    exit_code: Optional[int] = None,
) -> CanonicalMessage:
    block: Dict[str, Any] = {
        "type": "tool_result",
        "tool_use_id": tool_use_id,
        "content": content,
    }
    if is_error:
        block["is_error"] = True
    if status is not None:
        block["status"] = status
    if exit_code is not None:
        block["exit_code"] = exit_code
    return {"type": "user", "message": {"content": [block]}}


def result_message(result: Any = None, usage: Any = None) -> CanonicalMessage:
    return {"type": "result", "result": result, "usage": usage}


def error_message(error: Any) -> CanonicalMessage:
    return {"type": "error", "error": error}


def thread_id_message(thread_id: str) -> CanonicalMessage:
    return {
        "type": "assistant",
        "thread_id": thread_id,
        "message": {"id": f"thread-{thread_id}", "content": []},
    }


def content_blocks(message: CanonicalMessage) -> list:
    inner = message.get("message")
    if not isinstance(inner, dict):
        return []
    blocks = inner.get("content")
    return blocks if isinstance(blocks, list) else []


def assistant_texts(messages: Iterable[CanonicalMessage]) -> str:
    parts = []
    for message in messages:
        if message.get("type") != "assistant":
            continue
        for block in content_blocks(message):
            if isinstance(block, dict) and block.get("type") == "text":
                text = block.get("text")
                if isinstance(text, str):
                    parts.append(text)
    return "\n".join(parts)


def error_text(error: Any) -> str:
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        for key in ("message", "error", "detail"):
            value = error.get(key)
            if isinstance(value, str) and value:
                return value
    if error is None:
        return "Agent reported an error"
    return str(error)


__all__ = [
    "CanonicalMessage",
    "MESSAGE_TYPES",
    "assistant_text",
    "assistant_texts",
    "assistant_tool_use",
    "content_blocks",
    "error_message",
    "error_text",
    "result_message",
    "thread_id_message",
    "user_tool_result",
]
