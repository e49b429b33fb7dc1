"""Broker command/event wire protocol.

Commands arrive as one JSON object per websocket message and are validated
with pydantic; events are plain dicts built by :func:`make_event` so handlers
can attach type-specific fields without a model per event type.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import CommandDecodeError

CommandType = Literal[
    "start-build",
    "start-dev-server",
    "stop-dev-server",
    "start-tunnel",
    "stop-tunnel",
    "fetch-logs",
    "runner-health-check",
    "delete-project-files",
    "read-file",
    "write-file",
    "list-files",
]

COMMAND_TYPES: tuple[str, ...] = (
    "start-build",
    "start-dev-server",
    "stop-dev-server",
    "start-tunnel",
    "stop-tunnel",
    "fetch-logs",
    "runner-health-check",
    "delete-project-files",
    "read-file",
    "write-file",
    "list-files",
)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class StartBuildPayload(_Payload):
    prompt: str = Field(min_length=1)
    operation_type: str = Field(alias="operationType", min_length=1)
    project_slug: Optional[str] = Field(default=None, alias="projectSlug")
    project_name: Optional[str] = Field(default=None, alias="projectName")
    context: Optional[Dict[str, Any]] = None
    agent: Optional[str] = None
    codex_thread_id: Optional[str] = Field(default=None, alias="codexThreadId")
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")


class StartDevServerPayload(_Payload):
    run_command: str = Field(alias="runCommand", min_length=1)
    working_directory: str = Field(alias="workingDirectory", min_length=1)
    env: Dict[str, str] = Field(default_factory=dict)
    preferred_port: Optional[int] = Field(default=None, alias="preferredPort")
    framework: Optional[str] = None


class TunnelPayload(_Payload):
    port: int = Field(gt=0, lt=65536)


class FetchLogsPayload(_Payload):
    cursor: Optional[str] = None
    limit: Optional[int] = Field(default=None, gt=0)


class SlugPayload(_Payload):
    slug: str = Field(min_length=1)


class ReadFilePayload(SlugPayload):
    file_path: str = Field(alias="filePath", min_length=1)


class WriteFilePayload(SlugPayload):
    file_path: str = Field(alias="filePath", min_length=1)
    content: str


class ListFilesPayload(SlugPayload):
    path: Optional[str] = None


class EmptyPayload(_Payload):
    pass


PAYLOAD_MODELS: Dict[str, Type[_Payload]] = {
    "start-build": StartBuildPayload,
    "start-dev-server": StartDevServerPayload,
    "stop-dev-server": EmptyPayload,
    "start-tunnel": TunnelPayload,
    "stop-tunnel": TunnelPayload,
    "fetch-logs": FetchLogsPayload,
    "runner-health-check": EmptyPayload,
    "delete-project-files": SlugPayload,
    "read-file": ReadFilePayload,
    "write-file": WriteFilePayload,
    "list-files": ListFilesPayload,
}


class Command(BaseModel):
    """An inbound broker command. ``id`` is the correlation key for events."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str = Field(min_length=1)
    type: CommandType
    project_id: str = Field(alias="projectId")
    timestamp: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    def parsed_payload(self) -> Any:
        """Validate ``payload`` against the model for this command type."""
        model = PAYLOAD_MODELS[self.type]
        try:
            return model.model_validate(self.payload)
        except ValidationError as exc:
            raise CommandDecodeError(
                f"Invalid payload for {self.type}: {_summarize_validation(exc)}"
            ) from exc


def _summarize_validation(exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ())) or "payload"
        problems.append(f"{location}: {err.get('msg', 'invalid')}")
    return "; ".join(problems)


def decode_command(raw: Union[str, bytes, bytearray, memoryview]) -> Command:
    if isinstance(raw, (bytes, bytearray, memoryview)):
        raw = bytes(raw).decode("utf-8", errors="replace")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CommandDecodeError(f"Command is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise CommandDecodeError("Command must be a JSON object")
    if data.get("type") not in COMMAND_TYPES:
        raise CommandDecodeError(f"Unknown command type: {data.get('type')!r}")
    try:
        return Command.model_validate(data)
    except ValidationError as exc:
        raise CommandDecodeError(
            f"Invalid command: {_summarize_validation(exc)}"
        ) from exc


def make_event(
    event_type: str,
    project_id: Optional[str] = None,
    command_id: Optional[str] = None,
    **fields: Any,
) -> Dict[str, Any]:
    event: Dict[str, Any] = {"type": event_type, "timestamp": now_iso()}
    if project_id is not None:
        event["projectId"] = project_id
    if command_id is not None:
        event["commandId"] = command_id
    for key, value in fields.items():
        if value is not None:
            event[key] = value
    return event


def new_correlation_id() -> str:
    return str(uuid.uuid4())


__all__ = [
    "COMMAND_TYPES",
    "Command",
    "CommandType",
    "EmptyPayload",
    "FetchLogsPayload",
    "ListFilesPayload",
    "ReadFilePayload",
    "SlugPayload",
    "StartBuildPayload",
    "StartDevServerPayload",
    "TunnelPayload",
    "WriteFilePayload",
    "decode_command",
    "make_event",
    "new_correlation_id",
    "now_iso",
]
