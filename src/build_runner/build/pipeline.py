"""Drive one ``start-build`` command from agent stream to wire events."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from ..agents.messages import content_blocks, error_text
from ..agents.prompts import build_full_prompt
from ..agents.registry import (
    AdapterFactory,
    create_adapter,
    has_capability,
    validate_agent_id,
)
from ..errors import BuildFailedError
from ..logging_utils import log_event, truncate_for_log
from ..protocol import Command, StartBuildPayload, make_event
from ..safe_paths import resolve_project_root
from ..session import RunnerSession
from .relay import DONE_FRAME, ChunkDecoder, format_frame, format_tail_frame
from .run_command import detect_run_command
from .transform import WireFrameTransformer


class BuildPipeline:
    def __init__(
        self,
        session: RunnerSession,
        command: Command,
        *,
        adapter_factory: AdapterFactory = create_adapter,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.session = session
        self.command = command
        self._adapter_factory = adapter_factory
        self._logger = logger or logging.getLogger(__name__)
        self.first_chunk_logged = False
        self.chunk_count = 0
        self.thread_id: Optional[str] = None
        self.error: Optional[str] = None
        self.final_result: Any = None

    async def _emit(self, event_type: str, **fields: Any) -> None:
        await self.session.emit(
            make_event(event_type, self.command.project_id, self.command.id, **fields)
        )

    async def _emit_frame(self, data: str) -> None:
        await self._emit("build-stream", data=data)

    async def run(self) -> None:
        payload: StartBuildPayload = self.command.parsed_payload()
        config = self.session.config
        slug = payload.project_slug or self.command.project_id
        project_name = payload.project_name or slug
        project_dir = resolve_project_root(config.workspace_root, slug)
        project_dir.mkdir(parents=True, exist_ok=True)

        try:
            agent = validate_agent_id(payload.agent, default=config.default_agent)
        except ValueError as exc:
            raise BuildFailedError(str(exc)) from exc

        self.thread_id = payload.codex_thread_id
        full_prompt = build_full_prompt(
            payload.prompt,
            operation_type=payload.operation_type,
            project_name=project_name,
            context=payload.context,
        )
        log_event(
            self._logger,
            logging.INFO,
            "build.started",
            project_id=self.command.project_id,
            command_id=self.command.id,
            agent=agent,
            operation=payload.operation_type,
            project_dir=str(project_dir),
            prompt_chars=len(payload.prompt),
            resume_thread=self.thread_id,
        )

        adapter = self._adapter_factory(agent, config)
        stream = adapter.stream(
            full_prompt,
            project_dir,
            payload.system_prompt,
            thread_id=payload.codex_thread_id,
        )
        await self.relay(stream, project_dir)

        if self.error is not None:
            raise BuildFailedError(self.error)

        await self._emit_run_command(project_dir)
        summary = self.final_result
        if not isinstance(summary, str) or not summary.strip():
            summary = "Build completed"
        completion: Dict[str, Any] = {"todos": [], "summary": summary}
        if has_capability(agent, "resumable_threads") and self.thread_id:
            completion["codexThreadId"] = self.thread_id
        log_event(
            self._logger,
            logging.INFO,
            "build.completed",
            project_id=self.command.project_id,
            chunks=self.chunk_count,
        )
        await self._emit("build-completed", payload=completion)

    async def relay(self, stream: AsyncIterator[Any], project_dir: Path) -> None:
        """Forward every chunk as wire frames, then the tail and ``[DONE]``."""
        decoder = ChunkDecoder(self._logger)
        transformer = WireFrameTransformer(project_dir, logger=self._logger)
        async for chunk in stream:
            message = decoder.decode(chunk)
            if message is None:
                continue
            self.chunk_count += 1
            if not self.first_chunk_logged:
                self.first_chunk_logged = True
                log_event(
                    self._logger,
                    logging.INFO,
                    "build.first_chunk",
                    project_id=self.command.project_id,
                )
            self._observe(message)
            for frame in transformer.transform(message):
                await self._emit_frame(format_frame(frame))
        for frame in transformer.close():
            await self._emit_frame(format_frame(frame))
        tail = decoder.flush()
        if tail:
            await self._emit_frame(format_tail_frame(tail))
        await self._emit_frame(DONE_FRAME)

    def _observe(self, message: Dict[str, Any]) -> None:
        kind = message.get("type")
        project_id = self.command.project_id
        if kind == "assistant":
            if message.get("thread_id"):
                self.thread_id = str(message["thread_id"])
                log_event(
                    self._logger,
                    logging.INFO,
                    "build.thread_id",
                    project_id=project_id,
                    thread_id=self.thread_id,
                )
                return
            for block in content_blocks(message):
                if not isinstance(block, dict):
                    continue
                if block.get("type") == "text":
                    log_event(
                        self._logger,
                        logging.INFO,
                        "build.agent_text",
                        project_id=project_id,
                        text=truncate_for_log(block.get("text") or ""),
                    )
                elif block.get("type") == "tool_use":
                    log_event(
                        self._logger,
                        logging.INFO,
                        "build.tool_called",
                        project_id=project_id,
                        tool=block.get("name"),
                        tool_id=block.get("id"),
                        input=truncate_for_log(block.get("input"), 300),
                    )
        elif kind == "user":
            for block in content_blocks(message):
                if not isinstance(block, dict) or block.get("type") != "tool_result":
                    continue
                log_event(
                    self._logger,
                    logging.WARNING if block.get("is_error") else logging.INFO,
                    "build.tool_result",
                    project_id=project_id,
                    tool_id=block.get("tool_use_id"),
                    is_error=bool(block.get("is_error")),
                    output=truncate_for_log(block.get("content"), 500),
                )
        elif kind == "result":
            self.final_result = message.get("result")
        elif kind == "error":
            self.error = error_text(message.get("error"))
            log_event(
                self._logger,
                logging.ERROR,
                "build.agent_error",
                project_id=project_id,
                error=truncate_for_log(self.error, 500),
            )

    async def _emit_run_command(self, project_dir: Path) -> None:
        try:
            detected = detect_run_command(project_dir)
        except (OSError, ValueError) as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "build.run_command_detection_failed",
                project_id=self.command.project_id,
                exc=exc,
            )
            return
        if detected is None:
            return
        log_event(
            self._logger,
            logging.INFO,
            "build.run_command_detected",
            project_id=self.command.project_id,
            run_command=detected.command,
            project_type=detected.project_type,
        )
        await self._emit("project-metadata", payload=detected.metadata(project_dir))


__all__ = ["BuildPipeline"]
