"""Autonomous multi-turn adapter around ``codex exec --json``.

Turn 1 sends the full prompt, starting a new thread or resuming the given
one. Every later turn resumes that thread with a fixed continuation prompt.
The loop stops on a completion phrase, on a turn that produces no canonical
messages, on an error message, or when the turn ceiling is reached.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

from ..errors import BuildFailedError
from ..logging_utils import log_event, truncate_for_log
from ..utils import join_prompt_segments
from .codex_events import CodexEventNormalizer, normalize_codex_events
from .messages import (
    CanonicalMessage,
    assistant_texts,
    error_message,
    thread_id_message,
)
from .process import stream_json_lines
from .prompts import (
    CODEX_CONTINUATION_PROMPT,
    CODEX_SYSTEM_PROMPT,
    has_completion_phrase,
)

DEFAULT_MAX_TURNS = 20

STOP_COMPLETED = "completed"
STOP_EMPTY_TURN = "empty-turn"
STOP_ERROR = "error"
STOP_MAX_TURNS = "max-turns"


class CodexTurnRunner(Protocol):
    def run_turn(
        self, prompt: str, working_directory: Path, thread_id: Optional[str]
    ) -> AsyncIterator[Dict[str, Any]]:
        ...


class CodexExecClient:
    """Runs one turn per ``codex exec`` invocation and yields raw JSON events."""

    def __init__(
        self,
        binary: str = "codex",
        *,
        model: Optional[str] = None,
        sandbox: str = "danger-full-access",
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._binary = binary
        self._model = model
        self._sandbox = sandbox
        self._logger = logger or logging.getLogger(__name__)

    def build_command(
        self, prompt: str, working_directory: Path, thread_id: Optional[str]
    ) -> List[str]:
        args = [
            self._binary,
            "exec",
            "--json",
            "--skip-git-repo-check",
            "--sandbox",
            self._sandbox,
            "--cd",
            str(working_directory),
        ]
        if self._model:
            args.extend(["--model", self._model])
        if thread_id:
            args.extend(["resume", thread_id])
        args.append(prompt)
        return args

    def run_turn(
        self, prompt: str, working_directory: Path, thread_id: Optional[str]
    ) -> AsyncIterator[Dict[str, Any]]:
        return stream_json_lines(
            self.build_command(prompt, working_directory, thread_id),
            cwd=working_directory,
            logger=self._logger,
            label="codex",
        )


@dataclass
class CodexRunState:
    turn: int = 0
    thread_id: Optional[str] = None
    stop_reason: Optional[str] = None


class CodexAdapter:
    agent_id = "openai-codex"

    def __init__(
        self,
        runner: CodexTurnRunner,
        *,
        max_turns: int = DEFAULT_MAX_TURNS,
        base_system_prompt: str = CODEX_SYSTEM_PROMPT,
        continuation_prompt: str = CODEX_CONTINUATION_PROMPT,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._runner = runner
        self._max_turns = max(1, max_turns)
        self._base_system_prompt = base_system_prompt
        self._continuation_prompt = continuation_prompt
        self._logger = logger or logging.getLogger(__name__)
        self.state = CodexRunState()

    async def stream(
        self,
        prompt: str,
        working_directory: Path,
        system_prompt: Optional[str] = None,
        *,
        thread_id: Optional[str] = None,
    ) -> AsyncIterator[CanonicalMessage]:
        state = CodexRunState(thread_id=thread_id)
        self.state = state
        first_prompt = join_prompt_segments(
            self._base_system_prompt, system_prompt, prompt
        )
        thread_announced = False

        for turn in range(1, self._max_turns + 1):
            state.turn = turn
            turn_prompt = first_prompt if turn == 1 else self._continuation_prompt
            normalizer = CodexEventNormalizer()
            produced: List[CanonicalMessage] = []
            log_event(
                self._logger,
                logging.INFO,
                "codex.turn_started",
                turn=turn,
                thread_id=state.thread_id,
                prompt=truncate_for_log(turn_prompt, 120),
            )
            if turn == 1 and state.thread_id:
                thread_announced = True
                yield thread_id_message(state.thread_id)
            try:
                events = self._runner.run_turn(
                    turn_prompt, working_directory, state.thread_id
                )
                async for message in normalize_codex_events(events, normalizer):
                    if not thread_announced and normalizer.thread_id and turn == 1:
                        thread_announced = True
                        state.thread_id = normalizer.thread_id
                        yield thread_id_message(normalizer.thread_id)
                    produced.append(message)
                    yield message
                    if message.get("type") == "error":
                        state.stop_reason = STOP_ERROR
                        return
            except BuildFailedError as exc:
                log_event(
                    self._logger, logging.ERROR, "codex.turn_failed", turn=turn, exc=exc
                )
                state.stop_reason = STOP_ERROR
                yield error_message(str(exc))
                return

            if normalizer.thread_id:
                state.thread_id = normalizer.thread_id
                if turn == 1 and not thread_announced:
                    thread_announced = True
                    yield thread_id_message(normalizer.thread_id)

            if not produced:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "codex.empty_turn",
                    turn=turn,
                    thread_id=state.thread_id,
                )
                state.stop_reason = STOP_EMPTY_TURN
                return

            if has_completion_phrase(assistant_texts(produced)):
                log_event(
                    self._logger, logging.INFO, "codex.completed", turn=turn
                )
                state.stop_reason = STOP_COMPLETED
                return

            if state.thread_id is None:
                # nothing to resume without a thread
                state.stop_reason = STOP_ERROR
                yield error_message("Codex did not report a thread id; cannot continue")
                return

        log_event(
            self._logger,
            logging.WARNING,
            "codex.max_turns_reached",
            max_turns=self._max_turns,
            thread_id=state.thread_id,
        )
        state.stop_reason = STOP_MAX_TURNS


__all__ = [
    "CodexAdapter",
    "CodexExecClient",
    "CodexRunState",
    "CodexTurnRunner",
    "DEFAULT_MAX_TURNS",
    "STOP_COMPLETED",
    "STOP_EMPTY_TURN",
    "STOP_ERROR",
    "STOP_MAX_TURNS",
]
