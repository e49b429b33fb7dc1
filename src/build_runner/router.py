"""Inbound command dispatch.

Each accepted command gets an ``ack`` before anything else is sent for it,
then runs as its own task so a long build never blocks the receive loop.
A handler exception becomes an ``error`` event (``build-failed`` for builds)
carrying the command's id; it never reaches the connection.
"""

from __future__ import annotations

import asyncio
import json
import logging
import traceback
from typing import Any, Dict, Mapping, Optional, Union

from .errors import CommandDecodeError
from .handlers import COMMAND_HANDLERS, CommandHandler
from .logging_utils import log_event
from .protocol import Command, decode_command, make_event, new_correlation_id
from .session import RunnerSession

_logger = logging.getLogger(__name__)

RawMessage = Union[str, bytes, bytearray, memoryview]


def _format_stack(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def _peek_project_id(raw: RawMessage) -> Optional[str]:
    try:
        text = raw if isinstance(raw, str) else bytes(raw).decode("utf-8", "replace")
        data = json.loads(text)
    except ValueError:
        return None
    if isinstance(data, dict) and isinstance(data.get("projectId"), str):
        return data["projectId"]
    return None


class CommandRouter:
    def __init__(
        self,
        session: RunnerSession,
        handlers: Optional[Mapping[str, CommandHandler]] = None,
    ) -> None:
        self.session = session
        self.handlers: Dict[str, CommandHandler] = dict(
            handlers if handlers is not None else COMMAND_HANDLERS
        )

    async def handle_raw(self, raw: RawMessage) -> Optional[asyncio.Task[Any]]:
        try:
            command = decode_command(raw)
        except CommandDecodeError as exc:
            log_event(_logger, logging.WARNING, "command.decode_failed", exc=exc)
            await self.session.emit(
                make_event(
                    "error",
                    _peek_project_id(raw),
                    new_correlation_id(),
                    error=f"Failed to parse command payload: {exc}",
                    stack=_format_stack(exc),
                )
            )
            return None
        return await self.handle(command)

    async def handle(self, command: Command) -> asyncio.Task[Any]:
        log_event(
            _logger,
            logging.INFO,
            "command.received",
            type=command.type,
            command_id=command.id,
            project_id=command.project_id,
        )
        await self.session.emit(
            make_event(
                "ack",
                command.project_id,
                command.id,
                message=f"Command {command.type} accepted",
            )
        )
        return self.session.spawn(
            self.dispatch(command), name=f"{command.type}:{command.id}"
        )

    async def dispatch(self, command: Command) -> None:
        handler = self.handlers.get(command.type)
        try:
            if handler is None:
                raise CommandDecodeError(f"No handler for command type {command.type}")
            await handler(self.session, command)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            failed_type = "build-failed" if command.type == "start-build" else "error"
            log_event(
                _logger,
                logging.ERROR,
                "command.failed",
                type=command.type,
                command_id=command.id,
                project_id=command.project_id,
                exc=exc,
            )
            await self.session.emit(
                make_event(
                    failed_type,
                    command.project_id,
                    command.id,
                    error=str(exc) or type(exc).__name__,
                    stack=_format_stack(exc),
                )
            )


__all__ = ["CommandRouter"]
