from __future__ import annotations

import asyncio
import collections
import json
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Deque, Dict, Mapping, Optional, Sequence

from ..errors import BuildFailedError
from ..logging_utils import log_event, truncate_for_log
from ..utils import resolve_executable, subprocess_env

_STREAM_LIMIT = 10 * 1024 * 1024
_STDERR_TAIL_LINES = 20


async def stream_json_lines(
    argv: Sequence[str],
    *,
    cwd: Path,
    env: Optional[Mapping[str, str]] = None,
    logger: Optional[logging.Logger] = None,
    label: str = "agent",
) -> AsyncIterator[Dict[str, Any]]:
    """Run ``argv`` and yield each stdout line that parses as a JSON object.

    Raises:
        BuildFailedError: if the binary is missing or exits non-zero.
    """
    logger = logger or logging.getLogger(__name__)
    if not argv:
        raise BuildFailedError(f"{label}: empty command")
    binary = resolve_executable(argv[0])
    if binary is None:
        raise BuildFailedError(f"{label} binary not found: {argv[0]}")
    try:
        process = await asyncio.create_subprocess_exec(
            binary,
            *argv[1:],
            cwd=str(cwd),
            env=subprocess_env(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_STREAM_LIMIT,
        )
    except OSError as exc:
        raise BuildFailedError(f"Failed to start {label}: {exc}") from exc

    log_event(
        logger, logging.INFO, f"{label}.process_started", pid=process.pid, cwd=str(cwd)
    )
    stderr_tail: Deque[str] = collections.deque(maxlen=_STDERR_TAIL_LINES)

    async def _drain_stderr() -> None:
        if process.stderr is None:
            return
        async for raw in process.stderr:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                stderr_tail.append(line)

    stderr_task = asyncio.create_task(_drain_stderr())
    completed = False
    try:
        if process.stdout is None:
            raise BuildFailedError(f"{label} stdout missing")
        async for raw in process.stdout:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                log_event(
                    logger,
                    logging.DEBUG,
                    f"{label}.non_json_line",
                    line=truncate_for_log(line),
                )
                continue
            if isinstance(payload, dict):
                yield payload
        returncode = await process.wait()
        await stderr_task
        completed = True
        if returncode != 0:
            detail = " | ".join(stderr_tail) or f"exit code {returncode}"
            raise BuildFailedError(f"{label} exited with code {returncode}: {detail}")
    finally:
        if not completed:
            stderr_task.cancel()
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()


__all__ = ["stream_json_lines"]
