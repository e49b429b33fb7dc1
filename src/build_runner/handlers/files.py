"""Project file commands.

Every path is resolved through :mod:`build_runner.safe_paths` first; a path
outside the project root raises before any file is opened, listed, or removed.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List

from ..logging_utils import log_event
from ..protocol import (
    Command,
    ListFilesPayload,
    ReadFilePayload,
    SlugPayload,
    WriteFilePayload,
    make_event,
)
from ..safe_paths import resolve_project_path, resolve_project_root
from ..session import RunnerSession
from ..utils import atomic_write

_logger = logging.getLogger(__name__)

RM_BINARY = "/bin/rm"
FALLBACK_DELETE_ATTEMPTS = 3
FALLBACK_DELETE_DELAY_SECONDS = 0.5


async def _rm_rf(path: Path) -> None:
    process = await asyncio.create_subprocess_exec(
        RM_BINARY,
        "-rf",
        str(path),
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )
    _, stderr = await process.communicate()
    if process.returncode != 0:
        detail = (stderr or b"").decode("utf-8", errors="replace").strip()
        raise OSError(f"rm exited with code {process.returncode}: {detail}")


async def _rmtree_with_retries(path: Path) -> None:
    for attempt in range(1, FALLBACK_DELETE_ATTEMPTS + 1):
        try:
            await asyncio.to_thread(shutil.rmtree, path)
            return
        except FileNotFoundError:
            return
        except OSError:
            if attempt == FALLBACK_DELETE_ATTEMPTS:
                raise
            await asyncio.sleep(FALLBACK_DELETE_DELAY_SECONDS)


async def remove_tree(path: Path) -> None:
    try:
        await _rm_rf(path)
    except OSError as exc:
        log_event(
            _logger,
            logging.WARNING,
            "files.rm_failed",
            path=str(path),
            exc=exc,
        )
        await _rmtree_with_retries(path)


async def delete_project_files(session: RunnerSession, command: Command) -> None:
    payload: SlugPayload = command.parsed_payload()
    project_root = resolve_project_root(session.config.workspace_root, payload.slug)
    project_id = command.project_id
    async with session.project_lock(project_id):
        if await session.stop_dev_server(project_id):
            log_event(
                _logger,
                logging.INFO,
                "files.dev_server_stopped",
                project_id=project_id,
            )
        await session.clear_verified_port(project_id)
        await remove_tree(project_root)
    log_event(
        _logger,
        logging.INFO,
        "files.deleted",
        project_id=project_id,
        path=str(project_root),
    )
    await session.emit(
        make_event("files-deleted", project_id, command.id, slug=payload.slug)
    )


async def read_file(session: RunnerSession, command: Command) -> None:
    payload: ReadFilePayload = command.parsed_payload()
    _, target = resolve_project_path(
        session.config.workspace_root, payload.slug, payload.file_path
    )
    size = target.stat().st_size
    content = target.read_text(encoding="utf-8", errors="replace")
    await session.emit(
        make_event(
            "file-content",
            command.project_id,
            command.id,
            slug=payload.slug,
            filePath=payload.file_path,
            content=content,
            size=size,
        )
    )


async def write_file(session: RunnerSession, command: Command) -> None:
    payload: WriteFilePayload = command.parsed_payload()
    project_root, target = resolve_project_path(
        session.config.workspace_root, payload.slug, payload.file_path
    )
    if target == project_root:
        raise IsADirectoryError("Cannot write to the project directory itself")
    atomic_write(target, payload.content)
    log_event(
        _logger,
        logging.INFO,
        "files.written",
        project_id=command.project_id,
        path=payload.file_path,
        chars=len(payload.content),
    )
    await session.emit(
        make_event(
            "file-written",
            command.project_id,
            command.id,
            slug=payload.slug,
            filePath=payload.file_path,
        )
    )


def _list_entries(project_root: Path, directory: Path) -> List[Dict[str, Any]]:
    entries: List[Dict[str, Any]] = []
    for child in sorted(directory.iterdir(), key=lambda p: p.name):
        is_dir = child.is_dir()
        entry: Dict[str, Any] = {
            "name": child.name,
            "type": "directory" if is_dir else "file",
            "path": child.relative_to(project_root).as_posix(),
        }
        if not is_dir:
            try:
                entry["size"] = child.stat().st_size
            except OSError:
                pass
        entries.append(entry)
    return entries


async def list_files(session: RunnerSession, command: Command) -> None:
    payload: ListFilesPayload = command.parsed_payload()
    project_root, target = resolve_project_path(
        session.config.workspace_root, payload.slug, payload.path
    )
    files = _list_entries(project_root, target)
    await session.emit(
        make_event(
            "file-list",
            command.project_id,
            command.id,
            slug=payload.slug,
            files=files,
        )
    )


__all__ = [
    "delete_project_files",
    "list_files",
    "read_file",
    "remove_tree",
    "write_file",
]
