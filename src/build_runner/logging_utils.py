import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from .config import LogConfig

_CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_console_logging(
    level: int = logging.INFO, log_config: Optional[LogConfig] = None
) -> None:
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    root.addHandler(console)
    if log_config is not None:
        log_config.path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_config.path,
            maxBytes=log_config.max_bytes,
            backupCount=log_config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
        root.addHandler(file_handler)
    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(max(level, logging.INFO))
    logging.getLogger("httpx").setLevel(logging.WARNING)


def truncate_for_log(value: Any, limit: int = 200) -> str:
    text = value if isinstance(value, str) else _encode(value)
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _encode(value: Any) -> str:
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    try:
        return json.dumps(value, ensure_ascii=False, default=str, sort_keys=True)
    except (TypeError, ValueError):
        return repr(value)


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit a single structured line: ``event key=value ...``."""
    if not logger.isEnabledFor(level):
        return
    parts = [event]
    for key, value in fields.items():
        if value is None:
            continue
        parts.append(f"{key}={_encode(value)}")
    if exc is not None:
        parts.append(f"error={_encode(str(exc) or type(exc).__name__)}")
        parts.append(f"error_type={type(exc).__name__}")
    logger.log(level, " ".join(parts))


__all__ = [
    "configure_console_logging",
    "log_event",
    "truncate_for_log",
]
