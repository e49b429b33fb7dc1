from __future__ import annotations

import asyncio
import logging
import socket
from typing import Optional, Sequence

from .logging_utils import log_event

PORT_WAIT_RETRIES = 15
PORT_WAIT_INTERVAL_SECONDS = 1.0
_PROBE_HOSTS = ("127.0.0.1", "::1")

_logger = logging.getLogger(__name__)


def allocate_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for a free TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return int(sock.getsockname()[1])


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


async def is_port_open(
    port: int,
    *,
    hosts: Sequence[str] = _PROBE_HOSTS,
    timeout: float = 1.0,
) -> bool:
    for host in hosts:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=timeout
            )
        except (OSError, asyncio.TimeoutError):
            continue
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True
    return False


async def wait_for_port(
    port: int,
    retries: int = PORT_WAIT_RETRIES,
    interval: float = PORT_WAIT_INTERVAL_SECONDS,
    *,
    logger: Optional[logging.Logger] = None,
) -> bool:
    """Poll ``port`` up to ``retries`` times, ``interval`` seconds apart."""
    logger = logger or _logger
    for attempt in range(1, retries + 1):
        if await is_port_open(port):
            log_event(logger, logging.DEBUG, "port.ready", port=port, attempt=attempt)
            return True
        if attempt < retries:
            await asyncio.sleep(interval)
    log_event(logger, logging.WARNING, "port.wait_timeout", port=port, retries=retries)
    return False


__all__ = [
    "PORT_WAIT_INTERVAL_SECONDS",
    "PORT_WAIT_RETRIES",
    "allocate_port",
    "is_port_free",
    "is_port_open",
    "wait_for_port",
]
