from __future__ import annotations

import asyncio
import logging
import re
from typing import Dict, Optional, Protocol, runtime_checkable

from .errors import TunnelError
from .logging_utils import log_event
from .utils import resolve_executable, subprocess_env

_TUNNEL_URL_RE = re.compile(r"https://[a-z0-9-]+\.trycloudflare\.com", re.IGNORECASE)
_URL_TIMEOUT_SECONDS = 30.0
_CLOSE_TIMEOUT_SECONDS = 5.0


@runtime_checkable
class TunnelManager(Protocol):
    async def create_tunnel(self, port: int) -> str:
        ...

    async def close_tunnel(self, port: int) -> bool:
        ...

    async def close_all(self) -> None:
        ...


class CloudflaredTunnelManager:
    """Quick tunnels via ``cloudflared tunnel --url``; one child per port."""

    def __init__(
        self,
        binary: str = "cloudflared",
        *,
        url_timeout: float = _URL_TIMEOUT_SECONDS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._binary = binary
        self._url_timeout = url_timeout
        self._logger = logger or logging.getLogger(__name__)
        self._tunnels: Dict[int, asyncio.subprocess.Process] = {}
        self._urls: Dict[int, str] = {}
        self._drains: Dict[int, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()

    def url_for(self, port: int) -> Optional[str]:
        return self._urls.get(port)

    async def create_tunnel(self, port: int) -> str:
        async with self._lock:
            existing = self._urls.get(port)
            process = self._tunnels.get(port)
            if existing and process is not None and process.returncode is None:
                return existing
            resolved = resolve_executable(self._binary)
            if resolved is None:
                raise TunnelError(f"Tunnel binary not found: {self._binary}")
            try:
                process = await asyncio.create_subprocess_exec(
                    resolved,
                    "tunnel",
                    "--no-autoupdate",
                    "--url",
                    f"http://localhost:{port}",
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    env=subprocess_env(),
                )
            except OSError as exc:
                raise TunnelError(f"Failed to start tunnel: {exc}") from exc
            try:
                url = await asyncio.wait_for(
                    self._read_url(process), timeout=self._url_timeout
                )
            except asyncio.TimeoutError as exc:
                await self._terminate(process)
                raise TunnelError(
                    f"Timed out waiting for tunnel URL on port {port}"
                ) from exc
            if url is None:
                await self._terminate(process)
                raise TunnelError(f"Tunnel exited before reporting a URL (port {port})")
            self._tunnels[port] = process
            self._urls[port] = url
            self._drains[port] = asyncio.create_task(self._drain(process))
            log_event(
                self._logger, logging.INFO, "tunnel.created", port=port, url=url
            )
            return url

    async def _read_url(self, process: asyncio.subprocess.Process) -> Optional[str]:
        stream = process.stdout
        if stream is None:
            return None
        while True:
            line = await stream.readline()
            if not line:
                return None
            match = _TUNNEL_URL_RE.search(line.decode("utf-8", errors="replace"))
            if match:
                return match.group(0)

    async def _drain(self, process: asyncio.subprocess.Process) -> None:
        # cloudflared blocks if its output pipe fills up
        stream = process.stdout
        if stream is None:
            return
        while await stream.readline():
            pass

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=_CLOSE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def close_tunnel(self, port: int) -> bool:
        async with self._lock:
            process = self._tunnels.pop(port, None)
            self._urls.pop(port, None)
            drain = self._drains.pop(port, None)
        if process is None:
            return False
        await self._terminate(process)
        if drain is not None:
            drain.cancel()
        log_event(self._logger, logging.INFO, "tunnel.closed", port=port)
        return True

    async def close_all(self) -> None:
        for port in list(self._tunnels):
            await self.close_tunnel(port)


__all__ = ["CloudflaredTunnelManager", "TunnelManager"]
