from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .errors import ControlPlaneError
from .logging_utils import log_event

RETRY_ATTEMPTS = 3
RETRY_UNIT_SECONDS = 1.0

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RegisteredProcess:
    project_id: str
    pid: Optional[int]
    port: Optional[int]
    command: Optional[str]
    runner_id: Optional[str]

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "RegisteredProcess":
        def _int(value: Any) -> Optional[int]:
            try:
                return int(value) if value is not None else None
            except (TypeError, ValueError):
                return None

        return cls(
            project_id=str(data.get("projectId") or data.get("project_id") or ""),
            pid=_int(data.get("pid")),
            port=_int(data.get("port")),
            command=data.get("command"),
            runner_id=data.get("runnerId") or data.get("runner_id"),
        )


class ControlPlaneClient:
    """Bearer-authenticated client for the control plane's runner endpoints."""

    def __init__(
        self,
        base_url: str,
        shared_secret: str,
        *,
        timeout: Optional[float] = 15.0,
        attempts: int = RETRY_ATTEMPTS,
        retry_unit: float = RETRY_UNIT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {shared_secret}"},
            timeout=timeout,
            transport=transport,
        )
        self._attempts = max(1, attempts)
        self._retry_unit = retry_unit
        self._sleep = sleep
        self._logger = logger or logging.getLogger(__name__)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        last_error: Optional[Exception] = None
        status_code: Optional[int] = None
        for attempt in range(1, self._attempts + 1):
            try:
                response = await self._client.request(
                    method, path, params=params, json=json
                )
                response.raise_for_status()
                if not response.content:
                    return None
                try:
                    return response.json()
                except ValueError as exc:
                    raise ControlPlaneError(
                        f"{method} {path}: invalid JSON body",
                        status_code=response.status_code,
                    ) from exc
            except httpx.HTTPStatusError as exc:
                last_error = exc
                status_code = exc.response.status_code
                if status_code < 500 and status_code != 429:
                    break
            except httpx.HTTPError as exc:
                last_error = exc
                status_code = None
            log_event(
                self._logger,
                logging.WARNING,
                "control_plane.request_failed",
                method=method,
                path=path,
                attempt=attempt,
                status_code=status_code,
                exc=last_error,
            )
            if attempt < self._attempts:
                await self._sleep(attempt * self._retry_unit)
        raise ControlPlaneError(
            f"{method} {path} failed: {last_error}", status_code=status_code
        )

    async def list_processes(self, runner_id: Optional[str] = None) -> List[RegisteredProcess]:
        params = {"runnerId": runner_id} if runner_id else None
        data = await self._request("GET", "/api/runner/process/list", params=params)
        rows = data.get("processes", []) if isinstance(data, dict) else []
        return [
            RegisteredProcess.from_json(row)
            for row in rows
            if isinstance(row, dict)
        ]

    async def report_health(
        self,
        project_id: str,
        *,
        healthy: bool,
        port: Optional[int] = None,
        fail_count: int = 0,
        pid: Optional[int] = None,
        checked_at: Optional[str] = None,
    ) -> Any:
        payload: Dict[str, Any] = {
            "status": "healthy" if healthy else "unhealthy",
            "failCount": fail_count,
        }
        if port is not None:
            payload["port"] = port
        if pid is not None:
            payload["pid"] = pid
        if checked_at:
            payload["checkedAt"] = checked_at
        return await self._request(
            "POST", f"/api/runner/process/{project_id}/health", json=payload
        )

    async def unregister_process(self, project_id: str) -> Any:
        return await self._request("DELETE", f"/api/runner/process/{project_id}")


__all__ = ["ControlPlaneClient", "RegisteredProcess"]
