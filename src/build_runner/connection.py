"""Broker websocket session: connect, heartbeat, liveness and reconnect.

Only one session is live at a time. Each successful open resets the
reconnect counter and starts two timers, a status heartbeat and a liveness
prober. A session that stops answering pings within the liveness deadline is
closed so the reconnect loop can replace it. Sends never raise: a message for
a session that is not open is logged and dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets
from websockets import ClientConnection, State

from .config import RunnerConfig
from .logging_utils import log_event

MessageHandler = Callable[[Union[str, bytes]], Awaitable[Any]]
Hook = Callable[[], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]

LIVENESS_CLOSE_CODE = 4000
SHUTDOWN_CLOSE_CODE = 1000


class ReconnectPolicy:
    """Exponential backoff: the Nth retry waits ``min(base * 2**(N-1), cap)``."""

    def __init__(self, base_delay: float, max_delay: float, max_attempts: int) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.attempts = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def next_delay(self) -> Optional[float]:
        if self.exhausted:
            return None
        self.attempts += 1
        return min(self.base_delay * (2 ** (self.attempts - 1)), self.max_delay)

    def reset(self) -> None:
        self.attempts = 0


def with_runner_id(url: str, runner_id: str) -> str:
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query) if k != "runnerId"]
    query.append(("runnerId", runner_id))
    return urlunsplit(parts._replace(query=urlencode(query)))


class ConnectionManager:
    def __init__(
        self,
        config: RunnerConfig,
        *,
        on_message: MessageHandler,
        on_open: Optional[Hook] = None,
        on_heartbeat: Optional[Hook] = None,
        connect: Callable[..., Any] = websockets.connect,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.policy = ReconnectPolicy(
            config.reconnect_base_delay_seconds,
            config.reconnect_max_delay_seconds,
            config.max_reconnect_attempts,
        )
        self.ws: Optional[ClientConnection] = None
        self.last_pong: float = 0.0
        self.shutting_down = False
        self.gave_up = False
        self._on_message = on_message
        self._on_open = on_open
        self._on_heartbeat = on_heartbeat
        self._connect = connect
        self._sleep = sleep
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._timers: List[asyncio.Task[None]] = []

    @property
    def url(self) -> str:
        return with_runner_id(self.config.broker_url, self.config.runner_id)

    @property
    def is_open(self) -> bool:
        return self.ws is not None and self.ws.state == State.OPEN

    async def send(self, event: Dict[str, Any]) -> bool:
        event_type = event.get("type", "unknown")
        ws = self.ws
        if ws is None or ws.state != State.OPEN:
            log_event(
                self._logger,
                logging.DEBUG,
                "connection.send_dropped",
                event_type=event_type,
                reason="not_open" if ws is None else f"state_{ws.state.name.lower()}",
            )
            return False
        try:
            await ws.send(json.dumps(event, default=str))
        except websockets.ConnectionClosed as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "connection.send_failed",
                event_type=event_type,
                exc=exc,
            )
            return False
        return True

    async def run(self) -> None:
        """Connect and serve until shutdown or until reconnect attempts run out."""
        while not self.shutting_down:
            try:
                await self._connect_and_serve()
            except asyncio.CancelledError:
                raise
            except websockets.ConnectionClosed as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "connection.closed",
                    code=exc.rcvd.code if exc.rcvd else None,
                    exc=exc,
                )
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "connection.error",
                    url=self.config.broker_url,
                    exc=exc,
                )

            if self.shutting_down:
                break
            delay = self.policy.next_delay()
            if delay is None:
                self.gave_up = True
                log_event(
                    self._logger,
                    logging.ERROR,
                    "connection.gave_up",
                    attempts=self.policy.attempts,
                )
                break
            log_event(
                self._logger,
                logging.INFO,
                "connection.reconnect",
                attempt=self.policy.attempts,
                delay_s=round(delay, 1),
            )
            await self._sleep(delay)

    async def _connect_and_serve(self) -> None:
        async with self._connect(
            self.url,
            additional_headers={
                "Authorization": f"Bearer {self.config.shared_secret}"
            },
            open_timeout=self.config.handshake_timeout_seconds,
            ping_interval=None,
            max_size=None,
        ) as ws:
            await self._serve(ws)

    async def _serve(self, ws: ClientConnection) -> None:
        self.ws = ws
        self.policy.reset()
        self.last_pong = self._clock()
        log_event(
            self._logger,
            logging.INFO,
            "connection.open",
            url=self.config.broker_url,
            runner_id=self.config.runner_id,
        )
        try:
            if self._on_open is not None:
                await self._on_open()
            self._start_timers(ws)
            async for message in ws:
                if self.shutting_down:
                    break
                try:
                    await self._on_message(message)
                except Exception as exc:
                    log_event(self._logger, logging.ERROR, "connection.handler_error", exc=exc)
        finally:
            await self._stop_timers()
            if self.ws is ws:
                self.ws = None

    def _start_timers(self, ws: ClientConnection) -> None:
        self._timers = [
            asyncio.create_task(self._heartbeat_loop(), name="runner-heartbeat"),
            asyncio.create_task(self._liveness_loop(ws), name="runner-liveness"),
        ]

    async def _stop_timers(self) -> None:
        timers, self._timers = self._timers, []
        for task in timers:
            task.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

    async def _heartbeat_loop(self) -> None:
        while True:
            await self._sleep(self.config.heartbeat_interval_seconds)
            if self._on_heartbeat is None or not self.is_open:
                continue
            try:
                await self._on_heartbeat()
            except Exception as exc:
                log_event(self._logger, logging.WARNING, "connection.heartbeat_failed", exc=exc)

    async def _liveness_loop(self, ws: ClientConnection) -> None:
        while True:
            await self._sleep(self.config.ping_interval_seconds)
            if not await self.check_liveness(ws):
                return
            await self._ping(ws)

    def liveness_expired(self) -> bool:
        return self._clock() - self.last_pong > self.config.liveness_deadline_seconds

    async def check_liveness(self, ws: Optional[ClientConnection] = None) -> bool:
        """Close ``ws`` when no pong arrived within the deadline; True if still live."""
        ws = ws or self.ws
        if ws is None or ws.state != State.OPEN:
            return False
        if not self.liveness_expired():
            return True
        log_event(
            self._logger,
            logging.WARNING,
            "connection.liveness_timeout",
            silent_s=round(self._clock() - self.last_pong, 1),
            deadline_s=self.config.liveness_deadline_seconds,
        )
        await ws.close(code=LIVENESS_CLOSE_CODE, reason="liveness timeout")
        return False

    async def _ping(self, ws: ClientConnection) -> None:
        if ws.state != State.OPEN:
            return
        try:
            waiter = await ws.ping()
        except websockets.ConnectionClosed:
            return
        waiter.add_done_callback(self._record_pong)

    def _record_pong(self, waiter: "asyncio.Future[Any]") -> None:
        if waiter.cancelled() or waiter.exception() is not None:
            return
        self.last_pong = self._clock()

    async def shutdown(self) -> None:
        self.shutting_down = True
        await self._stop_timers()
        ws = self.ws
        if ws is not None and ws.state == State.OPEN:
            log_event(self._logger, logging.INFO, "connection.shutdown")
            await ws.close(code=SHUTDOWN_CLOSE_CODE, reason="runner shutdown")


__all__ = ["ConnectionManager", "ReconnectPolicy", "with_runner_id"]
