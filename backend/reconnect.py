from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Set

from websockets.exceptions import WebSocketException

from channel import Channel
from signals import Signal

log = logging.getLogger("netview.reconnect")

RECONNECT_DELAY_SEC = 1.0
STOP_TIMEOUT_SEC = 5.0

TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class _Attempt:
    """One socket and the channel wrapping it."""

    def __init__(self):
        self.ws = None
        self.channel: Optional[Channel] = None
        self.abandoned = False
        self.task: Optional[asyncio.Task] = None


class ReconnectSupervisor:
    """Keeps one websocket to the server alive.

    A failed or closed socket is replaced after a fixed delay; each retry
    builds the socket and its Channel from scratch.
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable],
        on_open: Optional[Callable[[Channel], object]] = None,
        on_close: Optional[Callable[[], object]] = None,
        delay: float = RECONNECT_DELAY_SEC,
        sleep=asyncio.sleep,
    ):
        self._connect = connect
        self._on_open = on_open
        self._on_close = on_close
        self._delay = delay
        self._sleep = sleep
        self._attempt: Optional[_Attempt] = None
        self._timer: Optional[asyncio.Task] = None
        self._closing: Set[asyncio.Task] = set()
        self._stopped = True

        self.state: Signal = Signal(ConnectionState.CLOSED)
        self.retries = 0

    @property
    def channel(self) -> Optional[Channel]:
        if self._attempt is None:
            return None
        return self._attempt.channel

    def start(self) -> None:
        if not self._stopped:
            return
        self._stopped = False
        self._launch()

    def refresh(self) -> None:
        """Drop the current socket and connect again right away."""
        if self._stopped:
            return
        self._cancel_timer()
        ws = self._abandon()
        if ws is not None:
            self._close_later(ws)
        self._launch()

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._cancel_timer()
        attempt = self._attempt
        ws = self._abandon()
        if ws is not None:
            await _close_quietly(ws)
        elif attempt is not None and attempt.task is not None and not attempt.task.done():
            # Still connecting: the attempt closes the socket itself once the
            # handshake completes.
            done, _ = await asyncio.wait({attempt.task}, timeout=STOP_TIMEOUT_SEC)
            if not done:
                attempt.task.cancel()
        if self._closing:
            await asyncio.wait(set(self._closing), timeout=STOP_TIMEOUT_SEC)
        self.state.set(ConnectionState.CLOSED)
        log.info("Reconnect supervisor stopped")

    # ── Internals ───────────────────────────────────────────────

    def _launch(self) -> None:
        attempt = _Attempt()
        self._attempt = attempt
        self.state.set(ConnectionState.CONNECTING)
        attempt.task = asyncio.get_running_loop().create_task(self._run(attempt))

    async def _run(self, attempt: _Attempt) -> None:
        try:
            ws = await self._connect()
        except TRANSPORT_ERRORS as e:
            if not attempt.abandoned:
                log.warning("Connection failed: %s", e)
                self._closed(attempt)
            return
        except Exception:
            if not attempt.abandoned:
                log.exception("Unexpected error while connecting")
                self._closed(attempt)
            return

        if attempt.abandoned:
            await _close_quietly(ws)
            return

        attempt.ws = ws
        attempt.channel = Channel(ws)
        self.state.set(ConnectionState.OPEN)
        log.info("Connected to server")
        if self._on_open is not None:
            self._on_open(attempt.channel)

        try:
            await attempt.channel.wait_closed()
        except TRANSPORT_ERRORS as e:
            log.warning("Connection lost: %s", e)
        except Exception:
            log.exception("Channel reader failed")
        if not attempt.abandoned:
            self._closed(attempt)

    def _closed(self, attempt: _Attempt) -> None:
        self._release(attempt)
        # The reader may stop while the socket itself is still open.
        ws, attempt.ws = attempt.ws, None
        if ws is not None:
            self._close_later(ws)
        self.state.set(ConnectionState.CLOSED)
        if not self._stopped and self._timer is None:
            log.info("Reconnecting in %.1fs", self._delay)
            self._timer = asyncio.get_running_loop().create_task(self._retry_later())

    def _release(self, attempt: _Attempt) -> None:
        channel, attempt.channel = attempt.channel, None
        if channel is not None:
            channel.dispose()
            if self._on_close is not None:
                self._on_close()

    def _abandon(self):
        """Detach the current attempt; returns its socket if one is open."""
        attempt, self._attempt = self._attempt, None
        if attempt is None:
            return None
        attempt.abandoned = True
        self._release(attempt)
        return attempt.ws

    async def _retry_later(self) -> None:
        await self._sleep(self._delay)
        self._timer = None
        if self._stopped:
            return
        self.retries += 1
        self._abandon()
        self._launch()

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def _close_later(self, ws) -> None:
        task = asyncio.get_running_loop().create_task(_close_quietly(ws))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)


async def _close_quietly(ws) -> None:
    try:
        await ws.close()
    except TRANSPORT_ERRORS as e:
        log.debug("Error while closing socket: %s", e)
