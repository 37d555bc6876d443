from __future__ import annotations

import asyncio
import logging
import time
from types import MappingProxyType
from typing import Callable, Dict, List, Optional

from channel import Channel
from errors import NetViewError, NotConnectedError
from merge import adopt_data_set, latest_timestamps, merge_data_set
from models import DataSet, InterfaceSnapshot
from signals import Signal

log = logging.getLogger("netview.sync")

POLL_INTERVAL_SEC = 1.0


def next_deadline(now: float, previous: float, interval: float) -> float:
    """Deadline of the next cycle start.

    Anchored on the previous deadline so a slow cycle does not shift the
    cadence forward; never in the past.
    """
    return max(now, previous + interval)


class SyncSupervisor:
    """Owns the interface data set and keeps it in sync with the server."""

    def __init__(
        self,
        visibility: Optional[Signal] = None,
        interval: float = POLL_INTERVAL_SEC,
        clock: Callable[[], float] = time.monotonic,
        sleep=asyncio.sleep,
    ):
        self._visibility = visibility if visibility is not None else Signal(True)
        self._interval = interval
        self._clock = clock
        self._sleep = sleep
        self._channel: Optional[Channel] = None
        self._data: Dict[str, InterfaceSnapshot] = {}
        self._listeners: List[Callable[[DataSet], object]] = []
        self._task: Optional[asyncio.Task] = None

        self.cycles = 0
        self.failures = 0
        self.last_error: Optional[str] = None

        self._visibility.subscribe(lambda _visible: self._restart())

    @property
    def data(self) -> DataSet:
        return MappingProxyType(self._data)

    @property
    def channel(self) -> Optional[Channel]:
        return self._channel

    @property
    def active(self) -> bool:
        return self._channel is not None and bool(self._visibility.value)

    @property
    def polling(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Publication ─────────────────────────────────────────────

    def subscribe(self, listener: Callable[[DataSet], object]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, data: Dict[str, InterfaceSnapshot]) -> None:
        self._data = data
        view = MappingProxyType(data)
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:
                log.exception("Data listener failed")

    # ── Channel lifecycle ───────────────────────────────────────

    def attach(self, channel: Channel) -> None:
        """Use a freshly opened channel; the data set bootstraps again."""
        self._channel = channel
        self._publish({})
        self._restart()

    def detach(self) -> None:
        self._channel = None
        self._restart()

    async def close(self) -> None:
        self._channel = None
        task = self._cancel()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _cancel(self) -> Optional[asyncio.Task]:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
        return task

    def _restart(self) -> None:
        self._cancel()
        if self.active:
            self._task = asyncio.get_running_loop().create_task(self._poll())

    def _require_channel(self) -> Channel:
        if self._channel is None:
            raise NotConnectedError()
        return self._channel

    # ── Polling ─────────────────────────────────────────────────

    async def _poll(self) -> None:
        log.debug("Polling started (interval=%.2fs)", self._interval)
        deadline = self._clock()
        while True:
            await self._run_cycle()
            now = self._clock()
            deadline = next_deadline(now, deadline, self._interval)
            await self._sleep(deadline - now)

    async def _run_cycle(self) -> None:
        self.cycles += 1
        try:
            await self.sync()
        except NetViewError as e:
            self.failures += 1
            self.last_error = str(e)
            log.warning("Sync failed: %s", e)
        except Exception as e:
            self.failures += 1
            self.last_error = str(e)
            log.exception("Unexpected error during sync")
        else:
            self.last_error = None

    async def sync(self) -> None:
        """Run one cycle: bootstrap with get_all, or fetch the deltas."""
        channel = self._require_channel()
        before = self._data
        timestamps = latest_timestamps(before)
        if not timestamps:
            part = await channel.get_all()
            data = adopt_data_set(part)
        else:
            part = await channel.get(timestamps)
            data = merge_data_set(before, part)

        # Responses that predate a local subscription change are dropped;
        # the next cycle picks the change up.
        if channel is not self._channel or self._data is not before:
            log.debug("Discarding stale sync response")
            return
        self._publish(data)

    # ── Subscriptions ───────────────────────────────────────────

    async def get_interfaces(self) -> List[str]:
        return await self._require_channel().get_interfaces()

    async def listen_interface(self, name: str):
        channel = self._require_channel()
        data = dict(self._data)
        data[name] = InterfaceSnapshot()
        self._publish(data)
        log.info("Listening on %s", name)
        return await channel.listen_interface(name)

    async def not_listen_interface(self, name: str):
        channel = self._require_channel()
        current = self._data.get(name)
        if current is not None:
            data = dict(self._data)
            data[name] = current.model_copy(update={"closed": True})
            self._publish(data)
        log.info("Stopped listening on %s", name)
        return await channel.not_listen_interface(name)

    async def clear_interface(self, name: str):
        channel = self._require_channel()
        if name in self._data:
            data = dict(self._data)
            del data[name]
            self._publish(data)
        log.info("Cleared %s", name)
        return await channel.clear_interface(name)
