"""Live teacher location stream.

The teacher device reports fixes over the Socket.IO channel. A tracker turns
those fixes into a cancellable stream and hands each one to a callback. It
never retries on its own: a timeout, a sensor failure or a callback that
raises ends the stream, and the caller decides whether to start a new one.
"""
import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import config
from errors import SensorUnavailable
from schemas import GeoPoint, now_ms

log = logging.getLogger(__name__)

_handle_ids = itertools.count(1)


@dataclass(frozen=True)
class TrackerOptions:
    high_accuracy: bool = True
    timeout_ms: int = 10000
    max_age_ms: int = 0  # 0 = accept fixes of any age

    @classmethod
    def from_config(cls) -> "TrackerOptions":
        return cls(
            high_accuracy=config.TRACKER_HIGH_ACCURACY,
            timeout_ms=config.TRACKER_TIMEOUT_MS,
            max_age_ms=config.TRACKER_MAX_AGE_MS,
        )


@dataclass
class TrackerHandle:
    handle_id: int
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done()


class LocationSource:
    """Something that can produce the next position fix."""

    async def next_fix(self, high_accuracy: bool) -> GeoPoint:
        raise NotImplementedError


class QueueLocationSource(LocationSource):
    """Source fed by pushes from the teacher device."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()

    def push(self, point: GeoPoint) -> None:
        self._queue.put_nowait(point)

    def fail(self, message: str) -> None:
        self._queue.put_nowait(SensorUnavailable(message))

    async def next_fix(self, high_accuracy: bool) -> GeoPoint:
        # Device decides its own accuracy mode; the hint is only forwarded to it.
        item = await self._queue.get()
        if isinstance(item, Exception):
            raise item
        return item


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class LocationTracker:
    def __init__(self, source: LocationSource):
        self.source = source

    def start(
        self,
        callback: Callable[[GeoPoint], Any],
        error_callback: Callable[[SensorUnavailable], Any],
        options: Optional[TrackerOptions] = None,
    ) -> TrackerHandle:
        """Begin delivering fixes. Must be called from a running event loop."""
        options = options or TrackerOptions()
        handle = TrackerHandle(handle_id=next(_handle_ids))
        handle.task = asyncio.get_running_loop().create_task(
            self._run(handle, callback, error_callback, options)
        )
        return handle

    def stop(self, handle: TrackerHandle) -> None:
        if handle.active:
            handle.task.cancel()

    async def _run(self, handle, callback, error_callback, options: TrackerOptions) -> None:
        timeout = options.timeout_ms / 1000
        while True:
            try:
                point = await asyncio.wait_for(self.source.next_fix(options.high_accuracy), timeout=timeout)
            except asyncio.TimeoutError:
                log.warning("tracker %s: no fix within %sms", handle.handle_id, options.timeout_ms)
                await _maybe_await(error_callback(SensorUnavailable(f"No location fix within {options.timeout_ms}ms")))
                return
            except SensorUnavailable as exc:
                log.warning("tracker %s: sensor failure: %s", handle.handle_id, exc.message)
                await _maybe_await(error_callback(exc))
                return

            if options.max_age_ms and point.timestamp is not None:
                age = now_ms() - point.timestamp
                if age > options.max_age_ms:
                    log.debug("tracker %s: skipping fix %sms old", handle.handle_id, age)
                    continue

            try:
                await _maybe_await(callback(point))
            except Exception as exc:
                log.exception("tracker %s: fix callback failed", handle.handle_id)
                await _maybe_await(error_callback(SensorUnavailable(f"Location update failed: {exc}")))
                return
