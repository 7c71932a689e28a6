"""
Edit debouncing on top of a small schedule/cancel primitive.

``Scheduler.call_later(delay, callback)`` returns a handle with ``cancel()``.
The app uses a Qt timer based scheduler (see qt_runtime); tests drive a
``ManualScheduler`` whose clock only moves when told to.
"""

from __future__ import annotations

import heapq
import itertools
import logging
from typing import Callable, Generic, List, Optional, Tuple, TypeVar

LOGGER = logging.getLogger(__name__)

DEFAULT_IDLE_INTERVAL = 0.5

T = TypeVar("T")


class ScheduledCall:
    """Handle returned by a scheduler."""

    def cancel(self) -> None:
        raise NotImplementedError


class Scheduler:
    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledCall:
        raise NotImplementedError


class _ManualCall(ScheduledCall):
    def __init__(self, due: float, callback: Callable[[], None]):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(Scheduler):
    """
    Virtual clock. ``advance(seconds)`` runs every callback that falls due, in
    time order, with ``now`` set to each callback's due time while it runs.
    """

    def __init__(self, start: float = 0.0):
        self.now = start
        self._queue: List[Tuple[float, int, _ManualCall]] = []
        self._seq = itertools.count()

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledCall:
        call = _ManualCall(self.now + delay, callback)
        heapq.heappush(self._queue, (call.due, next(self._seq), call))
        return call

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while self._queue and self._queue[0][0] <= target:
            due, _, call = heapq.heappop(self._queue)
            if call.cancelled:
                continue
            self.now = due
            call.callback()
        self.now = target

    @property
    def pending(self) -> int:
        return sum(1 for _, _, call in self._queue if not call.cancelled)


class EditDebouncer(Generic[T]):
    """
    Coalesces a burst of edits into one ``persist(value)`` call made
    ``interval`` seconds after the last edit. ``value`` is read when the call
    happens, so it always carries the latest edit.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        current_value: Callable[[], T],
        persist: Callable[[T], None],
        interval: float = DEFAULT_IDLE_INTERVAL,
    ):
        self._scheduler = scheduler
        self._current_value = current_value
        self._persist = persist
        self.interval = interval
        self._scheduled: Optional[ScheduledCall] = None

    @property
    def pending(self) -> bool:
        return self._scheduled is not None

    def on_edit(self) -> None:
        if self._scheduled is not None:
            self._scheduled.cancel()
        self._scheduled = self._scheduler.call_later(self.interval, self._fire)

    def _fire(self) -> None:
        self._scheduled = None
        self._persist(self._current_value())

    def flush(self) -> None:
        """Persist a pending edit right now. Does nothing when idle."""
        if self._scheduled is None:
            return
        self._scheduled.cancel()
        self._scheduled = None
        self._persist(self._current_value())

    def cancel(self) -> None:
        """Forget a pending edit without persisting it."""
        if self._scheduled is not None:
            LOGGER.debug("Dropping pending edit")
            self._scheduled.cancel()
            self._scheduled = None
