"""Qt-backed scheduler and task runner."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as futures_wait
from functools import partial
from typing import Any, Callable, Optional, Set

from PyQt6.QtCore import QObject, QTimer, pyqtSignal, pyqtSlot

from debouncer import ScheduledCall, Scheduler
from notes_manager import TaskRunner

LOGGER = logging.getLogger(__name__)


class _TimerCall(ScheduledCall):
    def __init__(self, timer: QTimer):
        self._timer = timer

    def cancel(self) -> None:
        self._timer.stop()
        self._timer.deleteLater()


class QtScheduler(Scheduler):
    """Single-shot QTimers, owned by ``parent`` so they die with it."""

    def __init__(self, parent: Optional[QObject] = None):
        self._parent = parent

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledCall:
        timer = QTimer(self._parent)
        timer.setSingleShot(True)
        timer.timeout.connect(callback)
        timer.timeout.connect(timer.deleteLater)
        timer.start(int(delay * 1000))
        return _TimerCall(timer)


class CompletionSignaler(QObject):
    """Carries completions from worker threads back to the thread that owns it."""

    completed = pyqtSignal(object)

    def __init__(self, parent: Optional[QObject] = None):
        super().__init__(parent)
        self.completed.connect(self._run)

    @pyqtSlot(object)
    def _run(self, callback: Callable[[], None]) -> None:
        callback()


class QtTaskRunner(TaskRunner):
    """
    Runs store calls one at a time, in submission order, on a single worker
    thread. Results and errors are emitted through a CompletionSignaler
    created on the UI thread, so callbacks always run there.
    """

    def __init__(self, parent: Optional[QObject] = None):
        self._signaler = CompletionSignaler(parent)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="store-call")
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def submit(
        self,
        fn: Callable[[], Any],
        on_success: Callable[[Any], None],
        on_failure: Callable[[BaseException], None],
    ) -> None:
        def work() -> None:
            try:
                result = fn()
            except Exception as exc:
                LOGGER.debug("Store call failed in worker: %r", exc)
                self._signaler.completed.emit(partial(on_failure, exc))
            else:
                self._signaler.completed.emit(partial(on_success, result))

        future = self._executor.submit(work)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def wait(self, timeout: float) -> bool:
        """Block until queued calls finish or ``timeout`` passes. True if all finished."""
        with self._lock:
            pending = list(self._pending)
        _, not_done = futures_wait(pending, timeout=timeout)
        if not_done:
            LOGGER.warning("%d store call(s) still queued at quit", len(not_done))
        return not not_done

    def close(self) -> None:
        """Drop calls that have not started; the running one is left to finish."""
        self._executor.shutdown(wait=False, cancel_futures=True)
