"""Clock and timer abstraction for the single-threaded core.

All timer callbacks and background-job completions run on one logical
thread, so session and queue state is never mutated concurrently.

``QtScheduler`` drives the real application from a Qt event loop.
``ManualScheduler`` is a virtual clock for deterministic tests and
simulation: nothing happens until ``advance()`` is called.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

log = logging.getLogger(__name__)

# on_done(result, error): exactly one of the two is meaningful
DoneCallback = Callable[[Any, "BaseException | None"], None]


class TimerHandle:
    """Cancellation token for a scheduled callback."""

    def __init__(self, cancel: Callable[[], None] | None = None) -> None:
        self._cancel = cancel
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._cancel is not None:
            self._cancel()
            self._cancel = None


class Scheduler(Protocol):
    def monotonic_ms(self) -> float: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...

    def call_repeating(self, interval: float, callback: Callable[[], None]) -> TimerHandle: ...

    def call_soon_threadsafe(self, callback: Callable[[], None]) -> None: ...

    def run_in_background(
        self, fn: Callable[[], Any], on_done: DoneCallback | None = None,
    ) -> None: ...


# ──────────────────────────────────────────────
# Virtual clock
# ──────────────────────────────────────────────


class ManualScheduler:
    """Deterministic scheduler driven by ``advance()``.

    Background jobs are queued instead of run on a thread. With
    ``auto_run_background`` they run right after the handler that
    submitted them finishes; otherwise call ``run_background()``.
    """

    def __init__(self, start: float = 0.0, auto_run_background: bool = True) -> None:
        self._now = start
        self._timers: list[tuple[float, int, TimerHandle, Callable[[], None]]] = []
        self._seq = itertools.count()
        self._background: list[tuple[Callable[[], Any], DoneCallback | None]] = []
        self._soon: list[Callable[[], None]] = []
        self._lock = threading.Lock()
        self.auto_run_background = auto_run_background

    @property
    def now(self) -> float:
        """Current virtual time in seconds."""
        return self._now

    def monotonic_ms(self) -> float:
        return self._now * 1000

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle()
        heapq.heappush(self._timers, (self._now + max(0.0, delay), next(self._seq), handle, callback))
        return handle

    def call_repeating(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        outer = TimerHandle()

        def fire() -> None:
            if outer.cancelled:
                return
            heapq.heappush(self._timers, (self._now + interval, next(self._seq), outer, fire))
            callback()

        heapq.heappush(self._timers, (self._now + interval, next(self._seq), outer, fire))
        return outer

    def call_soon_threadsafe(self, callback: Callable[[], None]) -> None:
        with self._lock:
            self._soon.append(callback)

    def run_in_background(
        self, fn: Callable[[], Any], on_done: DoneCallback | None = None,
    ) -> None:
        self._background.append((fn, on_done))

    @property
    def pending_background(self) -> int:
        return len(self._background)

    @property
    def pending_timers(self) -> int:
        return sum(1 for _, _, handle, _ in self._timers if not handle.cancelled)

    def run_background(self) -> int:
        """Run queued background jobs (and jobs they queue). Returns the count."""
        count = 0
        while self._background:
            fn, on_done = self._background.pop(0)
            count += 1
            try:
                result, error = fn(), None
            except Exception as exc:
                result, error = None, exc
            if on_done is not None:
                on_done(result, error)
            elif error is not None:
                log.error("Background job failed", exc_info=error)
        return count

    def run_soon(self) -> None:
        while True:
            with self._lock:
                if not self._soon:
                    return
                callback = self._soon.pop(0)
            callback()

    def _settle(self) -> None:
        self.run_soon()
        if self.auto_run_background:
            self.run_background()

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing every timer that falls due in order."""
        target = self._now + seconds
        self._settle()
        while self._timers and self._timers[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._timers)
            if handle.cancelled:
                continue
            self._now = max(self._now, due)
            callback()
            self._settle()
        self._now = target


# ──────────────────────────────────────────────
# Qt event loop (requires a QCoreApplication)
# ──────────────────────────────────────────────


class QtScheduler:
    """Scheduler backed by the Qt event loop of the calling thread.

    Timers are ``QTimer`` objects; callbacks from worker threads are
    marshalled back through a queued signal. Background jobs run on
    daemon ``threading.Thread`` workers, the same way file playback keeps
    long work off the event loop.
    """

    def __init__(self) -> None:
        from PyQt6.QtCore import QObject, Qt, pyqtSignal

        class _Invoker(QObject):
            invoke = pyqtSignal(object)

        self._invoker = _Invoker()
        self._invoker.invoke.connect(self._run, Qt.ConnectionType.QueuedConnection)
        self._timers: set = set()

    @staticmethod
    def _run(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            log.exception("Unhandled error in scheduled callback")

    def monotonic_ms(self) -> float:
        return time.perf_counter() * 1000

    def _make_timer(self, interval: float, callback: Callable[[], None], single_shot: bool) -> TimerHandle:
        from PyQt6.QtCore import QTimer

        timer = QTimer()
        timer.setSingleShot(single_shot)
        timer.setInterval(max(0, int(interval * 1000)))
        self._timers.add(timer)

        def release() -> None:
            timer.stop()
            self._timers.discard(timer)

        handle = TimerHandle(release)

        def on_timeout() -> None:
            if handle.cancelled:
                return
            if single_shot:
                self._timers.discard(timer)
            self._run(callback)

        timer.timeout.connect(on_timeout)
        timer.start()
        return handle

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return self._make_timer(delay, callback, single_shot=True)

    def call_repeating(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        return self._make_timer(interval, callback, single_shot=False)

    def call_soon_threadsafe(self, callback: Callable[[], None]) -> None:
        self._invoker.invoke.emit(callback)

    def run_in_background(
        self, fn: Callable[[], Any], on_done: DoneCallback | None = None,
    ) -> None:
        def worker() -> None:
            try:
                result, error = fn(), None
            except Exception as exc:
                result, error = None, exc
            if on_done is not None:
                self.call_soon_threadsafe(lambda: on_done(result, error))
            elif error is not None:
                log.error("Background job failed", exc_info=error)

        threading.Thread(target=worker, daemon=True, name="jam-scribe-worker").start()
