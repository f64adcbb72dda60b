"""Single-writer reconciliation queue.

Every change to the object cache goes through one :class:`Reconciler`:
notifications from the monitor stream, query results from the poller and
workflow callbacks are queued and executed one at a time on the consumer
thread, in arrival order.  Listeners see ``(notification, delta,
snapshot)`` right after each apply, on the same thread.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Protocol, Union

from wifictl.model import Delta, Notification, ObjectCache, Snapshot

logger = logging.getLogger(__name__)

Listener = Callable[[Notification, Delta, Snapshot], None]
Task = Callable[[], Any]

_STOP = object()


class Cancellable(Protocol):
    def cancel(self) -> None:
        ...  # pragma: no cover


class Scheduler(Protocol):
    """Runs a callable after a delay; injectable so tests control time."""

    def call_later(self, delay: float, fn: Task) -> Cancellable:
        ...  # pragma: no cover


class TimerScheduler:
    """Default scheduler backed by daemon :class:`threading.Timer` threads."""

    def call_later(self, delay: float, fn: Task) -> Cancellable:
        timer = threading.Timer(delay, fn)
        timer.daemon = True
        timer.start()
        return timer


class Reconciler:
    """Serializes all cache writes and workflow steps onto one thread.

    Args:
        cache: The object cache this reconciler owns.
        scheduler: Timer source for :meth:`call_later` (testing seam).
    """

    def __init__(
        self,
        cache: ObjectCache | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self.cache = cache or ObjectCache()
        self._scheduler = scheduler or TimerScheduler()
        self._queue: queue.Queue[Union[Notification, Task, object]] = queue.Queue()
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None

    # -- producers ---------------------------------------------------------

    def post(self, notification: Notification) -> None:
        """Queue a notification for application to the cache."""
        self._queue.put(notification)

    def submit(self, fn: Task) -> None:
        """Queue *fn* to run on the reconciler thread."""
        self._queue.put(fn)

    def call_later(self, delay: float, fn: Task) -> Cancellable:
        """Queue *fn* after *delay* seconds.  The handle can cancel it."""
        return self._scheduler.call_later(delay, lambda: self.submit(fn))

    # -- consumers ---------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def snapshot(self) -> Snapshot:
        return self.cache.snapshot()

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="reconciler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        """Stop the consumer thread after the items already queued."""
        if self._thread is None:
            return
        self._queue.put(_STOP)
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        self._thread = None

    def drain(self) -> int:
        """Run everything queued on the calling thread.  Returns the count.

        Items queued while draining are run too.
        """
        count = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return count
            if item is _STOP:
                continue
            self._process(item)
            count += 1

    def _loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            self._process(item)

    def _process(self, item: Any) -> None:
        with self._lock:
            if callable(item):
                try:
                    item()
                except Exception:
                    logger.exception("reconciler task failed")
                return
            delta = self.cache.apply(item)
            if delta.empty:
                return
            snapshot = self.cache.snapshot()
            for listener in list(self._listeners):
                try:
                    listener(item, delta, snapshot)
                except Exception:
                    logger.exception("reconciler listener failed")
