"""
Background task queue and timer scheduler.

The write path must never wait for propagation to dependent documents, so
hooks submit that work to a TaskQueue: a daemon worker thread draining a
FIFO of callables. Tasks may carry a key; submitting a key that is still
pending replaces the queued arguments instead of adding a second run, so a
burst of saves to one entity recomputes its compilations once.

Failures are logged and dropped. The reconciliation jobs close any gap a
failed task leaves behind.

Scheduler provides the two timer primitives the popularity decay job needs,
on daemon threading.Timer threads.
"""

import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

_STOP = object()


def _describe(func: Callable, description: str) -> str:
    return description or getattr(func, "__qualname__", repr(func))


class TaskQueue:
    """
    FIFO background work queue with key coalescing.

    submit() returns immediately. join() blocks until every submitted task
    (including tasks submitted by running tasks) has finished.
    """

    def __init__(self, *, workers: int = 1, name: str = "repograph-tasks"):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self._cond = threading.Condition()
        self._items: deque = deque()
        self._pending: dict[str, tuple] = {}
        self._unfinished = 0
        self._closed = False
        self._threads = [
            threading.Thread(target=self._run, name=f"{name}-{i}", daemon=True)
            for i in range(workers)
        ]
        for thread in self._threads:
            thread.start()

    def submit(
        self,
        func: Callable[..., Any],
        *args: Any,
        key: Optional[str] = None,
        description: str = "",
    ) -> None:
        """Queue func(*args) for background execution."""
        task = (func, args, description)
        with self._cond:
            if self._closed:
                raise RuntimeError("TaskQueue is closed")
            if key is not None:
                if key in self._pending:
                    self._pending[key] = task
                    logger.debug("Coalesced pending task %s", key)
                    return
                self._pending[key] = task
                self._items.append(("key", key))
            else:
                self._items.append(("task", task))
            self._unfinished += 1
            self._cond.notify_all()

    def _next(self):
        with self._cond:
            while not self._items:
                self._cond.wait()
            item = self._items.popleft()
            if item is _STOP:
                return _STOP
            kind, payload = item
            if kind == "key":
                return self._pending.pop(payload)
            return payload

    def _run(self) -> None:
        while True:
            task = self._next()
            if task is _STOP:
                return
            func, args, description = task
            try:
                func(*args)
            except Exception as e:
                logger.warning("Background task %s failed: %s", _describe(func, description), e)
                logger.debug("Background task failure", exc_info=True)
            finally:
                with self._cond:
                    self._unfinished -= 1
                    self._cond.notify_all()

    @property
    def pending(self) -> int:
        """Tasks queued or running."""
        with self._cond:
            return self._unfinished

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for all tasks to finish. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._unfinished:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Stop accepting tasks, let queued ones finish, stop the workers."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            for _ in self._threads:
                self._items.append(_STOP)
            self._cond.notify_all()
        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join(timeout)


class ScheduledCall:
    """Handle for a one-shot or repeating timer. cancel() stops future runs."""

    def __init__(
        self,
        scheduler: "Scheduler",
        callback: Callable[[], Any],
        delay: float,
        interval: Optional[float] = None,
    ):
        self._scheduler = scheduler
        self._callback = callback
        self._interval = interval
        self._lock = threading.Lock()
        self._cancelled = False
        self._timer: Optional[threading.Timer] = None
        self._delay = delay
        self._due = 0.0

    def start(self) -> None:
        self._due = time.monotonic() + self._delay
        self._arm(self._delay)

    def _arm(self, delay: float) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._timer = threading.Timer(max(delay, 0.0), self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        try:
            self._callback()
        except Exception as e:
            logger.warning("Scheduled callback %s failed: %s", _describe(self._callback, ""), e)
            logger.debug("Scheduled callback failure", exc_info=True)
        if self._interval is None:
            self._scheduler._forget(self)
            return
        # Advance from the previous due time, not from now, to avoid drift
        self._due += self._interval
        self._arm(self._due - time.monotonic())

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            if self._timer is not None:
                self._timer.cancel()
        self._scheduler._forget(self)


class Scheduler:
    """Timer scheduler on daemon threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._calls: set[ScheduledCall] = set()

    def call_later(self, delay: float, callback: Callable[[], Any]) -> ScheduledCall:
        """Run callback once after delay seconds."""
        call = ScheduledCall(self, callback, delay)
        with self._lock:
            self._calls.add(call)
        call.start()
        return call

    def call_every(self, interval: float, callback: Callable[[], Any]) -> ScheduledCall:
        """Run callback every interval seconds, first run one interval from now."""
        if interval <= 0:
            raise ValueError("interval must be > 0")
        call = ScheduledCall(self, callback, interval, interval=interval)
        with self._lock:
            self._calls.add(call)
        call.start()
        return call

    def _forget(self, call: ScheduledCall) -> None:
        with self._lock:
            self._calls.discard(call)

    def cancel_all(self) -> None:
        """Cancel every outstanding timer."""
        with self._lock:
            calls = list(self._calls)
        for call in calls:
            call.cancel()
