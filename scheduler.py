# scheduler.py
# Single-threaded dispatcher: session actions, listener deliveries and timers all run here,
# one at a time, in the order they were queued.

import heapq
import itertools
import logging
import threading
from collections import deque
from concurrent.futures import Future

from util import utcnow

logger = logging.getLogger(__name__)


class TimerHandle:
    """Cancellable reference to a scheduled callback."""

    def __init__(self, deadline, interval, fn, args):
        self.deadline = deadline
        self.interval = interval
        self.fn = fn
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class Scheduler:
    """Runs callbacks on one dispatch thread.

    submit() may be called from any thread (Flask request threads, change-stream
    watcher threads). Callbacks never run concurrently with each other.
    """

    def __init__(self, name='session-dispatch'):
        self._name = name
        self._ready = deque()
        self._timers = []
        self._counter = itertools.count()
        self._cond = threading.Condition()
        self._thread = None
        self._running = False

    def now(self):
        return utcnow()

    def start(self):
        with self._cond:
            if self._running:
                return
            self._running = True
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        logger.info("Scheduler %s started", self._name)

    def stop(self, timeout=5):
        with self._cond:
            if not self._running:
                return
            self._running = False
            self._cond.notify_all()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        logger.info("Scheduler %s stopped", self._name)

    def submit(self, fn, *args):
        future = Future()
        with self._cond:
            self._ready.append((future, fn, args))
            self._cond.notify()
        return future

    def call(self, fn, *args, timeout=None):
        """Run fn on the dispatch thread and wait for its result."""
        if threading.current_thread() is self._thread:
            return fn(*args)
        return self.submit(fn, *args).result(timeout)

    def call_later(self, delay, fn, *args):
        return self._schedule(TimerHandle(self._deadline(delay), None, fn, args))

    def call_every(self, interval, fn, *args):
        return self._schedule(TimerHandle(self._deadline(interval), interval, fn, args))

    def _deadline(self, delay):
        return self.now().timestamp() + delay

    def _schedule(self, handle):
        with self._cond:
            heapq.heappush(self._timers, (handle.deadline, next(self._counter), handle))
            self._cond.notify()
        return handle

    def _run(self):
        while True:
            with self._cond:
                while self._running and not self._ready and not self._due_timers():
                    self._cond.wait(self._wait_time())
                if not self._running:
                    return
                handle = None
                if self._ready:
                    future, fn, args = self._ready.popleft()
                else:
                    future, fn, args = None, None, None
                    handle = self._pop_due_timer()
            if fn is not None:
                self._invoke(future, fn, args)
            elif handle is not None:
                self._fire(handle)

    def _due_timers(self):
        self._drop_cancelled()
        return bool(self._timers) and self._timers[0][0] <= self.now().timestamp()

    def _wait_time(self):
        if not self._timers:
            return None
        return max(0.0, self._timers[0][0] - self.now().timestamp())

    def _drop_cancelled(self):
        while self._timers and self._timers[0][2].cancelled:
            heapq.heappop(self._timers)

    def _pop_due_timer(self):
        self._drop_cancelled()
        if self._timers and self._timers[0][0] <= self.now().timestamp():
            return heapq.heappop(self._timers)[2]
        return None

    def _fire(self, handle):
        if handle.cancelled:
            return
        if handle.interval is not None:
            handle.deadline += handle.interval
            self._schedule(handle)
        self._invoke(None, handle.fn, handle.args)

    def _invoke(self, future, fn, args):
        if future is not None and not future.set_running_or_notify_cancel():
            return
        try:
            result = fn(*args)
        except Exception as exc:
            if future is not None:
                future.set_exception(exc)
            else:
                logger.exception("Scheduled callback %r failed", fn)
            return
        if future is not None:
            future.set_result(result)
