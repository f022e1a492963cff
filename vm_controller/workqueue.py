"""Keyed work queue feeding the reconcile workers."""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Deque, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    Thread-safe FIFO of object keys.

    A key is handed to at most one worker at a time. Adding a key that is
    already waiting is a no-op; adding a key that is being processed marks
    it dirty so it is queued again once the worker calls done(). Delayed
    adds keep only the earliest due time per key.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._delayed: List[Tuple[float, int, str]] = []
        self._due: Dict[str, float] = {}
        self._counter = itertools.count()
        self._shutting_down = False

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: str, delay: float) -> None:
        """Add key once delay seconds have passed."""
        if delay <= 0:
            self.add(key)
            return

        with self._cond:
            if self._shutting_down:
                return
            due = time.monotonic() + delay
            if key in self._due and self._due[key] <= due:
                return
            self._due[key] = due
            heapq.heappush(self._delayed, (due, next(self._counter), key))
            self._cond.notify_all()

    def _promote_due_locked(self) -> Optional[float]:
        """Move due delayed keys onto the queue; return seconds until the next one."""
        now = time.monotonic()
        while self._delayed:
            due, _, key = self._delayed[0]
            if due > now:
                return due - now
            heapq.heappop(self._delayed)
            # stale entry, superseded by an earlier add_after
            if self._due.get(key) != due:
                continue
            del self._due[key]
            self._add_locked(key)
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Block until a key is ready.

        Returns:
            The key, or None if the queue is shutting down or timeout expired
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None

                wait = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key

                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: str) -> None:
        """Mark key finished; requeue it if it was added while processing."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        logger.debug("Work queue shut down")

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def processing(self) -> Set[str]:
        with self._cond:
            return set(self._processing)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)
