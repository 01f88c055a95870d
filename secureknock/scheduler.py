"""
Delayed reversal actions (unban, revoke access).

One task per key, e.g. ``("ban", "203.0.113.7")``. Scheduling a key that is
already pending cancels the old timer first, so a stale reversal can never
fire after it has been replaced. A task scheduled with ``lock`` holds it from
the staleness check until its action returns.
"""

from __future__ import annotations

import logging
import threading
from contextlib import nullcontext
from typing import Callable, Dict, Hashable, List, Optional

log = logging.getLogger(__name__)

Action = Callable[[], None]


class _Task:
    __slots__ = ("key", "action", "timer", "lock")

    def __init__(self, key: Hashable, action: Action, lock=None):
        self.key = key
        self.action = action
        self.lock = lock
        self.timer = None


class ReversalScheduler:
    def __init__(self, timer_factory: Callable = threading.Timer):
        self._timer_factory = timer_factory
        self._tasks: Dict[Hashable, _Task] = {}
        self._lock = threading.Lock()
        self._closed = False

    def schedule(self, key: Hashable, delay: float, action: Action, lock=None) -> None:
        task = _Task(key, action, lock)
        timer = self._timer_factory(delay, self._fire, args=(task,))
        timer.daemon = True
        task.timer = timer
        with self._lock:
            if self._closed:
                log.warning("scheduler closed, dropping reversal %s", key)
                return
            old = self._tasks.pop(key, None)
            self._tasks[key] = task
        if old is not None:
            old.timer.cancel()
            log.debug("replaced pending reversal %s", key)
        timer.start()

    def cancel(self, key: Hashable) -> bool:
        with self._lock:
            task = self._tasks.pop(key, None)
        if task is None:
            return False
        task.timer.cancel()
        return True

    def pending(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._tasks

    def keys(self, kind: Optional[str] = None) -> List[Hashable]:
        with self._lock:
            keys = list(self._tasks)
        if kind is None:
            return keys
        return [k for k in keys if isinstance(k, tuple) and k and k[0] == kind]

    def _fire(self, task: _Task) -> None:
        with task.lock or nullcontext():
            with self._lock:
                if self._tasks.get(task.key) is not task:
                    return  # cancelled or replaced
                del self._tasks[task.key]
            self._run(task)

    @staticmethod
    def _run(task: _Task) -> None:
        try:
            task.action()
        except Exception:
            log.exception("reversal %s failed", task.key)

    def shutdown(self, run_pending: bool = False) -> int:
        """Cancel every pending timer; with ``run_pending`` run their actions now."""
        with self._lock:
            self._closed = True
            tasks = list(self._tasks.values())
            self._tasks.clear()
        for task in tasks:
            task.timer.cancel()
            if run_pending:
                self._run(task)
        return len(tasks)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)
