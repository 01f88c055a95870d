"""Periodic eviction of idle per-address state."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .store import StateStore

log = logging.getLogger(__name__)


class Sweeper:
    def __init__(self, store: StateStore, idle_threshold: float, interval: float,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.idle_threshold = idle_threshold
        self.interval = interval
        self.clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep(self, now: Optional[float] = None) -> int:
        if now is None:
            now = self.clock()
        evicted = 0
        for address in self.store.addresses():
            with self.store.lock_for(address):
                state = self.store.get(address)
                if state is not None and now - state.last_event_at > self.idle_threshold:
                    self.store.clear(address)
                    evicted += 1
        if evicted:
            log.debug("sweeper evicted %s idle address(es), %s tracked", evicted, len(self.store))
        return evicted

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.sweep()
            except Exception:
                log.exception("sweep failed")

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 1.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
