"""
Per-address knock tracking.

``StateStore`` owns one ``AddressState`` per observed address. The map itself is
guarded by a store lock; per-address work (state mutation and firewall calls)
runs under ``lock_for(address)``, a re-entrant lock taken from a fixed pool of
stripes so unrelated addresses rarely contend and the lock table never grows.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

STRIPES = 64


@dataclass
class AddressState:
    sequence_index: int = 0      # 0 = no sequence in progress
    last_event_at: float = 0.0
    window_start: float = 0.0
    window_count: int = 0        # 0 = no rate-limit window open

    def reset_sequence(self) -> None:
        self.sequence_index = 0


class StateStore:
    def __init__(self, stripes: int = STRIPES):
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._states: Dict[str, AddressState] = {}
        self._lock = threading.Lock()
        self._stripes = [threading.RLock() for _ in range(stripes)]

    def lock_for(self, address: str) -> threading.RLock:
        return self._stripes[hash(address) % len(self._stripes)]

    def get(self, address: str) -> Optional[AddressState]:
        with self._lock:
            return self._states.get(address)

    def get_or_create(self, address: str, now: float) -> Tuple[AddressState, bool]:
        with self._lock:
            state = self._states.get(address)
            if state is not None:
                return state, False
            state = AddressState(last_event_at=now)
            self._states[address] = state
            return state, True

    def clear(self, address: str) -> bool:
        with self._lock:
            return self._states.pop(address, None) is not None

    def addresses(self) -> List[str]:
        with self._lock:
            return list(self._states)

    def clear_all(self) -> None:
        with self._lock:
            self._states.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def __contains__(self, address: str) -> bool:
        with self._lock:
            return address in self._states
