"""
Knock-sequence state machine.

For each event, under the address lock:
  1. banned address            -> drop
  2. rate limit (ban on overflow)
  3. start port                -> index = 1
  4. no sequence in progress   -> drop
  5. gap > sequence_timeout    -> reset, drop
  6. expected port             -> advance; grant and reset on the last port
     any other port            -> reset
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from .access import AccessGranter, BanManager
from .events import validate_event
from .ratelimit import RateLimiter
from .store import StateStore

log = logging.getLogger(__name__)

# process() outcomes
DROPPED_BANNED = "banned"
BANNED = "ban"
STARTED = "start"
IGNORED = "ignored"
TIMED_OUT = "timeout"
ADVANCED = "step"
GRANTED = "granted"
RESET = "reset"
MALFORMED = "malformed"


class SequenceEngine:
    def __init__(self, sequence: Sequence[int], store: StateStore, limiter: RateLimiter,
                 granter: AccessGranter, bans: BanManager, sequence_timeout: float):
        if len(sequence) < 2:
            raise ValueError("a knock sequence needs at least 2 ports")
        self.sequence = tuple(sequence)
        self.store = store
        self.limiter = limiter
        self.granter = granter
        self.bans = bans
        self.sequence_timeout = sequence_timeout

    def handle(self, raw) -> str:
        event = validate_event(raw)
        if event is None:
            log.debug("malformed knock event dropped: %r", raw)
            return MALFORMED
        return self.process(*event)

    def process(self, address: str, port: int, now: float) -> str:
        with self.store.lock_for(address):
            if self.bans.is_banned(address):
                return DROPPED_BANNED

            state, _ = self.store.get_or_create(address, now)
            if not self.limiter.hit(state, now):
                self.bans.ban(address, reason="rate limit exceeded")
                return BANNED

            if port == self.sequence[0]:
                state.sequence_index = 1
                state.last_event_at = now
                log.debug("new sequence for %s", address)
                return STARTED

            if state.sequence_index == 0:
                state.last_event_at = now
                log.debug("knock on %s from %s without a started sequence", port, address)
                return IGNORED

            if now - state.last_event_at > self.sequence_timeout:
                state.reset_sequence()
                state.last_event_at = now
                log.info("sequence timeout for %s", address)
                return TIMED_OUT

            state.last_event_at = now
            expected = self.sequence[state.sequence_index]
            if port != expected:
                log.info("invalid sequence from %s (expected %s, got %s)", address, expected, port)
                state.reset_sequence()
                return RESET

            state.sequence_index += 1
            log.debug("correct knock from %s: step %s/%s",
                      address, state.sequence_index, len(self.sequence))
            if state.sequence_index < len(self.sequence):
                return ADVANCED

            log.info("sequence completed for %s", address)
            state.reset_sequence()
            self.granter.grant(address)
            return GRANTED

    def progress(self, address: str) -> Optional[int]:
        state = self.store.get(address)
        return None if state is None else state.sequence_index
