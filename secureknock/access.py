"""
Grants and bans.

Both are side effects on the Access Controller plus one pending reversal in
the ReversalScheduler, keyed ``(GRANT, address)`` / ``(BAN, address)``. All
work for an address runs under ``store.lock_for(address)``.
"""

from __future__ import annotations

import logging
from typing import Iterable, Tuple

from .errors import FirewallError
from .firewall import AccessController
from .ratelimit import RateLimiter
from .scheduler import ReversalScheduler
from .store import StateStore

log = logging.getLogger(__name__)

GRANT = "grant"
BAN = "ban"


class AccessGranter:
    def __init__(self, store: StateStore, controller: AccessController,
                 scheduler: ReversalScheduler, protected_ports: Iterable[int],
                 duration: float):
        self.store = store
        self.controller = controller
        self.scheduler = scheduler
        self.protected_ports: Tuple[int, ...] = tuple(protected_ports)
        self.duration = duration

    def grant(self, address: str) -> None:
        with self.store.lock_for(address):
            for port in self.protected_ports:
                try:
                    self.controller.open_port(address, port)
                except FirewallError as e:
                    log.error("open port %s for %s failed: %s", port, address, e)
            state = self.store.get(address)
            if state is not None:
                RateLimiter.forgive(state)
            # the revoke is scheduled even when opening failed
            self.scheduler.schedule((GRANT, address), self.duration,
                                    lambda: self._expire(address),
                                    lock=self.store.lock_for(address))
        log.info("access granted to %s on ports %s for %ss",
                 address, ",".join(map(str, self.protected_ports)), self.duration)

    def revoke(self, address: str) -> None:
        """Close every protected port for ``address``; absent rules are fine."""
        with self.store.lock_for(address):
            for port in self.protected_ports:
                try:
                    self.controller.close_port(address, port)
                except FirewallError as e:
                    log.error("close port %s for %s failed: %s", port, address, e)
        log.debug("protected ports closed for %s", address)

    def _expire(self, address: str) -> None:
        self.revoke(address)
        log.info("access expired for %s", address)

    def cancel(self, address: str) -> bool:
        return self.scheduler.cancel((GRANT, address))

    def is_granted(self, address: str) -> bool:
        return self.scheduler.pending((GRANT, address))


class BanManager:
    def __init__(self, store: StateStore, controller: AccessController,
                 scheduler: ReversalScheduler, granter: AccessGranter,
                 duration: float):
        self.store = store
        self.controller = controller
        self.scheduler = scheduler
        self.granter = granter
        self.duration = duration

    def is_banned(self, address: str) -> bool:
        """Bans we issued answer from the scheduler; any other address costs one
        controller lookup (``iptables -C``, a subprocess) per knock."""
        if self.scheduler.pending((BAN, address)):
            return True
        try:
            return self.controller.is_blocked(address)
        except FirewallError as e:
            log.error("ban lookup for %s failed: %s", address, e)
            return False

    def ban(self, address: str, reason: str = "") -> bool:
        """Block ``address`` for ``duration``. Returns False if the block was not ours to manage.

        A block that already exists at the controller without a pending unban
        (set by an operator, or left over from a previous run) is left alone:
        its grant, its tracking state and the block itself stay untouched and
        no unban is scheduled. Re-banning an address we banned restarts its timer.
        """
        key = (BAN, address)
        with self.store.lock_for(address):
            ours = self.scheduler.pending(key)
            try:
                blocked = self.controller.is_blocked(address)
            except FirewallError as e:
                log.error("ban lookup for %s failed: %s", address, e)
                blocked = False
            if blocked and not ours:
                log.info("%s is already blocked outside secureknock, leaving it", address)
                return False

            # revoke first, then block
            self.granter.cancel(address)
            self.granter.revoke(address)
            self.store.clear(address)
            if not blocked:
                try:
                    self.controller.block_address(address)
                except FirewallError as e:
                    log.error("block %s failed: %s", address, e)
            self.scheduler.schedule(key, self.duration, lambda: self.unban(address),
                                    lock=self.store.lock_for(address))
        if reason:
            log.warning("banned %s for %ss (%s)", address, self.duration, reason)
        else:
            log.warning("banned %s for %ss", address, self.duration)
        return True

    def unban(self, address: str) -> None:
        with self.store.lock_for(address):
            try:
                self.controller.unblock_address(address)
            except FirewallError as e:
                log.error("unblock %s failed: %s", address, e)
                return
        log.info("ban expired for %s", address)
