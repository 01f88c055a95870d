#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
secureknock server
- Reads flagged knocks (kernel log or scapy sniff)
- Per-IP sequence tracking, e.g. 7000 -> 8000 -> 9000 ...
- Sequence completed: protected ports opened for the source IP, closed after access_duration
- Too many knocks inside rate_limit_window: IP dropped for ban_duration
- Idle tracking entries swept every rate_limit_window
Usage: sudo secureknock --config /etc/secureknock.yaml
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
import time
from typing import Callable, Dict, Iterable, Optional

from .access import BAN, GRANT, AccessGranter, BanManager
from .config import KnockConfig, load_config
from .engine import SequenceEngine
from .errors import ConfigError, FirewallError
from .firewall import AccessController, DryRunController, IptablesController, have
from .logs import setup_logger
from .ratelimit import RateLimiter
from .scheduler import ReversalScheduler
from .sources import kernlog_events, sniff_events
from .store import StateStore
from .sweeper import Sweeper

log = logging.getLogger(__name__)


class KnockServer:
    """Wires the State Store, engine, granter, ban manager and sweeper together."""

    def __init__(self, config: KnockConfig, controller: AccessController,
                 scheduler: Optional[ReversalScheduler] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.controller = controller
        self.clock = clock
        self.store = StateStore()
        self.scheduler = scheduler or ReversalScheduler()
        self.limiter = RateLimiter(config.rate_limit_window, config.rate_limit_max)
        self.granter = AccessGranter(self.store, controller, self.scheduler,
                                     config.protected_ports, config.access_duration)
        self.bans = BanManager(self.store, controller, self.scheduler, self.granter,
                               config.ban_duration)
        self.engine = SequenceEngine(config.knock_sequence, self.store, self.limiter,
                                     self.granter, self.bans, config.sequence_timeout)
        self.sweeper = Sweeper(self.store, config.idle_eviction_threshold,
                               config.rate_limit_window, clock=clock)
        self.stop_event = threading.Event()
        self._knock_logging = False

    def start(self) -> None:
        cfg = self.config
        if cfg.source == "kernlog":
            try:
                self.controller.install_knock_logging(cfg.knock_sequence, cfg.secret_token,
                                                      cfg.log_prefix)
                self._knock_logging = True
            except FirewallError as e:
                log.error("knock logging rules not installed: %s", e)
        self.sweeper.start()
        log.info("sequence: %s | protected: %s | access %ss | ban %ss",
                 " -> ".join(map(str, cfg.knock_sequence)),
                 ",".join(map(str, cfg.protected_ports)),
                 cfg.access_duration, cfg.ban_duration)

    def events(self) -> Iterable:
        cfg = self.config
        if cfg.source == "sniff":
            return sniff_events(cfg.knock_sequence, cfg.secret_token, self.stop_event,
                                iface=cfg.iface, clock=self.clock)
        return kernlog_events(cfg.kern_log, cfg.log_prefix, self.stop_event, clock=self.clock)

    def dispatch(self, raw) -> Optional[str]:
        try:
            return self.engine.handle(raw)
        except Exception:
            log.exception("knock event %r failed", raw)
            return None

    def serve(self, events: Optional[Iterable] = None) -> None:
        if events is None:
            events = self.events()
        for raw in events:
            if self.stop_event.is_set():
                break
            self.dispatch(raw)

    def status(self) -> Dict[str, int]:
        return {
            "tracked": len(self.store),
            "grants": len(self.scheduler.keys(GRANT)),
            "bans": len(self.scheduler.keys(BAN)),
        }

    def stop(self, revoke: Optional[bool] = None) -> None:
        """Stop background work. Issued grants and bans stay unless ``revoke``."""
        if revoke is None:
            revoke = self.config.revoke_on_exit
        self.stop_event.set()
        self.sweeper.stop()
        log.info("shutting down: %s", self.status())
        fired = self.scheduler.shutdown(run_pending=revoke)
        if fired and not revoke:
            log.warning("%s pending reversal(s) dropped; rules stay until removed by hand", fired)
        if self._knock_logging:
            cfg = self.config
            try:
                self.controller.remove_knock_logging(cfg.knock_sequence, cfg.secret_token,
                                                     cfg.log_prefix)
            except FirewallError as e:
                log.error("knock logging rules not removed: %s", e)
            self._knock_logging = False
        self.store.clear_all()


def must_root() -> None:
    if os.geteuid() != 0:
        print("[-] Run as root (sudo), or use --dry-run.", file=sys.stderr)
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="secureknock",
                                 description="Port-knocking gate with rate limiting and temporary bans")
    ap.add_argument("--config", help="YAML configuration file")
    ap.add_argument("--source", choices=["kernlog", "sniff"], help="where knocks are read from")
    ap.add_argument("--kern-log", help="kernel log to follow (kernlog source)")
    ap.add_argument("--iface", help="interface to sniff (sniff source)")
    ap.add_argument("--log-file", help="also write logs to this file")
    ap.add_argument("--debug", action="store_true", default=None, help="verbose logging")
    ap.add_argument("--dry-run", action="store_true", default=None,
                    help="do not touch iptables, keep rules in memory")
    ap.add_argument("--revoke-on-exit", action="store_true", default=None,
                    help="close granted ports and lift bans on shutdown")
    return ap


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg = load_config(args.config, source=args.source, kern_log=args.kern_log,
                          iface=args.iface, log_file=args.log_file, debug=args.debug,
                          dry_run=args.dry_run, revoke_on_exit=args.revoke_on_exit)
    except ConfigError as e:
        print(f"[-] {e}", file=sys.stderr)
        return 2

    setup_logger(cfg.log_file, cfg.debug)
    if cfg.dry_run:
        controller: AccessController = DryRunController()
        log.info("dry run: no firewall changes")
    else:
        must_root()
        if not have("iptables"):
            print("[-] iptables required.", file=sys.stderr)
            return 1
        controller = IptablesController()

    server = KnockServer(cfg, controller)

    def _sig(signum, frame):
        log.info("signal %s received", signum)
        server.stop_event.set()

    signal.signal(signal.SIGINT, _sig)
    signal.signal(signal.SIGTERM, _sig)

    server.start()
    try:
        server.serve()
    except KeyboardInterrupt:
        pass
    finally:
        server.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
