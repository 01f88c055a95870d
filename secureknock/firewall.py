# -*- coding: utf-8 -*-
"""
Access Controllers: what actually makes a port reachable or not.

- IptablesController : rules in the INPUT chain (check with -C before -I/-A,
  delete with -D, deleting an absent rule is a no-op).
- DryRunController   : same semantics kept in memory, for --dry-run and tests.

Every operation is idempotent. Failures raise FirewallError; callers in the
core log them and carry on.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import threading
from typing import Iterable, List, Set, Tuple

from .errors import FirewallError

log = logging.getLogger(__name__)


def have(cmd: str) -> bool:
    return shutil.which(cmd) is not None


def run(cmd: List[str]) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    except OSError as e:
        raise FirewallError(f"cannot execute {cmd[0]}", cmd, str(e)) from e


class AccessController:
    """Interface the core needs from the packet filter."""

    def open_port(self, address: str, port: int) -> None:
        raise NotImplementedError

    def close_port(self, address: str, port: int) -> None:
        raise NotImplementedError

    def block_address(self, address: str) -> None:
        raise NotImplementedError

    def unblock_address(self, address: str) -> None:
        raise NotImplementedError

    def is_blocked(self, address: str) -> bool:
        raise NotImplementedError

    def install_knock_logging(self, ports: Iterable[int], token: str, prefix: str) -> None:
        """Log flagged knocks to the kernel log (only needed by the kernlog source)."""

    def remove_knock_logging(self, ports: Iterable[int], token: str, prefix: str) -> None:
        pass


# ---- iptables ----
def accept_spec(address: str, port: int) -> List[str]:
    return ["-p", "tcp", "--dport", str(port), "-s", address, "-j", "ACCEPT"]


def drop_spec(address: str) -> List[str]:
    return ["-s", address, "-j", "DROP"]


def knock_log_spec(port: int, token: str, prefix: str) -> List[str]:
    return ["-p", "tcp", "--dport", str(port),
            "-m", "string", "--string", token, "--algo", "bm",
            "-j", "LOG", "--log-prefix", prefix, "--log-level", "4"]


class IptablesController(AccessController):
    def __init__(self, chain: str = "INPUT", binary: str = "iptables", runner=run):
        self.chain = chain
        self.binary = binary
        self._run = runner

    def _cmd(self, action: str, spec: List[str]) -> List[str]:
        # -w: wait for the xtables lock instead of failing when another call holds it
        return [self.binary, "-w", action, self.chain] + spec

    def exists(self, spec: List[str]) -> bool:
        cmd = self._cmd("-C", spec)
        res = self._run(cmd)
        if res.returncode == 0:
            return True
        if "permission denied" in (res.stderr or "").lower():
            raise FirewallError("iptables check failed", cmd, res.stderr)
        return False

    def add(self, spec: List[str], action: str = "-I") -> bool:
        if self.exists(spec):
            return False
        cmd = self._cmd(action, spec)
        res = self._run(cmd)
        if res.returncode != 0:
            raise FirewallError("iptables insert failed", cmd, res.stderr)
        return True

    def delete(self, spec: List[str]) -> bool:
        if not self.exists(spec):
            return False
        cmd = self._cmd("-D", spec)
        res = self._run(cmd)
        if res.returncode != 0:
            raise FirewallError("iptables delete failed", cmd, res.stderr)
        return True

    def open_port(self, address: str, port: int) -> None:
        self.add(accept_spec(address, port))

    def close_port(self, address: str, port: int) -> None:
        self.delete(accept_spec(address, port))

    def block_address(self, address: str) -> None:
        self.add(drop_spec(address))

    def unblock_address(self, address: str) -> None:
        self.delete(drop_spec(address))

    def is_blocked(self, address: str) -> bool:
        return self.exists(drop_spec(address))

    def install_knock_logging(self, ports, token, prefix):
        for port in ports:
            if self.add(knock_log_spec(port, token, prefix), action="-A"):
                log.info("knock logging rule added for port %s", port)

    def remove_knock_logging(self, ports, token, prefix):
        for port in ports:
            self.delete(knock_log_spec(port, token, prefix))


# ---- dry run ----
class DryRunController(AccessController):
    def __init__(self):
        self._lock = threading.Lock()
        self.open: Set[Tuple[str, int]] = set()
        self.blocked: Set[str] = set()
        self.knock_logging: Set[int] = set()
        self.calls: List[Tuple] = []

    def _record(self, *call) -> None:
        self.calls.append(call)
        log.debug("[dry-run] %s", " ".join(map(str, call)))

    def open_port(self, address, port):
        with self._lock:
            self._record("open_port", address, port)
            self.open.add((address, port))

    def close_port(self, address, port):
        with self._lock:
            self._record("close_port", address, port)
            self.open.discard((address, port))

    def block_address(self, address):
        with self._lock:
            self._record("block_address", address)
            self.blocked.add(address)

    def unblock_address(self, address):
        with self._lock:
            self._record("unblock_address", address)
            self.blocked.discard(address)

    def is_blocked(self, address):
        with self._lock:
            return address in self.blocked

    def open_ports_for(self, address: str) -> Set[int]:
        with self._lock:
            return {port for addr, port in self.open if addr == address}

    def count(self, name: str, *args) -> int:
        with self._lock:
            return sum(1 for c in self.calls if c[0] == name and c[1:1 + len(args)] == args)

    def install_knock_logging(self, ports, token, prefix):
        with self._lock:
            self.knock_logging.update(ports)

    def remove_knock_logging(self, ports, token, prefix):
        with self._lock:
            self.knock_logging.difference_update(ports)
