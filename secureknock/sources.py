# -*- coding: utf-8 -*-
"""
Event sources: where knocks come from.

- kernlog : follow the kernel log like ``tail -n0 -F`` and keep the lines the
            knock LOG rules tagged with the prefix (SRC= / DPT= fields).
- sniff   : scapy capture on the knock ports; a TCP segment is a knock only
            when its payload carries the secret token.

Both yield ``KnockEvent(address, port, observed_at)`` stamped at reception.
"""

from __future__ import annotations

import logging
import os
import queue
import re
import threading
import time
from typing import Callable, Iterable, Iterator, Optional

from .events import KnockEvent, validate_event

log = logging.getLogger(__name__)

SRC_RE = re.compile(r"\bSRC=(?P<ip>\S+)")
DPT_RE = re.compile(r"\bDPT=(?P<port>\d+)")


# ---- kernel log ----
def parse_kern_line(line: str, prefix: str, now: float) -> Optional[KnockEvent]:
    if prefix not in line:
        return None
    src = SRC_RE.search(line)
    dpt = DPT_RE.search(line)
    if not src or not dpt:
        return None
    return validate_event((src.group("ip"), dpt.group("port"), now))


def _reopened(path: str, fh) -> bool:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    cur = os.fstat(fh.fileno())
    return st.st_ino != cur.st_ino or st.st_size < fh.tell()


def follow(path: str, stop: threading.Event, poll: float = 0.5,
           from_start: bool = False) -> Iterator[str]:
    """Yield lines appended to ``path`` until ``stop`` is set; survives rotation."""
    fh = None
    buf = ""
    try:
        while True:
            if fh is None:
                try:
                    fh = open(path, "r", encoding="utf-8", errors="replace")
                except FileNotFoundError:
                    if stop.wait(poll):
                        return
                    continue
                if not from_start:
                    fh.seek(0, os.SEEK_END)
                from_start = True  # a rotated file is read from its beginning
                buf = ""
            chunk = fh.readline()
            if chunk:
                buf += chunk
                if buf.endswith("\n"):
                    line, buf = buf.rstrip("\n"), ""
                    yield line
                continue
            if _reopened(path, fh):
                log.debug("%s rotated or truncated, reopening", path)
                fh.close()
                fh = None
                continue
            if stop.wait(poll):
                return
    finally:
        if fh is not None:
            fh.close()


def kernlog_events(path: str, prefix: str, stop: threading.Event,
                   clock: Callable[[], float] = time.time,
                   poll: float = 0.5, from_start: bool = False) -> Iterator[KnockEvent]:
    log.info("watching %s for %r", path, prefix)
    for line in follow(path, stop, poll=poll, from_start=from_start):
        event = parse_kern_line(line, prefix, clock())
        if event is not None:
            yield event


# ---- scapy ----
def bpf_filter(ports: Iterable[int]) -> str:
    return "tcp and (" + " or ".join(f"dst port {p}" for p in ports) + ")"


def packet_to_event(pkt, token: bytes, now: float) -> Optional[KnockEvent]:
    from scapy.all import IP, TCP  # type: ignore

    if IP not in pkt or TCP not in pkt:
        return None
    if token not in bytes(pkt[TCP].payload):
        return None
    return validate_event((pkt[IP].src, int(pkt[TCP].dport), now))


def sniff_events(ports: Iterable[int], token: str, stop: threading.Event,
                 iface: Optional[str] = None, clock: Callable[[], float] = time.time,
                 poll: float = 0.5) -> Iterator[KnockEvent]:
    from scapy.all import AsyncSniffer  # type: ignore

    flag = token.encode()
    pending: "queue.Queue[KnockEvent]" = queue.Queue()

    def on_packet(pkt):
        event = packet_to_event(pkt, flag, clock())
        if event is not None:
            pending.put(event)

    ports = list(ports)
    sniffer = AsyncSniffer(filter=bpf_filter(ports), prn=on_packet, store=False, iface=iface)
    sniffer.start()
    log.info("sniffing %s on %s", bpf_filter(ports), iface or "all interfaces")
    try:
        while not stop.is_set():
            try:
                yield pending.get(timeout=poll)
            except queue.Empty:
                continue
    finally:
        try:
            sniffer.stop()
        except Exception as e:
            log.debug("sniffer stop: %s", e)
