"""Knock events and their validation."""

from __future__ import annotations

import ipaddress
from typing import NamedTuple, Optional


class KnockEvent(NamedTuple):
    address: str
    port: int
    observed_at: float


def validate_event(raw) -> Optional[KnockEvent]:
    """Normalise ``raw`` into a KnockEvent, or None if it is malformed."""
    try:
        address, port, observed_at = raw
    except (TypeError, ValueError):
        return None
    if not isinstance(address, str) or not address:
        return None
    try:
        address = str(ipaddress.ip_address(address.strip()))
    except ValueError:
        return None
    if isinstance(port, bool):
        return None
    try:
        port = int(port)
        observed_at = float(observed_at)
    except (TypeError, ValueError):
        return None
    if not 1 <= port <= 65535:
        return None
    return KnockEvent(address, port, observed_at)
