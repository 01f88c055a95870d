"""
Configuration loading for the knock server.

The YAML file is read once at startup (``yaml.safe_load``) and frozen into a
``KnockConfig``. Every key is optional; missing keys keep the defaults below.

Example::

    knock_sequence: [7000, 8000, 9000]
    protected_ports: [22, 443]
    secret_token: "ChangeThisFlag"
    access_duration: 28800
    sequence_timeout: 300
    rate_limit_window: 900
    rate_limit_max: 25
    ban_duration: 86400
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional, Tuple

import yaml

from .errors import ConfigError

# ---- defaults ----
KNOCK_SEQUENCE    = (7000, 8000, 9000, 6000, 5000, 4000, 3000, 2000)
PROTECTED_PORTS   = (22, 80, 443, 8080, 8443)
SECRET_TOKEN      = "ChangeThisFlag"
ACCESS_DURATION   = 8 * 3600     # 8 hours
SEQUENCE_TIMEOUT  = 300          # max gap between two knocks
RATE_LIMIT_WINDOW = 900          # 15 minutes
RATE_LIMIT_MAX    = 25
BAN_DURATION      = 86400        # 1 day
KERN_LOG          = "/var/log/kern.log"
LOG_PREFIX        = "FLAGGED_KNOCK:"
SOURCES           = ("kernlog", "sniff")


@dataclass(frozen=True)
class KnockConfig:
    knock_sequence: Tuple[int, ...] = KNOCK_SEQUENCE
    protected_ports: Tuple[int, ...] = PROTECTED_PORTS
    secret_token: str = SECRET_TOKEN
    access_duration: float = ACCESS_DURATION
    sequence_timeout: float = SEQUENCE_TIMEOUT
    rate_limit_window: float = RATE_LIMIT_WINDOW
    rate_limit_max: int = RATE_LIMIT_MAX
    ban_duration: float = BAN_DURATION
    idle_eviction_threshold: Optional[float] = None
    # event source / runtime
    source: str = "kernlog"
    kern_log: str = KERN_LOG
    log_prefix: str = LOG_PREFIX
    iface: Optional[str] = None
    log_file: Optional[str] = None
    debug: bool = False
    dry_run: bool = False
    revoke_on_exit: bool = False

    def __post_init__(self):
        object.__setattr__(self, "knock_sequence", _ports("knock_sequence", self.knock_sequence))
        object.__setattr__(self, "protected_ports", _ports("protected_ports", self.protected_ports))
        if self.idle_eviction_threshold is None:
            object.__setattr__(self, "idle_eviction_threshold", self.rate_limit_window)
        self.validate()

    @property
    def sequence_length(self) -> int:
        return len(self.knock_sequence)

    @property
    def start_port(self) -> int:
        return self.knock_sequence[0]

    def validate(self) -> None:
        seq = self.knock_sequence
        if len(seq) < 2:
            raise ConfigError("knock_sequence needs at least 2 ports")
        if len(set(seq)) != len(seq):
            raise ConfigError(f"knock_sequence ports must be distinct: {list(seq)}")
        if not self.protected_ports:
            raise ConfigError("protected_ports is empty")
        overlap = set(seq) & set(self.protected_ports)
        if overlap:
            raise ConfigError(f"ports both knocked and protected: {sorted(overlap)}")
        if not self.secret_token:
            raise ConfigError("secret_token is empty")
        for name in ("access_duration", "sequence_timeout", "rate_limit_window",
                     "ban_duration", "idle_eviction_threshold"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
                raise ConfigError(f"{name} must be a positive number, got {value!r}")
        if not isinstance(self.rate_limit_max, int) or isinstance(self.rate_limit_max, bool) \
                or self.rate_limit_max < 1:
            raise ConfigError(f"rate_limit_max must be an integer >= 1, got {self.rate_limit_max!r}")
        if self.source not in SOURCES:
            raise ConfigError(f"source must be one of {', '.join(SOURCES)}, got {self.source!r}")


def _ports(name: str, value) -> Tuple[int, ...]:
    if isinstance(value, (str, bytes)) or not hasattr(value, "__iter__"):
        raise ConfigError(f"{name} must be a list of ports")
    ports = []
    for item in value:
        try:
            port = int(item)
        except (TypeError, ValueError):
            raise ConfigError(f"{name}: invalid port {item!r}") from None
        if isinstance(item, bool) or not 1 <= port <= 65535:
            raise ConfigError(f"{name}: port out of range {item!r}")
        ports.append(port)
    return tuple(ports)


def from_mapping(data: Optional[Dict[str, Any]]) -> KnockConfig:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError("configuration root must be a mapping")
    known = {f.name for f in fields(KnockConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"unknown configuration keys: {', '.join(unknown)}")
    return KnockConfig(**data)


def load_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e


def load_config(path: Optional[str] = None, **overrides) -> KnockConfig:
    """Read ``path`` (if given) and apply non-None ``overrides`` on top."""
    data = load_yaml(os.path.expanduser(path)) if path else {}
    cfg = from_mapping(data)
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        try:
            cfg = replace(cfg, **overrides)
        except TypeError as e:
            raise ConfigError(str(e)) from e
    return cfg
