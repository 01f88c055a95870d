"""secureknock: port-knocking access gate with rate limiting and temporary bans."""

from .config import KnockConfig, load_config
from .engine import SequenceEngine
from .errors import ConfigError, FirewallError, KnockError
from .events import KnockEvent
from .server import KnockServer

__version__ = "1.0.0"

__all__ = [
    "ConfigError",
    "FirewallError",
    "KnockConfig",
    "KnockError",
    "KnockEvent",
    "KnockServer",
    "SequenceEngine",
    "load_config",
]
