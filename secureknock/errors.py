"""Exceptions raised by secureknock."""


class KnockError(Exception):
    """Base class for every secureknock error."""


class ConfigError(KnockError):
    """Invalid or unreadable configuration."""


class FirewallError(KnockError):
    """An Access Controller command failed."""

    def __init__(self, message: str, cmd=None, stderr: str = ""):
        super().__init__(message)
        self.cmd = list(cmd) if cmd else []
        self.stderr = stderr

    def __str__(self) -> str:
        base = super().__str__()
        if self.stderr:
            return f"{base}: {self.stderr.strip()}"
        return base
