from __future__ import annotations

import pytest

from secureknock.config import KnockConfig
from secureknock.firewall import DryRunController
from secureknock.scheduler import ReversalScheduler
from secureknock.server import KnockServer


class ManualTimer:
    """threading.Timer stand-in that only fires when told to."""

    def __init__(self, clock, interval, function, args=()):
        self.clock = clock
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True
        self.clock.timers.append(self)

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.function(*self.args)


class ManualClock:
    def __init__(self):
        self.timers = []

    def timer(self, interval, function, args=()):
        return ManualTimer(self, interval, function, args)

    def live(self):
        return [t for t in self.timers if not t.cancelled]

    def fire_all(self):
        for t in list(self.timers):
            t.fire()
            self.timers.remove(t)


@pytest.fixture
def manual():
    return ManualClock()


@pytest.fixture
def scheduler(manual):
    return ReversalScheduler(timer_factory=manual.timer)


@pytest.fixture
def controller():
    return DryRunController()


@pytest.fixture
def config():
    return KnockConfig(knock_sequence=(7000, 8000, 9000), protected_ports=(22, 443),
                       rate_limit_max=25, rate_limit_window=900, sequence_timeout=300,
                       access_duration=3600, ban_duration=86400, dry_run=True)


@pytest.fixture
def server(config, controller, scheduler):
    return KnockServer(config, controller, scheduler=scheduler, clock=lambda: 0.0)
