import time

from secureknock import engine as E
from secureknock.store import StateStore
from secureknock.sweeper import Sweeper

A = "203.0.113.7"
B = "198.51.100.23"


def test_sweep_evicts_only_idle_addresses(server):
    server.engine.process(A, 7000, 0.0)
    server.engine.process(B, 7000, 500.0)
    assert server.sweeper.sweep(now=950.0) == 1
    assert A not in server.store
    assert B in server.store


def test_idle_exactly_at_threshold_is_kept(server):
    server.engine.process(A, 7000, 0.0)
    assert server.sweeper.sweep(now=900.0) == 0


def test_evicted_address_starts_from_scratch(server, controller):
    server.engine.process(A, 7000, 0.0)
    server.engine.process(A, 8000, 1.0)
    server.sweeper.sweep(now=2000.0)
    assert server.engine.process(A, 9000, 2001.0) == E.IGNORED
    assert controller.count("open_port") == 0
    state = server.store.get(A)
    assert (state.sequence_index, state.window_count) == (0, 1)


def test_sweep_leaves_bans_and_grants_alone(server, controller):
    for i in range(26):
        server.engine.process(B, 1234, float(i))
    server.engine.process(A, 7000, 0.0)
    server.engine.process(A, 8000, 1.0)
    server.engine.process(A, 9000, 2.0)
    server.sweeper.sweep(now=10000.0)
    assert len(server.store) == 0
    assert controller.is_blocked(B)
    assert controller.open_ports_for(A) == {22, 443}


def test_background_thread_sweeps():
    store = StateStore()
    store.get_or_create(A, 0.0)
    sweeper = Sweeper(store, idle_threshold=10, interval=0.01, clock=lambda: 100.0)
    sweeper.start()
    try:
        deadline = time.time() + 2
        while A in store and time.time() < deadline:
            time.sleep(0.01)
    finally:
        sweeper.stop()
    assert A not in store
