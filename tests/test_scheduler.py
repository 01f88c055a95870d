import threading
import time

from secureknock.scheduler import ReversalScheduler


def test_fire_runs_action_once(scheduler, manual):
    calls = []
    scheduler.schedule(("ban", "a"), 10, lambda: calls.append("a"))
    assert scheduler.pending(("ban", "a"))
    manual.fire_all()
    assert calls == ["a"]
    assert not scheduler.pending(("ban", "a"))


def test_replaced_task_never_fires(scheduler, manual):
    calls = []
    scheduler.schedule(("ban", "a"), 10, lambda: calls.append("old"))
    old = manual.timers[0]
    scheduler.schedule(("ban", "a"), 20, lambda: calls.append("new"))
    assert old.cancelled
    # a stale timer thread that already woke up must not run its action
    old.function(*old.args)
    assert calls == []
    manual.fire_all()
    assert calls == ["new"]


def test_woken_task_rechecks_under_its_lock(scheduler, manual):
    lock = threading.RLock()
    calls = []
    scheduler.schedule(("grant", "a"), 10, lambda: calls.append("old"), lock=lock)
    old = manual.timers[0]
    with lock:
        t = threading.Thread(target=old.function, args=old.args)
        t.start()
        time.sleep(0.05)
        scheduler.schedule(("grant", "a"), 10, lambda: calls.append("new"), lock=lock)
    t.join(2)
    assert not t.is_alive()
    assert calls == []
    manual.fire_all()
    assert calls == ["new"]


def test_cancel(scheduler, manual):
    calls = []
    scheduler.schedule(("grant", "a"), 10, lambda: calls.append(1))
    assert scheduler.cancel(("grant", "a"))
    assert not scheduler.cancel(("grant", "a"))
    manual.fire_all()
    assert calls == []


def test_keys_by_kind(scheduler):
    scheduler.schedule(("grant", "a"), 1, lambda: None)
    scheduler.schedule(("ban", "b"), 1, lambda: None)
    assert scheduler.keys("ban") == [("ban", "b")]
    assert len(scheduler) == 2


def test_failing_action_is_logged(scheduler, manual, caplog):
    def boom():
        raise RuntimeError("nope")

    scheduler.schedule(("ban", "a"), 1, boom)
    manual.fire_all()
    assert "reversal ('ban', 'a') failed" in caplog.text


def test_shutdown_drops_or_runs_pending(manual):
    calls = []
    s = ReversalScheduler(timer_factory=manual.timer)
    s.schedule(("ban", "a"), 1, lambda: calls.append("a"))
    assert s.shutdown() == 1
    assert calls == []

    s = ReversalScheduler(timer_factory=manual.timer)
    s.schedule(("ban", "a"), 1, lambda: calls.append("a"))
    assert s.shutdown(run_pending=True) == 1
    assert calls == ["a"]
    s.schedule(("ban", "b"), 1, lambda: calls.append("b"))
    assert len(s) == 0


def test_real_timer_fires():
    done = threading.Event()
    s = ReversalScheduler()
    s.schedule(("grant", "a"), 0.01, done.set)
    assert done.wait(2)
