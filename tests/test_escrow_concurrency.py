import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from app.escrow.errors import ConcurrentModificationError, EscrowError, TerminalStateError
from app.escrow.service import EscrowEngine
from services.metrics import counter_value
from tests.conftest import held_project


def _race(n: int, fn):
    barrier = threading.Barrier(n)

    def run(i):
        barrier.wait()
        try:
            return fn(i)
        except EscrowError as e:
            return e

    with ThreadPoolExecutor(max_workers=n) as ex:
        return list(ex.map(run, range(n)))


def test_two_full_releases_only_one_wins(engine, store):
    held_project(engine, "p", 100_000)

    results = _race(2, lambda i: engine.release("p", 100_000, f"dev-{i}", "com-1", "25"))

    errors = [r for r in results if isinstance(r, Exception)]
    wins = [r for r in results if not isinstance(r, Exception)]
    assert len(wins) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], TerminalStateError)

    assert engine.get_balance("p") == 0
    assert len(store.list_payouts("p")) == 2
    assert engine.verify_project("p")["ok"]


def test_concurrent_holds_serialize_per_project(engine, store):
    results = _race(16, lambda i: engine.hold("p", f"pay-{i}", 1_000))

    assert not [r for r in results if isinstance(r, Exception)]
    assert engine.get_balance("p") == 16_000
    assert [e.seq for e in store.all_entries("p")] == list(range(1, 17))
    assert engine.verify_project("p")["ok"]


def test_release_and_refund_race_never_overdraws(engine, store):
    held_project(engine, "p", 10_000)

    def op(i):
        if i % 2:
            return engine.release("p", 10_000, "dev-1", "com-1", "25")
        return engine.refund("p", "pay-1", 10_000, "cancel", "client-1")

    results = _race(6, op)
    assert len([r for r in results if not isinstance(r, Exception)]) == 1
    assert engine.get_balance("p") == 0
    report = engine.verify_project("p")
    assert report["ok"], report
    assert report["entry_count"] == 2


def test_different_projects_do_not_block_each_other(engine):
    results = _race(8, lambda i: engine.hold(f"p-{i}", "pay-1", 500))
    assert not [r for r in results if isinstance(r, Exception)]
    assert all(engine.get_balance(f"p-{i}") == 500 for i in range(8))


def test_lock_timeout_retries_then_gives_up(store, config):
    engine = EscrowEngine(
        store,
        config_source=lambda: config,
        lock_timeout_s=0.02,
        lock_retries=2,
        lock_backoff_s=0.0,
    )
    before = counter_value("escrow_lock_retries_total", {"operation": "hold"})

    lock = store._lock_for("p")
    lock.acquire()
    try:
        with pytest.raises(ConcurrentModificationError):
            engine.hold("p", "pay-1", 100)
    finally:
        lock.release()

    assert counter_value("escrow_lock_retries_total", {"operation": "hold"}) == before + 1
    assert engine.get_balance("p") == 0
    engine.hold("p", "pay-1", 100)
    assert engine.get_balance("p") == 100
