# Runs against a real database only when TEST_DATABASE_URL points at one
# that has been migrated with `alembic upgrade head`.
from __future__ import annotations

import os
from decimal import Decimal
from uuid import uuid4

import pytest

from app.escrow.config import EscrowConfig
from app.escrow.errors import TerminalStateError
from app.escrow.models import EscrowStatus
from app.escrow.service import EscrowEngine

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "").strip()

pytestmark = pytest.mark.skipif(not TEST_DATABASE_URL, reason="TEST_DATABASE_URL not set")


@pytest.fixture(scope="module")
def pg_store():
    import db
    from app.escrow.store import PostgresStore

    db.close_pool()
    db.init_pool(TEST_DATABASE_URL)
    yield PostgresStore()
    db.close_pool()


@pytest.fixture()
def pg_engine(pg_store):
    cfg = EscrowConfig(tier_rates={"tier1": Decimal("25")})
    return EscrowEngine(pg_store, config_source=lambda: cfg, lock_timeout_s=1.0, lock_retries=3, lock_backoff_s=0.01)


def test_hold_release_and_verify_round_trip(pg_engine):
    project_id = f"pg-{uuid4()}"

    held = pg_engine.hold(project_id, f"pay-{uuid4()}", 100_000, actor_id="admin-1")
    assert held.transition.to_status == EscrowStatus.HELD

    released = pg_engine.release(project_id, 100_000, "dev-1", "com-1", "25", actor_id="client-1")
    assert released.transition.to_status == EscrowStatus.RELEASED
    assert released.balance_cents == 0
    assert sum(p.amount_cents for p in released.payouts) == 100_000

    report = pg_engine.verify_project(project_id)
    assert report["ok"] is True
    assert report["entry_count"] == 2

    page = pg_engine.get_ledger(project_id, limit=10)
    assert [e.seq for e in page.items] == [1, 2]


def test_idempotent_hold_replays_from_database(pg_engine):
    project_id = f"pg-{uuid4()}"
    payment_id = f"pay-{uuid4()}"

    first = pg_engine.hold(project_id, payment_id, 5_000, actor_id="admin-1", idempotency_key="k-1")
    second = pg_engine.hold(project_id, payment_id, 5_000, actor_id="admin-1", idempotency_key="k-1")

    assert second.replayed is True
    assert second.ledger_entry.id == first.ledger_entry.id
    assert pg_engine.get_balance(project_id) == 5_000


def test_refund_finds_payer_stored_with_the_hold(pg_engine, pg_store):
    project_id = f"pg-{uuid4()}"
    payment_id = f"pay-{uuid4()}"

    pg_engine.hold(project_id, payment_id, 20_000, payer_id="client-7", actor_id="admin-1")
    assert pg_store.all_entries(project_id)[0].payer_id == "client-7"

    refunded = pg_engine.refund(project_id, payment_id, 20_000, "client cancelled")
    assert [p.recipient_id for p in refunded.payouts] == ["client-7"]
    assert refunded.transition.to_status == EscrowStatus.REFUNDED

    with pytest.raises(TerminalStateError):
        pg_engine.release_remaining(project_id, "dev-1", "com-1", "25")
