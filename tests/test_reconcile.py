from dataclasses import replace

from services.reconcile import run_reconcile
from tests.conftest import held_project


def test_reconcile_clean_ledger(engine):
    held_project(engine, "p1", 10_000)
    engine.release("p1", 4_000, "dev-1", "com-1", "25")
    held_project(engine, "p2", 5_000)
    engine.refund("p2", "pay-1", 5_000, "cancel", "client-1")

    report = run_reconcile(engine)
    assert report["summary"]["projects_checked"] == 2
    assert report["items"] == []
    assert report["id"]


def test_reconcile_flags_projection_drift(engine, store):
    held_project(engine, "p1", 10_000)
    store._projects["p1"] = replace(store._projects["p1"], escrow_balance_cents=12_000)

    report = run_reconcile(engine)
    assert report["summary"]["balance_mismatch"] == 1
    [item] = report["items"]
    assert item["project_id"] == "p1"
    assert item["cached_cents"] == 12_000
    assert item["ledger_cents"] == 10_000


def test_reconcile_flags_payout_larger_than_its_debit(engine, store):
    held_project(engine, "p1", 10_000)
    r = engine.release("p1", 10_000, "dev-1", "com-1", "25")
    dev = r.payouts[0]
    store._payouts[dev.id] = replace(dev, amount_cents=20_000, escrow_funded_cents=20_000)

    report = run_reconcile(engine)
    assert report["summary"]["payout_exceeds_entry"] == 1
    assert report["items"][0]["ledger_entry_id"] == r.ledger_entry.id


def test_reconcile_limited_to_given_projects(engine):
    held_project(engine, "p1", 100)
    held_project(engine, "p2", 100)
    report = run_reconcile(engine, project_ids=["p2"])
    assert report["summary"]["projects_checked"] == 1
