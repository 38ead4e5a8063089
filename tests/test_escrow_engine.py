from decimal import Decimal

import pytest

from app.escrow.errors import (
    InsufficientBalanceError,
    InvalidRateError,
    InvalidTransition,
    NotFoundError,
    StoreUnavailableError,
    TerminalStateError,
    ValidationError,
)
from app.escrow.models import (
    BeneficiaryRole,
    CommissionStatus,
    EscrowStatus,
    FundingSource,
    LedgerAction,
    PayoutStatus,
)
from app.escrow.service import EscrowEngine
from app.escrow.store import MemoryStore, _MemoryTx
from tests.conftest import held_project


# ---------------------------
# hold
# ---------------------------

def test_first_hold_activates_project(engine):
    r = engine.hold("p", "pay-1", 100_000, actor_id="admin-1")
    assert r.transition.from_status == EscrowStatus.NONE
    assert r.transition.to_status == EscrowStatus.HELD
    assert r.ledger_entry.action == LedgerAction.HOLD
    assert r.ledger_entry.payment_id == "pay-1"

    project = engine.get_project("p")
    assert project.escrow_balance_cents == 100_000
    assert project.escrow_status == EscrowStatus.HELD
    assert project.project_status == "active"


def test_same_payment_cannot_be_held_twice(engine):
    engine.hold("p", "pay-1", 1_000)
    with pytest.raises(ValidationError) as exc:
        engine.hold("p", "pay-1", 1_000)
    assert exc.value.code == "DUPLICATE_PAYMENT"
    assert engine.get_balance("p") == 1_000


@pytest.mark.parametrize("amount", [0, -5, 10.5, True, "100"])
def test_hold_rejects_bad_amounts(engine, amount):
    with pytest.raises(ValidationError):
        engine.hold("p", "pay-1", amount)
    assert engine.get_project("p").escrow_status == EscrowStatus.NONE


def test_unknown_operation(engine):
    with pytest.raises(ValidationError):
        engine.apply_operation("p", "teleport", {})


def test_missing_context_fields(engine):
    with pytest.raises(ValidationError):
        engine.apply_operation("p", "hold", {"amount_cents": 10})
    with pytest.raises(ValidationError):
        engine.apply_operation("", "hold", {"amount_cents": 10, "payment_id": "x"})


# ---------------------------
# release
# ---------------------------

def test_full_release_scenario(engine):
    held_project(engine, "p", 100_000)
    r = engine.release("p", 100_000, "dev-1", "com-1", Decimal("25"))

    assert r.split.platform_fee == 10_000
    assert r.split.reserve_cut == 1_500
    assert r.split.commissioner_amount == 25_000
    assert r.split.referral_amount == 0
    assert r.split.developer_net == 63_500
    assert r.transition.to_status == EscrowStatus.RELEASED
    assert engine.get_balance("p") == 0

    amounts = {p.role: p.amount_cents for p in r.payouts}
    assert amounts == {BeneficiaryRole.DEVELOPER: 63_500, BeneficiaryRole.COMMISSIONER: 25_000}

    assert r.commission.amount_cents == 25_000
    assert r.commission.status == CommissionStatus.SCHEDULED
    assert r.commission.percent == Decimal("25")
    assert r.commission.rates["platform_fee_percent"] == "10"

    with pytest.raises(TerminalStateError):
        engine.release("p", 1, "dev-1", "com-1", "25")


def test_release_with_referrer_pays_three_parties(engine):
    held_project(engine, "p", 100_000)
    r = engine.release("p", 100_000, "dev-1", "com-1", "25", referrer_id="ref-1")
    amounts = {p.role: p.amount_cents for p in r.payouts}
    assert amounts[BeneficiaryRole.REFERRER] == 5_000
    assert amounts[BeneficiaryRole.DEVELOPER] == 58_500


def test_partial_releases_then_final(engine):
    held_project(engine, "p", 100_000)
    r1 = engine.release("p", 40_000, "dev-1", "com-1", "25")
    assert r1.transition.to_status == EscrowStatus.PARTIALLY_RELEASED
    assert engine.get_balance("p") == 60_000

    r2 = engine.release("p", 60_000, "dev-1", "com-1", "25")
    assert r2.transition.from_status == EscrowStatus.PARTIALLY_RELEASED
    assert r2.transition.to_status == EscrowStatus.RELEASED


def test_release_defaults_to_configured_commission(engine):
    held_project(engine, "p", 10_000)
    r = engine.release("p", 10_000, "dev-1", "com-1")
    assert r.commission.percent == Decimal("25")

    held_project(engine, "q", 10_000)
    r = engine.release("q", 10_000, "dev-1", "com-1", commissioner_tier="tier3")
    assert r.split.commissioner_amount == 3_000


def test_release_over_balance_changes_nothing(engine, store):
    held_project(engine, "p", 1_000)
    with pytest.raises(InsufficientBalanceError):
        engine.release("p", 1_001, "dev-1", "com-1", "25")
    assert len(store.all_entries("p")) == 1
    assert store.list_payouts("p") == []


def test_release_before_hold_is_invalid_transition(engine):
    with pytest.raises(InvalidTransition) as exc:
        engine.release("p", 100, "dev-1", "com-1", "25")
    assert not isinstance(exc.value, TerminalStateError)


def test_release_remaining_reads_balance_under_lock(engine):
    held_project(engine, "p", 30_000)
    engine.release("p", 10_000, "dev-1", "com-1", "25")

    r = engine.release_remaining("p", "dev-1", "com-1", "25")
    assert r.ledger_entry.amount_cents == 20_000
    assert r.transition.to_status == EscrowStatus.RELEASED
    assert engine.get_balance("p") == 0


def test_release_remaining_on_closed_project_is_terminal(engine, store):
    held_project(engine, "p", 20_000)
    engine.refund("p", "pay-1", 20_000, "cancel", "client-1")
    entries_before = len(store.all_entries("p"))

    with pytest.raises(TerminalStateError):
        engine.release_remaining("p", "dev-1", "com-1", "25")
    assert len(store.all_entries("p")) == entries_before


def test_release_remaining_with_empty_escrow(engine):
    held_project(engine, "p", 5_000)
    engine.adjust("p", -5_000, "chargeback")
    with pytest.raises(InsufficientBalanceError):
        engine.release_remaining("p", "dev-1", "com-1", "25")
    with pytest.raises(InvalidTransition):
        engine.release_remaining("never-held", "dev-1", "com-1", "25")


def test_release_with_bad_rate(engine, store):
    held_project(engine, "p", 1_000)
    with pytest.raises(InvalidRateError):
        engine.release("p", 1_000, "dev-1", "com-1", "101")
    with pytest.raises(InvalidRateError):
        engine.release("p", 1_000, "dev-1", "com-1", 25.5)
    assert engine.get_balance("p") == 1_000


def test_zero_commission_release_keeps_no_commission_record(engine, store):
    held_project(engine, "p", 1_000)
    r = engine.release("p", 1_000, "dev-1", "com-1", "0")
    assert r.commission is None
    assert store.list_commissions("p") == []


# ---------------------------
# refund
# ---------------------------

def test_refund_scenario(engine, store):
    held_project(engine, "p", 50_000)
    r = engine.refund("p", "pay-1", 50_000, "client cancelled", "client-1")

    assert r.transition.to_status == EscrowStatus.REFUNDED
    assert r.residual_entry is None
    [payout] = r.payouts
    assert payout.recipient_id == "client-1"
    assert payout.amount_cents == 55_000
    assert payout.escrow_funded_cents == 50_000
    assert payout.reserve_funded_cents == 5_000
    assert payout.funding_source == FundingSource.ESCROW_AND_RESERVE

    project = engine.get_project("p")
    assert project.escrow_balance_cents == 0
    assert project.project_status == "cancelled"

    entries_before = len(store.all_entries("p"))
    with pytest.raises(TerminalStateError):
        engine.release("p", 1, "dev-1", "com-1", "25")
    with pytest.raises(TerminalStateError):
        engine.refund("p", "pay-1", 50_000, "again", "client-1")
    with pytest.raises(TerminalStateError):
        engine.adjust("p", 100, "late correction")
    with pytest.raises(TerminalStateError):
        engine.hold("p", "pay-2", 100)
    assert len(store.all_entries("p")) == entries_before


def test_refund_returns_leftover_escrow(engine):
    engine.hold("p", "pay-1", 30_000)
    engine.hold("p", "pay-2", 20_000)
    r = engine.refund("p", "pay-1", 30_000, "cancel", "client-1")

    assert r.residual_entry is not None
    assert r.residual_entry.amount_cents == 20_000
    assert r.residual_entry.balance_after == 0
    assert r.balance_cents == 0
    assert sorted(p.amount_cents for p in r.payouts) == [20_000, 33_000]
    assert engine.verify_project("p")["ok"]


def test_refund_requires_a_held_payment(engine):
    held_project(engine, "p", 10_000)
    with pytest.raises(ValidationError):
        engine.refund("p", "pay-unknown", 10_000, "cancel", "client-1")
    with pytest.raises(ValidationError):
        engine.refund("p", "pay-1", 10_001, "cancel", "client-1")


def test_refund_after_partial_release_cannot_exceed_balance(engine):
    held_project(engine, "p", 50_000)
    engine.release("p", 40_000, "dev-1", "com-1", "25")
    with pytest.raises(InsufficientBalanceError):
        engine.refund("p", "pay-1", 50_000, "cancel", "client-1")
    assert engine.get_balance("p") == 10_000


def test_refund_before_hold(engine):
    with pytest.raises(InvalidTransition):
        engine.refund("p", "pay-1", 100, "cancel", "client-1")


def test_refund_requires_reason_and_payer(engine):
    held_project(engine, "p", 100)
    with pytest.raises(ValidationError):
        engine.refund("p", "pay-1", 100, "", "client-1")
    with pytest.raises(ValidationError):
        engine.refund("p", "pay-1", 100, "cancel", "")


def test_refund_pays_the_recorded_payer(engine, store):
    engine.hold("p", "pay-1", 50_000, payer_id="client-1")
    assert store.all_entries("p")[0].payer_id == "client-1"

    r = engine.refund("p", "pay-1", 50_000, "client cancelled")

    [payout] = r.payouts
    assert payout.recipient_id == "client-1"
    assert payout.role == BeneficiaryRole.PAYER
    assert payout.amount_cents == 55_000


def test_refund_payer_argument_overrides_recorded_payer(engine):
    engine.hold("p", "pay-1", 10_000, payer_id="client-1")
    r = engine.refund("p", "pay-1", 10_000, "paid by card holder", "card-holder-9")
    assert {p.recipient_id for p in r.payouts} == {"card-holder-9"}


# ---------------------------
# adjust
# ---------------------------

def test_adjustments_scenario(engine, store):
    held_project(engine, "p", 10_000)
    engine.adjust("p", 2_000, "bank fee reimbursed")
    r = engine.adjust("p", -500, "duplicate credit reversed")

    assert engine.get_balance("p") == 11_500
    assert r.transition.to_status == EscrowStatus.HELD
    adjustments = [e for e in store.all_entries("p") if e.action == LedgerAction.ADJUSTMENT]
    assert [e.signed_amount_cents for e in adjustments] == [2_000, -500]


def test_adjust_validation(engine):
    held_project(engine, "p", 100)
    with pytest.raises(ValidationError):
        engine.adjust("p", 0, "noop")
    with pytest.raises(ValidationError):
        engine.adjust("p", 10, "   ")
    with pytest.raises(InsufficientBalanceError):
        engine.adjust("p", -101, "too much")


def test_adjust_before_any_hold_keeps_status(engine):
    r = engine.adjust("p", 500, "opening balance migration")
    assert r.transition.to_status == EscrowStatus.NONE
    assert engine.get_balance("p") == 500


# ---------------------------
# atomicity / failure
# ---------------------------

def test_failure_mid_operation_leaves_no_trace(engine, store, monkeypatch):
    held_project(engine, "p", 100_000)

    def boom(self, payouts):
        raise RuntimeError("disk full")

    monkeypatch.setattr(_MemoryTx, "add_payouts", boom)
    with pytest.raises(RuntimeError):
        engine.release("p", 100_000, "dev-1", "com-1", "25")

    assert engine.get_balance("p") == 100_000
    assert engine.get_project("p").escrow_status == EscrowStatus.HELD
    assert len(store.all_entries("p")) == 1
    assert store.list_commissions("p") == []
    assert [a.action for a in store.list_audit("p")] == ["escrow.hold"]


def test_store_outage_propagates(config):
    class DownStore(MemoryStore):
        def transaction(self, project_id, *, timeout_s):
            raise StoreUnavailableError("db down")

    engine = EscrowEngine(DownStore(), config_source=lambda: config)
    with pytest.raises(StoreUnavailableError):
        engine.hold("p", "pay-1", 100)


def test_config_is_captured_once_per_operation(store, config):
    calls = []

    def source():
        calls.append(1)
        return config

    engine = EscrowEngine(store, config_source=source)
    engine.hold("p", "pay-1", 1_000)
    engine.release("p", 1_000, "dev-1", "com-1", "25")
    assert len(calls) == 2


def test_audit_row_per_operation(engine, store):
    held_project(engine, "p", 1_000)
    engine.release("p", 1_000, "dev-1", "com-1", "25")
    audit = store.list_audit("p")
    assert [a.action for a in audit] == ["escrow.hold", "escrow.release"]
    assert audit[0].actor_id == "admin-1"
    assert audit[1].metadata["status_after"] == "released"
    assert len(audit[1].metadata["payout_ids"]) == 2


# ---------------------------
# reads
# ---------------------------

def test_ledger_pages_in_order(engine):
    for i in range(5):
        engine.hold("p", f"pay-{i}", 100 + i)

    page1 = engine.get_ledger("p", limit=2)
    assert [e.seq for e in page1.items] == [1, 2]
    page2 = engine.get_ledger("p", limit=2, cursor=page1.next_cursor)
    assert [e.seq for e in page2.items] == [3, 4]
    page3 = engine.get_ledger("p", limit=2, cursor=page2.next_cursor)
    assert [e.seq for e in page3.items] == [5]
    assert page3.next_cursor is None


@pytest.mark.parametrize("limit,cursor", [(0, None), (501, None), (10, "abc"), (10, "-3")])
def test_ledger_rejects_bad_paging(engine, limit, cursor):
    with pytest.raises(ValidationError):
        engine.get_ledger("p", limit=limit, cursor=cursor)


def test_unknown_project_reads_as_empty(engine):
    project = engine.get_project("nope")
    assert project.escrow_status == EscrowStatus.NONE
    assert engine.get_balance("nope") == 0
    assert engine.get_ledger("nope").items == []


def test_reads_normalize_project_id_like_writes(engine):
    engine.hold(" p ", "pay-1", 1_000)
    assert engine.get_balance(" p ") == 1_000
    assert engine.get_balance("p") == 1_000
    assert [e.seq for e in engine.get_ledger(" p ").items] == [1]
    assert engine.verify_project(" p ")["ok"]
    with pytest.raises(ValidationError):
        engine.get_balance("   ")


# ---------------------------
# payout settlement
# ---------------------------

def test_paying_commissioner_releases_commission(engine, store):
    held_project(engine, "p", 10_000)
    r = engine.release("p", 10_000, "dev-1", "com-1", "25")
    com_payout = next(p for p in r.payouts if p.role == BeneficiaryRole.COMMISSIONER)

    paid = engine.mark_payout(com_payout.id, "paid", method="bank_transfer", actor_id="admin-1")
    assert paid.status == PayoutStatus.PAID
    assert paid.method == "bank_transfer"
    assert store.list_commissions("p")[0].status == CommissionStatus.RELEASED

    with pytest.raises(InvalidTransition):
        engine.mark_payout(com_payout.id, "failed")


def test_failed_payout_can_be_requeued(engine):
    held_project(engine, "p", 10_000)
    r = engine.release("p", 10_000, "dev-1", "com-1", "25")
    dev_payout = next(p for p in r.payouts if p.role == BeneficiaryRole.DEVELOPER)

    assert engine.mark_payout(dev_payout.id, PayoutStatus.FAILED).status == PayoutStatus.FAILED
    again = engine.mark_payout(dev_payout.id, "scheduled")
    assert again.status == PayoutStatus.SCHEDULED
    assert again.method == "pending"


def test_mark_payout_errors(engine):
    with pytest.raises(NotFoundError):
        engine.mark_payout("missing", "paid")
    with pytest.raises(ValidationError):
        engine.mark_payout("missing", "lost")
