# app/escrow/state_machine.py
from __future__ import annotations

from app.escrow.errors import InsufficientBalanceError, InvalidTransition, TerminalStateError
from app.escrow.models import EscrowStatus, LedgerAction, PayoutStatus, StateTransition

TERMINAL = frozenset({EscrowStatus.RELEASED, EscrowStatus.REFUNDED})

# action -> statuses it may start from
ALLOWED_FROM: dict[LedgerAction, frozenset[EscrowStatus]] = {
    LedgerAction.HOLD: frozenset({
        EscrowStatus.NONE,
        EscrowStatus.DEPOSIT_PENDING,
        EscrowStatus.HELD,
        EscrowStatus.PARTIALLY_RELEASED,
    }),
    LedgerAction.RELEASE: frozenset({EscrowStatus.HELD, EscrowStatus.PARTIALLY_RELEASED}),
    LedgerAction.REFUND: frozenset({EscrowStatus.HELD, EscrowStatus.PARTIALLY_RELEASED}),
    LedgerAction.ADJUSTMENT: frozenset({
        EscrowStatus.NONE,
        EscrowStatus.DEPOSIT_PENDING,
        EscrowStatus.HELD,
        EscrowStatus.PARTIALLY_RELEASED,
    }),
}

PAYOUT_ALLOWED: dict[PayoutStatus, set[PayoutStatus]] = {
    PayoutStatus.SCHEDULED: {PayoutStatus.PAID, PayoutStatus.FAILED},
    PayoutStatus.FAILED: {PayoutStatus.SCHEDULED},  # re-queue after a failed settlement
    PayoutStatus.PAID: set(),
}


def is_terminal(status: EscrowStatus) -> bool:
    return status in TERMINAL


def assert_allowed(status: EscrowStatus, action: LedgerAction) -> None:
    if status in TERMINAL:
        raise TerminalStateError(
            f"cannot {action.value}: project escrow is already {status.value}"
        )
    if status not in ALLOWED_FROM[action]:
        raise InvalidTransition(f"cannot {action.value} while escrow is {status.value}")


def plan_transition(
    status: EscrowStatus,
    action: LedgerAction,
    *,
    amount_cents: int,
    balance_cents: int,
    credit: bool = True,
) -> StateTransition:
    """
    Decide the next status for an operation, or raise before anything is
    written. credit only matters for adjustments (False == negative).
    """
    assert_allowed(status, action)

    if action == LedgerAction.HOLD:
        if status in (EscrowStatus.NONE, EscrowStatus.DEPOSIT_PENDING):
            return StateTransition(status, EscrowStatus.HELD)
        return StateTransition(status, status)

    if action == LedgerAction.RELEASE:
        if amount_cents > balance_cents:
            raise InsufficientBalanceError(
                f"cannot release {amount_cents}: escrow holds only {balance_cents}"
            )
        if amount_cents == balance_cents:
            return StateTransition(status, EscrowStatus.RELEASED)
        return StateTransition(status, EscrowStatus.PARTIALLY_RELEASED)

    if action == LedgerAction.REFUND:
        if amount_cents > balance_cents:
            raise InsufficientBalanceError(
                f"cannot refund {amount_cents}: escrow holds only {balance_cents}"
            )
        return StateTransition(status, EscrowStatus.REFUNDED)

    # adjustment
    if not credit and amount_cents > balance_cents:
        raise InsufficientBalanceError(
            f"cannot debit {amount_cents}: escrow holds only {balance_cents}"
        )
    return StateTransition(status, status)


def assert_payout_transition(old: PayoutStatus, new: PayoutStatus) -> None:
    if new not in PAYOUT_ALLOWED.get(old, set()):
        raise InvalidTransition(f"Illegal payout transition: {old.value} -> {new.value}")
