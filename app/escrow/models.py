# app/escrow/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class EscrowStatus(str, Enum):
    NONE = "none"
    DEPOSIT_PENDING = "deposit_pending"
    HELD = "deposit_verified"
    PARTIALLY_RELEASED = "partially_released"
    RELEASED = "released"
    REFUNDED = "refunded"


class LedgerAction(str, Enum):
    HOLD = "hold"
    RELEASE = "release"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class PayoutStatus(str, Enum):
    SCHEDULED = "scheduled"
    PAID = "paid"
    FAILED = "failed"


class CommissionStatus(str, Enum):
    SCHEDULED = "scheduled"
    RELEASED = "released"


class BeneficiaryRole(str, Enum):
    DEVELOPER = "developer"
    COMMISSIONER = "commissioner"
    REFERRER = "referrer"
    PAYER = "payer"


class FundingSource(str, Enum):
    ESCROW = "escrow"
    # refund uplift: the part above the deposit comes from the platform reserve pool
    ESCROW_AND_RESERVE = "escrow_and_reserve"


PENDING_METHOD = "pending"


@dataclass(frozen=True)
class Beneficiary:
    recipient_id: str
    role: BeneficiaryRole


@dataclass(frozen=True)
class ProjectEscrow:
    project_id: str
    escrow_balance_cents: int
    escrow_status: EscrowStatus
    project_status: Optional[str]
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class LedgerEntry:
    id: str
    project_id: str
    seq: int
    payment_id: Optional[str]
    action: LedgerAction
    amount_cents: int
    balance_before: int
    balance_after: int
    note: str
    status_before: EscrowStatus
    status_after: EscrowStatus
    actor_id: Optional[str]
    created_at: datetime
    # set on hold entries so a refund can find who paid
    payer_id: Optional[str] = None

    @property
    def signed_amount_cents(self) -> int:
        if self.action == LedgerAction.HOLD:
            return self.amount_cents
        if self.action in (LedgerAction.RELEASE, LedgerAction.REFUND):
            return -self.amount_cents
        return self.amount_cents if self.balance_after >= self.balance_before else -self.amount_cents


@dataclass(frozen=True)
class CommissionSplit:
    gross_cents: int
    platform_fee: int
    reserve_cut: int
    commissioner_amount: int
    referral_amount: int
    developer_net: int

    def total(self) -> int:
        return (
            self.platform_fee
            + self.reserve_cut
            + self.commissioner_amount
            + self.referral_amount
            + self.developer_net
        )

    def as_dict(self) -> dict[str, int]:
        return {
            "gross_cents": self.gross_cents,
            "platform_fee": self.platform_fee,
            "reserve_cut": self.reserve_cut,
            "commissioner_amount": self.commissioner_amount,
            "referral_amount": self.referral_amount,
            "developer_net": self.developer_net,
        }


@dataclass(frozen=True)
class CommissionRecord:
    id: str
    project_id: str
    ledger_entry_id: str
    commissioner_id: str
    percent: Decimal
    amount_cents: int
    status: CommissionStatus
    split: CommissionSplit
    rates: dict[str, str]
    created_at: datetime


@dataclass(frozen=True)
class PayoutObligation:
    id: str
    project_id: str
    ledger_entry_id: str
    recipient_id: str
    role: BeneficiaryRole
    amount_cents: int
    escrow_funded_cents: int
    reserve_funded_cents: int
    funding_source: FundingSource
    method: str
    status: PayoutStatus
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class StateTransition:
    from_status: EscrowStatus
    to_status: EscrowStatus

    @property
    def changed(self) -> bool:
        return self.from_status != self.to_status


@dataclass(frozen=True)
class AuditRecord:
    id: str
    project_id: str
    action: str
    actor_id: Optional[str]
    metadata: dict[str, Any]
    created_at: datetime


@dataclass(frozen=True)
class OperationResult:
    ledger_entry: LedgerEntry
    transition: StateTransition
    payouts: list[PayoutObligation] = field(default_factory=list)
    commission: Optional[CommissionRecord] = None
    split: Optional[CommissionSplit] = None
    residual_entry: Optional[LedgerEntry] = None
    replayed: bool = False

    @property
    def balance_cents(self) -> int:
        last = self.residual_entry or self.ledger_entry
        return last.balance_after
