# schemas.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from app.escrow.models import CommissionRecord, LedgerEntry, OperationResult, PayoutObligation, ProjectEscrow


# -------- REQUESTS --------
class VerifyPaymentRequest(BaseModel):
    project_id: str = Field(min_length=1, max_length=100)
    amount_cents: int = Field(gt=0)
    payer_id: Optional[str] = None


class ReleaseRequest(BaseModel):
    amount_cents: int = Field(gt=0)
    developer_id: str = Field(min_length=1)
    commissioner_id: str = Field(min_length=1)
    commissioner_rate: Optional[Decimal] = Field(
        default=None,
        description="Commission percent, e.g. 25 or \"27.5\". Send fractional rates as strings to keep them exact.",
    )
    commissioner_tier: Optional[str] = None
    referrer_id: Optional[str] = None


class RefundRequest(BaseModel):
    payment_id: str = Field(min_length=1)
    original_paid_cents: int = Field(gt=0)
    reason: str = Field(min_length=1, max_length=500)
    # defaults to the payer recorded when the payment was verified
    payer_id: Optional[str] = None


class AdjustRequest(BaseModel):
    signed_amount_cents: int
    justification: str = Field(min_length=1, max_length=500)


class DisputeResolveRequest(BaseModel):
    project_id: str = Field(min_length=1)
    action: Literal["release_escrow", "refund_client"]
    resolution: str = Field(min_length=1, max_length=1000)
    # release_escrow
    developer_id: Optional[str] = None
    commissioner_id: Optional[str] = None
    commissioner_rate: Optional[Decimal] = None
    referrer_id: Optional[str] = None
    # refund_client
    payment_id: Optional[str] = None
    original_paid_cents: Optional[int] = Field(default=None, gt=0)
    payer_id: Optional[str] = None


class PayoutStatusRequest(BaseModel):
    status: Literal["scheduled", "paid", "failed"]
    method: Optional[str] = Field(default=None, max_length=50)


# -------- RESPONSES --------
class LedgerEntryItem(BaseModel):
    id: str
    seq: int
    payment_id: Optional[str] = None
    action: str
    amount_cents: int
    balance_before: int
    balance_after: int
    note: str
    status_before: str
    status_after: str
    actor_id: Optional[str] = None
    payer_id: Optional[str] = None
    created_at: datetime

    @classmethod
    def of(cls, e: LedgerEntry) -> "LedgerEntryItem":
        return cls(
            id=e.id,
            seq=e.seq,
            payment_id=e.payment_id,
            action=e.action.value,
            amount_cents=e.amount_cents,
            balance_before=e.balance_before,
            balance_after=e.balance_after,
            note=e.note,
            status_before=e.status_before.value,
            status_after=e.status_after.value,
            actor_id=e.actor_id,
            payer_id=e.payer_id,
            created_at=e.created_at,
        )


class PayoutItem(BaseModel):
    payout_id: str
    project_id: str
    ledger_entry_id: str
    recipient_id: str
    role: str
    amount_cents: int
    escrow_funded_cents: int
    reserve_funded_cents: int
    funding_source: str
    method: str
    status: str
    updated_at: datetime

    @classmethod
    def of(cls, p: PayoutObligation) -> "PayoutItem":
        return cls(
            payout_id=p.id,
            project_id=p.project_id,
            ledger_entry_id=p.ledger_entry_id,
            recipient_id=p.recipient_id,
            role=p.role.value,
            amount_cents=p.amount_cents,
            escrow_funded_cents=p.escrow_funded_cents,
            reserve_funded_cents=p.reserve_funded_cents,
            funding_source=p.funding_source.value,
            method=p.method,
            status=p.status.value,
            updated_at=p.updated_at,
        )


class CommissionItem(BaseModel):
    commission_id: str
    commissioner_id: str
    percent: Decimal
    amount_cents: int
    status: str
    split: dict[str, int]

    @classmethod
    def of(cls, c: CommissionRecord) -> "CommissionItem":
        return cls(
            commission_id=c.id,
            commissioner_id=c.commissioner_id,
            percent=c.percent,
            amount_cents=c.amount_cents,
            status=c.status.value,
            split=c.split.as_dict(),
        )


class OperationResponse(BaseModel):
    project_id: str
    entry: LedgerEntryItem
    residual_entry: Optional[LedgerEntryItem] = None
    escrow_status: str
    balance_cents: int
    payouts: List[PayoutItem] = []
    commission: Optional[CommissionItem] = None
    split: Optional[dict[str, int]] = None
    replayed: bool = False

    @classmethod
    def of(cls, r: OperationResult) -> "OperationResponse":
        last = r.residual_entry or r.ledger_entry
        return cls(
            project_id=r.ledger_entry.project_id,
            entry=LedgerEntryItem.of(r.ledger_entry),
            residual_entry=LedgerEntryItem.of(r.residual_entry) if r.residual_entry else None,
            escrow_status=last.status_after.value,
            balance_cents=r.balance_cents,
            payouts=[PayoutItem.of(p) for p in r.payouts],
            commission=CommissionItem.of(r.commission) if r.commission else None,
            split=r.split.as_dict() if r.split else None,
            replayed=r.replayed,
        )


class BalanceResponse(BaseModel):
    project_id: str
    balance_cents: int
    escrow_status: str
    project_status: Optional[str] = None

    @classmethod
    def of(cls, p: ProjectEscrow) -> "BalanceResponse":
        return cls(
            project_id=p.project_id,
            balance_cents=p.escrow_balance_cents,
            escrow_status=p.escrow_status.value,
            project_status=p.project_status,
        )


class LedgerPageResponse(BaseModel):
    project_id: str
    items: List[LedgerEntryItem]
    next_cursor: Optional[str] = None


class DepositQuoteResponse(BaseModel):
    total_value_cents: int
    deposit_cents: int


class IntegrityCheckResponse(BaseModel):
    id: str
    run_at: str
    summary: dict[str, int]
    items: List[dict]


class DisputeResolveResponse(BaseModel):
    dispute_id: str
    action: str
    operation: OperationResponse
