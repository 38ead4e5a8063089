# app/escrow/payouts.py
"""
Turns a release or refund decision into payout obligations.

Release: one obligation per beneficiary with something to receive.
Refund: one obligation to the payer for paid * refund_multiplier. Only the
paid amount leaves the project's escrow; the uplift is tagged as reserve
funded so settlement never debits the project for more than it held.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from app.escrow.models import (
    PENDING_METHOD,
    Beneficiary,
    BeneficiaryRole,
    CommissionSplit,
    FundingSource,
    LedgerEntry,
    PayoutObligation,
    PayoutStatus,
)
from app.escrow.money import scale


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _obligation(
    entry: LedgerEntry,
    beneficiary: Beneficiary,
    *,
    amount_cents: int,
    reserve_funded_cents: int = 0,
    now: datetime,
) -> PayoutObligation:
    return PayoutObligation(
        id=str(uuid4()),
        project_id=entry.project_id,
        ledger_entry_id=entry.id,
        recipient_id=beneficiary.recipient_id,
        role=beneficiary.role,
        amount_cents=amount_cents,
        escrow_funded_cents=amount_cents - reserve_funded_cents,
        reserve_funded_cents=reserve_funded_cents,
        funding_source=FundingSource.ESCROW_AND_RESERVE if reserve_funded_cents else FundingSource.ESCROW,
        method=PENDING_METHOD,
        status=PayoutStatus.SCHEDULED,
        created_at=now,
        updated_at=now,
    )


def release_beneficiaries(
    developer_id: str,
    commissioner_id: str,
    referrer_id: Optional[str] = None,
) -> list[tuple[Beneficiary, str]]:
    """(beneficiary, CommissionSplit attribute holding its share)"""
    out = [
        (Beneficiary(developer_id, BeneficiaryRole.DEVELOPER), "developer_net"),
        (Beneficiary(commissioner_id, BeneficiaryRole.COMMISSIONER), "commissioner_amount"),
    ]
    if referrer_id:
        out.append((Beneficiary(referrer_id, BeneficiaryRole.REFERRER), "referral_amount"))
    return out


def schedule_release(
    entry: LedgerEntry,
    split: CommissionSplit,
    beneficiaries: list[tuple[Beneficiary, str]],
    *,
    now: Optional[datetime] = None,
) -> list[PayoutObligation]:
    now = now or _utcnow()
    payouts: list[PayoutObligation] = []
    for beneficiary, share in beneficiaries:
        amount = int(getattr(split, share))
        if amount <= 0:
            continue
        payouts.append(_obligation(entry, beneficiary, amount_cents=amount, now=now))
    return payouts


def refund_amount_cents(paid_cents: int, multiplier: Decimal) -> int:
    return scale(paid_cents, multiplier)


def schedule_refund(
    entry: LedgerEntry,
    payer_id: str,
    *,
    paid_cents: int,
    multiplier: Decimal,
    now: Optional[datetime] = None,
) -> PayoutObligation:
    total = refund_amount_cents(paid_cents, multiplier)
    uplift = max(0, total - paid_cents)
    return _obligation(
        entry,
        Beneficiary(payer_id, BeneficiaryRole.PAYER),
        amount_cents=total,
        reserve_funded_cents=uplift,
        now=now or _utcnow(),
    )


def schedule_residual_refund(
    entry: LedgerEntry,
    payer_id: str,
    *,
    now: Optional[datetime] = None,
) -> PayoutObligation:
    """Face-value return of escrow left over after the refunded payment."""
    return _obligation(
        entry,
        Beneficiary(payer_id, BeneficiaryRole.PAYER),
        amount_cents=entry.amount_cents,
        now=now or _utcnow(),
    )
