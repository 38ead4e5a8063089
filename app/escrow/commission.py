# app/escrow/commission.py
"""
Commission split for a release. Pure: no I/O, no settings lookups; the
caller passes the EscrowConfig captured for the operation.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any

from app.escrow.config import EscrowConfig
from app.escrow.errors import InvalidRateError, ValidationError
from app.escrow.models import CommissionSplit
from app.escrow.money import HUNDRED, percent_of, require_cents, split, to_decimal

_DEVELOPER = "developer_net"


def parse_rate(value: Any, *, field: str = "commissioner_rate") -> Decimal:
    try:
        rate = to_decimal(value, field=field)
    except ValidationError as e:
        raise InvalidRateError(str(e))
    if rate < 0:
        raise InvalidRateError(f"{field} must not be negative")
    if rate > HUNDRED:
        raise InvalidRateError(f"{field} must not exceed 100")
    return rate


def calculate_commission(
    gross_cents: int,
    commissioner_rate: Any,
    has_referral: bool,
    config: EscrowConfig,
) -> CommissionSplit:
    gross_cents = require_cents(gross_cents, field="gross_cents")
    rate = parse_rate(commissioner_rate)

    referral_percent = config.referral_override_percent if has_referral else Decimal(0)
    fee_percent = config.platform_fee_percent + config.reserve_percent + rate + referral_percent
    if fee_percent > HUNDRED:
        raise InvalidRateError(
            f"fees total {fee_percent}% of the gross; commissioner_rate {rate}% leaves nothing to split"
        )

    parts = split(
        gross_cents,
        {
            "platform_fee": config.platform_fee_percent,
            "reserve_cut": config.reserve_percent,
            "commissioner_amount": rate,
            "referral_amount": referral_percent,
        },
        residual=_DEVELOPER,
    )
    # Rounding every fee up at the half can overshoot tiny grosses.
    if parts[_DEVELOPER] < 0:
        raise InvalidRateError(f"rounded fees exceed the gross amount of {gross_cents}")

    return CommissionSplit(
        gross_cents=gross_cents,
        platform_fee=parts["platform_fee"],
        reserve_cut=parts["reserve_cut"],
        commissioner_amount=parts["commissioner_amount"],
        referral_amount=parts["referral_amount"],
        developer_net=parts[_DEVELOPER],
    )


def tier_rate(tier: str | None, config: EscrowConfig) -> Decimal:
    if not tier:
        return config.default_commission_percent
    rate = config.tier_rates.get(tier.strip().lower())
    if rate is None:
        raise InvalidRateError(f"unknown commission tier: {tier}")
    return parse_rate(rate, field=f"tier {tier}")


def required_deposit_cents(total_value_cents: int, config: EscrowConfig) -> int:
    """Deposit a client must place before a project goes active."""
    total_value_cents = require_cents(total_value_cents, field="total_value_cents")
    return percent_of(total_value_cents, config.deposit_percent)
