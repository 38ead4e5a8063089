# app/escrow/config.py
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from app.escrow.money import to_decimal


def _parse_tier_rates(raw: str | None) -> dict[str, Decimal]:
    """
    "tier1:25,tier2:27" -> {"tier1": Decimal("25"), "tier2": Decimal("27")}
    Malformed items are skipped.
    """
    rates: dict[str, Decimal] = {}
    for item in (raw or "").split(","):
        item = item.strip()
        if ":" not in item:
            continue
        name, value = item.split(":", 1)
        name = name.strip().lower()
        if not name:
            continue
        rates[name] = to_decimal(value, field=f"tier {name}")
    return rates


@dataclass(frozen=True)
class EscrowConfig:
    """Rates captured at the moment an operation starts."""

    platform_fee_percent: Decimal = Decimal("10")
    reserve_percent: Decimal = Decimal("1.5")
    referral_override_percent: Decimal = Decimal("5")
    default_commission_percent: Decimal = Decimal("25")
    deposit_percent: Decimal = Decimal("43")
    refund_multiplier: Decimal = Decimal("1.10")
    tier_rates: dict[str, Decimal] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, s: Any) -> "EscrowConfig":
        return cls(
            platform_fee_percent=to_decimal(s.PLATFORM_FEE_PERCENT, field="PLATFORM_FEE_PERCENT"),
            reserve_percent=to_decimal(s.RESERVE_PERCENT, field="RESERVE_PERCENT"),
            referral_override_percent=to_decimal(s.REFERRAL_OVERRIDE_PERCENT, field="REFERRAL_OVERRIDE_PERCENT"),
            default_commission_percent=to_decimal(s.DEFAULT_COMMISSION_PERCENT, field="DEFAULT_COMMISSION_PERCENT"),
            deposit_percent=to_decimal(s.DEPOSIT_PERCENT, field="DEPOSIT_PERCENT"),
            refund_multiplier=to_decimal(s.REFUND_MULTIPLIER, field="REFUND_MULTIPLIER"),
            tier_rates=_parse_tier_rates(s.COMMISSION_TIER_RATES),
        )

    def snapshot(self) -> dict[str, str]:
        return {
            "platform_fee_percent": str(self.platform_fee_percent),
            "reserve_percent": str(self.reserve_percent),
            "referral_override_percent": str(self.referral_override_percent),
            "refund_multiplier": str(self.refund_multiplier),
        }


def current_config() -> EscrowConfig:
    from settings import settings

    return EscrowConfig.from_settings(settings)
