# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict


@dataclass(frozen=True)
class SubscriptionTier:
    key: str
    name: str
    description: str
    monthly_amount_cents: int


SUBSCRIPTION_TIERS: Dict[str, SubscriptionTier] = {
    "starter": SubscriptionTier(
        key="starter",
        name="Brew & Board Starter Plan",
        description="Monthly subscription for Brew & Board starter tier",
        monthly_amount_cents=2900,
    ),
    "professional": SubscriptionTier(
        key="professional",
        name="Brew & Board Professional Plan",
        description="Monthly subscription for Brew & Board professional tier",
        monthly_amount_cents=7900,
    ),
    "enterprise": SubscriptionTier(
        key="enterprise",
        name="Brew & Board Enterprise Plan",
        description="Monthly subscription for Brew & Board enterprise tier",
        monthly_amount_cents=19900,
    ),
}

ORDER_PRODUCT_NAME = "Brew & Board Order"
ORDER_DEFAULT_DESCRIPTION = "Coffee delivery order"

_CENT = Decimal("0.01")


def get_tier(tier_key: str) -> SubscriptionTier:
    try:
        return SUBSCRIPTION_TIERS[tier_key]
    except KeyError:
        valid_keys = ", ".join(SUBSCRIPTION_TIERS.keys())
        raise ValueError(f"Unknown subscription tier '{tier_key}'. Valid tiers: {valid_keys}")


def parse_amount(raw: Any) -> Decimal:
    """Parse a request amount (JSON string or number) into a positive Decimal."""
    if raw is None or isinstance(raw, bool):
        raise ValueError("amount is required")
    try:
        # str() first so floats like 19.99 keep their printed value
        amount = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"amount '{raw}' is not a valid decimal")
    if not amount.is_finite() or amount <= 0:
        raise ValueError("amount must be a positive number")
    return amount


def to_minor_units(amount: Decimal) -> int:
    """Convert currency units to integer cents, rounding half up."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_amount(amount: Decimal) -> str:
    return str(amount.quantize(_CENT, rounding=ROUND_HALF_UP))
