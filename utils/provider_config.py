# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_FRONTEND_BASE_URL = "http://localhost:5000"
DEFAULT_CURRENCY = "usd"
DEFAULT_TRIAL_DAYS = 14
DEFAULT_PROVIDER_TIMEOUT_SECONDS = 15.0


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip().strip("'").strip('"')
    return cleaned or None


def _to_int(value: Optional[str], default: int) -> int:
    if not value:
        return default
    try:
        return max(int(value), 0)
    except ValueError:
        return default


def _to_float(value: Optional[str], default: float) -> float:
    if not value:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


@dataclass(frozen=True)
class ProviderConfig:
    """Which payment providers are usable, derived purely from secrets."""

    stripe_secret_key: Optional[str] = None
    stripe_publishable_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    coinbase_api_key: Optional[str] = None
    coinbase_webhook_secret: Optional[str] = None
    frontend_base_url: str = DEFAULT_FRONTEND_BASE_URL
    currency: str = DEFAULT_CURRENCY
    trial_period_days: int = DEFAULT_TRIAL_DAYS
    provider_timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ProviderConfig":
        env = os.environ if environ is None else environ
        base_url = _clean(env.get("FRONTEND_BASE_URL")) or DEFAULT_FRONTEND_BASE_URL
        return cls(
            stripe_secret_key=_clean(env.get("STRIPE_SECRET_KEY")),
            stripe_publishable_key=_clean(env.get("STRIPE_PUBLISHABLE_KEY")),
            stripe_webhook_secret=_clean(env.get("STRIPE_WEBHOOK_SECRET")),
            coinbase_api_key=_clean(env.get("COINBASE_COMMERCE_API_KEY")),
            coinbase_webhook_secret=_clean(env.get("COINBASE_COMMERCE_WEBHOOK_SECRET")),
            frontend_base_url=base_url.rstrip("/"),
            currency=(_clean(env.get("PAYMENTS_CURRENCY")) or DEFAULT_CURRENCY).lower(),
            trial_period_days=_to_int(env.get("SUBSCRIPTION_TRIAL_DAYS"), DEFAULT_TRIAL_DAYS),
            provider_timeout_seconds=_to_float(
                env.get("PROVIDER_TIMEOUT_SECONDS"), DEFAULT_PROVIDER_TIMEOUT_SECONDS
            ),
        )

    @property
    def stripe_enabled(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def coinbase_enabled(self) -> bool:
        return bool(self.coinbase_api_key)

    @property
    def stripe_webhook_verified(self) -> bool:
        return bool(self.stripe_webhook_secret)

    @property
    def coinbase_webhook_verified(self) -> bool:
        return bool(self.coinbase_webhook_secret)
