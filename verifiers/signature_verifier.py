# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.

"""Authenticity checks for inbound provider webhooks.

Both checks run over the raw request bytes; a re-serialized body would not
reproduce the provider's signature.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Mapping, Optional

import stripe

from database.models import PROVIDER_COINBASE, PROVIDER_STRIPE
from utils.logger import get_logger
from utils.provider_config import ProviderConfig

logger = get_logger(__name__)

STRIPE_SIGNATURE_HEADER = "Stripe-Signature"
COINBASE_SIGNATURE_HEADER = "X-CC-Webhook-Signature"


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        value = next((v for k, v in headers.items() if k.lower() == lowered), None)
    if value is None:
        return None
    return value.strip() or None


def coinbase_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class SignatureVerifier:
    """Stateless verdicts per provider; secrets come from the injected config."""

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config

    def verify(self, provider: str, payload: bytes, headers: Mapping[str, str]) -> bool:
        if provider == PROVIDER_STRIPE:
            return self.verify_stripe(payload, headers)
        if provider == PROVIDER_COINBASE:
            return self.verify_coinbase(payload, headers)
        raise ValueError(f"Unknown webhook provider '{provider}'")

    def verify_stripe(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        secret = self._config.stripe_webhook_secret
        if not secret:
            logger.warning(
                "STRIPE_WEBHOOK_SECRET is not set; accepting Stripe webhook without signature verification."
            )
            return True

        signature = _header(headers, STRIPE_SIGNATURE_HEADER)
        if signature is None:
            logger.warning("Stripe webhook called without %s header", STRIPE_SIGNATURE_HEADER)
            return False

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
            logger.warning("Invalid Stripe webhook signature: %s", exc)
            return False
        return True

    def verify_coinbase(self, payload: bytes, headers: Mapping[str, str]) -> bool:
        secret = self._config.coinbase_webhook_secret
        if not secret:
            logger.warning(
                "COINBASE_COMMERCE_WEBHOOK_SECRET is not set; accepting Coinbase webhook without signature verification."
            )
            return True

        signature = _header(headers, COINBASE_SIGNATURE_HEADER)
        if signature is None:
            logger.warning("Coinbase webhook called without %s header", COINBASE_SIGNATURE_HEADER)
            return False

        expected = coinbase_signature(payload, secret)
        if not hmac.compare_digest(expected, signature.lower()):
            logger.warning("Coinbase webhook signature mismatch")
            return False
        return True
