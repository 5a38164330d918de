# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
from __future__ import annotations

from typing import Any, Dict, Optional

import stripe

from svc.errors import ProviderError
from utils.logger import get_logger

logger = get_logger(__name__)


def _provider_message(exc: stripe.StripeError) -> str:
    return getattr(exc, "user_message", None) or str(exc) or exc.__class__.__name__


class StripeGateway:
    """Owns one explicitly constructed ``StripeClient``; no module-level api_key."""

    def __init__(self, api_key: str, *, timeout: float = 15.0, client: Optional[stripe.StripeClient] = None) -> None:
        self._client = client or stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout),
        )

    def create_customer(self, *, user_id: str, email: Optional[str], name: Optional[str]) -> str:
        params: Dict[str, Any] = {"metadata": {"userId": user_id}}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        try:
            customer = self._client.customers.create(params=params)
        except stripe.StripeError as exc:
            logger.error("Stripe customer creation failed for user %s: %s", user_id, exc)
            raise ProviderError(_provider_message(exc)) from exc
        return customer.id

    def create_checkout_session(self, params: Dict[str, Any]) -> Any:
        try:
            return self._client.checkout.sessions.create(params=params)
        except stripe.StripeError as exc:
            logger.error("Stripe checkout session creation failed: %s", exc)
            raise ProviderError(_provider_message(exc)) from exc

    def retrieve_checkout_session(self, session_id: str) -> Any:
        try:
            return self._client.checkout.sessions.retrieve(session_id)
        except stripe.StripeError as exc:
            logger.error("Failed to retrieve Stripe session %s: %s", session_id, exc)
            raise ProviderError(_provider_message(exc)) from exc

    def expire_checkout_session(self, session_id: str) -> None:
        try:
            self._client.checkout.sessions.expire(session_id)
        except stripe.StripeError as exc:
            logger.error("Failed to expire Stripe session %s: %s", session_id, exc)
            raise ProviderError(_provider_message(exc)) from exc

    def cancel_subscription(self, subscription_id: str) -> None:
        try:
            self._client.subscriptions.cancel(subscription_id)
        except stripe.StripeError as exc:
            logger.error("Stripe subscription cancel failed for %s: %s", subscription_id, exc)
            raise ProviderError(_provider_message(exc)) from exc
