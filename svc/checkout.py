# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.

"""Checkout session creation for subscriptions and one-off order payments.

Each path validates and checks provider configuration before any external
call, calls the provider, then persists the pending record. The caller only
receives a redirect URL once the local record is committed.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from database import crud
from database.models import PROVIDER_COINBASE, PROVIDER_STRIPE, PaymentRecord, User
from svc.coinbase_commerce import CoinbaseCommerceClient
from svc.errors import InvalidRequest, InvalidTier, ProviderError, ProviderUnavailable, UserNotFound
from svc.stripe_gateway import StripeGateway
from utils.logger import get_logger
from utils.payments import (
    ORDER_DEFAULT_DESCRIPTION,
    ORDER_PRODUCT_NAME,
    SubscriptionTier,
    format_amount,
    get_tier,
    parse_amount,
    to_minor_units,
)
from utils.provider_config import ProviderConfig
from utils.stripe_objects import coerce_stripe_id, stripe_get

logger = get_logger(__name__)

CHECKOUT_TYPE_SUBSCRIPTION = "subscription"
CHECKOUT_TYPE_ORDER = "order"


@dataclass(frozen=True)
class CheckoutResult:
    session_id: str
    url: str
    payment: Optional[PaymentRecord] = None


def _with_session_placeholder(url: str) -> str:
    if "{CHECKOUT_SESSION_ID}" in url:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}session_id={{CHECKOUT_SESSION_ID}}"


def _require(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise InvalidRequest(f"{field} is required")
    return str(value).strip()


class CheckoutSessionFactory:
    def __init__(
        self,
        db: Session,
        config: ProviderConfig,
        *,
        stripe_gateway: Optional[StripeGateway] = None,
        coinbase_client: Optional[CoinbaseCommerceClient] = None,
    ) -> None:
        self._db = db
        self._config = config
        self._stripe = stripe_gateway
        self._coinbase = coinbase_client

    def _stripe_gateway(self) -> StripeGateway:
        if self._stripe is None or not self._config.stripe_enabled:
            raise ProviderUnavailable("Stripe is not configured")
        return self._stripe

    def _coinbase_client(self) -> CoinbaseCommerceClient:
        if self._coinbase is None or not self._config.coinbase_enabled:
            raise ProviderUnavailable(
                "Coinbase Commerce is not configured. Please add COINBASE_COMMERCE_API_KEY to secrets."
            )
        return self._coinbase

    def _load_user(self, user_id: str) -> User:
        user = crud.get_user(self._db, user_id)
        if user is None:
            raise UserNotFound("User not found")
        return user

    @staticmethod
    def _parse_amount(raw: Any) -> Decimal:
        try:
            return parse_amount(raw)
        except ValueError as exc:
            raise InvalidRequest(str(exc)) from exc

    def _default_url(self, path: str) -> str:
        return f"{self._config.frontend_base_url}{path}"

    def create_subscription_checkout(
        self,
        *,
        user_id: Optional[str],
        tier: Optional[str],
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutResult:
        gateway = self._stripe_gateway()
        user_id = _require(user_id, "userId")
        tier_key = _require(tier, "tier")
        try:
            plan: SubscriptionTier = get_tier(tier_key)
        except ValueError as exc:
            raise InvalidTier(str(exc)) from exc
        user = self._load_user(user_id)

        customer_id, customer_created = self._resolve_customer(gateway, user)

        metadata = {"userId": user.id, "tier": plan.key}
        subscription_data: Dict[str, Any] = {"metadata": dict(metadata)}
        if self._config.trial_period_days > 0:
            subscription_data["trial_period_days"] = self._config.trial_period_days

        params: Dict[str, Any] = {
            "customer": customer_id,
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": self._config.currency,
                        "product_data": {"name": plan.name, "description": plan.description},
                        "unit_amount": plan.monthly_amount_cents,
                        "recurring": {"interval": "month"},
                    },
                    "quantity": 1,
                }
            ],
            "subscription_data": subscription_data,
            "success_url": _with_session_placeholder(success_url or self._default_url("/payment-success")),
            "cancel_url": cancel_url or self._default_url("/pricing"),
            "metadata": {**metadata, "type": CHECKOUT_TYPE_SUBSCRIPTION},
        }

        session = gateway.create_checkout_session(params)
        session_id = coerce_stripe_id(stripe_get(session, "id"))
        session_url = stripe_get(session, "url")
        if not session_id or not session_url:
            raise ProviderError("Stripe returned a checkout session without id or url")

        if customer_created:
            crud.remember_stripe_customer(self._db, user, customer_id)

        logger.info(
            "Created Stripe subscription checkout %s for user %s (tier=%s, customer=%s)",
            session_id,
            user.id,
            plan.key,
            customer_id,
        )
        return CheckoutResult(session_id=session_id, url=session_url)

    def _resolve_customer(self, gateway: StripeGateway, user: User) -> tuple[str, bool]:
        existing = crud.get_subscription(self._db, user.id)
        if existing is not None and existing.stripe_customer_id:
            return existing.stripe_customer_id, False
        if user.stripe_customer_id:
            return user.stripe_customer_id, False
        customer_id = gateway.create_customer(user_id=user.id, email=user.email, name=user.name)
        logger.info("Created Stripe customer %s for user %s", customer_id, user.id)
        return customer_id, True

    def create_order_checkout(
        self,
        *,
        user_id: Optional[str],
        amount: Any,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutResult:
        gateway = self._stripe_gateway()
        user_id = _require(user_id, "userId")
        parsed_amount = self._parse_amount(amount)
        user = self._load_user(user_id)

        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": self._config.currency,
                        "product_data": {
                            "name": ORDER_PRODUCT_NAME,
                            "description": description or ORDER_DEFAULT_DESCRIPTION,
                        },
                        "unit_amount": to_minor_units(parsed_amount),
                    },
                    "quantity": 1,
                }
            ],
            "success_url": _with_session_placeholder(success_url or self._default_url("/payment-success")),
            "cancel_url": cancel_url or self._default_url("/schedule"),
            "metadata": {"userId": user.id, "orderId": order_id or "", "type": CHECKOUT_TYPE_ORDER},
        }
        if user.email:
            params["customer_email"] = user.email

        session = gateway.create_checkout_session(params)
        session_id = coerce_stripe_id(stripe_get(session, "id"))
        session_url = stripe_get(session, "url")
        if not session_id or not session_url:
            raise ProviderError("Stripe returned a checkout session without id or url")

        try:
            payment = crud.create_pending_payment(
                self._db,
                user_id=user.id,
                order_id=order_id or None,
                provider=PROVIDER_STRIPE,
                amount=format_amount(parsed_amount),
                provider_session_id=session_id,
            )
        except Exception:
            logger.error(
                "Failed to persist pending payment for Stripe session %s; expiring session", session_id, exc_info=True
            )
            try:
                gateway.expire_checkout_session(session_id)
            except ProviderError:
                logger.warning("Stripe session %s could not be expired after failed insert", session_id)
            raise

        logger.info(
            "Created Stripe order checkout %s for user %s (order=%s, amount=%s)",
            session_id,
            user.id,
            order_id or "-",
            payment.amount,
        )
        return CheckoutResult(session_id=session_id, url=session_url, payment=payment)

    def create_coinbase_checkout(
        self,
        *,
        user_id: Optional[str],
        amount: Any,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutResult:
        client = self._coinbase_client()
        user_id = _require(user_id, "userId")
        parsed_amount = self._parse_amount(amount)
        user = self._load_user(user_id)

        amount_text = format_amount(parsed_amount)
        charge = client.create_charge(
            name=ORDER_PRODUCT_NAME,
            description=description or ORDER_DEFAULT_DESCRIPTION,
            amount=amount_text,
            currency=self._config.currency,
            metadata={"userId": user.id, "orderId": order_id or ""},
            redirect_url=success_url or self._default_url("/payment-success"),
            cancel_url=cancel_url or self._default_url("/schedule"),
        )

        # Unpaid Coinbase charges expire on their own, so a failed insert needs no compensation.
        payment = crud.create_pending_payment(
            self._db,
            user_id=user.id,
            order_id=order_id or None,
            provider=PROVIDER_COINBASE,
            amount=amount_text,
            provider_payment_id=charge.code,
        )

        logger.info(
            "Created Coinbase charge %s for user %s (order=%s, amount=%s)",
            charge.code,
            user.id,
            order_id or "-",
            amount_text,
        )
        return CheckoutResult(session_id=charge.code, url=charge.hosted_url, payment=payment)
