# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.

"""Webhook ingestion for Stripe and Coinbase Commerce.

Deliveries are at-least-once and unordered. Each known event kind maps to
exactly one handler; handlers only issue conditional store updates, and report
one of four outcomes:

* ``applied``  - a row changed state.
* ``noop``     - the row was already terminal or already in the target state.
* ``ignored``  - unknown event kind, or an object this service did not create.
* ``retry``    - no matching row yet although the metadata shows it is ours;
  the provider should redeliver later.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Type

from sqlalchemy.orm import Session

from database import crud
from database.crud import TransitionOutcome
from database.models import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PROVIDER_COINBASE,
    PROVIDER_STRIPE,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_PAST_DUE,
    SUBSCRIPTION_TRIALING,
)
from svc.checkout import CHECKOUT_TYPE_ORDER, CHECKOUT_TYPE_SUBSCRIPTION
from svc.errors import InvalidRequest, InvalidSignature, ProviderUnavailable
from svc.stripe_gateway import StripeGateway
from utils.logger import get_logger
from utils.payments import SUBSCRIPTION_TIERS
from utils.stripe_objects import coerce_stripe_id, from_unix_timestamp, metadata_of, stripe_get, stripe_to_dict
from verifiers.signature_verifier import SignatureVerifier

logger = get_logger(__name__)


class StripeEventType(str, Enum):
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    CHECKOUT_SESSION_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
    CHECKOUT_SESSION_ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"
    CHECKOUT_SESSION_EXPIRED = "checkout.session.expired"
    CUSTOMER_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    CUSTOMER_SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class CoinbaseEventType(str, Enum):
    CHARGE_CREATED = "charge:created"
    CHARGE_PENDING = "charge:pending"
    CHARGE_DELAYED = "charge:delayed"
    CHARGE_CONFIRMED = "charge:confirmed"
    CHARGE_RESOLVED = "charge:resolved"
    CHARGE_FAILED = "charge:failed"


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    IGNORED = "ignored"
    RETRY = "retry"


@dataclass(frozen=True)
class WebhookResult:
    provider: str
    event_id: Optional[str]
    event_type: str
    outcome: WebhookOutcome

    @property
    def retryable(self) -> bool:
        return self.outcome is WebhookOutcome.RETRY


_STRIPE_SUBSCRIPTION_STATUS_MAP = {
    "active": SUBSCRIPTION_ACTIVE,
    "past_due": SUBSCRIPTION_PAST_DUE,
    "trialing": SUBSCRIPTION_TRIALING,
}
_PAID_SESSION_STATUSES = {"paid", "no_payment_required"}


def map_stripe_subscription_status(provider_status: Optional[str]) -> str:
    return _STRIPE_SUBSCRIPTION_STATUS_MAP.get(provider_status or "", SUBSCRIPTION_CANCELED)


def _payment_outcome(outcome: TransitionOutcome, *, ours: bool, key: str) -> WebhookOutcome:
    if outcome is TransitionOutcome.APPLIED:
        return WebhookOutcome.APPLIED
    if outcome is TransitionOutcome.NOOP:
        logger.info("Payment %s already terminal; event is a no-op", key)
        return WebhookOutcome.NOOP
    if ours:
        logger.info("No payment row for %s yet; asking provider to redeliver", key)
        return WebhookOutcome.RETRY
    logger.info("No payment row for %s and it was not created here; ignoring", key)
    return WebhookOutcome.IGNORED


# --- Stripe handlers -------------------------------------------------------


def _apply_subscription_checkout(db: Session, session: Any, metadata: Dict[str, str]) -> WebhookOutcome:
    user_id = metadata.get("userId")
    tier = metadata.get("tier")
    subscription_id = coerce_stripe_id(stripe_get(session, "subscription"))
    if not user_id or not tier or not subscription_id:
        logger.warning(
            "Subscription checkout %s is missing userId/tier/subscription; ignoring", stripe_get(session, "id")
        )
        return WebhookOutcome.IGNORED
    if tier not in SUBSCRIPTION_TIERS:
        logger.error("Subscription checkout %s carries unknown tier %s; ignoring", stripe_get(session, "id"), tier)
        return WebhookOutcome.IGNORED
    if crud.get_user(db, user_id) is None:
        logger.warning("Subscription checkout %s references unknown user %s; ignoring", stripe_get(session, "id"), user_id)
        return WebhookOutcome.IGNORED

    outcome = crud.upsert_subscription(
        db,
        user_id=user_id,
        stripe_customer_id=coerce_stripe_id(stripe_get(session, "customer")),
        stripe_subscription_id=subscription_id,
        tier=tier,
        status=SUBSCRIPTION_ACTIVE,
    )
    if outcome is TransitionOutcome.APPLIED:
        logger.info("Subscription %s for user %s set to tier %s", subscription_id, user_id, tier)
        return WebhookOutcome.APPLIED
    logger.info("Subscription %s for user %s already recorded; no-op", subscription_id, user_id)
    return WebhookOutcome.NOOP


def _handle_checkout_completed(db: Session, session: Any) -> WebhookOutcome:
    metadata = metadata_of(session)
    checkout_type = metadata.get("type")
    if checkout_type == CHECKOUT_TYPE_SUBSCRIPTION:
        return _apply_subscription_checkout(db, session, metadata)

    session_id = coerce_stripe_id(stripe_get(session, "id"))
    if not session_id:
        return WebhookOutcome.IGNORED
    payment_intent_id = coerce_stripe_id(stripe_get(session, "payment_intent"))
    outcome = crud.complete_payment_by_session(db, session_id, payment_intent_id)
    if outcome is TransitionOutcome.APPLIED:
        logger.info(
            "Payment for Stripe session %s completed (user=%s, order=%s, intent=%s)",
            session_id,
            metadata.get("userId") or "unknown",
            metadata.get("orderId") or "-",
            payment_intent_id or "-",
        )
    return _payment_outcome(outcome, ours=checkout_type == CHECKOUT_TYPE_ORDER, key=session_id)


def _handle_checkout_failed(db: Session, session: Any) -> WebhookOutcome:
    metadata = metadata_of(session)
    checkout_type = metadata.get("type")
    session_id = coerce_stripe_id(stripe_get(session, "id"))
    if checkout_type == CHECKOUT_TYPE_SUBSCRIPTION or not session_id:
        return WebhookOutcome.IGNORED
    outcome = crud.fail_payment_by_session(db, session_id)
    if outcome is TransitionOutcome.APPLIED:
        logger.info("Payment for Stripe session %s failed (user=%s)", session_id, metadata.get("userId") or "unknown")
    return _payment_outcome(outcome, ours=checkout_type == CHECKOUT_TYPE_ORDER, key=session_id)


def _subscription_periods(subscription: Any) -> tuple[Any, Any]:
    start = stripe_get(subscription, "current_period_start")
    end = stripe_get(subscription, "current_period_end")
    if start is None and end is None:
        # Newer API versions report billing periods on the subscription items.
        items = stripe_to_dict(stripe_get(subscription, "items"))
        data = items.get("data") or []
        if data:
            first = stripe_to_dict(data[0])
            start, end = first.get("current_period_start"), first.get("current_period_end")
    return from_unix_timestamp(start), from_unix_timestamp(end)


def _subscription_not_found(db: Session, subscription: Any, subscription_id: str) -> WebhookOutcome:
    user_id = metadata_of(subscription).get("userId")
    if not user_id:
        logger.info("Subscription %s was not created here; ignoring", subscription_id)
        return WebhookOutcome.IGNORED
    current = crud.get_subscription(db, user_id)
    if current is not None and current.stripe_subscription_id:
        # The user's row moved on to a newer subscription; this one will never match.
        logger.info(
            "Subscription %s for user %s superseded by %s; ignoring",
            subscription_id,
            user_id,
            current.stripe_subscription_id,
        )
        return WebhookOutcome.IGNORED
    logger.info("No subscription row for %s yet; asking Stripe to redeliver", subscription_id)
    return WebhookOutcome.RETRY


def _handle_subscription_updated(db: Session, subscription: Any) -> WebhookOutcome:
    subscription_id = coerce_stripe_id(stripe_get(subscription, "id"))
    if not subscription_id:
        return WebhookOutcome.IGNORED
    status = map_stripe_subscription_status(stripe_get(subscription, "status"))
    period_start, period_end = _subscription_periods(subscription)
    outcome = crud.update_subscription_status(
        db,
        stripe_subscription_id=subscription_id,
        status=status,
        current_period_start=period_start,
        current_period_end=period_end,
    )
    if outcome is TransitionOutcome.NOT_FOUND:
        return _subscription_not_found(db, subscription, subscription_id)
    if outcome is TransitionOutcome.NOOP:
        logger.info("Subscription %s update skipped (canceled or stale period)", subscription_id)
        return WebhookOutcome.NOOP
    logger.info("Subscription %s updated to %s", subscription_id, status)
    return WebhookOutcome.APPLIED


def _handle_subscription_deleted(db: Session, subscription: Any) -> WebhookOutcome:
    subscription_id = coerce_stripe_id(stripe_get(subscription, "id"))
    if not subscription_id:
        return WebhookOutcome.IGNORED
    outcome = crud.cancel_subscription_by_stripe_id(db, subscription_id)
    if outcome is TransitionOutcome.NOT_FOUND:
        return _subscription_not_found(db, subscription, subscription_id)
    if outcome is TransitionOutcome.NOOP:
        return WebhookOutcome.NOOP
    logger.info("Subscription %s canceled by provider", subscription_id)
    return WebhookOutcome.APPLIED


# --- Coinbase handlers -----------------------------------------------------


def _transition_charge(db: Session, charge: Any, target_status: str) -> WebhookOutcome:
    charge = stripe_to_dict(charge)
    code = charge.get("code")
    if not code:
        return WebhookOutcome.IGNORED
    outcome = crud.transition_payment_by_charge(db, code, target_status)
    if outcome is TransitionOutcome.APPLIED:
        logger.info("Coinbase charge %s moved to %s", code, target_status)
    ours = bool(stripe_to_dict(charge.get("metadata")).get("userId"))
    return _payment_outcome(outcome, ours=ours, key=code)


def _handle_charge_confirmed(db: Session, charge: Any) -> WebhookOutcome:
    return _transition_charge(db, charge, PAYMENT_COMPLETED)


def _handle_charge_failed(db: Session, charge: Any) -> WebhookOutcome:
    return _transition_charge(db, charge, PAYMENT_FAILED)


def _acknowledge(db: Session, obj: Any) -> WebhookOutcome:
    return WebhookOutcome.IGNORED


Handler = Callable[[Session, Any], WebhookOutcome]

_STRIPE_HANDLERS: Dict[StripeEventType, Handler] = {
    StripeEventType.CHECKOUT_SESSION_COMPLETED: _handle_checkout_completed,
    StripeEventType.CHECKOUT_SESSION_ASYNC_PAYMENT_SUCCEEDED: _handle_checkout_completed,
    StripeEventType.CHECKOUT_SESSION_ASYNC_PAYMENT_FAILED: _handle_checkout_failed,
    StripeEventType.CHECKOUT_SESSION_EXPIRED: _handle_checkout_failed,
    StripeEventType.CUSTOMER_SUBSCRIPTION_UPDATED: _handle_subscription_updated,
    StripeEventType.CUSTOMER_SUBSCRIPTION_DELETED: _handle_subscription_deleted,
}

_COINBASE_HANDLERS: Dict[CoinbaseEventType, Handler] = {
    CoinbaseEventType.CHARGE_CREATED: _acknowledge,
    CoinbaseEventType.CHARGE_PENDING: _acknowledge,
    CoinbaseEventType.CHARGE_DELAYED: _acknowledge,
    CoinbaseEventType.CHARGE_CONFIRMED: _handle_charge_confirmed,
    CoinbaseEventType.CHARGE_RESOLVED: _handle_charge_confirmed,
    CoinbaseEventType.CHARGE_FAILED: _handle_charge_failed,
}


def ensure_exhaustive(kinds: Type[Enum], handlers: Mapping[Any, Handler]) -> None:
    missing = [kind.value for kind in kinds if kind not in handlers]
    if missing:
        raise RuntimeError(f"No webhook handler registered for {kinds.__name__}: {', '.join(missing)}")


ensure_exhaustive(StripeEventType, _STRIPE_HANDLERS)
ensure_exhaustive(CoinbaseEventType, _COINBASE_HANDLERS)


def _parse_kind(kinds: Type[Enum], value: Any) -> Optional[Enum]:
    try:
        return kinds(value)
    except ValueError:
        return None


class WebhookIngestor:
    def __init__(self, db: Session, verifier: SignatureVerifier) -> None:
        self._db = db
        self._verifier = verifier

    def ingest(self, provider: str, payload: bytes, headers: Mapping[str, str]) -> WebhookResult:
        if not self._verifier.verify(provider, payload, headers):
            raise InvalidSignature("Invalid signature")

        body = _decode_json(payload)
        if provider == PROVIDER_STRIPE:
            event, kinds, handlers = body, StripeEventType, _STRIPE_HANDLERS
        elif provider == PROVIDER_COINBASE:
            # Coinbase wraps the event: {"id": ..., "event": {...}}
            nested = body.get("event")
            event = nested if isinstance(nested, dict) else body
            kinds, handlers = CoinbaseEventType, _COINBASE_HANDLERS
        else:
            raise InvalidRequest(f"Unknown webhook provider '{provider}'")

        event_id = event.get("id")
        event_id = str(event_id) if event_id else None
        event_type = str(event.get("type") or "")
        logger.info("Received %s webhook event %s (%s)", provider, event_type or "<untyped>", event_id or "no id")

        if event_id and crud.is_event_processed(self._db, provider, event_id):
            logger.info("%s event %s already processed; acknowledging duplicate", provider, event_id)
            return WebhookResult(provider, event_id, event_type, WebhookOutcome.NOOP)

        kind = _parse_kind(kinds, event_type)
        if kind is None:
            logger.debug("Ignoring unhandled %s event type %s", provider, event_type)
            outcome = WebhookOutcome.IGNORED
        else:
            data_object = stripe_to_dict(event.get("data"))
            if provider == PROVIDER_STRIPE:
                data_object = stripe_to_dict(data_object.get("object"))
            outcome = handlers[kind](self._db, data_object)

        if event_id and outcome is not WebhookOutcome.RETRY:
            crud.record_event(
                self._db, provider=provider, event_id=event_id, event_type=event_type, outcome=outcome.value
            )
        return WebhookResult(provider, event_id, event_type, outcome)


def _decode_json(payload: bytes) -> Dict[str, Any]:
    try:
        body = json.loads(payload)
    except (UnicodeDecodeError, ValueError) as exc:
        raise InvalidRequest("Invalid webhook payload") from exc
    if not isinstance(body, dict):
        raise InvalidRequest("Invalid webhook payload")
    return body


def verify_checkout_session(db: Session, gateway: Optional[StripeGateway], session_id: Optional[str]) -> str:
    """Reconcile a checkout session directly from Stripe when its webhook is late.

    Returns ``applied`` or ``noop`` once the local row reflects the payment and
    ``pending`` for everything else: an unpaid session, or one whose row is not
    (or never will be) here.
    """
    if gateway is None:
        raise ProviderUnavailable("Stripe is not configured")
    if not session_id:
        raise InvalidRequest("sessionId is required")

    session = gateway.retrieve_checkout_session(session_id)
    if stripe_get(session, "payment_status") not in _PAID_SESSION_STATUSES:
        return "pending"
    outcome = _handle_checkout_completed(db, session)
    if outcome in (WebhookOutcome.RETRY, WebhookOutcome.IGNORED):
        logger.info("Session %s is paid but not reconciled locally (%s)", session_id, outcome.value)
        return "pending"
    return outcome.value
