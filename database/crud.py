# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
"""Reconciliation store: the only code that writes payment and subscription rows.

Every status transition is a single conditional UPDATE guarded on the current
status, so racing or replayed webhook deliveries converge without locks.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    SUBSCRIPTION_CANCELED,
    PaymentRecord,
    SubscriptionRecord,
    User,
    WebhookEvent,
    utcnow,
)


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    NOT_FOUND = "not_found"


def get_user(db: Session, user_id: str) -> Optional[User]:
    return db.execute(select(User).where(User.id == user_id)).scalar_one_or_none()


def remember_stripe_customer(db: Session, user: User, stripe_customer_id: str) -> None:
    if user.stripe_customer_id == stripe_customer_id:
        return
    user.stripe_customer_id = stripe_customer_id
    db.commit()


def create_pending_payment(
    db: Session,
    *,
    user_id: str,
    provider: str,
    amount: str,
    order_id: Optional[str] = None,
    provider_session_id: Optional[str] = None,
    provider_payment_id: Optional[str] = None,
) -> PaymentRecord:
    payment = PaymentRecord(
        user_id=user_id,
        order_id=order_id,
        provider=provider,
        provider_session_id=provider_session_id,
        provider_payment_id=provider_payment_id,
        amount=amount,
        status=PAYMENT_PENDING,
    )
    db.add(payment)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(payment)
    return payment


def _transition_payment(
    db: Session,
    lookup_column: Any,
    lookup_value: str,
    target_status: str,
    extra_values: Optional[Dict[str, Any]] = None,
) -> TransitionOutcome:
    values: Dict[str, Any] = {"status": target_status, "updated_at": utcnow()}
    values.update(extra_values or {})

    result = db.execute(
        update(PaymentRecord)
        .where(lookup_column == lookup_value, PaymentRecord.status == PAYMENT_PENDING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        db.commit()
        return TransitionOutcome.APPLIED

    db.rollback()
    current_status = db.execute(
        select(PaymentRecord.status).where(lookup_column == lookup_value)
    ).scalar_one_or_none()
    if current_status is None:
        return TransitionOutcome.NOT_FOUND
    return TransitionOutcome.NOOP


def complete_payment_by_session(
    db: Session, provider_session_id: str, payment_intent_id: Optional[str]
) -> TransitionOutcome:
    extra = {"provider_payment_id": payment_intent_id} if payment_intent_id else None
    outcome = _transition_payment(
        db, PaymentRecord.provider_session_id, provider_session_id, PAYMENT_COMPLETED, extra
    )
    if outcome is TransitionOutcome.NOOP and payment_intent_id:
        # Replay of a completion that raced the intent id in; fill it without touching status.
        result = db.execute(
            update(PaymentRecord)
            .where(
                PaymentRecord.provider_session_id == provider_session_id,
                PaymentRecord.status == PAYMENT_COMPLETED,
                PaymentRecord.provider_payment_id.is_(None),
            )
            .values(provider_payment_id=payment_intent_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            db.commit()
        else:
            db.rollback()
    return outcome


def fail_payment_by_session(db: Session, provider_session_id: str) -> TransitionOutcome:
    return _transition_payment(db, PaymentRecord.provider_session_id, provider_session_id, PAYMENT_FAILED)


def transition_payment_by_charge(db: Session, charge_code: str, target_status: str) -> TransitionOutcome:
    return _transition_payment(db, PaymentRecord.provider_payment_id, charge_code, target_status)


def get_payment_by_session(db: Session, provider_session_id: str) -> Optional[PaymentRecord]:
    return db.execute(
        select(PaymentRecord).where(PaymentRecord.provider_session_id == provider_session_id)
    ).scalar_one_or_none()


def list_payments(db: Session, user_id: str) -> List[PaymentRecord]:
    return list(
        db.execute(
            select(PaymentRecord)
            .where(PaymentRecord.user_id == user_id)
            .order_by(PaymentRecord.created_at, PaymentRecord.id)
        ).scalars()
    )


def get_subscription(db: Session, user_id: str) -> Optional[SubscriptionRecord]:
    return db.execute(
        select(SubscriptionRecord).where(SubscriptionRecord.user_id == user_id)
    ).scalar_one_or_none()


def upsert_subscription(
    db: Session,
    *,
    user_id: str,
    stripe_customer_id: Optional[str],
    stripe_subscription_id: str,
    tier: str,
    status: str,
) -> TransitionOutcome:
    """Update the user's row in place, or insert it if absent.

    A row already bound to ``stripe_subscription_id`` is a replay and is left
    alone, so a re-delivered completion cannot resurrect a canceled subscription.
    """
    values = {
        "stripe_customer_id": stripe_customer_id,
        "stripe_subscription_id": stripe_subscription_id,
        "tier": tier,
        "status": status,
        "updated_at": utcnow(),
    }
    for _ in range(2):
        result = db.execute(
            update(SubscriptionRecord)
            .where(
                SubscriptionRecord.user_id == user_id,
                or_(
                    SubscriptionRecord.stripe_subscription_id.is_(None),
                    SubscriptionRecord.stripe_subscription_id != stripe_subscription_id,
                ),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            db.commit()
            return TransitionOutcome.APPLIED
        db.rollback()

        if get_subscription(db, user_id) is not None:
            return TransitionOutcome.NOOP

        db.add(SubscriptionRecord(user_id=user_id, **values))
        try:
            db.commit()
        except IntegrityError:
            # Another delivery inserted first; retry as an update.
            db.rollback()
            continue
        return TransitionOutcome.APPLIED
    return TransitionOutcome.NOOP


def update_subscription_status(
    db: Session,
    *,
    stripe_subscription_id: str,
    status: str,
    current_period_start: Optional[datetime] = None,
    current_period_end: Optional[datetime] = None,
) -> TransitionOutcome:
    conditions = [
        SubscriptionRecord.stripe_subscription_id == stripe_subscription_id,
        SubscriptionRecord.status != SUBSCRIPTION_CANCELED,
    ]
    values: Dict[str, Any] = {"status": status, "updated_at": utcnow()}
    if current_period_start is not None:
        values["current_period_start"] = current_period_start
    if current_period_end is not None:
        values["current_period_end"] = current_period_end
        # An older update delivered late must not roll the billing period back.
        conditions.append(
            or_(
                SubscriptionRecord.current_period_end.is_(None),
                SubscriptionRecord.current_period_end <= current_period_end,
            )
        )

    result = db.execute(
        update(SubscriptionRecord)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        db.commit()
        return TransitionOutcome.APPLIED

    db.rollback()
    exists = db.execute(
        select(SubscriptionRecord.id).where(SubscriptionRecord.stripe_subscription_id == stripe_subscription_id)
    ).first()
    return TransitionOutcome.NOOP if exists else TransitionOutcome.NOT_FOUND


def cancel_subscription_by_stripe_id(db: Session, stripe_subscription_id: str) -> TransitionOutcome:
    return _cancel_subscription(db, SubscriptionRecord.stripe_subscription_id, stripe_subscription_id)


def cancel_subscription_for_user(db: Session, user_id: str) -> TransitionOutcome:
    return _cancel_subscription(db, SubscriptionRecord.user_id, user_id)


def _cancel_subscription(db: Session, lookup_column: Any, lookup_value: str) -> TransitionOutcome:
    result = db.execute(
        update(SubscriptionRecord)
        .where(lookup_column == lookup_value, SubscriptionRecord.status != SUBSCRIPTION_CANCELED)
        .values(status=SUBSCRIPTION_CANCELED, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        db.commit()
        return TransitionOutcome.APPLIED
    db.rollback()
    exists = db.execute(select(SubscriptionRecord.id).where(lookup_column == lookup_value)).first()
    return TransitionOutcome.NOOP if exists else TransitionOutcome.NOT_FOUND


def is_event_processed(db: Session, provider: str, event_id: str) -> bool:
    return (
        db.execute(
            select(WebhookEvent.id).where(WebhookEvent.provider == provider, WebhookEvent.event_id == event_id)
        ).first()
        is not None
    )


def record_event(db: Session, *, provider: str, event_id: str, event_type: str, outcome: str) -> bool:
    """Add the event to the ledger; False when a concurrent delivery recorded it first."""
    db.add(WebhookEvent(provider=provider, event_id=event_id, event_type=event_type, outcome=outcome))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return False
    return True
