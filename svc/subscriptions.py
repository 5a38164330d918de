# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from database import crud
from database.models import SUBSCRIPTION_CANCELED
from svc.errors import ProviderUnavailable, SubscriptionNotFound
from svc.stripe_gateway import StripeGateway
from utils.logger import get_logger

logger = get_logger(__name__)


def cancel_subscription(db: Session, gateway: Optional[StripeGateway], user_id: str) -> None:
    """Cancel at Stripe first; the local row changes only after Stripe succeeds.

    A ``ProviderError`` from Stripe propagates with nothing written locally.
    """
    if gateway is None:
        raise ProviderUnavailable("Stripe is not configured")

    subscription = crud.get_subscription(db, user_id)
    if subscription is None or not subscription.stripe_subscription_id:
        raise SubscriptionNotFound("No active subscription found")

    if subscription.status == SUBSCRIPTION_CANCELED:
        logger.info("Subscription %s for user %s already canceled", subscription.stripe_subscription_id, user_id)
        return

    gateway.cancel_subscription(subscription.stripe_subscription_id)
    crud.cancel_subscription_for_user(db, user_id)
    logger.info("Canceled subscription %s for user %s", subscription.stripe_subscription_id, user_id)
