# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.

"""Error taxonomy shared by checkout, webhook and subscription services.

Services raise these; ``main.py`` is the only place that turns them into HTTP
responses, using the ``status_code`` carried by each class.
"""

from __future__ import annotations


class PaymentServiceError(Exception):
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ProviderUnavailable(PaymentServiceError):
    """A provider secret is missing, so the provider path is disabled."""

    status_code = 503


class InvalidRequest(PaymentServiceError):
    status_code = 400


class InvalidTier(InvalidRequest):
    pass


class NotFound(PaymentServiceError):
    status_code = 404


class UserNotFound(NotFound):
    pass


class SubscriptionNotFound(NotFound):
    pass


class InvalidSignature(PaymentServiceError):
    status_code = 401


class ProviderError(PaymentServiceError):
    """A provider API call failed; the provider's message is propagated."""

    status_code = 500
