# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from svc.errors import ProviderError
from utils.logger import get_logger

logger = get_logger(__name__)

_COINBASE_CHARGES_URL = "https://api.commerce.coinbase.com/charges"
_COINBASE_API_VERSION = "2018-03-22"


@dataclass(frozen=True)
class CoinbaseCharge:
    code: str
    hosted_url: str


class CoinbaseCommerceClient:
    """Thin REST client for Coinbase Commerce charges."""

    def __init__(
        self,
        api_key: str,
        *,
        timeout: float = 15.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self._timeout = httpx.Timeout(timeout, connect=min(timeout, 10.0))
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-CC-Api-Key": self._api_key,
            "X-CC-Version": _COINBASE_API_VERSION,
        }

    def create_charge(
        self,
        *,
        name: str,
        description: str,
        amount: str,
        currency: str,
        metadata: Dict[str, str],
        redirect_url: str,
        cancel_url: str,
    ) -> CoinbaseCharge:
        body = {
            "name": name,
            "description": description,
            "pricing_type": "fixed_price",
            "local_price": {"amount": amount, "currency": currency.upper()},
            "metadata": metadata,
            "redirect_url": redirect_url,
            "cancel_url": cancel_url,
        }
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(_COINBASE_CHARGES_URL, json=body, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.error("Coinbase charge request failed: %s", exc)
            raise ProviderError(f"Coinbase Commerce request failed: {exc}") from exc

        payload = _json_or_empty(response)
        if response.is_error:
            error = payload.get("error")
            message = error.get("message") if isinstance(error, dict) else error
            message = message or "Failed to create Coinbase charge"
            logger.error("Coinbase charge creation returned %s: %s", response.status_code, message)
            raise ProviderError(message)

        data = payload.get("data") or {}
        code = data.get("code")
        hosted_url = data.get("hosted_url")
        if not code or not hosted_url:
            raise ProviderError("Coinbase charge response is missing code or hosted_url")
        return CoinbaseCharge(code=code, hosted_url=hosted_url)


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        parsed = response.json()
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
