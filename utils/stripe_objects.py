# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional


def stripe_to_dict(obj: Any) -> Dict[str, Any]:
    """Convert Stripe objects to plain dicts for safer access."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj

    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        result = to_dict()
        if isinstance(result, dict):
            return result

    try:
        return dict(obj)
    except (TypeError, ValueError):
        return {}


def stripe_get(obj: Any, key: str) -> Any:
    """Safely fetch a key from Stripe objects, dicts, or plain attrs."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    getter = getattr(obj, "get", None)
    if callable(getter):
        return getter(key)
    return getattr(obj, key, None)


def coerce_stripe_id(value: Any) -> Optional[str]:
    """Ensure Stripe identifiers are stored as plain strings.

    Expanded objects (``{"id": "cus_..."}`` or SDK instances) collapse to their id.
    """
    if not value:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        potential_id = value.get("id")
        return potential_id if isinstance(potential_id, str) else None
    potential_id = getattr(value, "id", None)
    if isinstance(potential_id, str):
        return potential_id
    return str(value)


def from_unix_timestamp(value: Any) -> Optional[datetime]:
    """Stripe timestamps are epoch seconds; stored as naive UTC."""
    if value is None:
        return None
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


def metadata_of(obj: Any) -> Dict[str, str]:
    metadata = stripe_to_dict(stripe_get(obj, "metadata"))
    return {str(key): "" if value is None else str(value) for key, value in metadata.items()}
