#!/usr/bin/env python3
# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
"""
Diagnostic script to verify payment provider and environment configuration.
Run this to check which checkout paths the service will expose.

Usage:
    python check_config.py
"""

import os
import sys
from typing import List, Tuple

from dotenv import load_dotenv

from utils.provider_config import ProviderConfig


def check_env_var(name: str, required: bool = True) -> Tuple[bool, str]:
    """Check if environment variable is set and return status."""
    value = (os.getenv(name) or "").strip()
    if value:
        # Mask sensitive values
        if "KEY" in name or "SECRET" in name:
            masked = value[:8] + "..." if len(value) > 8 else "***"
            return True, f"✓ {name}: {masked}"
        return True, f"✓ {name}: {value}"
    status = "✗" if required else "○"
    return False, f"{status} {name}: NOT SET"


def main() -> int:
    load_dotenv()
    config = ProviderConfig.from_env()

    print("=" * 60)
    print("Catering Payments Configuration Check")
    print("=" * 60)
    print()

    issues: List[str] = []

    print("Database Configuration:")
    print("-" * 40)
    ok, msg = check_env_var("DATABASE_URL", required=False)
    print(msg)
    if not ok:
        print("  ℹ Using default SQLite database")
    print()

    print("Stripe Configuration:")
    print("-" * 40)
    for var in ["STRIPE_SECRET_KEY", "STRIPE_PUBLISHABLE_KEY", "STRIPE_WEBHOOK_SECRET"]:
        ok, msg = check_env_var(var, required=False)
        print(msg)
    if config.stripe_enabled and not config.stripe_webhook_verified:
        print("  ⚠ Stripe webhooks will be accepted WITHOUT signature verification")
        issues.append("STRIPE_WEBHOOK_SECRET missing while Stripe is enabled")
    secret = config.stripe_secret_key or ""
    if secret and not secret.startswith(("sk_", "rk_")):
        print("  ⚠ STRIPE_SECRET_KEY does not look like a Stripe secret key")
        issues.append("STRIPE_SECRET_KEY has an unexpected prefix")
    print()

    print("Coinbase Commerce Configuration:")
    print("-" * 40)
    for var in ["COINBASE_COMMERCE_API_KEY", "COINBASE_COMMERCE_WEBHOOK_SECRET"]:
        ok, msg = check_env_var(var, required=False)
        print(msg)
    if config.coinbase_enabled and not config.coinbase_webhook_verified:
        print("  ⚠ Coinbase webhooks will be accepted WITHOUT signature verification")
        issues.append("COINBASE_COMMERCE_WEBHOOK_SECRET missing while Coinbase is enabled")
    print()

    print("Checkout Settings:")
    print("-" * 40)
    print(f"  Frontend base URL: {config.frontend_base_url}")
    print(f"  Currency: {config.currency}")
    print(f"  Subscription trial days: {config.trial_period_days}")
    print(f"  Provider timeout: {config.provider_timeout_seconds}s")
    print()

    if not config.stripe_enabled and not config.coinbase_enabled:
        issues.append("No payment provider is configured; every checkout will return 503")

    print("=" * 60)
    if issues:
        print("⚠ ISSUES FOUND:")
        for issue in issues:
            print(f"  - {issue}")
        print()
        return 1

    print("✓ Configuration looks good!")
    print()
    print("Next steps:")
    print("  1. Create the schema: python -m database.initialize")
    print("  2. For local development: uvicorn main:app --reload")
    print("  3. Check health endpoint: /api/health")
    return 0


if __name__ == "__main__":
    sys.exit(main())
