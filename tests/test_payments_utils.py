# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
from decimal import Decimal

import pytest

from utils.payments import SUBSCRIPTION_TIERS, format_amount, get_tier, parse_amount, to_minor_units


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("19.99", Decimal("19.99")),
        (19.99, Decimal("19.99")),
        (5, Decimal("5")),
        (" 12.5 ", Decimal("12.5")),
    ],
)
def test_parse_amount_accepts_strings_and_numbers(raw, expected):
    assert parse_amount(raw) == expected


@pytest.mark.parametrize("raw", [None, True, "", "abc", "NaN", "Infinity", 0, "-3", "0.00"])
def test_parse_amount_rejects_missing_or_non_positive(raw):
    with pytest.raises(ValueError):
        parse_amount(raw)


def test_to_minor_units_keeps_cent_precision():
    assert to_minor_units(Decimal("19.99")) == 1999
    assert to_minor_units(Decimal("5")) == 500
    assert to_minor_units(parse_amount(0.29)) == 29


def test_to_minor_units_rounds_half_up():
    assert to_minor_units(Decimal("10.005")) == 1001
    assert to_minor_units(Decimal("10.004")) == 1000


def test_format_amount_always_has_two_decimals():
    assert format_amount(Decimal("5")) == "5.00"
    assert format_amount(Decimal("12.5")) == "12.50"
    assert format_amount(Decimal("3.335")) == "3.34"


def test_tier_catalog_prices():
    assert {key: tier.monthly_amount_cents for key, tier in SUBSCRIPTION_TIERS.items()} == {
        "starter": 2900,
        "professional": 7900,
        "enterprise": 19900,
    }


def test_get_tier_unknown_lists_valid_keys():
    with pytest.raises(ValueError) as exc:
        get_tier("platinum")
    assert "starter" in str(exc.value)
