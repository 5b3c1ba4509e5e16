"""
Tests for `flotix/helpers.py` and `flotix/config.py`.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from flotix.config import Settings
from flotix.errors import ConfigError
from flotix.helpers import (
    cents_to_str, from_iso, is_valid_email, order_total_cents,
    price_to_cents, to_iso,
)


def test_checkout_total_includes_tax() -> None:
    """Standard at 7.50, two tickets, 9% tax -> 16.35."""

    total = order_total_cents([(price_to_cents("7.50"), 2)], Decimal("0.09"))

    assert total == 1635
    assert cents_to_str(total) == "16.35"


def test_total_rounds_half_up_to_cents() -> None:
    # 8.18 * 3 = 24.54; * 1.09 = 26.7486
    assert order_total_cents([(818, 3)], Decimal("0.09")) == 2675
    # 0.05 * 1.10 = 0.055 -> 0.06
    assert order_total_cents([(5, 1)], Decimal("0.10")) == 6


def test_total_sums_multiple_lines() -> None:
    total = order_total_cents([(750, 2), (1000, 1)], Decimal("0"))
    assert total == 2500


def test_price_to_cents_accepts_strings_and_floats() -> None:
    assert price_to_cents("7.5") == 750
    assert price_to_cents(8.18) == 818
    assert price_to_cents(5) == 500


@pytest.mark.parametrize("email,ok", [
    ("buyer@example.com", True),
    ("  buyer@example.com ", True),
    ("buyer@example", False),
    ("no at sign", False),
    ("", False),
    (None, False),
])
def test_is_valid_email(email, ok) -> None:
    assert is_valid_email(email) is ok


def test_iso_round_trip_is_utc() -> None:
    ts = from_iso("2026-01-10T17:00:00Z")
    assert to_iso(ts) == "2026-01-10T17:00:00+00:00"
    assert to_iso(None) is None


def test_settings_require_database_url() -> None:
    with pytest.raises(ConfigError):
        Settings.from_env({})


def test_settings_require_mollie_key_for_mollie() -> None:
    with pytest.raises(ConfigError):
        Settings.from_env({"DATABASE_URL": "sqlite:///x.db"})


def test_settings_from_env() -> None:
    s = Settings.from_env({
        "DATABASE_URL": "sqlite:///x.db",
        "PAYMENT_GATEWAY": "mock",
        "TAX_RATE": "0.21",
        "RENDER_URL": "https://api.example.com/",
        "currency": "ignored",
    })

    assert s.payment_gateway == "mock"
    assert s.tax_rate == Decimal("0.21")
    assert s.currency == "EUR"
    assert s.webhook_url == "https://api.example.com/payments/webhook"
    assert s.validate_url("STANDARD-0001") == (
        "https://api.example.com/validate/STANDARD-0001"
    )


def test_settings_reject_bad_tax_rate() -> None:
    with pytest.raises(ConfigError):
        Settings.from_env({"DATABASE_URL": "sqlite:///x.db",
                           "PAYMENT_GATEWAY": "mock", "TAX_RATE": "lots"})
