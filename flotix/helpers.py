import time
import re
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def from_iso(value: str) -> float:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def cents_to_str(cents: int) -> str:
    # gateway wire format: "16.35"
    return f"{Decimal(cents) / 100:.2f}"


def price_to_cents(price: float | str | Decimal) -> int:
    amount = Decimal(str(price)) * 100
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def order_total_cents(lines, tax_rate: Decimal) -> int:
    """
    lines: iterable of (unit_price_cents, quantity).
    total = sum(unit_price * quantity) * (1 + tax_rate), rounded to cents.
    """
    subtotal = sum(Decimal(p) * q for p, q in lines)
    total = subtotal * (Decimal(1) + Decimal(tax_rate))
    return int(total.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
