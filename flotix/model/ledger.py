# model/ledger.py
"""
Inventory ledger for ticket tiers.

- non-binding availability checks for quoting
- binding reservations: one conditional UPDATE per tier, so the store
  serializes concurrent writers on the tier row
- compensating releases
- admin edits of price/capacity/status through the same atomic path

The ledger is the only writer of ticket_tiers.sold_count and
ticket_tiers.status.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union, Dict, Any

from sqlalchemy import text

from ..errors import ConflictError, NotFoundError, ValidationError
from ..helpers import cents_to_str
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from .db import (
    TIER_STATUSES, S_AVAILABLE, S_SOLD_OUT, S_COMING_SOON, S_UNAVAILABLE,
)

log = logging.getLogger(__name__)


class Reason(str, Enum):
    TIER_NOT_FOUND = "tier-not-found"
    TIER_NOT_AVAILABLE = "tier-not-available"
    INSUFFICIENT_CAPACITY = "insufficient-capacity"
    INVALID_QUANTITY = "invalid-quantity"


STATUS_LABELS = {
    S_AVAILABLE: "Available",
    S_SOLD_OUT: "Sold Out",
    S_COMING_SOON: "Coming Soon",
    S_UNAVAILABLE: "Unavailable",
}


@dataclass(frozen=True)
class Availability:
    ok: bool
    reason: Optional[Reason] = None
    remaining: int = 0


@dataclass(frozen=True)
class CommittedReservation:
    tier_id: str
    qty: int
    sold_count: int
    capacity: int
    status: str


@dataclass(frozen=True)
class Rejected:
    reason: Reason
    remaining: int = 0


ReserveResult = Union[CommittedReservation, Rejected]


# ------------------------------------------------------------------------------
# SQL
# ------------------------------------------------------------------------------

SQL_TIER = r"""
SELECT id, event_id, code, name, unit_price, capacity, sold_count, status
FROM ticket_tiers WHERE id = :id
"""

# Re-checks status and capacity and commits in one statement. Concurrent
# callers on the same row queue on its write lock; the loser re-evaluates
# the WHERE clause against the committed row.
SQL_RESERVE = r"""
UPDATE ticket_tiers
SET sold_count = sold_count + :q,
    status = CASE WHEN sold_count + :q >= capacity
                  THEN 'sold-out' ELSE status END
WHERE id = :id
  AND status = 'available'
  AND sold_count + :q <= capacity
RETURNING id, sold_count, capacity, status
"""

# SET expressions see the pre-update row: a tier flips back to available
# only when it was sold out because it was full.
SQL_RELEASE = r"""
UPDATE ticket_tiers
SET sold_count = sold_count - :q,
    status = CASE WHEN status = 'sold-out' AND sold_count = capacity
                  THEN 'available' ELSE status END
WHERE id = :id
  AND sold_count >= :q
RETURNING id, sold_count, capacity, status
"""


# ------------------------------------------------------------------------------
# Core logic
# ------------------------------------------------------------------------------

def _classify(tier: Optional[Dict[str, Any]], qty: int) -> Availability:
    if tier is None:
        return Availability(ok=False, reason=Reason.TIER_NOT_FOUND)
    remaining = max(0, int(tier["capacity"]) - int(tier["sold_count"]))
    if tier["status"] in (S_COMING_SOON, S_UNAVAILABLE):
        return Availability(
            ok=False, reason=Reason.TIER_NOT_AVAILABLE, remaining=remaining
        )
    # sold-out is authoritative even if the counter disagrees
    if tier["status"] == S_SOLD_OUT or qty > remaining:
        return Availability(
            ok=False, reason=Reason.INSUFFICIENT_CAPACITY, remaining=remaining
        )
    return Availability(ok=True, remaining=remaining)


# UN-GATED internal function
async def _get_tier(db, tier_id: str) -> Optional[Dict[str, Any]]:
    row = (
        await db.execute(text(SQL_TIER), {"id": tier_id})
    ).mappings().first()
    return dict(row) if row else None


# UN-GATED internal function
async def _reserve(db, tier_id: str, qty: int) -> ReserveResult:
    """
    Commit `qty` units against a tier inside the caller's transaction.
    """
    if qty <= 0:
        return Rejected(reason=Reason.INVALID_QUANTITY)
    row = (
        await db.execute(text(SQL_RESERVE), {"id": tier_id, "q": qty})
    ).mappings().first()
    if row is not None:
        return CommittedReservation(
            tier_id=row["id"],
            qty=qty,
            sold_count=int(row["sold_count"]),
            capacity=int(row["capacity"]),
            status=row["status"],
        )
    avail = _classify(await _get_tier(db, tier_id), qty)
    # a concurrent writer can make the tier look fine again by the time we
    # read it; the UPDATE already refused, so report capacity
    reason = avail.reason or Reason.INSUFFICIENT_CAPACITY
    return Rejected(reason=reason, remaining=avail.remaining)


# UN-GATED internal function
async def _reserve_up_to(
    db, tier_id: str, qty: int
) -> tuple[int, Optional[Rejected]]:
    """
    Reserve as many of `qty` units as capacity allows.
    Returns (granted, last_rejection).
    """
    last: Optional[Rejected] = None
    want = qty
    while want > 0:
        res = await _reserve(db, tier_id, want)
        if isinstance(res, CommittedReservation):
            return want, last
        last = res
        if res.reason != Reason.INSUFFICIENT_CAPACITY or res.remaining <= 0:
            break
        want = min(want - 1, res.remaining)
    return 0, last


# UN-GATED internal function
async def _release(db, tier_id: str, qty: int) -> Dict[str, Any]:
    if qty <= 0:
        raise ValidationError("release quantity must be positive",
                              reason=Reason.INVALID_QUANTITY.value)
    row = (
        await db.execute(text(SQL_RELEASE), {"id": tier_id, "q": qty})
    ).mappings().first()
    if row is None:
        if await _get_tier(db, tier_id) is None:
            raise NotFoundError(f"tier {tier_id} not found",
                                reason=Reason.TIER_NOT_FOUND.value)
        raise ConflictError(
            f"cannot release {qty} units from tier {tier_id}: more than sold",
            reason="release-exceeds-sold",
        )
    return dict(row)


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def check_availability(
    db: GatedAsyncSession, tier_id: str, qty: int
) -> Availability:
    """
    Read-only. Informative for quoting, not binding.
    """
    if qty <= 0:
        return Availability(ok=False, reason=Reason.INVALID_QUANTITY)
    async with db.gated():
        async with db.session.begin():
            tier = await _get_tier(db.session, tier_id)
    return _classify(tier, qty)


async def reserve(
    db: GatedAsyncSession, tier_id: str, qty: int
) -> ReserveResult:
    async with timeit("ledger.reserve"):
        async with db.gated():
            async with db.session.begin():
                res = await _reserve(db.session, tier_id, qty)
    if isinstance(res, Rejected):
        log.info("reserve rejected tier=%s qty=%d reason=%s",
                 tier_id, qty, res.reason.value)
    return res


async def release(
    db: GatedAsyncSession, tier_id: str, qty: int
) -> Dict[str, Any]:
    """
    Compensating action for a reservation whose order failed irreversibly.
    Never overrides an admin-set coming-soon/unavailable status.
    """
    async with timeit("ledger.release"):
        async with db.gated():
            async with db.session.begin():
                row = await _release(db.session, tier_id, qty)
    log.warning("released %d units on tier=%s (sold_count now %s)",
                qty, tier_id, row["sold_count"])
    return row


async def get_tier(
    db: GatedAsyncSession, tier_id: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            return await _get_tier(db.session, tier_id)


async def update_tier(
    db: GatedAsyncSession,
    tier_id: str,
    *,
    unit_price: Optional[int] = None,
    capacity: Optional[int] = None,
    status: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Admin edit of price/capacity/status.

    Takes the tier row lock first, so it serializes with reserve/release.
    Capacity can never drop below sold_count, and an available tier that is
    full becomes sold-out.
    """
    if status is not None and status not in TIER_STATUSES:
        raise ValidationError(f"invalid status {status!r}")
    if unit_price is not None and unit_price < 0:
        raise ValidationError("price must not be negative")
    if capacity is not None and capacity < 0:
        raise ValidationError("capacity must not be negative")

    async with timeit("ledger.update_tier"):
        async with db.gated():
            async with db.session.begin():
                # no-op write to take the row lock before reading
                locked = (await db.session.execute(text("""
                    UPDATE ticket_tiers SET sold_count = sold_count
                    WHERE id = :id
                    RETURNING id
                """), {"id": tier_id})).first()
                if locked is None:
                    raise NotFoundError(f"tier {tier_id} not found",
                                        reason=Reason.TIER_NOT_FOUND.value)
                tier = await _get_tier(db.session, tier_id)

                sold = int(tier["sold_count"])
                new_capacity = (
                    int(tier["capacity"]) if capacity is None else capacity
                )
                if new_capacity < sold:
                    raise ConflictError(
                        f"capacity {new_capacity} is below {sold} sold",
                        reason="capacity-below-sold",
                    )

                new_status = tier["status"] if status is None else status
                full = sold >= new_capacity
                if new_status == S_AVAILABLE and full:
                    new_status = S_SOLD_OUT
                elif (status is None and capacity is not None
                        and tier["status"] == S_SOLD_OUT
                        and int(tier["sold_count"]) == int(tier["capacity"])
                        and not full):
                    # it was sold out because it was full; no longer full
                    new_status = S_AVAILABLE

                row = (await db.session.execute(text("""
                    UPDATE ticket_tiers
                    SET unit_price = :price, capacity = :cap, status = :st
                    WHERE id = :id
                    RETURNING id, event_id, code, name, unit_price, capacity,
                              sold_count, status
                """), {
                    "id": tier_id,
                    "price": (
                        int(tier["unit_price"]) if unit_price is None
                        else unit_price
                    ),
                    "cap": new_capacity,
                    "st": new_status,
                })).mappings().first()
    log.info("tier %s updated: price=%s capacity=%s status=%s",
             tier_id, row["unit_price"], row["capacity"], row["status"])
    return dict(row)


def tier_view(tier: Dict[str, Any]) -> Dict[str, Any]:
    status = tier.get("status") or S_AVAILABLE
    return {
        "id": tier["id"],
        "eventId": tier["event_id"],
        "code": tier["code"],
        "name": tier["name"],
        "price": cents_to_str(int(tier["unit_price"])),
        "max": int(tier["capacity"]),
        "sold": int(tier["sold_count"]),
        "status": status,
        "statusLabel": STATUS_LABELS.get(status, "Available"),
    }
