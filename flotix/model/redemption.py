# model/redemption.py
"""
Issued tickets and one-time redemption.

Codes are `<TIER CODE>-<n>` where n comes from a per-prefix counter that is
bumped with a single upsert; the primary key on issued_tickets.code is what
guarantees uniqueness.

Redemption is a compare-and-set on `used`: exactly one scanner wins.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, List, Dict, Any

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from ..errors import InternalError, NotFoundError
from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit

log = logging.getLogger(__name__)


class Redemption(str, Enum):
    VALID = "valid"
    ALREADY_USED = "already-used"
    NOT_FOUND = "not-found"


@dataclass(frozen=True)
class IssuedTicket:
    code: str
    tier_id: str
    email: str
    payment_id: str
    issued_at: float
    used: bool = False
    used_at: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "tierId": self.tier_id,
            "email": self.email,
            "paymentId": self.payment_id,
            "issuedAt": to_iso(self.issued_at),
            "used": self.used,
            "usedAt": to_iso(self.used_at),
        }


@dataclass(frozen=True)
class ValidationResult:
    outcome: Redemption
    ticket: Optional[IssuedTicket] = None


SQL_NEXT_SEQ = r"""
INSERT INTO code_sequences(prefix, counter) VALUES(:p, 1)
ON CONFLICT (prefix) DO UPDATE SET counter = code_sequences.counter + 1
RETURNING counter
"""

SQL_REDEEM = r"""
UPDATE issued_tickets
SET used = TRUE, used_at = :now
WHERE code = :code AND used = FALSE
RETURNING code, tier_id, email, payment_id, issued_at, used, used_at
"""

SQL_TICKET = r"""
SELECT code, tier_id, email, payment_id, issued_at, used, used_at
FROM issued_tickets WHERE code = :code
"""


def _row_to_ticket(r) -> IssuedTicket:
    return IssuedTicket(
        code=r["code"],
        tier_id=r["tier_id"],
        email=r["email"],
        payment_id=r["payment_id"],
        issued_at=float(r["issued_at"]),
        used=bool(r["used"]),
        used_at=float(r["used_at"]) if r["used_at"] is not None else None,
    )


def format_code(prefix: str, n: int) -> str:
    return f"{prefix}-{n:04d}"


# UN-GATED internal function
async def _issue(
    db, tier_id: str, prefix: str, email: str, payment_id: str
) -> IssuedTicket:
    """
    Mint one ticket inside the caller's transaction.
    """
    n = (await db.execute(text(SQL_NEXT_SEQ), {"p": prefix})).scalar_one()
    ticket = IssuedTicket(
        code=format_code(prefix, int(n)),
        tier_id=tier_id,
        email=email,
        payment_id=payment_id,
        issued_at=now_ts(),
    )
    try:
        await db.execute(text("""
            INSERT INTO issued_tickets(code, tier_id, email, payment_id,
                                       issued_at, used, used_at)
            VALUES(:code, :tier_id, :email, :payment_id, :issued_at,
                   FALSE, NULL)
        """), {
            "code": ticket.code,
            "tier_id": ticket.tier_id,
            "email": ticket.email,
            "payment_id": ticket.payment_id,
            "issued_at": ticket.issued_at,
        })
    except IntegrityError as e:
        # the counter and the table disagree (manual inserts?); the caller's
        # transaction is poisoned and gets rolled back
        raise InternalError(
            f"ticket code {ticket.code} already exists"
        ) from e
    return ticket


# UN-GATED internal function
async def _tier_prefix(db, tier_id: str) -> str:
    code = (await db.execute(
        text("SELECT code FROM ticket_tiers WHERE id = :id"), {"id": tier_id}
    )).scalar_one_or_none()
    if code is None:
        raise NotFoundError(f"tier {tier_id} not found",
                            reason="tier-not-found")
    return code


async def issue(
    db: GatedAsyncSession, tier_id: str, email: str, payment_id: str
) -> IssuedTicket:
    async with timeit("redemption.issue"):
        async with db.gated():
            async with db.session.begin():
                prefix = await _tier_prefix(db.session, tier_id)
                ticket = await _issue(
                    db.session, tier_id, prefix, email, payment_id
                )
    log.info("issued %s for payment=%s", ticket.code, payment_id)
    return ticket


async def validate(db: GatedAsyncSession, code: str) -> ValidationResult:
    """
    Atomically consume a ticket. Returns a result; never raises for unknown
    or used codes.
    """
    async with timeit("redemption.validate"):
        async with db.gated():
            async with db.session.begin():
                row = (await db.session.execute(
                    text(SQL_REDEEM), {"code": code, "now": now_ts()}
                )).mappings().first()
                if row is not None:
                    return ValidationResult(
                        Redemption.VALID, _row_to_ticket(row)
                    )
                row = (await db.session.execute(
                    text(SQL_TICKET), {"code": code}
                )).mappings().first()
    if row is None:
        return ValidationResult(Redemption.NOT_FOUND)
    log.info("ticket %s scanned again (used at %s)",
             code, to_iso(row["used_at"]))
    return ValidationResult(Redemption.ALREADY_USED, _row_to_ticket(row))


# UN-GATED internal function
async def _tickets_for_payment(db, payment_id: str) -> List[IssuedTicket]:
    rows = (await db.execute(text("""
        SELECT code, tier_id, email, payment_id, issued_at, used, used_at
        FROM issued_tickets WHERE payment_id = :p
        ORDER BY issued_at, code
    """), {"p": payment_id})).mappings().all()
    return [_row_to_ticket(r) for r in rows]


async def tickets_for_payment(
    db: GatedAsyncSession, payment_id: str
) -> List[IssuedTicket]:
    async with db.gated():
        async with db.session.begin():
            return await _tickets_for_payment(db.session, payment_id)


async def get_ticket(
    db: GatedAsyncSession, code: str
) -> Optional[IssuedTicket]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(
                text(SQL_TICKET), {"code": code}
            )).mappings().first()
    return _row_to_ticket(row) if row else None
