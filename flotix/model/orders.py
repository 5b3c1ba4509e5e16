# model/orders.py
"""
Checkout and payment reconciliation.

create_order only quotes: it checks availability, opens a gateway payment
and stores a pending order keyed by the gateway's payment id.

fulfill_order is driven by payment callbacks and is safe to call any number
of times for the same payment id:
  1. unknown order -> rejected, fulfilled order -> already fulfilled
  2. the gateway is asked for the payment status (outside any transaction)
  3. one transaction claims the order (pending -> fulfilled), reserves
     capacity per line and mints the tickets; a crash anywhere rolls all
     of it back and leaves the order pending for the next callback
  4. shortfalls (capacity gone since checkout) get reconciliation records
  5. rendering and mailing happen after commit; failures are recorded on
     the order, never rolled back
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ..artifacts import TicketRenderer
from ..config import Settings
from ..errors import (
    ConflictError, FlotixError, InternalError, NotFoundError, ValidationError,
)
from ..gateway import PaymentAdapter, P_PAID
from ..helpers import (
    cents_to_str, is_valid_email, now_ts, order_total_cents, to_iso,
)
from ..infra.sql import Database
from ..infra.timings import timeit
from ..mailer import MailDispatcher, ticket_mail
from . import ledger, redemption
from .catalog import _get_event
from .db import (
    O_PENDING, O_FULFILLED, O_FAILED, D_SENT, D_FAILED,
)

log = logging.getLogger(__name__)

# reconciliation tier_id for whole-order refunds
WHOLE_ORDER = "*"


class Outcome(str, Enum):
    FULFILLED = "fulfilled"
    ALREADY_FULFILLED = "already-fulfilled"
    REJECTED = "rejected"


@dataclass(frozen=True)
class LineItem:
    tier_id: str
    quantity: int


@dataclass(frozen=True)
class CheckoutSession:
    payment_id: str
    checkout_url: str
    amount: int  # cents
    currency: str


@dataclass(frozen=True)
class Shortfall:
    tier_id: str
    requested: int
    granted: int
    reason: str


@dataclass
class FulfillResult:
    outcome: Outcome
    payment_id: str
    reason: Optional[str] = None
    tickets: List[redemption.IssuedTicket] = field(default_factory=list)
    shortfall: List[Shortfall] = field(default_factory=list)


def normalize_line_items(items: Iterable[Any]) -> List[LineItem]:
    """
    Accepts LineItem, (tier_id, qty) pairs or {"id", "quantity"} dicts.
    Lines for the same tier are merged.
    """
    merged: Dict[str, int] = {}
    for item in items or ():
        if isinstance(item, LineItem):
            tier_id, qty = item.tier_id, item.quantity
        elif isinstance(item, dict):
            tier_id = item.get("id") or item.get("tierId")
            qty = item.get("quantity")
        else:
            try:
                tier_id, qty = item
            except (TypeError, ValueError):
                raise ValidationError(f"malformed line item {item!r}")
        if not isinstance(tier_id, str) or not tier_id:
            raise ValidationError("line item without tier id")
        if isinstance(qty, bool) or not isinstance(qty, int):
            raise ValidationError(f"quantity for {tier_id} must be an integer")
        if qty <= 0:
            continue
        merged[tier_id] = merged.get(tier_id, 0) + qty
    if not merged:
        raise ValidationError("no tickets selected")
    return [LineItem(t, q) for t, q in merged.items()]


def _order_view(order: Dict[str, Any], lines, tickets) -> Dict[str, Any]:
    return {
        "paymentId": order["payment_id"],
        "email": order["email"],
        "eventId": order["event_id"],
        "amount": cents_to_str(int(order["amount"])),
        "currency": order["currency"],
        "state": order["state"],
        "failureReason": order["failure_reason"],
        "createdAt": to_iso(order["created_at"]),
        "fulfilledAt": to_iso(order["fulfilled_at"]),
        "deliveryStatus": order["delivery_status"],
        "deliveryError": order["delivery_error"],
        "lines": [
            {"tierId": ln["tier_id"], "quantity": int(ln["quantity"])}
            for ln in lines
        ],
        "tickets": [t.code for t in tickets],
    }


class OrderManager:
    def __init__(
        self,
        db: Database,
        gateway: PaymentAdapter,
        renderer: TicketRenderer,
        mailer: MailDispatcher,
        settings: Settings,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.renderer = renderer
        self.mailer = mailer
        self.settings = settings

    # --------------------------------------------------------------------
    # checkout
    # --------------------------------------------------------------------
    async def create_order(
        self,
        email: str,
        line_items: Iterable[Any],
        event_id: Optional[str] = None,
    ) -> CheckoutSession:
        email = (email or "").strip()
        if not is_valid_email(email):
            raise ValidationError(
                "email is required and must be a valid email address"
            )
        items = normalize_line_items(line_items)

        priced: List[Tuple[LineItem, Dict[str, Any]]] = []
        async with self.db.session() as s:
            for item in items:
                avail = await ledger.check_availability(
                    s, item.tier_id, item.quantity
                )
                tier = await ledger.get_tier(s, item.tier_id)
                if avail.reason == ledger.Reason.TIER_NOT_FOUND or (
                    event_id and tier["event_id"] != event_id
                ):
                    raise NotFoundError(
                        f"Ticket {item.tier_id} not found",
                        reason=ledger.Reason.TIER_NOT_FOUND.value,
                    )
                if not avail.ok:
                    raise ConflictError(
                        f'Ticket "{tier["name"]}" is not available for '
                        "purchase",
                        reason=avail.reason.value,
                    )
                priced.append((item, tier))

            event_id = event_id or priced[0][1]["event_id"]
            async with s.gated():
                async with s.session.begin():
                    event = await _get_event(s.session, event_id)
        if event is None:
            raise NotFoundError(f"event {event_id} not found",
                                reason="event-not-found")

        amount = order_total_cents(
            [(int(t["unit_price"]), i.quantity) for i, t in priced],
            self.settings.tax_rate,
        )
        if amount <= 0:
            raise ValidationError("order total must be positive")

        payment = await self.gateway.create_payment(
            amount,
            self.settings.currency,
            f"Tickets for {event['name']}",
            self.settings.redirect_url,
            self.settings.webhook_url,
            metadata={"email": email, "eventId": event_id},
        )
        payment_id = payment["payment_id"]

        try:
            async with self.db.session() as s:
                async with s.gated():
                    async with s.session.begin():
                        await s.session.execute(text("""
                            INSERT INTO pending_orders(
                                payment_id, email, event_id, amount,
                                currency, state, created_at, delivery_status)
                            VALUES(:p, :email, :event_id, :amount, :currency,
                                   'pending', :now, 'pending')
                        """), {
                            "p": payment_id,
                            "email": email,
                            "event_id": event_id,
                            "amount": amount,
                            "currency": self.settings.currency,
                            "now": now_ts(),
                        })
                        for item, tier in priced:
                            await s.session.execute(text("""
                                INSERT INTO order_lines(
                                    payment_id, tier_id, quantity, unit_price)
                                VALUES(:p, :t, :q, :u)
                            """), {
                                "p": payment_id,
                                "t": item.tier_id,
                                "q": item.quantity,
                                "u": int(tier["unit_price"]),
                            })
        except SQLAlchemyError as e:
            log.error("payment %s opened but pending order not stored: %s",
                      payment_id, e)
            raise InternalError("could not store order") from e

        log.info("order pending payment=%s email=%s amount=%d %s",
                 payment_id, email, amount, self.settings.currency)
        return CheckoutSession(
            payment_id=payment_id,
            checkout_url=payment["checkout_url"],
            amount=amount,
            currency=self.settings.currency,
        )

    # --------------------------------------------------------------------
    # fulfillment
    # --------------------------------------------------------------------
    async def fulfill_order(
        self, payment_id: str, *, deliver: bool = True
    ) -> FulfillResult:
        async with self.db.session() as s:
            order = await self._load(s, payment_id)
        if order is None:
            return FulfillResult(Outcome.REJECTED, payment_id,
                                 reason="unknown-order")
        if order["state"] == O_FULFILLED:
            return FulfillResult(Outcome.ALREADY_FULFILLED, payment_id)

        # gateway truth; callback bodies carry nothing we act on
        payment = await self.gateway.get_payment(payment_id)
        paid = payment["status"] == P_PAID

        if order["state"] == O_FAILED:
            if paid and order["failure_reason"] == "expired":
                await self._flag_refund(order, "paid-after-expiry")
            return FulfillResult(Outcome.REJECTED, payment_id,
                                 reason="order-failed")

        if not paid:
            if self._is_stale(order) and await self._expire(payment_id):
                return FulfillResult(Outcome.REJECTED, payment_id,
                                     reason="order-expired")
            log.info("payment %s is %s; order stays pending",
                     payment_id, payment["status"])
            return FulfillResult(Outcome.REJECTED, payment_id,
                                 reason="payment-not-paid")

        result = await self._commit(order)
        if deliver and result.tickets:
            await self.deliver_tickets(payment_id)
        return result

    async def _commit(self, order: Dict[str, Any]) -> FulfillResult:
        payment_id = order["payment_id"]
        tickets: List[redemption.IssuedTicket] = []
        shortfall: List[Shortfall] = []
        claimed = False
        try:
            async with timeit("orders.fulfill_tx"):
                async with self.db.session() as s:
                    async with s.gated():
                        async with s.session.begin():
                            claimed = await self._fulfill_tx(
                                s.session, order, tickets, shortfall
                            )
        except FlotixError:
            raise
        except SQLAlchemyError as e:
            log.error("fulfillment of %s rolled back: %s", payment_id, e)
            raise InternalError(f"fulfillment of {payment_id} failed") from e

        if not claimed:
            # a concurrent callback got there first
            async with self.db.session() as s:
                current = await self._load(s, payment_id)
            if current and current["state"] == O_FULFILLED:
                return FulfillResult(Outcome.ALREADY_FULFILLED, payment_id)
            if current and current["failure_reason"] == "expired":
                # expired between the order lookup and the claim
                await self._flag_refund(current, "paid-after-expiry")
            return FulfillResult(Outcome.REJECTED, payment_id,
                                 reason="order-failed")

        for sf in shortfall:
            log.warning(
                "oversold at confirmation: payment=%s tier=%s requested=%d "
                "granted=%d reason=%s; refund needed",
                payment_id, sf.tier_id, sf.requested, sf.granted, sf.reason,
            )
        if not tickets:
            return FulfillResult(Outcome.REJECTED, payment_id,
                                 reason="capacity-exhausted",
                                 shortfall=shortfall)
        log.info("fulfilled payment=%s with %d ticket(s)",
                 payment_id, len(tickets))
        return FulfillResult(Outcome.FULFILLED, payment_id,
                             tickets=tickets, shortfall=shortfall)

    async def _fulfill_tx(self, session, order, tickets, shortfall) -> bool:
        payment_id = order["payment_id"]
        now = now_ts()
        claim = (await session.execute(text("""
            UPDATE pending_orders
            SET state = 'fulfilled', fulfilled_at = :now
            WHERE payment_id = :p AND state = 'pending'
            RETURNING payment_id
        """), {"p": payment_id, "now": now})).first()
        if claim is None:
            return False

        lines = (await session.execute(text("""
            SELECT l.tier_id, l.quantity, t.code
            FROM order_lines AS l
            JOIN ticket_tiers AS t ON t.id = l.tier_id
            WHERE l.payment_id = :p
            ORDER BY l.tier_id
        """), {"p": payment_id})).mappings().all()

        for ln in lines:
            qty = int(ln["quantity"])
            granted, rejection = await ledger._reserve_up_to(
                session, ln["tier_id"], qty
            )
            for _ in range(granted):
                tickets.append(await redemption._issue(
                    session, ln["tier_id"], ln["code"], order["email"],
                    payment_id,
                ))
            if granted < qty:
                reason = (
                    rejection.reason.value if rejection
                    else ledger.Reason.INSUFFICIENT_CAPACITY.value
                )
                shortfall.append(Shortfall(ln["tier_id"], qty, granted,
                                           reason))
                await self._record(session, payment_id, ln["tier_id"],
                                   qty, granted, reason, now)

        if not tickets:
            await session.execute(text("""
                UPDATE pending_orders
                SET state = 'failed', failure_reason = 'capacity-exhausted',
                    fulfilled_at = NULL
                WHERE payment_id = :p
            """), {"p": payment_id})
        return True

    @staticmethod
    async def _record(session, payment_id, tier_id, requested, granted,
                      reason, now) -> None:
        await session.execute(text("""
            INSERT INTO reconciliation_records(
                payment_id, tier_id, requested, granted, reason, created_at,
                resolved)
            VALUES(:p, :t, :rq, :g, :r, :now, FALSE)
            ON CONFLICT (payment_id, tier_id) DO NOTHING
        """), {"p": payment_id, "t": tier_id, "rq": requested, "g": granted,
               "r": reason, "now": now})

    async def _flag_refund(self, order: Dict[str, Any], reason: str) -> None:
        async with self.db.session() as s:
            async with s.gated():
                async with s.session.begin():
                    requested = (await s.session.execute(text("""
                        SELECT COALESCE(SUM(quantity), 0) FROM order_lines
                        WHERE payment_id = :p
                    """), {"p": order["payment_id"]})).scalar_one()
                    await self._record(s.session, order["payment_id"],
                                       WHOLE_ORDER, int(requested), 0,
                                       reason, now_ts())
        log.warning("payment %s paid on a %s order; refund needed",
                    order["payment_id"], order["failure_reason"])

    # --------------------------------------------------------------------
    # delivery
    # --------------------------------------------------------------------
    async def deliver_tickets(self, payment_id: str) -> bool:
        """
        Render and mail the tickets of a fulfilled order. Returns True when
        the mail went out; failures are stored on the order.
        """
        async with self.db.session() as s:
            order = await self._load(s, payment_id)
            if order is None:
                raise NotFoundError(f"order {payment_id} not found",
                                    reason="unknown-order")
            if order["state"] != O_FULFILLED:
                raise ConflictError(f"order {payment_id} is {order['state']}",
                                    reason="order-not-fulfilled")
            tickets = await redemption.tickets_for_payment(s, payment_id)
            tiers = {}
            for t in tickets:
                if t.tier_id not in tiers:
                    tiers[t.tier_id] = await ledger.get_tier(s, t.tier_id)
            async with s.gated():
                async with s.session.begin():
                    event = await _get_event(s.session, order["event_id"])

        event = event or {"name": "", "date": None}
        try:
            async with timeit("orders.deliver"):
                artifacts = []
                for t in tickets:
                    artifacts.append(await asyncio.to_thread(
                        self.renderer.render_ticket,
                        t.code, tiers[t.tier_id]["name"], event, t.email,
                    ))
                await self.mailer.send(ticket_mail(
                    order["email"], event["name"],
                    [t.code for t in tickets], artifacts,
                ))
        except Exception as e:
            # tickets stay valid; an operator can resend
            log.exception("ticket delivery for payment=%s failed", payment_id)
            await self._set_delivery(payment_id, D_FAILED, str(e)[:500])
            return False
        await self._set_delivery(payment_id, D_SENT, None)
        return True

    async def _set_delivery(self, payment_id: str, status: str,
                            error: Optional[str]) -> None:
        async with self.db.session() as s:
            async with s.gated():
                async with s.session.begin():
                    await s.session.execute(text("""
                        UPDATE pending_orders
                        SET delivery_status = :st, delivery_error = :err
                        WHERE payment_id = :p
                    """), {"p": payment_id, "st": status, "err": error})

    # --------------------------------------------------------------------
    # expiry
    # --------------------------------------------------------------------
    def _is_stale(self, order: Dict[str, Any], now: float = None) -> bool:
        now = now_ts() if now is None else now
        return (order["state"] == O_PENDING and
                order["created_at"] < now - self.settings.order_ttl_seconds)

    async def _expire(self, payment_id: str) -> bool:
        async with self.db.session() as s:
            async with s.gated():
                async with s.session.begin():
                    row = (await s.session.execute(text("""
                        UPDATE pending_orders
                        SET state = 'failed', failure_reason = 'expired'
                        WHERE payment_id = :p AND state = 'pending'
                        RETURNING payment_id
                    """), {"p": payment_id})).first()
        if row is not None:
            log.info("order %s expired unpaid", payment_id)
        return row is not None

    async def expire_stale(self, now: Optional[float] = None) -> List[str]:
        """
        Fail pending orders older than the TTL. Nothing was reserved for
        them, so the ledger is untouched.
        """
        now = now_ts() if now is None else now
        cutoff = now - self.settings.order_ttl_seconds
        async with self.db.session() as s:
            async with s.gated():
                async with s.session.begin():
                    rows = (await s.session.execute(text("""
                        UPDATE pending_orders
                        SET state = 'failed', failure_reason = 'expired'
                        WHERE state = 'pending' AND created_at < :cutoff
                        RETURNING payment_id
                    """), {"cutoff": cutoff})).all()
        expired = [r[0] for r in rows]
        if expired:
            log.info("expired %d stale pending order(s)", len(expired))
        return expired

    # --------------------------------------------------------------------
    # read side
    # --------------------------------------------------------------------
    @staticmethod
    async def _load(s, payment_id: str) -> Optional[Dict[str, Any]]:
        async with s.gated():
            async with s.session.begin():
                row = (await s.session.execute(text("""
                    SELECT payment_id, email, event_id, amount, currency,
                           state, failure_reason, created_at, fulfilled_at,
                           delivery_status, delivery_error
                    FROM pending_orders WHERE payment_id = :p
                """), {"p": payment_id})).mappings().first()
        return dict(row) if row else None

    @staticmethod
    async def _lines(s, payment_id: str) -> List[Dict[str, Any]]:
        async with s.gated():
            async with s.session.begin():
                rows = (await s.session.execute(text("""
                    SELECT tier_id, quantity, unit_price FROM order_lines
                    WHERE payment_id = :p ORDER BY tier_id
                """), {"p": payment_id})).mappings().all()
        return [dict(r) for r in rows]

    async def get_order(self, payment_id: str) -> Dict[str, Any]:
        async with self.db.session() as s:
            order = await self._load(s, payment_id)
            if order is None:
                raise NotFoundError(f"order {payment_id} not found",
                                    reason="unknown-order")
            lines = await self._lines(s, payment_id)
            tickets = await redemption.tickets_for_payment(s, payment_id)
        return _order_view(order, lines, tickets)

    async def list_orders(self, limit: int = 200) -> List[Dict[str, Any]]:
        async with self.db.session() as s:
            async with s.gated():
                async with s.session.begin():
                    rows = (await s.session.execute(text("""
                        SELECT payment_id, email, event_id, amount, currency,
                               state, failure_reason, created_at,
                               fulfilled_at, delivery_status, delivery_error
                        FROM pending_orders
                        ORDER BY created_at DESC
                        LIMIT :limit
                    """), {"limit": max(1, min(limit, 500))})).mappings().all()
        return [_order_view(dict(r), [], []) for r in rows]

    async def list_reconciliation(
        self, include_resolved: bool = False
    ) -> List[Dict[str, Any]]:
        where = "" if include_resolved else "WHERE resolved = FALSE"
        async with self.db.session() as s:
            async with s.gated():
                async with s.session.begin():
                    rows = (await s.session.execute(text(f"""
                        SELECT id, payment_id, tier_id, requested, granted,
                               reason, created_at, resolved
                        FROM reconciliation_records {where}
                        ORDER BY created_at DESC, id DESC
                    """))).mappings().all()
        return [{
            "id": int(r["id"]),
            "paymentId": r["payment_id"],
            "tierId": r["tier_id"],
            "requested": int(r["requested"]),
            "granted": int(r["granted"]),
            "refundQuantity": int(r["requested"]) - int(r["granted"]),
            "reason": r["reason"],
            "createdAt": to_iso(r["created_at"]),
            "resolved": bool(r["resolved"]),
        } for r in rows]

    async def resolve_reconciliation(self, record_id: int) -> None:
        async with self.db.session() as s:
            async with s.gated():
                async with s.session.begin():
                    row = (await s.session.execute(text("""
                        UPDATE reconciliation_records SET resolved = TRUE
                        WHERE id = :id
                        RETURNING id
                    """), {"id": record_id})).first()
        if row is None:
            raise NotFoundError(f"reconciliation record {record_id} not found")
        log.info("reconciliation record %d resolved", record_id)
