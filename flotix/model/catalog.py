# model/catalog.py
# Event setup and read views. Tiers are created here once; after that
# only the ledger writes sold_count/status.
from __future__ import annotations
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import text

from ..errors import ValidationError, NotFoundError
from ..helpers import now_ts, to_iso, price_to_cents
from ..infra.sql import GatedAsyncSession
from .db import TIER_STATUSES, S_AVAILABLE, S_SOLD_OUT
from .ledger import tier_view


def _tier_row(event_id: str, t: Dict[str, Any]) -> Dict[str, Any]:
    name = (t.get("name") or "").strip()
    if not name:
        raise ValidationError("tier name is required")
    code = (t.get("code") or name).strip().upper().replace(" ", "-")
    try:
        capacity = int(t.get("max", t.get("capacity", 0)))
        sold = int(t.get("sold", t.get("sold_count", 0)))
        unit_price = price_to_cents(t.get("price", 0))
    except (TypeError, ValueError, ArithmeticError):
        raise ValidationError(f"tier {name!r}: malformed price/capacity")
    status = t.get("status") or S_AVAILABLE
    if status not in TIER_STATUSES:
        raise ValidationError(f"tier {name!r}: invalid status {status!r}")
    if capacity < 0 or unit_price < 0 or not (0 <= sold <= capacity):
        raise ValidationError(f"tier {name!r}: need 0 <= sold <= max")
    if status == S_AVAILABLE and sold == capacity:
        status = S_SOLD_OUT
    return {
        "id": t.get("id") or uuid.uuid4().hex,
        "event_id": event_id,
        "code": code,
        "name": name,
        "unit_price": unit_price,
        "capacity": capacity,
        "sold_count": sold,
        "status": status,
    }


async def create_event(
    db: GatedAsyncSession,
    *,
    name: str,
    date: float,
    tiers: List[Dict[str, Any]],
    description: str = "",
    logo_url: Optional[str] = None,
    background_url: Optional[str] = None,
    event_id: Optional[str] = None,
) -> Dict[str, Any]:
    if not (name or "").strip():
        raise ValidationError("event name is required")
    event_id = event_id or uuid.uuid4().hex
    rows = [_tier_row(event_id, t) for t in tiers]

    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("""
                INSERT INTO events(id, name, description, logo_url,
                                   background_url, date, created_at)
                VALUES(:id, :name, :description, :logo_url,
                       :background_url, :date, :created_at)
            """), {
                "id": event_id,
                "name": name.strip(),
                "description": description,
                "logo_url": logo_url,
                "background_url": background_url,
                "date": float(date),
                "created_at": now_ts(),
            })
            for r in rows:
                await db.session.execute(text("""
                    INSERT INTO ticket_tiers(id, event_id, code, name,
                        unit_price, capacity, sold_count, status)
                    VALUES(:id, :event_id, :code, :name, :unit_price,
                        :capacity, :sold_count, :status)
                """), r)
    return await get_event(db, event_id)


# UN-GATED internal function
async def _get_event(db, event_id: str) -> Optional[Dict[str, Any]]:
    row = (await db.execute(text("""
        SELECT id, name, description, logo_url, background_url, date
        FROM events WHERE id = :id
    """), {"id": event_id})).mappings().first()
    return dict(row) if row else None


# UN-GATED internal function
async def _tiers_for(db, event_id: str) -> List[Dict[str, Any]]:
    rows = (await db.execute(text("""
        SELECT id, event_id, code, name, unit_price, capacity, sold_count,
               status
        FROM ticket_tiers WHERE event_id = :id
        ORDER BY unit_price, name
    """), {"id": event_id})).mappings().all()
    return [dict(r) for r in rows]


def event_view(ev: Dict[str, Any], tiers: List[Dict[str, Any]]):
    return {
        "id": ev["id"],
        "name": ev["name"],
        "description": ev["description"],
        "logoURL": ev["logo_url"],
        "backgroundURL": ev["background_url"],
        "date": to_iso(ev["date"]),
        "tickets": [tier_view(t) for t in tiers],
    }


async def get_event(
    db: GatedAsyncSession, event_id: str
) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            ev = await _get_event(db.session, event_id)
            if ev is None:
                raise NotFoundError(f"event {event_id} not found",
                                    reason="event-not-found")
            tiers = await _tiers_for(db.session, event_id)
    return event_view(ev, tiers)


async def list_tiers(
    db: GatedAsyncSession, event_id: str
) -> List[Dict[str, Any]]:
    return (await get_event(db, event_id))["tickets"]


async def list_events(db: GatedAsyncSession) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            events = (await db.session.execute(text("""
                SELECT id, name, description, logo_url, background_url, date
                FROM events ORDER BY date
            """))).mappings().all()
            out = []
            for ev in events:
                tiers = await _tiers_for(db.session, ev["id"])
                out.append(event_view(dict(ev), tiers))
    return out
