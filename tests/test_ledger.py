"""
Tests for `flotix/model/ledger.py`.

Covers:
- check_availability is read-only and reports stable reasons
- reserve commits atomically and flips a full tier to sold-out
- concurrent reserves never oversell
- release and admin edits go through the same atomic path
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from flotix.errors import ConflictError, NotFoundError, ValidationError
from flotix.model import ledger
from flotix.model.ledger import CommittedReservation, Reason, Rejected


async def _reserve_once(database, tier_id, qty=1):
    async with database.session() as s:
        return await ledger.reserve(s, tier_id, qty)


class TestCheckAvailability:

    @pytest.mark.asyncio
    async def test_available_tier(self, db, reloaded):
        res = await ledger.check_availability(db, reloaded["Standard"], 2)

        assert res.ok
        assert res.reason is None
        assert res.remaining == 600

    @pytest.mark.asyncio
    async def test_unknown_tier(self, db, reloaded):
        res = await ledger.check_availability(db, "nope", 1)
        assert not res.ok
        assert res.reason == Reason.TIER_NOT_FOUND

    @pytest.mark.asyncio
    async def test_coming_soon_is_not_available(self, db, reloaded):
        res = await ledger.check_availability(db, reloaded["Latecomer"], 1)
        assert res.reason == Reason.TIER_NOT_AVAILABLE

    @pytest.mark.asyncio
    async def test_sold_out_tier_reports_capacity(self, db, reloaded):
        res = await ledger.check_availability(db, reloaded["Early Bird"], 1)
        assert res.reason == Reason.INSUFFICIENT_CAPACITY

    @pytest.mark.asyncio
    async def test_more_than_remaining(self, db, reloaded):
        res = await ledger.check_availability(db, reloaded["Standard"], 601)
        assert res.reason == Reason.INSUFFICIENT_CAPACITY

    @pytest.mark.asyncio
    async def test_non_positive_quantity(self, db, reloaded):
        res = await ledger.check_availability(db, reloaded["Standard"], 0)
        assert res.reason == Reason.INVALID_QUANTITY

    @pytest.mark.asyncio
    async def test_check_never_mutates(self, db, reloaded):
        for _ in range(3):
            await ledger.check_availability(db, reloaded["Standard"], 5)

        tier = await ledger.get_tier(db, reloaded["Standard"])
        assert tier["sold_count"] == 0
        assert tier["status"] == "available"


class TestReserve:

    @pytest.mark.asyncio
    async def test_reserve_increments_sold_count(self, db, reloaded):
        res = await ledger.reserve(db, reloaded["Standard"], 2)

        assert isinstance(res, CommittedReservation)
        assert res.sold_count == 2
        assert res.status == "available"
        tier = await ledger.get_tier(db, reloaded["Standard"])
        assert tier["sold_count"] == 2

    @pytest.mark.asyncio
    async def test_reaching_capacity_flips_sold_out(self, db, event_factory):
        ids = await event_factory([
            {"name": "Tiny", "price": "5", "max": 3, "sold": 1},
        ])

        res = await ledger.reserve(db, ids["Tiny"], 2)

        assert isinstance(res, CommittedReservation)
        assert res.sold_count == 3
        assert res.status == "sold-out"

        again = await ledger.reserve(db, ids["Tiny"], 1)
        assert isinstance(again, Rejected)
        assert again.reason == Reason.INSUFFICIENT_CAPACITY

    @pytest.mark.asyncio
    async def test_reserve_rejects_over_capacity(self, db, event_factory):
        ids = await event_factory([
            {"name": "Tiny", "price": "5", "max": 3, "sold": 1},
        ])

        res = await ledger.reserve(db, ids["Tiny"], 3)

        assert isinstance(res, Rejected)
        assert res.reason == Reason.INSUFFICIENT_CAPACITY
        assert res.remaining == 2
        tier = await ledger.get_tier(db, ids["Tiny"])
        assert tier["sold_count"] == 1

    @pytest.mark.asyncio
    async def test_reserve_respects_status_gate(self, db, reloaded):
        res = await ledger.reserve(db, reloaded["Latecomer"], 1)
        assert isinstance(res, Rejected)
        assert res.reason == Reason.TIER_NOT_AVAILABLE

    @pytest.mark.asyncio
    async def test_reserve_unknown_tier(self, db, reloaded):
        res = await ledger.reserve(db, "nope", 1)
        assert isinstance(res, Rejected)
        assert res.reason == Reason.TIER_NOT_FOUND

    @pytest.mark.asyncio
    async def test_last_unit_goes_to_exactly_one_caller(
        self, database, db, event_factory
    ):
        """N concurrent reserve(tier, 1) at soldCount C-1: one winner."""
        ids = await event_factory([
            {"name": "Last", "price": "5", "max": 10, "sold": 9},
        ])

        results = await asyncio.gather(
            *[_reserve_once(database, ids["Last"]) for _ in range(8)]
        )

        wins = [r for r in results if isinstance(r, CommittedReservation)]
        losses = [r for r in results if isinstance(r, Rejected)]
        assert len(wins) == 1
        assert len(losses) == 7
        assert all(r.reason == Reason.INSUFFICIENT_CAPACITY for r in losses)

        tier = await ledger.get_tier(db, ids["Last"])
        assert tier["sold_count"] == 10
        assert tier["status"] == "sold-out"

    @pytest.mark.asyncio
    async def test_concurrent_reserves_never_oversell(
        self, database, db, event_factory
    ):
        ids = await event_factory([
            {"name": "Small", "price": "5", "max": 12, "sold": 0},
        ])

        results = await asyncio.gather(
            *[_reserve_once(database, ids["Small"], 2) for _ in range(10)]
        )

        wins = [r for r in results if isinstance(r, CommittedReservation)]
        assert len(wins) == 6
        tier = await ledger.get_tier(db, ids["Small"])
        assert tier["sold_count"] == 12
        assert tier["status"] == "sold-out"

    @pytest.mark.asyncio
    async def test_store_rejects_sold_count_above_capacity(
        self, database, reloaded
    ):
        """The CHECK constraint holds even for writes that skip the ledger."""
        async with database.session() as s:
            with pytest.raises(IntegrityError):
                async with s.session.begin():
                    await s.session.execute(text(
                        "UPDATE ticket_tiers SET sold_count = capacity + 1 "
                        "WHERE id = :id"
                    ), {"id": reloaded["Standard"]})


class TestRelease:

    @pytest.mark.asyncio
    async def test_release_reopens_capacity_sold_out(self, db, event_factory):
        ids = await event_factory([
            {"name": "Tiny", "price": "5", "max": 2, "sold": 0},
        ])
        await ledger.reserve(db, ids["Tiny"], 2)

        row = await ledger.release(db, ids["Tiny"], 1)

        assert row["sold_count"] == 1
        assert row["status"] == "available"
        assert isinstance(
            await ledger.reserve(db, ids["Tiny"], 1), CommittedReservation
        )

    @pytest.mark.asyncio
    async def test_release_keeps_admin_status(self, db, event_factory):
        ids = await event_factory([
            {"name": "Held", "price": "5", "max": 5, "sold": 3,
             "status": "unavailable"},
        ])

        row = await ledger.release(db, ids["Held"], 1)

        assert row["sold_count"] == 2
        assert row["status"] == "unavailable"

    @pytest.mark.asyncio
    async def test_release_keeps_manual_sold_out(self, db, event_factory):
        # sold out by hand while not full: not ours to reopen
        ids = await event_factory([
            {"name": "Closed", "price": "5", "max": 5, "sold": 3,
             "status": "sold-out"},
        ])

        row = await ledger.release(db, ids["Closed"], 1)

        assert row["status"] == "sold-out"

    @pytest.mark.asyncio
    async def test_release_more_than_sold(self, db, reloaded):
        with pytest.raises(ConflictError):
            await ledger.release(db, reloaded["Standard"], 1)

    @pytest.mark.asyncio
    async def test_release_unknown_tier(self, db, reloaded):
        with pytest.raises(NotFoundError):
            await ledger.release(db, "nope", 1)


class TestUpdateTier:

    @pytest.mark.asyncio
    async def test_capacity_cannot_drop_below_sold(self, db, reloaded):
        await ledger.reserve(db, reloaded["Standard"], 5)

        with pytest.raises(ConflictError):
            await ledger.update_tier(db, reloaded["Standard"], capacity=4)

    @pytest.mark.asyncio
    async def test_shrinking_to_sold_marks_sold_out(self, db, reloaded):
        await ledger.reserve(db, reloaded["Standard"], 5)

        row = await ledger.update_tier(db, reloaded["Standard"], capacity=5)

        assert row["capacity"] == 5
        assert row["status"] == "sold-out"

    @pytest.mark.asyncio
    async def test_growing_full_tier_reopens_it(self, db, reloaded):
        row = await ledger.update_tier(db, reloaded["Early Bird"],
                                       capacity=60)

        assert row["status"] == "available"
        res = await ledger.reserve(db, reloaded["Early Bird"], 10)
        assert isinstance(res, CommittedReservation)
        assert res.status == "sold-out"

    @pytest.mark.asyncio
    async def test_price_and_status_edit(self, db, reloaded):
        row = await ledger.update_tier(db, reloaded["Latecomer"],
                                       unit_price=1200, status="available")

        assert row["unit_price"] == 1200
        assert row["status"] == "available"
        assert row["sold_count"] == 0

    @pytest.mark.asyncio
    async def test_invalid_status(self, db, reloaded):
        with pytest.raises(ValidationError):
            await ledger.update_tier(db, reloaded["Standard"], status="gone")

    @pytest.mark.asyncio
    async def test_unknown_tier(self, db, reloaded):
        with pytest.raises(NotFoundError):
            await ledger.update_tier(db, "nope", capacity=10)
