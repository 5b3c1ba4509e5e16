"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from decimal import Decimal
from typing import Dict

import pytest
import pytest_asyncio

from flotix.artifacts import Artifact, TicketRenderer
from flotix.config import Settings
from flotix.gateway import MockPay
from flotix.helpers import from_iso
from flotix.infra.sql import open_database
from flotix.mailer import OutboxMailer
from flotix.model import catalog
from flotix.model.db import create_schema
from flotix.model.orders import OrderManager


RELOADED_TIERS = [
    {"name": "Early Bird", "price": "5", "max": 50, "sold": 50,
     "code": "EARLY", "status": "sold-out"},
    {"name": "Standard", "price": "7.50", "max": 600, "sold": 0,
     "code": "STANDARD", "status": "available"},
    {"name": "Latecomer", "price": "10", "max": 100, "sold": 0,
     "code": "LATE", "status": "coming-soon"},
]


class StubRenderer(TicketRenderer):
    def __init__(self) -> None:
        self.rendered = []

    def render_ticket(self, code, tier_name, event, email) -> Artifact:
        self.rendered.append(code)
        return Artifact(filename=f"{code}.pdf", content=code.encode())


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'flotix.db'}"


@pytest_asyncio.fixture
async def database(database_url):
    database = open_database(database_url)
    async with database.engine.begin() as conn:
        await create_schema(conn)
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def db(database):
    async with database.session() as s:
        yield s


async def make_event(db, tiers, name="MIXO: Reloaded") -> Dict[str, str]:
    """Create an event; returns {tier name: tier id, "event": event id}."""
    ev = await catalog.create_event(
        db, name=name, date=from_iso("2026-01-10T17:00:00Z"), tiers=tiers,
    )
    ids = {t["name"]: t["id"] for t in ev["tickets"]}
    ids["event"] = ev["id"]
    return ids


@pytest_asyncio.fixture
async def reloaded(db) -> Dict[str, str]:
    return await make_event(db, RELOADED_TIERS)


@pytest.fixture
def settings(database_url) -> Settings:
    return Settings(
        database_url=database_url,
        payment_gateway="mock",
        mail_backend="memory",
        public_url="https://tickets.test",
        tax_rate=Decimal("0.09"),
    )


@pytest.fixture
def gateway() -> MockPay:
    return MockPay()


@pytest.fixture
def mailer() -> OutboxMailer:
    return OutboxMailer()


@pytest.fixture
def renderer() -> StubRenderer:
    return StubRenderer()


@pytest.fixture
def orders(database, gateway, renderer, mailer, settings) -> OrderManager:
    return OrderManager(
        db=database,
        gateway=gateway,
        renderer=renderer,
        mailer=mailer,
        settings=settings,
    )


@pytest.fixture
def event_factory(db):
    async def _make(tiers, name="MIXO: Reloaded"):
        return await make_event(db, tiers, name=name)
    return _make
