import asyncio
import os
import sys

from flotix.helpers import from_iso
from flotix.infra.sql import open_database
from flotix.model import catalog
from flotix.model.db import create_schema

LOGO = "https://intheflo.xyz/files/1382195/mixo-reloaded-icon.png"
BACKGROUND = "https://intheflo.xyz/files/1382404/mixo-reloaded-background.png"

EVENTS = [
    {
        "name": "MIXO: Reloaded",
        "description": "The main MIXO party",
        "date": "2026-01-10T17:00:00Z",
        "tickets": [
            {"name": "Early Bird", "price": "5", "max": 50, "sold": 50,
             "code": "EARLY", "status": "sold-out"},
            {"name": "Standard", "price": "7.5", "max": 600, "sold": 0,
             "code": "STANDARD", "status": "available"},
            {"name": "Latecomer", "price": "10", "max": 100, "sold": 0,
             "code": "LATE", "status": "coming-soon"},
        ],
    },
    {
        "name": "MIXO: Heartbeat",
        "description": "Second event",
        "date": "2026-02-14T17:00:00Z",
        "tickets": [
            {"name": "Early Bird", "price": "6", "max": 50, "sold": 0,
             "code": "EARLY", "status": "available"},
            {"name": "Standard", "price": "8.18", "max": 600, "sold": 600,
             "code": "STANDARD", "status": "sold-out"},
            {"name": "Latecomer", "price": "12", "max": 100, "sold": 0,
             "code": "LATE", "status": "coming-soon"},
        ],
    },
]


async def main(database_url: str):
    database = open_database(database_url)
    async with database.engine.begin() as conn:
        await create_schema(conn)
    try:
        async with database.session() as db:
            for ev in EVENTS:
                created = await catalog.create_event(
                    db,
                    name=ev["name"],
                    description=ev["description"],
                    date=from_iso(ev["date"]),
                    logo_url=LOGO,
                    background_url=BACKGROUND,
                    tiers=ev["tickets"],
                )
                print(f'✅ {created["name"]} ({created["id"]})')
                for t in created["tickets"]:
                    print(f'   - {t["name"]:<11} {t["id"]} {t["status"]}')
    finally:
        await database.dispose()


if __name__ == "__main__":
    url = os.environ.get("DATABASE_URL")
    if url is None:
        print("NEED DATABASE_URL!")
        sys.exit(1)
    asyncio.run(main(url))
