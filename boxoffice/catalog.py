"""Ticket type catalogue: lookups for the cart, demo seeding.

    python -m boxoffice.catalog      # seeds DATABASE_URL with demo events
"""
from __future__ import annotations
import asyncio
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import Settings
from .errors import CartError
from .infra.sql import open_database
from .logs import configure_logging
from .model.cart import Cart
from .model.db import TicketType, create_tables

logger = structlog.get_logger(__name__)

DEMO_TICKET_TYPES: List[Dict] = [
    {"id": 1, "event_id": 1, "event_title": "Nairobi Jazz Night",
     "name": "Regular", "price": 150000, "quantity": 500},
    {"id": 2, "event_id": 1, "event_title": "Nairobi Jazz Night",
     "name": "VIP", "price": 450000, "quantity": 50},
    {"id": 5, "event_id": 2, "event_title": "Tech Summit",
     "name": "Early Bird", "price": 2500, "quantity": 200},
    {"id": 6, "event_id": 2, "event_title": "Tech Summit",
     "name": "Standard", "price": 5000, "quantity": 300},
]


async def get_ticket_type(sessions: async_sessionmaker[AsyncSession],
                          gated, ticket_type_id: int) -> Optional[TicketType]:
    async with gated():
        async with sessions() as db:
            return await db.get(TicketType, ticket_type_id)


def check_addable(tt: Optional[TicketType], event_id: Optional[int],
                  quantity: int, cart: Cart) -> TicketType:
    """Raise CartError unless ``quantity`` more of ``tt`` fit in the cart."""
    if tt is None:
        raise CartError("Ticket type not found")
    if event_id is not None and tt.event_id != event_id:
        raise CartError("Ticket type does not belong to this event")
    held = 0
    if cart.event_id == tt.event_id:
        item = cart.item(tt.id)
        held = item.quantity if item else 0
    available = tt.available()
    if available <= 0:
        raise CartError("Tickets are sold out")
    if held + quantity > available:
        raise CartError(f"Only {available} tickets available")
    return tt


async def seed_ticket_types(sessions: async_sessionmaker[AsyncSession],
                            gated, rows: Iterable[Dict]) -> int:
    n = 0
    async with gated():
        async with sessions() as db:
            async with db.begin():
                existing = set((await db.execute(
                    select(TicketType.id)
                )).scalars().all())
                for row in rows:
                    if row["id"] in existing:
                        continue
                    db.add(TicketType(sold=0, **row))
                    n += 1
    return n


async def _main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.env)
    database = open_database(settings)
    try:
        await database.run_ddl(create_tables)
        n = await seed_ticket_types(database.sessions, database.gated,
                                    DEMO_TICKET_TYPES)
        logger.info("catalog.seeded", created=n)
    finally:
        await database.dispose()


if __name__ == "__main__":
    asyncio.run(_main())
