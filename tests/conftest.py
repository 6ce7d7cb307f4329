import asyncio

import fakeredis.aioredis
import pytest
from fastapi.testclient import TestClient

from boxoffice.catalog import DEMO_TICKET_TYPES, seed_ticket_types
from boxoffice.config import Settings
from boxoffice.fulfillment import OrderFulfillment
from boxoffice.infra.sql import open_database
from boxoffice.infra.timings import TIMINGS
from boxoffice.model.db import create_tables
from boxoffice.model.pendingpayment import new_store
from boxoffice.model.pendingpayment._sql import create_schema
from boxoffice.server import create_app, current_user

USER_ID = 1


@pytest.fixture(autouse=True)
def _reset_timings():
    yield
    TIMINGS.reset()


@pytest.fixture()
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'boxoffice.db'}"


# ----------------------------
# Async building blocks
# ----------------------------
@pytest.fixture()
async def db(database_url):
    """(sessionmaker, gated) over a fresh SQLite file with all tables."""
    database = open_database(Settings(database_url=database_url))
    await database.run_ddl(create_tables, create_schema)
    await seed_ticket_types(database.sessions, database.gated,
                            DEMO_TICKET_TYPES)
    yield database.sessions, database.gated
    await database.dispose()


@pytest.fixture()
def fulfillment(db):
    SessionAsync, gated = db
    return OrderFulfillment(SessionAsync, gated)


@pytest.fixture()
async def redis_client():
    r = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield r
    await r.flushall()
    await r.aclose()


@pytest.fixture()
def pending(redis_client):
    return new_store(backend="redis", r=redis_client, ttl_seconds=3600)


# ----------------------------
# Application
# ----------------------------
async def _prepare(database_url):
    database = open_database(Settings(database_url=database_url))
    try:
        await database.run_ddl(create_tables)
        await seed_ticket_types(database.sessions, database.gated,
                                DEMO_TICKET_TYPES)
    finally:
        await database.dispose()


@pytest.fixture()
def settings(database_url):
    return Settings(
        database_url=database_url,
        pending_backend="sql",
        session_secret="test-secret",
        # nothing listens here: MockPay's notification post fails fast
        public_base_url="http://127.0.0.1:9",
        status_query_timeout=2.0,
        providers=("mockpay", "instant"),
        admin_user_ids=(USER_ID,),
        env="test",
    )


@pytest.fixture()
def app(settings):
    asyncio.run(_prepare(settings.database_url))
    app = create_app(settings)
    app.dependency_overrides[current_user] = lambda: USER_ID
    return app


@pytest.fixture()
def client(app):
    with TestClient(app, follow_redirects=False) as c:
        yield c
