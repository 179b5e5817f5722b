import os

# Settings are read at import time; point the default engine at SQLite so
# importing the package never needs a running Postgres.
os.environ.setdefault("BULKMEND_SQLALCHEMY_DATABASE_URI", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("BULKMEND_TRIGGER_SHARED_SECRET", "")

import fakeredis
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from bulkmend.db.models import Tenant
from bulkmend.db.session import create_schema
from bulkmend.domain.models import JobSpec

TENANT_ID = "acme.myshopify.com"

@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'bulkmend.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session

@pytest.fixture
async def tenant(session_factory):
    async with session_factory() as session:
        tenant = Tenant(id=TENANT_ID, name="Acme", access_token="shpat_test", api_version="2024-10")
        session.add(tenant)
        await session.commit()
    return tenant

@pytest.fixture
async def redis():
    client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()

@pytest.fixture
def spec():
    return JobSpec(
        query_string="tag:summer",
        namespace="custom",
        key="season",
        type="single_line_text_field",
        value="summer",
        dry_run=False,
        max_items=100,
    )
