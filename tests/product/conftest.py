from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from product_service.store import SqlProductStore, create_schema


@pytest_asyncio.fixture
async def product_store():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:", poolclass=StaticPool, echo=False
    )
    await create_schema(engine)
    yield SqlProductStore(async_sessionmaker(engine, expire_on_commit=False))
    await engine.dispose()


@pytest.fixture
def redis_conn():
    conn = MagicMock()
    conn.publish = AsyncMock(return_value=1)
    return conn
