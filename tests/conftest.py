"""
Shared fixtures.

Every test gets its own SQLite file database holding all service tables.
NullPool keeps connections out of any particular event loop, so the same
factory works from async tests and from the ASGI apps they call.
"""
import os

# The service apps read this at import time.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from services.inventory.app.schema import metadata as inventory_metadata
from services.order.app.schema import metadata as order_metadata
from services.payment.app.schema import metadata as payment_metadata


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite file with every table created."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        for metadata in (inventory_metadata, payment_metadata, order_metadata):
            await conn.run_sync(metadata.create_all)

    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def redis():
    """Pub/sub stand-in: records ``publish`` calls."""
    return AsyncMock()
