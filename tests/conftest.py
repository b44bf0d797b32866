import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from pipeline import models  # noqa: F401
from pipeline.config import load_settings
from pipeline.db import Base
from pipeline.services.listing_store import ListingStore


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: slow running tests")


@pytest.fixture
def settings(tmp_path):
    return load_settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'listings.sqlite'}",
        IMAGE_CACHE_DIR=str(tmp_path / "cache"),
        STORAGE_ENDPOINT_URL="https://r2.example.com",
        STORAGE_BUCKET="listing-images",
        STORAGE_ACCESS_KEY_ID="test-key",
        STORAGE_SECRET_ACCESS_KEY="test-secret",
        STORAGE_PUBLIC_URL="https://cdn.example.com",
        STORAGE_PREFIX="cache",
        FETCH_MAX_RETRIES=2,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    db_path = tmp_path / "repo_tests.sqlite"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session_factory):
    return ListingStore(session_factory, retry_delay_s=0)
