import os

# Settings are read at import time; keep tests off real infrastructure.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["META_ACCESS_TOKEN"] = ""

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import models  # noqa: F401
from database import Base


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "feedback.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker

    await engine.dispose()
