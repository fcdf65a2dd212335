import os

os.environ["ENV"] = "test"
os.environ.setdefault("DATABASE_DSN", "sqlite+aiosqlite:///./walkin-test.db")
os.environ.setdefault("QUEUE_DISPLAY_TIMEZONE", "UTC")

import uuid
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from app.core.base import Base
from app.core.db import build_engine
from app.modules.queues import models as _queue_models  # noqa: F401
from app.modules.events import outbox as _outbox  # noqa: F401
from app.modules.queues.schemas import QueueCreate
from app.modules.queues.service import QueueService

ORG = uuid.UUID(int=1)


@pytest.fixture
async def engine(tmp_path):
    # file database so concurrent sessions get their own connections
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def make_queue(session_factory):
    async def _make(**overrides):
        data = {"name": "Front desk", "avg_service_time_minutes": 5}
        data.update(overrides)
        async with session_factory() as s:
            return await QueueService(s).create_queue(ORG, QueueCreate(**data))
    return _make


@pytest.fixture
async def queue(make_queue):
    return await make_queue()
