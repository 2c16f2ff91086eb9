import random
from datetime import datetime

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from omniverify.config import Settings
from omniverify.context import build_context
from omniverify.db import Base
from omniverify.services.batch_composer import BatchComposer
from omniverify.workers.handlers import JobHandlers
import omniverify.models  # noqa: F401

from .fakes import FakeBouncer, FakeClock, FakeJobQueue


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 12, 0, 0))


@pytest.fixture
async def session_maker():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def jobs():
    return FakeJobQueue()


@pytest.fixture
def bouncer():
    return FakeBouncer()


@pytest.fixture
def ctx(settings, session_maker, jobs, bouncer, clock):
    return build_context(
        settings=settings,
        session_maker=session_maker,
        jobs=jobs,
        client=bouncer,
        composer=BatchComposer(rng=random.Random(0)),
        clock=clock,
    )


@pytest.fixture
def handlers(ctx):
    return JobHandlers(ctx)
