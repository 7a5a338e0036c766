import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import rewards_engine.models  # noqa: E402,F401
from rewards_engine.db.base import Base  # noqa: E402
from rewards_engine.observability.rewards import RewardObservabilityStore  # noqa: E402
from rewards_engine.rules import DEFAULT_RULES_PATH, load_reward_rules  # noqa: E402
from rewards_engine.services.engine import RewardEngine  # noqa: E402


async def _build_factory(url: str):
    engine = create_async_engine(url, future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session_factory():
    engine, factory = await _build_factory("sqlite+aiosqlite:///:memory:")
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    engine, factory = await _build_factory(f"sqlite+aiosqlite:///{tmp_path / 'rewards.db'}")
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def rules():
    return load_reward_rules(DEFAULT_RULES_PATH)


@pytest.fixture
def reward_store():
    return RewardObservabilityStore()


@pytest.fixture
def reward_engine(session_factory, rules, reward_store):
    return RewardEngine(
        session_factory,
        rules=rules,
        store=reward_store,
        retry_backoff_seconds=0.0,
    )
