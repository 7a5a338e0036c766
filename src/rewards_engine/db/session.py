"""Async engine and session factory bound to the configured database."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from rewards_engine.core.settings import settings

engine = create_async_engine(settings.database_url, echo=settings.sql_echo, future=True)

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
