"""Async database engine and session management."""

from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""

    pass


class Database:
    """Owns the engine and session factory for one application instance."""

    def __init__(self, url: str, echo: bool = False):
        engine_kwargs: dict = {"echo": echo}
        if not url.startswith("sqlite"):
            engine_kwargs.update(pool_pre_ping=True, pool_size=10, max_overflow=20)
        elif url.endswith(":memory:") or url.endswith("//"):
            # One shared connection, otherwise every checkout sees an empty database
            engine_kwargs.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
        self.engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_all(self) -> None:
        """Create all tables (development and tests; production uses Alembic)."""
        # Register every mapped table on Base.metadata
        from entitlement_sync.modules.auth import models as _auth_models  # noqa: F401
        from entitlement_sync.modules.billing import models as _billing_models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self.session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session bound to the app's database."""
    database: Database = request.app.state.database
    async for session in database.session():
        yield session
