"""Database engine, session factory, and declarative base.

One engine and one session factory are created per process.  Services
never import them directly: they receive the factory from
``get_session_factory()`` (via ``app.deps``), so tests can hand them a
factory bound to their own engine.
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import settings


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"echo": settings.debug}
    return {
        "echo": settings.debug,
        "pool_size": 20,
        "max_overflow": 10,
        "isolation_level": settings.database_isolation_level,
    }


engine = create_async_engine(settings.database_url, **_engine_kwargs(settings.database_url))

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# ── Base class ──────────────────────────────────────────────

class Base(DeclarativeBase):
    """Declarative base for every ledger table."""
    pass


# ── Session factory ─────────────────────────────────────────

def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory (overridable in tests)."""
    return async_session

