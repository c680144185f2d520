# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Two engines share one PostgreSQL schema:
# - Async engine (asyncpg) for FastAPI route handlers and middleware
# - Sync engine (psycopg2) for Celery workers, created lazily
#
# SESSION LIFECYCLE (FastAPI):
# 1. `get_async_session` dependency opens a session per request
# 2. Route handler reads/writes through it
# 3. Commit on normal exit, rollback on exception
#
# Self-managed sessions (`async_session_factory()` directly) are used by
# middleware that runs outside the dependency lifecycle; those MUST commit
# explicitly.
# =============================================================================

from collections.abc import AsyncGenerator, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from esop_analyzer.config import settings

# ---------------------------------------------------------------------------
# Async Engine
# ---------------------------------------------------------------------------
# echo mirrors debug mode so generated SQL is visible during development.
# ---------------------------------------------------------------------------
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=10,
)

# expire_on_commit=False keeps loaded attributes readable after commit,
# which async code cannot lazily refresh outside a session.
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Sync Engine — For Celery Workers (Lazy Initialization)
# ---------------------------------------------------------------------------
# psycopg2 is only needed by workers; lazy creation keeps the API process
# from requiring it at import time.
# ---------------------------------------------------------------------------

_sync_engine = None
_sync_session_factory = None


def _get_sync_engine():
    """Lazily create and cache the sync SQLAlchemy engine."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(
            settings.database_url_sync,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
        )
    return _sync_engine


def _get_sync_session_factory():
    """Lazily create and cache the sync session factory."""
    global _sync_session_factory
    if _sync_session_factory is None:
        _sync_session_factory = sessionmaker(
            bind=_get_sync_engine(),
            class_=Session,
            expire_on_commit=False,
        )
    return _sync_session_factory


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """
    Context manager that provides a sync database session for Celery workers.

    Usage in Celery tasks:
        with get_sync_session() as session:
            job = session.get(ProcessingJob, job_id)
            job.progress = 40
            # Auto-commits on exit, auto-rollbacks on exception
    """
    factory = _get_sync_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a database session per request.

    Usage in route handlers:
        @router.get("/documents")
        async def list_documents(session: AsyncSession = Depends(get_async_session)):
            result = await session.execute(select(Document))
            return result.scalars().all()
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_models() -> None:
    """
    Create the pgvector extension and all tables if they do not exist.

    Called once from the application lifespan. Schema migrations are out of
    scope; `create_all` only adds missing tables.
    """
    from esop_analyzer.db.models import Base

    async with async_engine.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        await conn.run_sync(Base.metadata.create_all)
