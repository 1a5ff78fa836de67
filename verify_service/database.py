from sqlalchemy.ext.asyncio import (
    async_sessionmaker,
    create_async_engine,
    AsyncSession,
    AsyncEngine,
)
from sqlalchemy.orm import declarative_base
from verify_service.settings import settings


def _engine_kwargs(url: str) -> dict:
    # asyncpg enforces a per-statement timeout; surfaced as Timeout by the stores
    if "+asyncpg" in url:
        return {
            "connect_args": {
                "timeout": settings.DATABASE_COMMAND_TIMEOUT_SECONDS,
                "command_timeout": settings.DATABASE_COMMAND_TIMEOUT_SECONDS,
            }
        }
    return {}


_db_url = str(settings.DATABASE_URL)
engine = create_async_engine(_db_url, echo=False, future=True, **_engine_kwargs(_db_url))
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

Base = declarative_base()


async def get_db() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for writers that must commit independently (audit log)."""
    return AsyncSessionLocal


def create_worker_session() -> tuple[async_sessionmaker[AsyncSession], AsyncEngine]:
    """
    Engine and session factory for one Celery task run.

    Each task drives its own event loop through asyncio.run, so it cannot
    share connections with the module-level engine. The caller disposes the
    returned engine.
    """
    db_url = str(settings.DATABASE_WORKER_URL or settings.DATABASE_URL)
    worker_engine = create_async_engine(
        db_url, echo=False, future=True, **_engine_kwargs(db_url)
    )
    worker_session = async_sessionmaker(
        worker_engine, expire_on_commit=False, autoflush=False
    )
    return worker_session, worker_engine
