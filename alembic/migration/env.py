from logging.config import fileConfig
import os
import sys

from sqlalchemy import create_engine, pool
from alembic import context
from dotenv import load_dotenv

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# the CLI runs on the host, outside the app's environment
load_dotenv(os.path.join(PROJECT_ROOT, ".env"))

from verify_service.database import Base
from verify_service import models  # noqa: F401
from verify_service.settings import settings

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def migration_url() -> str:
    """Synchronous URL for migrations; the app's asyncpg driver is swapped for psycopg."""
    url = settings.ALEMBIC_DATABASE_URL or str(settings.DATABASE_URL)
    return url.replace("+asyncpg", "+psycopg")


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=Base.metadata,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    _configure(
        url=migration_url(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(migration_url(), poolclass=pool.NullPool)
    with engine.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()
    engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
