"""Alembic environment for the lifecycle schema (async SQLAlchemy).

The database URL comes from cardmarket settings unless overridden with
``alembic -x db_url=... upgrade head``.
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine

from cardmarket.config import settings
from cardmarket.database import Base
from cardmarket.models.account import Account, SubscriptionSnapshot  # noqa: F401
from cardmarket.models.listing import Listing  # noqa: F401
from cardmarket.models.offer import Offer  # noqa: F401
from cardmarket.models.side_records import OwnerListingIndex, ShortIdMapping  # noqa: F401
from cardmarket.models.wanted_post import WantedPost  # noqa: F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    return context.get_x_argument(as_dictionary=True).get("db_url", settings.database_url)


def run_migrations_offline() -> None:
    """Emit SQL to stdout instead of connecting."""
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        compare_type=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection, target_metadata=target_metadata, compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    engine = create_async_engine(_database_url())
    async with engine.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
