"""Alembic environment for the export service's own tables."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import context
from sqlalchemy import pool

from ppc_backend.db.config import get_database_settings
from ppc_backend.db.models import Base, research_view_metadata

settings = get_database_settings()
context.config.set_main_option("sqlalchemy.url", settings.url)

# The v_research_* views are owned by the clinical database.
VIEW_NAMES = frozenset(research_view_metadata.tables)


def include_object(obj, name, type_, reflected, compare_to) -> bool:
    return not (type_ == "table" and name in VIEW_NAMES)


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=Base.metadata,
        include_object=include_object,
        compare_type=True,
        **kwargs,
    )


if context.is_offline_mode():
    _configure(url=settings.url, literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()
else:
    # Pool sizing is meaningless under NullPool; only the connect args carry over.
    connect_args = settings.engine_options().get("connect_args", {})
    engine = sa.create_engine(settings.url, connect_args=connect_args, poolclass=pool.NullPool)
    with engine.begin() as connection:
        _configure(connection=connection, transaction_per_migration=True)
        context.run_migrations()
    engine.dispose()
