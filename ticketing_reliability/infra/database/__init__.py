"""Database infrastructure package.

Example:
    from ticketing_reliability.infra.database import create_engine, create_session_factory

    engine = create_engine()
    session_factory = create_session_factory(engine)

    async with session_factory() as session:
        result = await session.execute(...)
"""

from .session import (
    close_database,
    create_engine,
    create_session_factory,
    ensure_tables,
    init_database,
)

__all__ = [
    "close_database",
    "create_engine",
    "create_session_factory",
    "ensure_tables",
    "init_database",
]
