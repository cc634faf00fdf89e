"""Database engine and helpers.

This module configures the SQLModel/SQLAlchemy engine from
`settings.DATABASE_URL` and provides the small helpers used by the
application, scripts and tests. SQLite is the default for local
development; any SQLAlchemy URL works.
"""

from sqlalchemy import event
from sqlmodel import SQLModel, create_engine, Session

from .config import settings

DB_URL = settings.DATABASE_URL
_is_sqlite = DB_URL.startswith("sqlite")

engine = create_engine(
    DB_URL,
    echo=False,
    connect_args={"check_same_thread": False} if _is_sqlite else {},
)


if _is_sqlite:
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_db_and_tables():
    """Create database tables using SQLModel metadata.

    Intended for local development and tests; production deployments
    should manage the schema with a migration tool instead.
    """
    from . import models  # noqa: F401  (registers tables on the metadata)
    SQLModel.metadata.create_all(engine)


def get_session():
    """Yield a database `Session` for FastAPI dependency injection.

    The generator yields a session and ensures it is closed when the
    request scope finishes. Objects stay loaded after commit so handlers
    can return rows that were committed by a later audit write.
    """
    with Session(engine, expire_on_commit=False) as session:
        yield session
