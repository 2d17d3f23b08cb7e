"""
Database connection management for Convotag.

Provides engine construction, session management and transaction support.
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import JSON, create_engine, event, text
from sqlalchemy.dialects import postgresql
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from convotag.config import settings
from convotag.models.db import Base

logger = logging.getLogger(__name__)

# Seconds a SQLite connection waits on the database write lock
SQLITE_BUSY_TIMEOUT = 30


# Replace JSONB with JSON when creating tables on SQLite
@event.listens_for(Base.metadata, "before_create")
def _set_json_type(target, connection, **kw):  # pragma: no cover - compat hook
    if connection.dialect.name != "sqlite":
        return
    for table in target.tables.values():
        for column in table.columns:
            if isinstance(column.type, postgresql.JSONB):
                column.type = JSON()


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the given URL.

    SQLite engines allow cross-thread use, wait on the write lock instead of
    failing immediately and enforce foreign keys. PostgreSQL engines use a
    bounded connection pool configured from settings.

    Args:
        database_url: SQLAlchemy database URL
        echo: Log emitted SQL

    Returns:
        Engine: Configured SQLAlchemy engine
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={
                "check_same_thread": False,
                "timeout": SQLITE_BUSY_TIMEOUT,
            },
            pool_pre_ping=True,
        )

        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT * 1000}")
            cursor.close()

        return engine

    # Total connections per process = pool_size + max_overflow
    # Configure via DB_POOL_* environment variables
    return create_engine(
        database_url,
        echo=echo,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_pool_max_overflow,
        pool_pre_ping=True,  # Verify connections before using
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
    )


class Database:
    """
    Engine plus session factory for one database.

    Services and workers receive a Database instead of reaching for a global
    engine, so tests can point everything at a throwaway SQLite file.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        engine: Optional[Engine] = None,
        echo: bool = False,
    ):
        self.database_url = database_url or settings.database_url
        self.engine = engine or create_db_engine(self.database_url, echo=echo)
        self.session_factory = sessionmaker(
            bind=self.engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @property
    def is_sqlite(self) -> bool:
        return self.dialect_name == "sqlite"

    @contextmanager
    def session_scope(self, snapshot: bool = False) -> Generator[Session, None, None]:
        """
        Context manager for a unit of work with automatic cleanup.

        Commits on success, rolls back on any exception and always closes.

        Args:
            snapshot: Run every read in the block against one consistent
                snapshot (REPEATABLE READ on PostgreSQL)

        Yields:
            Session: A SQLAlchemy session

        Example:
            >>> with database.session_scope() as session:
            >>>     session.add(Tag(name="exam_preparation", display_name="Exam"))
        """
        session = self.session_factory()
        if snapshot and not self.is_sqlite:
            session.connection(execution_options={"isolation_level": "REPEATABLE READ"})
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_db(self) -> None:
        """
        Create all tables.

        Used for SQLite and tests; PostgreSQL deployments use Alembic
        migrations (`alembic upgrade head`).
        """
        Base.metadata.create_all(bind=self.engine)

    def check_connection(self) -> bool:
        """
        Check if the database connection is working.

        Returns:
            bool: True if connection successful, False otherwise
        """
        try:
            with self.session_scope() as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database connection failed: {e}")
            return False

    def dispose(self) -> None:
        """Close all pooled connections."""
        self.engine.dispose()


_default_database: Optional[Database] = None


def get_database() -> Database:
    """Get the process-wide Database built from settings (created lazily)."""
    global _default_database
    if _default_database is None:
        _default_database = Database()
    return _default_database


@contextmanager
def db_session() -> Generator[Session, None, None]:
    """
    Context manager for a session on the process-wide database.

    Yields:
        Session: A SQLAlchemy session

    Example:
        >>> with db_session() as db:
        >>>     conversation = db.query(Conversation).first()
    """
    with get_database().session_scope() as session:
        yield session


def init_db() -> None:
    """Create all tables on the process-wide database."""
    get_database().init_db()


def check_connection() -> bool:
    """Check the process-wide database connection."""
    return get_database().check_connection()
