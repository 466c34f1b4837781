"""
Database engine and session management.

PostgreSQL in production. SQLite URLs are accepted for local runs and tests;
in-memory SQLite shares one connection so every session sees the same data.
Includes connection-pool observability via SQLAlchemy pool events.
"""
from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.pool import Pool, StaticPool
from contextlib import contextmanager
from typing import Generator
import time

from tradebook.exceptions import PersistenceError
from tradebook.monitoring.logger import get_logger

logger = get_logger(__name__)
_pool_logger = get_logger("db.pool")

# Base class for ORM models
Base = declarative_base()


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str, pool_size: int = 10, max_overflow: int = 20):
        """
        Initialize database connection.

        Args:
            database_url: PostgreSQL (or SQLite) connection string
        """
        if not database_url.startswith(("postgresql", "sqlite")):
            raise ValueError(
                f"Unsupported database: {database_url[:30]}... "
                "Set DATABASE_URL to a postgresql:// connection string."
            )

        self.database_url = database_url

        if self.is_postgres:
            self.engine = create_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,  # Verify connections before using
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_recycle=3600,
                pool_timeout=30,
            )
        elif database_url in ("sqlite://", "sqlite:///:memory:"):
            self.engine = create_engine(
                database_url,
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(
                database_url,
                echo=False,
                connect_args={"check_same_thread": False},
            )

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        _register_pool_events(self.engine.pool)

    @property
    def is_postgres(self) -> bool:
        return self.database_url.startswith("postgresql")

    def create_all(self):
        """Create all tables."""
        # Models register themselves on Base.metadata at import time
        import tradebook.storage.repository  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    def drop_all(self):
        """Drop all tables (use with caution!)."""
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for one unit of work.

        Commits on success. Any failure rolls back; SQLAlchemy failures are
        re-raised as PersistenceError so callers see one error type.

        Example:
            with db.get_session() as session:
                session.add(obj)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("DB_TRANSACTION_FAILED", error=str(e), error_type=type(e).__name__)
            raise PersistenceError(f"Transaction rolled back: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


_db_instance: Database | None = None


def get_db() -> Database:
    """
    Get or create the global database instance from configuration.
    """
    global _db_instance
    if _db_instance is None:
        from tradebook.config.config import load_config

        config = load_config()
        _db_instance = init_db(
            config.resolve_database_url(),
            pool_size=config.database.pool_size,
            max_overflow=config.database.max_overflow,
        )
    return _db_instance


def init_db(database_url: str, **engine_options) -> Database:
    """
    Initialize database with specific URL and create missing tables.

    Args:
        database_url: PostgreSQL (or SQLite) connection string

    Returns:
        Database instance
    """
    global _db_instance
    _db_instance = Database(database_url, **engine_options)
    _db_instance.create_all()
    return _db_instance


# ---------------------------------------------------------------------------
# Connection-pool observability
# ---------------------------------------------------------------------------

def _register_pool_events(pool: Pool) -> None:
    """
    Attach SQLAlchemy pool event listeners for observability.

    Logs:
      - ``POOL_CHECKOUT``:   A connection was checked out.
      - ``POOL_CHECKIN``:    A connection was returned, with hold time.
      - ``POOL_INVALIDATE``: A connection was invalidated (e.g. stale).
    """

    @event.listens_for(pool, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy):
        connection_record.info["checkout_time"] = time.monotonic()
        _pool_logger.debug("POOL_CHECKOUT")

    @event.listens_for(pool, "checkin")
    def _on_checkin(dbapi_connection, connection_record):
        checkout_time = connection_record.info.pop("checkout_time", None)
        held_ms = (
            round((time.monotonic() - checkout_time) * 1000, 1)
            if checkout_time is not None
            else None
        )
        _pool_logger.debug("POOL_CHECKIN", held_ms=held_ms)

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(dbapi_connection, connection_record, exception):
        _pool_logger.warning(
            "POOL_INVALIDATE",
            error=str(exception) if exception else None,
        )

