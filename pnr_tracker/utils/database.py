"""
Database connection and session management
Follows dependency injection pattern
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager
from typing import Generator, Optional
import logging
import os

from pnr_tracker.utils.config import settings
from pnr_tracker.models.database import Base

logger = logging.getLogger(__name__)


def get_engine(database_url: Optional[str] = None) -> Engine:
    """
    Create and return SQLAlchemy engine
    Uses StaticPool for SQLite to handle threading
    """
    database_url = database_url or settings.DATABASE_URL

    if database_url.startswith("sqlite"):
        # Ensure data directory exists
        db_path = database_url.replace("sqlite:///", "")
        db_dir = os.path.dirname(db_path)
        if db_dir and db_path != ":memory:" and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)

        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=settings.DEBUG
        )

    return create_engine(
        database_url,
        pool_pre_ping=True,
        echo=settings.DEBUG
    )


def create_session_factory(bind: Engine) -> sessionmaker:
    """
    Session factory shared by the long-lived services
    Objects stay readable after commit since services hand them across sessions
    """
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


# Create session factory
engine = get_engine()
SessionLocal = create_session_factory(engine)


def init_db(bind: Optional[Engine] = None):
    """
    Initialize database - create all tables
    Should be called on application startup
    """
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables ready")


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Transactional scope around a series of operations
    Commits on success, rolls back and re-raises on error
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


class DatabaseManager:
    """
    Database manager for administrative tasks
    """

    def __init__(self, bind: Optional[Engine] = None):
        self.engine = bind or engine

    def create_tables(self):
        """Create all tables"""
        Base.metadata.create_all(bind=self.engine)

    def drop_tables(self):
        """Drop all tables - USE WITH CAUTION"""
        Base.metadata.drop_all(bind=self.engine)

    def reset_database(self):
        """Reset database - drops and recreates all tables"""
        self.drop_tables()
        self.create_tables()
        logger.warning("Database reset: all tables dropped and recreated")


# Export database manager instance
db_manager = DatabaseManager()
