"""Database connection and session management"""
import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from playledger.models.db import Base

logger = logging.getLogger(__name__)

class Database:
    """Database connection and session manager"""

    def __init__(self):
        """Initialize database manager state"""
        self._engine = None
        self._SessionLocal = None
        self.single_connection = False

    def init(self, url: str, create_tables: bool = True) -> None:
        """
        Initialize database connection and optionally create tables.

        In-memory SQLite shares a single connection so every session sees
        the same data; such a database must be used from one thread at a time.
        """
        try:
            engine_kwargs = {}
            if url.startswith('sqlite'):
                engine_kwargs['connect_args'] = {'check_same_thread': False}
                if url in ('sqlite://', 'sqlite:///:memory:'):
                    engine_kwargs['poolclass'] = StaticPool
            self.single_connection = engine_kwargs.get('poolclass') is StaticPool
            self._engine = create_engine(url, **engine_kwargs)
            if create_tables:
                Base.metadata.create_all(self._engine)
            self._SessionLocal = sessionmaker(bind=self._engine, expire_on_commit=False)
            logger.info("Database initialized successfully")

        except SQLAlchemyError as e:
            logger.error(f"Database initialization failed: {e}")
            raise

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Provide a transactional scope around a series of operations"""
        if not self._SessionLocal:
            raise RuntimeError("Database not initialized. Call init() first.")

        session = self._SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        """
        Clean up database connections.
        Should be called during application shutdown.
        """
        if self._engine:
            self._engine.dispose()
            self._engine = None
            self._SessionLocal = None

# Global database instance
db = Database()

def init_db(url: Optional[str] = None) -> Database:
    """Initialize the global database from settings unless a URL is given"""
    if url is None:
        from playledger.config import get_settings
        url = get_settings().DATABASE_URL
    db.init(url)
    return db
