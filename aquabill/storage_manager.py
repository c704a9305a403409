from contextlib import contextmanager
from typing import Dict, Iterator, Optional
import logging

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session

from aquabill.config.settings import settings
from aquabill.models.database import Base

logger = logging.getLogger(__name__)


class StorageManager:
    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or settings.database_url

        connect_args = {}
        if self.database_url.startswith("sqlite"):
            # Writers wait for the lock instead of failing straight away
            connect_args = {"check_same_thread": False, "timeout": 30}

        self.engine = create_engine(self.database_url, connect_args=connect_args)
        self.SessionLocal = sessionmaker(
            autoflush=False, expire_on_commit=False, bind=self.engine
        )

        self._init_databases()

    def _init_databases(self):
        """Create tables if they do not exist yet"""
        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("Database tables created/verified")
        except Exception as e:
            logger.error(f"Error initializing database: {e}")
            raise

    def get_db_session(self) -> Session:
        """Get a session for read paths"""
        return self.SessionLocal()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """One unit of work: commits on success, rolls back on any exception."""
        with self.get_db_session() as db:
            with db.begin():
                yield db

    def health_check(self) -> Dict[str, bool]:
        health = {"database": False}
        try:
            with self.get_db_session() as db:
                db.execute(text("SELECT 1"))
            health["database"] = True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
        return health

    def dispose(self):
        self.engine.dispose()
