"""
Database handle for FileTrack.
Owns the SQLAlchemy engine and session factory for the lifetime of the process.
"""
import logging
from typing import Optional

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from filetrack.errors import StorageUnavailable
from filetrack.models import Base

logger = logging.getLogger(__name__)


class Database:
    """
    Explicitly constructed persistence handle.
    Call open() at startup and close() at shutdown; sessions are only
    available while the handle is open.
    """

    def __init__(self, url: str, **engine_kwargs):
        self.url = url
        self.engine_kwargs = engine_kwargs
        self.engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    @property
    def is_open(self) -> bool:
        return self.engine is not None

    def open(self) -> "Database":
        """Create the engine and all tables. Opening twice is a no-op."""
        if self.is_open:
            return self
        try:
            self.engine = create_engine(self.url, echo=False, **self.engine_kwargs)
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as exc:
            self.engine = None
            logger.exception("Could not open database")
            raise StorageUnavailable("Database is unavailable") from exc
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        logger.info("Database opened (%s)", self.engine.url.render_as_string(hide_password=True))
        return self

    def session(self) -> Session:
        if self._session_factory is None:
            raise StorageUnavailable("Database is not open")
        return self._session_factory()

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            logger.info("Database closed")
        self.engine = None
        self._session_factory = None


def get_db(request: Request):
    """
    Dependency function for FastAPI to get database session.
    Yields session and ensures cleanup after request.
    """
    db = request.app.state.database.session()
    try:
        yield db
    finally:
        db.close()
