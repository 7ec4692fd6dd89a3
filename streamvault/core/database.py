"""
Database connection and session management
"""
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import settings


def build_engine(database_url: str = None, **kwargs) -> Engine:
    """Create a sync engine; extra kwargs go straight to create_engine."""
    return create_engine(database_url or settings.DATABASE_URL, pool_pre_ping=True, **kwargs)


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autocommit=False, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """Context manager for database sessions: commit on success, rollback on error."""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Engine) -> None:
    """Create all tables (idempotent)."""
    from ..models import Base

    Base.metadata.create_all(bind=bind, checkfirst=True)
