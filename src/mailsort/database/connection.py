"""
Database connection management for mailsort
"""
from contextlib import contextmanager
from typing import Callable, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base

SessionFactory = Callable[[], Session]


def create_db_engine(database_url: str) -> Engine:
    """Create the engine; in-memory SQLite shares one connection"""
    if database_url in ('sqlite://', 'sqlite:///:memory:'):
        return create_engine(
            database_url,
            connect_args={'check_same_thread': False},
            poolclass=StaticPool,
        )
    return create_engine(database_url)


def init_db(engine: Engine) -> None:
    """Initialize the database, creating all tables"""
    Base.metadata.create_all(bind=engine)


def create_session_factory(database_url: str) -> sessionmaker:
    """Create the tables if needed and return a session factory"""
    engine = create_db_engine(database_url)
    init_db(engine)
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@contextmanager
def get_db_session(session_factory: SessionFactory) -> Iterator[Session]:
    """Get a session that commits on success and rolls back on error"""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
