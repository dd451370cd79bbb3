"""Database connection and session management."""
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from app.config import get_settings

settings = get_settings()

# SQLite requires check_same_thread=False for FastAPI
connect_args = {"check_same_thread": False} if "sqlite" in settings.database_url else {}

engine = create_engine(
    settings.database_url,
    connect_args=connect_args,
    echo=settings.debug,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC now, matching the ISO strings stored in the tables."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db() -> Generator[Session, None, None]:
    """Dependency that provides a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


ROLLBACK_HOOKS = "after_rollback"


def on_rollback(db: Session, callback: Callable[[], None]) -> None:
    """Run ``callback`` once the enclosing ``atomic`` block has rolled back."""
    db.info.setdefault(ROLLBACK_HOOKS, []).append(callback)


@contextmanager
def atomic(db: Session) -> Generator[Session, None, None]:
    """Run a multi-entity write as one transaction on an existing session.

    Commits on success; any exception rolls back every statement issued
    inside the block and is re-raised. Callbacks registered with
    ``on_rollback`` run in a fresh transaction after the rollback.
    """
    db.info[ROLLBACK_HOOKS] = []
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        for callback in db.info.pop(ROLLBACK_HOOKS, []):
            callback()
        raise
    finally:
        db.info.pop(ROLLBACK_HOOKS, None)
