from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import MetaData, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .errors import AutomationError, StorageError


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def coerce_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def build_session_factory(database_url: str, metadata: MetaData, *, backend_env: str) -> sessionmaker[Session]:
    if not database_url:
        raise RuntimeError(f"DATABASE_URL is required for {backend_env}=postgres")
    engine = create_engine(database_url, future=True, pool_pre_ping=True)
    # SQLite is used in tests. Production Postgres relies on migrations.
    if database_url.startswith("sqlite"):
        metadata.create_all(engine)
    return sessionmaker(engine, expire_on_commit=False, future=True)


@contextmanager
def transaction(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    """Run one unit of work; database failures surface as StorageError."""
    try:
        with session_factory() as session:
            with session.begin():
                yield session
    except AutomationError:
        raise
    except SQLAlchemyError as exc:
        raise StorageError(f"database operation failed: {exc.__class__.__name__}") from exc
