from collections.abc import Generator, Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from followup.core.config import settings


def _engine_options(url: str) -> dict[str, Any]:
    # API threads and the dispatch pool share SQLite connections in local runs.
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    # Celery workers hold connections across long idle gaps between sweeps.
    return {"pool_pre_ping": True}


engine = create_engine(settings.database_url, future=True, **_engine_options(settings.database_url))
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


def get_db() -> Generator[Session, None, None]:
    """Yield a session that commits on success and rolls back on error."""

    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Context-manager flavour of :func:`get_db` for worker tasks and scripts."""

    yield from get_db()
