import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS = 15


def build_engine(database_url: Optional[str] = None) -> Engine:
    """Engine for ``database_url``, or for the configured database.

    SQLite connections get WAL journaling, enforced foreign keys and a busy
    timeout so concurrent webhook and scheduler writers wait instead of
    failing immediately.
    """
    url = database_url or get_settings().database_url
    is_sqlite = url.startswith("sqlite")
    connect_args: dict[str, object] = {}
    if is_sqlite:
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT_SECONDS

    eng = create_engine(url, connect_args=connect_args)
    if is_sqlite:
        event.listen(eng, "connect", _configure_sqlite_connection)
    return eng


def _configure_sqlite_connection(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


engine = build_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        logger.exception("session_rollback")
        session.rollback()
        raise
    finally:
        session.close()
