from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (url.endswith(":memory:") or url.endswith("://"))


def make_engine(database_url: Optional[str] = None) -> Engine:
    """Engine for ``database_url`` (defaults to the configured one).

    SQLite connections are shared across threads because the rollover
    gateway runs the service layer in a worker thread. In-memory databases
    keep a single connection so every session sees the same tables.
    """
    url = database_url or get_settings().database_url
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)

    kwargs: dict[str, object] = {"connect_args": {"check_same_thread": False}}
    if _is_memory_sqlite(url):
        kwargs["poolclass"] = StaticPool
    eng = create_engine(url, **kwargs)
    event.listen(eng, "connect", enable_sqlite_pragmas)
    return eng


def enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = make_engine()
SessionLocal = make_session_factory(engine)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    session: Session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
