import logging
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings


logger = logging.getLogger(__name__)


def _create_engine(database_url: str) -> Engine:
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    eng = create_engine(database_url, connect_args=connect_args)
    if database_url.startswith("sqlite"):
        event.listen(eng, "connect", enable_sqlite_pragmas)
    return eng


def _unicode_lower(value: Optional[str]) -> Optional[str]:
    return value.lower() if isinstance(value, str) else value


def enable_sqlite_pragmas(dbapi_conn, _record):
    # ON DELETE CASCADE / SET NULL on transactions only fire with foreign_keys=ON
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()
    # SQLite's built-in lower() only folds ASCII; match Python's str.lower().
    dbapi_conn.create_function("lower", 1, _unicode_lower, deterministic=True)


engine = _create_engine(get_settings().database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def init_db(bind: Engine = engine) -> None:
    """Create missing tables. Alembic owns real schema changes."""
    import models  # noqa: F401  registers the mapped tables on Base.metadata

    Base.metadata.create_all(bind)
    logger.info(f"database_ready: url={bind.url.render_as_string(hide_password=True)}")


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
