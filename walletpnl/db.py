from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Callable

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from walletpnl.config import Settings, settings

_JOURNAL_MODES = {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}


class Base(DeclarativeBase):
    """Declarative base for the display-name table."""


def _journal_mode(config: Settings) -> str:
    mode = config.sqlite_journal_mode.strip().upper()
    return mode if mode in _JOURNAL_MODES else "WAL"


def build_engine(url: str, config: Settings = settings, **engine_kwargs: Any) -> Engine:
    """Create an engine; SQLite connections get the busy timeout and journal mode."""
    if not url.startswith("sqlite"):
        return create_engine(url, future=True, **engine_kwargs)

    busy_timeout_ms = max(config.sqlite_busy_timeout_ms, 0)
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": busy_timeout_ms / 1000.0},
        future=True,
        **engine_kwargs,
    )
    pragmas = (
        f"PRAGMA busy_timeout={busy_timeout_ms}",
        f"PRAGMA journal_mode={_journal_mode(config)}",
        "PRAGMA synchronous=NORMAL",
    )

    @event.listens_for(engine, "connect")
    def _apply_pragmas(dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        for statement in pragmas:
            cursor.execute(statement)
        cursor.close()

    return engine


def make_session_factory(bind: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, class_=Session)


engine = build_engine(settings.database_url)
SessionLocal = make_session_factory(engine)


@contextmanager
def session_scope(session_factory: Callable[[], Session] = SessionLocal) -> Iterator[Session]:
    """Yield a session that commits on success and rolls back on error."""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    """Create the tables if they do not exist."""
    from walletpnl import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
