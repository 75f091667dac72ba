"""
Engine / session factory for the note store.

Defaults to a sqlite file under DATA_DIR; any SQLAlchemy URL works
(NOTES_DB_URL).
"""
from __future__ import annotations

import os

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shieldpool.api.logging_config import get_logger
from shieldpool.database.models import Base

logger = get_logger("database.config")


def make_engine(url: str, echo: bool = False) -> Engine:
    if url.startswith("sqlite:///") and not url.startswith("sqlite:///:memory:"):
        os.makedirs(os.path.dirname(os.path.abspath(url[len("sqlite:///"):])) or ".", exist_ok=True)
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, otherwise every checkout sees an empty database
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, echo=echo, future=True, **kwargs)

    if url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA foreign_keys=ON;")
            cur.close()

    return engine


def init_database(engine: Engine) -> None:
    Base.metadata.create_all(engine)
    logger.debug("note tables ready on %s", engine.url.render_as_string(hide_password=True))


def session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


def check_connection(engine: Engine) -> bool:
    with engine.connect() as cx:
        cx.execute(text("SELECT 1"))
    return True
