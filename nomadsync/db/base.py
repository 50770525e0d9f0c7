"""SQLAlchemy engine helpers.

The remote endpoint targets PostgreSQL in production but supports SQLite for
local development and CI; the device-side local store is always SQLite. No
declarative models are defined here; this module only manages connection
lifecycle.
"""

from __future__ import annotations

import logging
import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


def _db_url() -> str:
    return (
        os.getenv("TEST_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or "sqlite+pysqlite:///:memory:"
    )


def _enable_sqlite_wal(dbapi_conn, _record) -> None:  # type: ignore[no-untyped-def]
    cur = dbapi_conn.cursor()
    try:
        cur.execute("PRAGMA journal_mode=WAL")
        # Every commit is synced to disk before it returns
        cur.execute("PRAGMA synchronous=FULL")
    finally:
        cur.close()


def build_engine(url: str) -> Engine:
    """Create a new Engine for `url`.

    For SQLite in-memory URLs, use a StaticPool to keep a single connection
    alive across sessions and worker threads. File-backed SQLite databases run
    in WAL mode with `synchronous=FULL` so a committed write is durable
    before the call returns.
    """
    kwargs: dict = {"future": True, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url.rstrip("/").endswith("sqlite:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)
    if url.startswith("sqlite") and ":memory:" not in url:
        event.listen(engine, "connect", _enable_sqlite_wal)
    return engine


# Module-level cached Engine for the remote endpoint process
_ENGINE: Engine | None = None
_ENGINE_URL: str | None = None


def get_engine(url: str | None = None) -> Engine:
    """Return a singleton SQLAlchemy Engine for the given URL.

    Reuses a module-level Engine so repositories of the remote endpoint share
    the same connection pool. The device-side local store never uses this
    singleton; it owns its engine through the client context.
    """
    global _ENGINE, _ENGINE_URL
    resolved_url = url or _db_url()

    if _ENGINE is None or _ENGINE_URL != resolved_url:
        _ENGINE = build_engine(resolved_url)
        logger.info("db_engine_created dialect=%s", _ENGINE.dialect.name)
        _ENGINE_URL = resolved_url

    return _ENGINE

