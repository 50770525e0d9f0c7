"""Lightweight SQL migrations runner for the remote endpoint.

Applies .sql files in lexical order from `nomadsync/db/migrations/`. Skips
rollback files and records applied filenames in a `schema_migrations` table
so the same migration is never applied twice to a database. Production
deployments may use Alembic or the platform's migration mechanism instead.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from sqlalchemy import text as sql_text
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

_JOURNAL_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    filename TEXT PRIMARY KEY,
    applied_at TEXT NOT NULL
)
"""


def _iter_sql_files(root: Path) -> Iterable[Path]:
    for p in sorted(root.glob("*.sql")):
        if "rollback" in p.name.lower():
            continue
        yield p


def _split_statements(sql: str) -> list[str]:
    """Split a migration script into statements.

    Neither pysqlite nor psycopg2 accepts multiple statements per execute()
    portably, so statements are separated on ';'. Full-line `--` comments are
    removed before splitting, since they may contain ';' themselves. Explicit
    transaction statements are dropped since the runner already holds a
    transaction.
    """
    code = "\n".join(ln for ln in sql.splitlines() if not ln.strip().startswith("--"))
    out: list[str] = []
    for stmt in code.split(";"):
        s = stmt.strip()
        if not s:
            continue
        if s.upper() in {"BEGIN", "COMMIT", "END"}:
            continue
        out.append(s)
    return out


def _applied(conn: Connection) -> set[str]:
    rows = conn.execute(sql_text("SELECT filename FROM schema_migrations")).fetchall()
    return {str(r[0]) for r in rows}


def apply_migrations(engine: Engine, migrations_dir: str | os.PathLike[str] | None = None) -> list[str]:
    """Apply pending migrations and return the filenames applied by this call."""
    root = Path(migrations_dir) if migrations_dir is not None else MIGRATIONS_DIR
    if not root.exists():  # pragma: no cover - optional
        logger.warning("migrations_dir_missing path=%s", root)
        return []

    applied_now: list[str] = []
    with engine.begin() as conn:
        conn.exec_driver_sql(_JOURNAL_DDL)
        already = _applied(conn)
        for sql_path in _iter_sql_files(root):
            fname = sql_path.name
            if fname in already:
                continue
            sql = sql_path.read_text(encoding="utf-8")
            for stmt in _split_statements(sql):
                conn.exec_driver_sql(stmt)
            # applied_at is ISO-8601 UTC without fractional seconds
            conn.execute(
                sql_text("INSERT INTO schema_migrations (filename, applied_at) VALUES (:f, :at)"),
                {
                    "f": fname,
                    "at": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
                },
            )
            applied_now.append(fname)
            logger.info("migration_applied file=%s", fname)
    return applied_now


__all__ = ["MIGRATIONS_DIR", "apply_migrations"]
