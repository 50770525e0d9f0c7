"""Database bootstrap utilities.

Exposes convenience imports for engine construction and the
migrations runner that applies SQL files from `nomadsync/db/migrations/` to
the remote endpoint's database.
"""

from nomadsync.db.base import build_engine, get_engine
from nomadsync.db.migrations_runner import apply_migrations

__all__ = [
    "build_engine",
    "get_engine",
    "apply_migrations",
]
