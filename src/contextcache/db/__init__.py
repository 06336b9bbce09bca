"""contextcache database layer."""

from contextcache.db.cache import BuildCache
from contextcache.db.connection import Database
from contextcache.db.migrations import MIGRATIONS, run_migrations
from contextcache.db.schema import initialize

__all__ = [
    "BuildCache",
    "Database",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
]
