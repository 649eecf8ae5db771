from __future__ import annotations

import sqlite3
from pathlib import Path

DEFAULT_MIGRATION = Path(__file__).parent / "migrations" / "sqlite" / "001_initial_schema.sql"


def connect_sqlite(path: str | Path = ":memory:") -> sqlite3.Connection:
    # The HTTP host hands one connection to worker threads; writes are serialised per trip.
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def apply_sqlite_migration(conn: sqlite3.Connection, migration_path: str | Path = DEFAULT_MIGRATION) -> None:
    sql = Path(migration_path).read_text(encoding="utf-8")
    conn.executescript(sql)
