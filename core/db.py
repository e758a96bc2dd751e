"""SQLite helpers for ``data/state.db``, shared by the snapshot and health stores."""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

__all__ = [
    "DEFAULT_BUSY_TIMEOUT_MS",
    "connect",
    "ensure_schema",
    "transaction",
]

DEFAULT_BUSY_TIMEOUT_MS = 5000


def connect(db_path: str | Path, *, read_only: bool = False, timeout: float = 5.0) -> sqlite3.Connection:
    """Open state.db in autocommit mode with :class:`sqlite3.Row` rows.

    Writers get WAL so the daemon, the CLI and the health probe can share the
    file; read-only connections never create it.
    """

    path = Path(db_path)
    if read_only:
        conn = sqlite3.connect(
            f"file:{path.resolve().as_posix()}?mode=ro",
            uri=True,
            timeout=timeout,
            isolation_level=None,
            check_same_thread=False,
        )
    else:
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout={int(DEFAULT_BUSY_TIMEOUT_MS)}")
    if not read_only:
        try:
            conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.DatabaseError:
            # another writer holds the file; it keeps whatever mode it has
            pass
    return conn


def ensure_schema(db_path: str | Path, script: str) -> None:
    conn = connect(db_path)
    try:
        conn.executescript(script)
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
    except Exception:
        conn.rollback()
        raise
    else:
        conn.commit()
