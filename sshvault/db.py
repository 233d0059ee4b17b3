"""
sshvault - Database Module

SQLite plumbing shared by the key manager and the profile store.

Database structure:
- encryption_key: the single store key (one row, id = 1)
- sshprofiles: one row per host, secrets as base64 envelopes
- console_profiles: one row per serial console line
"""

import sqlite3
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Union

from .errors import StoreUnavailable

logger = logging.getLogger("sshvault.db")


# =============================================================================
# DATABASE SCHEMA
# =============================================================================

SCHEMA = """
-- Store key - one row, created once
CREATE TABLE IF NOT EXISTS encryption_key (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    key BLOB NOT NULL
);

-- SSH profiles (secrets are envelopes, never plaintext)
CREATE TABLE IF NOT EXISTS sshprofiles (
    host TEXT PRIMARY KEY,
    password TEXT,
    note TEXT,
    url TEXT,
    folder TEXT
);

-- Serial console lines (no secrets)
CREATE TABLE IF NOT EXISTS console_profiles (
    host TEXT PRIMARY KEY,
    baud_rate INTEGER NOT NULL,
    device TEXT NOT NULL,
    parity TEXT,
    stop_bit TEXT,
    data_bits INTEGER,
    folder TEXT
);
"""

# Columns added after the first release. Older databases only have the
# columns above and are upgraded in place by migrate().
PROFILE_COLUMNS = {
    "hostname": "TEXT",
    "user": "TEXT",
    "port": "INTEGER",
    "identity_file": "TEXT",
    "proxy": "TEXT",
    "tunnels": "TEXT",          # JSON list
    "dynamic_socks": "TEXT",    # JSON list
    "options": "TEXT",          # JSON list
    "sshkey_passphrase": "TEXT",
    "updated_at": "INTEGER",
}

# SQLite PRAGMAs for crash safety
PRAGMAS = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=FULL;
PRAGMA secure_delete=ON;
"""


def connect(db_path: Union[str, Path], timeout: float = 5.0) -> sqlite3.Connection:
    """
    Open the database, apply PRAGMAs and bring the schema up to date.

    The connection runs in autocommit mode; writes go through transaction().

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for another instance's write lock

    Raises:
        StoreUnavailable: file cannot be opened or initialized
    """
    try:
        conn = sqlite3.connect(str(db_path), timeout=timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.executescript(PRAGMAS)
        conn.executescript(SCHEMA)
        migrate(conn)
    except sqlite3.Error as e:
        raise StoreUnavailable(f"cannot open database {db_path}: {e}") from e
    return conn


def migrate(conn: sqlite3.Connection) -> None:
    """Add any profile columns missing from an older database."""
    existing = {row["name"] for row in conn.execute("PRAGMA table_info(sshprofiles)")}
    missing = [(name, kind) for name, kind in PROFILE_COLUMNS.items() if name not in existing]
    if not missing:
        return
    with transaction(conn):
        for name, kind in missing:
            conn.execute(f"ALTER TABLE sshprofiles ADD COLUMN {name} {kind}")
    logger.info("Added columns to sshprofiles: %s", ", ".join(n for n, _ in missing))


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    Run the block as one write transaction.

    BEGIN IMMEDIATE takes the write lock up front, so a read-merge-write
    inside the block cannot interleave with another instance. Commit on
    success, rollback on any exception.

    Raises:
        StoreUnavailable: lock not acquired within the timeout, or a
            database error inside the block
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.Error as e:
        raise StoreUnavailable(f"cannot start transaction: {e}") from e
    try:
        yield conn
    except sqlite3.Error as e:
        _rollback(conn)
        raise StoreUnavailable(f"database write failed: {e}") from e
    except BaseException:
        _rollback(conn)
        raise
    try:
        conn.execute("COMMIT")
    except sqlite3.Error as e:
        _rollback(conn)
        raise StoreUnavailable(f"commit failed: {e}") from e


def _rollback(conn: sqlite3.Connection) -> None:
    # SQLite may already have rolled back on its own (e.g. disk full)
    if conn.in_transaction:
        conn.execute("ROLLBACK")
