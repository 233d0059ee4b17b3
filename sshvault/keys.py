"""
sshvault - Key Manager

Owns the one symmetric key the store encrypts with.

Lifecycle:
    1. Look for the key row in encryption_key (id = 1)
    2. None there? Import ~/.ssh/encryption.key if an older install left one
    3. Still none? Generate 32 random bytes and persist them
    4. Keep the key for the life of the process; never rotate

Never log key material.
"""

import sqlite3
import logging
from pathlib import Path
from typing import Optional

from . import crypto
from .db import transaction
from .errors import KeyUnavailable, StoreUnavailable

logger = logging.getLogger("sshvault.keys")


class KeyManager:
    """
    Loads (or creates) the store key once and hands it out.

    Usage:
        keys = KeyManager(conn, legacy_key_file=Path("~/.ssh/encryption.key"))
        key = keys.load_or_create_key()
    """

    def __init__(self, conn: sqlite3.Connection, legacy_key_file: Optional[Path] = None):
        self.conn = conn
        self.legacy_key_file = legacy_key_file
        self._key: Optional[bytes] = None

    def load_key(self) -> Optional[bytes]:
        """
        Return the persisted key, or None if none has been created yet.

        Raises:
            KeyUnavailable: database error, or a stored key of the wrong size
        """
        if self._key is not None:
            return self._key
        try:
            row = self.conn.execute("SELECT key FROM encryption_key WHERE id = 1").fetchone()
        except sqlite3.Error as e:
            raise KeyUnavailable(f"database error when retrieving key: {e}") from e
        if row is None:
            return None
        self._key = self._check(bytes(row["key"]), "database")
        logger.debug("Encryption key loaded from database")
        return self._key

    def load_or_create_key(self) -> bytes:
        """
        Return the key, creating and persisting it on first use.

        Two instances racing here both end up with the same key: the insert
        is OR IGNORE and the row is re-read inside the same transaction.

        Raises:
            KeyUnavailable: the key could not be read, imported or saved
        """
        key = self.load_key()
        if key is not None:
            return key

        candidate = self._read_legacy_key_file()
        source = "legacy key file" if candidate is not None else "generator"
        if candidate is None:
            candidate = crypto.generate_key()

        try:
            with transaction(self.conn):
                self.conn.execute(
                    "INSERT OR IGNORE INTO encryption_key (id, key) VALUES (1, ?)",
                    (candidate,),
                )
                row = self.conn.execute("SELECT key FROM encryption_key WHERE id = 1").fetchone()
        except StoreUnavailable as e:
            raise KeyUnavailable(f"error saving new key to database: {e}") from e

        self._key = self._check(bytes(row["key"]), "database")
        if self._key == candidate:
            logger.info("New encryption key saved to the database (from %s)", source)
        else:
            logger.info("Another instance created the encryption key first; using it")
        return self._key

    def _read_legacy_key_file(self) -> Optional[bytes]:
        if self.legacy_key_file is None:
            return None
        path = Path(self.legacy_key_file)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise KeyUnavailable(f"cannot read key file {path}: {e}") from e
        logger.info("Importing existing key file %s into the database", path)
        return self._check(data, str(path))

    @staticmethod
    def _check(key: bytes, source: str) -> bytes:
        if len(key) != crypto.KEY_SIZE:
            raise KeyUnavailable(
                f"key from {source} must be {crypto.KEY_SIZE} bytes, got {len(key)}"
            )
        return key
