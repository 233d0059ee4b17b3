"""
sshvault - Profile Store

This file handles:
- Opening the SQLite database and wiring up the key and cipher
- Upsert / get / remove / list of SSH profiles
- Field-level encryption of password and key passphrase
- Partial updates that never blank fields the caller did not touch
- Write-time upgrade of legacy (CFB) secrets
- Serial console profiles (plain rows, no secrets)

One row per host. Every write is a single BEGIN IMMEDIATE transaction, so a
crash leaves the old row or the new row, never a mix.
"""

import json
import time
import sqlite3
import logging
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Union

from pydantic import ValidationError

from . import db
from .config import StoreConfig
from .crypto import FieldCipher
from .errors import (
    DecryptionFailed,
    InvalidProfile,
    KeyUnavailable,
    NotFound,
    StoreUnavailable,
)
from .forwarding import normalize_dynamic_socks, normalize_tunnel
from .keys import KeyManager
from .models import SECRET_FIELDS, ConsoleProfile, Profile

logger = logging.getLogger("sshvault.store")

# Profile secret field -> sshprofiles column
SECRET_COLUMNS = {
    "password": "password",
    "key_passphrase": "sshkey_passphrase",
}

TEXT_COLUMNS = ("hostname", "user", "identity_file", "proxy", "folder", "note", "url")
LIST_COLUMNS = ("tunnels", "dynamic_socks", "options")

_FLAG_FIELDS = {"has_password", "has_key_passphrase"}
_UPDATABLE_FIELDS = set(Profile.model_fields) - _FLAG_FIELDS - {"host"}


def _appended(current: dict, field: str, item: str) -> dict:
    if item in current[field]:
        return {}
    return {field: current[field] + [item]}


_SELECT_PUBLIC = """
SELECT host, hostname, user, port, identity_file, proxy, folder,
       tunnels, dynamic_socks, options, note, url,
       password IS NOT NULL AS has_password,
       sshkey_passphrase IS NOT NULL AS has_key_passphrase
FROM sshprofiles
"""

_UPSERT_PROFILE = """
INSERT INTO sshprofiles (host, hostname, user, port, identity_file, proxy, folder,
                         tunnels, dynamic_socks, options, note, url,
                         password, sshkey_passphrase, updated_at)
VALUES (:host, :hostname, :user, :port, :identity_file, :proxy, :folder,
        :tunnels, :dynamic_socks, :options, :note, :url,
        :password, :sshkey_passphrase, :updated_at)
ON CONFLICT(host) DO UPDATE SET
    hostname = excluded.hostname,
    user = excluded.user,
    port = excluded.port,
    identity_file = excluded.identity_file,
    proxy = excluded.proxy,
    folder = excluded.folder,
    tunnels = excluded.tunnels,
    dynamic_socks = excluded.dynamic_socks,
    options = excluded.options,
    note = excluded.note,
    url = excluded.url,
    password = excluded.password,
    sshkey_passphrase = excluded.sshkey_passphrase,
    updated_at = excluded.updated_at
"""

_UPSERT_CONSOLE = """
INSERT INTO console_profiles (host, baud_rate, device, parity, stop_bit, data_bits, folder)
VALUES (:host, :baud_rate, :device, :parity, :stop_bit, :data_bits, :folder)
ON CONFLICT(host) DO UPDATE SET
    baud_rate = excluded.baud_rate,
    device = excluded.device,
    parity = excluded.parity,
    stop_bit = excluded.stop_bit,
    data_bits = excluded.data_bits,
    folder = excluded.folder
"""


class ProfileListing:
    """
    Lazy, restartable view over the stored profiles, ordered by host.

    Each iteration runs a fresh query, so iterating twice sees the current
    state both times. Secrets are never loaded; only presence flags.
    """

    def __init__(self, store: "ProfileStore", folder: Optional[str] = None):
        self._store = store
        self.folder = folder

    def _query(self):
        if self.folder is None:
            return _SELECT_PUBLIC + " ORDER BY host", ()
        return _SELECT_PUBLIC + " WHERE folder = ? ORDER BY host", (self.folder,)

    def __iter__(self) -> Iterator[Profile]:
        sql, params = self._query()
        for row in self._store._read(sql, params):
            yield self._store._public_profile(row)

    def __len__(self) -> int:
        if self.folder is None:
            row = self._store._read_one("SELECT COUNT(*) AS n FROM sshprofiles", ())
        else:
            row = self._store._read_one(
                "SELECT COUNT(*) AS n FROM sshprofiles WHERE folder = ?", (self.folder,)
            )
        return row["n"]

    def hosts(self) -> List[str]:
        return [p.host for p in self]


class ProfileStore:
    """
    Encrypted store of SSH profiles.

    Usage:
        with ProfileStore("~/.ssh/sshcli.db") as store:
            store.upsert(Profile(host="db1", hostname="10.0.0.5", password="s3cret"))
            store.get("db1", include_secrets=True).password   # "s3cret"
            store.set_proxy("db1", "ncat --proxy 10.0.0.1:3128 %h %p")
            for profile in store.list():
                print(profile.host)
            store.remove("db1")
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        legacy_key_file: Optional[Path] = None,
        *,
        busy_timeout: float = 5.0,
        allow_legacy: bool = True,
        key: Optional[bytes] = None,
    ):
        """
        Set up the store (doesn't open the database yet).

        Args:
            db_path: Path to SQLite database file
            legacy_key_file: Key file from older installs, imported once
            busy_timeout: Seconds to wait for another instance's write lock
            allow_legacy: Accept legacy CFB envelopes on read
            key: Explicit 32-byte key; skips the key table entirely
        """
        self.db_path = Path(db_path)
        self.legacy_key_file = legacy_key_file
        self.busy_timeout = busy_timeout
        self.allow_legacy = allow_legacy
        self.conn: Optional[sqlite3.Connection] = None
        self.keys: Optional[KeyManager] = None
        self._cipher: Optional[FieldCipher] = None
        if key is not None:
            self._cipher = FieldCipher(key, allow_legacy=allow_legacy)

    @classmethod
    def from_config(cls, config: StoreConfig) -> "ProfileStore":
        return cls(
            config.db_path,
            config.legacy_key_file,
            busy_timeout=config.busy_timeout,
            allow_legacy=config.allow_legacy,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def open(self) -> "ProfileStore":
        """Open the database and load the key if one exists."""
        if self.conn is not None:
            return self
        self.conn = db.connect(self.db_path, timeout=self.busy_timeout)
        self.keys = KeyManager(self.conn, self.legacy_key_file)
        if self._cipher is None:
            key = self.keys.load_key()
            if key is not None:
                self._cipher = FieldCipher(key, allow_legacy=self.allow_legacy)
        logger.debug("Opened profile store %s", self.db_path)
        return self

    def close(self) -> None:
        """Close the database. The key stays with this instance."""
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def __enter__(self) -> "ProfileStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # =========================================================================
    # CORE OPERATIONS
    # =========================================================================

    def upsert(self, profile: Profile) -> None:
        """
        Insert the profile, or replace the stored one for profile.host.

        Plain fields are replaced wholesale. Secret fields follow the Profile
        rule: None keeps the stored secret, "" erases it, text encrypts it.
        Writing the same profile twice leaves the row unchanged.
        """
        self._require_open()
        if any(getattr(profile, f) for f in SECRET_FIELDS):
            self._ensure_cipher()

        with db.transaction(self.conn):
            existing = self._fetch_row(profile.host)
            self._write(profile, existing)

    def get(self, host: str, include_secrets: bool = False) -> Profile:
        """
        Return the stored profile for host.

        Args:
            host: Profile name
            include_secrets: Decrypt password and key passphrase. Without it,
                only has_password / has_key_passphrase are reported.

        Raises:
            NotFound: no row for host
            AuthenticationFailed / Malformed: a secret could not be decrypted
            KeyUnavailable: secrets are stored but no key exists
        """
        self._require_open()
        row = self._fetch_row(host)
        if row is None:
            raise NotFound(host)
        profile = self._public_profile(row)
        if include_secrets:
            secrets = {
                field: self._open(row[column], field, host).value if row[column] else ""
                for field, column in SECRET_COLUMNS.items()
            }
            profile = profile.model_copy(update=secrets)
        return profile

    def exists(self, host: str) -> bool:
        self._require_open()
        return self._read_one("SELECT 1 AS x FROM sshprofiles WHERE host = ?", (host,)) is not None

    def reveal(self, host: str, field: str = "password") -> Optional[str]:
        """
        Decrypt one secret for display or connection use.

        Returns None when the host has no such secret. The reveal itself is
        logged (never the value).
        """
        if field not in SECRET_COLUMNS:
            raise InvalidProfile(f"not a secret field: {field}")
        self._require_open()
        row = self._fetch_row(host)
        if row is None:
            raise NotFound(host)
        envelope = row[SECRET_COLUMNS[field]]
        if not envelope:
            return None
        value = self._open(envelope, field, host).value
        logger.info("Revealed %s for host %s", field, host)
        return value

    def remove(self, host: str) -> bool:
        """
        Delete the row for host, secrets included.

        Idempotent: removing an absent host is not an error.

        Returns:
            True if a row was deleted
        """
        self._require_open()
        with db.transaction(self.conn):
            cur = self.conn.execute("DELETE FROM sshprofiles WHERE host = ?", (host,))
        if cur.rowcount:
            logger.info("Deleted profile %s", host)
            return True
        logger.debug("No profile to delete for host %s", host)
        return False

    def list(self, folder: Optional[str] = None) -> ProfileListing:
        """All profiles (or one folder's), ordered by host, secrets not loaded."""
        self._require_open()
        return ProfileListing(self, folder)

    def search(self, query: str) -> List[Profile]:
        """
        Case-insensitive substring search over host, hostname, user,
        folder and note.
        """
        self._require_open()
        if not query or not query.strip():
            return list(self.list())

        pattern = f"%{query.strip().lower()}%"
        rows = self._read(
            _SELECT_PUBLIC + """
            WHERE LOWER(host) LIKE ? OR
                  LOWER(COALESCE(hostname, '')) LIKE ? OR
                  LOWER(COALESCE(user, '')) LIKE ? OR
                  LOWER(COALESCE(folder, '')) LIKE ? OR
                  LOWER(COALESCE(note, '')) LIKE ?
            ORDER BY host""",
            (pattern,) * 5,
        )
        return [self._public_profile(row) for row in rows]

    def folders(self) -> List[str]:
        """Distinct folder names in use, sorted."""
        self._require_open()
        rows = self._read(
            "SELECT DISTINCT folder FROM sshprofiles WHERE folder IS NOT NULL AND folder != '' "
            "ORDER BY folder",
            (),
        )
        return [row["folder"] for row in rows]

    # =========================================================================
    # PARTIAL UPDATES
    # =========================================================================

    def update(self, host: str, create: bool = False, **changes) -> Profile:
        """
        Change some fields of one profile, keeping everything else.

        The current row is read and merged inside the same write transaction,
        so unspecified fields (secrets included) are never overwritten.

        Args:
            host: Profile name
            create: Start from an empty profile if host is not stored yet
            **changes: Profile fields to set

        Returns:
            The merged profile, without secret values

        Raises:
            NotFound: host absent and create is False
            InvalidProfile: unknown field or invalid value
        """
        bad = sorted(set(changes) - _UPDATABLE_FIELDS)
        if bad:
            raise InvalidProfile(f"cannot update fields: {', '.join(bad)}")
        needs_key = any(changes.get(f) for f in SECRET_FIELDS)
        return self._modify(host, lambda current: changes, create=create, needs_key=needs_key)

    def _modify(self, host: str, changes_for, create: bool = False, needs_key: bool = False) -> Profile:
        """
        Read-merge-write one row in a single transaction.

        changes_for(current) gets the stored profile as a dict (secrets None)
        and returns the fields to change.
        """
        self._require_open()
        if needs_key:
            self._ensure_cipher()

        with db.transaction(self.conn):
            row = self._fetch_row(host)
            if row is None:
                if not create:
                    raise NotFound(host)
                current = Profile(host=host).model_dump(exclude=_FLAG_FIELDS)
            else:
                current = self._public_profile(row).model_dump(exclude=_FLAG_FIELDS)
            try:
                merged = Profile(**{**current, **changes_for(current)})
            except ValidationError as e:
                raise InvalidProfile(str(e)) from e
            self._write(merged, row)
            saved = self._fetch_row(merged.host)
        return self._public_profile(saved)

    def set_password(self, host: str, password: str) -> None:
        if not password:
            raise InvalidProfile("password is empty")
        self.update(host, create=True, password=password)
        logger.info("Password stored for host %s", host)

    def clear_password(self, host: str) -> None:
        self.update(host, password="")

    def set_key_passphrase(self, host: str, passphrase: str) -> None:
        if not passphrase:
            raise InvalidProfile("key passphrase is empty")
        self.update(host, create=True, key_passphrase=passphrase)
        logger.info("Key passphrase stored for host %s", host)

    def clear_key_passphrase(self, host: str) -> None:
        self.update(host, key_passphrase="")

    def set_proxy(self, host: str, proxy: str) -> None:
        """Set the ProxyCommand text; "" removes it."""
        self.update(host, create=True, proxy=proxy)

    def add_tunnel(self, host: str, spec: str) -> str:
        """
        Append a Local/RemoteForward to the profile.

        Returns:
            The normalized directive that was stored
        """
        tunnel = normalize_tunnel(spec)
        self._modify(host, lambda cur: _appended(cur, "tunnels", tunnel), create=True)
        return tunnel

    def clear_tunnels(self, host: str) -> None:
        self.update(host, tunnels=[])

    def add_dynamic_socks(self, host: str, value: Union[str, int]) -> str:
        """Append a DynamicForward ([bind:]port) to the profile."""
        socks = normalize_dynamic_socks(value)
        self._modify(host, lambda cur: _appended(cur, "dynamic_socks", socks), create=True)
        return socks

    def clear_dynamic_socks(self, host: str) -> None:
        self.update(host, dynamic_socks=[])

    def set_folder(self, host: str, folder: str) -> None:
        """Move the profile into folder; "" moves it back to the top level."""
        self.update(host, folder=folder)

    def rename_folder(self, old: str, new: str) -> int:
        """Move every profile in folder old into folder new."""
        self._require_open()
        with db.transaction(self.conn):
            cur = self.conn.execute(
                "UPDATE sshprofiles SET folder = ?, updated_at = ? WHERE folder = ?",
                (new or None, int(time.time()), old),
            )
        logger.info("Renamed folder %r to %r (%d profiles)", old, new, cur.rowcount)
        return cur.rowcount

    def set_note(self, host: str, note: str) -> None:
        self.update(host, note=note)

    def set_url(self, host: str, url: str) -> None:
        self.update(host, url=url)

    # =========================================================================
    # CONSOLE PROFILES
    # =========================================================================

    def upsert_console(self, console: ConsoleProfile) -> None:
        """Insert or replace the serial console line for console.host."""
        self._require_open()
        with db.transaction(self.conn):
            self.conn.execute(_UPSERT_CONSOLE, {
                **console.model_dump(),
                "folder": console.folder or None,
            })
        logger.info("Saved console profile %s", console.host)

    def get_console(self, host: str) -> ConsoleProfile:
        """
        Return the console profile for host.

        Raises:
            NotFound: no console profile for host
        """
        self._require_open()
        row = self._read_one("SELECT * FROM console_profiles WHERE host = ?", (host,))
        if row is None:
            raise NotFound(host)
        return self._console(row)

    def remove_console(self, host: str) -> bool:
        """Delete the console profile for host. Idempotent."""
        self._require_open()
        with db.transaction(self.conn):
            cur = self.conn.execute("DELETE FROM console_profiles WHERE host = ?", (host,))
        if cur.rowcount:
            logger.info("Deleted console profile %s", host)
        return bool(cur.rowcount)

    def list_consoles(self) -> List[ConsoleProfile]:
        """All console profiles, ordered by host."""
        self._require_open()
        rows = self._read("SELECT * FROM console_profiles ORDER BY host", ())
        return [self._console(row) for row in rows]

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def rename(self, old_host: str, new_host: str) -> None:
        """Change a profile's host name, keeping all its fields and secrets."""
        self._require_open()
        try:
            new_host = Profile(host=new_host).host
        except ValidationError as e:
            raise InvalidProfile(str(e)) from e
        with db.transaction(self.conn):
            if self._fetch_row(old_host) is None:
                raise NotFound(old_host)
            if self._fetch_row(new_host) is not None:
                raise InvalidProfile(f"host already exists: {new_host}")
            self.conn.execute(
                "UPDATE sshprofiles SET host = ?, updated_at = ? WHERE host = ?",
                (new_host, int(time.time()), old_host),
            )
        logger.info("Renamed profile %s to %s", old_host, new_host)

    def duplicate(self, source_host: str, new_host: str) -> Profile:
        """Copy a profile under a new name; secrets get fresh envelopes."""
        if self.exists(new_host):
            raise InvalidProfile(f"host already exists: {new_host}")
        source = self.get(source_host, include_secrets=True)
        try:
            copy = Profile(**{**source.model_dump(), "host": new_host})
        except ValidationError as e:
            raise InvalidProfile(str(e)) from e
        self.upsert(copy)
        logger.info("Duplicated profile %s as %s", source_host, new_host)
        return self.get(copy.host)

    def upgrade_legacy(self) -> int:
        """
        Re-encrypt every legacy-format secret in the current format.

        Values that cannot be decrypted at all are left untouched and
        reported in the log.

        Returns:
            Number of fields rewritten
        """
        self._require_open()
        cipher = self._cipher
        if cipher is None:
            return 0

        upgraded = 0
        with db.transaction(self.conn):
            rows = self.conn.execute(
                "SELECT host, password, sshkey_passphrase FROM sshprofiles"
            ).fetchall()
            for row in rows:
                for field, column in SECRET_COLUMNS.items():
                    envelope = row[column]
                    if not envelope:
                        continue
                    try:
                        opened = cipher.open_field(envelope)
                    except DecryptionFailed as e:
                        logger.warning("Cannot decrypt %s for %s: %s", field, row["host"], e)
                        continue
                    if not opened.legacy:
                        continue
                    self.conn.execute(
                        f"UPDATE sshprofiles SET {column} = ? WHERE host = ?",
                        (cipher.encrypt_field(opened.value), row["host"]),
                    )
                    upgraded += 1
        logger.info("Upgraded %d legacy secret(s)", upgraded)
        return upgraded

    def prune(self, keep_hosts: Iterable[str]) -> int:
        """
        Delete every profile whose host is not in keep_hosts.

        Returns:
            Number of rows deleted
        """
        self._require_open()
        keep = set(keep_hosts)
        with db.transaction(self.conn):
            hosts = [row["host"] for row in self.conn.execute("SELECT host FROM sshprofiles")]
            stale = [h for h in hosts if h not in keep]
            self.conn.executemany("DELETE FROM sshprofiles WHERE host = ?", [(h,) for h in stale])
        logger.info("Deleted %d rows.", len(stale))
        return len(stale)

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    def _require_open(self) -> None:
        if self.conn is None:
            raise StoreUnavailable("Store is closed. Call open() first.")

    def _ensure_cipher(self) -> FieldCipher:
        """Load or create the key. Must run outside a write transaction."""
        if self._cipher is None:
            key = self.keys.load_or_create_key()
            self._cipher = FieldCipher(key, allow_legacy=self.allow_legacy)
        return self._cipher

    def _require_cipher(self) -> FieldCipher:
        if self._cipher is None:
            raise KeyUnavailable("secrets are stored but no encryption key exists")
        return self._cipher

    def _read(self, sql: str, params) -> Iterator[sqlite3.Row]:
        try:
            cursor = self.conn.execute(sql, params)
            for row in cursor:
                yield row
        except sqlite3.Error as e:
            raise StoreUnavailable(f"read query failed: {e}") from e

    def _read_one(self, sql: str, params) -> Optional[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchone()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"read query failed: {e}") from e

    def _fetch_row(self, host: str) -> Optional[sqlite3.Row]:
        return self._read_one("SELECT * FROM sshprofiles WHERE host = ?", (host,))

    def _public_profile(self, row: sqlite3.Row) -> Profile:
        keys = row.keys()
        if "has_password" in keys:
            has_password = bool(row["has_password"])
            has_passphrase = bool(row["has_key_passphrase"])
        else:
            has_password = bool(row["password"])
            has_passphrase = bool(row["sshkey_passphrase"])
        fields = {name: row[name] or "" for name in TEXT_COLUMNS}
        fields.update({name: json.loads(row[name]) if row[name] else [] for name in LIST_COLUMNS})
        return Profile(
            host=row["host"],
            port=row["port"],
            has_password=has_password,
            has_key_passphrase=has_passphrase,
            **fields,
        )

    @staticmethod
    def _console(row: sqlite3.Row) -> ConsoleProfile:
        return ConsoleProfile(
            host=row["host"],
            device=row["device"],
            baud_rate=row["baud_rate"],
            parity=row["parity"] or "none",
            stop_bit=row["stop_bit"] or "1",
            data_bits=row["data_bits"] or 8,
            folder=row["folder"] or "",
        )

    def _open(self, envelope: str, field: str, host: str):
        try:
            return self._require_cipher().open_field(envelope)
        except DecryptionFailed as e:
            logger.warning("Failed to decrypt %s for host %s: %s", field, host, e)
            raise

    def _seal(self, plaintext: Optional[str], envelope: Optional[str], field: str, host: str) -> Optional[str]:
        """Work out the envelope to store for one secret field."""
        if plaintext is None:
            if envelope is None:
                return None
            return self._upgrade(envelope, field, host)
        if plaintext == "":
            return None

        cipher = self._require_cipher()
        if envelope is not None:
            try:
                current = cipher.open_field(envelope)
            except DecryptionFailed:
                current = None
            if current is not None and not current.legacy and current.value == plaintext:
                return envelope
        return cipher.encrypt_field(plaintext)

    def _upgrade(self, envelope: str, field: str, host: str) -> str:
        # Write-time upgrade: an untouched legacy secret is re-sealed in
        # the current format whenever its row is written.
        if self._cipher is None:
            return envelope
        try:
            opened = self._cipher.open_field(envelope)
        except DecryptionFailed as e:
            logger.warning("Keeping undecryptable %s for host %s unchanged: %s", field, host, e)
            return envelope
        if not opened.legacy:
            return envelope
        logger.info("Upgrading legacy %s for host %s", field, host)
        return self._cipher.encrypt_field(opened.value)

    def _write(self, profile: Profile, existing: Optional[sqlite3.Row]) -> None:
        """Write one row. Call inside a transaction."""
        values: Dict[str, object] = {"host": profile.host, "port": profile.port}
        for name in TEXT_COLUMNS:
            values[name] = getattr(profile, name) or None
        for name in LIST_COLUMNS:
            items = getattr(profile, name)
            values[name] = json.dumps(items) if items else None
        for field, column in SECRET_COLUMNS.items():
            values[column] = self._seal(
                getattr(profile, field),
                existing[column] if existing is not None else None,
                field,
                profile.host,
            )

        if existing is not None and all(existing[k] == v for k, v in values.items()):
            logger.debug("Profile %s unchanged; nothing written", profile.host)
            return

        values["updated_at"] = int(time.time())
        self.conn.execute(_UPSERT_PROFILE, values)
        logger.info("Saved profile %s", profile.host)
