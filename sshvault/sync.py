"""
sshvault - Config Sync

Keeps the database and ~/.ssh/config in step:

- import_config: config file -> store (connection fields only; folder, note,
  url and secrets already in the store are kept)
- export_config: store -> config file (atomic rewrite, preamble and block
  order kept)
- prune_store: drop rows for hosts the config file no longer has
- backup: copy the config file and snapshot the database
"""

import shutil
import sqlite3
import logging
from pathlib import Path
from typing import List, Tuple

from .config import StoreConfig
from .errors import StoreUnavailable
from .models import CONNECTION_FIELDS, Profile
from .ssh_config import Block, read_config, write_config
from .store import ProfileStore

logger = logging.getLogger("sshvault.sync")


def import_config(store: ProfileStore, path: Path) -> List[str]:
    """
    Load every concrete Host block from the config file into the store.

    Wildcard and multi-alias blocks (``Host *``, ``Host a b``) are skipped.

    Returns:
        Hosts that were imported
    """
    _, blocks = read_config(path)
    imported = []
    for profile in _profiles(blocks):
        if profile.is_pattern:
            logger.debug("Skipping pattern host %r", profile.host)
            continue
        changes = {field: getattr(profile, field) for field in CONNECTION_FIELDS}
        store.update(profile.host, create=True, **changes)
        imported.append(profile.host)
    logger.info("Imported %d host(s) from %s", len(imported), path)
    return imported


def export_config(store: ProfileStore, path: Path) -> int:
    """
    Rewrite the config file from the store, keeping the file's block order.

    OpenSSH takes the first value it sees for each directive, so order
    matters:

    - a Host block whose host is stored is replaced in place by the stored
      profile; one that is no longer stored is dropped
    - pattern blocks (``Host *``), Match blocks and blocks kept as text stay
      where they are
    - stored hosts the file does not have yet go right after the last
      concrete Host block, or at the top if there is none

    Returns:
        Number of Host blocks written
    """
    preamble, existing = read_config(path)
    stored = {p.host: p for p in store.list()}

    blocks: List[Block] = []
    placed = set()
    insert_at = 0
    for block in existing:
        if isinstance(block, Profile):
            if block.host in stored:
                if block.host in placed:
                    continue
                blocks.append(stored[block.host])
                placed.add(block.host)
                insert_at = len(blocks)
                continue
            if not block.is_pattern:
                logger.debug("Dropping Host %s, no longer stored", block.host)
                continue
        blocks.append(block)

    new = [p for host, p in stored.items() if host not in placed]
    blocks[insert_at:insert_at] = new
    write_config(path, blocks, preamble)
    return len(_profiles(blocks))


def prune_store(store: ProfileStore, path: Path) -> int:
    """Delete stored profiles whose host is missing from the config file."""
    _, blocks = read_config(path)
    return store.prune(p.host for p in _profiles(blocks))


def _profiles(blocks: List[Block]) -> List[Profile]:
    return [b for b in blocks if isinstance(b, Profile)]


def backup(config: StoreConfig, suffix: str = "_backup") -> Tuple[Path, Path]:
    """
    Back up the SSH config file and the database next to the originals.

    The database copy uses SQLite's online backup, so it is consistent even
    while another instance is writing.

    Returns:
        (config backup path, database backup path)
    """
    config_backup = config.ssh_config_path.with_name(config.ssh_config_path.name + suffix)
    db_backup = config.db_path.with_name(config.db_path.name + suffix)

    if config.ssh_config_path.exists():
        shutil.copy2(config.ssh_config_path, config_backup)
        logger.info("Backed up %s to %s", config.ssh_config_path, config_backup)

    if config.db_path.exists():
        try:
            src = sqlite3.connect(str(config.db_path), timeout=config.busy_timeout)
            try:
                dst = sqlite3.connect(str(db_backup))
                try:
                    src.backup(dst)
                finally:
                    dst.close()
            finally:
                src.close()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"database backup failed: {e}") from e
        logger.info("Backed up %s to %s", config.db_path, db_backup)

    return config_backup, db_backup
