"""
sshvault - Encrypted SSH Profile Store

Keeps SSH host profiles in a local SQLite database, with passwords and key
passphrases encrypted field by field, and keeps ~/.ssh/config in step.

Key Features:
- One random AES-256 key per installation, stored alongside the profiles
- AES-256-GCM envelopes; legacy AES-256-CFB values still readable
- Partial updates that never blank untouched fields
- Import/export of OpenSSH client config (unknown directives kept)

Components:
- crypto.py: Field encryption (AES-GCM, legacy CFB reader)
- keys.py: Load-or-create of the store key
- store.py: Profile CRUD over SQLite
- ssh_config.py: Parse/render of ~/.ssh/config
- cli.py: Command-line interface (argparse)

Usage:
    sshvault add db1 --hostname 10.0.0.5 --user admin
    sshvault set-password db1
    sshvault list
    sshvault reveal db1 --copy
"""

from .config import StoreConfig
from .crypto import FieldCipher
from .errors import (
    AuthenticationFailed,
    ConfigError,
    DecryptionFailed,
    InvalidProfile,
    KeyUnavailable,
    Malformed,
    NotFound,
    SSHVaultError,
    StoreUnavailable,
)
from .models import ConsoleProfile, Profile
from .store import ProfileStore

__version__ = "0.3.0"

__all__ = [
    "AuthenticationFailed",
    "ConfigError",
    "ConsoleProfile",
    "DecryptionFailed",
    "FieldCipher",
    "InvalidProfile",
    "KeyUnavailable",
    "Malformed",
    "NotFound",
    "Profile",
    "ProfileStore",
    "SSHVaultError",
    "StoreConfig",
    "StoreUnavailable",
]
