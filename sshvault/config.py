"""
sshvault - Configuration

Where things live on disk and how the store behaves. Values come from the
environment, falling back to the ~/.ssh defaults:

    SSHVAULT_DB                 SQLite database       (~/.ssh/sshcli.db)
    SSHVAULT_SSH_CONFIG         OpenSSH client config (~/.ssh/config)
    SSHVAULT_LEGACY_KEY_FILE    pre-database key file (~/.ssh/encryption.key)
    SSHVAULT_BUSY_TIMEOUT       seconds to wait on a locked database (5)
    SSHVAULT_ALLOW_LEGACY       accept legacy CFB envelopes on read (1)

Never log key material. Only log paths.
"""
import os
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError

logger = logging.getLogger("sshvault.config")

SSH_DIR = Path.home() / ".ssh"
DEFAULT_DB_PATH = SSH_DIR / "sshcli.db"
DEFAULT_SSH_CONFIG_PATH = SSH_DIR / "config"
DEFAULT_LEGACY_KEY_FILE = SSH_DIR / "encryption.key"

_TRUE_VALUES = ("1", "true", "yes", "on")


class StoreConfig(BaseModel):
    """Validated store settings."""

    db_path: Path = Field(default=DEFAULT_DB_PATH)
    ssh_config_path: Path = Field(default=DEFAULT_SSH_CONFIG_PATH)
    legacy_key_file: Optional[Path] = Field(default=DEFAULT_LEGACY_KEY_FILE)
    busy_timeout: float = Field(default=5.0, gt=0, le=300)
    allow_legacy: bool = True

    @field_validator("db_path", "ssh_config_path", "legacy_key_file")
    @classmethod
    def expand_user(cls, v: Optional[Path]) -> Optional[Path]:
        """Expand ``~`` so paths from the environment work as typed."""
        if v is None:
            return None
        return Path(os.path.expanduser(str(v)))

    def ensure_dirs(self) -> None:
        """Create the parent directories of the database and config file."""
        for path in (self.db_path, self.ssh_config_path):
            if not path.parent.exists():
                path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
                logger.info("Created directory %s", path.parent)

    @classmethod
    def from_env(cls, **overrides) -> "StoreConfig":
        """Build a StoreConfig from SSHVAULT_* variables.

        Keyword overrides win over the environment; ``None`` overrides are
        ignored so argparse defaults can be passed straight through.

        Raises:
            ConfigError: a value does not validate
        """
        values = {}
        env = os.environ
        if env.get("SSHVAULT_DB"):
            values["db_path"] = env["SSHVAULT_DB"]
        if env.get("SSHVAULT_SSH_CONFIG"):
            values["ssh_config_path"] = env["SSHVAULT_SSH_CONFIG"]
        if "SSHVAULT_LEGACY_KEY_FILE" in env:
            values["legacy_key_file"] = env["SSHVAULT_LEGACY_KEY_FILE"] or None
        if env.get("SSHVAULT_BUSY_TIMEOUT"):
            values["busy_timeout"] = env["SSHVAULT_BUSY_TIMEOUT"]
        if env.get("SSHVAULT_ALLOW_LEGACY"):
            values["allow_legacy"] = env["SSHVAULT_ALLOW_LEGACY"].lower() in _TRUE_VALUES
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"invalid settings: {e}") from e
