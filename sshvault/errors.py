"""
sshvault - Error Types

Every failure the store can report maps to one of these classes, so callers
can tell "ask the user again" apart from "stop now":

    NotFound, AuthenticationFailed      recoverable (re-prompt, re-enter)
    KeyUnavailable, StoreUnavailable    fatal for the current operation
"""


class SSHVaultError(Exception):
    """Base class for all sshvault errors."""


class NotFound(SSHVaultError):
    """No profile row exists for the requested host."""

    def __init__(self, host: str):
        super().__init__(f"no profile found for host: {host}")
        self.host = host


class DecryptionFailed(SSHVaultError):
    """A stored secret could not be turned back into plaintext."""


class Malformed(DecryptionFailed):
    """Envelope is not valid base64 or is shorter than its nonce/IV."""


class AuthenticationFailed(DecryptionFailed):
    """Integrity check failed and the legacy fallback did not recover it."""


class KeyUnavailable(SSHVaultError):
    """The encryption key could not be loaded or created."""


class StoreUnavailable(SSHVaultError):
    """The backing database is unreachable, locked or unwritable."""


class InvalidProfile(SSHVaultError, ValueError):
    """Profile data (host, port, tunnel, proxy) failed validation."""


class ConfigError(SSHVaultError, ValueError):
    """Settings (environment or arguments) failed validation."""
