"""
sshvault - Cryptography Module

All cryptographic operations for the credential store live in this file.
Nothing else in the package touches a cipher directly.

Security Architecture:
    1. One random 256-bit key per installation (see keys.py)
    2. Each secret field is sealed on its own with AES-256-GCM
    3. Envelope = base64( nonce(12) || ciphertext || tag(16) )
    4. Values written by older releases used AES-256-CFB without a tag:
       base64( iv(16) || ciphertext ). They are still readable, never written.

Why the legacy reader is gated:
    GCM failure is the trigger for trying CFB. CFB has no integrity check,
    so a tampered GCM envelope would "decrypt" to noise under CFB. Legacy
    plaintexts were typed passwords, so a result that is not UTF-8 or holds
    control characters (tab excepted) is rejected as an authentication
    failure instead of being handed back as a secret.
"""

import os
import base64
import binascii
import logging
from typing import NamedTuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.decrepit.ciphers.modes import CFB
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationFailed, Malformed

logger = logging.getLogger("sshvault.crypto")


# =============================================================================
# Configuration
# =============================================================================

KEY_SIZE = 32            # 256-bit key
NONCE_SIZE = 12          # 96-bit nonce for AES-GCM
TAG_SIZE = 16            # 128-bit authentication tag
LEGACY_IV_SIZE = 16      # AES block size, CFB initialization vector


# =============================================================================
# Key Generation
# =============================================================================

def generate_key() -> bytes:
    """
    Generate a fresh encryption key.

    Returns:
        32 random bytes from the OS CSPRNG
    """
    return os.urandom(KEY_SIZE)


# =============================================================================
# Encryption (AES-256-GCM)
# =============================================================================

def encrypt(key: bytes, plaintext: bytes) -> bytes:
    """
    Seal plaintext with AES-256-GCM.

    A random nonce is drawn for every call (NEVER reuse a nonce with the
    same key) and prepended to the output.

    Args:
        key: 32-byte encryption key
        plaintext: Data to encrypt

    Returns:
        nonce || ciphertext || tag
    """
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, None)


def decrypt(key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
    """
    Open an AES-256-GCM ciphertext.

    Raises:
        cryptography.exceptions.InvalidTag: wrong key or tampered data
    """
    return AESGCM(key).decrypt(nonce, ciphertext, None)


def decrypt_legacy(key: bytes, data: bytes) -> bytes:
    """
    Decrypt the old AES-256-CFB format (iv || ciphertext).

    There is no tag, so this cannot fail on a wrong key; it just returns
    noise. Callers must check the result.
    """
    if len(data) < LEGACY_IV_SIZE:
        raise Malformed("legacy ciphertext too short")
    iv, body = data[:LEGACY_IV_SIZE], data[LEGACY_IV_SIZE:]
    decryptor = Cipher(algorithms.AES(key), CFB(iv)).decryptor()
    return decryptor.update(body) + decryptor.finalize()


def _b64decode(envelope: str) -> bytes:
    try:
        return base64.b64decode(envelope, validate=True)
    except (binascii.Error, ValueError) as e:
        raise Malformed(f"envelope is not valid base64: {e}") from e


# C0 and C1 control characters; tab is allowed
_CONTROL_CHARS = frozenset(
    [chr(c) for c in range(0x20) if c != 0x09] + [chr(0x7F)] + [chr(c) for c in range(0x80, 0xA0)]
)


def _plausible_legacy_text(data: bytes) -> str:
    # Legacy values were typed passwords; noise from a tampered GCM
    # envelope is almost never control-free UTF-8.
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        raise AuthenticationFailed("legacy decryption produced invalid text") from None
    if any(ch in _CONTROL_CHARS for ch in text):
        raise AuthenticationFailed("legacy decryption produced control characters")
    return text


# =============================================================================
# Field Cipher
# =============================================================================

class DecryptedField(NamedTuple):
    """Plaintext of one field plus whether it came from the legacy format."""
    value: str
    legacy: bool


class FieldCipher:
    """
    Encrypts and decrypts single secret fields with one key handle.

    The key is passed in explicitly (see KeyManager); the cipher never
    reaches for global state.

    Usage:
        cipher = FieldCipher(key)
        envelope = cipher.encrypt_field("s3cret")
        cipher.decrypt_field(envelope)   # -> "s3cret"
    """

    def __init__(self, key: bytes, allow_legacy: bool = True):
        if len(key) != KEY_SIZE:
            raise ValueError(f"key must be {KEY_SIZE} bytes, got {len(key)}")
        self._key = key
        self.allow_legacy = allow_legacy

    def encrypt_field(self, plaintext: str) -> str:
        """
        Encrypt one secret for storage.

        Always produces the current (GCM) format.

        Args:
            plaintext: Secret text (password, passphrase)

        Returns:
            base64 text envelope
        """
        sealed = encrypt(self._key, plaintext.encode("utf-8"))
        return base64.b64encode(sealed).decode("ascii")

    def open_field(self, envelope: str) -> DecryptedField:
        """
        Decrypt one envelope and report which format it was in.

        Reads never rewrite anything; a ``legacy=True`` result is the
        caller's cue to re-encrypt on its next write.

        Raises:
            Malformed: not base64, or shorter than the nonce
            AuthenticationFailed: GCM tag mismatch and legacy fallback
                disabled or rejected
        """
        data = _b64decode(envelope)
        if len(data) < NONCE_SIZE:
            raise Malformed("ciphertext too short")

        nonce, body = data[:NONCE_SIZE], data[NONCE_SIZE:]
        try:
            plaintext = decrypt(self._key, nonce, body)
        except InvalidTag:
            if not self.allow_legacy:
                raise AuthenticationFailed("message authentication failed") from None
            return DecryptedField(self._open_legacy(data), True)

        try:
            return DecryptedField(plaintext.decode("utf-8"), False)
        except UnicodeDecodeError as e:
            raise Malformed("decrypted value is not UTF-8 text") from e

    def decrypt_field(self, envelope: str) -> str:
        """Decrypt one envelope to its plaintext."""
        return self.open_field(envelope).value

    def is_legacy(self, envelope: str) -> bool:
        """True if the envelope only opens through the legacy format."""
        return self.open_field(envelope).legacy

    def _open_legacy(self, data: bytes) -> str:
        try:
            raw = decrypt_legacy(self._key, data)
        except Malformed as e:
            raise AuthenticationFailed(f"failed to decrypt legacy format: {e}") from e
        text = _plausible_legacy_text(raw)
        logger.debug("Field opened through legacy CFB format")
        return text
