import os
import base64

import pytest
from cryptography.hazmat.decrepit.ciphers.modes import CFB
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms

from sshvault.store import ProfileStore


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "sshcli.db"


@pytest.fixture
def store(db_path):
    with ProfileStore(db_path) as s:
        yield s


@pytest.fixture
def legacy_envelope():
    """Build an envelope the way older releases did: base64(iv || AES-CFB)."""
    def make(key: bytes, plaintext: str) -> str:
        iv = os.urandom(16)
        encryptor = Cipher(algorithms.AES(key), CFB(iv)).encryptor()
        body = encryptor.update(plaintext.encode("utf-8")) + encryptor.finalize()
        return base64.b64encode(iv + body).decode("ascii")
    return make
