"""Field encryption: AES-GCM envelopes, legacy CFB reads, tamper detection."""

import base64
import warnings

import pytest
from cryptography.exceptions import InvalidTag

from sshvault import crypto
from sshvault.crypto import FieldCipher
from sshvault.errors import AuthenticationFailed, DecryptionFailed, Malformed


@pytest.fixture
def key():
    return crypto.generate_key()


def test_generate_key():
    k1 = crypto.generate_key()
    k2 = crypto.generate_key()
    assert len(k1) == 32
    assert k1 != k2


def test_encrypt_decrypt_bytes(key):
    sealed = crypto.encrypt(key, b"This is a secret message!")
    nonce, body = sealed[:crypto.NONCE_SIZE], sealed[crypto.NONCE_SIZE:]
    assert crypto.decrypt(key, nonce, body) == b"This is a secret message!"

    tampered = bytearray(body)
    tampered[0] ^= 1
    with pytest.raises(InvalidTag):
        crypto.decrypt(key, nonce, bytes(tampered))


@pytest.mark.parametrize("plaintext", ["s3cret", "", "pässwörd ✓", "x" * 500, "with spaces and\ttabs"])
def test_field_roundtrip(key, plaintext):
    cipher = FieldCipher(key)
    envelope = cipher.encrypt_field(plaintext)
    assert cipher.decrypt_field(envelope) == plaintext
    assert cipher.open_field(envelope) == (plaintext, False)


def test_envelope_layout(key):
    envelope = FieldCipher(key).encrypt_field("s3cret")
    raw = base64.b64decode(envelope)
    assert len(raw) == crypto.NONCE_SIZE + len("s3cret") + crypto.TAG_SIZE


def test_fresh_nonce_each_time(key):
    cipher = FieldCipher(key)
    assert cipher.encrypt_field("same") != cipher.encrypt_field("same")


def test_legacy_envelope_decrypts(key, legacy_envelope):
    cipher = FieldCipher(key)
    envelope = legacy_envelope(key, "0ld-p4ssword!")
    opened = cipher.open_field(envelope)
    assert opened.value == "0ld-p4ssword!"
    assert opened.legacy is True
    assert cipher.is_legacy(envelope)
    assert not cipher.is_legacy(cipher.encrypt_field("0ld-p4ssword!"))


def test_legacy_refused_when_disabled(key, legacy_envelope):
    cipher = FieldCipher(key, allow_legacy=False)
    with pytest.raises(AuthenticationFailed):
        cipher.decrypt_field(legacy_envelope(key, "0ld-p4ssword!"))


def test_tampering_any_byte_fails(key):
    """Flipping any byte of a GCM envelope never yields plaintext."""
    cipher = FieldCipher(key)
    envelope = cipher.encrypt_field("correct horse battery staple")
    raw = base64.b64decode(envelope)

    for i in range(len(raw)):
        tampered = bytearray(raw)
        tampered[i] ^= 0x01
        with pytest.raises(AuthenticationFailed):
            cipher.decrypt_field(base64.b64encode(bytes(tampered)).decode("ascii"))


def test_wrong_key_fails(key):
    envelope = FieldCipher(key).encrypt_field("correct horse battery staple")
    with pytest.raises(AuthenticationFailed):
        FieldCipher(crypto.generate_key()).decrypt_field(envelope)


@pytest.mark.parametrize("envelope", ["not base64!!", "AAAA", "", "QUJD"])
def test_malformed_envelopes(key, envelope):
    with pytest.raises(Malformed):
        FieldCipher(key).decrypt_field(envelope)


def test_short_body_is_authentication_failure(key):
    # long enough for a nonce, too short for a tag or a legacy IV
    envelope = base64.b64encode(b"\x00" * 14).decode("ascii")
    with pytest.raises(AuthenticationFailed):
        FieldCipher(key).decrypt_field(envelope)


def test_errors_share_base_class(key):
    with pytest.raises(DecryptionFailed):
        FieldCipher(key).decrypt_field("###")


def test_key_length_checked():
    with pytest.raises(ValueError):
        FieldCipher(b"short")


@pytest.mark.parametrize("plaintext", ["pass\tword", "", " spaced ", "pässwörd-日本"])
def test_legacy_whitespace_and_unicode(key, legacy_envelope, plaintext):
    opened = FieldCipher(key).open_field(legacy_envelope(key, plaintext))
    assert opened.value == plaintext
    assert opened.legacy is True


@pytest.mark.parametrize("plaintext", ["a\x00b", "line\nbreak", "bell\x07", "c1\x85"])
def test_legacy_control_characters_rejected(key, legacy_envelope, plaintext):
    with pytest.raises(AuthenticationFailed):
        FieldCipher(key).decrypt_field(legacy_envelope(key, plaintext))


def test_legacy_read_emits_no_warnings(key, legacy_envelope):
    envelope = legacy_envelope(key, "0ld-p4ssword!")
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        assert FieldCipher(key).decrypt_field(envelope) == "0ld-p4ssword!"
