import pytest

from fazuh.presensi.error import DecryptionError
from fazuh.presensi.error import EncryptionError
from fazuh.presensi.store.crypto import NONCE_SIZE
from fazuh.presensi.store.crypto import TAG_SIZE
from fazuh.presensi.store.crypto import Cipher
from fazuh.presensi.store.crypto import new_salt

SALT = b"0123456789abcdef"


@pytest.fixture
def cipher():
    return Cipher("master-secret", SALT)


def _flip(hex_text: str) -> str:
    raw = bytearray(bytes.fromhex(hex_text))
    raw[0] ^= 0x01
    return raw.hex()


@pytest.mark.parametrize("secret", ["hunter2", "", "kata sandi rahasia", '{"PHPSESSID": "abc"}'])
def test_round_trip(cipher, secret):
    assert cipher.decrypt(cipher.encrypt(secret)) == secret


def test_envelope_shape(cipher):
    envelope = cipher.encrypt("hunter2")
    assert set(envelope) == {"nonce", "ciphertext", "tag"}
    assert len(bytes.fromhex(envelope["nonce"])) == NONCE_SIZE
    assert len(bytes.fromhex(envelope["tag"])) == TAG_SIZE
    assert "hunter2" not in str(envelope)


def test_fresh_nonce_per_encryption(cipher):
    first = cipher.encrypt("hunter2")
    second = cipher.encrypt("hunter2")
    assert first["nonce"] != second["nonce"]
    assert first["ciphertext"] != second["ciphertext"]


@pytest.mark.parametrize("field", ["ciphertext", "tag", "nonce"])
def test_tampering_is_detected(cipher, field):
    envelope = cipher.encrypt("hunter2")
    envelope[field] = _flip(envelope[field])
    with pytest.raises(DecryptionError):
        cipher.decrypt(envelope)


def test_wrong_key_is_detected(cipher):
    envelope = cipher.encrypt("hunter2")
    with pytest.raises(DecryptionError):
        Cipher("another-secret", SALT).decrypt(envelope)


def test_other_salt_derives_other_key(cipher):
    envelope = cipher.encrypt("hunter2")
    with pytest.raises(DecryptionError):
        Cipher("master-secret", new_salt()).decrypt(envelope)


@pytest.mark.parametrize(
    "envelope",
    [
        {},
        {"nonce": "zz", "ciphertext": "00", "tag": "00" * TAG_SIZE},
        {"nonce": "00", "ciphertext": "00", "tag": "00" * TAG_SIZE},
        None,
    ],
)
def test_malformed_envelope(cipher, envelope):
    with pytest.raises(DecryptionError):
        cipher.decrypt(envelope)


def test_empty_master_secret_is_rejected():
    with pytest.raises(EncryptionError):
        Cipher("", SALT)


def test_repr_hides_key(cipher):
    assert "master-secret" not in repr(cipher)
