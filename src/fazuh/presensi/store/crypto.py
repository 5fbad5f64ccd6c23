"""AES-256-GCM envelope encryption for secrets at rest.

The key is derived from the master secret with scrypt, once per process, and
only ever lives in memory. Every encryption draws a fresh 96-bit nonce.
"""

import binascii
from functools import lru_cache
import os
from typing import TypedDict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from fazuh.presensi.error import DecryptionError
from fazuh.presensi.error import EncryptionError

NONCE_SIZE = 12
TAG_SIZE = 16
SALT_SIZE = 16
KEY_SIZE = 32

# scrypt cost parameters (N=2^15 takes roughly 100ms on commodity hardware)
SCRYPT_N = 2**15
SCRYPT_R = 8
SCRYPT_P = 1


class Envelope(TypedDict):
    nonce: str
    ciphertext: str
    tag: str


def new_salt() -> bytes:
    return os.urandom(SALT_SIZE)


@lru_cache(maxsize=4)
def derive_key(master_secret: str, salt: bytes) -> bytes:
    """Derives the 32-byte AES key. Cached so the slow KDF runs once per process."""
    kdf = Scrypt(salt=salt, length=KEY_SIZE, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(master_secret.encode())


class Cipher:
    """Encrypts and decrypts individual secrets into `{nonce, ciphertext, tag}` envelopes."""

    def __init__(self, master_secret: str, salt: bytes):
        if not master_secret:
            raise EncryptionError("Master secret is empty.")
        self._aesgcm = AESGCM(derive_key(master_secret, salt))

    def __repr__(self):
        return "Cipher(<key hidden>)"

    def encrypt(self, plaintext: str) -> Envelope:
        nonce = os.urandom(NONCE_SIZE)
        try:
            sealed = self._aesgcm.encrypt(nonce, plaintext.encode(), None)
        except (TypeError, ValueError, OverflowError) as e:
            raise EncryptionError(f"Failed to encrypt data: {e}") from e

        # AESGCM appends the tag to the ciphertext.
        return {
            "nonce": nonce.hex(),
            "ciphertext": sealed[:-TAG_SIZE].hex(),
            "tag": sealed[-TAG_SIZE:].hex(),
        }

    def decrypt(self, envelope: Envelope) -> str:
        """Opens an envelope.

        Raises:
            DecryptionError: If the envelope is malformed, tampered with, or was
                sealed under a different key.
        """
        try:
            nonce = bytes.fromhex(envelope["nonce"])
            ciphertext = bytes.fromhex(envelope["ciphertext"])
            tag = bytes.fromhex(envelope["tag"])
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise DecryptionError(f"Malformed envelope: {e!r}") from e

        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise DecryptionError("Malformed envelope: bad nonce or tag length")

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecryptionError("Authentication tag mismatch") from e

        try:
            return plaintext.decode()
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted data is not valid UTF-8") from e
