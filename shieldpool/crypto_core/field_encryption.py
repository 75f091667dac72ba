# crypto_core/field_encryption.py
from __future__ import annotations

import hashlib

from nacl.exceptions import CryptoError
from nacl.secret import SecretBox
from nacl.utils import random as nacl_random

from shieldpool.crypto_core.codec import bytes32
from shieldpool.errors import CorruptPayload


class FieldEncryption:
    """
    At-rest encryption for note records (XSalsa20-Poly1305 SecretBox).

    Stored blob = nonce(24) || ciphertext. The key comes from the wallet's
    storage key so a copied database is useless without the seed.
    """

    def __init__(self, key32: bytes):
        self._box = SecretBox(bytes32(key32, "storage key"))
        self.key_id = hashlib.sha256(b"shieldpool-key-id|" + bytes(key32)).hexdigest()[:16]

    def encrypt(self, plaintext: bytes) -> bytes:
        nonce = nacl_random(SecretBox.NONCE_SIZE)
        return bytes(self._box.encrypt(plaintext, nonce))  # nonce || ct

    def decrypt(self, blob: bytes) -> bytes:
        try:
            return self._box.decrypt(bytes(blob))
        except CryptoError:
            raise CorruptPayload("stored record does not decrypt under this wallet's storage key") from None
