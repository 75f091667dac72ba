# crypto_core/keys.py
"""
Wallet key hierarchy.

    master_seed (32B, secret)
      ├─ spend_secret = HKDF(seed, "shieldpool-spend-v1")
      │    ├─ spend_public = H(spend_secret)           (goes into commitments)
      │    └─ view_secret  = HKDF(spend_secret, "shieldpool-view-v1")
      │         └─ view_public = X25519(view_secret)   (recipients encrypt to it)
      └─ storage_key  = HKDF(seed, "shieldpool-storage-v1")  (at-rest encryption)

The object is passed explicitly to whatever needs it. There is no
process-wide wallet.
"""
from __future__ import annotations

import json
import secrets
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from nacl.public import PrivateKey, PublicKey

from shieldpool.crypto_core.codec import bytes32, from_hex, to_hex
from shieldpool.crypto_core.commitments import derive_public_key
from shieldpool.errors import InvalidState, MalformedInput

KEYS_FORMAT_VERSION = 2

_SPEND_INFO = b"shieldpool-spend-v1"
_VIEW_INFO = b"shieldpool-view-v1"
_STORAGE_INFO = b"shieldpool-storage-v1"


def _hkdf32(ikm: bytes, info: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=info,
    )
    return hkdf.derive(ikm)


class WalletKeyMaterial:
    def __init__(self, master_seed: bytes):
        seed = bytes32(master_seed, "master_seed")
        self._seed: Optional[bytearray] = bytearray(seed)
        self._spend_secret: Optional[bytearray] = bytearray(_hkdf32(seed, _SPEND_INFO))
        self.spend_public: bytes = derive_public_key(bytes(self._spend_secret))
        view_secret = _hkdf32(bytes(self._spend_secret), _VIEW_INFO)
        self._view_key: Optional[PrivateKey] = PrivateKey(view_secret)
        self.view_public: bytes = bytes(self._view_key.public_key)
        self._storage_key: Optional[bytearray] = bytearray(_hkdf32(seed, _STORAGE_INFO))

    # ----- construction -----
    @classmethod
    def generate(cls) -> "WalletKeyMaterial":
        return cls(secrets.token_bytes(32))

    @classmethod
    def from_seed(cls, seed: bytes) -> "WalletKeyMaterial":
        return cls(seed)

    # ----- accessors -----
    def _live(self, v):
        if v is None:
            raise InvalidState("wallet key material has been wiped")
        return v

    @property
    def master_seed(self) -> bytes:
        return bytes(self._live(self._seed))

    @property
    def spend_secret(self) -> bytes:
        return bytes(self._live(self._spend_secret))

    @property
    def view_key(self) -> PrivateKey:
        return self._live(self._view_key)

    @property
    def view_public_key(self) -> PublicKey:
        return PublicKey(self.view_public)

    @property
    def storage_key(self) -> bytes:
        return bytes(self._live(self._storage_key))

    @property
    def wiped(self) -> bool:
        return self._seed is None

    def wipe(self) -> None:
        """Zero every held secret. Any later secret access raises InvalidState."""
        for buf in (self._seed, self._spend_secret, self._storage_key):
            if buf is not None:
                for i in range(len(buf)):
                    buf[i] = 0
        self._seed = None
        self._spend_secret = None
        self._storage_key = None
        self._view_key = None

    # ----- backup -----
    def export_dict(self) -> Dict[str, Any]:
        return {
            "version": KEYS_FORMAT_VERSION,
            "master_seed": to_hex(self.master_seed),
            "spend_public": to_hex(self.spend_public),
            "view_public": to_hex(self.view_public),
        }

    def export_json(self) -> str:
        return json.dumps(self.export_dict(), indent=2)

    @classmethod
    def import_json(cls, raw: str) -> "WalletKeyMaterial":
        try:
            d = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedInput(f"wallet backup is not JSON: {e}") from None
        if not isinstance(d, dict) or "master_seed" not in d:
            raise MalformedInput("wallet backup has no master_seed")
        version = int(d.get("version", KEYS_FORMAT_VERSION))
        if version > KEYS_FORMAT_VERSION:
            raise MalformedInput(f"unsupported wallet backup version {version}")
        wallet = cls(from_hex(d["master_seed"], "master_seed"))
        # Re-derived keys must agree with whatever the backup recorded
        for field, actual in (("spend_public", wallet.spend_public), ("view_public", wallet.view_public)):
            stored = d.get(field)
            if stored and from_hex(stored, field) != actual:
                raise MalformedInput(f"wallet backup {field} does not match its master seed")
        return wallet

    def __repr__(self) -> str:
        state = "wiped" if self.wiped else to_hex(self.spend_public)[:12] + "…"
        return f"WalletKeyMaterial(spend_public={state})"
