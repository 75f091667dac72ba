# crypto_core/messages.py
"""
Encrypted note payloads stored by the index service.

Envelope (base64 of canonical JSON):
    {"v":1, "commitment":hex, "ephemeral_pk":hex, "nonce":hex, "ciphertext":hex}

`commitment` is the public tag; everything needed to spend sits in the
ciphertext, sealed with X25519 + XSalsa20-Poly1305 (libsodium box) from a
throwaway ephemeral key to the recipient's view key.
"""
from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Dict, Optional, Tuple, Union

from nacl.exceptions import CryptoError
from nacl.public import Box, PrivateKey, PublicKey
from nacl.utils import random as nacl_random

from shieldpool.crypto_core.codec import bytes32, to_hex

PAYLOAD_VERSION = 1
NONCE_LEN = Box.NONCE_SIZE  # 24


def canonical_json_bytes(obj: Any) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def note_plaintext(amount: int, randomness: bytes, spend_secret: bytes, commitment: bytes) -> Dict[str, Any]:
    return {
        "amount": int(amount),
        "r": to_hex(randomness),
        "sk_spend": to_hex(spend_secret),
        "commitment": to_hex(commitment),
    }


def seal(plaintext: Dict[str, Any], commitment: bytes, recipient_view_public: Union[bytes, PublicKey]) -> bytes:
    """Encrypt a note plaintext to `recipient_view_public`; returns the base64 envelope bytes."""
    pk = recipient_view_public if isinstance(recipient_view_public, PublicKey) else PublicKey(bytes32(recipient_view_public, "view_public"))
    eph = PrivateKey.generate()
    box = Box(eph, pk)
    nonce = nacl_random(NONCE_LEN)
    ct = box.encrypt(canonical_json_bytes(plaintext), nonce).ciphertext
    envelope = {
        "v": PAYLOAD_VERSION,
        "commitment": to_hex(bytes32(commitment, "commitment")),
        "ephemeral_pk": to_hex(bytes(eph.public_key)),
        "nonce": to_hex(nonce),
        "ciphertext": to_hex(ct),
    }
    return base64.b64encode(canonical_json_bytes(envelope))


def parse_envelope(payload: Union[bytes, str]) -> Optional[Dict[str, Any]]:
    """Decode the base64/JSON wrapper. None if it is not an envelope at all."""
    try:
        raw = payload.encode("ascii") if isinstance(payload, str) else bytes(payload)
        env = json.loads(base64.b64decode(raw, validate=True))
    except (binascii.Error, ValueError, UnicodeError):
        return None
    if not isinstance(env, dict):
        return None
    for k in ("ephemeral_pk", "nonce", "ciphertext"):
        if not isinstance(env.get(k), str):
            return None
    return env


def open_payload(payload: Union[bytes, str], view_key: PrivateKey) -> Optional[Tuple[Optional[str], Dict[str, Any]]]:
    """
    Try to decrypt under `view_key`.

    Returns (public commitment tag or None, plaintext dict), or None when the
    payload is not addressed to this key (authentication fails) or cannot be
    decoded.
    """
    env = parse_envelope(payload)
    if env is None:
        return None
    try:
        eph = PublicKey(bytes.fromhex(env["ephemeral_pk"]))
        nonce = bytes.fromhex(env["nonce"])
        ct = bytes.fromhex(env["ciphertext"])
        pt = Box(view_key, eph).decrypt(ct, nonce)
    except (CryptoError, ValueError, TypeError):
        return None
    try:
        data = json.loads(pt)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    tag = env.get("commitment") if isinstance(env.get("commitment"), str) else None
    return tag, data


def encrypt_note_payload(
    amount: int,
    randomness: bytes,
    spend_secret: bytes,
    commitment: bytes,
    recipient_view_public: Union[bytes, PublicKey],
) -> str:
    """ASCII envelope as sent to the index service (`encrypted_output`)."""
    pt = note_plaintext(amount, randomness, spend_secret, commitment)
    return seal(pt, commitment, recipient_view_public).decode("ascii")
