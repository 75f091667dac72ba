# crypto_core/codec.py
"""
Canonical byte layouts shared with the verifier circuit.

All integers are little-endian and unsigned. Addresses and hashes are
exactly 32 bytes. Anything else raises MalformedInput before it reaches
a hash function.
"""
from __future__ import annotations

from typing import Tuple, Union

import base58

from shieldpool.errors import MalformedInput

U64_MAX = (1 << 64) - 1
U32_MAX = (1 << 32) - 1

HASH_LEN = 32
ADDRESS_LEN = 32

# Fixed by the prover / on-chain verifier
PUBLIC_INPUTS_LEN = 104  # root(32) | nf(32) | outputs_hash(32) | amount(8)
PROOF_LEN = 260

BytesLike = Union[bytes, bytearray, memoryview]


def _require_uint(value: int, bits: int, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedInput(f"{label} must be an integer, got {type(value).__name__}")
    if value < 0 or value >= (1 << bits):
        raise MalformedInput(f"{label} {value} does not fit u{bits}")
    return value


def le64(value: int, label: str = "value") -> bytes:
    return _require_uint(value, 64, label).to_bytes(8, "little")


def le32(value: int, label: str = "value") -> bytes:
    return _require_uint(value, 32, label).to_bytes(4, "little")


def read_le64(buf: BytesLike) -> int:
    if len(buf) != 8:
        raise MalformedInput(f"u64 needs 8 bytes, got {len(buf)}")
    return int.from_bytes(bytes(buf), "little")


def require_u64(value: int, label: str = "value") -> int:
    return _require_uint(value, 64, label)


def require_u32(value: int, label: str = "value") -> int:
    return _require_uint(value, 32, label)


def from_hex(s: str, label: str = "hex") -> bytes:
    if not isinstance(s, str):
        raise MalformedInput(f"{label} must be a hex string")
    clean = s[2:] if s.startswith(("0x", "0X")) else s
    if len(clean) % 2:
        raise MalformedInput(f"{label}: hex string must have even length")
    try:
        return bytes.fromhex(clean)
    except ValueError as e:
        raise MalformedInput(f"{label}: invalid hex ({e})") from None


def to_hex(b: BytesLike) -> str:
    return bytes(b).hex()


def bytes32(value: Union[BytesLike, str], label: str = "value") -> bytes:
    """Accept raw 32 bytes or 64 hex chars; return bytes."""
    if isinstance(value, str):
        raw = from_hex(value, label)
    elif isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
    else:
        raise MalformedInput(f"{label} must be bytes or hex, got {type(value).__name__}")
    if len(raw) != HASH_LEN:
        raise MalformedInput(f"Invalid {label} length: {len(raw)}, expected {HASH_LEN}")
    return raw


def decode_address(value: Union[BytesLike, str]) -> bytes:
    """
    Fixed-width address decoding.

    bytes are taken as-is; a 64-char string is hex; any other string is
    base58 (ledger wire format). Result must be exactly 32 bytes.
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
    elif isinstance(value, str):
        s = value.strip()
        clean = s[2:] if s.startswith(("0x", "0X")) else s
        if len(clean) == 2 * ADDRESS_LEN and all(c in "0123456789abcdefABCDEF" for c in clean):
            raw = bytes.fromhex(clean)
        else:
            try:
                raw = base58.b58decode(s)
            except ValueError as e:
                raise MalformedInput(f"Invalid base58 address {s!r}: {e}") from None
    else:
        raise MalformedInput(f"address must be bytes or str, got {type(value).__name__}")
    if len(raw) != ADDRESS_LEN:
        raise MalformedInput(f"Invalid address length: {len(raw)}, expected {ADDRESS_LEN}")
    return raw


def encode_address(raw: BytesLike) -> str:
    """32-byte address -> base58 (ledger display form)."""
    return base58.b58encode(decode_address(bytes(raw))).decode("ascii")


def encode_public_inputs(root: BytesLike, nullifier: BytesLike, outputs_hash: BytesLike, amount: int) -> bytes:
    """root || nullifier || outputs_hash || LE64 amount; each part is length-checked, so always 104 bytes."""
    return (
        bytes32(bytes(root), "root")
        + bytes32(bytes(nullifier), "nullifier")
        + bytes32(bytes(outputs_hash), "outputs_hash")
        + le64(amount, "amount")
    )


def decode_public_inputs(blob: BytesLike) -> Tuple[bytes, bytes, bytes, int]:
    raw = bytes(blob)
    if len(raw) != PUBLIC_INPUTS_LEN:
        raise MalformedInput(f"public inputs must be {PUBLIC_INPUTS_LEN} bytes, got {len(raw)}")
    return raw[0:32], raw[32:64], raw[64:96], read_le64(raw[96:104])


def require_proof(blob: BytesLike) -> bytes:
    raw = bytes(blob)
    if len(raw) != PROOF_LEN:
        raise MalformedInput(f"proof must be {PROOF_LEN} bytes, got {len(raw)}")
    return raw
