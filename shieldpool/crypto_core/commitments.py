# crypto_core/commitments.py
"""
Commitment engine: pk_spend, commitment, nullifier and outputs hash.

H must be the exact hash the verifier circuit uses; the circuit currently
hashes with SHA-256. Changing HASH_NAME without changing the circuit yields
notes that can never be proven.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple, Union

from shieldpool.crypto_core.codec import (
    BytesLike,
    bytes32,
    decode_address,
    le32,
    le64,
    require_u64,
)
from shieldpool.errors import InvalidState, MalformedInput

HASH_NAME = "sha256"


def H(data: bytes) -> bytes:
    return hashlib.new(HASH_NAME, data).digest()


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


@dataclass(frozen=True)
class Output:
    """Withdrawal target: 32-byte address and u64 amount."""

    address: bytes
    amount: int

    def __post_init__(self):
        object.__setattr__(self, "address", decode_address(self.address))
        require_u64(self.amount, "output amount")

    @classmethod
    def parse(cls, text: str) -> "Output":
        """'ADDRESS:AMOUNT' (address base58 or hex)."""
        addr, sep, amt = text.rpartition(":")
        if not sep or not addr:
            raise MalformedInput(f"output must look like ADDRESS:AMOUNT, got {text!r}")
        try:
            amount = int(amt)
        except ValueError:
            raise MalformedInput(f"output amount is not an integer: {amt!r}") from None
        return cls(address=decode_address(addr), amount=amount)


OutputLike = Union[Output, Tuple[Union[BytesLike, str], int]]


def _as_output(o: OutputLike) -> Output:
    if isinstance(o, Output):
        return o
    try:
        addr, amount = o
    except (TypeError, ValueError):
        raise MalformedInput(f"not an output: {o!r}") from None
    return Output(address=decode_address(addr), amount=amount)


def derive_public_key(spend_secret: BytesLike) -> bytes:
    """pk_spend = H(sk_spend)"""
    return H(bytes32(spend_secret, "spend_secret"))


def compute_commitment(amount: int, randomness: BytesLike, spend_public: BytesLike) -> bytes:
    """commitment = H(LE64(amount) || r || pk_spend), 72-byte preimage."""
    buf = le64(amount, "amount") + bytes32(randomness, "randomness") + bytes32(spend_public, "spend_public")
    return H(buf)


def compute_nullifier(spend_secret: BytesLike, leaf_index: Optional[int]) -> bytes:
    """nullifier = H(sk_spend || LE32(leaf_index)), 36-byte preimage."""
    if leaf_index is None:
        raise InvalidState("nullifier needs a leaf index; note is not finalized")
    return H(bytes32(spend_secret, "spend_secret") + le32(leaf_index, "leaf_index"))


def compute_outputs_hash(outputs: Sequence[OutputLike]) -> bytes:
    """H(addr_0 || LE64(amt_0) || addr_1 || ...). Order matters."""
    buf = bytearray()
    for o in outputs:
        out = _as_output(o)
        buf += out.address
        buf += le64(out.amount, "output amount")
    return H(bytes(buf))


def normalize_outputs(outputs: Iterable[OutputLike]) -> Tuple[Output, ...]:
    return tuple(_as_output(o) for o in outputs)


__all__ = [
    "HASH_NAME",
    "H",
    "sha256",
    "Output",
    "derive_public_key",
    "compute_commitment",
    "compute_nullifier",
    "compute_outputs_hash",
    "normalize_outputs",
]
