# notes/models.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from shieldpool.crypto_core.codec import bytes32, encode_public_inputs, to_hex
from shieldpool.crypto_core.commitments import Output, derive_public_key
from shieldpool.crypto_core.merkle import InclusionProof


class LifecycleState(str, Enum):
    GENERATED = "generated"
    SUBMITTED = "submitted"
    FINALIZED = "finalized"
    SPENT = "spent"


@dataclass(frozen=True)
class SecretMaterial:
    spend_secret: bytes
    randomness: bytes

    def __post_init__(self):
        object.__setattr__(self, "spend_secret", bytes32(self.spend_secret, "spend_secret"))
        object.__setattr__(self, "randomness", bytes32(self.randomness, "randomness"))

    def __repr__(self) -> str:
        return "SecretMaterial(<redacted>)"


@dataclass(frozen=True)
class PublicMaterial:
    spend_public: bytes

    @classmethod
    def from_secret(cls, secret: SecretMaterial) -> "PublicMaterial":
        return cls(spend_public=derive_public_key(secret.spend_secret))


@dataclass
class Note:
    amount: int
    secret: SecretMaterial
    public: PublicMaterial
    commitment: bytes
    state: LifecycleState = LifecycleState.GENERATED
    leaf_index: Optional[int] = None
    inclusion_root: Optional[bytes] = None
    inclusion_proof: Optional[InclusionProof] = None
    deposit_reference: Optional[str] = None
    deposit_slot: Optional[int] = None
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))
    network: Optional[str] = None

    @property
    def commitment_hex(self) -> str:
        return to_hex(self.commitment)

    @property
    def is_spendable(self) -> bool:
        return self.state == LifecycleState.FINALIZED

    def public_view(self) -> Dict[str, Any]:
        """Fields that are safe to show or log (no secret material)."""
        return {
            "commitment": self.commitment_hex,
            "amount": self.amount,
            "state": self.state.value,
            "leaf_index": self.leaf_index,
            "root": to_hex(self.inclusion_root) if self.inclusion_root else None,
            "deposit_reference": self.deposit_reference,
            "deposit_slot": self.deposit_slot,
            "network": self.network,
        }

    def __repr__(self) -> str:
        return (
            f"Note(commitment={self.commitment_hex[:12]}…, amount={self.amount}, "
            f"state={self.state.value}, leaf_index={self.leaf_index})"
        )


@dataclass(frozen=True)
class SpendInputs:
    """Exactly what the external prover consumes for one spend."""

    # private
    amount: int
    randomness: bytes
    spend_secret: bytes
    leaf_index: int
    proof: InclusionProof
    # public
    root: bytes
    nullifier: bytes
    outputs_hash: bytes
    outputs: Tuple[Output, ...]

    def private_inputs(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "r": to_hex(self.randomness),
            "sk_spend": to_hex(self.spend_secret),
            "leaf_index": self.leaf_index,
            "merkle_path": {
                "path_elements": list(self.proof.path_elements),
                "path_indices": list(self.proof.path_indices),
            },
        }

    def public_inputs(self) -> Dict[str, Any]:
        return {
            "root": to_hex(self.root),
            "nf": to_hex(self.nullifier),
            "outputs_hash": to_hex(self.outputs_hash),
            "amount": self.amount,
        }

    def outputs_json(self) -> List[Dict[str, Any]]:
        return [{"address": to_hex(o.address), "amount": o.amount} for o in self.outputs]

    def public_inputs_bytes(self) -> bytes:
        return encode_public_inputs(self.root, self.nullifier, self.outputs_hash, self.amount)

    def __repr__(self) -> str:
        return f"SpendInputs(nf={to_hex(self.nullifier)[:12]}…, amount={self.amount}, outputs={len(self.outputs)})"


__all__ = ["LifecycleState", "SecretMaterial", "PublicMaterial", "Note", "SpendInputs", "Output"]
