# crypto_core/merkle.py
"""
Inclusion-proof checks against a root returned by the index service.

Node hashing (left || right under H) has to match the index service and
the circuit; it is only used when VERIFY_INCLUSION_PROOFS is on.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

from shieldpool.crypto_core.codec import bytes32, from_hex, to_hex
from shieldpool.crypto_core.commitments import H
from shieldpool.errors import MalformedInput


@dataclass(frozen=True)
class InclusionProof:
    """Ordered sibling hashes (leaf to root) plus side bits (1 = current node is the right child)."""

    path_elements: Tuple[str, ...] = field(default_factory=tuple)
    path_indices: Tuple[int, ...] = field(default_factory=tuple)

    def __post_init__(self):
        elems = tuple(to_hex(bytes32(e, "path element")) for e in self.path_elements)
        idx = tuple(int(i) for i in self.path_indices)
        if len(elems) != len(idx):
            raise MalformedInput(
                f"proof has {len(elems)} sibling hashes but {len(idx)} side bits"
            )
        if any(i not in (0, 1) for i in idx):
            raise MalformedInput("proof side bits must be 0 or 1")
        object.__setattr__(self, "path_elements", elems)
        object.__setattr__(self, "path_indices", idx)

    @property
    def depth(self) -> int:
        return len(self.path_elements)

    def to_dict(self) -> Dict[str, Any]:
        return {"path_elements": list(self.path_elements), "path_indices": list(self.path_indices)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "InclusionProof":
        elems = d.get("path_elements", d.get("pathElements"))
        idx = d.get("path_indices", d.get("pathIndices"))
        if elems is None or idx is None:
            raise MalformedInput("proof needs path_elements and path_indices")
        return cls(path_elements=tuple(elems), path_indices=tuple(idx))


def hash_pair(left: bytes, right: bytes) -> bytes:
    return H(left + right)


def compute_root(leaf: bytes, proof: InclusionProof) -> bytes:
    node = bytes32(leaf, "leaf")
    for sib_hex, side in zip(proof.path_elements, proof.path_indices):
        sib = from_hex(sib_hex)
        node = hash_pair(sib, node) if side else hash_pair(node, sib)
    return node


def verify_inclusion(leaf: bytes, proof: InclusionProof, root: bytes) -> bool:
    return compute_root(leaf, proof) == bytes32(root, "root")


def side_bits_for_index(leaf_index: int, depth: int) -> List[int]:
    return [(leaf_index >> level) & 1 for level in range(depth)]


def build_proof(leaves: Sequence[bytes], index: int) -> Tuple[bytes, InclusionProof]:
    """
    Root and proof for `leaves[index]` in a tree padded with zero leaves to a
    power of two. Test and tooling helper; the live tree is the index service's.
    """
    if not leaves:
        raise MalformedInput("cannot build a proof over no leaves")
    if not 0 <= index < len(leaves):
        raise MalformedInput(f"leaf index {index} out of range")
    layer = [bytes32(l, "leaf") for l in leaves]
    size = 1
    while size < len(layer):
        size *= 2
    layer += [b"\x00" * 32] * (size - len(layer))
    elems: List[str] = []
    bits: List[int] = []
    i = index
    while len(layer) > 1:
        sib = i ^ 1
        elems.append(to_hex(layer[sib]))
        bits.append(i & 1)
        layer = [hash_pair(layer[j], layer[j + 1]) for j in range(0, len(layer), 2)]
        i //= 2
    return layer[0], InclusionProof(path_elements=tuple(elems), path_indices=tuple(bits))
