# notes/lifecycle.py
"""
Note lifecycle: Generated -> Submitted -> Finalized -> Spent.

Only these functions move a note between states. Submitted -> Finalized is
driven by the deposit coordinator; Finalized -> Spent happens after the
external spend lands and guards against reusing the note locally (the ledger
enforces the real guard through the nullifier).
"""
from __future__ import annotations

import secrets
from typing import Any, Dict, Optional, Sequence, Union

from nacl.public import PublicKey

from shieldpool.api.logging_config import get_logger, short
from shieldpool.crypto_core.codec import bytes32, require_u32, require_u64, to_hex
from shieldpool.crypto_core.commitments import (
    OutputLike,
    compute_commitment,
    compute_nullifier,
    compute_outputs_hash,
    derive_public_key,
    normalize_outputs,
)
from shieldpool.crypto_core.keys import WalletKeyMaterial
from shieldpool.crypto_core.merkle import InclusionProof
from shieldpool.crypto_core.messages import encrypt_note_payload
from shieldpool.errors import (
    ConflictingFinalization,
    CorruptPayload,
    IllegalTransition,
    InvalidAmount,
    MalformedInput,
    NotSpendable,
)
from shieldpool.notes.models import LifecycleState, Note, PublicMaterial, SecretMaterial, SpendInputs

logger = get_logger("notes.lifecycle")

ProofLike = Union[InclusionProof, Dict[str, Any]]


def _as_proof(proof: ProofLike) -> InclusionProof:
    if isinstance(proof, InclusionProof):
        return proof
    if isinstance(proof, dict):
        return InclusionProof.from_dict(proof)
    raise MalformedInput(f"not an inclusion proof: {type(proof).__name__}")


def generate(amount: int, wallet: Optional[WalletKeyMaterial] = None, network: Optional[str] = None) -> Note:
    """
    Fresh note for `amount`.

    With a wallet, the spend secret is the wallet's spend key, so the note can
    be rediscovered and spent from the seed alone; without one a random spend
    secret is sampled. Randomness is always fresh.
    """
    require_u64(amount, "amount")
    if amount == 0:
        raise InvalidAmount("note amount must be > 0")
    spend_secret = wallet.spend_secret if wallet is not None else secrets.token_bytes(32)
    secret = SecretMaterial(spend_secret=spend_secret, randomness=secrets.token_bytes(32))
    public = PublicMaterial.from_secret(secret)
    commitment = compute_commitment(amount, secret.randomness, public.spend_public)
    note = Note(
        amount=amount,
        secret=secret,
        public=public,
        commitment=commitment,
        state=LifecycleState.GENERATED,
        network=network,
    )
    logger.debug("generated note %s amount=%d", short(note.commitment_hex), amount)
    return note


def rebuild_note(
    amount: int,
    randomness: bytes,
    spend_secret: bytes,
    expected_commitment: Optional[bytes] = None,
    state: LifecycleState = LifecycleState.SUBMITTED,
) -> Note:
    """
    Reconstruct a note from decrypted/stored secrets.
    Raises CorruptPayload if the recomputed commitment differs from `expected_commitment`.
    """
    require_u64(amount, "amount")
    if amount == 0:
        raise InvalidAmount("note amount must be > 0")
    secret = SecretMaterial(spend_secret=spend_secret, randomness=randomness)
    public = PublicMaterial(spend_public=derive_public_key(secret.spend_secret))
    commitment = compute_commitment(amount, secret.randomness, public.spend_public)
    if expected_commitment is not None and bytes32(expected_commitment, "commitment") != commitment:
        raise CorruptPayload(
            f"commitment mismatch: expected {to_hex(expected_commitment)[:16]}…, recomputed {to_hex(commitment)[:16]}…"
        )
    return Note(amount=amount, secret=secret, public=public, commitment=commitment, state=state)


def mark_submitted(note: Note, deposit_reference: str) -> Note:
    if not isinstance(deposit_reference, str) or not deposit_reference.strip():
        raise MalformedInput("deposit_reference must be a non-empty string")
    if note.state != LifecycleState.GENERATED:
        raise IllegalTransition(f"mark_submitted needs a generated note, note is {note.state.value}")
    note.deposit_reference = deposit_reference.strip()
    note.state = LifecycleState.SUBMITTED
    return note


def attach_finalization(note: Note, leaf_index: int, root: bytes, proof: ProofLike) -> Note:
    """
    Submitted -> Finalized with the note's tree position and inclusion proof.

    Repeating the call with the same leaf index is a successful no-op (the
    coordinator retries). A different leaf index on a finalized note means the
    index or local storage is corrupt: ConflictingFinalization.
    """
    require_u32(leaf_index, "leaf_index")
    root_b = bytes32(root, "root")
    proof_v = _as_proof(proof)

    if note.state in (LifecycleState.FINALIZED, LifecycleState.SPENT):
        if note.leaf_index != leaf_index:
            raise ConflictingFinalization(
                f"note {short(note.commitment_hex)} is at leaf {note.leaf_index}, got {leaf_index}"
            )
        if note.inclusion_root != root_b or note.inclusion_proof != proof_v:
            # Same position, newer tree snapshot: the first captured proof stays.
            logger.info(
                "note %s already finalized at leaf %d; keeping captured root %s",
                short(note.commitment_hex), leaf_index, short(to_hex(note.inclusion_root or b"")),
            )
        return note

    if note.state != LifecycleState.SUBMITTED:
        raise IllegalTransition(f"attach_finalization needs a submitted note, note is {note.state.value}")

    note.leaf_index = leaf_index
    note.inclusion_root = root_b
    note.inclusion_proof = proof_v
    note.state = LifecycleState.FINALIZED
    return note


def refresh_inclusion(note: Note, leaf_index: int, root: bytes, proof: ProofLike) -> Note:
    """Replace the captured root/proof of a finalized note with a newer snapshot of the same leaf."""
    if note.state != LifecycleState.FINALIZED:
        raise IllegalTransition(f"refresh_inclusion needs a finalized note, note is {note.state.value}")
    if note.leaf_index != leaf_index:
        raise ConflictingFinalization(
            f"note {short(note.commitment_hex)} is at leaf {note.leaf_index}, got {leaf_index}"
        )
    note.inclusion_root = bytes32(root, "root")
    note.inclusion_proof = _as_proof(proof)
    return note


def derive_spend_material(note: Note, outputs: Sequence[OutputLike]) -> SpendInputs:
    if note.state == LifecycleState.SPENT:
        raise NotSpendable(f"note {short(note.commitment_hex)} is already spent")
    if note.state != LifecycleState.FINALIZED:
        raise IllegalTransition(f"spending needs a finalized note, note is {note.state.value}")
    outs = normalize_outputs(outputs)
    if not outs:
        raise MalformedInput("a spend needs at least one output")
    nullifier = compute_nullifier(note.secret.spend_secret, note.leaf_index)
    return SpendInputs(
        amount=note.amount,
        randomness=note.secret.randomness,
        spend_secret=note.secret.spend_secret,
        leaf_index=note.leaf_index,
        proof=note.inclusion_proof,
        root=note.inclusion_root,
        nullifier=nullifier,
        outputs_hash=compute_outputs_hash(outs),
        outputs=outs,
    )


def mark_spent(note: Note) -> Note:
    if note.state == LifecycleState.SPENT:
        raise NotSpendable(f"note {short(note.commitment_hex)} is already spent")
    if note.state != LifecycleState.FINALIZED:
        raise IllegalTransition(f"mark_spent needs a finalized note, note is {note.state.value}")
    note.state = LifecycleState.SPENT
    logger.info("note %s marked spent", short(note.commitment_hex))
    return note


def seal_for(note: Note, recipient_view_public: Union[bytes, PublicKey]) -> str:
    """Encrypted payload of `note` addressed to a view key (the index stores this)."""
    return encrypt_note_payload(
        note.amount,
        note.secret.randomness,
        note.secret.spend_secret,
        note.commitment,
        recipient_view_public,
    )
