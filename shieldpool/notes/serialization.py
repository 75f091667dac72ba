# notes/serialization.py
"""
Canonical, versioned note record.

Current format (version 2):

    {
      "version": 2,
      "amount": 1000000000,
      "commitment": "<hex32>",
      "spend_secret": "<hex32>",
      "randomness": "<hex32>",
      "spend_public": "<hex32>",
      "state": "generated|submitted|finalized|spent",
      "leaf_index": 7 | null,
      "root": "<hex32>" | null,
      "proof": {"path_elements": [...], "path_indices": [...]} | null,
      "deposit_reference": "<tx signature>" | null,
      "deposit_slot": 1234 | null,
      "created_at": <unix ms>,
      "network": "devnet" | null
    }

Older wallet exports (camelCase fields, string versions "1.0"/"2.0", no
spend_public, amounts as strings) go through upgrade_note_record().
"""
from __future__ import annotations

import json
import re
import time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, conint, field_validator

from shieldpool.api.logging_config import get_logger, short
from shieldpool.crypto_core.codec import from_hex, to_hex
from shieldpool.crypto_core.commitments import derive_public_key
from shieldpool.crypto_core.merkle import InclusionProof
from shieldpool.errors import CorruptPayload, MalformedInput
from shieldpool.notes.lifecycle import rebuild_note
from shieldpool.notes.models import LifecycleState, Note

logger = get_logger("notes.serialization")

NOTE_FORMAT_VERSION = 2

_HEX32 = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def _hex32(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not isinstance(v, str) or not _HEX32.match(v):
        raise ValueError("expected 64 hex chars")
    return v[2:].lower() if v.startswith("0x") else v.lower()


class ProofRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path_elements: List[str] = Field(default_factory=list)
    path_indices: List[conint(ge=0, le=1)] = Field(default_factory=list)

    @field_validator("path_elements")
    @classmethod
    def _elements_hex(cls, v: List[str]) -> List[str]:
        return [_hex32(e) for e in v]


class NoteRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    version: conint(ge=NOTE_FORMAT_VERSION, le=NOTE_FORMAT_VERSION) = NOTE_FORMAT_VERSION
    amount: conint(gt=0, lt=1 << 64)
    commitment: str
    spend_secret: str
    randomness: str
    spend_public: str
    state: LifecycleState = LifecycleState.GENERATED
    leaf_index: Optional[conint(ge=0, lt=1 << 32)] = None
    root: Optional[str] = None
    proof: Optional[ProofRecord] = None
    deposit_reference: Optional[str] = None
    deposit_slot: Optional[conint(ge=0)] = None
    created_at: int = Field(default_factory=lambda: int(time.time() * 1000))
    network: Optional[str] = None

    @field_validator("commitment", "spend_secret", "randomness", "spend_public", "root")
    @classmethod
    def _check_hex32(cls, v: Optional[str]) -> Optional[str]:
        return _hex32(v)


# ---------- dump ----------
def dump_note(note: Note) -> Dict[str, Any]:
    return {
        "version": NOTE_FORMAT_VERSION,
        "amount": note.amount,
        "commitment": to_hex(note.commitment),
        "spend_secret": to_hex(note.secret.spend_secret),
        "randomness": to_hex(note.secret.randomness),
        "spend_public": to_hex(note.public.spend_public),
        "state": note.state.value,
        "leaf_index": note.leaf_index,
        "root": to_hex(note.inclusion_root) if note.inclusion_root is not None else None,
        "proof": note.inclusion_proof.to_dict() if note.inclusion_proof is not None else None,
        "deposit_reference": note.deposit_reference,
        "deposit_slot": note.deposit_slot,
        "created_at": note.created_at,
        "network": note.network,
    }


def note_to_bytes(note: Note) -> bytes:
    return json.dumps(dump_note(note), sort_keys=True, separators=(",", ":")).encode("utf-8")


# ---------- upgrade ----------
def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if raw.get(k) is not None:
            return raw[k]
    return None


def _legacy_state(raw: Dict[str, Any], has_position: bool, reference: Optional[str]) -> str:
    if raw.get("spent") is True:
        return LifecycleState.SPENT.value
    if has_position:
        return LifecycleState.FINALIZED.value
    if reference:
        return LifecycleState.SUBMITTED.value
    return LifecycleState.GENERATED.value


def upgrade_note_record(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Bring any known note record up to the current format.

    Current-version records pass through unchanged. Legacy records (no
    integer version, or version 1) are mapped field by field; spend_public is
    recomputed from the spend secret and the lifecycle state inferred from
    which fields are present. Unknown future versions are rejected.
    """
    if not isinstance(raw, dict):
        raise MalformedInput(f"note record must be an object, got {type(raw).__name__}")
    version = raw.get("version")
    if isinstance(version, int) and not isinstance(version, bool):
        if version == NOTE_FORMAT_VERSION:
            return dict(raw)
        if version > NOTE_FORMAT_VERSION:
            raise MalformedInput(f"note format version {version} is newer than supported ({NOTE_FORMAT_VERSION})")

    spend_secret = _first(raw, "spend_secret", "sk_spend", "skSpend")
    randomness = _first(raw, "randomness", "r")
    if spend_secret is None or randomness is None:
        raise MalformedInput("legacy note record lacks spend secret or randomness")
    try:
        amount = int(str(_first(raw, "amount")))
    except ValueError:
        raise MalformedInput(f"legacy note amount is not an integer: {raw.get('amount')!r}") from None

    proof_raw = _first(raw, "proof", "merkleProof", "merkle_proof")
    proof = None
    if isinstance(proof_raw, dict):
        proof = InclusionProof.from_dict(proof_raw).to_dict()
    leaf_index = _first(raw, "leaf_index", "leafIndex")
    root = _first(raw, "root")
    reference = _first(raw, "deposit_reference", "depositSignature", "tx_signature")
    has_position = leaf_index is not None and root is not None and proof is not None

    pk_stored = _first(raw, "spend_public", "pk_spend", "pkSpend")
    pk = to_hex(derive_public_key(from_hex(spend_secret, "spend_secret")))
    if pk_stored is not None and pk_stored.lower().removeprefix("0x") != pk:
        raise CorruptPayload("legacy note pk_spend does not match its spend secret")

    upgraded = {
        "version": NOTE_FORMAT_VERSION,
        "amount": amount,
        "commitment": _first(raw, "commitment"),
        "spend_secret": spend_secret,
        "randomness": randomness,
        "spend_public": pk,
        "state": _legacy_state(raw, has_position, reference),
        "leaf_index": int(leaf_index) if leaf_index is not None else None,
        "root": root if has_position else None,
        "proof": proof if has_position else None,
        "deposit_reference": reference,
        "deposit_slot": _first(raw, "deposit_slot", "depositSlot"),
        "created_at": int(_first(raw, "created_at", "timestamp") or time.time() * 1000),
        "network": _first(raw, "network"),
    }
    if not has_position:
        upgraded["leaf_index"] = None
    logger.info("upgraded legacy note %s (version=%r)", short(str(upgraded["commitment"])), version)
    return upgraded


# ---------- load ----------
def load_note(raw: Dict[str, Any]) -> Note:
    """Upgrade, validate and rebuild; the commitment is re-derived and must match."""
    data = upgrade_note_record(raw)
    try:
        rec = NoteRecord.model_validate(data)
    except ValidationError as e:
        raise MalformedInput(f"invalid note record: {e.errors()[0].get('loc')} {e.errors()[0].get('msg')}") from None

    note = rebuild_note(
        amount=rec.amount,
        randomness=from_hex(rec.randomness),
        spend_secret=from_hex(rec.spend_secret),
        expected_commitment=from_hex(rec.commitment),
        state=rec.state,
    )
    if rec.spend_public != to_hex(note.public.spend_public):
        raise CorruptPayload(f"note {short(rec.commitment)} spend_public does not match its spend secret")

    needs_position = rec.state in (LifecycleState.FINALIZED, LifecycleState.SPENT)
    if needs_position and (rec.leaf_index is None or rec.root is None or rec.proof is None):
        raise MalformedInput(f"{rec.state.value} note {short(rec.commitment)} lacks leaf_index/root/proof")
    if needs_position:
        note.leaf_index = rec.leaf_index
        note.inclusion_root = from_hex(rec.root)
        note.inclusion_proof = InclusionProof(
            path_elements=tuple(rec.proof.path_elements),
            path_indices=tuple(rec.proof.path_indices),
        )
    elif rec.state == LifecycleState.SUBMITTED:
        # known position of a discovered note whose proof is still outstanding
        note.leaf_index = rec.leaf_index
    note.deposit_reference = rec.deposit_reference
    note.deposit_slot = rec.deposit_slot
    note.created_at = rec.created_at
    note.network = rec.network
    return note


def note_from_bytes(blob: bytes) -> Note:
    try:
        raw = json.loads(blob)
    except ValueError as e:
        raise MalformedInput(f"note record is not JSON: {e}") from None
    return load_note(raw)
