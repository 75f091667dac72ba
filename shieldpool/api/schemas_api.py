from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, conint, field_validator

from shieldpool.crypto_core.codec import U64_MAX


def _hex32(v: str) -> str:
    s = v[2:] if v.startswith("0x") else v
    if len(s) != 64:
        raise ValueError("expected 32 bytes as 64 hex chars")
    try:
        bytes.fromhex(s)
    except ValueError:
        raise ValueError("not valid hex") from None
    return s.lower()


class _Base(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, from_attributes=True, extra="ignore")


class Ok(_Base):
    status: str = Field("ok", description="Fixed OK status for successful responses.")


class ErrorRes(_Base):
    success: Literal[False] = False
    error: str = Field(..., description="Human readable error message.")
    error_code: str = Field(..., description="Error class name, e.g. Unconfirmed or ChainRejected.")
    retriable: bool = Field(False, description="Re-invoking with the same arguments may succeed.")
    tx_signature: Optional[str] = Field(None, description="Deposit reference the error relates to.")


class MerkleProofOut(_Base):
    path_elements: List[str] = Field(..., description="Sibling hashes from leaf to root (hex).")
    path_indices: List[conint(ge=0, le=1)] = Field(..., description="1 when the path node is the right child.")


# ===== Deposit finalization =====
class FinalizeReq(_Base):
    tx_signature: str = Field(..., min_length=1, description="Ledger transaction that deposited the commitment.")
    commitment: str = Field(..., description="32-byte note commitment (hex).")
    encrypted_output: str = Field(..., min_length=1, description="Encrypted note payload stored by the index.")

    @field_validator("commitment")
    @classmethod
    def _commitment_hex(cls, v: str) -> str:
        return _hex32(v)


class FinalizeRes(_Base):
    success: Literal[True] = True
    tx_signature: Optional[str] = Field(None, description="Deposit transaction signature.")
    commitment: str = Field(..., description="Commitment (hex).")
    leaf_index: int = Field(..., description="Position of the commitment in the index tree.")
    root: str = Field(..., description="Tree root the proof was taken against (hex).")
    merkle_proof: MerkleProofOut
    slot: Optional[int] = Field(None, description="Slot the deposit confirmed in.")


class RecoverReq(_Base):
    tx_signature: str = Field(..., min_length=1, description="Deposit transaction signature.")
    commitment: str = Field(..., description="Commitment of a note in local storage (hex).")

    @field_validator("commitment")
    @classmethod
    def _commitment_hex(cls, v: str) -> str:
        return _hex32(v)


class CollaboratorHealth(_Base):
    status: str = Field(..., description="healthy when every collaborator answered.")
    checks: Dict[str, Any] = Field(default_factory=dict, description="Per collaborator status.")


# ===== Notes =====
class NoteInfo(_Base):
    """Public fields of a stored note (no secrets)."""
    commitment: str = Field(..., description="32-byte commitment (hex).")
    amount: int = Field(..., description="Amount in base units.")
    state: str = Field(..., description="generated | submitted | finalized | spent")
    leaf_index: Optional[int] = Field(None, description="Tree position once finalized.")
    root: Optional[str] = Field(None, description="Captured inclusion root (hex).")
    deposit_reference: Optional[str] = Field(None, description="Deposit transaction signature.")


class ListNotesRes(Ok):
    notes: List[NoteInfo] = Field(..., description="Stored notes.")
    total_balance: int = Field(..., description="Sum of finalized note amounts (base units).")


class NewNoteReq(_Base):
    amount: conint(gt=0, le=U64_MAX) = Field(..., description="Note amount in base units.")


class NewNoteRes(Ok):
    commitment: str = Field(..., description="Commitment to put on-chain (hex).")
    amount: int
    encrypted_output: str = Field(..., description="Payload to hand to /deposit/finalize.")


class OutputIn(_Base):
    address: str = Field(..., description="Recipient address (base58 or 64 hex).")
    amount: conint(ge=0, le=U64_MAX) = Field(..., description="Amount in base units.")


class SpendInputsReq(_Base):
    commitment: str = Field(..., description="Finalized note to spend (hex).")
    outputs: List[OutputIn] = Field(..., min_length=1, description="Ordered outputs; order is bound by outputs_hash.")

    @field_validator("commitment")
    @classmethod
    def _commitment_hex(cls, v: str) -> str:
        return _hex32(v)


class SpendInputsRes(Ok):
    private_inputs: Dict[str, Any] = Field(..., description="Witness for the prover. Contains secrets.")
    public_inputs: Dict[str, Any] = Field(..., description="root, nf, outputs_hash, amount.")
    outputs: List[Dict[str, Any]] = Field(..., description="Outputs as bound by outputs_hash.")
    public_inputs_hex: str = Field(..., description="104-byte canonical public inputs (hex).")


class ScanRes(Ok):
    discovered: int = Field(..., description="New notes found and stored.")
    notes: List[NoteInfo] = Field(default_factory=list)
