# deposits/coordinator.py
"""
Deposit finalization.

    1. wait for the ledger to confirm the deposit transaction
    2. register commitment + encrypted payload with the index service
    3. fetch the inclusion proof for the assigned leaf
    4. attach leaf/root/proof to the local note (Submitted -> Finalized)

Every step is bounded (attempt cap + backoff) and the whole thing is safe to
re-invoke with the same arguments: finished steps are not repeated for a
reference this coordinator has recently seen, the index registration is
idempotent by commitment, and a note that is already finalized short-circuits
without touching the network. Concurrent calls for one commitment are
serialized.
"""
from __future__ import annotations

import asyncio
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional, Protocol

from shieldpool.api.logging_config import get_logger, short
from shieldpool.clients.indexer import ProofResponse, Registration
from shieldpool.clients.ledger import TransactionStatus, TxStatusKind
from shieldpool.config import Settings
from shieldpool.crypto_core.codec import bytes32, to_hex
from shieldpool.crypto_core.keys import WalletKeyMaterial
from shieldpool.crypto_core.merkle import InclusionProof, verify_inclusion
from shieldpool.deposits.retry import RetryExhausted, RetryPolicy, Sleep, run_with_retry
from shieldpool.errors import (
    ChainRejected,
    ConflictingFinalization,
    IndexRejected,
    IndexUnavailable,
    InvalidState,
    MalformedInput,
    ServiceRejected,
    TransientServiceError,
    Unconfirmed,
)
from shieldpool.notes.lifecycle import attach_finalization, mark_submitted, seal_for
from shieldpool.notes.models import LifecycleState, Note
from shieldpool.notes.store import NoteStore

logger = get_logger("deposits.coordinator")


class LedgerOracle(Protocol):
    async def get_transaction_status(self, signature: str) -> TransactionStatus: ...


class IndexService(Protocol):
    async def register_deposit(self, commitment: bytes, encrypted_payload: str, reference: str, slot: int) -> Registration: ...

    async def get_inclusion_proof(self, leaf_index: int) -> ProofResponse: ...


class DepositStage(str, Enum):
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    REGISTERED = "registered"
    PROOF_READY = "proof_ready"
    DONE = "done"
    FAILED = "failed"
    CHAIN_REJECTED = "chain_rejected"


@dataclass
class DepositAttempt:
    """Progress of one deposit reference. Filled in step by step; never rolled back."""

    deposit_reference: str
    commitment: bytes
    stage: DepositStage = DepositStage.AWAITING_CONFIRMATION
    slot: Optional[int] = None
    leaf_index: Optional[int] = None
    root: Optional[bytes] = None
    proof: Optional[InclusionProof] = None
    failure_reason: Optional[str] = None
    confirm_polls: int = 0
    register_attempts: int = 0
    proof_attempts: int = 0
    invocations: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deposit_reference": self.deposit_reference,
            "commitment": to_hex(self.commitment),
            "stage": self.stage.value,
            "slot": self.slot,
            "leaf_index": self.leaf_index,
            "root": to_hex(self.root) if self.root is not None else None,
            "failure_reason": self.failure_reason,
            "attempts": {
                "confirm": self.confirm_polls,
                "register": self.register_attempts,
                "proof": self.proof_attempts,
            },
            "invocations": self.invocations,
        }


@dataclass(frozen=True)
class FinalizationBundle:
    commitment: bytes
    leaf_index: int
    root: bytes
    proof: InclusionProof
    deposit_reference: Optional[str] = None
    slot: Optional[int] = None

    @classmethod
    def from_note(cls, note: Note) -> "FinalizationBundle":
        if note.leaf_index is None or note.inclusion_root is None or note.inclusion_proof is None:
            raise InvalidState(f"note {short(note.commitment_hex)} has no tree position")
        return cls(
            commitment=note.commitment,
            leaf_index=note.leaf_index,
            root=note.inclusion_root,
            proof=note.inclusion_proof,
            deposit_reference=note.deposit_reference,
            slot=note.deposit_slot,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "tx_signature": self.deposit_reference,
            "commitment": to_hex(self.commitment),
            "leaf_index": self.leaf_index,
            "root": to_hex(self.root),
            "merkle_proof": self.proof.to_dict(),
            "slot": self.slot,
        }


class _StillPending(TransientServiceError):
    pass


@dataclass
class _Locks:
    """One lock per commitment, dropped again once nobody holds or waits on it."""

    by_commitment: Dict[str, asyncio.Lock] = field(default_factory=dict)
    users: Dict[str, int] = field(default_factory=dict)

    @asynccontextmanager
    async def hold(self, commitment_hex: str) -> AsyncIterator[None]:
        lock = self.by_commitment.get(commitment_hex)
        if lock is None:
            lock = self.by_commitment[commitment_hex] = asyncio.Lock()
        self.users[commitment_hex] = self.users.get(commitment_hex, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self.users[commitment_hex] -= 1
            if not self.users[commitment_hex]:
                del self.users[commitment_hex]
                del self.by_commitment[commitment_hex]


# completed deposits whose bundle is kept for repeat calls; oldest dropped first
FINISHED_REFERENCES_KEPT = 1024


class DepositFinalizationCoordinator:
    def __init__(
        self,
        ledger: LedgerOracle,
        indexer: IndexService,
        settings: Optional[Settings] = None,
        store: Optional[NoteStore] = None,
        wallet: Optional[WalletKeyMaterial] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.ledger = ledger
        self.indexer = indexer
        self.settings = settings or Settings.from_env()
        self.store = store
        self.wallet = wallet
        self._sleep = sleep
        s = self.settings
        self.confirm_policy = RetryPolicy(max_attempts=s.confirm_max_attempts, backoff_sec=s.confirm_interval_sec)
        self.index_policy = RetryPolicy(max_attempts=s.index_max_attempts, backoff_sec=s.index_backoff_sec)
        self.proof_policy = RetryPolicy(max_attempts=s.proof_max_attempts, backoff_sec=s.proof_backoff_sec)
        self._attempts: Dict[str, DepositAttempt] = {}
        self._finished: "OrderedDict[str, FinalizationBundle]" = OrderedDict()
        self._locks = _Locks()

    # ---------- introspection ----------
    def attempt(self, deposit_reference: str) -> Optional[DepositAttempt]:
        """Progress of an unfinished (or chain-rejected) deposit; None once it is done."""
        return self._attempts.get(deposit_reference)

    def in_flight(self) -> int:
        return len(self._attempts)

    # ---------- entry points ----------
    async def finalize(
        self,
        deposit_reference: str,
        commitment: bytes,
        encrypted_payload: str,
        note: Optional[Note] = None,
        timeout: Optional[float] = None,
    ) -> FinalizationBundle:
        """
        Drive a submitted deposit to Finalized.

        `note` is the local note when the caller has it; otherwise it is looked
        up in the store (if any). Without a note the bundle is still returned
        so a remote caller can attach it itself.

        Raises:
            ChainRejected: the ledger says the transaction failed (terminal)
            Unconfirmed: not confirmed within the poll budget (retriable)
            IndexUnavailable: index retries exhausted (retriable)
            IndexRejected: index refused or answered nonsense (terminal)
            ConflictingFinalization: index places the note somewhere else
        """
        if not isinstance(deposit_reference, str) or not deposit_reference.strip():
            raise MalformedInput("deposit_reference must be a non-empty string")
        deposit_reference = deposit_reference.strip()
        commitment = bytes32(commitment, "commitment")
        if not isinstance(encrypted_payload, str) or not encrypted_payload:
            raise MalformedInput("encrypted_payload must be a non-empty string")
        if note is not None and note.commitment != commitment:
            raise MalformedInput("note does not match the commitment being finalized")

        work = self._finalize_locked(deposit_reference, commitment, encrypted_payload, note)
        if timeout is None:
            return await work
        try:
            return await asyncio.wait_for(work, timeout)
        except asyncio.TimeoutError:
            # the attempt itself was marked failed only if this call held the lock
            att = self._attempts.get(deposit_reference)
            msg = f"finalization of {short(deposit_reference)} exceeded {timeout:.1f}s"
            if att is None or att.slot is None:
                raise Unconfirmed(msg, deposit_reference) from None
            raise IndexUnavailable(msg, deposit_reference) from None

    async def recover(self, deposit_reference: str, commitment: bytes) -> FinalizationBundle:
        """
        Re-run finalization for a note already in local storage (e.g. after a
        crash between submitting the deposit and finalizing it). The payload is
        re-sealed to this wallet's view key.
        """
        if self.store is None or self.wallet is None:
            raise InvalidState("recover needs a note store and wallet keys")
        note = await asyncio.to_thread(self.store.get, commitment)
        if note is None:
            raise MalformedInput(f"no local note with commitment {short(to_hex(bytes32(commitment, 'commitment')))}")
        payload = seal_for(note, self.wallet.view_public_key)
        return await self.finalize(deposit_reference, note.commitment, payload, note=note)

    async def finalize_discovered(self, note: Note, leaf_index: int) -> FinalizationBundle:
        """Attach position + proof to a note found by scanning (it is already registered)."""
        async with self._locks.hold(note.commitment_hex):
            if note.state in (LifecycleState.FINALIZED, LifecycleState.SPENT):
                attach_finalization(note, leaf_index, note.inclusion_root, note.inclusion_proof)
                return FinalizationBundle.from_note(note)
            att = DepositAttempt(
                deposit_reference=note.deposit_reference or "",
                commitment=note.commitment,
                stage=DepositStage.REGISTERED,
                leaf_index=leaf_index,
            )
            await self._fetch_proof(att)
            attach_finalization(note, att.leaf_index, att.root, att.proof)
            if self.store is not None:
                await asyncio.to_thread(self.store.put, note)
            logger.info("discovered note %s finalized at leaf %d", short(note.commitment_hex), leaf_index)
            return FinalizationBundle.from_note(note)

    # ---------- state machine ----------
    async def _finalize_locked(
        self, reference: str, commitment: bytes, payload: str, note: Optional[Note]
    ) -> FinalizationBundle:
        async with self._locks.hold(to_hex(commitment)):
            if note is None and self.store is not None:
                note = await asyncio.to_thread(self.store.get, commitment)

            if note is not None and note.state in (LifecycleState.FINALIZED, LifecycleState.SPENT):
                if note.deposit_reference not in (None, reference):
                    raise ConflictingFinalization(
                        f"note {short(note.commitment_hex)} was finalized by {short(note.deposit_reference)}"
                    )
                logger.info("note %s already finalized at leaf %d", short(note.commitment_hex), note.leaf_index)
                if self.store is not None:
                    stored = await asyncio.to_thread(self.store.get, note.commitment)
                    if stored is None or stored.state != note.state:
                        # finalized in memory by an earlier call whose save failed
                        await asyncio.to_thread(self.store.put, note)
                return FinalizationBundle.from_note(note)

            att = self._attempts.get(reference)
            done = self._finished.get(reference)
            owner = att.commitment if att is not None else (done.commitment if done is not None else None)
            if owner is not None and owner != commitment:
                raise MalformedInput(
                    f"reference {short(reference)} already belongs to commitment {short(to_hex(owner))}"
                )
            if att is None and done is not None:
                self._finished.move_to_end(reference)
                if note is None:
                    logger.info("deposit %s already finalized at leaf %d", short(reference), done.leaf_index)
                    return done
                att = DepositAttempt(
                    reference, commitment, stage=DepositStage.PROOF_READY,
                    slot=done.slot, leaf_index=done.leaf_index, root=done.root, proof=done.proof,
                )
                self._attempts[reference] = att
            elif att is None:
                att = self._attempts[reference] = DepositAttempt(reference, commitment)
            att.invocations += 1

            if att.stage == DepositStage.CHAIN_REJECTED:
                raise ChainRejected(
                    f"deposit {short(reference)} failed on-chain: {att.failure_reason}",
                    reference, att.failure_reason or "",
                )

            logger.info(
                "finalizing %s for %s (invocation %d, stage %s)",
                short(reference), short(to_hex(commitment)), att.invocations, att.stage.value,
            )
            try:
                if att.slot is None:
                    await self._confirm(att)
                if att.leaf_index is None:
                    await self._register(att, payload)
                if att.proof is None:
                    await self._fetch_proof(att)
                bundle = await self._complete(att, note)
            except ChainRejected:
                raise
            except asyncio.CancelledError:
                att.stage = DepositStage.FAILED
                att.failure_reason = "finalization cancelled or timed out"
                raise
            except Exception as e:
                att.stage = DepositStage.FAILED
                att.failure_reason = str(e)
                raise
            return bundle

    async def _confirm(self, att: DepositAttempt) -> None:
        att.stage = DepositStage.AWAITING_CONFIRMATION

        async def poll() -> TransactionStatus:
            att.confirm_polls += 1
            status = await self.ledger.get_transaction_status(att.deposit_reference)
            if status.kind == TxStatusKind.FAILED:
                raise ChainRejected(
                    f"deposit {short(att.deposit_reference)} failed on-chain: {status.reason}",
                    att.deposit_reference, status.reason or "",
                )
            if status.kind == TxStatusKind.PENDING:
                raise _StillPending("not confirmed yet")
            return status

        try:
            status = await run_with_retry(
                poll, self.confirm_policy, "Ledger confirmation",
                transient=(TransientServiceError, ServiceRejected), sleep=self._sleep,
            )
        except ChainRejected as e:
            att.stage = DepositStage.CHAIN_REJECTED
            att.failure_reason = e.reason
            logger.warning("deposit %s rejected by the ledger: %s", short(att.deposit_reference), e.reason)
            raise
        except RetryExhausted as e:
            raise Unconfirmed(
                f"deposit {short(att.deposit_reference)} not confirmed after {e.attempts} polls",
                att.deposit_reference,
            ) from e

        att.slot = status.slot
        att.stage = DepositStage.CONFIRMED
        logger.info("deposit %s confirmed at slot %s", short(att.deposit_reference), status.slot)

    async def _register(self, att: DepositAttempt, payload: str) -> None:
        def count(_n: int, _msg: str) -> None:
            att.register_attempts += 1

        try:
            reg = await run_with_retry(
                lambda: self.indexer.register_deposit(att.commitment, payload, att.deposit_reference, att.slot),
                self.index_policy, "Index registration", sleep=self._sleep, on_attempt=count,
            )
        except RetryExhausted as e:
            raise IndexUnavailable(str(e), att.deposit_reference) from e
        except ServiceRejected as e:
            raise IndexRejected(f"index refused deposit {short(att.deposit_reference)}: {e}", att.deposit_reference) from e

        att.leaf_index = reg.leaf_index
        att.root = reg.root
        att.stage = DepositStage.REGISTERED
        logger.info("commitment %s registered at leaf %d", short(to_hex(att.commitment)), reg.leaf_index)

    async def _fetch_proof(self, att: DepositAttempt) -> None:
        def count(_n: int, _msg: str) -> None:
            att.proof_attempts += 1

        try:
            resp = await run_with_retry(
                lambda: self.indexer.get_inclusion_proof(att.leaf_index),
                self.proof_policy, "Inclusion proof fetch", sleep=self._sleep, on_attempt=count,
            )
        except RetryExhausted as e:
            raise IndexUnavailable(str(e), att.deposit_reference or None) from e
        except ServiceRejected as e:
            raise IndexRejected(f"index refused proof for leaf {att.leaf_index}: {e}", att.deposit_reference or None) from e

        root = resp.root if resp.root is not None else att.root
        if root is None:
            raise IndexRejected(f"index gave no root for leaf {att.leaf_index}", att.deposit_reference or None)
        if self.settings.verify_inclusion_proofs and not verify_inclusion(att.commitment, resp.proof, root):
            raise IndexRejected(
                f"inclusion proof for leaf {att.leaf_index} does not reach root {short(to_hex(root))}",
                att.deposit_reference or None,
            )
        att.root = root
        att.proof = resp.proof
        att.stage = DepositStage.PROOF_READY

    async def _complete(self, att: DepositAttempt, note: Optional[Note]) -> FinalizationBundle:
        if note is not None:
            if note.state == LifecycleState.GENERATED:
                mark_submitted(note, att.deposit_reference)
            attach_finalization(note, att.leaf_index, att.root, att.proof)
            if note.deposit_reference is None:
                note.deposit_reference = att.deposit_reference
            if note.deposit_slot is None:
                note.deposit_slot = att.slot
            if self.store is not None:
                await asyncio.to_thread(self.store.put, note)
            bundle = FinalizationBundle.from_note(note)
        else:
            bundle = FinalizationBundle(
                commitment=att.commitment,
                leaf_index=att.leaf_index,
                root=att.root,
                proof=att.proof,
                deposit_reference=att.deposit_reference,
                slot=att.slot,
            )
        att.stage = DepositStage.DONE
        att.failure_reason = None
        # the stored note and a bounded bundle cache stand in for the attempt from here on
        self._attempts.pop(att.deposit_reference, None)
        self._finished[att.deposit_reference] = bundle
        self._finished.move_to_end(att.deposit_reference)
        while len(self._finished) > FINISHED_REFERENCES_KEPT:
            self._finished.popitem(last=False)
        logger.info(
            "deposit %s finalized: leaf %d root %s",
            short(att.deposit_reference), bundle.leaf_index, short(to_hex(bundle.root)),
        )
        return bundle
