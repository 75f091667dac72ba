"""In-process stand-ins for the ledger and the index service."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from shieldpool.clients.indexer import PayloadPage, ProofResponse, Registration
from shieldpool.clients.ledger import TransactionStatus
from shieldpool.config import Settings
from shieldpool.crypto_core.merkle import build_proof
from shieldpool.notes.store import NoteStore


async def no_sleep(_seconds: float) -> None:
    return None


def fast_settings(**overrides) -> Settings:
    base = Settings(
        confirm_max_attempts=3,
        confirm_interval_sec=0.0,
        index_max_attempts=3,
        index_backoff_sec=0.0,
        proof_max_attempts=3,
        proof_backoff_sec=0.0,
    )
    return base.with_overrides(**overrides) if overrides else base


class FakeLedger:
    """Replays scripted statuses / exceptions, then answers `default`."""

    def __init__(self, script=None, default: Optional[TransactionStatus] = None):
        self.script = list(script or [])
        self.default = default or TransactionStatus.confirmed(4242)
        self.calls = 0

    async def get_transaction_status(self, signature: str) -> TransactionStatus:
        self.calls += 1
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return self.default


class HangingLedger:
    async def get_transaction_status(self, signature: str) -> TransactionStatus:
        await asyncio.sleep(30)
        return TransactionStatus.pending()


class GatedLedger(FakeLedger):
    """Confirms only after `release` is set."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def get_transaction_status(self, signature: str) -> TransactionStatus:
        self.entered.set()
        await self.release.wait()
        return await super().get_transaction_status(signature)


class FakeIndexer:
    """
    Append-only commitment list with real inclusion proofs.
    Registration is idempotent by commitment, like the real service.
    """

    def __init__(self, register_failures=None, proof_failures=None, tamper_root: bool = False):
        self.leaves: List[bytes] = []
        self.payloads: List[str] = []
        self.by_commitment: Dict[bytes, int] = {}
        self.register_failures = list(register_failures or [])
        self.proof_failures = list(proof_failures or [])
        self.tamper_root = tamper_root
        self.register_calls = 0
        self.proof_calls = 0

    def preload(self, commitment: bytes, payload: str) -> int:
        self.by_commitment[commitment] = len(self.leaves)
        self.leaves.append(commitment)
        self.payloads.append(payload)
        return self.by_commitment[commitment]

    def root(self) -> bytes:
        return build_proof(self.leaves, 0)[0]

    async def register_deposit(self, commitment: bytes, encrypted_payload: str, reference: str, slot: int) -> Registration:
        self.register_calls += 1
        if self.register_failures:
            raise self.register_failures.pop(0)
        if commitment not in self.by_commitment:
            self.preload(commitment, encrypted_payload)
        return Registration(leaf_index=self.by_commitment[commitment], root=self.root())

    async def get_inclusion_proof(self, leaf_index: int) -> ProofResponse:
        self.proof_calls += 1
        if self.proof_failures:
            raise self.proof_failures.pop(0)
        root, proof = build_proof(self.leaves, leaf_index)
        if self.tamper_root:
            root = bytes(32)
        return ProofResponse(proof=proof, root=root)

    async def iter_all_payloads(self, batch_size: int = 100):
        for start in range(0, len(self.payloads), batch_size):
            chunk = self.payloads[start:start + batch_size]
            yield PayloadPage(
                start=start,
                payloads=chunk,
                has_more=start + batch_size < len(self.payloads),
                total=len(self.payloads),
            )


class FlakyStore(NoteStore):
    """NoteStore whose next `failures` calls to put() blow up."""

    def __init__(self, *args, failures: int = 0, **kw):
        super().__init__(*args, **kw)
        self.failures = failures

    def put(self, note) -> None:
        if self.failures:
            self.failures -= 1
            raise RuntimeError("simulated write failure")
        super().put(note)
