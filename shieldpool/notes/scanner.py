# notes/scanner.py
"""
Find this wallet's notes among the index service's encrypted payloads.

A payload is ours when it opens under the wallet view key. The decrypted
secrets must reproduce the public commitment tag; a payload that opens but
does not is logged and skipped rather than trusted. Decryption runs on a
thread pool. Scanning only reads local storage; import_notes() persists, and
the dedup check and the write both run under one lock so repeated or
overlapping scans never duplicate a commitment.
"""
from __future__ import annotations

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, List, Optional, Sequence, Tuple, Union

from shieldpool.api.logging_config import get_logger, short
from shieldpool.crypto_core.codec import from_hex
from shieldpool.crypto_core.keys import WalletKeyMaterial
from shieldpool.crypto_core.messages import open_payload
from shieldpool.errors import CorruptPayload, MalformedInput
from shieldpool.notes.lifecycle import rebuild_note
from shieldpool.notes.models import LifecycleState, Note
from shieldpool.notes.store import NoteStore

if TYPE_CHECKING:
    from shieldpool.clients.indexer import IndexerClient
    from shieldpool.deposits.coordinator import DepositFinalizationCoordinator

logger = get_logger("notes.scanner")

Payload = Union[str, bytes]


@dataclass
class ScanReport:
    scanned: int = 0
    matched: int = 0
    new: int = 0
    duplicates: int = 0
    pending: int = 0
    corrupt: int = 0


def decrypt_payload(payload: Payload, wallet: WalletKeyMaterial) -> Optional[Note]:
    """
    Note inside `payload` if it is addressed to `wallet`, else None.

    Raises CorruptPayload when it opens but the secrets do not reproduce the
    commitment (or the plaintext is unusable).
    """
    opened = open_payload(payload, wallet.view_key)
    if opened is None:
        return None
    tag, pt = opened
    try:
        amount = int(pt["amount"])
        randomness = from_hex(pt["r"], "r")
        spend_secret = from_hex(pt["sk_spend"], "sk_spend")
        inner = pt.get("commitment")
    except (KeyError, TypeError, ValueError, MalformedInput) as e:
        raise CorruptPayload(f"note plaintext unusable: {e}") from None
    if tag is not None and inner is not None and tag.lower() != str(inner).lower():
        raise CorruptPayload(f"payload tag {short(tag)} differs from sealed commitment {short(str(inner))}")
    expected = tag or inner
    if expected is None:
        raise CorruptPayload("payload carries no commitment")
    try:
        return rebuild_note(amount, randomness, spend_secret, expected_commitment=from_hex(expected, "commitment"))
    except MalformedInput as e:
        raise CorruptPayload(f"note plaintext unusable: {e}") from None


class NoteScanner:
    def __init__(self, wallet: WalletKeyMaterial, store: NoteStore, max_workers: int = 4):
        self.wallet = wallet
        self.store = store
        self.max_workers = max(1, int(max_workers))
        self._merge_lock = threading.Lock()
        self.last_report = ScanReport()

    def _open_one(self, item: Tuple[int, Payload]) -> Tuple[int, Optional[Note], bool]:
        i, payload = item
        try:
            return i, decrypt_payload(payload, self.wallet), False
        except CorruptPayload as e:
            logger.warning("skipping corrupt payload #%d: %s", i, e)
            return i, None, True

    def _decrypt_all(self, payloads: Sequence[Payload]) -> Tuple[List[Tuple[int, Note]], int]:
        items = list(enumerate(payloads))
        if len(items) <= 1 or self.max_workers == 1:
            results = [self._open_one(it) for it in items]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                results = list(pool.map(self._open_one, items))
        found = [(i, note) for i, note, _bad in results if note is not None]
        corrupt = sum(1 for _i, _n, bad in results if bad)
        return found, corrupt

    def _unseen(
        self, found: List[Tuple[int, Note]], report: ScanReport
    ) -> Tuple[List[Tuple[int, Note]], List[Tuple[int, Note]]]:
        """Split matches into new notes and stored notes still waiting for their proof."""
        fresh: List[Tuple[int, Note]] = []
        pending: List[Tuple[int, Note]] = []
        with self._merge_lock:
            known = self.store.commitments()
            for i, note in found:
                key = note.commitment_hex
                if key in known:
                    report.duplicates += 1
                    stored = self.store.get(note.commitment)
                    if stored is not None and stored.state == LifecycleState.SUBMITTED:
                        pending.append((i, stored))
                    continue
                known.add(key)
                fresh.append((i, note))
        report.new = len(fresh)
        report.pending = len(pending)
        return fresh, pending

    def _scan_page(
        self, payloads: Sequence[Payload], first_leaf_index: int
    ) -> Tuple[List[Tuple[int, Note]], List[Tuple[int, Note]]]:
        report = ScanReport(scanned=len(payloads))
        found, report.corrupt = self._decrypt_all(payloads)
        report.matched = len(found)
        fresh, pending = self._unseen(found, report)
        self.last_report = report
        logger.info(
            "scanned %d payloads: %d ours, %d new, %d already stored (%d not finalized), %d corrupt",
            report.scanned, report.matched, report.new, report.duplicates, report.pending, report.corrupt,
        )
        for i, note in fresh + pending:
            note.leaf_index = first_leaf_index + i
        return (
            [(first_leaf_index + i, note) for i, note in fresh],
            [(first_leaf_index + i, note) for i, note in pending],
        )

    # ---------- public ----------
    def scan_with_positions(self, payloads: Sequence[Payload], first_leaf_index: int = 0) -> List[Tuple[int, Note]]:
        """
        Like scan(), for payloads listed in leaf order starting at `first_leaf_index`.
        Returns (leaf_index, note) pairs; each note also carries its leaf_index.
        """
        fresh, _pending = self._scan_page(payloads, first_leaf_index)
        return fresh

    def scan(self, payloads: Sequence[Payload]) -> List[Note]:
        """
        Notes in `payloads` that belong to this wallet and are not stored yet.
        Nothing is written; persist the result with import_notes().
        """
        return [note for _leaf, note in self.scan_with_positions(payloads)]

    def import_notes(self, notes: Iterable[Note]) -> int:
        """Store discovered notes; ones whose commitment is already stored are skipped."""
        added = 0
        with self._merge_lock:
            for note in notes:
                if self.store.add(note):
                    added += 1
        logger.info("imported %d discovered notes", added)
        return added

    async def scan_index(
        self,
        indexer: "IndexerClient",
        coordinator: Optional["DepositFinalizationCoordinator"] = None,
        batch_size: int = 100,
        persist: bool = True,
    ) -> List[Note]:
        """
        Walk every payload the index holds and return the new notes.

        With `persist` they are stored (as Submitted, with their leaf index);
        with a coordinator as well, each one also gets its inclusion proof and
        becomes Finalized. Stored notes that an earlier scan left Submitted are
        finalized again when their payload comes by.
        """
        discovered: List[Note] = []
        async for page in indexer.iter_all_payloads(batch_size=batch_size):
            fresh, pending = await asyncio.to_thread(self._scan_page, page.payloads, page.start)
            if persist:
                await asyncio.to_thread(self.import_notes, [note for _leaf, note in fresh])
                if coordinator is not None:
                    for leaf_index, note in fresh + pending:
                        if note.state == LifecycleState.SUBMITTED:
                            await coordinator.finalize_discovered(note, leaf_index)
            discovered.extend(note for _leaf, note in fresh)
        logger.info("index scan found %d new notes", len(discovered))
        return discovered
