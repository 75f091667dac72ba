#!/usr/bin/env python3
"""Tests for discovering this wallet's notes among encrypted payloads."""

from __future__ import annotations

import unittest

from fakes import FakeIndexer, FakeLedger, fast_settings, no_sleep

from shieldpool.crypto_core.keys import WalletKeyMaterial
from shieldpool.crypto_core.messages import encrypt_note_payload, note_plaintext, seal
from shieldpool.deposits.coordinator import DepositFinalizationCoordinator
from shieldpool.errors import CorruptPayload, IndexUnavailable, TransientServiceError
from shieldpool.notes import lifecycle
from shieldpool.notes.models import LifecycleState
from shieldpool.notes.scanner import NoteScanner, decrypt_payload
from shieldpool.notes.store import NoteStore


class ScannerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.wallet = WalletKeyMaterial.generate()
        self.stranger = WalletKeyMaterial.generate()
        self.store = NoteStore("sqlite://", self.wallet.storage_key)
        self.scanner = NoteScanner(self.wallet, self.store, max_workers=4)

    def ours(self, amount: int):
        note = lifecycle.generate(amount, wallet=self.wallet)
        return note, lifecycle.seal_for(note, self.wallet.view_public_key)

    def theirs(self, amount: int) -> str:
        note = lifecycle.generate(amount, wallet=self.stranger)
        return lifecycle.seal_for(note, self.stranger.view_public_key)


class DecryptPayloadTests(ScannerTestCase):
    def test_own_payload(self) -> None:
        note, payload = self.ours(123)
        found = decrypt_payload(payload, self.wallet)
        self.assertEqual(found.commitment, note.commitment)
        self.assertEqual(found.amount, 123)
        self.assertEqual(found.secret, note.secret)
        self.assertEqual(found.state, LifecycleState.SUBMITTED)

    def test_foreign_payload(self) -> None:
        self.assertIsNone(decrypt_payload(self.theirs(5), self.wallet))

    def test_garbage(self) -> None:
        self.assertIsNone(decrypt_payload("%%% not base64 %%%", self.wallet))
        self.assertIsNone(decrypt_payload(b"", self.wallet))

    def test_wrong_amount_is_corrupt(self) -> None:
        note, _ = self.ours(100)
        bad = encrypt_note_payload(
            101, note.secret.randomness, note.secret.spend_secret, note.commitment, self.wallet.view_public_key
        )
        with self.assertRaises(CorruptPayload):
            decrypt_payload(bad, self.wallet)

    def test_tag_mismatch_is_corrupt(self) -> None:
        note, _ = self.ours(100)
        pt = note_plaintext(note.amount, note.secret.randomness, note.secret.spend_secret, note.commitment)
        bad = seal(pt, b"\x42" * 32, self.wallet.view_public_key)
        with self.assertRaises(CorruptPayload):
            decrypt_payload(bad, self.wallet)

    def test_missing_fields_is_corrupt(self) -> None:
        bad = seal({"amount": 5}, b"\x42" * 32, self.wallet.view_public_key)
        with self.assertRaises(CorruptPayload):
            decrypt_payload(bad, self.wallet)


class ScanTests(ScannerTestCase):
    def test_finds_only_ours_without_writing(self) -> None:
        a, pa = self.ours(10)
        b, pb = self.ours(20)
        payloads = [self.theirs(i + 1) for i in range(8)]
        payloads.insert(2, pa)
        payloads.insert(7, pb)

        found = self.scanner.scan(payloads)
        self.assertEqual({n.commitment for n in found}, {a.commitment, b.commitment})
        self.assertEqual(len(self.store), 0)
        report = self.scanner.last_report
        self.assertEqual((report.scanned, report.matched, report.new), (10, 2, 2))

        self.assertEqual(self.scanner.import_notes(found), 2)
        self.assertEqual(self.scanner.scan(payloads), [])
        self.assertEqual(self.scanner.last_report.duplicates, 2)
        self.assertEqual(len(self.store), 2)

    def test_duplicates_within_batch(self) -> None:
        _note, payload = self.ours(10)
        found = self.scanner.scan([payload, payload, payload])
        self.assertEqual(len(found), 1)
        self.assertEqual(self.scanner.last_report.duplicates, 2)

    def test_import_skips_stored(self) -> None:
        note, payload = self.ours(10)
        self.store.add(note)
        self.assertEqual(self.scanner.scan([payload]), [])
        self.assertEqual(self.scanner.import_notes([note]), 0)

    def test_corrupt_payload_skipped(self) -> None:
        good, pg = self.ours(10)
        note, _ = self.ours(100)
        bad = encrypt_note_payload(
            999, note.secret.randomness, note.secret.spend_secret, note.commitment, self.wallet.view_public_key
        )
        found = self.scanner.scan([bad, "garbage", pg])
        self.assertEqual([n.commitment for n in found], [good.commitment])
        self.assertEqual(self.scanner.last_report.corrupt, 1)

    def test_positions_follow_offset(self) -> None:
        note, payload = self.ours(10)
        pairs = self.scanner.scan_with_positions([self.theirs(1), payload], first_leaf_index=40)
        self.assertEqual(len(pairs), 1)
        self.assertEqual(pairs[0][0], 41)
        self.assertEqual(pairs[0][1].commitment, note.commitment)

    def test_single_worker(self) -> None:
        scanner = NoteScanner(self.wallet, self.store, max_workers=1)
        _note, payload = self.ours(10)
        self.assertEqual(len(scanner.scan([self.theirs(1), payload])), 1)


class ScanIndexTests(unittest.IsolatedAsyncioTestCase):
    async def test_scan_index_finalizes(self) -> None:
        wallet = WalletKeyMaterial.generate()
        stranger = WalletKeyMaterial.generate()
        store = NoteStore("sqlite://", wallet.storage_key)
        indexer = FakeIndexer()

        mine = {}
        for i in range(7):
            owner = wallet if i in (1, 5) else stranger
            note = lifecycle.generate(100 + i, wallet=owner)
            leaf = indexer.preload(note.commitment, lifecycle.seal_for(note, owner.view_public_key))
            if owner is wallet:
                mine[note.commitment] = leaf

        coord = DepositFinalizationCoordinator(
            FakeLedger(), indexer, settings=fast_settings(), store=store, wallet=wallet, sleep=no_sleep
        )
        found = await NoteScanner(wallet, store).scan_index(indexer, coordinator=coord, batch_size=3)

        self.assertEqual({n.commitment for n in found}, set(mine))
        for commitment, leaf in mine.items():
            stored = store.get(commitment)
            self.assertEqual(stored.state, LifecycleState.FINALIZED)
            self.assertEqual(stored.leaf_index, leaf)
        self.assertEqual(store.balance(), 101 + 105)
        self.assertEqual(indexer.register_calls, 0)

        again = await NoteScanner(wallet, store).scan_index(indexer, coordinator=coord, batch_size=3)
        self.assertEqual(again, [])

    async def test_rescan_finishes_note_whose_proof_failed(self) -> None:
        wallet = WalletKeyMaterial.generate()
        store = NoteStore("sqlite://", wallet.storage_key)
        indexer = FakeIndexer(proof_failures=[TransientServiceError("503")] * 3)
        indexer.preload(b"\xaa" * 32, "other-payload")
        note = lifecycle.generate(42, wallet=wallet)
        leaf = indexer.preload(note.commitment, lifecycle.seal_for(note, wallet.view_public_key))
        coord = DepositFinalizationCoordinator(
            FakeLedger(), indexer, settings=fast_settings(), store=store, wallet=wallet, sleep=no_sleep
        )

        with self.assertRaises(IndexUnavailable):
            await NoteScanner(wallet, store).scan_index(indexer, coordinator=coord)
        stored = store.get(note.commitment)
        self.assertEqual(stored.state, LifecycleState.SUBMITTED)
        self.assertEqual(stored.leaf_index, leaf)

        scanner = NoteScanner(wallet, store)
        self.assertEqual(await scanner.scan_index(indexer, coordinator=coord), [])
        self.assertEqual(scanner.last_report.pending, 1)
        stored = store.get(note.commitment)
        self.assertEqual(stored.state, LifecycleState.FINALIZED)
        self.assertEqual(stored.leaf_index, leaf)
        self.assertEqual(store.balance(), 42)

        await scanner.scan_index(indexer, coordinator=coord)
        self.assertEqual(scanner.last_report.pending, 0)
        self.assertEqual(indexer.proof_calls, 4)

    async def test_scan_index_without_persist(self) -> None:
        wallet = WalletKeyMaterial.generate()
        store = NoteStore("sqlite://", wallet.storage_key)
        indexer = FakeIndexer()
        note = lifecycle.generate(7, wallet=wallet)
        indexer.preload(note.commitment, lifecycle.seal_for(note, wallet.view_public_key))

        found = await NoteScanner(wallet, store).scan_index(indexer, persist=False)
        self.assertEqual([n.commitment for n in found], [note.commitment])
        self.assertEqual(len(store), 0)


if __name__ == "__main__":
    unittest.main()
