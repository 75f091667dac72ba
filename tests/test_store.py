#!/usr/bin/env python3
"""Unit tests for the encrypted note store."""

from __future__ import annotations

import json
import unittest

from sqlalchemy import select

from shieldpool.crypto_core.keys import WalletKeyMaterial
from shieldpool.crypto_core.merkle import build_proof
from shieldpool.database.models import EncryptedNote
from shieldpool.errors import CorruptPayload, MalformedInput
from shieldpool.notes import lifecycle
from shieldpool.notes.models import LifecycleState
from shieldpool.notes.serialization import dump_note
from shieldpool.notes.store import NoteStore


def finalize(note, reference: str = "tx-1"):
    lifecycle.mark_submitted(note, reference)
    root, proof = build_proof([note.commitment], 0)
    return lifecycle.attach_finalization(note, 0, root, proof)


class NoteStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.wallet = WalletKeyMaterial.generate()
        self.store = NoteStore("sqlite://", self.wallet.storage_key)

    def test_add_and_get(self) -> None:
        note = lifecycle.generate(10, wallet=self.wallet)
        self.assertTrue(self.store.add(note))
        self.assertFalse(self.store.add(note))
        self.assertEqual(len(self.store), 1)

        got = self.store.get(note.commitment)
        self.assertEqual(got.commitment, note.commitment)
        self.assertEqual(got.secret, note.secret)
        self.assertTrue(self.store.contains(note.commitment_hex))
        self.assertEqual(self.store.commitments(), {note.commitment_hex})

    def test_get_missing(self) -> None:
        self.assertIsNone(self.store.get(b"\x05" * 32))
        self.assertFalse(self.store.contains("05" * 32))

    def test_put_replaces(self) -> None:
        note = lifecycle.generate(10)
        self.store.add(note)
        finalize(note)
        self.store.put(note)
        got = self.store.get(note.commitment)
        self.assertEqual(got.state, LifecycleState.FINALIZED)
        self.assertEqual(got.leaf_index, 0)
        self.assertEqual(len(self.store), 1)

    def test_list_by_state_and_balance(self) -> None:
        pending = lifecycle.generate(1)
        a = finalize(lifecycle.generate(100), "tx-a")
        b = finalize(lifecycle.generate(250), "tx-b")
        spent = finalize(lifecycle.generate(1000), "tx-c")
        lifecycle.mark_spent(spent)
        self.assertEqual(self.store.add_many([pending, a, b, spent]), 4)

        self.assertEqual(len(self.store.list()), 4)
        finalized = self.store.list([LifecycleState.FINALIZED])
        self.assertEqual({n.commitment for n in finalized}, {a.commitment, b.commitment})
        self.assertEqual(self.store.balance(), 350)
        self.assertEqual([n.commitment for n in self.store.find_by_reference("tx-b")], [b.commitment])

    def test_records_encrypted_at_rest(self) -> None:
        note = lifecycle.generate(10)
        self.store.add(note)
        with self.store.engine.connect() as cx:
            blob = cx.execute(select(EncryptedNote.record_ct)).scalar_one()
        self.assertNotIn(note.secret.spend_secret.hex().encode(), blob)
        self.assertNotIn(note.secret.randomness.hex().encode(), blob)

    def test_wrong_storage_key(self) -> None:
        note = lifecycle.generate(10)
        self.store.add(note)
        other = NoteStore(self.store.engine, WalletKeyMaterial.generate().storage_key)
        with self.assertRaises(CorruptPayload):
            other.get(note.commitment)

    def test_export_import(self) -> None:
        a = lifecycle.generate(10)
        b = finalize(lifecycle.generate(20))
        self.store.add_many([a, b])
        dumped = self.store.export_json()
        self.assertEqual(len(json.loads(dumped)), 2)

        fresh = NoteStore("sqlite://", self.wallet.storage_key)
        self.assertEqual(fresh.import_json(dumped), 2)
        self.assertEqual(fresh.import_json(dumped), 0)
        self.assertEqual(fresh.get(b.commitment).state, LifecycleState.FINALIZED)
        self.assertEqual(fresh.balance(), 20)

    def test_import_single_record(self) -> None:
        note = lifecycle.generate(10)
        fresh = NoteStore("sqlite://", self.wallet.storage_key)
        self.assertEqual(fresh.import_json(json.dumps(dump_note(note))), 1)

    def test_import_garbage(self) -> None:
        with self.assertRaises(MalformedInput):
            self.store.import_json("not json")
        with self.assertRaises(MalformedInput):
            self.store.import_json("42")


if __name__ == "__main__":
    unittest.main()
