#!/usr/bin/env python3
"""Tests for the wallet CLI and the legacy note importer."""

from __future__ import annotations

import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest import mock

from shieldpool.cli import wallet_cli
from shieldpool.crypto_core.keys import WalletKeyMaterial
from shieldpool.database import migrate_from_json
from shieldpool.notes import lifecycle
from shieldpool.notes.serialization import dump_note
from shieldpool.notes.store import NoteStore


class WalletCliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        env = mock.patch.dict(os.environ, {"NOTES_DB_URL": "", "LOG_LEVEL": "WARNING"})
        env.start()
        self.addCleanup(env.stop)

    def run_cli(self, *argv: str):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = wallet_cli.main(["--data-dir", self.tmp.name, *argv])
        return code, out.getvalue(), err.getvalue()

    def test_keys_then_notes(self) -> None:
        code, out, _ = self.run_cli("keys", "new")
        self.assertEqual(code, 0)
        self.assertIn("view_public", out)
        keys_path = Path(self.tmp.name) / "wallet_keys.json"
        self.assertEqual(keys_path.stat().st_mode & 0o777, 0o600)

        code, _, _ = self.run_cli("keys", "new")
        self.assertEqual(code, 1)

        code, out, _ = self.run_cli("note", "new", "5000000")
        self.assertEqual(code, 0)
        commitment = out.split("Commitment       : ", 1)[1].split()[0]
        commitment = commitment.replace(wallet_cli.C.BOLD, "").replace(wallet_cli.C.RST, "")

        code, _, _ = self.run_cli("note", "submit", commitment, "sig-1")
        self.assertEqual(code, 0)
        code, out, _ = self.run_cli("notes", "list", "--state", "submitted")
        self.assertEqual(code, 0)
        self.assertIn("Notes (1)", out)

        code, out, _ = self.run_cli("notes", "export")
        self.assertEqual(json.loads(out)[0]["state"], "submitted")

    def test_missing_keys(self) -> None:
        code, _, err = self.run_cli("notes", "list")
        self.assertEqual(code, 1)
        self.assertIn("MalformedInput", err)

    def test_spend_inputs_needs_finalized_note(self) -> None:
        self.run_cli("keys", "new")
        code, out, _ = self.run_cli("note", "new", "5000000")
        commitment = out.split("Commitment       : ", 1)[1].split()[0]
        commitment = commitment.replace(wallet_cli.C.BOLD, "").replace(wallet_cli.C.RST, "")
        code, _, err = self.run_cli("spend-inputs", commitment, f"{'09' * 32}:1")
        self.assertEqual(code, 1)
        self.assertIn("IllegalTransition", err)

    def test_fee(self) -> None:
        code, out, _ = self.run_cli("fee", "1000000000")
        self.assertEqual(code, 0)
        self.assertIn("7500000", out)
        self.assertIn("992500000", out)


class MigrateFromJsonTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.wallet = WalletKeyMaterial.generate()

    def write(self, name: str, text: str) -> Path:
        path = Path(self.tmp.name) / name
        path.write_text(text, encoding="utf-8")
        return path

    def test_load_records_formats(self) -> None:
        a, b = dump_note(lifecycle.generate(1)), dump_note(lifecycle.generate(2))
        records, errors = migrate_from_json.load_records(self.write("a.json", json.dumps([a, b])))
        self.assertEqual((len(records), errors), (2, []))
        records, _ = migrate_from_json.load_records(self.write("b.json", json.dumps({"notes": [a]})))
        self.assertEqual(len(records), 1)
        records, errors = migrate_from_json.load_records(
            self.write("c.jsonl", json.dumps(a) + "\n{broken\n\n" + json.dumps(b) + "\n")
        )
        self.assertEqual(len(records), 2)
        self.assertEqual(len(errors), 1)

    def test_migrate_notes(self) -> None:
        store = NoteStore("sqlite://", self.wallet.storage_key)
        kept = lifecycle.generate(5)
        store.add(kept)
        bad = dump_note(lifecycle.generate(6))
        bad["amount"] = 7
        records = [dump_note(lifecycle.generate(1)), dump_note(kept), bad]

        with redirect_stdout(io.StringIO()):
            dry = migrate_from_json.migrate_notes(records, store, dry_run=True)
            self.assertEqual(dry, {"migrated": 1, "skipped": 1, "failed": 1})
            self.assertEqual(len(store), 1)
            counts = migrate_from_json.migrate_notes(records, store)
        self.assertEqual(counts["migrated"], 1)
        self.assertEqual(len(store), 2)

    def test_main_without_keys(self) -> None:
        src = self.write("notes.json", "[]")
        with redirect_stdout(io.StringIO()), redirect_stderr(io.StringIO()):
            code = migrate_from_json.main([str(src), "--keys", str(Path(self.tmp.name) / "missing.json")])
        self.assertEqual(code, 2)


if __name__ == "__main__":
    unittest.main()
