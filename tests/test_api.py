#!/usr/bin/env python3
"""Tests for the HTTP API with in-process collaborators."""

from __future__ import annotations

import unittest

import httpx
from fastapi.testclient import TestClient

from fakes import FakeIndexer, FakeLedger, fast_settings, no_sleep

from shieldpool.api import health_checks as hc
from shieldpool.api.app import create_app, status_for
from shieldpool.clients.ledger import TransactionStatus
from shieldpool.crypto_core.keys import WalletKeyMaterial
from shieldpool.crypto_core.merkle import build_proof
from shieldpool.deposits.coordinator import DepositFinalizationCoordinator
from shieldpool.errors import (
    ChainRejected,
    ConflictingFinalization,
    IndexRejected,
    IndexUnavailable,
    MalformedInput,
    Unconfirmed,
)
from shieldpool.notes import lifecycle
from shieldpool.notes.models import LifecycleState
from shieldpool.notes.store import NoteStore

TX = "3nD1Ms9uT3Yx6kN8pQ4rZ1wC7eVbA2sG5hJ9kL0mP8oI6uY4tR2eW1qA3sD5fG7hJ9kL1zX3cV5bN7mQ9wE2rT"


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.wallet = WalletKeyMaterial.generate()
        self.store = NoteStore("sqlite://", self.wallet.storage_key)
        self.indexer = FakeIndexer()
        self.ledger = FakeLedger()
        self.settings = fast_settings(rpc_url="", indexer_url="")
        coord = DepositFinalizationCoordinator(
            self.ledger, self.indexer, settings=self.settings, store=self.store, wallet=self.wallet, sleep=no_sleep
        )
        app = create_app(
            settings=self.settings, coordinator=coord, store=self.store, wallet=self.wallet, indexer=self.indexer
        )
        self.client = TestClient(app)

    def new_note(self, amount: int = 1_000_000_000) -> dict:
        r = self.client.post("/notes", json={"amount": amount})
        self.assertEqual(r.status_code, 200, r.text)
        return r.json()


class DepositRouteTests(ApiTestCase):
    def test_finalize(self) -> None:
        created = self.new_note()
        r = self.client.post("/deposit/finalize", json={
            "tx_signature": TX,
            "commitment": created["commitment"],
            "encrypted_output": created["encrypted_output"],
        })
        self.assertEqual(r.status_code, 200, r.text)
        body = r.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["leaf_index"], 0)
        self.assertEqual(body["slot"], 4242)
        self.assertEqual(body["tx_signature"], TX)
        self.assertEqual(len(body["merkle_proof"]["path_elements"]), len(body["merkle_proof"]["path_indices"]))
        self.assertEqual(self.store.get(created["commitment"]).state, LifecycleState.FINALIZED)

    def test_chain_rejected(self) -> None:
        self.ledger.script = [TransactionStatus.failed("InsufficientFunds")]
        created = self.new_note()
        r = self.client.post("/deposit/finalize", json={
            "tx_signature": TX,
            "commitment": created["commitment"],
            "encrypted_output": created["encrypted_output"],
        })
        self.assertEqual(r.status_code, 422)
        body = r.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["error_code"], "ChainRejected")
        self.assertFalse(body["retriable"])
        self.assertEqual(body["tx_signature"], TX)
        self.assertEqual(self.indexer.register_calls, 0)

    def test_unconfirmed(self) -> None:
        self.ledger.script = [TransactionStatus.pending()] * 3
        created = self.new_note()
        r = self.client.post("/deposit/finalize", json={
            "tx_signature": TX,
            "commitment": created["commitment"],
            "encrypted_output": created["encrypted_output"],
        })
        self.assertEqual(r.status_code, 408)
        self.assertEqual(r.json()["error_code"], "Unconfirmed")
        self.assertTrue(r.json()["retriable"])

    def test_bad_commitment(self) -> None:
        r = self.client.post("/deposit/finalize", json={
            "tx_signature": TX, "commitment": "xyz", "encrypted_output": "payload",
        })
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.json()["error_code"], "MalformedInput")

    def test_recover(self) -> None:
        created = self.new_note(5_000_000)
        r = self.client.post("/deposit/recover", json={"tx_signature": TX, "commitment": created["commitment"]})
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["commitment"], created["commitment"])

    def test_collaborator_health_not_configured(self) -> None:
        r = self.client.get("/deposit/finalize")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["status"], "healthy")


class NoteRouteTests(ApiTestCase):
    def finalized_note(self, amount: int = 1_000_000_000):
        note = lifecycle.generate(amount, wallet=self.wallet)
        lifecycle.mark_submitted(note, TX)
        root, proof = build_proof([note.commitment], 0)
        lifecycle.attach_finalization(note, 0, root, proof)
        self.store.add(note)
        return note

    def test_list_notes(self) -> None:
        self.new_note(10)
        self.finalized_note(20)
        r = self.client.get("/notes")
        self.assertEqual(r.status_code, 200)
        body = r.json()
        self.assertEqual(len(body["notes"]), 2)
        self.assertEqual(body["total_balance"], 20)
        self.assertNotIn("spend_secret", body["notes"][0])

    def test_new_note_rejects_zero(self) -> None:
        r = self.client.post("/notes", json={"amount": 0})
        self.assertEqual(r.status_code, 400)

    def test_spend_inputs(self) -> None:
        note = self.finalized_note()
        r = self.client.post("/notes/spend-inputs", json={
            "commitment": note.commitment_hex,
            "outputs": [{"address": "09" * 32, "amount": 992_500_000}],
        })
        self.assertEqual(r.status_code, 200, r.text)
        body = r.json()
        self.assertEqual(len(bytes.fromhex(body["public_inputs_hex"])), 104)
        self.assertEqual(body["public_inputs"]["amount"], 1_000_000_000)
        self.assertEqual(body["private_inputs"]["leaf_index"], 0)

    def test_spend_inputs_unknown_note(self) -> None:
        r = self.client.post("/notes/spend-inputs", json={
            "commitment": "ab" * 32, "outputs": [{"address": "09" * 32, "amount": 1}],
        })
        self.assertEqual(r.status_code, 404)

    def test_spend_inputs_not_finalized(self) -> None:
        created = self.new_note()
        r = self.client.post("/notes/spend-inputs", json={
            "commitment": created["commitment"], "outputs": [{"address": "09" * 32, "amount": 1}],
        })
        self.assertEqual(r.status_code, 409)
        self.assertEqual(r.json()["error_code"], "IllegalTransition")

    def test_scan(self) -> None:
        note = lifecycle.generate(77, wallet=self.wallet)
        self.indexer.preload(note.commitment, lifecycle.seal_for(note, self.wallet.view_public_key))
        r = self.client.post("/notes/scan")
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["discovered"], 1)
        self.assertEqual(self.store.get(note.commitment).state, LifecycleState.FINALIZED)


class HealthRouteTests(ApiTestCase):
    def test_live(self) -> None:
        r = self.client.get("/health/live")
        self.assertEqual(r.json(), {"status": "alive"})

    def test_ready_without_remote_collaborators(self) -> None:
        r = self.client.get("/health/ready")
        self.assertEqual(r.status_code, 200)

    def test_health(self) -> None:
        body = self.client.get("/health").json()
        self.assertEqual(body["checks"]["database"]["status"], "healthy")
        self.assertEqual(body["status"], "healthy")


class HealthCheckTests(unittest.IsolatedAsyncioTestCase):
    async def test_indexer_down(self) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503)))
        res = await hc.check_indexer_health("http://indexer", client=client)
        self.assertEqual(res["status"], "unhealthy")

    async def test_rpc_up(self) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"result": "ok"})))
        res = await hc.check_rpc_health("http://rpc", client=client)
        self.assertEqual(res["status"], "healthy")

    async def test_database_disabled(self) -> None:
        self.assertEqual(hc.check_database_health(None)["status"], "disabled")


class StatusMappingTests(unittest.TestCase):
    def test_status_for(self) -> None:
        self.assertEqual(status_for(Unconfirmed("x")), 408)
        self.assertEqual(status_for(ChainRejected("x")), 422)
        self.assertEqual(status_for(IndexUnavailable("x")), 503)
        self.assertEqual(status_for(IndexRejected("x")), 400)
        self.assertEqual(status_for(ConflictingFinalization("x")), 409)
        self.assertEqual(status_for(MalformedInput("x")), 400)
        self.assertEqual(status_for(RuntimeError("x")), 500)


if __name__ == "__main__":
    unittest.main()
