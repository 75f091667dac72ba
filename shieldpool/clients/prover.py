# clients/prover.py
from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from shieldpool.api.logging_config import get_logger
from shieldpool.clients.http import request_json
from shieldpool.crypto_core.codec import decode_public_inputs, from_hex, require_proof, to_hex
from shieldpool.errors import MalformedInput, ProverUnavailable, ServiceRejected, TransientServiceError
from shieldpool.notes.models import SpendInputs

logger = get_logger("clients.prover")


@dataclass(frozen=True)
class ProofArtifacts:
    proof: bytes           # 260 bytes
    public_inputs: bytes   # 104 bytes
    generation_ms: int = 0

    @property
    def proof_hex(self) -> str:
        return to_hex(self.proof)

    @property
    def public_inputs_hex(self) -> str:
        return to_hex(self.public_inputs)


class ProverClient:
    """
    Remote proving service. The request carries the three JSON-encoded
    sections the prover expects; the answer must echo public inputs that
    match ours byte for byte.
    """

    def __init__(self, url: str, timeout: float = 180.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    @staticmethod
    def request_body(inputs: SpendInputs) -> dict:
        return {
            "private_inputs": json.dumps(inputs.private_inputs()),
            "public_inputs": json.dumps(inputs.public_inputs()),
            "outputs": json.dumps(inputs.outputs_json()),
        }

    async def prove(self, inputs: SpendInputs) -> ProofArtifacts:
        started = time.monotonic()
        logger.info("requesting proof (amount=%d, outputs=%d)", inputs.amount, len(inputs.outputs))
        try:
            data = await request_json(
                self._client, "POST", self.url, timeout=self.timeout,
                what="prover", json=self.request_body(inputs),
            )
        except TransientServiceError as e:
            raise ProverUnavailable(str(e)) from e
        except ServiceRejected as e:
            raise MalformedInput(f"prover refused the inputs: {e}") from e

        if not isinstance(data, dict) or not data.get("success"):
            err = data.get("error") if isinstance(data, dict) else data
            raise MalformedInput(f"prover reported failure: {err}")

        proof = require_proof(from_hex(str(data.get("proof", "")), "proof"))
        pub_hex = data.get("public_inputs", data.get("publicInputs", ""))
        public = from_hex(str(pub_hex), "public_inputs")
        decode_public_inputs(public)  # length check
        expected = inputs.public_inputs_bytes()
        if public != expected:
            raise MalformedInput("prover public inputs do not match the requested spend")
        elapsed = int(data.get("generation_time_ms") or (time.monotonic() - started) * 1000)
        logger.info("proof ready in %d ms", elapsed)
        return ProofArtifacts(proof=proof, public_inputs=public, generation_ms=elapsed)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
