# clients/indexer.py
"""
Client for the note index service (append-only commitment tree).

    POST /api/v1/deposit              register a deposit (idempotent by commitment)
    GET  /api/v1/merkle/proof/{i}     inclusion proof for leaf i
    GET  /api/v1/merkle/root          {root, next_index}
    GET  /api/v1/notes/range          bulk export of encrypted payloads
    GET  /health
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from shieldpool.clients.http import request_json
from shieldpool.crypto_core.codec import bytes32, from_hex, require_u32
from shieldpool.crypto_core.merkle import InclusionProof
from shieldpool.errors import MalformedInput, ServiceRejected


@dataclass(frozen=True)
class Registration:
    leaf_index: int
    root: bytes


@dataclass(frozen=True)
class ProofResponse:
    proof: InclusionProof
    root: Optional[bytes]


@dataclass(frozen=True)
class PayloadPage:
    start: int
    payloads: List[str]
    has_more: bool
    total: int


def _pick(d: Dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if d.get(k) is not None:
            return d[k]
    return None


def parse_registration(data: Any) -> Registration:
    if not isinstance(data, dict):
        raise ServiceRejected("index registration response is not an object")
    leaf = _pick(data, "leaf_index", "leafIndex")
    root = _pick(data, "root")
    if leaf is None:
        raise ServiceRejected("index did not return leaf_index")
    if root is None:
        raise ServiceRejected("index did not return root")
    try:
        return Registration(leaf_index=require_u32(int(leaf), "leaf_index"), root=bytes32(root, "root"))
    except (MalformedInput, ValueError, TypeError) as e:
        raise ServiceRejected(f"index registration response unusable: {e}") from None


def parse_proof(data: Any) -> ProofResponse:
    if not isinstance(data, dict):
        raise ServiceRejected("index proof response is not an object")
    try:
        proof = InclusionProof.from_dict(data)
        root = _pick(data, "root")
        return ProofResponse(proof=proof, root=bytes32(root, "root") if root is not None else None)
    except (MalformedInput, ValueError, TypeError) as e:
        raise ServiceRejected(f"index proof response unusable: {e}") from None


class IndexerClient:
    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        register_timeout: float = 30.0,
        proof_timeout: float = 10.0,
        read_timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.register_timeout = register_timeout
        self.proof_timeout = proof_timeout
        self.read_timeout = read_timeout
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def register_deposit(self, commitment: bytes, encrypted_payload: str, reference: str, slot: int) -> Registration:
        body = {
            "leaf_commit": bytes32(commitment, "commitment").hex(),
            "encrypted_output": encrypted_payload,
            "tx_signature": reference,
            "slot": int(slot),
        }
        data = await request_json(
            self._client, "POST", self._url("/api/v1/deposit"),
            timeout=self.register_timeout, what="index register_deposit", json=body,
        )
        return parse_registration(data)

    async def get_inclusion_proof(self, leaf_index: int) -> ProofResponse:
        require_u32(leaf_index, "leaf_index")
        data = await request_json(
            self._client, "GET", self._url(f"/api/v1/merkle/proof/{leaf_index}"),
            timeout=self.proof_timeout, what="index get_inclusion_proof",
        )
        return parse_proof(data)

    async def get_merkle_root(self) -> Dict[str, Any]:
        data = await request_json(
            self._client, "GET", self._url("/api/v1/merkle/root"),
            timeout=self.read_timeout, what="index merkle root",
        )
        if not isinstance(data, dict) or "root" not in data:
            raise ServiceRejected("index merkle root response lacks root")
        return {"root": from_hex(data["root"], "root"), "next_index": int(data.get("next_index", 0))}

    async def list_encrypted_payloads(self, start: int, end: int, limit: int = 100) -> PayloadPage:
        """Payloads for leaves start..end inclusive, in leaf order."""
        data = await request_json(
            self._client, "GET", self._url("/api/v1/notes/range"),
            timeout=self.read_timeout, what="index notes range",
            params={"start": start, "end": end, "limit": limit},
        )
        if not isinstance(data, dict) or not isinstance(data.get("notes"), list):
            raise ServiceRejected("index notes range response lacks notes")
        return PayloadPage(
            start=int(data.get("start", start)),
            payloads=[str(p) for p in data["notes"]],
            has_more=bool(data.get("has_more", False)),
            total=int(data.get("total", len(data["notes"]))),
        )

    async def iter_all_payloads(self, batch_size: int = 100) -> AsyncIterator[PayloadPage]:
        info = await self.get_merkle_root()
        total = info["next_index"]
        for start in range(0, total, batch_size):
            end = min(start + batch_size - 1, total - 1)
            yield await self.list_encrypted_payloads(start, end, batch_size)

    async def health(self) -> Dict[str, Any]:
        data = await request_json(self._client, "GET", self._url("/health"), timeout=5.0, what="index health")
        return data if isinstance(data, dict) else {"status": str(data)}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "IndexerClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
