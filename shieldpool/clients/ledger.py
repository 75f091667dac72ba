# clients/ledger.py
"""
Ledger confirmation oracle over Solana-style JSON-RPC.

get_transaction_status(signature) -> pending | confirmed(slot) | failed(reason)
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import httpx

from shieldpool.clients.http import request_json
from shieldpool.errors import ServiceRejected, TransientServiceError


class TxStatusKind(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class TransactionStatus:
    kind: TxStatusKind
    slot: Optional[int] = None
    reason: Optional[str] = None

    @classmethod
    def pending(cls) -> "TransactionStatus":
        return cls(TxStatusKind.PENDING)

    @classmethod
    def confirmed(cls, slot: int) -> "TransactionStatus":
        return cls(TxStatusKind.CONFIRMED, slot=int(slot))

    @classmethod
    def failed(cls, reason: str) -> "TransactionStatus":
        return cls(TxStatusKind.FAILED, reason=reason)


def _reason(err: Any) -> str:
    if isinstance(err, str):
        return err
    if isinstance(err, dict) and len(err) == 1:
        # {"InstructionError": [0, {"Custom": 1}]} / {"InsufficientFundsForRent": {...}}
        k, v = next(iter(err.items()))
        return k if v in (None, {}, []) else f"{k}: {json.dumps(v, separators=(',', ':'))}"
    return json.dumps(err, separators=(",", ":"))


def parse_signature_status(value: Optional[dict]) -> TransactionStatus:
    if value is None:
        return TransactionStatus.pending()
    err = value.get("err")
    if err is not None:
        return TransactionStatus.failed(_reason(err))
    if value.get("confirmationStatus") in ("confirmed", "finalized") and value.get("slot") is not None:
        return TransactionStatus.confirmed(value["slot"])
    return TransactionStatus.pending()


class LedgerClient:
    def __init__(self, rpc_url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None
        self._id = 0

    async def _rpc(self, method: str, params=None) -> Any:
        self._id += 1
        j = await request_json(
            self._client,
            "POST",
            self.rpc_url,
            timeout=self.timeout,
            what=f"rpc {method}",
            json={"jsonrpc": "2.0", "id": self._id, "method": method, "params": params or []},
        )
        if not isinstance(j, dict):
            raise ServiceRejected(f"rpc {method}: malformed response")
        if j.get("error"):
            e = j["error"]
            code = e.get("code") if isinstance(e, dict) else None
            msg = f"rpc {method} error: {e}"
            # -32603 internal / -32005 node behind / -32004 block not available
            if code in (-32603, -32005, -32004):
                raise TransientServiceError(msg)
            raise ServiceRejected(msg)
        return j.get("result")

    async def get_transaction_status(self, signature: str) -> TransactionStatus:
        res = await self._rpc(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        values = (res or {}).get("value") or [None]
        return parse_signature_status(values[0])

    async def get_slot(self) -> int:
        return int(await self._rpc("getSlot"))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "LedgerClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
