# shieldpool/config.py
from __future__ import annotations

import os
import pathlib
from dataclasses import dataclass, replace
from typing import Optional

REPO_ROOT = str(pathlib.Path(__file__).resolve().parents[1])


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    """Runtime configuration. Build with Settings.from_env() or directly in tests."""

    rpc_url: str = "http://127.0.0.1:8899"
    indexer_url: str = "http://127.0.0.1:3001"
    prover_url: str = "http://127.0.0.1:3000/api/prove"
    data_dir: str = os.path.join(REPO_ROOT, "data")
    notes_db_url: Optional[str] = None
    network: str = "localnet"

    # Step 1: confirmation polling
    confirm_max_attempts: int = 30
    confirm_interval_sec: float = 2.0
    rpc_timeout_sec: float = 5.0

    # Step 2: index registration
    index_max_attempts: int = 3
    index_backoff_sec: float = 2.0
    index_timeout_sec: float = 30.0

    # Step 3: inclusion proof
    proof_max_attempts: int = 3
    proof_backoff_sec: float = 1.0
    proof_timeout_sec: float = 10.0

    prover_timeout_sec: float = 180.0
    verify_inclusion_proofs: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        d = cls()
        data_dir = os.getenv("DATA_DIR", d.data_dir)
        return cls(
            rpc_url=os.getenv("SOLANA_RPC_URL", d.rpc_url),
            indexer_url=os.getenv("INDEXER_URL", d.indexer_url).rstrip("/"),
            prover_url=os.getenv("PROVER_URL", d.prover_url),
            data_dir=data_dir,
            notes_db_url=os.getenv("NOTES_DB_URL") or None,
            network=os.getenv("SHIELDPOOL_NETWORK", d.network),
            confirm_max_attempts=_env_int("CONFIRM_MAX_ATTEMPTS", d.confirm_max_attempts),
            confirm_interval_sec=_env_float("CONFIRM_INTERVAL_SEC", d.confirm_interval_sec),
            rpc_timeout_sec=_env_float("RPC_TIMEOUT_SEC", d.rpc_timeout_sec),
            index_max_attempts=_env_int("INDEX_MAX_ATTEMPTS", d.index_max_attempts),
            index_backoff_sec=_env_float("INDEX_BACKOFF_SEC", d.index_backoff_sec),
            index_timeout_sec=_env_float("INDEX_TIMEOUT_SEC", d.index_timeout_sec),
            proof_max_attempts=_env_int("PROOF_MAX_ATTEMPTS", d.proof_max_attempts),
            proof_backoff_sec=_env_float("PROOF_BACKOFF_SEC", d.proof_backoff_sec),
            proof_timeout_sec=_env_float("PROOF_TIMEOUT_SEC", d.proof_timeout_sec),
            prover_timeout_sec=_env_float("PROVER_TIMEOUT_SEC", d.prover_timeout_sec),
            verify_inclusion_proofs=os.getenv("VERIFY_INCLUSION_PROOFS", "0") == "1",
        )

    def with_overrides(self, **kw) -> "Settings":
        return replace(self, **kw)

    def resolved_notes_db_url(self) -> str:
        if self.notes_db_url:
            return self.notes_db_url
        return "sqlite:///" + os.path.join(self.data_dir, "notes.db")

    @property
    def keys_path(self) -> str:
        return os.path.join(self.data_dir, "wallet_keys.json")
