# shieldpool/api/app.py
from __future__ import annotations

import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Type

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from shieldpool import __version__
from shieldpool.api import health_checks as hc
from shieldpool.api.logging_config import configure_logging, get_logger, short
from shieldpool.api.schemas_api import (
    CollaboratorHealth,
    ErrorRes,
    FinalizeReq,
    FinalizeRes,
    ListNotesRes,
    NewNoteReq,
    NewNoteRes,
    NoteInfo,
    RecoverReq,
    ScanRes,
    SpendInputsReq,
    SpendInputsRes,
)
from shieldpool.clients.indexer import IndexerClient
from shieldpool.clients.ledger import LedgerClient
from shieldpool.config import Settings
from shieldpool.crypto_core.commitments import Output
from shieldpool.crypto_core.keys import WalletKeyMaterial
from shieldpool.deposits.coordinator import DepositFinalizationCoordinator, FinalizationBundle
from shieldpool.errors import (
    ChainRejected,
    ConflictingFinalization,
    CorruptPayload,
    FinalizationError,
    IllegalTransition,
    IndexRejected,
    IndexUnavailable,
    InvalidState,
    MalformedInput,
    NotSpendable,
    ProverUnavailable,
    ServiceRejected,
    ShieldPoolError,
    TransientServiceError,
    Unconfirmed,
)
from shieldpool.notes import lifecycle
from shieldpool.notes.models import Note
from shieldpool.notes.scanner import NoteScanner
from shieldpool.notes.store import NoteStore

logger = get_logger("api")

# First match wins, so subclasses come before their bases.
ERROR_STATUS: List[Tuple[Type[Exception], int]] = [
    (Unconfirmed, status.HTTP_408_REQUEST_TIMEOUT),
    (ChainRejected, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (IndexUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (IndexRejected, status.HTTP_400_BAD_REQUEST),
    (ConflictingFinalization, status.HTTP_409_CONFLICT),
    (IllegalTransition, status.HTTP_409_CONFLICT),
    (NotSpendable, status.HTTP_409_CONFLICT),
    (CorruptPayload, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (TransientServiceError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ProverUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ServiceRejected, status.HTTP_400_BAD_REQUEST),
    (MalformedInput, status.HTTP_400_BAD_REQUEST),
    (InvalidState, status.HTTP_400_BAD_REQUEST),
]


def status_for(exc: Exception) -> int:
    for cls, code in ERROR_STATUS:
        if isinstance(exc, cls):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@dataclass
class Services:
    settings: Settings
    coordinator: Optional[DepositFinalizationCoordinator] = None
    store: Optional[NoteStore] = None
    wallet: Optional[WalletKeyMaterial] = None
    indexer: Optional[IndexerClient] = None
    owned: List[Any] = field(default_factory=list)

    def ensure(self) -> None:
        """Build whatever was not injected, from settings."""
        s = self.settings
        if self.wallet is None and os.path.exists(s.keys_path):
            with open(s.keys_path, "r", encoding="utf-8") as fh:
                self.wallet = WalletKeyMaterial.import_json(fh.read())
            logger.info("loaded wallet keys from %s", s.keys_path)
        if self.store is None and self.wallet is not None:
            self.store = NoteStore(s.resolved_notes_db_url(), self.wallet.storage_key)
        if self.indexer is None:
            self.indexer = IndexerClient(
                s.indexer_url, register_timeout=s.index_timeout_sec, proof_timeout=s.proof_timeout_sec
            )
            self.owned.append(self.indexer)
        if self.coordinator is None:
            ledger = LedgerClient(s.rpc_url, timeout=s.rpc_timeout_sec)
            self.owned.append(ledger)
            self.coordinator = DepositFinalizationCoordinator(
                ledger, self.indexer, settings=s, store=self.store, wallet=self.wallet
            )

    async def close(self) -> None:
        for client in self.owned:
            await client.aclose()
        self.owned.clear()


def _note_info(note: Note) -> NoteInfo:
    v = note.public_view()
    return NoteInfo(**{k: v[k] for k in NoteInfo.model_fields})


def _bundle_res(bundle: FinalizationBundle) -> FinalizeRes:
    return FinalizeRes.model_validate(bundle.to_dict())


def create_app(
    settings: Optional[Settings] = None,
    coordinator: Optional[DepositFinalizationCoordinator] = None,
    store: Optional[NoteStore] = None,
    wallet: Optional[WalletKeyMaterial] = None,
    indexer: Optional[IndexerClient] = None,
) -> FastAPI:
    services = Services(
        settings=settings or Settings.from_env(),
        coordinator=coordinator,
        store=store,
        wallet=wallet,
        indexer=indexer,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        services.ensure()
        logger.info("shieldpool API %s up (indexer=%s rpc=%s)", __version__, services.settings.indexer_url, services.settings.rpc_url)
        yield
        await services.close()

    app = FastAPI(title="Shieldpool Notes API", version=__version__, lifespan=lifespan)
    app.state.services = services

    # =========================
    # Error mapping
    # =========================
    @app.exception_handler(ShieldPoolError)
    async def _shieldpool_error(request: Request, exc: ShieldPoolError):
        code = status_for(exc)
        body = ErrorRes(
            error=str(exc),
            error_code=type(exc).__name__,
            retriable=bool(getattr(exc, "retriable", False)),
            tx_signature=exc.deposit_reference if isinstance(exc, FinalizationError) else None,
        )
        log = logger.warning if code < 500 else logger.error
        log("%s %s -> %d %s: %s", request.method, request.url.path, code, type(exc).__name__, exc)
        return JSONResponse(status_code=code, content=body.model_dump())

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        body = ErrorRes(error=f"{loc}: {first.get('msg', 'invalid request')}", error_code="MalformedInput")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body.model_dump())

    # =========================
    # Dependencies
    # =========================
    def get_services() -> Services:
        return app.state.services

    def get_coordinator(sv: Services = Depends(get_services)) -> DepositFinalizationCoordinator:
        if sv.coordinator is None:
            raise HTTPException(status_code=503, detail="Deposit coordinator not configured")
        return sv.coordinator

    def get_store(sv: Services = Depends(get_services)) -> NoteStore:
        if sv.store is None:
            raise HTTPException(status_code=503, detail="No wallet note store configured")
        return sv.store

    def get_wallet(sv: Services = Depends(get_services)) -> WalletKeyMaterial:
        if sv.wallet is None:
            raise HTTPException(status_code=503, detail="No wallet keys configured")
        return sv.wallet

    # =========================
    # Deposits
    # =========================
    @app.post("/deposit/finalize", response_model=FinalizeRes)
    async def finalize_deposit(req: FinalizeReq, coord: DepositFinalizationCoordinator = Depends(get_coordinator)):
        logger.info("finalize request tx=%s commitment=%s", short(req.tx_signature), short(req.commitment))
        bundle = await coord.finalize(req.tx_signature, bytes.fromhex(req.commitment), req.encrypted_output)
        return _bundle_res(bundle)

    @app.get("/deposit/finalize", response_model=CollaboratorHealth)
    async def finalize_health(sv: Services = Depends(get_services)):
        checks = {
            "indexer": await hc.check_indexer_health(sv.settings.indexer_url),
            "rpc": await hc.check_rpc_health(sv.settings.rpc_url),
        }
        ok = all(c.get("status") in hc.HEALTHY_STATES for c in checks.values())
        return CollaboratorHealth(status="healthy" if ok else "unhealthy", checks=checks)

    @app.post("/deposit/recover", response_model=FinalizeRes)
    async def recover_deposit(req: RecoverReq, coord: DepositFinalizationCoordinator = Depends(get_coordinator)):
        bundle = await coord.recover(req.tx_signature, bytes.fromhex(req.commitment))
        return _bundle_res(bundle)

    # =========================
    # Notes
    # =========================
    @app.get("/notes", response_model=ListNotesRes)
    def list_notes(st: NoteStore = Depends(get_store)):
        return ListNotesRes(notes=[_note_info(n) for n in st.list()], total_balance=st.balance())

    @app.post("/notes", response_model=NewNoteRes)
    def new_note(
        req: NewNoteReq,
        st: NoteStore = Depends(get_store),
        wallet: WalletKeyMaterial = Depends(get_wallet),
        sv: Services = Depends(get_services),
    ):
        note = lifecycle.generate(req.amount, wallet=wallet, network=sv.settings.network)
        st.add(note)
        return NewNoteRes(
            commitment=note.commitment_hex,
            amount=note.amount,
            encrypted_output=lifecycle.seal_for(note, wallet.view_public_key),
        )

    @app.post("/notes/spend-inputs", response_model=SpendInputsRes)
    def spend_inputs(req: SpendInputsReq, st: NoteStore = Depends(get_store)):
        note = st.get(req.commitment)
        if note is None:
            raise HTTPException(status_code=404, detail="Note not found")
        inputs = lifecycle.derive_spend_material(note, [Output(o.address, o.amount) for o in req.outputs])
        return SpendInputsRes(
            private_inputs=inputs.private_inputs(),
            public_inputs=inputs.public_inputs(),
            outputs=inputs.outputs_json(),
            public_inputs_hex=inputs.public_inputs_bytes().hex(),
        )

    @app.post("/notes/scan", response_model=ScanRes)
    async def scan_notes(
        st: NoteStore = Depends(get_store),
        wallet: WalletKeyMaterial = Depends(get_wallet),
        sv: Services = Depends(get_services),
    ):
        if sv.indexer is None:
            raise HTTPException(status_code=503, detail="Index service not configured")
        found = await NoteScanner(wallet, st).scan_index(sv.indexer, coordinator=sv.coordinator)
        return ScanRes(discovered=len(found), notes=[_note_info(n) for n in found])

    # =========================
    # Health
    # =========================
    @app.get("/health")
    async def health(sv: Services = Depends(get_services)):
        engine = sv.store.engine if sv.store is not None else None
        return await hc.comprehensive_health_check(engine, sv.settings.rpc_url, sv.settings.indexer_url)

    @app.get("/health/live")
    async def health_live():
        return {"status": "alive" if await hc.liveness_check() else "dead"}

    @app.get("/health/ready")
    async def health_ready(sv: Services = Depends(get_services)):
        engine = sv.store.engine if sv.store is not None else None
        if not await hc.readiness_check(engine, sv.settings.rpc_url, sv.settings.indexer_url):
            raise HTTPException(status_code=503, detail="Not ready")
        return {"status": "ready"}

    return app


app = create_app()
