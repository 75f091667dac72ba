#!/usr/bin/env python3
# shieldpool/cli/wallet_cli.py
# Operator CLI for a shieldpool wallet: keys, notes, deposit recovery, scanning, spend inputs.

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from typing import List, Optional

from shieldpool.api.logging_config import configure_logging
from shieldpool.clients.indexer import IndexerClient
from shieldpool.clients.ledger import LedgerClient
from shieldpool.clients.prover import ProverClient
from shieldpool.config import Settings
from shieldpool.crypto_core.codec import to_hex
from shieldpool.crypto_core.commitments import Output
from shieldpool.crypto_core.keys import WalletKeyMaterial
from shieldpool.crypto_core.splits import calculate_fee, distributable_amount
from shieldpool.deposits.coordinator import DepositFinalizationCoordinator
from shieldpool.errors import FinalizationError, MalformedInput, ShieldPoolError
from shieldpool.notes import lifecycle
from shieldpool.notes.models import LifecycleState
from shieldpool.notes.scanner import NoteScanner
from shieldpool.notes.store import NoteStore


# ======== Color accents (no deps) ========
class C:
    OK = "\033[92m"
    WARN = "\033[93m"
    ERR = "\033[91m"
    DIM = "\033[2m"
    BOLD = "\033[1m"
    RST = "\033[0m"


def _short(v: Optional[str]) -> str:
    return f"{v[:8]}…{v[-6:]}" if v and len(v) > 16 else (v or "-")


# ======== Wallet plumbing ========
def _load_wallet(settings: Settings) -> WalletKeyMaterial:
    if not os.path.exists(settings.keys_path):
        raise MalformedInput(f"no wallet keys at {settings.keys_path} (run `keys new`)")
    with open(settings.keys_path, "r", encoding="utf-8") as fh:
        return WalletKeyMaterial.import_json(fh.read())


def _open_store(settings: Settings, wallet: WalletKeyMaterial) -> NoteStore:
    return NoteStore(settings.resolved_notes_db_url(), wallet.storage_key)


def _coordinator(settings: Settings, store: NoteStore, wallet: WalletKeyMaterial):
    ledger = LedgerClient(settings.rpc_url, timeout=settings.rpc_timeout_sec)
    indexer = IndexerClient(
        settings.indexer_url, register_timeout=settings.index_timeout_sec, proof_timeout=settings.proof_timeout_sec
    )
    return ledger, indexer, DepositFinalizationCoordinator(ledger, indexer, settings=settings, store=store, wallet=wallet)


# ======== Commands ========
def cmd_keys_new(args, settings: Settings) -> int:
    if os.path.exists(settings.keys_path) and not args.force:
        print(f"{C.WARN}Keys already exist at {settings.keys_path} (use --force to overwrite){C.RST}")
        return 1
    os.makedirs(os.path.dirname(settings.keys_path), exist_ok=True)
    wallet = WalletKeyMaterial.generate()
    fd = os.open(settings.keys_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(wallet.export_json())
    print(f"{C.OK}New wallet keys written → {settings.keys_path}{C.RST}")
    print(f"spend_public : {to_hex(wallet.spend_public)}")
    print(f"view_public  : {to_hex(wallet.view_public)}")
    wallet.wipe()
    return 0


def cmd_keys_show(args, settings: Settings) -> int:
    wallet = _load_wallet(settings)
    print(f"keys file    : {C.DIM}{settings.keys_path}{C.RST}")
    print(f"spend_public : {to_hex(wallet.spend_public)}")
    print(f"view_public  : {to_hex(wallet.view_public)}")
    wallet.wipe()
    return 0


def cmd_note_new(args, settings: Settings) -> int:
    wallet = _load_wallet(settings)
    store = _open_store(settings, wallet)
    note = lifecycle.generate(args.amount, wallet=wallet, network=settings.network)
    store.add(note)
    print(f"Commitment       : {C.BOLD}{note.commitment_hex}{C.RST}")
    print(f"Amount           : {note.amount}")
    print(f"Encrypted output : {lifecycle.seal_for(note, wallet.view_public_key)}")
    print(f"{C.DIM}Deposit the commitment on-chain, then: note submit {note.commitment_hex} <TX>{C.RST}")
    return 0


def cmd_note_submit(args, settings: Settings) -> int:
    wallet = _load_wallet(settings)
    store = _open_store(settings, wallet)
    note = store.get(args.commitment)
    if note is None:
        raise MalformedInput(f"no local note {args.commitment}")
    lifecycle.mark_submitted(note, args.tx)
    store.put(note)
    print(f"{C.OK}Note {_short(note.commitment_hex)} submitted with tx {_short(args.tx)}{C.RST}")
    return 0


def cmd_deposit_finalize(args, settings: Settings) -> int:
    wallet = _load_wallet(settings)
    store = _open_store(settings, wallet)

    async def run():
        ledger, indexer, coord = _coordinator(settings, store, wallet)
        try:
            return await coord.recover(args.tx, args.commitment)
        finally:
            await ledger.aclose()
            await indexer.aclose()

    bundle = asyncio.run(run())
    print("\n--- Deposit finalized ---")
    print(f"Commitment : {to_hex(bundle.commitment)}")
    print(f"Leaf index : {bundle.leaf_index}")
    print(f"Root       : {to_hex(bundle.root)}")
    print(f"Slot       : {bundle.slot}")
    return 0


def cmd_scan(args, settings: Settings) -> int:
    wallet = _load_wallet(settings)
    store = _open_store(settings, wallet)

    async def run():
        ledger, indexer, coord = _coordinator(settings, store, wallet)
        try:
            scanner = NoteScanner(wallet, store, max_workers=args.workers)
            return await scanner.scan_index(indexer, coordinator=None if args.no_finalize else coord, batch_size=args.batch)
        finally:
            await ledger.aclose()
            await indexer.aclose()

    found = asyncio.run(run())
    print(f"Discovered {C.BOLD}{len(found)}{C.RST} new notes")
    for n in found:
        print(f"  {_short(n.commitment_hex)}  {n.amount:>16}  {n.state.value:<10} leaf={n.leaf_index}")
    return 0


def cmd_notes_list(args, settings: Settings) -> int:
    wallet = _load_wallet(settings)
    store = _open_store(settings, wallet)
    states = [LifecycleState(s) for s in args.state] if args.state else None
    notes = store.list(states)
    print(f"\n-- Notes ({len(notes)}) --")
    for n in notes:
        print(f"{_short(n.commitment_hex):<18} {n.amount:>16} {n.state.value:<10} leaf={n.leaf_index} tx={_short(n.deposit_reference)}")
    print(f"\nSpendable balance: {C.BOLD}{store.balance()}{C.RST}")
    return 0


def cmd_notes_export(args, settings: Settings) -> int:
    wallet = _load_wallet(settings)
    store = _open_store(settings, wallet)
    data = store.export_json()
    if args.out:
        fd = os.open(args.out, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(data)
        print(f"{C.DIM}(exported {len(store)} notes → {args.out}){C.RST}")
    else:
        print(data)
    return 0


def cmd_notes_import(args, settings: Settings) -> int:
    wallet = _load_wallet(settings)
    store = _open_store(settings, wallet)
    with open(args.file, "r", encoding="utf-8") as fh:
        n = store.import_json(fh.read())
    print(f"{C.OK}Imported {n} notes{C.RST}")
    return 0


def cmd_notes_spent(args, settings: Settings) -> int:
    wallet = _load_wallet(settings)
    store = _open_store(settings, wallet)
    note = store.get(args.commitment)
    if note is None:
        raise MalformedInput(f"no local note {args.commitment}")
    lifecycle.mark_spent(note)
    store.put(note)
    print(f"Note {_short(note.commitment_hex)} marked spent")
    return 0


def cmd_spend_inputs(args, settings: Settings) -> int:
    wallet = _load_wallet(settings)
    store = _open_store(settings, wallet)
    note = store.get(args.commitment)
    if note is None:
        raise MalformedInput(f"no local note {args.commitment}")
    outputs = [Output.parse(o) for o in args.outputs]
    inputs = lifecycle.derive_spend_material(note, outputs)
    print(json.dumps({
        "private_inputs": inputs.private_inputs(),
        "public_inputs": inputs.public_inputs(),
        "outputs": inputs.outputs_json(),
        "public_inputs_hex": inputs.public_inputs_bytes().hex(),
    }, indent=2))

    if args.prove:
        async def run():
            prover = ProverClient(settings.prover_url, timeout=settings.prover_timeout_sec)
            try:
                return await prover.prove(inputs)
            finally:
                await prover.aclose()

        art = asyncio.run(run())
        print(f"\n{C.OK}Proof ({len(art.proof)} bytes, {art.generation_ms} ms){C.RST}")
        print(f"proof         : {art.proof_hex}")
        print(f"public_inputs : {art.public_inputs_hex}")
    return 0


def cmd_fee(args, settings: Settings) -> int:
    print(f"Amount       : {args.amount}")
    print(f"Fee          : {calculate_fee(args.amount)}")
    print(f"Distributable: {distributable_amount(args.amount)}")
    return 0


# ======== Parser ========
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="shieldpool-wallet", description="Shielded note wallet")
    p.add_argument("--data-dir", default=None, help="Wallet data directory (default: $DATA_DIR)")
    p.add_argument("--log-level", default=None, help="Log level (default: $LOG_LEVEL or INFO)")
    sub = p.add_subparsers(dest="command", required=True)

    keys = sub.add_parser("keys", help="Wallet key material").add_subparsers(dest="keys_cmd", required=True)
    k_new = keys.add_parser("new", help="Generate a master seed and derived keys")
    k_new.add_argument("--force", action="store_true", help="Overwrite existing keys")
    k_new.set_defaults(func=cmd_keys_new)
    keys.add_parser("show", help="Print public keys").set_defaults(func=cmd_keys_show)

    note = sub.add_parser("note", help="Single note operations").add_subparsers(dest="note_cmd", required=True)
    n_new = note.add_parser("new", help="Generate a note")
    n_new.add_argument("amount", type=int, help="Amount in base units")
    n_new.set_defaults(func=cmd_note_new)
    n_sub = note.add_parser("submit", help="Record the deposit transaction of a note")
    n_sub.add_argument("commitment")
    n_sub.add_argument("tx")
    n_sub.set_defaults(func=cmd_note_submit)

    dep = sub.add_parser("deposit", help="Deposit finalization").add_subparsers(dest="deposit_cmd", required=True)
    d_fin = dep.add_parser("finalize", help="(Re-)run finalization for a stored note")
    d_fin.add_argument("tx")
    d_fin.add_argument("commitment")
    d_fin.set_defaults(func=cmd_deposit_finalize)

    scan = sub.add_parser("scan", help="Find notes addressed to this wallet in the index")
    scan.add_argument("--batch", type=int, default=100)
    scan.add_argument("--workers", type=int, default=4)
    scan.add_argument("--no-finalize", action="store_true", help="Do not fetch inclusion proofs for new notes")
    scan.set_defaults(func=cmd_scan)

    notes = sub.add_parser("notes", help="Stored notes").add_subparsers(dest="notes_cmd", required=True)
    n_list = notes.add_parser("list")
    n_list.add_argument("--state", action="append", choices=[s.value for s in LifecycleState])
    n_list.set_defaults(func=cmd_notes_list)
    n_exp = notes.add_parser("export")
    n_exp.add_argument("--out", default=None)
    n_exp.set_defaults(func=cmd_notes_export)
    n_imp = notes.add_parser("import")
    n_imp.add_argument("file")
    n_imp.set_defaults(func=cmd_notes_import)
    n_sp = notes.add_parser("mark-spent")
    n_sp.add_argument("commitment")
    n_sp.set_defaults(func=cmd_notes_spent)

    sp = sub.add_parser("spend-inputs", help="Build prover inputs for a finalized note")
    sp.add_argument("commitment")
    sp.add_argument("outputs", nargs="+", metavar="ADDRESS:AMOUNT")
    sp.add_argument("--prove", action="store_true", help="Send the inputs to the prover")
    sp.set_defaults(func=cmd_spend_inputs)

    fee = sub.add_parser("fee", help="Fee for spending an amount")
    fee.add_argument("amount", type=int)
    fee.set_defaults(func=cmd_fee)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    settings = Settings.from_env()
    if args.data_dir:
        settings = settings.with_overrides(data_dir=args.data_dir)
    try:
        return args.func(args, settings)
    except FinalizationError as e:
        hint = "re-run the same command to resume" if e.retriable else "not retriable"
        print(f"\n{C.ERR}ERROR ({type(e).__name__}, {hint}):{C.RST} {e}", file=sys.stderr)
        return 3 if e.retriable else 1
    except ShieldPoolError as e:
        print(f"\n{C.ERR}ERROR ({type(e).__name__}):{C.RST} {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
