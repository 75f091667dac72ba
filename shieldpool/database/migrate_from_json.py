"""
Import legacy wallet note exports into the encrypted note store.

Reads a JSON array (wallet export) or a JSONL file (one note per line),
upgrades every record to the current note format and inserts the notes that
are not stored yet.

Usage:
    # Dry run (upgrade + validate, nothing written)
    python -m shieldpool.database.migrate_from_json notes_export.json --dry-run

    # Actually import
    python -m shieldpool.database.migrate_from_json notes_export.json
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Tuple

from shieldpool.config import Settings
from shieldpool.crypto_core.keys import WalletKeyMaterial
from shieldpool.errors import ShieldPoolError
from shieldpool.notes.serialization import load_note
from shieldpool.notes.store import NoteStore


# ============================================================================
# LOADING
# ============================================================================

def load_records(file_path: Path) -> Tuple[List[Dict[str, Any]], List[str]]:
    """
    Load a JSON array / single object, or fall back to JSONL.

    Returns:
        (records, errors) where errors describes lines that did not parse
    """
    text = file_path.read_text(encoding="utf-8")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, list):
        return data, []
    if isinstance(data, dict):
        # {"notes": [...]} wallet exports as well as a bare record
        return (data["notes"], []) if isinstance(data.get("notes"), list) else ([data], [])

    records, errors = [], []
    for line_num, line in enumerate(text.splitlines(), 1):
        line = line.strip()
        if not line:
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError as e:
            errors.append(f"line {line_num}: {e}")
    return records, errors


# ============================================================================
# MIGRATION
# ============================================================================

def migrate_notes(records: List[Dict[str, Any]], store: NoteStore, dry_run: bool = False) -> Dict[str, int]:
    """
    Upgrade and insert legacy note records.

    Args:
        records: Raw note records, any supported format version
        store: Destination store
        dry_run: Validate only

    Returns:
        Counts: migrated, skipped (already stored), failed
    """
    counts = {"migrated": 0, "skipped": 0, "failed": 0}
    for i, rec in enumerate(records):
        try:
            note = load_note(rec)
        except ShieldPoolError as e:
            print(f"   ❌ record {i}: {e}")
            counts["failed"] += 1
            continue

        if store.contains(note.commitment):
            print(f"   ⏭️  {note.commitment_hex[:16]}… already stored")
            counts["skipped"] += 1
            continue

        if not dry_run:
            store.add(note)
        print(f"   ✅ {note.commitment_hex[:16]}… {note.amount} ({note.state.value})")
        counts["migrated"] += 1
    return counts


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Import legacy note exports into the encrypted note store")
    parser.add_argument("source", type=Path, help="JSON array or JSONL file of notes")
    parser.add_argument("--dry-run", action="store_true", help="Preview changes without committing")
    parser.add_argument("--keys", type=Path, default=None, help="Wallet key backup (default: $DATA_DIR/wallet_keys.json)")
    parser.add_argument("--db-url", default=None, help="SQLAlchemy URL of the note store (default: $NOTES_DB_URL)")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    keys_path = args.keys or Path(settings.keys_path)

    print("=" * 60)
    print("📦 Shieldpool: legacy notes → encrypted note store")
    print("=" * 60)
    if args.dry_run:
        print("\n⚠️  DRY RUN MODE: No changes will be committed\n")

    if not keys_path.exists():
        print(f"❌ Wallet keys not found: {keys_path}", file=sys.stderr)
        return 2
    wallet = WalletKeyMaterial.import_json(keys_path.read_text(encoding="utf-8"))
    store = NoteStore(args.db_url or settings.resolved_notes_db_url(), wallet.storage_key)

    records, errors = load_records(args.source)
    for err in errors:
        print(f"❌ Error parsing {args.source} {err}")
    print(f"\n📝 Migrating {len(records)} notes...")
    counts = migrate_notes(records, store, args.dry_run)

    print("\n" + "=" * 60)
    print(f"✅ Migrated: {counts['migrated']}   ⏭️  Skipped: {counts['skipped']}   ❌ Failed: {counts['failed'] + len(errors)}")
    print("=" * 60)
    return 1 if counts["failed"] or errors else 0


if __name__ == "__main__":
    sys.exit(main())
