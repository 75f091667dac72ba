# notes/store.py
from __future__ import annotations

import json
import threading
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from shieldpool.api.logging_config import get_logger, short
from shieldpool.crypto_core.codec import bytes32, to_hex
from shieldpool.crypto_core.field_encryption import FieldEncryption
from shieldpool.database.config import init_database, make_engine, session_factory
from shieldpool.database.models import EncryptedNote
from shieldpool.errors import MalformedInput, ShieldPoolError
from shieldpool.notes.models import LifecycleState, Note
from shieldpool.notes.serialization import NOTE_FORMAT_VERSION, dump_note, load_note, note_to_bytes, note_from_bytes

logger = get_logger("notes.store")

CommitmentLike = Union[bytes, str]


def _key(commitment: CommitmentLike) -> str:
    return to_hex(bytes32(commitment, "commitment"))


class NoteStore:
    """
    Durable note records keyed by commitment.

    Writes are serialized by one lock so insert-if-absent is atomic within
    the process; the primary key on `commitment` backs it in the database.
    """

    def __init__(self, engine: Union[Engine, str], storage_key: bytes):
        self.engine = make_engine(engine) if isinstance(engine, str) else engine
        init_database(self.engine)
        self._Session = session_factory(self.engine)
        self._enc = FieldEncryption(storage_key)
        self._lock = threading.RLock()

    # ---------- row <-> note ----------
    def _to_row(self, note: Note, row: Optional[EncryptedNote] = None) -> EncryptedNote:
        row = row or EncryptedNote(commitment=note.commitment_hex)
        row.amount = note.amount
        row.state = note.state.value
        row.leaf_index = note.leaf_index
        row.deposit_reference = note.deposit_reference
        row.format_version = NOTE_FORMAT_VERSION
        row.key_id = self._enc.key_id
        row.record_ct = self._enc.encrypt(note_to_bytes(note))
        return row

    def _from_row(self, row: EncryptedNote) -> Note:
        note = note_from_bytes(self._enc.decrypt(row.record_ct))
        if note.commitment_hex != row.commitment:
            raise ShieldPoolError(f"row {short(row.commitment)} holds a record for {short(note.commitment_hex)}")
        return note

    # ---------- writes ----------
    def add(self, note: Note) -> bool:
        """Insert if no record has this commitment. Returns False for a duplicate."""
        with self._lock, self._Session() as s:
            if s.get(EncryptedNote, note.commitment_hex) is not None:
                return False
            s.add(self._to_row(note))
            s.commit()
        logger.info("stored note %s (%s)", short(note.commitment_hex), note.state.value)
        return True

    def put(self, note: Note) -> None:
        """Insert or replace the record for this commitment."""
        with self._lock, self._Session() as s:
            row = s.get(EncryptedNote, note.commitment_hex)
            if row is None:
                s.add(self._to_row(note))
            else:
                self._to_row(note, row)
            s.commit()
        logger.debug("saved note %s (%s)", short(note.commitment_hex), note.state.value)

    def add_many(self, notes: Iterable[Note]) -> int:
        with self._lock:
            return sum(1 for n in notes if self.add(n))

    # ---------- reads ----------
    def get(self, commitment: CommitmentLike) -> Optional[Note]:
        with self._Session() as s:
            row = s.get(EncryptedNote, _key(commitment))
            return self._from_row(row) if row is not None else None

    def contains(self, commitment: CommitmentLike) -> bool:
        with self._Session() as s:
            return s.get(EncryptedNote, _key(commitment)) is not None

    def commitments(self) -> Set[str]:
        with self._Session() as s:
            return set(s.scalars(select(EncryptedNote.commitment)).all())

    def find_by_reference(self, deposit_reference: str) -> List[Note]:
        with self._Session() as s:
            rows = s.scalars(
                select(EncryptedNote).where(EncryptedNote.deposit_reference == deposit_reference)
            ).all()
            return [self._from_row(r) for r in rows]

    def list(self, states: Optional[Iterable[LifecycleState]] = None) -> List[Note]:
        q = select(EncryptedNote).order_by(EncryptedNote.created_at, EncryptedNote.commitment)
        if states is not None:
            q = q.where(EncryptedNote.state.in_([LifecycleState(st).value for st in states]))
        with self._Session() as s:
            return [self._from_row(r) for r in s.scalars(q).all()]

    def balance(self) -> int:
        """Sum of finalized (spendable) note amounts."""
        with self._Session() as s:
            total = s.scalar(
                select(func.coalesce(func.sum(EncryptedNote.amount), 0)).where(
                    EncryptedNote.state == LifecycleState.FINALIZED.value
                )
            )
            return int(total or 0)

    def __len__(self) -> int:
        with self._Session() as s:
            return int(s.scalar(select(func.count()).select_from(EncryptedNote)) or 0)

    # ---------- backup ----------
    def export_records(self) -> List[Dict[str, Any]]:
        return [dump_note(n) for n in self.list()]

    def export_json(self) -> str:
        return json.dumps(self.export_records(), indent=2)

    def import_records(self, records: Iterable[Dict[str, Any]]) -> int:
        """Load (upgrading legacy formats) and insert; existing commitments are skipped."""
        imported = 0
        for rec in records:
            note = load_note(rec)
            if self.add(note):
                imported += 1
            else:
                logger.info("skipping existing note %s", short(note.commitment_hex))
        return imported

    def import_json(self, raw: str) -> int:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedInput(f"note export is not JSON: {e}") from None
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            raise MalformedInput("note export must be a list of records")
        return self.import_records(data)
