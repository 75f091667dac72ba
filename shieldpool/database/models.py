"""
SQLAlchemy models for the local note store.

Public, non-identifying columns are stored in clear so the wallet can list
and filter notes; the full canonical record (secrets included) lives in
`record_ct`, encrypted with the wallet's storage key.
"""
from datetime import datetime, timezone

from sqlalchemy import BigInteger, DateTime, Integer, LargeBinary, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class EncryptedNote(Base):
    __tablename__ = "notes"

    commitment: Mapped[str] = mapped_column(String(64), primary_key=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    leaf_index: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    deposit_reference: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    format_version: Mapped[int] = mapped_column(Integer, nullable=False)
    key_id: Mapped[str] = mapped_column(String(16), nullable=False)
    record_ct: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<EncryptedNote {self.commitment[:12]}… state={self.state} leaf={self.leaf_index}>"
