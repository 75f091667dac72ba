# shieldpool/errors.py
from __future__ import annotations

from typing import Optional


class ShieldPoolError(Exception):
    """Root of every error raised by this package."""


# ===== Local validation =====
class MalformedInput(ShieldPoolError, ValueError):
    """Wrong byte length, bad encoding or out-of-range integer."""


class InvalidAmount(MalformedInput):
    """Note amount is zero (or otherwise unusable)."""


# ===== Lifecycle contract =====
class InvalidState(ShieldPoolError):
    """Operation needs data the note does not have yet (e.g. no leaf index)."""


class IllegalTransition(ShieldPoolError):
    """Lifecycle transition not allowed from the note's current state."""


class ConflictingFinalization(ShieldPoolError):
    """A finalized note was offered a different tree position or proof."""


class NotSpendable(ShieldPoolError):
    """Note is already spent locally."""


class CorruptPayload(ShieldPoolError):
    """Decrypted note payload does not reproduce its commitment."""


# ===== Network facing =====
class TransientServiceError(ShieldPoolError):
    """Timeout, transport failure or 5xx/429 from a collaborator. Worth retrying."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ServiceRejected(ShieldPoolError):
    """Collaborator answered but refused the request. Retrying will not help."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProverUnavailable(ShieldPoolError):
    """Proving service could not be reached after bounded retries."""


# ===== Deposit finalization =====
class FinalizationError(ShieldPoolError):
    """Deposit finalization stopped. `retriable` tells the caller whether to re-invoke."""

    retriable: bool = False

    def __init__(self, message: str, deposit_reference: Optional[str] = None):
        super().__init__(message)
        self.deposit_reference = deposit_reference


class Unconfirmed(FinalizationError):
    """Ledger did not report success within the poll budget; it may still land."""

    retriable = True


class IndexUnavailable(FinalizationError):
    """Index registration or proof retrieval exhausted its retries."""

    retriable = True


class ChainRejected(FinalizationError):
    """The ledger reports the deposit transaction failed. Create a new deposit."""

    def __init__(self, message: str, deposit_reference: Optional[str] = None, reason: str = ""):
        super().__init__(message, deposit_reference)
        self.reason = reason


class IndexRejected(FinalizationError):
    """Index service refused the deposit or returned an unusable answer."""


__all__ = [
    "ShieldPoolError",
    "MalformedInput",
    "InvalidAmount",
    "InvalidState",
    "IllegalTransition",
    "ConflictingFinalization",
    "NotSpendable",
    "CorruptPayload",
    "TransientServiceError",
    "ServiceRejected",
    "ProverUnavailable",
    "FinalizationError",
    "Unconfirmed",
    "IndexUnavailable",
    "ChainRejected",
    "IndexRejected",
]
