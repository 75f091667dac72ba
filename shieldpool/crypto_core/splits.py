# crypto_core/splits.py
from __future__ import annotations

from typing import List, Sequence, Tuple, TypeVar, Union

from shieldpool.crypto_core.codec import BytesLike, require_u64
from shieldpool.crypto_core.commitments import Output
from shieldpool.errors import MalformedInput

# Must match the circuit's fee rule
FIXED_FEE = 2_500_000
VARIABLE_FEE_PER_MILLE = 5

T = TypeVar("T")


def calculate_fee(amount: int) -> int:
    require_u64(amount, "amount")
    return FIXED_FEE + (amount * VARIABLE_FEE_PER_MILLE) // 1_000


def distributable_amount(amount: int) -> int:
    """What a spend of `amount` can send to outputs once the fee is taken."""
    fee = calculate_fee(amount)
    if fee >= amount:
        raise MalformedInput(f"amount {amount} does not cover the fee {fee}")
    return amount - fee


def plan_outputs(amount: int, recipients: Sequence[Tuple[Union[BytesLike, str], int]]) -> List[Output]:
    """
    Split the distributable part of `amount` across recipients by integer weight.

    Every unit is assigned: the rounding remainder goes to the last output, so
    sum(outputs) + fee == amount exactly.
    """
    if not recipients:
        raise MalformedInput("at least one recipient is required")
    total = distributable_amount(amount)
    weights = [int(w) for _, w in recipients]
    if any(w <= 0 for w in weights):
        raise MalformedInput("recipient weights must be positive")
    wsum = sum(weights)
    parts = [total * w // wsum for w in weights]
    parts[-1] += total - sum(parts)
    return [Output(address=addr, amount=p) for (addr, _), p in zip(recipients, parts)]


def select_notes(notes: Sequence[T], target: int) -> Tuple[List[T], int]:
    """
    Greedy smallest-first selection over objects with an integer `.amount`.
    Returns ([], 0) if the notes cannot cover `target`.
    """
    cand = sorted(notes, key=lambda n: n.amount)
    total = 0
    chosen: List[T] = []
    for n in cand:
        chosen.append(n)
        total += n.amount
        if total >= target:
            return chosen, total
    return [], 0
