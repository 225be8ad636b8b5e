from __future__ import annotations

import re
import time
from datetime import datetime
from typing import Optional

RANK_STEP = 1024
RANK_PAD = 18
MAX_RANK = 10**RANK_PAD - 1

_RANK_PATTERN = re.compile(r"[0-9]{%d}" % RANK_PAD)


class RebalanceRequired(RuntimeError):
    """Raised when no rank fits between the requested neighbors."""


def encode_rank(value: int) -> str:
    if value < 0:
        raise ValueError("Rank must be non-negative.")
    if value > MAX_RANK:
        raise ValueError(f"Rank does not fit in {RANK_PAD} digits.")
    return str(value).zfill(RANK_PAD)


def decode_rank(value: Optional[str]) -> Optional[int]:
    if not value or not isinstance(value, str):
        return None
    if not _RANK_PATTERN.fullmatch(value):
        return None
    return int(value)


def rank_between(previous: Optional[int], next_: Optional[int]) -> int:
    if previous is not None and next_ is not None:
        if next_ - previous > 1:
            return previous + (next_ - previous) // 2
        raise RebalanceRequired(f"No rank fits between {previous} and {next_}.")

    if previous is not None:
        candidate = previous + RANK_STEP
        if candidate > MAX_RANK:
            raise RebalanceRequired(f"No rank fits after {previous}.")
        return candidate

    if next_ is not None:
        # Halving 1 would return 1 again, so the head is exhausted.
        if next_ > 1:
            return next_ // 2
        raise RebalanceRequired(f"No rank fits before {next_}.")

    return time.time_ns() // 1000


def rank_between_keys(previous: Optional[str], next_: Optional[str]) -> str:
    return encode_rank(rank_between(decode_rank(previous), decode_rank(next_)))


def column_sort_key(
    rank: Optional[str],
    created_at: Optional[datetime],
    transaction_id: int = 0,
) -> tuple:
    decoded = decode_rank(rank)
    return (
        decoded is None,
        decoded if decoded is not None else 0,
        created_at is None,
        created_at if created_at is not None else datetime.min,
        transaction_id,
    )
