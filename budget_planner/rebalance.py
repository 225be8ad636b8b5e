from __future__ import annotations

from typing import Optional

from budget_planner.logging_setup import get_logger
from budget_planner.ranking import RANK_STEP, encode_rank
from budget_planner.store import PlannerStore

_logger = get_logger("budget_planner.rebalance")


def rebalance_column(
    store: PlannerStore,
    plan_id: int,
    category_id: Optional[int],
    *,
    min_members: int = 2,
) -> int:
    """Respace every rank in one column to multiples of ``RANK_STEP``.

    The order is re-read from storage on every call, so concurrent or repeated
    rebalances converge on the same ranks. Columns with fewer than
    ``min_members`` rows are left alone. Returns the number of rows written.
    """
    members = store.fetch_column_ordered(plan_id, category_id)
    if not members or len(members) < min_members:
        return 0

    ranks = [
        (member.id, encode_rank(position * RANK_STEP))
        for position, member in enumerate(members, start=1)
    ]
    written = store.update_ranks(ranks)
    _logger.info(
        "Rebalanced %d transactions in plan %s column %s",
        written,
        plan_id,
        "pool" if category_id is None else category_id,
    )
    return written
