from __future__ import annotations

from typing import Optional

from budget_planner.logging_setup import get_logger
from budget_planner.models import Transaction
from budget_planner.ranking import RebalanceRequired, encode_rank, rank_between
from budget_planner.rebalance import rebalance_column
from budget_planner.store import PlannerStore

_logger = get_logger("budget_planner.moves")


def _resolve_neighbor_ranks(
    store: PlannerStore,
    plan_id: int,
    category_id: Optional[int],
    before_transaction_id: Optional[int],
    after_transaction_id: Optional[int],
) -> tuple[Optional[int], Optional[int]]:
    previous_rank = None
    next_rank = None

    if after_transaction_id is not None:
        previous_rank = store.fetch_rank(after_transaction_id).rank
    if before_transaction_id is not None:
        next_rank = store.fetch_rank(before_transaction_id).rank

    # Unreadable or absent neighbors both mean "append to the column".
    if previous_rank is None and next_rank is None:
        previous_rank = store.fetch_column_tail(plan_id, category_id)

    return previous_rank, next_rank


def place_new_transaction_rank(
    store: PlannerStore, plan_id: int, category_id: Optional[int]
) -> str:
    previous_rank = store.fetch_column_tail(plan_id, category_id)
    try:
        return encode_rank(rank_between(previous_rank, None))
    except RebalanceRequired:
        rebalance_column(store, plan_id, category_id, min_members=1)
        return encode_rank(rank_between(store.fetch_column_tail(plan_id, category_id), None))


def move_transaction(
    store: PlannerStore,
    transaction_id: int,
    to_category_id: Optional[int],
    before_transaction_id: Optional[int] = None,
    after_transaction_id: Optional[int] = None,
) -> Transaction:
    """Move a transaction into ``to_category_id`` between two neighbors.

    ``after_transaction_id`` is the row that should end up directly above the
    moved transaction and ``before_transaction_id`` the row directly below.
    With neither given the transaction is appended to the column. Missing
    neighbors raise ``TransactionNotFound`` before anything is written.
    """
    target = store.fetch_rank(transaction_id)
    plan_id = target.plan_id

    previous_rank, next_rank = _resolve_neighbor_ranks(
        store, plan_id, to_category_id, before_transaction_id, after_transaction_id
    )
    try:
        new_rank = rank_between(previous_rank, next_rank)
    except RebalanceRequired:
        _logger.info(
            "No room between %s and %s in plan %s column %s, rebalancing",
            previous_rank,
            next_rank,
            plan_id,
            to_category_id,
        )
        # A lone neighbor at rank 1 or near the width limit still needs room.
        rebalance_column(store, plan_id, to_category_id, min_members=1)
        previous_rank, next_rank = _resolve_neighbor_ranks(
            store, plan_id, to_category_id, before_transaction_id, after_transaction_id
        )
        new_rank = rank_between(previous_rank, next_rank)

    moved = store.update_rank_and_column(transaction_id, encode_rank(new_rank), to_category_id)
    _logger.info(
        "Moved transaction %s from column %s to column %s",
        transaction_id,
        target.category_id,
        to_category_id,
    )
    return moved


def reorder_transaction(
    store: PlannerStore,
    transaction_id: int,
    before_transaction_id: Optional[int] = None,
    after_transaction_id: Optional[int] = None,
) -> Transaction:
    current = store.fetch_rank(transaction_id)
    return move_transaction(
        store,
        transaction_id,
        current.category_id,
        before_transaction_id=before_transaction_id,
        after_transaction_id=after_transaction_id,
    )
