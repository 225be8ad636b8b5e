from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional

from budget_planner.models import Transaction

ZERO = Decimal("0")


@dataclass(frozen=True)
class ColumnTotals:
    category_id: Optional[int]
    allocated: Decimal = ZERO
    spent: Decimal = ZERO
    count: int = 0


@dataclass(frozen=True)
class PlanSummary:
    initial_balance: Decimal
    total_allocated: Decimal
    total_spent: Decimal
    remaining_balance: Decimal
    columns: list[ColumnTotals] = field(default_factory=list)


def summarize_plan(
    initial_balance: Decimal,
    transactions: Iterable[Transaction],
    category_ids: Iterable[int] = (),
) -> PlanSummary:
    """Totals for a plan; every known category gets a column even when empty.

    The unallocated pool is always the first column.
    """
    initial_balance = _coerce_amount(initial_balance)
    order: list[Optional[int]] = [None]
    for category_id in category_ids:
        if category_id not in order:
            order.append(category_id)

    allocated: dict[Optional[int], Decimal] = {key: ZERO for key in order}
    spent: dict[Optional[int], Decimal] = {key: ZERO for key in order}
    counts: dict[Optional[int], int] = {key: 0 for key in order}

    for txn in transactions:
        key = txn.category_id
        if key not in allocated:
            order.append(key)
            allocated[key] = ZERO
            spent[key] = ZERO
            counts[key] = 0
        amount = _coerce_amount(txn.amount)
        allocated[key] += amount
        counts[key] += 1
        if txn.is_spent:
            spent[key] += amount

    total_allocated = sum(allocated.values(), ZERO)
    total_spent = sum(spent.values(), ZERO)
    return PlanSummary(
        initial_balance=initial_balance,
        total_allocated=total_allocated,
        total_spent=total_spent,
        remaining_balance=initial_balance - total_allocated,
        columns=[
            ColumnTotals(
                category_id=key,
                allocated=allocated[key],
                spent=spent[key],
                count=counts[key],
            )
            for key in order
        ],
    )


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
