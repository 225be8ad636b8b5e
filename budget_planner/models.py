from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class BudgetPlan:
    id: int
    user_id: str
    name: str
    base_currency: str
    initial_balance: Decimal
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Category:
    id: int
    plan_id: int
    name: str
    color: str
    sort_order: int = 0
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Transaction:
    id: int
    plan_id: int
    amount: Decimal
    name: str
    category_id: Optional[int] = None
    is_spent: bool = False
    spent_at: Optional[datetime] = None
    rank: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class PlannerSnapshot:
    plan: BudgetPlan
    categories: list[Category] = field(default_factory=list)
    transactions: list[Transaction] = field(default_factory=list)


def _coerce_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def plan_from_row(row: Mapping[str, Any]) -> BudgetPlan:
    return BudgetPlan(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        base_currency=row["base_currency"],
        initial_balance=_coerce_decimal(row["initial_balance"]),
        created_at=row["created_at"],
    )


def category_from_row(row: Mapping[str, Any]) -> Category:
    return Category(
        id=row["id"],
        plan_id=row["plan_id"],
        name=row["name"],
        color=row["color"],
        sort_order=row["sort_order"] or 0,
        created_at=row["created_at"],
    )


def transaction_from_row(row: Mapping[str, Any]) -> Transaction:
    return Transaction(
        id=row["id"],
        plan_id=row["plan_id"],
        amount=_coerce_decimal(row["amount"]),
        name=row["title"] or "",
        category_id=row["category_id"],
        is_spent=bool(row["is_spent"]),
        spent_at=row["spent_at"],
        rank=row["sort_rank"],
        created_at=row["created_at"],
    )
