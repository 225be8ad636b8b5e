from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    and_,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine

from budget_planner.logging_setup import get_logger
from budget_planner.models import (
    BudgetPlan,
    Category,
    PlannerSnapshot,
    Transaction,
    category_from_row,
    plan_from_row,
    transaction_from_row,
)
from budget_planner.ranking import (
    MAX_RANK,
    RANK_STEP,
    column_sort_key,
    decode_rank,
    encode_rank,
    rank_between,
)
from budget_planner.settings import DEFAULT_BASE_CURRENCY

_logger = get_logger("budget_planner.store")

DEFAULT_PLAN_NAME = "Main plan"

CATEGORY_COLORS = [
    "bg-red-500",
    "bg-orange-500",
    "bg-amber-500",
    "bg-yellow-500",
    "bg-lime-500",
    "bg-green-500",
    "bg-teal-500",
    "bg-cyan-500",
    "bg-sky-500",
    "bg-indigo-500",
    "bg-violet-500",
    "bg-fuchsia-500",
    "bg-pink-500",
]

metadata = MetaData()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


budget_plans = Table(
    "budget_plans",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("base_currency", String(3), nullable=False),
    Column("initial_balance", Numeric(12, 2), nullable=False, default=Decimal("0")),
    Column("created_at", DateTime, nullable=False, default=_utcnow),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("plan_id", Integer, ForeignKey("budget_plans.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("color", String(50), nullable=False),
    Column("sort_order", Integer, nullable=False, default=0),
    Column("created_at", DateTime, nullable=False, default=_utcnow),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("plan_id", Integer, ForeignKey("budget_plans.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("title", String(255), nullable=False, default=""),
    Column("is_spent", Boolean, nullable=False, default=False),
    Column("spent_at", DateTime),
    Column("sort_rank", String(32)),
    Column("created_at", DateTime, nullable=False, default=_utcnow),
    Index("ix_transactions_column_rank", "plan_id", "category_id", "sort_rank"),
)


class PlannerNotFound(LookupError):
    """Base class for records missing at read or write time."""


class PlanNotFound(PlannerNotFound):
    pass


class CategoryNotFound(PlannerNotFound):
    pass


class TransactionNotFound(PlannerNotFound):
    pass


@dataclass(frozen=True)
class RankLookup:
    transaction_id: int
    plan_id: int
    category_id: Optional[int]
    rank: Optional[int]


@dataclass(frozen=True)
class RankedRow:
    id: int
    rank: Optional[str]
    created_at: Optional[datetime]


def _column_condition(plan_id: int, category_id: Optional[int]):
    if category_id is None:
        return and_(transactions.c.plan_id == plan_id, transactions.c.category_id.is_(None))
    return and_(transactions.c.plan_id == plan_id, transactions.c.category_id == category_id)


def pick_best_plan(
    plans: Sequence[BudgetPlan],
    category_counts: dict[int, int],
    transaction_counts: dict[int, int],
) -> BudgetPlan:
    """Prefer the plan holding the most data, newest first on ties."""
    if not plans:
        raise ValueError("At least one plan is required.")

    def score(plan: BudgetPlan) -> tuple:
        content = category_counts.get(plan.id, 0) + transaction_counts.get(plan.id, 0) * 1000
        return (content, plan.created_at or datetime.min, plan.id)

    return max(plans, key=score)


class PlannerStore:
    """Persistence for plans, categories and ranked transactions."""

    def __init__(self, engine: Engine, *, base_currency: str = DEFAULT_BASE_CURRENCY) -> None:
        self.engine = engine
        self.base_currency = base_currency

    def create_schema(self) -> None:
        metadata.create_all(self.engine)

    # Ranking contract

    def fetch_rank(self, transaction_id: int) -> RankLookup:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(
                    transactions.c.id,
                    transactions.c.plan_id,
                    transactions.c.category_id,
                    transactions.c.sort_rank,
                ).where(transactions.c.id == transaction_id)
            ).mappings().first()
        if not row:
            raise TransactionNotFound(f"Transaction {transaction_id} not found.")
        rank = decode_rank(row["sort_rank"])
        if rank is None and row["sort_rank"] is not None:
            _logger.warning(
                "Ignoring malformed rank %r on transaction %s", row["sort_rank"], transaction_id
            )
        return RankLookup(
            transaction_id=row["id"],
            plan_id=row["plan_id"],
            category_id=row["category_id"],
            rank=rank,
        )

    def fetch_column_tail(self, plan_id: int, category_id: Optional[int]) -> Optional[int]:
        with self.engine.begin() as conn:
            return self._column_tail(conn, plan_id, category_id)

    def _column_tail(
        self, conn: Connection, plan_id: int, category_id: Optional[int]
    ) -> Optional[int]:
        # Fixed-width keys sort the same as strings and as integers.
        result = conn.execute(
            select(transactions.c.sort_rank)
            .where(
                _column_condition(plan_id, category_id),
                transactions.c.sort_rank.is_not(None),
            )
            .order_by(transactions.c.sort_rank.desc())
        )
        for value in result.scalars():
            decoded = decode_rank(value)
            if decoded is not None:
                return decoded
        return None

    def fetch_column_ordered(self, plan_id: int, category_id: Optional[int]) -> list[RankedRow]:
        with self.engine.begin() as conn:
            return self._column_ordered(conn, plan_id, category_id)

    def _column_ordered(
        self, conn: Connection, plan_id: int, category_id: Optional[int]
    ) -> list[RankedRow]:
        rows = conn.execute(
            select(
                transactions.c.id,
                transactions.c.sort_rank,
                transactions.c.created_at,
            ).where(_column_condition(plan_id, category_id))
        ).mappings().all()
        ranked = [
            RankedRow(id=row["id"], rank=row["sort_rank"], created_at=row["created_at"])
            for row in rows
        ]
        ranked.sort(key=lambda item: column_sort_key(item.rank, item.created_at, item.id))
        return ranked

    def _respace_column(
        self, conn: Connection, plan_id: int, category_id: Optional[int]
    ) -> Optional[int]:
        """Rewrite a column to multiples of ``RANK_STEP`` and return its new tail."""
        tail = None
        for position, member in enumerate(self._column_ordered(conn, plan_id, category_id), start=1):
            tail = position * RANK_STEP
            conn.execute(
                update(transactions)
                .where(transactions.c.id == member.id)
                .values(sort_rank=encode_rank(tail))
            )
        return tail

    def update_rank_and_column(
        self, transaction_id: int, rank: str, category_id: Optional[int]
    ) -> Transaction:
        with self.engine.begin() as conn:
            row = conn.execute(
                update(transactions)
                .where(transactions.c.id == transaction_id)
                .values(sort_rank=rank, category_id=category_id)
                .returning(*transactions.c)
            ).mappings().first()
        if not row:
            raise TransactionNotFound(f"Transaction {transaction_id} not found.")
        return transaction_from_row(row)

    def update_ranks(self, ranks: Iterable[tuple[int, str]]) -> int:
        written = 0
        with self.engine.begin() as conn:
            for transaction_id, rank in ranks:
                _logger.debug("Writing rank %s to transaction %s", rank, transaction_id)
                conn.execute(
                    update(transactions)
                    .where(transactions.c.id == transaction_id)
                    .values(sort_rank=rank)
                )
                written += 1
        return written

    # Plans

    def get_plan(self, plan_id: int) -> BudgetPlan:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(budget_plans).where(budget_plans.c.id == plan_id)
            ).mappings().first()
        if not row:
            raise PlanNotFound(f"Plan {plan_id} not found.")
        return plan_from_row(row)

    def get_or_create_default_plan(self, user_id: str) -> BudgetPlan:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(budget_plans)
                .where(budget_plans.c.user_id == user_id)
                .order_by(budget_plans.c.created_at.desc(), budget_plans.c.id.desc())
            ).mappings().all()
            plans = [plan_from_row(row) for row in rows]
            if len(plans) == 1:
                return plans[0]
            if plans:
                plan_ids = [plan.id for plan in plans]
                category_counts = dict(
                    conn.execute(
                        select(categories.c.plan_id, func.count())
                        .where(categories.c.plan_id.in_(plan_ids))
                        .group_by(categories.c.plan_id)
                    ).all()
                )
                transaction_counts = dict(
                    conn.execute(
                        select(transactions.c.plan_id, func.count())
                        .where(transactions.c.plan_id.in_(plan_ids))
                        .group_by(transactions.c.plan_id)
                    ).all()
                )
                return pick_best_plan(plans, category_counts, transaction_counts)

            row = conn.execute(
                insert(budget_plans)
                .values(
                    user_id=user_id,
                    name=DEFAULT_PLAN_NAME,
                    base_currency=self.base_currency,
                    initial_balance=Decimal("0"),
                )
                .returning(*budget_plans.c)
            ).mappings().first()
        _logger.info("Created default plan %s for user %s", row["id"], user_id)
        return plan_from_row(row)

    def update_initial_balance(self, plan_id: int, initial_balance: Decimal) -> BudgetPlan:
        with self.engine.begin() as conn:
            row = conn.execute(
                update(budget_plans)
                .where(budget_plans.c.id == plan_id)
                .values(initial_balance=initial_balance)
                .returning(*budget_plans.c)
            ).mappings().first()
        if not row:
            raise PlanNotFound(f"Plan {plan_id} not found.")
        return plan_from_row(row)

    def get_snapshot(self, plan_id: int) -> PlannerSnapshot:
        plan = self.get_plan(plan_id)
        with self.engine.begin() as conn:
            category_rows = conn.execute(
                select(categories)
                .where(categories.c.plan_id == plan_id)
                .order_by(categories.c.sort_order.asc(), categories.c.created_at.asc())
            ).mappings().all()
            transaction_rows = conn.execute(
                select(transactions).where(transactions.c.plan_id == plan_id)
            ).mappings().all()
        items = [transaction_from_row(row) for row in transaction_rows]
        items.sort(key=lambda txn: column_sort_key(txn.rank, txn.created_at, txn.id))
        return PlannerSnapshot(
            plan=plan,
            categories=[category_from_row(row) for row in category_rows],
            transactions=items,
        )

    # Categories

    def get_category(self, category_id: int) -> Category:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(categories).where(categories.c.id == category_id)
            ).mappings().first()
        if not row:
            raise CategoryNotFound(f"Category {category_id} not found.")
        return category_from_row(row)

    def list_categories(self, plan_id: int) -> list[Category]:
        with self.engine.begin() as conn:
            rows = conn.execute(
                select(categories)
                .where(categories.c.plan_id == plan_id)
                .order_by(categories.c.sort_order.asc(), categories.c.created_at.asc())
            ).mappings().all()
        return [category_from_row(row) for row in rows]

    def create_category(self, plan_id: int, name: str, color: str | None = None) -> Category:
        name = name.strip()
        if not name:
            raise ValueError("Category name required.")
        with self.engine.begin() as conn:
            plan_exists = conn.execute(
                select(budget_plans.c.id).where(budget_plans.c.id == plan_id)
            ).first()
            if not plan_exists:
                raise PlanNotFound(f"Plan {plan_id} not found.")
            existing = conn.execute(
                select(func.count()).select_from(categories).where(categories.c.plan_id == plan_id)
            ).scalar_one()
            row = conn.execute(
                insert(categories)
                .values(
                    plan_id=plan_id,
                    name=name,
                    color=color or random.choice(CATEGORY_COLORS),
                    sort_order=existing,
                )
                .returning(*categories.c)
            ).mappings().first()
        return category_from_row(row)

    def delete_category(self, category_id: int) -> int:
        """Delete a category, appending its transactions to the unallocated pool.

        Returns the number of transactions moved to the pool.
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                select(categories.c.id, categories.c.plan_id).where(categories.c.id == category_id)
            ).mappings().first()
            if not row:
                raise CategoryNotFound(f"Category {category_id} not found.")
            plan_id = row["plan_id"]
            ordered = self._column_ordered(conn, plan_id, category_id)
            previous = self._column_tail(conn, plan_id, None)
            if previous is not None and previous + len(ordered) * RANK_STEP > MAX_RANK:
                previous = self._respace_column(conn, plan_id, None)
            for member in ordered:
                previous = rank_between(previous, None)
                conn.execute(
                    update(transactions)
                    .where(transactions.c.id == member.id)
                    .values(category_id=None, sort_rank=encode_rank(previous))
                )
            conn.execute(categories.delete().where(categories.c.id == category_id))
        _logger.info(
            "Deleted category %s, moved %d transactions to the pool", category_id, len(ordered)
        )
        return len(ordered)

    def mark_category_spent(self, category_id: int) -> list[Transaction]:
        category = self.get_category(category_id)
        with self.engine.begin() as conn:
            rows = conn.execute(
                update(transactions)
                .where(
                    _column_condition(category.plan_id, category_id),
                    transactions.c.is_spent == False,  # noqa: E712
                )
                .values(is_spent=True, spent_at=_utcnow())
                .returning(*transactions.c)
            ).mappings().all()
        return [transaction_from_row(row) for row in rows]

    # Transactions

    def get_transaction(self, transaction_id: int) -> Transaction:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(transactions).where(transactions.c.id == transaction_id)
            ).mappings().first()
        if not row:
            raise TransactionNotFound(f"Transaction {transaction_id} not found.")
        return transaction_from_row(row)

    def create_transaction(
        self,
        plan_id: int,
        amount: Decimal,
        *,
        name: str = "",
        category_id: Optional[int] = None,
        is_spent: bool = False,
        rank: Optional[str] = None,
    ) -> Transaction:
        with self.engine.begin() as conn:
            plan_exists = conn.execute(
                select(budget_plans.c.id).where(budget_plans.c.id == plan_id)
            ).first()
            if not plan_exists:
                raise PlanNotFound(f"Plan {plan_id} not found.")
            row = conn.execute(
                insert(transactions)
                .values(
                    plan_id=plan_id,
                    category_id=category_id,
                    amount=amount,
                    title=name,
                    is_spent=is_spent,
                    spent_at=_utcnow() if is_spent else None,
                    sort_rank=rank,
                )
                .returning(*transactions.c)
            ).mappings().first()
        return transaction_from_row(row)

    def update_transaction(
        self,
        transaction_id: int,
        *,
        name: Optional[str] = None,
        amount: Optional[Decimal] = None,
        is_spent: Optional[bool] = None,
    ) -> Transaction:
        values: dict = {}
        if name is not None:
            values["title"] = name
        if amount is not None:
            values["amount"] = amount
        if is_spent is not None:
            values["is_spent"] = is_spent
            values["spent_at"] = _utcnow() if is_spent else None
        if not values:
            return self.get_transaction(transaction_id)
        with self.engine.begin() as conn:
            row = conn.execute(
                update(transactions)
                .where(transactions.c.id == transaction_id)
                .values(**values)
                .returning(*transactions.c)
            ).mappings().first()
        if not row:
            raise TransactionNotFound(f"Transaction {transaction_id} not found.")
        return transaction_from_row(row)

    def delete_transaction(self, transaction_id: int) -> None:
        with self.engine.begin() as conn:
            result = conn.execute(
                transactions.delete().where(transactions.c.id == transaction_id)
            )
        if result.rowcount == 0:
            raise TransactionNotFound(f"Transaction {transaction_id} not found.")
