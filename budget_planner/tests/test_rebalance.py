import unittest
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from budget_planner.ranking import RebalanceRequired, encode_rank, rank_between
from budget_planner.rebalance import rebalance_column
from budget_planner.store import PlannerStore


def make_store() -> PlannerStore:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    store = PlannerStore(engine)
    store.create_schema()
    return store


class RebalanceColumnTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = make_store()
        self.plan = self.store.get_or_create_default_plan("user-1")
        self.food = self.store.create_category(self.plan.id, "Food", "bg-red-500")

    def add(self, name: str, rank: str | None, category_id: int | None = None) -> int:
        txn = self.store.create_transaction(
            self.plan.id,
            Decimal("10"),
            name=name,
            category_id=category_id,
            rank=rank,
        )
        return txn.id

    def column_ranks(self, category_id: int | None) -> list[tuple[int, str | None]]:
        return [
            (row.id, row.rank)
            for row in self.store.fetch_column_ordered(self.plan.id, category_id)
        ]

    def test_collision_is_resolved_by_rebalancing(self) -> None:
        first = self.add("first", "000000000000001024", self.food.id)
        second = self.add("second", "000000000000001025", self.food.id)
        with self.assertRaises(RebalanceRequired):
            rank_between(1024, 1025)

        written = rebalance_column(self.store, self.plan.id, self.food.id)

        self.assertEqual(written, 2)
        self.assertEqual(
            self.column_ranks(self.food.id),
            [(first, "000000000000001024"), (second, "000000000000002048")],
        )
        self.assertEqual(rank_between(1024, 2048), 1536)

    def test_spacing_preserves_order_and_places_missing_ranks_last(self) -> None:
        unranked = self.add("unranked", None)
        a = self.add("a", encode_rank(5))
        b = self.add("b", encode_rank(6))
        c = self.add("c", encode_rank(7))
        d = self.add("d", encode_rank(100))

        rebalance_column(self.store, self.plan.id, None)

        self.assertEqual(
            self.column_ranks(None),
            [
                (a, encode_rank(1024)),
                (b, encode_rank(2048)),
                (c, encode_rank(3072)),
                (d, encode_rank(4096)),
                (unranked, encode_rank(5120)),
            ],
        )

    def test_rebalance_is_idempotent(self) -> None:
        self.add("a", encode_rank(3))
        self.add("b", encode_rank(4))
        self.add("c", encode_rank(900))

        rebalance_column(self.store, self.plan.id, None)
        first_pass = self.column_ranks(None)
        rebalance_column(self.store, self.plan.id, None)

        self.assertEqual(self.column_ranks(None), first_pass)

    def test_equal_ranks_keep_creation_order(self) -> None:
        older = self.add("older", encode_rank(50), self.food.id)
        newer = self.add("newer", encode_rank(50), self.food.id)

        rebalance_column(self.store, self.plan.id, self.food.id)

        self.assertEqual(
            self.column_ranks(self.food.id),
            [(older, encode_rank(1024)), (newer, encode_rank(2048))],
        )

    def test_single_member_column_is_left_alone(self) -> None:
        only = self.add("only", encode_rank(77), self.food.id)

        written = rebalance_column(self.store, self.plan.id, self.food.id)

        self.assertEqual(written, 0)
        self.assertEqual(self.column_ranks(self.food.id), [(only, encode_rank(77))])

    def test_single_member_column_is_respaced_when_asked(self) -> None:
        only = self.add("only", encode_rank(1), self.food.id)

        written = rebalance_column(self.store, self.plan.id, self.food.id, min_members=1)

        self.assertEqual(written, 1)
        self.assertEqual(self.column_ranks(self.food.id), [(only, encode_rank(1024))])
        self.assertEqual(rank_between(None, 1024), 512)

    def test_other_columns_are_untouched(self) -> None:
        pooled = self.add("pooled", encode_rank(1))
        self.add("x", encode_rank(1), self.food.id)
        self.add("y", encode_rank(2), self.food.id)

        rebalance_column(self.store, self.plan.id, self.food.id)

        self.assertEqual(self.column_ranks(None), [(pooled, encode_rank(1))])


if __name__ == "__main__":
    unittest.main()
