import unittest
from datetime import datetime

from budget_planner.ranking import (
    MAX_RANK,
    RANK_PAD,
    RANK_STEP,
    RebalanceRequired,
    column_sort_key,
    decode_rank,
    encode_rank,
    rank_between,
    rank_between_keys,
)


class RankEncodingTests(unittest.TestCase):
    def test_encode_pads_to_fixed_width(self) -> None:
        self.assertEqual(encode_rank(1024), "000000000000001024")
        self.assertEqual(len(encode_rank(0)), RANK_PAD)

    def test_encode_rejects_values_outside_width(self) -> None:
        with self.assertRaises(ValueError):
            encode_rank(-1)
        with self.assertRaises(ValueError):
            encode_rank(MAX_RANK + 1)

    def test_decode_reverses_encode(self) -> None:
        for value in (0, 1, 1024, 1536, 10**12 + 7, MAX_RANK):
            self.assertEqual(decode_rank(encode_rank(value)), value)

    def test_decode_treats_malformed_values_as_absent(self) -> None:
        for value in (
            None,
            "",
            "1024",
            "00000000000000102a",
            "-00000000000001024",
            "0000000000000001024",
            " 00000000000001024",
            "000000000000001024\n",
        ):
            self.assertIsNone(decode_rank(value), value)

    def test_lexicographic_order_matches_numeric_order(self) -> None:
        values = [5, 1024, 999, 10**15, 3]
        encoded = sorted(encode_rank(value) for value in values)
        self.assertEqual([decode_rank(value) for value in encoded], sorted(values))


class RankBetweenTests(unittest.TestCase):
    def test_midpoint_between_spaced_neighbors(self) -> None:
        self.assertEqual(
            rank_between_keys("000000000000001024", "000000000000002048"),
            "000000000000001536",
        )

    def test_result_is_strictly_between(self) -> None:
        for previous, next_ in ((0, 2), (10, 13), (1024, 2048), (7, 10**17)):
            result = rank_between(previous, next_)
            self.assertLess(previous, result)
            self.assertLess(result, next_)

    def test_adjacent_or_equal_neighbors_require_rebalance(self) -> None:
        for previous, next_ in ((1024, 1025), (1024, 1024), (0, 1), (2048, 1024)):
            with self.assertRaises(RebalanceRequired):
                rank_between(previous, next_)

    def test_tail_insert_adds_step(self) -> None:
        self.assertEqual(rank_between(5000, None), 5000 + RANK_STEP)
        self.assertEqual(
            rank_between_keys("000000000000005000", None),
            "000000000000006024",
        )

    def test_tail_insert_past_width_requires_rebalance(self) -> None:
        with self.assertRaises(RebalanceRequired):
            rank_between(MAX_RANK - 10, None)

    def test_head_insert_halves_next(self) -> None:
        self.assertEqual(rank_between(None, 2048), 1024)
        self.assertEqual(rank_between(None, 3), 1)

    def test_head_insert_at_one_requires_rebalance(self) -> None:
        for next_ in (0, 1):
            with self.assertRaises(RebalanceRequired):
                rank_between(None, next_)

    def test_empty_column_uses_current_time(self) -> None:
        key = rank_between_keys(None, None)

        self.assertEqual(len(key), RANK_PAD)
        self.assertGreater(decode_rank(key), 0)

    def test_malformed_keys_are_ignored(self) -> None:
        self.assertEqual(
            rank_between_keys("000000000000005000", "not-a-rank"),
            "000000000000006024",
        )


class ColumnSortKeyTests(unittest.TestCase):
    def test_orders_by_rank_then_created_at(self) -> None:
        early = datetime(2024, 5, 1, 9, 0)
        late = datetime(2024, 5, 1, 10, 0)
        rows = [
            ("c", None, early),
            ("b", encode_rank(2048), early),
            ("a2", encode_rank(1024), late),
            ("a1", encode_rank(1024), early),
            ("d", "garbage", early),
        ]

        ordered = sorted(rows, key=lambda row: column_sort_key(row[1], row[2]))

        self.assertEqual([row[0] for row in ordered], ["a1", "a2", "b", "c", "d"])


if __name__ == "__main__":
    unittest.main()
