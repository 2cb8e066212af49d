"""
Tests for hash-slot arithmetic.

These tests verify:
- Ranges collapse and expand without losing slots
- Reshard selection is contiguous-first and exact in count
- Rebalance targets preserve the total and differ by at most one
- Move plans reach the targets and schedules never reuse a master in a step
"""

import pytest

from operator_rediscluster.slots import (
    SlotMove,
    format_ranges,
    key_slot,
    parse_ranges,
    plan_moves,
    ranges_from_slots,
    rebalance_targets,
    schedule_moves,
    select_slots_for_move,
    slots_from_ranges,
)
from operator_rediscluster.types import TOTAL_SLOTS, SlotRange


class TestRanges:
    """Tests for range helpers."""

    def test_collapses_into_maximal_ranges(self):
        assert ranges_from_slots([5, 1, 2, 3, 7, 6, 10]) == (
            SlotRange(1, 3),
            SlotRange(5, 7),
            SlotRange(10, 10),
        )

    def test_empty(self):
        assert ranges_from_slots([]) == ()
        assert format_ranges(()) == "-"

    def test_parse_and_format(self):
        """Text form survives parsing, with overlaps merged."""
        ranges = parse_ranges("0-100, 50-150,200")
        assert format_ranges(ranges) == "0-150,200"

    def test_parse_rejects_out_of_range(self):
        with pytest.raises(ValueError):
            parse_ranges(f"0-{TOTAL_SLOTS}")

    def test_invalid_range_rejected(self):
        with pytest.raises(ValueError):
            SlotRange(10, 5)

    def test_expand_matches_length(self):
        ranges = (SlotRange(0, 9), SlotRange(100, 104))
        assert len(slots_from_ranges(ranges)) == sum(len(r) for r in ranges)

    def test_key_slot_honours_hash_tags(self):
        """Keys sharing a {tag} land in the same slot."""
        assert key_slot("{user1000}.following") == key_slot("{user1000}.followers")
        assert 0 <= key_slot("foo") < TOTAL_SLOTS
        assert key_slot("foo") == 12182


class TestSelectSlotsForMove:
    """Tests for reshard slot selection."""

    def test_takes_high_end_of_largest_range(self):
        """1000 slots off a 0-8191 owner come from the top of the range."""
        selected = select_slots_for_move((SlotRange(0, 8191),), 1000)
        assert selected == list(range(7192, 8192))

    def test_spills_into_next_largest_range(self):
        owned = (SlotRange(0, 9), SlotRange(100, 104))
        selected = select_slots_for_move(owned, 12)
        assert selected == [*range(0, 10), 103, 104]

    @pytest.mark.parametrize("count", [0, 1, 17, 500, 5461])
    def test_exact_count_and_subset(self, count):
        """Selection returns exactly `count` distinct owned slots."""
        owned = ranges_from_slots(list(range(0, 3000)) + list(range(5000, 7461)))
        selected = select_slots_for_move(owned, count)

        assert len(selected) == count
        assert len(set(selected)) == count
        assert set(selected) <= slots_from_ranges(owned)

    def test_count_above_owned_raises(self):
        with pytest.raises(ValueError):
            select_slots_for_move((SlotRange(0, 9),), 11)

    def test_negative_count_raises(self):
        with pytest.raises(ValueError):
            select_slots_for_move((SlotRange(0, 9),), -1)


class TestRebalanceTargets:
    """Tests for weighted target computation."""

    @pytest.mark.parametrize(
        "counts",
        [
            {"a": 16384, "b": 0, "c": 0},
            {"a": 5461, "b": 5462, "c": 5461, "d": 0},
            {"a": 10000, "b": 6384},
            {"a": 1, "b": 2, "c": 3, "d": 4, "e": 16374},
        ],
    )
    def test_equal_weights_differ_by_at_most_one(self, counts):
        """Targets sum to the current total and max - min <= 1."""
        targets = rebalance_targets(counts)

        assert sum(targets.values()) == sum(counts.values())
        assert max(targets.values()) - min(targets.values()) <= 1

    def test_remainder_goes_to_lower_ids(self):
        targets = rebalance_targets({"c": 16384, "a": 0, "b": 0})
        assert targets == {"a": 5462, "b": 5461, "c": 5461}

    def test_zero_weight_drains(self):
        targets = rebalance_targets({"a": 8192, "b": 8192, "c": 0}, {"a": 0})
        assert targets["a"] == 0
        assert targets["b"] + targets["c"] == TOTAL_SLOTS

    def test_weights_are_proportional(self):
        targets = rebalance_targets({"a": 8192, "b": 8192}, {"a": 3, "b": 1})
        assert targets == {"a": 12288, "b": 4096}

    def test_negative_weight_raises(self):
        with pytest.raises(ValueError):
            rebalance_targets({"a": 1}, {"a": -1})

    def test_all_zero_weights_raise(self):
        with pytest.raises(ValueError):
            rebalance_targets({"a": 1, "b": 1}, {"a": 0, "b": 0})


class TestPlanMoves:
    """Tests for move planning and scheduling."""

    def test_moves_reach_targets(self):
        counts = {"a": 16384, "b": 0, "c": 0, "d": 0}
        targets = rebalance_targets(counts)
        moves = plan_moves(counts, targets)

        final = dict(counts)
        for move in moves:
            final[move.source] -= move.count
            final[move.target] += move.count
        assert final == targets

    def test_balanced_cluster_needs_no_moves(self):
        counts = {"a": 5462, "b": 5461, "c": 5461}
        assert plan_moves(counts, rebalance_targets(counts)) == []

    def test_schedule_never_reuses_a_master_in_one_step(self):
        moves = [
            SlotMove("a", "c", 10),
            SlotMove("b", "d", 10),
            SlotMove("a", "d", 5),
            SlotMove("b", "c", 5),
        ]
        steps = schedule_moves(moves)

        assert [len(step) for step in steps] == [2, 2]
        for step in steps:
            touched = [n for m in step for n in (m.source, m.target)]
            assert len(touched) == len(set(touched))
