"""
Hash-slot arithmetic.

Helpers for converting between slot sets and inclusive ranges, choosing
which slots to move during a reshard, and computing weighted rebalance
targets. Everything here is pure and operates on plain ints.
"""

from dataclasses import dataclass
from typing import Iterable, Mapping

from redis.crc import key_slot as _crc_key_slot

from operator_rediscluster.types import NodeId, SlotRange


def key_slot(key: str | bytes) -> int:
    """Slot a key hashes to (CRC16 with {hash tag} support)."""
    if isinstance(key, str):
        key = key.encode()
    return _crc_key_slot(key)


def ranges_from_slots(slots: Iterable[int]) -> tuple[SlotRange, ...]:
    """Collapse slot numbers into sorted, maximal inclusive ranges."""
    ordered = sorted(set(slots))
    if not ordered:
        return ()

    ranges: list[SlotRange] = []
    start = prev = ordered[0]
    for slot in ordered[1:]:
        if slot == prev + 1:
            prev = slot
            continue
        ranges.append(SlotRange(start, prev))
        start = prev = slot
    ranges.append(SlotRange(start, prev))
    return tuple(ranges)


def slots_from_ranges(ranges: Iterable[SlotRange]) -> set[int]:
    return {slot for r in ranges for slot in r}


def format_ranges(ranges: Iterable[SlotRange]) -> str:
    text = ",".join(str(r) for r in ranges)
    return text or "-"


def parse_ranges(text: str) -> tuple[SlotRange, ...]:
    """
    Parse "0-100,200,300-400" into ranges.

    Raises:
        ValueError: On malformed input or out-of-range slots.
    """
    slots: set[int] = set()
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        start, _, end = part.partition("-")
        slots.update(SlotRange(int(start), int(end or start)))
    return ranges_from_slots(slots)


def select_slots_for_move(ranges: Iterable[SlotRange], count: int) -> list[int]:
    """
    Choose `count` slots to move out of the given owned ranges.

    Contiguous-first: slots are taken from the highest-numbered end of the
    largest owned range, and only once that range is exhausted does selection
    move to the next largest. Ties on size go to the higher-numbered range.
    This keeps both the donor's remainder and the moved set as few ranges as
    possible.

    Args:
        ranges: Ranges owned by the donor.
        count: Number of slots to select.

    Returns:
        Selected slot numbers in ascending order.

    Raises:
        ValueError: If count is negative or exceeds the owned slot count.
    """
    remaining = sorted(ranges_from_slots(slots_from_ranges(ranges)))
    owned = sum(len(r) for r in remaining)
    if count < 0:
        raise ValueError("Slot count must be non-negative")
    if count > owned:
        raise ValueError(f"Cannot select {count} slots from {owned} owned slots")

    selected: list[int] = []
    while len(selected) < count:
        largest = max(remaining, key=lambda r: (len(r), r.start))
        take = min(count - len(selected), len(largest))
        first = largest.end - take + 1
        selected.extend(range(first, largest.end + 1))

        remaining.remove(largest)
        if first > largest.start:
            remaining.append(SlotRange(largest.start, first - 1))

    return sorted(selected)


def rebalance_targets(
    slot_counts: Mapping[NodeId, int],
    weights: Mapping[NodeId, float] | None = None,
) -> dict[NodeId, int]:
    """
    Weighted target slot count per master.

    Uses largest-remainder apportionment so targets always sum to the
    current total; with equal weights the largest and smallest targets
    differ by at most one. Remainder ties go to the lower node id.

    Args:
        slot_counts: Current slot count per master (empty masters included).
        weights: Optional weight per master, default 1.0. Zero drains a node.

    Raises:
        ValueError: If a weight is negative or all weights are zero.
    """
    weights = weights or {}
    node_weights = {n: float(weights.get(n, 1.0)) for n in slot_counts}
    if any(w < 0 for w in node_weights.values()):
        raise ValueError("Weights must be non-negative")
    total_weight = sum(node_weights.values())
    if total_weight <= 0:
        raise ValueError("At least one master needs a positive weight")

    total_slots = sum(slot_counts.values())
    exact = {n: total_slots * w / total_weight for n, w in node_weights.items()}
    targets = {n: int(v) for n, v in exact.items()}

    leftover = total_slots - sum(targets.values())
    by_remainder = sorted(exact, key=lambda n: (-(exact[n] - targets[n]), n))
    for node_id in by_remainder[:leftover]:
        targets[node_id] += 1
    return targets


@dataclass(frozen=True)
class SlotMove:
    """Move `count` slots from one master to another."""

    source: NodeId
    target: NodeId
    count: int


def plan_moves(
    slot_counts: Mapping[NodeId, int], targets: Mapping[NodeId, int]
) -> list[SlotMove]:
    """
    Pair donors with receivers until every master reaches its target.

    Donors are drained largest-surplus first into the receiver with the
    largest deficit. Ties break on node id so the plan is deterministic.
    """
    balance = {n: slot_counts[n] - targets.get(n, 0) for n in slot_counts}
    donors = sorted((n for n in balance if balance[n] > 0), key=lambda n: (-balance[n], n))
    receivers = sorted((n for n in balance if balance[n] < 0), key=lambda n: (balance[n], n))

    moves: list[SlotMove] = []
    d = r = 0
    while d < len(donors) and r < len(receivers):
        source, target = donors[d], receivers[r]
        count = min(balance[source], -balance[target])
        moves.append(SlotMove(source=source, target=target, count=count))
        balance[source] -= count
        balance[target] += count
        if balance[source] == 0:
            d += 1
        if balance[target] == 0:
            r += 1
    return moves


def schedule_moves(moves: Iterable[SlotMove]) -> list[list[SlotMove]]:
    """
    Group moves into steps where no master appears in two moves.

    First-fit: each move joins the earliest step that does not already
    touch its source or target.
    """
    steps: list[list[SlotMove]] = []
    busy: list[set[NodeId]] = []
    for move in moves:
        for step, nodes in zip(steps, busy):
            if move.source not in nodes and move.target not in nodes:
                step.append(move)
                nodes.update((move.source, move.target))
                break
        else:
            steps.append([move])
            busy.append({move.source, move.target})
    return steps


def assign_move_slots(
    owned: Mapping[NodeId, Iterable[SlotRange]],
    steps: Iterable[Iterable[SlotMove]],
) -> list[list[tuple[int, ...]]]:
    """
    Pick the explicit slots for every scheduled move, in step order.

    Each donor gives up slots contiguous-first from what it still owns after
    its earlier moves, which is what select_slots_for_move would choose at
    run time against an unchanged topology.

    Raises:
        ValueError: If a donor does not own enough slots for its moves.
    """
    remaining = {n: slots_from_ranges(r) for n, r in owned.items()}
    chosen: list[list[tuple[int, ...]]] = []
    for step in steps:
        picks: list[tuple[int, ...]] = []
        for move in step:
            donor = remaining.get(move.source, set())
            slots = select_slots_for_move(ranges_from_slots(donor), move.count)
            donor.difference_update(slots)
            picks.append(tuple(slots))
        chosen.append(picks)
    return chosen

