"""
Slot migration orchestrator (reshard, rebalance, open-slot repair).

Each slot moves through an independent, resumable sequence:

1. CLUSTER SETSLOT <slot> IMPORTING <source> on the target
2. CLUSTER SETSLOT <slot> MIGRATING <target> on the source
3. CLUSTER GETKEYSINSLOT + MIGRATE ... KEYS batches until the slot is empty
4. CLUSTER SETSLOT <slot> NODE <target> on the target, the source, then
   every other reachable master (this also clears the transitional flags)

A slot interrupted part way stays IMPORTING/MIGRATING and can be finished
with complete_slot() or rolled back with abort_slot(); fix_open_slots()
applies whichever fits to every open slot in a snapshot.

Migrations are never planned against an inconsistent topology.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Mapping, Sequence, TypeVar

from operator_rediscluster.errors import (
    CancelledOperationError,
    InconsistentTopologyError,
    OperationError,
    PartialFailureError,
    PreconditionError,
)
from operator_rediscluster.node_client import (
    NodeClient,
    SetSlotMode,
    is_failure,
)
from operator_rediscluster.orchestration.base import (
    Orchestrator,
    OrchestratorContext,
    failure_detail,
    reachable_masters,
    require_reachable,
    resolve_node,
)
from operator_rediscluster.orchestration.types import OperationKind, OperationPlan
from operator_rediscluster.slots import (
    SlotMove,
    assign_move_slots,
    format_ranges,
    plan_moves,
    ranges_from_slots,
    rebalance_targets,
    schedule_moves,
    select_slots_for_move,
)
from operator_rediscluster.types import NodeFlag, NodeId, NodeRecord, TopologyModel

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_KEY_BATCH = 100
"""Keys fetched per GETKEYSINSLOT / MIGRATE round."""

DEFAULT_MIGRATE_TIMEOUT_MS = 5000

DEFAULT_REVALIDATE_EVERY = 100
"""Re-poll the topology before every Nth slot of a run."""

UNUSABLE_FLAGS = frozenset({NodeFlag.FAIL, NodeFlag.HANDSHAKE, NodeFlag.NOADDR})


class SlotStepError(Exception):
    """
    One step of a single slot's migration failed.

    Attributes:
        slot: Slot being moved.
        step: "importing", "migrating", "transfer", "assign" or "stable".
        detail: Failure description.
    """

    def __init__(self, slot: int, step: str, detail: str) -> None:
        self.slot = slot
        self.step = step
        self.detail = detail
        super().__init__(f"slot {slot} {step}: {detail}")


@dataclass(frozen=True)
class ReshardPlan:
    """A reshard plan with its explicit slot list."""

    plan: OperationPlan
    source: NodeRecord
    target: NodeRecord
    slots: tuple[int, ...]


@dataclass(frozen=True)
class RebalancePlan:
    """
    Weighted rebalance plan.

    Attributes:
        plan: Operation plan (targets are every master that moves slots).
        targets: Target slot count per master.
        steps: Groups of moves; no master appears twice within a group.
        slots: Explicit slots for each move, parallel to `steps`.
    """

    plan: OperationPlan
    targets: dict[NodeId, int]
    steps: list[list[SlotMove]]
    slots: list[list[tuple[int, ...]]] = field(default_factory=list)

    def pending_from(self, step: int) -> list[int]:
        """Every planned slot from `step` onwards."""
        return sorted(s for picks in self.slots[step:] for p in picks for s in p)


@dataclass
class MigrationResult:
    """Outcome of a reshard or rebalance run."""

    plan: OperationPlan
    moved: list[int] = field(default_factory=list)
    snapshot: TopologyModel | None = None


@dataclass(frozen=True)
class SlotRepair:
    """What fix_open_slots did for one slot."""

    slot: int
    action: str
    plan: OperationPlan


class MigrationOrchestrator(Orchestrator):
    """
    Moves slot ownership between masters.

    Example:
        orchestrator = MigrationOrchestrator(context)
        result = await orchestrator.reshard("a1b2...", "c3d4...", 1000)
        print(f"moved {format_ranges(ranges_from_slots(result.moved))}")
    """

    def __init__(
        self,
        context: OrchestratorContext,
        key_batch: int = DEFAULT_KEY_BATCH,
        migrate_timeout_ms: int = DEFAULT_MIGRATE_TIMEOUT_MS,
        revalidate_every: int = DEFAULT_REVALIDATE_EVERY,
    ) -> None:
        super().__init__(context)
        self.key_batch = key_batch
        self.migrate_timeout_ms = migrate_timeout_ms
        self.revalidate_every = max(1, revalidate_every)

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    @staticmethod
    def _require_plannable(snapshot: TopologyModel) -> None:
        if not snapshot.consistent:
            raise InconsistentTopologyError(
                "Masters disagree on the slot map; refusing to plan a migration",
                step="plan",
                snapshot=snapshot,
            )
        if snapshot.open_slots():
            open_ranges = format_ranges(ranges_from_slots(snapshot.open_slots()))
            raise PreconditionError(
                f"Slots {open_ranges} are still migrating/importing",
                step="plan",
                snapshot=snapshot,
                remediation="Run 'fix' to complete or abort open slots first.",
            )

    @staticmethod
    def _require_usable_master(
        snapshot: TopologyModel, node: NodeRecord, label: str
    ) -> None:
        if not node.is_master:
            raise PreconditionError(
                f"{label} {node.node_id} is a replica", step="plan", snapshot=snapshot
            )
        if node.flags & UNUSABLE_FLAGS:
            raise PreconditionError(
                f"{label} {node.node_id} is flagged "
                f"{','.join(sorted(f.value for f in node.flags & UNUSABLE_FLAGS))}",
                step="plan",
                snapshot=snapshot,
            )
        require_reachable(snapshot, node, step="plan")

    def plan_reshard(
        self,
        snapshot: TopologyModel,
        source_ref: str,
        target_ref: str,
        count: int | None = None,
        slots: Sequence[int] | None = None,
    ) -> ReshardPlan:
        """
        Choose the slots to move from source to target.

        With `count`, slots are taken contiguous-first from the highest end
        of the source's largest owned range. With `slots`, exactly those
        slots are moved (they must all be owned by the source).

        Raises:
            InconsistentTopologyError: Snapshot is inconsistent.
            PreconditionError: Invalid nodes or count, or open slots exist.
        """
        self._require_plannable(snapshot)
        source = resolve_node(snapshot, source_ref)
        target = resolve_node(snapshot, target_ref)
        if source.node_id == target.node_id:
            raise PreconditionError(
                "Source and target are the same node", step="plan", snapshot=snapshot
            )
        self._require_usable_master(snapshot, source, "Source")
        self._require_usable_master(snapshot, target, "Target")
        if slots is not None:
            not_owned = sorted(set(slots) - source.slot_set())
            if not_owned:
                raise PreconditionError(
                    f"Source does not own slots {format_ranges(ranges_from_slots(not_owned))}",
                    step="plan",
                    snapshot=snapshot,
                )
            count = len(set(slots))
        if count is None or count <= 0 or count > source.slot_count:
            raise PreconditionError(
                f"Cannot move {count} slot(s); source owns {source.slot_count}",
                step="plan",
                snapshot=snapshot,
            )

        if slots is not None:
            slots = tuple(sorted(set(slots)))
        else:
            slots = tuple(select_slots_for_move(source.owned_slots, count))
        plan = OperationPlan(
            kind=OperationKind.RESHARD,
            targets=tuple(sorted((source.node_id, target.node_id))),
            parameters={
                "source": source.node_id,
                "target": target.node_id,
                "count": count,
                "slots": format_ranges(ranges_from_slots(slots)),
            },
        )
        return ReshardPlan(plan=plan, source=source, target=target, slots=slots)

    def plan_rebalance(
        self,
        snapshot: TopologyModel,
        weights: Mapping[NodeId, float] | None = None,
    ) -> RebalancePlan:
        """
        Compute weighted targets and a step schedule of pairwise moves.

        Every usable master takes part, including empty ones. Masters with
        weight 0 are drained.

        Raises:
            InconsistentTopologyError: Snapshot is inconsistent.
            PreconditionError: Unknown weight keys, open slots, or a master
                that owns slots but cannot be reached.
        """
        self._require_plannable(snapshot)

        for master in snapshot.masters():
            if master.slot_count and not snapshot.is_reachable(master.node_id):
                raise PreconditionError(
                    f"Master {master.node_id} owns slots but is unreachable",
                    step="plan",
                    snapshot=snapshot,
                )

        masters = [
            m for m in reachable_masters(snapshot) if not m.flags & UNUSABLE_FLAGS
        ]
        if not masters:
            raise PreconditionError("No usable masters", step="plan", snapshot=snapshot)

        weights = dict(weights or {})
        unknown = sorted(set(weights) - {m.node_id for m in masters})
        if unknown:
            raise PreconditionError(
                f"Weights given for unknown or unusable masters: {', '.join(unknown)}",
                step="plan",
                snapshot=snapshot,
            )

        counts = {m.node_id: m.slot_count for m in masters}
        try:
            targets = rebalance_targets(counts, weights)
        except ValueError as e:
            raise PreconditionError(str(e), step="plan", snapshot=snapshot) from e

        moves = plan_moves(counts, targets)
        involved = sorted({n for m in moves for n in (m.source, m.target)})
        plan = OperationPlan(
            kind=OperationKind.REBALANCE,
            targets=tuple(involved),
            parameters={
                "targets": dict(sorted(targets.items())),
                "moves": [
                    {"source": m.source, "target": m.target, "count": m.count}
                    for m in moves
                ],
            },
        )
        steps = schedule_moves(moves)
        owned = {m.node_id: m.owned_slots for m in masters}
        return RebalancePlan(
            plan=plan,
            targets=targets,
            steps=steps,
            slots=assign_move_slots(owned, steps),
        )

    # -------------------------------------------------------------------------
    # Per-slot primitives
    # -------------------------------------------------------------------------

    @staticmethod
    async def _expect(call: Awaitable[T], slot: int, step: str) -> T:
        result = await call
        if is_failure(result):
            raise SlotStepError(slot, step, failure_detail(result))
        return result

    async def _transfer_keys(
        self, source: NodeClient, target: NodeRecord, slot: int
    ) -> int:
        """MIGRATE every key in `slot` from source to target. Returns keys moved."""
        moved = 0
        previous: list[str] | None = None
        while True:
            keys = await self._expect(
                source.get_keys_in_slot(slot, self.key_batch), slot, "transfer"
            )
            if not keys:
                return moved
            if keys == previous:
                raise SlotStepError(slot, "transfer", f"no progress migrating {keys[:3]}")
            await self._expect(
                source.migrate_keys(
                    target.endpoint,
                    keys,
                    timeout_ms=self.migrate_timeout_ms,
                    password=self.context.password,
                ),
                slot,
                "transfer",
            )
            moved += len(keys)
            previous = keys

    async def _assign(
        self,
        snapshot: TopologyModel,
        slot: int,
        target: NodeRecord,
        source: NodeRecord | None,
    ) -> None:
        """
        SETSLOT NODE on target, then source, then every other reachable master.

        Failures on the two ends are fatal; other masters learn the change
        through gossip, so their failures are only logged.
        """
        await self._expect(
            self.client(target.endpoint).set_slot(slot, SetSlotMode.NODE, target.node_id),
            slot,
            "assign",
        )
        if source is not None and snapshot.is_reachable(source.node_id):
            await self._expect(
                self.client(source.endpoint).set_slot(
                    slot, SetSlotMode.NODE, target.node_id
                ),
                slot,
                "assign",
            )

        ends = {target.node_id, source.node_id if source else None}
        others = [m for m in reachable_masters(snapshot) if m.node_id not in ends]
        results = await asyncio.gather(
            *(
                self.client(m.endpoint).set_slot(slot, SetSlotMode.NODE, target.node_id)
                for m in others
            )
        )
        for master, result in zip(others, results):
            if is_failure(result):
                logger.warning(
                    f"SETSLOT {slot} NODE not applied on {master.node_id}: "
                    f"{failure_detail(result)}"
                )

    async def _move_slot(
        self,
        snapshot: TopologyModel,
        slot: int,
        source: NodeRecord,
        target: NodeRecord,
    ) -> int:
        src = self.client(source.endpoint)
        dst = self.client(target.endpoint)
        await self._expect(
            dst.set_slot(slot, SetSlotMode.IMPORTING, source.node_id), slot, "importing"
        )
        await self._expect(
            src.set_slot(slot, SetSlotMode.MIGRATING, target.node_id), slot, "migrating"
        )
        moved = await self._transfer_keys(src, target, slot)
        await self._assign(snapshot, slot, target, source)
        return moved

    # -------------------------------------------------------------------------
    # Multi-slot runs
    # -------------------------------------------------------------------------

    async def _revalidate(
        self,
        source_id: NodeId,
        target_id: NodeId,
        remaining: Sequence[int],
        completed: list[int],
    ) -> tuple[TopologyModel, NodeRecord, NodeRecord]:
        """Re-poll and confirm the remaining slots can still be moved."""
        snapshot = await self.snapshot()
        source = snapshot.get(source_id)
        target = snapshot.get(target_id)

        cause = None
        if not snapshot.consistent:
            cause = "topology became inconsistent"
        elif source is None or target is None:
            cause = "source or target left the cluster"
        elif not (source.is_master and target.is_master):
            cause = "source or target is no longer a master"
        elif not (snapshot.is_reachable(source_id) and snapshot.is_reachable(target_id)):
            cause = "source or target became unreachable"
        elif not set(remaining) <= source.slot_set():
            cause = "source no longer owns the remaining slots"

        if cause:
            raise PartialFailureError(
                completed=completed,
                pending=remaining,
                aborted=[],
                cause=cause,
                step="revalidate",
                snapshot=snapshot,
            )
        return snapshot, source, target

    async def _execute_slots(
        self,
        plan: OperationPlan,
        snapshot: TopologyModel,
        slots: Sequence[int],
        source: NodeRecord,
        target: NodeRecord,
    ) -> list[int]:
        completed: list[int] = []
        for index, slot in enumerate(slots):
            self.checkpoint(plan, snapshot, completed=completed, pending=slots[index:])
            if index and index % self.revalidate_every == 0:
                snapshot, source, target = await self._revalidate(
                    source.node_id, target.node_id, slots[index:], completed
                )

            step = plan.begin(f"slot {slot}")
            try:
                keys = await self._move_slot(snapshot, slot, source, target)
            except SlotStepError as e:
                plan.fail(step, str(e))
                raise PartialFailureError(
                    completed=completed,
                    pending=slots[index + 1 :],
                    aborted=[slot],
                    cause=str(e),
                    step=f"slot {slot} {e.step}",
                    snapshot=snapshot,
                ) from e
            plan.finish(step, f"{source.node_id} -> {target.node_id}, {keys} key(s)")
            completed.append(slot)
        return completed

    async def reshard(
        self,
        source_ref: str,
        target_ref: str,
        count: int | None = None,
        snapshot: TopologyModel | None = None,
        slots: Sequence[int] | None = None,
    ) -> MigrationResult:
        """
        Move `count` slots (or exactly `slots`) from source to target.

        Raises:
            InconsistentTopologyError, PreconditionError: At plan time.
            ConflictError: Source or target is locked.
            PartialFailureError: Some slots moved, then a step failed.
            CancelledOperationError: Cancelled between slots.
        """
        snapshot = snapshot or await self.snapshot()
        reshard = self.plan_reshard(snapshot, source_ref, target_ref, count, slots)
        logger.info(
            f"Reshard {len(reshard.slots)} slot(s) "
            f"{reshard.source.node_id} -> {reshard.target.node_id}: "
            f"{reshard.plan.parameters['slots']}"
        )

        with self.running(reshard.plan) as plan:
            moved = await self._execute_slots(
                plan, snapshot, reshard.slots, reshard.source, reshard.target
            )

        return MigrationResult(plan=reshard.plan, moved=moved, snapshot=snapshot)

    async def rebalance(
        self,
        weights: Mapping[NodeId, float] | None = None,
        snapshot: TopologyModel | None = None,
    ) -> MigrationResult:
        """
        Equalise slot ownership (optionally weighted) across masters.

        Moves within one scheduled step run concurrently; steps run in order
        against a fresh snapshot each.
        """
        snapshot = snapshot or await self.snapshot()
        rebalance = self.plan_rebalance(snapshot, weights)
        moved: list[int] = []
        if not rebalance.steps:
            logger.info("Cluster already balanced")

        with self.running(rebalance.plan) as plan:
            for index, (step_moves, step_slots) in enumerate(
                zip(rebalance.steps, rebalance.slots)
            ):
                self.checkpoint(
                    plan, snapshot, completed=moved, pending=rebalance.pending_from(index)
                )
                if index:
                    snapshot = await self.snapshot()
                    cause = self._step_blocker(snapshot, step_moves, step_slots)
                    if cause:
                        raise PartialFailureError(
                            completed=moved,
                            pending=rebalance.pending_from(index),
                            aborted=[],
                            cause=cause,
                            step=f"step {index + 1}",
                            snapshot=snapshot,
                            remediation=(
                                "The topology changed under the plan. Run 'check', "
                                "then retry with a fresh plan."
                            ),
                        )

                runs = [
                    self._execute_slots(
                        plan, snapshot, slots, snapshot.get(move.source), snapshot.get(move.target)
                    )
                    for move, slots in zip(step_moves, step_slots)
                ]
                results = await asyncio.gather(*runs, return_exceptions=True)
                self._collect_step(
                    results, step_slots, moved, rebalance.pending_from(index + 1), index, snapshot
                )

        return MigrationResult(plan=rebalance.plan, moved=sorted(moved), snapshot=snapshot)

    @staticmethod
    def _step_blocker(
        snapshot: TopologyModel,
        moves: Sequence[SlotMove],
        slots: Sequence[Sequence[int]],
    ) -> str | None:
        """Why the planned moves of a step can no longer run, if they cannot."""
        if not snapshot.consistent:
            return "topology became inconsistent between steps"
        for move, picks in zip(moves, slots):
            source = snapshot.get(move.source)
            target = snapshot.get(move.target)
            if source is None or target is None:
                return f"{move.source} or {move.target} left the cluster"
            if not (source.is_master and target.is_master):
                return f"{move.source} or {move.target} is no longer a master"
            if not (
                snapshot.is_reachable(move.source) and snapshot.is_reachable(move.target)
            ):
                return f"{move.source} or {move.target} became unreachable"
            if not set(picks) <= source.slot_set():
                return f"{move.source} no longer owns the slots planned for {move.target}"
        return None

    @staticmethod
    def _collect_step(
        results: Sequence[object],
        step_slots: Sequence[Sequence[int]],
        moved: list[int],
        later: Sequence[int],
        index: int,
        snapshot: TopologyModel,
    ) -> None:
        """
        Fold one step's concurrent results into `moved`.

        Raises:
            PartialFailureError: A run failed; completed slots of every run are kept.
            CancelledOperationError: A run was cancelled and none failed.
        """
        pending: list[int] = []
        aborted: list[int] = []
        causes: list[str] = []
        cancelled: CancelledOperationError | None = None
        failed_step = f"step {index + 1}"
        for result, picks in zip(results, step_slots):
            if isinstance(result, (PartialFailureError, CancelledOperationError)):
                moved.extend(result.completed)
                pending.extend(result.pending)
                if isinstance(result, CancelledOperationError):
                    cancelled = result
                    continue
                if not causes:
                    failed_step = result.step
                aborted.extend(result.aborted)
                causes.append(result.cause)
            elif isinstance(result, Exception):
                # Progress of this run is unknown; report its slots as pending
                pending.extend(picks)
                causes.append(f"{type(result).__name__}: {result}")
            elif isinstance(result, BaseException):
                raise result
            else:
                moved.extend(result)

        if causes:
            if later:
                causes.append(f"{len(later)} later slot(s) not started")
            raise PartialFailureError(
                completed=moved,
                pending=sorted([*pending, *later]),
                aborted=aborted,
                cause="; ".join(causes),
                step=failed_step,
                snapshot=snapshot,
            )
        if cancelled is not None:
            raise CancelledOperationError(
                cancelled.message,
                step=cancelled.step,
                snapshot=snapshot,
                completed=moved,
                pending=sorted([*pending, *later]),
            )

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    async def complete_slot(
        self, slot: int, snapshot: TopologyModel | None = None
    ) -> OperationPlan:
        """
        Finish an interrupted migration of `slot`.

        Moves any remaining keys from the migrating (or owning) node to the
        importing node, then assigns the slot to the importing node.

        Raises:
            PreconditionError: Slot is not open or has no importing node.
            OperationError: A step failed (markers are left in place).
        """
        snapshot = snapshot or await self.snapshot()
        migrating_id, importing_id = self._open_ends(snapshot, slot)
        if importing_id is None:
            raise PreconditionError(
                f"Slot {slot} has no importing node",
                step="complete",
                snapshot=snapshot,
                remediation=f"Use abort for slot {slot} instead.",
            )

        target = snapshot.get(importing_id)
        source = snapshot.get(migrating_id) if migrating_id else snapshot.owner_of(slot)
        require_reachable(snapshot, target, step="complete")

        plan = OperationPlan(
            kind=OperationKind.SLOT_REPAIR,
            targets=tuple(sorted({n.node_id for n in (source, target) if n})),
            parameters={"slot": slot, "action": "complete"},
        )
        with self.running(plan):
            try:
                step = plan.begin("transfer")
                keys = 0
                if source is not None and snapshot.is_reachable(source.node_id):
                    keys = await self._transfer_keys(
                        self.client(source.endpoint), target, slot
                    )
                plan.finish(step, f"{keys} key(s)")

                self.checkpoint(plan, snapshot)
                step = plan.begin("assign")
                await self._assign(snapshot, slot, target, source)
                plan.finish(step, f"owned by {target.node_id}")
            except SlotStepError as e:
                plan.fail(step, str(e))
                raise OperationError(
                    str(e),
                    step=f"complete {e.step}",
                    snapshot=snapshot,
                    remediation="Inspect the slot with 'check' before retrying.",
                ) from e
        return plan

    async def abort_slot(
        self, slot: int, snapshot: TopologyModel | None = None
    ) -> OperationPlan:
        """
        Roll `slot` back to STABLE on both ends.

        Keys already copied to the importing node are migrated back to the
        slot owner.

        Raises:
            PreconditionError: Slot is not open.
            OperationError: A step failed.
        """
        snapshot = snapshot or await self.snapshot()
        migrating_id, importing_id = self._open_ends(snapshot, slot)
        owner = snapshot.owner_of(slot)
        ends = [snapshot.get(n) for n in (migrating_id, importing_id) if n]
        ends = [n for n in ends if n is not None]

        plan = OperationPlan(
            kind=OperationKind.SLOT_REPAIR,
            targets=tuple(sorted({n.node_id for n in ends})),
            parameters={"slot": slot, "action": "abort"},
        )
        with self.running(plan):
            try:
                step = plan.begin("stable")
                for node in ends:
                    require_reachable(snapshot, node, step="abort")
                    await self._expect(
                        self.client(node.endpoint).set_slot(slot, SetSlotMode.STABLE),
                        slot,
                        "stable",
                    )
                plan.finish(step, ", ".join(n.node_id for n in ends))

                importer = snapshot.get(importing_id) if importing_id else None
                if importer is not None and owner is not None and importer.node_id != owner.node_id:
                    self.checkpoint(plan, snapshot)
                    step = plan.begin("return keys")
                    keys = await self._transfer_keys(
                        self.client(importer.endpoint), owner, slot
                    )
                    plan.finish(step, f"{keys} key(s) back to {owner.node_id}")
            except SlotStepError as e:
                plan.fail(step, str(e))
                raise OperationError(
                    str(e),
                    step=f"abort {e.step}",
                    snapshot=snapshot,
                    remediation="Inspect the slot with 'check' before retrying.",
                ) from e
        return plan

    async def fix_open_slots(
        self, snapshot: TopologyModel | None = None
    ) -> list[SlotRepair]:
        """
        Repair every open slot in the snapshot.

        Slots marked on both ends are completed; slots marked on one end
        only are aborted back to STABLE.
        """
        snapshot = snapshot or await self.snapshot()
        repairs: list[SlotRepair] = []
        for slot, (migrating_id, importing_id) in snapshot.open_slots().items():
            if self.context.cancel.is_set():
                logger.warning(f"Cancellation requested; {slot} and later slots left open")
                break
            if migrating_id and importing_id:
                plan = await self.complete_slot(slot, snapshot)
                repairs.append(SlotRepair(slot=slot, action="complete", plan=plan))
            else:
                plan = await self.abort_slot(slot, snapshot)
                repairs.append(SlotRepair(slot=slot, action="abort", plan=plan))
        return repairs

    @staticmethod
    def _open_ends(
        snapshot: TopologyModel, slot: int
    ) -> tuple[NodeId | None, NodeId | None]:
        ends = snapshot.open_slots().get(slot)
        if ends is None:
            raise PreconditionError(
                f"Slot {slot} is not migrating or importing",
                step="plan",
                snapshot=snapshot,
            )
        return ends
