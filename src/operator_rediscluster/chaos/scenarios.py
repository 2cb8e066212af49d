"""
Named chaos scenarios.

Each scenario picks its targets from a fresh snapshot during setup (or from
ChaosSettings.target when given), injects faults through the configured
NodeController, and records every assertion it makes on the shared
ScenarioState. Recovery restarts or resumes everything the scenario touched.
"""

import asyncio
import logging
import time

from operator_rediscluster.chaos.harness import (
    ChaosContext,
    Scenario,
    ScenarioError,
    ScenarioState,
)
from operator_rediscluster.errors import ConflictError, OperationError
from operator_rediscluster.node_client import NodeClient, Rejected, is_failure
from operator_rediscluster.orchestration.base import resolve_node
from operator_rediscluster.orchestration.failover import FailoverOrchestrator
from operator_rediscluster.orchestration.migration import MigrationOrchestrator
from operator_rediscluster.retry import PollOutcome, PollPolicy, wait_for_state
from operator_rediscluster.slots import format_ranges, key_slot, ranges_from_slots
from operator_rediscluster.types import (
    TOTAL_SLOTS,
    LinkState,
    NodeEndpoint,
    NodeFlag,
    NodeRecord,
    NodeRole,
    ReplicationInfo,
    TopologyModel,
)

logger = logging.getLogger(__name__)

DEGRADED_FLAGS = frozenset({NodeFlag.FAIL, NodeFlag.PFAIL, NodeFlag.HANDSHAKE, NodeFlag.NOADDR})

# Bound on waiting for a background operation to take its locks
LOCK_WAIT_SECONDS = 5.0


def is_healthy(snapshot: TopologyModel, node: NodeRecord) -> bool:
    return (
        snapshot.is_reachable(node.node_id)
        and node.link_state == LinkState.CONNECTED
        and not node.flags & DEGRADED_FLAGS
    )


def cluster_ok(snapshot: TopologyModel) -> bool:
    """Every reachable node reports cluster_state:ok and all slots are covered."""
    return (
        bool(snapshot.cluster_info)
        and all(info.is_ok for info in snapshot.cluster_info.values())
        and snapshot.covered_slot_count() == TOTAL_SLOTS
    )


def pick_master_with_replica(
    snapshot: TopologyModel, ref: str | None = None
) -> tuple[NodeRecord, NodeRecord]:
    """
    Choose a healthy master and one of its healthy replicas.

    A `ref` naming a replica selects that replica and its master; a `ref`
    naming a master selects that master.

    Raises:
        ScenarioError: If no such pair exists.
    """
    if ref:
        node = resolve_node(snapshot, ref)
        if node.replica_of is not None:
            master = snapshot.get(node.replica_of)
            if master is None:
                raise ScenarioError(f"Master of {node.node_id} is not in the cluster view")
            return master, node
        candidates = [node]
    else:
        candidates = [
            m for m in snapshot.masters() if m.owned_slots and is_healthy(snapshot, m)
        ]

    for master in candidates:
        replicas = [r for r in snapshot.replicas_of(master.node_id) if is_healthy(snapshot, r)]
        if replicas:
            return master, replicas[0]
    raise ScenarioError("No healthy master with a healthy replica")


def pick_other_master(snapshot: TopologyModel, exclude: NodeRecord) -> NodeRecord:
    for master in snapshot.masters():
        if master.node_id != exclude.node_id and is_healthy(snapshot, master):
            return master
    raise ScenarioError(f"No healthy master besides {exclude.node_id}")


async def wait_role(
    client: NodeClient, role: NodeRole, policy: PollPolicy
) -> PollOutcome:
    return await wait_for_state(
        probe=client.get_role,
        done=lambda result: result == role,
        policy=policy,
    )


async def wait_replica_linked(client: NodeClient, policy: PollPolicy) -> PollOutcome:
    def linked(result) -> bool:
        return (
            isinstance(result, ReplicationInfo)
            and result.role == NodeRole.REPLICA
            and result.link_status == "up"
        )

    return await wait_for_state(
        probe=client.get_replication_info, done=linked, policy=policy
    )


async def wait_cluster_ok(ctx: ChaosContext, policy: PollPolicy) -> PollOutcome:
    return await wait_for_state(probe=ctx.observer.snapshot, done=cluster_ok, policy=policy)


def _summary(snapshot: TopologyModel | None) -> str:
    if snapshot is None:
        return "no snapshot"
    states = sorted({info.state for info in snapshot.cluster_info.values()})
    return (
        f"cluster_state={'/'.join(states) or 'unknown'}, "
        f"covered={snapshot.covered_slot_count()}/{TOTAL_SLOTS}, "
        f"unreachable={len(snapshot.unreachable)}"
    )


async def expect_keys_intact(
    ctx: ChaosContext, state: ScenarioState, keys: dict[str, str] | None = None
) -> bool:
    expected = state.keys if keys is None else keys
    problems = await ctx.keyspace.verify(expected)
    return state.expect(
        "seeded_keys_intact",
        not problems,
        f"{len(expected)} key(s) readable with original values",
        "; ".join(problems[:5]) + (f" (+{len(problems) - 5} more)" if len(problems) > 5 else ""),
    )


async def expect_cluster_ok(ctx: ChaosContext, state: ScenarioState) -> bool:
    outcome = await wait_cluster_ok(ctx, ctx.settings.poll)
    return state.expect(
        "cluster_state_ok",
        outcome.satisfied,
        f"cluster_state ok with {TOTAL_SLOTS} slots covered",
        _summary(outcome.last),
    )


class MasterDown(Scenario):
    """
    Stop a master that has a live replica.

    The replica must become master within the poll deadline and own the old
    master's slots, every seeded key must survive, and the restarted old
    master must rejoin as a replica rather than reclaim its role.
    """

    name = "master-down"
    description = "Stop a master; its replica is promoted and data survives"

    async def setup(self, ctx: ChaosContext, state: ScenarioState) -> None:
        snapshot = await ctx.observer.snapshot()
        master, replica = pick_master_with_replica(snapshot, ctx.settings.target)
        state.targets.update(
            master=master.endpoint,
            master_id=master.node_id,
            replica=replica.endpoint,
            replica_id=replica.node_id,
            slots=format_ranges(master.owned_slots),
        )
        state.targets["_slots"] = master.slot_set()
        await super().setup(ctx, state)

    async def inject(self, ctx: ChaosContext, state: ScenarioState) -> None:
        master: NodeEndpoint = state.targets["master"]
        state.events.append(await ctx.controller.stop(master))
        state.stopped.append(master)
        state.targets["_injected_at"] = time.monotonic()

    async def observe(self, ctx: ChaosContext, state: ScenarioState) -> None:
        replica = ctx.pool.client(state.targets["replica"])
        outcome = await wait_role(replica, NodeRole.MASTER, ctx.settings.poll)
        state.targets["promotion_seconds"] = round(
            time.monotonic() - state.targets["_injected_at"], 3
        )
        state.expect(
            "replica_promoted",
            outcome.satisfied,
            f"role master within {ctx.settings.poll.deadline:.0f}s",
            str(outcome.last),
        )

    async def check(self, ctx: ChaosContext, state: ScenarioState) -> None:
        await expect_cluster_ok(ctx, state)
        snapshot = await ctx.observer.snapshot()
        promoted = snapshot.get(state.targets["replica_id"])
        owned = promoted.slot_set() if promoted else set()
        expected = state.targets["_slots"]
        state.expect(
            "slots_transferred",
            owned == expected,
            format_ranges(ranges_from_slots(expected)),
            format_ranges(ranges_from_slots(owned)),
        )
        await expect_keys_intact(ctx, state)

    async def recover(self, ctx: ChaosContext, state: ScenarioState) -> None:
        restarted = bool(state.stopped)
        await super().recover(ctx, state)
        if not restarted or state.targets["master"] in state.stopped:
            return
        old_master = ctx.pool.client(state.targets["master"])
        outcome = await wait_role(old_master, NodeRole.REPLICA, ctx.settings.recovery)
        state.expect(
            "old_master_rejoined_as_replica",
            outcome.satisfied,
            "role replica after restart",
            str(outcome.last),
        )


class ReplicaDown(Scenario):
    """Stop a replica; its master keeps serving and the replica relinks after restart."""

    name = "replica-down"
    description = "Stop a replica; the shard stays writable and the replica relinks"

    async def setup(self, ctx: ChaosContext, state: ScenarioState) -> None:
        snapshot = await ctx.observer.snapshot()
        master, replica = pick_master_with_replica(snapshot, ctx.settings.target)
        state.targets.update(
            master=master.endpoint,
            master_id=master.node_id,
            replica=replica.endpoint,
            replica_id=replica.node_id,
        )
        await super().setup(ctx, state)

    async def inject(self, ctx: ChaosContext, state: ScenarioState) -> None:
        replica: NodeEndpoint = state.targets["replica"]
        state.events.append(await ctx.controller.stop(replica))
        state.stopped.append(replica)

    async def observe(self, ctx: ChaosContext, state: ScenarioState) -> None:
        outcome = await wait_for_state(
            probe=ctx.pool.client(state.targets["replica"]).ping,
            done=is_failure,
            policy=ctx.settings.poll,
        )
        state.expect("replica_stopped", outcome.satisfied, "replica unreachable", str(outcome.last))

    async def check(self, ctx: ChaosContext, state: ScenarioState) -> None:
        role = await ctx.pool.client(state.targets["master"]).get_role()
        state.expect("master_unchanged", role == NodeRole.MASTER, "master", str(role))
        await expect_cluster_ok(ctx, state)
        await expect_keys_intact(ctx, state)

    async def recover(self, ctx: ChaosContext, state: ScenarioState) -> None:
        restarted = bool(state.stopped)
        await super().recover(ctx, state)
        if not restarted or state.targets["replica"] in state.stopped:
            return
        outcome = await wait_replica_linked(
            ctx.pool.client(state.targets["replica"]), ctx.settings.recovery
        )
        state.expect(
            "replica_relinked",
            outcome.satisfied,
            "replica with master_link_status up",
            str(outcome.last),
        )


class NetworkSplit(Scenario):
    """
    Pause one master for less than the cluster node timeout.

    Keys owned by other masters stay readable during the pause; once the
    node resumes the cluster converges back to ok with every key intact.
    """

    name = "network-split"
    description = "Pause a master; other shards keep serving, cluster converges on resume"

    async def setup(self, ctx: ChaosContext, state: ScenarioState) -> None:
        snapshot = await ctx.observer.snapshot()
        if ctx.settings.target:
            master = resolve_node(snapshot, ctx.settings.target)
        else:
            master, _ = pick_master_with_replica(snapshot)
        state.targets.update(master=master.endpoint, master_id=master.node_id)
        await super().setup(ctx, state)
        owned = master.slot_set()
        state.targets["_unaffected"] = {
            k: v for k, v in state.keys.items() if key_slot(k) not in owned
        }

    async def inject(self, ctx: ChaosContext, state: ScenarioState) -> None:
        master: NodeEndpoint = state.targets["master"]
        state.events.append(await ctx.controller.pause(master, ctx.settings.pause_seconds))
        state.paused.append(master)

    async def observe(self, ctx: ChaosContext, state: ScenarioState) -> None:
        unaffected = state.targets["_unaffected"]
        problems = await ctx.keyspace.verify(unaffected)
        state.expect(
            "other_shards_available",
            not problems,
            f"{len(unaffected)} key(s) on other masters readable during the pause",
            "; ".join(problems[:5]),
        )
        master: NodeEndpoint = state.targets["master"]
        state.events.append(await ctx.controller.resume(master))
        state.paused.remove(master)

    async def check(self, ctx: ChaosContext, state: ScenarioState) -> None:
        outcome = await wait_cluster_ok(ctx, ctx.settings.recovery)
        state.expect(
            "cluster_converged",
            outcome.satisfied,
            "cluster_state ok after resume",
            _summary(outcome.last),
        )
        await expect_keys_intact(ctx, state)


class MultiFailure(Scenario):
    """Stop a master and, at the same time, a replica of a different master."""

    name = "multi-failure"
    description = "Stop a master and an unrelated replica; cluster stays available"

    async def setup(self, ctx: ChaosContext, state: ScenarioState) -> None:
        snapshot = await ctx.observer.snapshot()
        master, replica = pick_master_with_replica(snapshot, ctx.settings.target)
        bystanders = [
            r
            for m in snapshot.masters()
            if m.node_id != master.node_id
            for r in snapshot.replicas_of(m.node_id)
            if is_healthy(snapshot, r)
        ]
        if not bystanders:
            raise ScenarioError("No replica outside the target shard")
        state.targets.update(
            master=master.endpoint,
            master_id=master.node_id,
            replica=replica.endpoint,
            replica_id=replica.node_id,
            other_replica=bystanders[0].endpoint,
        )
        await super().setup(ctx, state)

    async def inject(self, ctx: ChaosContext, state: ScenarioState) -> None:
        for key in ("master", "other_replica"):
            endpoint: NodeEndpoint = state.targets[key]
            state.events.append(await ctx.controller.stop(endpoint))
            state.stopped.append(endpoint)

    async def observe(self, ctx: ChaosContext, state: ScenarioState) -> None:
        outcome = await wait_role(
            ctx.pool.client(state.targets["replica"]), NodeRole.MASTER, ctx.settings.poll
        )
        state.expect(
            "replica_promoted",
            outcome.satisfied,
            f"role master within {ctx.settings.poll.deadline:.0f}s",
            str(outcome.last),
        )

    async def check(self, ctx: ChaosContext, state: ScenarioState) -> None:
        await expect_cluster_ok(ctx, state)
        await expect_keys_intact(ctx, state)


class Recovery(Scenario):
    """
    Persistence and restart.

    Every master completes a BGSAVE (LASTSAVE advances), then a replica is
    stopped and restarted and must relink to its master with the data set
    intact.
    """

    name = "recovery"
    description = "BGSAVE every master, restart a replica, verify it relinks"

    async def setup(self, ctx: ChaosContext, state: ScenarioState) -> None:
        snapshot = await ctx.observer.snapshot()
        master, replica = pick_master_with_replica(snapshot, ctx.settings.target)
        state.targets.update(
            master_id=master.node_id,
            replica=replica.endpoint,
            replica_id=replica.node_id,
            _masters=[m.endpoint for m in snapshot.masters() if is_healthy(snapshot, m)],
        )
        await super().setup(ctx, state)

    async def _persist(self, ctx: ChaosContext, state: ScenarioState, endpoint: NodeEndpoint) -> None:
        client = ctx.pool.client(endpoint)
        before = await client.last_save()
        saved = await client.bgsave()
        # A save already running still advances LASTSAVE
        in_progress = isinstance(saved, Rejected) and "in progress" in saved.message
        if is_failure(before) or (is_failure(saved) and not in_progress):
            state.expect(f"{endpoint.address}_bgsave", False, "BGSAVE accepted", f"{before} / {saved}")
            return
        outcome = await wait_for_state(
            probe=client.last_save,
            done=lambda value: isinstance(value, int) and value > before,
            policy=ctx.settings.recovery,
        )
        state.expect(
            f"{endpoint.address}_bgsave",
            outcome.satisfied,
            f"LASTSAVE advances past {before}",
            str(outcome.last),
        )

    async def inject(self, ctx: ChaosContext, state: ScenarioState) -> None:
        await asyncio.gather(
            *(self._persist(ctx, state, endpoint) for endpoint in state.targets["_masters"])
        )
        replica: NodeEndpoint = state.targets["replica"]
        state.events.append(await ctx.controller.stop(replica))
        state.stopped.append(replica)

    async def observe(self, ctx: ChaosContext, state: ScenarioState) -> None:
        replica: NodeEndpoint = state.targets["replica"]
        state.events.append(await ctx.controller.start(replica))
        state.stopped.remove(replica)
        if not await self.wait_alive(ctx, state, replica):
            return
        outcome = await wait_replica_linked(ctx.pool.client(replica), ctx.settings.recovery)
        state.expect(
            "replica_relinked",
            outcome.satisfied,
            "replica with master_link_status up",
            str(outcome.last),
        )

    async def check(self, ctx: ChaosContext, state: ScenarioState) -> None:
        metrics = await ctx.pool.client(state.targets["replica"]).get_metrics()
        if is_failure(metrics):
            state.expect("replica_metrics", False, "INFO answered", str(metrics))
        else:
            state.expect(
                "replica_persistence_ok",
                metrics.last_bgsave_ok is not False,
                "rdb_last_bgsave_status ok",
                str(metrics.last_bgsave_ok),
            )
        await expect_cluster_ok(ctx, state)
        await expect_keys_intact(ctx, state)


class Reshard(Scenario):
    """
    Move slots between two masters and back.

    Moves ChaosSettings.reshard_count slots from the master with the most
    slots to another master; counts must change by exactly that amount and
    every seeded key must stay readable. Recovery moves the same slots back
    and asserts the source's original slot set is restored.
    """

    name = "reshard"
    description = "Reshard slots to another master, verify keys, move them back"

    async def setup(self, ctx: ChaosContext, state: ScenarioState) -> None:
        snapshot = await ctx.observer.snapshot()
        if ctx.settings.target:
            source = resolve_node(snapshot, ctx.settings.target)
        else:
            source = max(snapshot.live_masters(), key=lambda m: (m.slot_count, m.node_id))
        target = pick_other_master(snapshot, source)
        state.targets.update(
            source_id=source.node_id,
            target_id=target.node_id,
            source_slots_before=source.slot_count,
            target_slots_before=target.slot_count,
        )
        state.targets["_original"] = source.slot_set()
        await super().setup(ctx, state)

    async def inject(self, ctx: ChaosContext, state: ScenarioState) -> None:
        orchestrator = MigrationOrchestrator(ctx.orchestration)
        result = await orchestrator.reshard(
            state.targets["source_id"], state.targets["target_id"], ctx.settings.reshard_count
        )
        state.targets["_moved"] = result.moved
        state.targets["moved"] = format_ranges(ranges_from_slots(result.moved))

    async def check(self, ctx: ChaosContext, state: ScenarioState) -> None:
        snapshot = await ctx.observer.snapshot()
        count = ctx.settings.reshard_count
        source = snapshot.get(state.targets["source_id"])
        target = snapshot.get(state.targets["target_id"])
        expected_source = state.targets["source_slots_before"] - count
        expected_target = state.targets["target_slots_before"] + count
        state.expect(
            "source_slot_count",
            source is not None and source.slot_count == expected_source,
            str(expected_source),
            str(source.slot_count if source else None),
        )
        state.expect(
            "target_slot_count",
            target is not None and target.slot_count == expected_target,
            str(expected_target),
            str(target.slot_count if target else None),
        )
        state.expect(
            "slot_coverage",
            snapshot.covered_slot_count() == TOTAL_SLOTS,
            str(TOTAL_SLOTS),
            str(snapshot.covered_slot_count()),
        )
        await expect_keys_intact(ctx, state)

    async def recover(self, ctx: ChaosContext, state: ScenarioState) -> None:
        await super().recover(ctx, state)
        moved = state.targets.get("_moved")
        if not moved:
            return
        orchestrator = MigrationOrchestrator(ctx.orchestration)
        await orchestrator.reshard(
            state.targets["target_id"], state.targets["source_id"], slots=moved
        )
        snapshot = await ctx.observer.snapshot()
        source = snapshot.get(state.targets["source_id"])
        restored = source.slot_set() if source else set()
        original = state.targets["_original"]
        state.expect(
            "source_slots_restored",
            restored == original,
            format_ranges(ranges_from_slots(original)),
            format_ranges(ranges_from_slots(restored)),
        )


class ConflictingOperation(Scenario):
    """
    Start a reshard off master A, then request a failover onto A's replica.

    The failover must be rejected with ConflictError while the reshard holds
    A's lock. The reshard is then cancelled at its next checkpoint and any
    slots it managed to move are returned during recovery.
    """

    name = "conflicting-operation"
    description = "Failover of a node locked by a running reshard is rejected"

    async def setup(self, ctx: ChaosContext, state: ScenarioState) -> None:
        snapshot = await ctx.observer.snapshot()
        master, replica = pick_master_with_replica(snapshot, ctx.settings.target)
        other = pick_other_master(snapshot, master)
        state.targets.update(
            master_id=master.node_id,
            replica=replica.endpoint,
            other_id=other.node_id,
        )
        state.targets["_target_before"] = other.slot_set()
        await super().setup(ctx, state)

    async def inject(self, ctx: ChaosContext, state: ScenarioState) -> None:
        orchestrator = MigrationOrchestrator(ctx.orchestration)
        task = asyncio.create_task(
            orchestrator.reshard(
                state.targets["master_id"], state.targets["other_id"], ctx.settings.reshard_count
            )
        )
        state.targets["_task"] = task

        deadline = time.monotonic() + LOCK_WAIT_SECONDS
        while ctx.orchestration.locks.holder(state.targets["master_id"]) is None:
            if task.done() or time.monotonic() >= deadline:
                break
            await asyncio.sleep(0)
        state.targets["lock_holder"] = ctx.orchestration.locks.holder(state.targets["master_id"])

    async def observe(self, ctx: ChaosContext, state: ScenarioState) -> None:
        failover = FailoverOrchestrator(ctx.orchestration)
        try:
            result = await failover.run(state.targets["replica"])
        except ConflictError as e:
            state.targets["rejected_with"] = str(e)
            return
        except OperationError as e:
            state.expect("failover_conflict", False, "ConflictError", f"{type(e).__name__}: {e}")
            return
        state.expect(
            "failover_conflict",
            False,
            "ConflictError",
            f"failover succeeded, promoted {result.promoted}",
        )

    async def check(self, ctx: ChaosContext, state: ScenarioState) -> None:
        if not any(f.name == "failover_conflict" for f in state.failures):
            state.expect(
                "failover_conflict",
                "rejected_with" in state.targets,
                "ConflictError",
                f"no conflict observed (lock holder {state.targets.get('lock_holder')})",
            )
        await self._stop_reshard(ctx, state)
        await expect_keys_intact(ctx, state)

    async def _stop_reshard(self, ctx: ChaosContext, state: ScenarioState) -> None:
        task: asyncio.Task | None = state.targets.pop("_task", None)
        if task is None:
            return
        ctx.orchestration.cancel.set()
        try:
            await task
        except OperationError as e:
            logger.info(f"Background reshard ended: {type(e).__name__}: {e}")
        finally:
            ctx.orchestration.cancel.clear()

    async def recover(self, ctx: ChaosContext, state: ScenarioState) -> None:
        await self._stop_reshard(ctx, state)
        await super().recover(ctx, state)

        snapshot = await ctx.observer.snapshot()
        other = snapshot.get(state.targets["other_id"])
        if other is None:
            return
        moved = sorted(other.slot_set() - state.targets["_target_before"])
        if moved:
            logger.info(f"Returning {len(moved)} slot(s) to {state.targets['master_id']}")
            await MigrationOrchestrator(ctx.orchestration).reshard(
                state.targets["other_id"], state.targets["master_id"], slots=moved, snapshot=snapshot
            )
        state.targets["returned"] = len(moved)


SCENARIOS: dict[str, type[Scenario]] = {
    scenario.name: scenario
    for scenario in (
        MasterDown,
        ReplicaDown,
        NetworkSplit,
        MultiFailure,
        Recovery,
        Reshard,
        ConflictingOperation,
    )
}


def get_scenario(name: str) -> Scenario:
    """
    Instantiate a scenario by name.

    Raises:
        KeyError: Unknown scenario name.
    """
    try:
        return SCENARIOS[name]()
    except KeyError:
        raise KeyError(f"Unknown scenario {name!r}; choose from {', '.join(SCENARIOS)}") from None
