"""
Join / leave orchestration.

add_node:    CLUSTER MEET from an existing member, wait until the new node is
             known without the handshake flag, then (replicas only) wait until
             the new node knows its master, CLUSTER REPLICATE, and wait for the
             replica role.
remove_node: refuse masters that still own slots or still have replicas,
             CLUSTER FORGET on every other reachable member, then either
             shut the node down or CLUSTER RESET SOFT it so it cannot
             gossip its way back in.
replicate:   re-point an existing replica (or empty master) at a master.
meet:        CLUSTER MEET alone, for nodes that already hold state.
forget_node: CLUSTER FORGET alone; the node keeps running.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from operator_rediscluster.errors import (
    OperationError,
    OperationTimeoutError,
    PreconditionError,
    UnreachableError,
)
from operator_rediscluster.node_client import (
    NodeClient,
    Unreachable,
    is_failure,
)
from operator_rediscluster.orchestration.base import (
    Orchestrator,
    failure_detail,
    require_reachable,
    resolve_node,
)
from operator_rediscluster.orchestration.types import OperationKind, OperationPlan
from operator_rediscluster.retry import wait_for_state
from operator_rediscluster.types import (
    NodeEndpoint,
    NodeFlag,
    NodeId,
    NodeRecord,
    NodeRole,
    TopologyModel,
)

logger = logging.getLogger(__name__)


@dataclass
class MembershipResult:
    """Outcome of a join, leave or replicate operation."""

    plan: OperationPlan
    node_id: NodeId
    role: NodeRole | None = None
    master_id: NodeId | None = None


class MembershipOrchestrator(Orchestrator):
    """Adds, removes and re-points cluster members."""

    async def _my_id(self, client: NodeClient, step: str, snapshot: TopologyModel) -> NodeId:
        node_id = await client.get_my_id()
        if is_failure(node_id):
            raise UnreachableError(
                f"Cannot identify {client.endpoint}: {failure_detail(node_id)}",
                step=step,
                snapshot=snapshot,
            )
        return node_id

    async def _knows(self, client: NodeClient, node_id: NodeId) -> bool:
        """True once `client`'s node table lists `node_id` without handshake."""
        records = await client.get_cluster_nodes()
        if is_failure(records):
            return False
        return any(
            r.node_id == node_id and NodeFlag.HANDSHAKE not in r.flags for r in records
        )

    async def _await(
        self,
        plan: OperationPlan,
        probe: Callable[[], Awaitable[bool]],
        what: str,
        snapshot: TopologyModel,
    ) -> None:
        step = plan.begin(what)
        outcome = await wait_for_state(
            probe=probe,
            done=bool,
            policy=self.context.poll,
            cancel=self.context.cancel,
        )
        if not outcome.satisfied:
            self.checkpoint(plan, snapshot)
            plan.fail(step, f"not observed after {outcome.attempts} poll(s)")
            raise OperationTimeoutError(
                f"{what} not observed",
                step=what,
                deadline=self.context.poll.deadline,
                snapshot=snapshot,
            )
        plan.finish(step, f"after {outcome.attempts} poll(s)")

    async def _meet(
        self,
        plan: OperationPlan,
        member: NodeRecord,
        new: NodeEndpoint,
        new_id: NodeId,
        snapshot: TopologyModel,
    ) -> None:
        """CLUSTER MEET from `member`, then wait until it lists the node without handshake."""
        step = plan.begin("meet")
        ack = await self.client(member.endpoint).meet(new)
        if is_failure(ack):
            plan.fail(step, failure_detail(ack))
            raise OperationError(
                f"CLUSTER MEET failed: {failure_detail(ack)}",
                step="meet",
                snapshot=snapshot,
            )
        plan.finish(step, f"via {member.node_id}")

        self.checkpoint(plan, snapshot)
        await self._await(
            plan,
            lambda: self._knows(self.client(member.endpoint), new_id),
            "joined",
            snapshot,
        )

    @staticmethod
    def _member(snapshot: TopologyModel, existing: NodeEndpoint) -> NodeRecord:
        member = snapshot.find_by_endpoint(existing)
        if member is None or not snapshot.is_reachable(member.node_id):
            raise UnreachableError(
                f"Existing member {existing} is not reachable", step="plan", snapshot=snapshot
            )
        return member

    @staticmethod
    def pick_master(snapshot: TopologyModel) -> NodeRecord:
        """Reachable, slot-owning master with the fewest replicas (ties: lowest id)."""
        candidates = [
            m
            for m in snapshot.live_masters()
            if m.slot_count and snapshot.is_reachable(m.node_id)
        ]
        if not candidates:
            raise PreconditionError(
                "No slot-owning master available to replicate",
                step="plan",
                snapshot=snapshot,
            )
        return min(candidates, key=lambda m: (len(snapshot.replicas_of(m.node_id)), m.node_id))

    async def add_node(
        self,
        new: NodeEndpoint,
        existing: NodeEndpoint,
        role: NodeRole = NodeRole.MASTER,
        master_ref: str | None = None,
    ) -> MembershipResult:
        """
        Join the node at `new` to the cluster reachable through `existing`.

        Args:
            new: Endpoint of the node to add (must be a cluster-enabled node
                that is not yet a member).
            existing: Endpoint of any current member.
            role: MASTER (joins empty) or REPLICA.
            master_ref: Master to replicate (id, id prefix or host:port); the
                master with the fewest replicas is chosen when omitted.

        Raises:
            PreconditionError: Node already a member, or master invalid.
            UnreachableError: New or existing node does not answer.
            ConflictError: New node or chosen master is locked.
            OperationTimeoutError: Join or replication not observed in time.
        """
        snapshot = await self.snapshot()
        if snapshot.find_by_endpoint(new) is not None:
            raise PreconditionError(
                f"{new} is already a cluster member", step="plan", snapshot=snapshot
            )
        member = self._member(snapshot, existing)

        new_client = self.client(new)
        new_id = await self._my_id(new_client, "plan", snapshot)
        own_view = await new_client.get_cluster_nodes()
        if is_failure(own_view):
            raise UnreachableError(
                f"Cannot read {new} node table: {failure_detail(own_view)}",
                step="plan",
                snapshot=snapshot,
            )
        if len(own_view) > 1 or any(r.slot_count for r in own_view):
            raise PreconditionError(
                f"{new} already knows other nodes or owns slots",
                step="plan",
                snapshot=snapshot,
                remediation="Reset the node with CLUSTER RESET before adding it.",
            )

        master: NodeRecord | None = None
        if role == NodeRole.REPLICA:
            master = (
                resolve_node(snapshot, master_ref) if master_ref else self.pick_master(snapshot)
            )
            if not master.is_master:
                raise PreconditionError(
                    f"{master.node_id} is not a master", step="plan", snapshot=snapshot
                )

        plan = OperationPlan(
            kind=OperationKind.JOIN,
            targets=tuple(sorted({new_id} | ({master.node_id} if master else set()))),
            parameters={
                "node": new_id,
                "endpoint": new.address,
                "role": role.value,
                "master": master.node_id if master else None,
            },
        )

        with self.running(plan):
            await self._meet(plan, member, new, new_id, snapshot)

            if master is not None:
                self.checkpoint(plan, snapshot)
                await self._await(
                    plan,
                    lambda: self._knows(new_client, master.node_id),
                    "master known",
                    snapshot,
                )
                await self._replicate(plan, new_client, master, snapshot)

        return MembershipResult(
            plan=plan,
            node_id=new_id,
            role=role,
            master_id=master.node_id if master else None,
        )

    async def meet(self, new: NodeEndpoint, existing: NodeEndpoint) -> MembershipResult:
        """
        Introduce the node at `new` through `existing` and wait for the handshake.

        Unlike add_node the node may already hold a peer table or slots, which
        is how a node that was forgotten by mistake is brought back. No role
        change is made.

        Raises:
            PreconditionError: Node is already a member.
            UnreachableError: New or existing node does not answer.
            ConflictError: Node is locked.
            OperationTimeoutError: Handshake not observed in time.
        """
        snapshot = await self.snapshot()
        if snapshot.find_by_endpoint(new) is not None:
            raise PreconditionError(
                f"{new} is already a cluster member", step="plan", snapshot=snapshot
            )
        member = self._member(snapshot, existing)
        new_id = await self._my_id(self.client(new), "plan", snapshot)

        plan = OperationPlan(
            kind=OperationKind.JOIN,
            targets=(new_id,),
            parameters={"node": new_id, "endpoint": new.address, "via": member.node_id},
        )
        with self.running(plan):
            await self._meet(plan, member, new, new_id, snapshot)

        return MembershipResult(plan=plan, node_id=new_id)

    async def _replicate(
        self,
        plan: OperationPlan,
        client: NodeClient,
        master: NodeRecord,
        snapshot: TopologyModel,
    ) -> None:
        step = plan.begin("replicate")
        ack = await client.replicate(master.node_id)
        if is_failure(ack):
            plan.fail(step, failure_detail(ack))
            raise OperationError(
                f"CLUSTER REPLICATE failed: {failure_detail(ack)}",
                step="replicate",
                snapshot=snapshot,
            )
        plan.finish(step, f"-> {master.node_id}")

        async def is_replica() -> bool:
            role = await client.get_role()
            return role == NodeRole.REPLICA

        self.checkpoint(plan, snapshot)
        await self._await(plan, is_replica, "replica role", snapshot)

    async def replicate(self, replica_ref: str, master_ref: str) -> MembershipResult:
        """
        Make an existing member replicate `master_ref`.

        Raises:
            PreconditionError: Replica owns slots, or master is not a master.
        """
        snapshot = await self.snapshot()
        replica = resolve_node(snapshot, replica_ref)
        master = resolve_node(snapshot, master_ref)
        if replica.node_id == master.node_id:
            raise PreconditionError(
                "A node cannot replicate itself", step="plan", snapshot=snapshot
            )
        if not master.is_master:
            raise PreconditionError(
                f"{master.node_id} is not a master", step="plan", snapshot=snapshot
            )
        if replica.is_master and replica.slot_count:
            raise PreconditionError(
                f"{replica.node_id} still owns {replica.slot_count} slot(s)",
                step="plan",
                snapshot=snapshot,
                remediation="Reshard its slots away first.",
            )
        require_reachable(snapshot, replica, step="plan")

        plan = OperationPlan(
            kind=OperationKind.REPLICATE,
            targets=tuple(sorted((replica.node_id, master.node_id))),
            parameters={"replica": replica.node_id, "master": master.node_id},
        )
        with self.running(plan):
            await self._replicate(plan, self.client(replica.endpoint), master, snapshot)

        return MembershipResult(
            plan=plan, node_id=replica.node_id, role=NodeRole.REPLICA, master_id=master.node_id
        )

    async def forget(
        self, node_id: NodeId, snapshot: TopologyModel
    ) -> dict[NodeId, Unreachable | None]:
        """
        CLUSTER FORGET `node_id` on every other reachable member.

        Returns:
            Member id -> None on success, or the failure result.

        Raises:
            OperationError: A reachable member rejected the command.
        """
        members = [
            n
            for n in snapshot.nodes.values()
            if n.node_id != node_id and snapshot.is_reachable(n.node_id)
        ]
        results = await asyncio.gather(
            *(self.client(n.endpoint).forget(node_id) for n in members)
        )

        outcome: dict[NodeId, Unreachable | None] = {}
        rejected = []
        for member, result in zip(members, results):
            if isinstance(result, Unreachable):
                logger.warning(f"FORGET not delivered to {member.node_id}: {result.reason}")
                outcome[member.node_id] = result
            elif is_failure(result):
                rejected.append(f"{member.node_id}: {failure_detail(result)}")
            else:
                outcome[member.node_id] = None
        if rejected:
            raise OperationError(
                f"CLUSTER FORGET rejected by {'; '.join(rejected)}",
                step="forget",
                snapshot=snapshot,
            )
        return outcome

    @staticmethod
    def _require_slotless(node: NodeRecord, snapshot: TopologyModel) -> None:
        if node.is_master and node.slot_count:
            raise PreconditionError(
                f"{node.node_id} still owns {node.slot_count} slot(s)",
                step="plan",
                snapshot=snapshot,
                remediation="Reshard its slots to other masters first.",
            )

    async def _forget_step(
        self, plan: OperationPlan, node_id: NodeId, snapshot: TopologyModel
    ) -> None:
        step = plan.begin("forget")
        outcome = await self.forget(node_id, snapshot)
        missed = sorted(k for k, v in outcome.items() if v is not None)
        plan.finish(
            step,
            f"{len(outcome) - len(missed)} member(s) forgot it"
            + (f"; not delivered to {', '.join(missed)}" if missed else ""),
        )

    async def remove_node(self, node_ref: str, shutdown: bool = False) -> MembershipResult:
        """
        Remove a member from the cluster.

        Raises:
            PreconditionError: Node is a master that owns slots or still has
                replicas.
            ConflictError: Node is locked.
            OperationError: FORGET rejected, or the reset or shutdown failed.
        """
        snapshot = await self.snapshot()
        node = resolve_node(snapshot, node_ref)
        self._require_slotless(node, snapshot)
        replicas = snapshot.replicas_of(node.node_id)
        if replicas:
            raise PreconditionError(
                f"{node.node_id} still has replicas: "
                f"{', '.join(r.node_id for r in replicas)}",
                step="plan",
                snapshot=snapshot,
                remediation="Remove or re-point its replicas first.",
            )

        plan = OperationPlan(
            kind=OperationKind.LEAVE,
            targets=(node.node_id,),
            parameters={"node": node.node_id, "shutdown": shutdown},
        )
        with self.running(plan):
            await self._forget_step(plan, node.node_id, snapshot)

            if not snapshot.is_reachable(node.node_id):
                logger.warning(f"{node.node_id} is unreachable; reset or stop it before it rejoins")
            elif not shutdown:
                # A forgotten node that keeps its peer table gossips its way back
                self.checkpoint(plan, snapshot)
                step = plan.begin("reset")
                result = await self.client(node.endpoint).reset()
                if is_failure(result):
                    plan.fail(step, failure_detail(result))
                    raise OperationError(
                        f"CLUSTER RESET failed: {failure_detail(result)}",
                        step="reset",
                        snapshot=snapshot,
                        remediation=(
                            "Run CLUSTER RESET on the node or shut it down, "
                            "otherwise it rejoins through gossip."
                        ),
                    )
                plan.finish(step, "peer table cleared")
            else:
                self.checkpoint(plan, snapshot)
                step = plan.begin("shutdown")
                result = await self.client(node.endpoint).shutdown(save=False)
                if is_failure(result):
                    plan.fail(step, failure_detail(result))
                    raise OperationError(
                        f"SHUTDOWN failed: {failure_detail(result)}",
                        step="shutdown",
                        snapshot=snapshot,
                    )
                plan.finish(step, "stopped")

        return MembershipResult(plan=plan, node_id=node.node_id, role=node.role)

    async def forget_node(self, node_ref: str) -> MembershipResult:
        """
        CLUSTER FORGET a node on every other reachable member, and nothing else.

        The node itself is left running with its peer table, so it rejoins
        through gossip unless it is reset or stopped within the forget ban.
        del-node is the complete removal.

        Raises:
            PreconditionError: Node is a master that owns slots.
            ConflictError: Node is locked.
            OperationError: A reachable member rejected FORGET.
        """
        snapshot = await self.snapshot()
        node = resolve_node(snapshot, node_ref)
        self._require_slotless(node, snapshot)

        plan = OperationPlan(
            kind=OperationKind.LEAVE,
            targets=(node.node_id,),
            parameters={"node": node.node_id, "forget_only": True},
        )
        with self.running(plan):
            await self._forget_step(plan, node.node_id, snapshot)

        return MembershipResult(plan=plan, node_id=node.node_id, role=node.role)
