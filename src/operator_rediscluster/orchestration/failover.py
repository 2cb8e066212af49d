"""
Failover orchestrator.

Promotes a replica to master as a checkpointed state machine:

    INIT -> VALIDATED -> REQUESTED -> AWAITING_PROMOTION -> VERIFIED -> DONE

FAILED is reachable from every non-terminal state. CLUSTER FAILOVER is sent
exactly once; it is not idempotent against a partially promoted node, so a
failed run is never retried automatically. The caller re-evaluates the
topology and starts a new plan.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

from operator_rediscluster.errors import (
    OperationError,
    OperationTimeoutError,
    PreconditionError,
    VerificationError,
)
from operator_rediscluster.node_client import (
    FailoverMode,
    Rejected,
    Unreachable,
    is_failure,
)
from operator_rediscluster.orchestration.base import (
    Orchestrator,
    OrchestratorContext,
    failure_detail,
)
from operator_rediscluster.orchestration.types import OperationKind, OperationPlan
from operator_rediscluster.retry import PollPolicy, wait_for_state
from operator_rediscluster.slots import format_ranges, ranges_from_slots
from operator_rediscluster.types import (
    NodeEndpoint,
    NodeId,
    NodeRole,
    TopologyModel,
)

logger = logging.getLogger(__name__)

PROMOTION_POLICY = PollPolicy(interval=1.0, deadline=15.0)
"""Promotion is polled every second for up to 15 seconds."""


class FailoverState(str, Enum):
    """Failover state machine states."""

    INIT = "init"
    VALIDATED = "validated"
    REQUESTED = "requested"
    AWAITING_PROMOTION = "awaiting_promotion"
    VERIFIED = "verified"
    DONE = "done"
    FAILED = "failed"


@dataclass
class FailoverResult:
    """
    Outcome of a failover run.

    Attributes:
        plan: The executed plan (steps and status).
        promoted: Node id of the promoted replica.
        old_master: Node id of the master that was replaced.
        slots: Slots the old master owned when the run began.
        states: State transitions in order.
        snapshot: Snapshot used for verification.
    """

    plan: OperationPlan
    promoted: NodeId
    old_master: NodeId
    slots: frozenset[int]
    states: list[FailoverState] = field(default_factory=list)
    snapshot: TopologyModel | None = None


@dataclass
class FailoverRun:
    """State and transition history of one failover run."""

    state: FailoverState = FailoverState.INIT
    history: list[FailoverState] = field(default_factory=lambda: [FailoverState.INIT])

    def enter(self, state: FailoverState) -> None:
        logger.info(f"Failover: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)


class FailoverOrchestrator(Orchestrator):
    """
    Drives a controlled failover onto one replica.

    Example:
        orchestrator = FailoverOrchestrator(context)
        result = await orchestrator.run(NodeEndpoint("10.0.0.4", 7003))
        print(f"{result.promoted} now serves {len(result.slots)} slots")
    """

    def __init__(
        self,
        context: OrchestratorContext,
        policy: PollPolicy = PROMOTION_POLICY,
    ) -> None:
        super().__init__(context)
        self.policy = policy

    async def run(
        self,
        target: NodeEndpoint,
        mode: FailoverMode = FailoverMode.DEFAULT,
        snapshot: TopologyModel | None = None,
    ) -> FailoverResult:
        """
        Promote the replica at `target`.

        Args:
            target: Endpoint of the replica to promote.
            mode: DEFAULT (coordinated), FORCE or TAKEOVER.
            snapshot: Optional snapshot to plan against; polled when None.

        Returns:
            FailoverResult once the promoted node owns the old master's slots.

        Raises:
            PreconditionError: Target is not a replica or is unreachable, its
                master is missing from the snapshot, or the request was rejected.
            ConflictError: Target or its master is locked by another operation.
            OperationTimeoutError: Promotion not observed before the deadline.
            VerificationError: Promoted node does not own exactly the old slots.
            CancelledOperationError: Cancellation requested at a checkpoint.
        """
        progress = FailoverRun()
        try:
            return await self._run(progress, target, mode, snapshot)
        except BaseException:
            progress.enter(FailoverState.FAILED)
            raise

    async def _run(
        self,
        progress: FailoverRun,
        target: NodeEndpoint,
        mode: FailoverMode,
        snapshot: TopologyModel | None,
    ) -> FailoverResult:
        snapshot = snapshot or await self.snapshot()
        client = self.client(target)

        # INIT: fresh replication info from the target itself
        info = await client.get_replication_info()
        if isinstance(info, Unreachable):
            raise PreconditionError(
                f"Failover target {target} is unreachable: {info.reason}",
                step=FailoverState.INIT.value,
                snapshot=snapshot,
            )
        if isinstance(info, Rejected):
            raise PreconditionError(
                f"Failover target {target} rejected INFO: {info.message}",
                step=FailoverState.INIT.value,
                snapshot=snapshot,
            )
        if info.role != NodeRole.REPLICA:
            raise PreconditionError(
                f"Failover target {target} is a {info.role.value}, not a replica",
                step=FailoverState.INIT.value,
                snapshot=snapshot,
                remediation="Choose one of the master's replicas as the target.",
            )

        replica = snapshot.find_by_endpoint(target)
        if replica is None or replica.replica_of is None:
            raise PreconditionError(
                f"{target} does not appear as a replica in the cluster view",
                step=FailoverState.INIT.value,
                snapshot=snapshot,
            )
        master = snapshot.get(replica.replica_of)
        if master is None:
            raise PreconditionError(
                f"Master {replica.replica_of} of {target} is missing from the cluster view",
                step=FailoverState.INIT.value,
                snapshot=snapshot,
                remediation=(
                    "The old slot set cannot be verified. Run 'check' and wait for "
                    "the node tables to converge, or use 'fix' before failing over."
                ),
            )
        old_slots = frozenset(master.slot_set())

        plan = OperationPlan(
            kind=OperationKind.FAILOVER,
            targets=tuple(sorted({replica.node_id, replica.replica_of})),
            parameters={
                "replica": replica.node_id,
                "master": replica.replica_of,
                "mode": mode.value,
                "slots": format_ranges(ranges_from_slots(old_slots)),
            },
        )

        with self.running(plan):
            progress.enter(FailoverState.VALIDATED)
            step = plan.begin(FailoverState.VALIDATED.value)
            plan.finish(step, f"{replica.node_id} replicates {replica.replica_of}")

            self.checkpoint(plan, snapshot)
            step = plan.begin(FailoverState.REQUESTED.value)
            ack = await client.failover(mode)
            if is_failure(ack):
                plan.fail(step, failure_detail(ack))
                error = PreconditionError if isinstance(ack, Rejected) else OperationError
                raise error(
                    f"CLUSTER FAILOVER not accepted: {failure_detail(ack)}",
                    step=FailoverState.REQUESTED.value,
                    snapshot=snapshot,
                    remediation=(
                        "Re-evaluate topology with 'status'. If the master is down "
                        "retry with --force; do not resend blindly."
                    ),
                )
            progress.enter(FailoverState.REQUESTED)
            plan.finish(step, "acknowledged")

            self.checkpoint(plan, snapshot)
            progress.enter(FailoverState.AWAITING_PROMOTION)
            step = plan.begin(FailoverState.AWAITING_PROMOTION.value)
            outcome = await wait_for_state(
                probe=client.get_role,
                done=lambda role: role == NodeRole.MASTER,
                policy=self.policy,
                cancel=self.context.cancel,
            )
            if not outcome.satisfied:
                self.checkpoint(plan, snapshot)
                plan.fail(step, f"last observed: {outcome.last}")
                raise OperationTimeoutError(
                    f"{replica.node_id} was not promoted",
                    step=FailoverState.AWAITING_PROMOTION.value,
                    deadline=self.policy.deadline,
                    snapshot=snapshot,
                )
            plan.finish(step, f"promoted after {outcome.attempts} poll(s)")

            self.checkpoint(plan, snapshot)
            step = plan.begin(FailoverState.VERIFIED.value)
            verified = await self.snapshot()
            problem = self._verify(verified, replica.node_id, old_slots)
            if problem:
                plan.fail(step, problem)
                raise VerificationError(
                    problem,
                    step=FailoverState.VERIFIED.value,
                    snapshot=verified,
                )
            progress.enter(FailoverState.VERIFIED)
            plan.finish(step, f"owns {len(old_slots)} slot(s)")

            progress.enter(FailoverState.DONE)

        return FailoverResult(
            plan=plan,
            promoted=replica.node_id,
            old_master=replica.replica_of,
            slots=old_slots,
            states=list(progress.history),
            snapshot=verified,
        )

    @staticmethod
    def _verify(
        snapshot: TopologyModel, promoted_id: NodeId, old_slots: frozenset[int]
    ) -> str | None:
        """Return a failure description, or None if the promotion verified."""
        promoted = snapshot.get(promoted_id)
        if promoted is None:
            return f"{promoted_id} missing from the post-failover snapshot"
        if not promoted.is_master:
            return f"{promoted_id} is not reported as master after promotion"

        open_slots = sorted(s for s in snapshot.open_slots() if s in old_slots)
        if open_slots:
            return (
                f"Slots {format_ranges(ranges_from_slots(open_slots))} are in a "
                f"transitional state"
            )

        owned = promoted.slot_set()
        if owned != old_slots:
            missing = old_slots - owned
            extra = owned - old_slots
            return (
                f"{promoted_id} slot set differs from the old master: "
                f"missing {format_ranges(ranges_from_slots(missing))}, "
                f"extra {format_ranges(ranges_from_slots(extra))}"
            )
        return None
