"""
Shared orchestrator machinery.

OrchestratorContext bundles what every orchestrator needs (client pool,
observer, lock table, cancellation flag, poll policy). Orchestrator provides
the plan lifecycle: lock the plan's targets for the whole run, mark status
transitions, and honour cancellation at checkpoints.

Cancellation is cooperative. A set cancel event is observed at the next
checkpoint; an in-flight node call is never interrupted because the remote
command may already have taken effect.
"""

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Sequence

from operator_rediscluster.errors import (
    CancelledOperationError,
    PreconditionError,
    UnreachableError,
)
from operator_rediscluster.locks import NodeLockTable
from operator_rediscluster.node_client import (
    NodeClient,
    NodeClientPool,
    Unreachable,
    describe,
)
from operator_rediscluster.observer import ClusterObserver
from operator_rediscluster.orchestration.types import OperationPlan, OperationStatus
from operator_rediscluster.retry import PollPolicy
from operator_rediscluster.types import NodeEndpoint, NodeId, NodeRecord, TopologyModel

logger = logging.getLogger(__name__)


@dataclass
class OrchestratorContext:
    """
    Collaborators shared by orchestrators in one process.

    Attributes:
        pool: Bounded node clients.
        observer: Snapshot source.
        locks: Per-node advisory lock table.
        cancel: Cooperative cancellation flag.
        poll: Default policy for "wait for state" steps.
        password: Credential forwarded to MIGRATE.
    """

    pool: NodeClientPool
    observer: ClusterObserver
    locks: NodeLockTable = field(default_factory=NodeLockTable)
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    poll: PollPolicy = field(default_factory=PollPolicy)
    password: str | None = None


class Orchestrator:
    """Base class providing plan lifecycle helpers."""

    def __init__(self, context: OrchestratorContext) -> None:
        self.context = context

    def client(self, endpoint: NodeEndpoint) -> NodeClient:
        return self.context.pool.client(endpoint)

    async def snapshot(self) -> TopologyModel:
        return await self.context.observer.snapshot()

    def checkpoint(
        self,
        plan: OperationPlan,
        snapshot: TopologyModel | None = None,
        completed: Sequence[int] = (),
        pending: Sequence[int] = (),
    ) -> None:
        """
        Honour a pending cancellation request.

        Slot migrations pass their progress so the error reports it.

        Raises:
            CancelledOperationError: If cancellation was requested.
        """
        if self.context.cancel.is_set():
            raise CancelledOperationError(
                f"{plan.kind.value} cancelled",
                step=plan.current_step,
                snapshot=snapshot,
                completed=completed,
                pending=pending,
            )

    @contextmanager
    def running(self, plan: OperationPlan) -> Iterator[OperationPlan]:
        """
        Lock the plan's targets and track its status.

        ConflictError from the lock table propagates before the plan starts.
        """
        with self.context.locks.hold(plan.targets, plan.owner):
            plan.status = OperationStatus.RUNNING
            logger.info(f"Starting {plan.owner} on {list(plan.targets)}")
            try:
                yield plan
            except CancelledOperationError:
                plan.status = OperationStatus.ABORTED
                logger.warning(f"{plan.owner} aborted at {plan.current_step}")
                raise
            except BaseException:
                plan.status = OperationStatus.FAILED
                logger.error(f"{plan.owner} failed at {plan.current_step}")
                raise
            plan.status = OperationStatus.SUCCEEDED
            logger.info(f"{plan.owner} succeeded")


def resolve_node(snapshot: TopologyModel, ref: str) -> NodeRecord:
    """
    Find a node by id, unique id prefix, or host:port.

    Raises:
        PreconditionError: If nothing or more than one node matches.
    """
    if ref in snapshot.nodes:
        return snapshot.nodes[ref]

    if ":" in ref:
        try:
            endpoint = NodeEndpoint.parse(ref)
        except ValueError as e:
            raise PreconditionError(str(e), step="resolve", snapshot=snapshot) from e
        node = snapshot.find_by_endpoint(endpoint)
        if node is not None:
            return node
    else:
        matches = [n for n in snapshot.nodes.values() if n.node_id.startswith(ref)]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            raise PreconditionError(
                f"Node reference '{ref}' is ambiguous", step="resolve", snapshot=snapshot
            )

    raise PreconditionError(
        f"Node '{ref}' is not a member of the cluster", step="resolve", snapshot=snapshot
    )


def require_reachable(snapshot: TopologyModel, node: NodeRecord, step: str) -> None:
    if not snapshot.is_reachable(node.node_id):
        raise UnreachableError(
            f"Node {node.node_id} ({node.endpoint}) is unreachable",
            step=step,
            snapshot=snapshot,
        )


def failure_detail(result: object) -> str:
    """describe() plus a hint for unreachable nodes."""
    if isinstance(result, Unreachable):
        return f"{describe(result)} (the command may or may not have taken effect)"
    return describe(result)


def reachable_masters(snapshot: TopologyModel) -> list[NodeRecord]:
    return [m for m in snapshot.masters() if snapshot.is_reachable(m.node_id)]


def node_ids(nodes: list[NodeRecord]) -> tuple[NodeId, ...]:
    return tuple(sorted(n.node_id for n in nodes))
