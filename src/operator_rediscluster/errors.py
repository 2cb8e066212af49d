"""
Orchestration error types.

Node-level failures never cross the client boundary as exceptions (see
node_client.Unreachable / Rejected). Orchestrator failures are terminal for
their operation and are raised as one of the classes below.

Per project patterns:
- Store context data in attributes for error handling
- Include descriptive message with relevant details
- Every error carries the failing step, the last known topology snapshot
  and a recommended remediation so the CLI can print all three
"""

from __future__ import annotations

from enum import IntEnum
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from operator_rediscluster.types import NodeId, TopologyModel


class ExitCode(IntEnum):
    """Process exit codes for operator commands."""

    OK = 0
    UNEXPECTED = 1
    USAGE = 2
    PRECONDITION = 3
    CONFLICT = 4
    TIMEOUT = 5
    INCONSISTENT = 6
    PARTIAL = 7
    UNREACHABLE = 8
    CANCELLED = 9
    HEALTH_FAILED = 10
    CHAOS_FAILED = 11


class OperationError(Exception):
    """
    Base class for orchestrator failures.

    Attributes:
        step: Name of the step that failed.
        snapshot: Last known topology when the failure happened (may be None).
        remediation: Recommended next action for the operator.
        exit_code: Process exit code the CLI should use.
    """

    exit_code = ExitCode.UNEXPECTED
    default_remediation = "Run 'check' to inspect the cluster, then retry with a fresh plan."

    def __init__(
        self,
        message: str,
        step: str,
        snapshot: TopologyModel | None = None,
        remediation: str | None = None,
    ) -> None:
        self.message = message
        self.step = step
        self.snapshot = snapshot
        self.remediation = remediation or self.default_remediation
        super().__init__(f"{message} (step: {step})")


class PreconditionError(OperationError):
    """Plan is invalid for the current topology (e.g. failing over a master)."""

    exit_code = ExitCode.PRECONDITION
    default_remediation = "Re-run 'status' and choose a valid target."


class InconsistentTopologyError(PreconditionError):
    """Masters disagree about slot ownership or membership at plan time."""

    exit_code = ExitCode.INCONSISTENT
    default_remediation = (
        "Masters disagree on the slot map. Run 'check', resolve the conflict, "
        "then plan again."
    )


class ConflictError(OperationError):
    """
    A target node is locked by another in-flight operation.

    Attributes:
        node_ids: Nodes that were already locked.
        holder: Description of the operation holding the lock.
    """

    exit_code = ExitCode.CONFLICT
    default_remediation = "Wait for the running operation to finish, then retry."

    def __init__(
        self,
        node_ids: Sequence[NodeId],
        holder: str,
        step: str = "lock",
        snapshot: TopologyModel | None = None,
    ) -> None:
        self.node_ids = tuple(node_ids)
        self.holder = holder
        super().__init__(
            f"Node(s) {', '.join(self.node_ids)} locked by {holder}",
            step=step,
            snapshot=snapshot,
        )


class OperationTimeoutError(OperationError, TimeoutError):
    """
    A step's deadline elapsed without the expected transition.

    Attributes:
        deadline: The deadline that elapsed, in seconds.
    """

    exit_code = ExitCode.TIMEOUT
    default_remediation = (
        "Re-evaluate topology with 'status'; the command may still take effect. "
        "Retry with an explicit new plan."
    )

    def __init__(
        self,
        message: str,
        step: str,
        deadline: float,
        snapshot: TopologyModel | None = None,
        remediation: str | None = None,
    ) -> None:
        self.deadline = deadline
        super().__init__(
            f"{message} within {deadline:.1f}s",
            step=step,
            snapshot=snapshot,
            remediation=remediation,
        )


class UnreachableError(OperationError):
    """A node required by the operation did not answer."""

    exit_code = ExitCode.UNREACHABLE
    default_remediation = "Check that the node is running and reachable, then retry."


class VerificationError(OperationError):
    """The operation completed but the post-condition did not hold."""

    default_remediation = "Run 'check' and 'fix' to repair transitional state."


class PartialFailureError(OperationError):
    """
    A multi-slot migration completed some slots and failed on others.

    Attributes:
        completed: Slots fully moved to the target.
        pending: Slots never attempted.
        aborted: Slots whose migration failed (markers left for inspection).
        cause: The failure that stopped the run.
    """

    exit_code = ExitCode.PARTIAL
    default_remediation = (
        "Inspect the open slots with 'check', then run 'fix' to complete or "
        "abort them before re-planning."
    )

    def __init__(
        self,
        completed: Sequence[int],
        pending: Sequence[int],
        aborted: Sequence[int],
        cause: str,
        step: str,
        snapshot: TopologyModel | None = None,
        remediation: str | None = None,
    ) -> None:
        self.completed = tuple(completed)
        self.pending = tuple(pending)
        self.aborted = tuple(aborted)
        self.cause = cause
        super().__init__(
            f"Migration stopped after {len(self.completed)} slot(s): {cause}; "
            f"{len(self.aborted)} failed, {len(self.pending)} pending",
            step=step,
            snapshot=snapshot,
            remediation=remediation,
        )


class CancelledOperationError(OperationError):
    """
    Cancellation was requested and honoured at a checkpoint.

    Attributes:
        completed: Slots a migration had already moved (empty otherwise).
        pending: Slots a migration never attempted.
    """

    exit_code = ExitCode.CANCELLED
    default_remediation = "Run 'check' to see where the operation stopped."

    def __init__(
        self,
        message: str,
        step: str,
        snapshot: TopologyModel | None = None,
        completed: Sequence[int] = (),
        pending: Sequence[int] = (),
    ) -> None:
        self.completed = tuple(completed)
        self.pending = tuple(pending)
        super().__init__(message, step=step, snapshot=snapshot)
