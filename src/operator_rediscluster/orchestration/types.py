"""
Operation plan types.

This module defines the in-memory records orchestrators keep while they run:
- OperationKind: Enum for the kind of multi-step operation
- OperationStatus: Enum for plan lifecycle states
- StepStatus: Enum for per-step states
- Step: One named step with status and detail
- OperationPlan: Targets, parameters and ordered steps of one operation

Plans are owned by the orchestrator executing them and discarded after the
terminal status is reported; nothing is persisted across restarts.

Per project patterns:
- Use str enum for JSON serialization compatibility
- Dataclass with to_dict() for rendering
"""

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from operator_rediscluster.types import NodeId

_plan_ids = itertools.count(1)


class OperationKind(str, Enum):
    """Kinds of orchestrated operations."""

    FAILOVER = "failover"
    RESHARD = "reshard"
    REBALANCE = "rebalance"
    SLOT_REPAIR = "slot_repair"
    JOIN = "join"
    LEAVE = "leave"
    REPLICATE = "replicate"
    BACKUP = "backup"


class OperationStatus(str, Enum):
    """
    Plan lifecycle states.

    Plans flow through these states:
        pending -> running -> succeeded/failed/aborted
    """

    PENDING = "pending"
    """Plan computed, nothing executed yet."""

    RUNNING = "running"
    """Steps are executing."""

    SUCCEEDED = "succeeded"
    """Every step completed and the post-condition holds."""

    FAILED = "failed"
    """A step failed; transitional state is left for inspection."""

    ABORTED = "aborted"
    """Cancelled at a checkpoint before completion."""

    @property
    def terminal(self) -> bool:
        return self in (
            OperationStatus.SUCCEEDED,
            OperationStatus.FAILED,
            OperationStatus.ABORTED,
        )


class StepStatus(str, Enum):
    """Per-step states."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class Step:
    """
    One step of an operation plan.

    Attributes:
        name: Step name (e.g. "requested", "slot 42").
        status: Current step status.
        detail: Free-form outcome detail.
    """

    name: str
    status: StepStatus = StepStatus.PENDING
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "status": self.status.value, "detail": self.detail}


@dataclass
class OperationPlan:
    """
    An operation computed from a snapshot plus operator intent.

    Attributes:
        kind: What the operation does.
        targets: Node ids the operation touches (and locks).
        parameters: Operation-specific inputs (slots, counts, modes).
        steps: Ordered steps, appended as the operation proceeds.
        status: Lifecycle state.
        id: Process-local plan number, used as the lock owner.
        created_at: When the plan was computed.
    """

    kind: OperationKind
    targets: tuple[NodeId, ...]
    parameters: dict[str, Any] = field(default_factory=dict)
    steps: list[Step] = field(default_factory=list)
    status: OperationStatus = OperationStatus.PENDING
    id: int = field(default_factory=lambda: next(_plan_ids))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def owner(self) -> str:
        """Lock owner label."""
        return f"{self.kind.value}#{self.id}"

    def begin(self, name: str) -> Step:
        """Append a RUNNING step."""
        step = Step(name=name, status=StepStatus.RUNNING)
        self.steps.append(step)
        return step

    def finish(self, step: Step, detail: str = "") -> None:
        step.status = StepStatus.DONE
        step.detail = detail

    def fail(self, step: Step, detail: str) -> None:
        step.status = StepStatus.FAILED
        step.detail = detail

    @property
    def current_step(self) -> str:
        """Name of the last started step, "plan" if none started."""
        return self.steps[-1].name if self.steps else "plan"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "targets": list(self.targets),
            "parameters": self.parameters,
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "created_at": self.created_at.isoformat(),
        }
