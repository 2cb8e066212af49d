"""
Multi-step operation orchestrators.

Each orchestrator plans against an immutable snapshot, locks the nodes the
plan touches for its whole lifetime, runs its steps sequentially and
re-validates the topology at checkpoints.
"""

from operator_rediscluster.orchestration.backup import BackupOrchestrator, BackupResult
from operator_rediscluster.orchestration.base import (
    Orchestrator,
    OrchestratorContext,
    resolve_node,
)
from operator_rediscluster.orchestration.failover import (
    FailoverOrchestrator,
    FailoverResult,
    FailoverState,
)
from operator_rediscluster.orchestration.membership import (
    MembershipOrchestrator,
    MembershipResult,
)
from operator_rediscluster.orchestration.migration import (
    MigrationOrchestrator,
    MigrationResult,
    RebalancePlan,
    ReshardPlan,
    SlotRepair,
)
from operator_rediscluster.orchestration.types import (
    OperationKind,
    OperationPlan,
    OperationStatus,
    Step,
    StepStatus,
)

__all__ = [
    "BackupOrchestrator",
    "BackupResult",
    "FailoverOrchestrator",
    "FailoverResult",
    "FailoverState",
    "MembershipOrchestrator",
    "MembershipResult",
    "MigrationOrchestrator",
    "MigrationResult",
    "OperationKind",
    "OperationPlan",
    "OperationStatus",
    "Orchestrator",
    "OrchestratorContext",
    "RebalancePlan",
    "ReshardPlan",
    "SlotRepair",
    "Step",
    "StepStatus",
    "resolve_node",
]
