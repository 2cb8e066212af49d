"""
Redis Cluster Operator

Operational control plane for a Redis-Cluster-style sharded key-value store.
This package provides:

- Node Client: typed, timeout-bounded access to one node
- Topology Model: merged, immutable cluster snapshots with conflict detection
- Health Evaluator: pure health verdicts from a snapshot plus metrics
- Orchestrators: failover, slot migration, membership and backup
- Chaos Harness: fault injection scenarios with guaranteed recovery
- Reporting: text/JSON rendering and webhook alerts
- CLI infrastructure: Typer-based `rcluster` command
"""

__version__ = "0.1.0"

# Re-export public types for convenient imports
from operator_rediscluster.errors import (
    ConflictError,
    ExitCode,
    InconsistentTopologyError,
    OperationError,
    OperationTimeoutError,
    PartialFailureError,
    PreconditionError,
)
from operator_rediscluster.health import HealthReport, HealthState, evaluate
from operator_rediscluster.node_client import NodeClient, NodeClientPool
from operator_rediscluster.observer import ClusterObserver
from operator_rediscluster.topology import build_snapshot
from operator_rediscluster.types import (
    TOTAL_SLOTS,
    NodeEndpoint,
    NodeId,
    NodeRecord,
    NodeRole,
    SlotRange,
    TopologyModel,
)

__all__ = [
    "TOTAL_SLOTS",
    "ClusterObserver",
    "ConflictError",
    "ExitCode",
    "HealthReport",
    "HealthState",
    "InconsistentTopologyError",
    "NodeClient",
    "NodeClientPool",
    "NodeEndpoint",
    "NodeId",
    "NodeRecord",
    "NodeRole",
    "OperationError",
    "OperationTimeoutError",
    "PartialFailureError",
    "PreconditionError",
    "SlotRange",
    "TopologyModel",
    "build_snapshot",
    "evaluate",
]
