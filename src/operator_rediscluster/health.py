"""
Health evaluation for cluster snapshots.

evaluate() is a pure function of a TopologyModel, per-node Metrics and
thresholds. Rules are applied independently and the resulting issues are
sorted by (severity desc, node id, category, message), so evaluating the
same inputs twice yields identical reports regardless of discovery order.

Rules:
1. topology_inconsistent (critical): masters disagree on slots or membership
2. no_reachable_nodes (critical): nothing answered the poll
3. slot_coverage (critical): slots_ok below the full slot space
4. cluster_state (critical): a node reports cluster_state other than ok
5. unreachable (critical): an endpoint did not answer
6. node_failed (critical) / node_suspected (warning): FAIL / PFAIL flags
7. memory (critical at 90%, warning at 80%; skipped for unbounded nodes)
8. replication_link (critical): replica link to master not up
9. replication_lag (warning): replica lag above threshold
10. persistence (warning): last background save failed
11. open_slot (warning): slot left migrating/importing
"""

from dataclasses import dataclass
from enum import Enum
from typing import Mapping

from operator_rediscluster.slots import format_ranges
from operator_rediscluster.types import (
    TOTAL_SLOTS,
    Metrics,
    NodeFlag,
    NodeId,
    NodeRole,
    TopologyModel,
)


class Severity(str, Enum):
    """Issue severity."""

    CRITICAL = "critical"
    WARNING = "warning"

    @property
    def rank(self) -> int:
        return 2 if self is Severity.CRITICAL else 1


class HealthState(str, Enum):
    """Aggregated cluster verdict."""

    OK = "ok"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass(frozen=True)
class Issue:
    """
    One finding from the evaluator.

    Attributes:
        severity: CRITICAL or WARNING.
        node_id: Node the issue is about, None for cluster-level issues.
        category: Rule name (e.g. "memory", "unreachable").
        message: Human-readable detail.
    """

    severity: Severity
    node_id: NodeId | None
    category: str
    message: str

    def sort_key(self) -> tuple[int, str, str, str]:
        return (-self.severity.rank, self.node_id or "", self.category, self.message)


@dataclass(frozen=True)
class HealthThresholds:
    """
    Evaluator thresholds.

    Attributes:
        warning_memory_ratio: used/max memory ratio for a warning (default 0.80)
        critical_memory_ratio: used/max memory ratio for a critical issue (default 0.90)
        replication_lag_seconds: Replica lag above which a warning is raised (default 10)
    """

    warning_memory_ratio: float = 0.80
    critical_memory_ratio: float = 0.90
    replication_lag_seconds: int = 10


@dataclass(frozen=True)
class HealthReport:
    """
    Evaluator output.

    Attributes:
        state: OK, DEGRADED or FAILED.
        issues: Critical issues, sorted.
        warnings: Warning issues, sorted.
    """

    state: HealthState
    issues: tuple[Issue, ...] = ()
    warnings: tuple[Issue, ...] = ()

    @property
    def all_issues(self) -> tuple[Issue, ...]:
        return self.issues + self.warnings

    @property
    def ok(self) -> bool:
        return self.state == HealthState.OK


def _critical(node_id: NodeId | None, category: str, message: str) -> Issue:
    return Issue(Severity.CRITICAL, node_id, category, message)


def _warning(node_id: NodeId | None, category: str, message: str) -> Issue:
    return Issue(Severity.WARNING, node_id, category, message)


def check_topology(model: TopologyModel) -> list[Issue]:
    """Consistency, coverage and reachability rules."""
    found: list[Issue] = []

    if not model.consistent:
        found.append(
            _critical(None, "topology_inconsistent", "Polled nodes disagree on the cluster view")
        )
    for conflict in model.slot_conflicts:
        claims = ", ".join(
            f"{viewer}->{owner or 'unassigned'}"
            for viewer, owner in sorted(conflict.claims.items())
        )
        resolution = (
            f"epoch favours {conflict.resolved_owner}"
            if conflict.resolved_owner
            else "unresolved"
        )
        found.append(
            _critical(
                None,
                "topology_inconsistent",
                f"Slots {format_ranges(conflict.slots)} claimed as {claims} ({resolution})",
            )
        )
    for conflict in model.membership_conflicts:
        found.append(
            _critical(
                conflict.viewer,
                "topology_inconsistent",
                f"Membership differs: missing={sorted(conflict.missing)} "
                f"unexpected={sorted(conflict.unexpected)}",
            )
        )

    if not model.reachable:
        found.append(_critical(None, "no_reachable_nodes", "No node answered the poll"))
    else:
        reports = {nid: model.cluster_info[nid] for nid in sorted(model.cluster_info)}
        if reports:
            slots_ok = min(info.slots_ok for info in reports.values())
            if slots_ok < TOTAL_SLOTS:
                found.append(
                    _critical(
                        None,
                        "slot_coverage",
                        f"Only {slots_ok}/{TOTAL_SLOTS} slots served",
                    )
                )
        for node_id, info in reports.items():
            if not info.is_ok:
                found.append(
                    _critical(node_id, "cluster_state", f"cluster_state is {info.state}")
                )

    unreachable_ids: set[NodeId] = set()
    for endpoint in model.unreachable:
        node = model.find_by_endpoint(endpoint)
        node_id = node.node_id if node else None
        if node_id:
            unreachable_ids.add(node_id)
        found.append(_critical(node_id, "unreachable", f"{endpoint} did not answer"))

    for node in model.nodes.values():
        if node.node_id in unreachable_ids:
            continue
        if NodeFlag.FAIL in node.flags:
            found.append(
                _critical(node.node_id, "node_failed", f"{node.endpoint} flagged fail")
            )
        elif NodeFlag.PFAIL in node.flags:
            found.append(
                _warning(node.node_id, "node_suspected", f"{node.endpoint} flagged fail?")
            )

    for slot, (migrating, importing) in model.open_slots().items():
        found.append(
            _warning(
                migrating or importing,
                "open_slot",
                f"Slot {slot} open (migrating={migrating or '-'}, importing={importing or '-'})",
            )
        )

    return found


def check_node_metrics(
    node_id: NodeId, metrics: Metrics, thresholds: HealthThresholds
) -> list[Issue]:
    """Memory, replication and persistence rules for one node."""
    found: list[Issue] = []

    ratio = metrics.memory_ratio
    if ratio is not None:
        detail = (
            f"Memory at {ratio:.0%} "
            f"({metrics.used_memory_bytes}/{metrics.max_memory_bytes} bytes)"
        )
        if ratio >= thresholds.critical_memory_ratio:
            found.append(_critical(node_id, "memory", detail))
        elif ratio >= thresholds.warning_memory_ratio:
            found.append(_warning(node_id, "memory", detail))

    if metrics.role == NodeRole.REPLICA:
        if metrics.master_link_status != "up":
            found.append(
                _critical(
                    node_id,
                    "replication_link",
                    f"master_link_status is {metrics.master_link_status or 'unknown'}",
                )
            )
        lag = metrics.replication_lag_seconds
        if lag is not None and lag > thresholds.replication_lag_seconds:
            found.append(
                _warning(node_id, "replication_lag", f"Replication lag {lag}s")
            )

    if metrics.last_bgsave_ok is False:
        found.append(_warning(node_id, "persistence", "Last background save failed"))

    return found


def evaluate(
    model: TopologyModel,
    metrics: Mapping[NodeId, Metrics],
    thresholds: HealthThresholds | None = None,
) -> HealthReport:
    """
    Derive a HealthReport from a snapshot and metrics.

    Pure: no I/O, no clock reads, no mutation of inputs.

    Args:
        model: Topology snapshot.
        metrics: NodeId -> Metrics for nodes that answered INFO.
        thresholds: Optional thresholds (defaults apply when None).

    Returns:
        HealthReport with FAILED if any critical issue exists, DEGRADED if
        any warning exists, OK otherwise.
    """
    thresholds = thresholds or HealthThresholds()

    found = check_topology(model)
    for node_id in sorted(metrics):
        found.extend(check_node_metrics(node_id, metrics[node_id], thresholds))

    ordered = sorted(set(found), key=Issue.sort_key)
    critical = tuple(i for i in ordered if i.severity == Severity.CRITICAL)
    warnings = tuple(i for i in ordered if i.severity == Severity.WARNING)

    if critical:
        state = HealthState.FAILED
    elif warnings:
        state = HealthState.DEGRADED
    else:
        state = HealthState.OK
    return HealthReport(state=state, issues=critical, warnings=warnings)
