"""
Text and JSON rendering of snapshots, health reports, metrics and results.

Every renderable value is first projected to plain dicts by one of the
`*_to_dict` functions. JSON output dumps that projection as-is and the rich
tables read from the same dicts, so field names and types never differ
between the two modes.

Example:
    data = health_to_dict(report)
    if json_output:
        print(to_json(data))
    else:
        console.print(health_table(data))
"""

import json
from typing import Any, Mapping

from rich.table import Table

from operator_rediscluster.errors import (
    CancelledOperationError,
    OperationError,
    PartialFailureError,
)
from operator_rediscluster.health import HealthReport, Issue
from operator_rediscluster.slots import format_ranges, ranges_from_slots
from operator_rediscluster.types import (
    TOTAL_SLOTS,
    Metrics,
    NodeId,
    NodeRecord,
    TopologyModel,
)


def to_json(data: Any) -> str:
    return json.dumps(data, indent=2, default=str)


def node_to_dict(node: NodeRecord, reachable: bool) -> dict[str, Any]:
    return {
        "id": node.node_id,
        "address": node.endpoint.address,
        "bus_port": node.endpoint.bus_port,
        "role": node.role.value,
        "link_state": node.link_state.value,
        "replica_of": node.replica_of,
        "slots": format_ranges(node.owned_slots),
        "slot_count": node.slot_count,
        "flags": sorted(flag.value for flag in node.flags),
        "config_epoch": node.config_epoch,
        "reachable": reachable,
        "migrating": {str(slot): dest for slot, dest in sorted(node.migrating.items())},
        "importing": {str(slot): src for slot, src in sorted(node.importing.items())},
    }


def snapshot_to_dict(snapshot: TopologyModel) -> dict[str, Any]:
    """Project a TopologyModel; nodes are ordered masters first, then by id."""
    nodes = sorted(
        snapshot.nodes.values(), key=lambda n: (not n.is_master, n.node_id)
    )
    return {
        "observed_at": snapshot.observed_at.isoformat(),
        "consistent": snapshot.consistent,
        "covered_slots": snapshot.covered_slot_count(),
        "total_slots": TOTAL_SLOTS,
        "nodes": [node_to_dict(n, snapshot.is_reachable(n.node_id)) for n in nodes],
        "unreachable": [e.address for e in snapshot.unreachable],
        "slot_conflicts": [
            {
                "slots": format_ranges(c.slots),
                "claims": dict(sorted(c.claims.items())),
                "resolved_owner": c.resolved_owner,
            }
            for c in snapshot.slot_conflicts
        ],
        "membership_conflicts": [
            {
                "viewer": c.viewer,
                "missing": sorted(c.missing),
                "unexpected": sorted(c.unexpected),
            }
            for c in snapshot.membership_conflicts
        ],
        "cluster_info": {
            node_id: {
                "state": info.state,
                "slots_assigned": info.slots_assigned,
                "slots_ok": info.slots_ok,
                "known_nodes": info.known_nodes,
                "current_epoch": info.current_epoch,
            }
            for node_id, info in sorted(snapshot.cluster_info.items())
        },
    }


def slots_to_dict(snapshot: TopologyModel) -> dict[str, Any]:
    """Slot map: ranges per master, uncovered ranges and open slots."""
    owners = snapshot.slot_owners()
    uncovered = [s for s in range(TOTAL_SLOTS) if s not in owners]
    return {
        "masters": [
            {
                "id": m.node_id,
                "address": m.endpoint.address,
                "slots": format_ranges(m.owned_slots),
                "slot_count": m.slot_count,
            }
            for m in snapshot.masters()
        ],
        "uncovered": format_ranges(ranges_from_slots(uncovered)),
        "uncovered_count": len(uncovered),
        "open_slots": [
            {"slot": slot, "migrating": migrating, "importing": importing}
            for slot, (migrating, importing) in snapshot.open_slots().items()
        ],
    }


def cluster_info_to_dict(snapshot: TopologyModel) -> dict[str, Any]:
    """CLUSTER INFO per reachable node, with the cluster_state every node agrees on."""
    rows = []
    for node_id, info in sorted(snapshot.cluster_info.items()):
        node = snapshot.get(node_id)
        rows.append(
            {
                "id": node_id,
                "address": node.endpoint.address if node else None,
                "state": info.state,
                "slots_assigned": info.slots_assigned,
                "slots_ok": info.slots_ok,
                "slots_pfail": info.slots_pfail,
                "slots_fail": info.slots_fail,
                "known_nodes": info.known_nodes,
                "size": info.size,
                "current_epoch": info.current_epoch,
            }
        )
    states = {row["state"] for row in rows}
    return {
        "state": states.pop() if len(states) == 1 else "mixed",
        "nodes": rows,
        "unreachable": [e.address for e in snapshot.unreachable],
    }


def issue_to_dict(issue: Issue) -> dict[str, Any]:
    return {
        "severity": issue.severity.value,
        "node_id": issue.node_id,
        "category": issue.category,
        "message": issue.message,
    }


def health_to_dict(report: HealthReport) -> dict[str, Any]:
    return {
        "state": report.state.value,
        "issues": [issue_to_dict(i) for i in report.issues],
        "warnings": [issue_to_dict(i) for i in report.warnings],
    }


def metrics_to_dict(
    metrics: Mapping[NodeId, Metrics], snapshot: TopologyModel | None = None
) -> list[dict[str, Any]]:
    rows = []
    for node_id, m in sorted(metrics.items()):
        node = snapshot.get(node_id) if snapshot else None
        rows.append(
            {
                "id": node_id,
                "address": node.endpoint.address if node else None,
                "role": m.role.value if m.role else None,
                "used_memory_bytes": m.used_memory_bytes,
                "max_memory_bytes": m.max_memory_bytes,
                "memory_ratio": round(m.memory_ratio, 4) if m.memory_ratio is not None else None,
                "connected_clients": m.connected_clients,
                "ops_per_second": m.ops_per_second,
                "keys": m.keys,
                "replication_lag_seconds": m.replication_lag_seconds,
                "master_link_status": m.master_link_status,
                "last_save_timestamp": (
                    m.last_save_timestamp.isoformat() if m.last_save_timestamp else None
                ),
                "last_bgsave_ok": m.last_bgsave_ok,
                "aof_enabled": m.aof_enabled,
            }
        )
    return rows


def snapshot_summary(snapshot: TopologyModel | None) -> str:
    """One line describing a snapshot, for error output."""
    if snapshot is None:
        return "no snapshot available"
    masters = snapshot.masters()
    return (
        f"{len(snapshot.nodes)} node(s), {len(masters)} master(s), "
        f"{snapshot.covered_slot_count()}/{TOTAL_SLOTS} slots covered, "
        f"{len(snapshot.unreachable)} unreachable, "
        f"{'consistent' if snapshot.consistent else 'INCONSISTENT'} "
        f"(observed {snapshot.observed_at.isoformat()})"
    )


def error_to_dict(error: OperationError) -> dict[str, Any]:
    data: dict[str, Any] = {
        "error": type(error).__name__,
        "message": str(error),
        "step": error.step,
        "remediation": error.remediation,
        "exit_code": int(error.exit_code),
        "snapshot": snapshot_to_dict(error.snapshot) if error.snapshot else None,
    }
    if isinstance(error, PartialFailureError):
        data["completed"] = format_ranges(ranges_from_slots(error.completed))
        data["pending"] = format_ranges(ranges_from_slots(error.pending))
        data["aborted"] = format_ranges(ranges_from_slots(error.aborted))
        data["cause"] = error.cause
    elif isinstance(error, CancelledOperationError) and (error.completed or error.pending):
        data["completed"] = format_ranges(ranges_from_slots(error.completed))
        data["pending"] = format_ranges(ranges_from_slots(error.pending))
    return data


_STATE_STYLE = {"ok": "green", "degraded": "yellow", "failed": "red"}


def nodes_table(data: dict[str, Any]) -> Table:
    table = Table(title=f"Cluster nodes ({data['observed_at']})")
    table.add_column("ID", style="cyan")
    table.add_column("Address")
    table.add_column("Role")
    table.add_column("Master")
    table.add_column("Link")
    table.add_column("Flags")
    table.add_column("Slots", justify="right")
    table.add_column("Epoch", justify="right")

    for node in data["nodes"]:
        link = node["link_state"]
        if not node["reachable"]:
            link = f"[red]{link} (unreachable)[/red]"
        table.add_row(
            node["id"][:12],
            node["address"],
            node["role"],
            (node["replica_of"] or "-")[:12],
            link,
            ",".join(node["flags"]) or "-",
            str(node["slot_count"]),
            str(node["config_epoch"]),
        )
    return table


def slots_table(data: dict[str, Any]) -> Table:
    table = Table(title="Slot map")
    table.add_column("Master", style="cyan")
    table.add_column("Address")
    table.add_column("Count", justify="right")
    table.add_column("Ranges")
    for master in data["masters"]:
        table.add_row(
            master["id"][:12], master["address"], str(master["slot_count"]), master["slots"]
        )
    if data["uncovered_count"]:
        table.add_row("[red]uncovered[/red]", "-", str(data["uncovered_count"]), data["uncovered"])
    for entry in data["open_slots"]:
        table.add_row(
            "[yellow]open[/yellow]",
            "-",
            str(entry["slot"]),
            f"migrating={entry['migrating'] or '-'} importing={entry['importing'] or '-'}",
        )
    return table


def health_table(data: dict[str, Any]) -> Table:
    style = _STATE_STYLE.get(data["state"], "white")
    table = Table(title=f"Health: [{style}]{data['state'].upper()}[/{style}]")
    table.add_column("Severity")
    table.add_column("Node", style="cyan")
    table.add_column("Category")
    table.add_column("Message")
    for issue in data["issues"] + data["warnings"]:
        severity = issue["severity"]
        colour = "red" if severity == "critical" else "yellow"
        table.add_row(
            f"[{colour}]{severity}[/{colour}]",
            (issue["node_id"] or "-")[:12],
            issue["category"],
            issue["message"],
        )
    return table


def _bytes(value: int | None) -> str:
    if value is None:
        return "-"
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024:
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}TiB"


def metrics_table(rows: list[dict[str, Any]]) -> Table:
    table = Table(title="Node metrics")
    table.add_column("ID", style="cyan")
    table.add_column("Address")
    table.add_column("Role")
    table.add_column("Memory", justify="right")
    table.add_column("Max", justify="right")
    table.add_column("Clients", justify="right")
    table.add_column("Ops/s", justify="right")
    table.add_column("Keys", justify="right")
    table.add_column("Lag", justify="right")
    table.add_column("BGSAVE")
    for row in rows:
        table.add_row(
            row["id"][:12],
            row["address"] or "-",
            row["role"] or "-",
            _bytes(row["used_memory_bytes"]),
            _bytes(row["max_memory_bytes"]) if row["max_memory_bytes"] else "unbounded",
            str(row["connected_clients"]),
            f"{row['ops_per_second']:.0f}",
            str(row["keys"]),
            "-" if row["replication_lag_seconds"] is None else f"{row['replication_lag_seconds']}s",
            {True: "ok", False: "[red]err[/red]", None: "-"}[row["last_bgsave_ok"]],
        )
    return table


def plan_table(data: dict[str, Any]) -> Table:
    """Steps of an OperationPlan.to_dict() projection."""
    table = Table(title=f"{data['kind']} #{data['id']}: {data['status']}")
    table.add_column("#", justify="right")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Detail")
    for index, step in enumerate(data["steps"], start=1):
        status = step["status"]
        colour = {"done": "green", "failed": "red"}.get(status, "white")
        table.add_row(str(index), step["name"], f"[{colour}]{status}[/{colour}]", step["detail"])
    return table


def scenario_table(data: dict[str, Any]) -> Table:
    """Phases and failed assertions of a ScenarioResult.to_dict() projection."""
    verdict = "[green]PASSED[/green]" if data["passed"] else "[red]FAILED[/red]"
    table = Table(title=f"Scenario {data['scenario']}: {verdict}")
    table.add_column("Phase / Assertion")
    table.add_column("OK")
    table.add_column("Expected")
    table.add_column("Observed / Detail")
    for phase in data["phases"]:
        table.add_row(
            phase["phase"],
            "[green]yes[/green]" if phase["ok"] else "[red]no[/red]",
            "",
            f"{phase['detail']} ({phase['elapsed']}s)",
        )
    for failure in data["failures"]:
        table.add_row(f"  {failure['name']}", "[red]no[/red]", failure["expected"], failure["observed"])
    return table


def cluster_info_table(data: dict[str, Any]) -> Table:
    table = Table(title=f"Cluster info: {data['state']}")
    table.add_column("ID", style="cyan")
    table.add_column("Address")
    table.add_column("State")
    table.add_column("Assigned", justify="right")
    table.add_column("OK", justify="right")
    table.add_column("PFail", justify="right")
    table.add_column("Fail", justify="right")
    table.add_column("Known", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Epoch", justify="right")
    for row in data["nodes"]:
        colour = "green" if row["state"] == "ok" else "red"
        table.add_row(
            row["id"][:12],
            row["address"] or "-",
            f"[{colour}]{row['state']}[/{colour}]",
            str(row["slots_assigned"]),
            str(row["slots_ok"]),
            str(row["slots_pfail"]),
            str(row["slots_fail"]),
            str(row["known_nodes"]),
            str(row["size"]),
            str(row["current_epoch"]),
        )
    return table
