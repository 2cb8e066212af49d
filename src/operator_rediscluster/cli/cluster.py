"""Cluster inspection and operation commands.

- status: health verdict plus node table
- nodes / slots / info: topology views and CLUSTER INFO per node
- check: health report, exit 10 when the cluster is Failed
- fix: complete or abort open slots
- failover / reshard / rebalance / replicate: role and slot operations
- add-node / del-node: membership changes
- meet / forget: the bare MEET and FORGET steps of a membership change
- backup: BGSAVE every node and archive the metadata
"""

from pathlib import Path

import typer

from operator_rediscluster.cli.common import (
    Runtime,
    console,
    emit,
    execute,
    get_state,
)
from operator_rediscluster.errors import ExitCode
from operator_rediscluster.health import HealthState, evaluate
from operator_rediscluster.node_client import FailoverMode
from operator_rediscluster.orchestration import (
    BackupOrchestrator,
    FailoverOrchestrator,
    MembershipOrchestrator,
    MigrationOrchestrator,
    resolve_node,
)
from operator_rediscluster.reporting.render import (
    cluster_info_table,
    cluster_info_to_dict,
    health_table,
    health_to_dict,
    nodes_table,
    plan_table,
    slots_table,
    slots_to_dict,
    snapshot_summary,
    snapshot_to_dict,
)
from operator_rediscluster.slots import format_ranges, ranges_from_slots
from operator_rediscluster.types import NodeEndpoint, NodeRole


def status(ctx: typer.Context) -> None:
    """Show the health verdict and every node."""
    state = get_state(ctx)

    async def _status(runtime: Runtime) -> dict:
        observation = await runtime.observer.observe()
        report = evaluate(
            observation.snapshot, observation.metrics, runtime.settings.thresholds()
        )
        return {
            "summary": snapshot_summary(observation.snapshot),
            "health": health_to_dict(report),
            "snapshot": snapshot_to_dict(observation.snapshot),
        }

    data = execute(state, _status)
    if state.json_output:
        emit(state, data)
        return
    console.print(data["summary"])
    console.print(health_table(data["health"]))
    console.print(nodes_table(data["snapshot"]))


def nodes(ctx: typer.Context) -> None:
    """List cluster nodes as seen by the polled nodes."""
    state = get_state(ctx)

    async def _nodes(runtime: Runtime) -> dict:
        return snapshot_to_dict(await runtime.observer.snapshot())

    emit(state, execute(state, _nodes), nodes_table)


def slots(ctx: typer.Context) -> None:
    """Show slot ranges per master, uncovered slots and open slots."""
    state = get_state(ctx)

    async def _slots(runtime: Runtime) -> dict:
        return slots_to_dict(await runtime.observer.snapshot())

    emit(state, execute(state, _slots), slots_table)


def info(ctx: typer.Context) -> None:
    """Show CLUSTER INFO from every reachable node."""
    state = get_state(ctx)

    async def _info(runtime: Runtime) -> dict:
        return cluster_info_to_dict(await runtime.observer.snapshot())

    emit(state, execute(state, _info), cluster_info_table)


def check(ctx: typer.Context) -> None:
    """Evaluate cluster health. Exits 10 when the verdict is Failed."""
    state = get_state(ctx)

    async def _check(runtime: Runtime) -> dict:
        observation = await runtime.observer.observe()
        report = evaluate(
            observation.snapshot, observation.metrics, runtime.settings.thresholds()
        )
        return health_to_dict(report)

    data = execute(state, _check)
    emit(state, data, health_table)
    if data["state"] == HealthState.FAILED.value:
        raise typer.Exit(int(ExitCode.HEALTH_FAILED))


def fix(ctx: typer.Context) -> None:
    """Complete or abort every slot left migrating/importing."""
    state = get_state(ctx)

    async def _fix(runtime: Runtime) -> list[dict]:
        repairs = await MigrationOrchestrator(runtime.context).fix_open_slots()
        return [
            {"slot": r.slot, "action": r.action, "plan": r.plan.to_dict()} for r in repairs
        ]

    repairs = execute(state, _fix)
    if state.json_output:
        emit(state, repairs)
        return
    if not repairs:
        console.print("[green]No open slots[/green]")
    for repair in repairs:
        console.print(f"Slot {repair['slot']}: {repair['action']}")


def failover(
    ctx: typer.Context,
    node: str = typer.Argument(..., help="Replica to promote (node id, id prefix or host:port)"),
    mode: FailoverMode = typer.Option(
        FailoverMode.DEFAULT,
        "--mode",
        "-m",
        case_sensitive=False,
        help="default, force or takeover",
    ),
) -> None:
    """Promote a replica to master."""
    state = get_state(ctx)

    async def _failover(runtime: Runtime) -> dict:
        snapshot = await runtime.observer.snapshot()
        target = resolve_node(snapshot, node)
        orchestrator = FailoverOrchestrator(runtime.context, runtime.settings.promotion_policy())
        result = await orchestrator.run(target.endpoint, mode, snapshot)
        return {
            "promoted": result.promoted,
            "old_master": result.old_master,
            "slots": format_ranges(ranges_from_slots(result.slots)),
            "states": [s.value for s in result.states],
            "plan": result.plan.to_dict(),
        }

    data = execute(state, _failover)
    if state.json_output:
        emit(state, data)
        return
    console.print(plan_table(data["plan"]))
    console.print(
        f"[green]{data['promoted']} promoted[/green], now serving {data['slots'] or 'no slots'}"
    )


def reshard(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Master to move slots from"),
    target: str = typer.Argument(..., help="Master to move slots to"),
    count: int = typer.Argument(..., min=1, help="Number of slots to move"),
) -> None:
    """Move COUNT slots from SOURCE to TARGET."""
    state = get_state(ctx)

    async def _reshard(runtime: Runtime) -> dict:
        orchestrator = MigrationOrchestrator(
            runtime.context,
            key_batch=runtime.settings.key_batch,
            migrate_timeout_ms=runtime.settings.migrate_timeout_ms,
            revalidate_every=runtime.settings.revalidate_every,
        )
        result = await orchestrator.reshard(source, target, count)
        return {
            "moved": format_ranges(ranges_from_slots(result.moved)),
            "moved_count": len(result.moved),
            "plan": result.plan.to_dict(),
        }

    data = execute(state, _reshard)
    if state.json_output:
        emit(state, data)
        return
    console.print(f"[green]Moved {data['moved_count']} slot(s):[/green] {data['moved']}")


def _parse_weights(values: list[str]) -> dict[str, float]:
    weights = {}
    for value in values:
        ref, sep, weight = value.partition("=")
        if not sep:
            raise typer.BadParameter(f"expected NODE=WEIGHT, got {value!r}")
        try:
            weights[ref] = float(weight)
        except ValueError:
            raise typer.BadParameter(f"weight must be a number, got {weight!r}") from None
    return weights


def rebalance(
    ctx: typer.Context,
    weight: list[str] = typer.Option(
        [], "--weight", "-w", help="NODE=WEIGHT, repeatable (default weight 1)"
    ),
) -> None:
    """Even out slot ownership across masters."""
    state = get_state(ctx)
    refs = _parse_weights(weight)

    async def _rebalance(runtime: Runtime) -> dict:
        snapshot = await runtime.observer.snapshot()
        weights = {resolve_node(snapshot, ref).node_id: w for ref, w in refs.items()}
        orchestrator = MigrationOrchestrator(
            runtime.context,
            key_batch=runtime.settings.key_batch,
            migrate_timeout_ms=runtime.settings.migrate_timeout_ms,
            revalidate_every=runtime.settings.revalidate_every,
        )
        result = await orchestrator.rebalance(weights or None, snapshot)
        return {
            "moved_count": len(result.moved),
            "moved": format_ranges(ranges_from_slots(result.moved)),
            "plan": result.plan.to_dict(),
        }

    data = execute(state, _rebalance)
    if state.json_output:
        emit(state, data)
        return
    if not data["moved_count"]:
        console.print("[green]Already balanced[/green]")
        return
    console.print(f"[green]Moved {data['moved_count']} slot(s)[/green]")


def add_node(
    ctx: typer.Context,
    new: str = typer.Argument(..., help="host:port of the node to add"),
    existing: str = typer.Argument(..., help="host:port of any cluster member"),
    role: NodeRole = typer.Option(NodeRole.MASTER, "--role", "-r", help="master or replica"),
    master: str = typer.Option(
        None, "--master", help="Master for a replica (default: the one with fewest replicas)"
    ),
) -> None:
    """Add a node to the cluster, as an empty master or as a replica."""
    state = get_state(ctx)

    async def _add(runtime: Runtime) -> dict:
        result = await MembershipOrchestrator(runtime.context).add_node(
            NodeEndpoint.parse(new), NodeEndpoint.parse(existing), role, master
        )
        return {
            "node_id": result.node_id,
            "role": result.role.value if result.role else None,
            "master_id": result.master_id,
            "plan": result.plan.to_dict(),
        }

    data = execute(state, _add)
    if state.json_output:
        emit(state, data)
        return
    suffix = f" replicating {data['master_id']}" if data["master_id"] else ""
    console.print(f"[green]Added {data['node_id']} as {data['role']}{suffix}[/green]")


def del_node(
    ctx: typer.Context,
    node: str = typer.Argument(..., help="Node id, id prefix or host:port"),
    shutdown: bool = typer.Option(False, "--shutdown", help="Shut the node down afterwards"),
) -> None:
    """Remove a replica or an empty master from the cluster."""
    state = get_state(ctx)

    async def _remove(runtime: Runtime) -> dict:
        result = await MembershipOrchestrator(runtime.context).remove_node(node, shutdown)
        return {"node_id": result.node_id, "plan": result.plan.to_dict()}

    data = execute(state, _remove)
    if state.json_output:
        emit(state, data)
        return
    console.print(f"[green]Removed {data['node_id']}[/green]")


def meet(
    ctx: typer.Context,
    new: str = typer.Argument(..., help="host:port of the node to introduce"),
    existing: str = typer.Argument(..., help="host:port of any cluster member"),
) -> None:
    """CLUSTER MEET a node through an existing member, without changing its role."""
    state = get_state(ctx)

    async def _meet(runtime: Runtime) -> dict:
        result = await MembershipOrchestrator(runtime.context).meet(
            NodeEndpoint.parse(new), NodeEndpoint.parse(existing)
        )
        return {"node_id": result.node_id, "plan": result.plan.to_dict()}

    data = execute(state, _meet)
    if state.json_output:
        emit(state, data)
        return
    console.print(f"[green]{data['node_id']} joined through {existing}[/green]")


def forget(
    ctx: typer.Context,
    node: str = typer.Argument(..., help="Node id, id prefix or host:port"),
) -> None:
    """CLUSTER FORGET a node on every other member. Use del-node for a full removal."""
    state = get_state(ctx)

    async def _forget(runtime: Runtime) -> dict:
        result = await MembershipOrchestrator(runtime.context).forget_node(node)
        return {"node_id": result.node_id, "plan": result.plan.to_dict()}

    data = execute(state, _forget)
    if state.json_output:
        emit(state, data)
        return
    console.print(f"[green]Forgot {data['node_id']}[/green]")
    console.print(plan_table(data["plan"]))


def replicate(
    ctx: typer.Context,
    replica: str = typer.Argument(..., help="Node to reconfigure"),
    master: str = typer.Argument(..., help="Master it should replicate"),
) -> None:
    """Make REPLICA replicate MASTER."""
    state = get_state(ctx)

    async def _replicate(runtime: Runtime) -> dict:
        result = await MembershipOrchestrator(runtime.context).replicate(replica, master)
        return {
            "node_id": result.node_id,
            "master_id": result.master_id,
            "plan": result.plan.to_dict(),
        }

    data = execute(state, _replicate)
    if state.json_output:
        emit(state, data)
        return
    console.print(f"[green]{data['node_id']} now replicates {data['master_id']}[/green]")


def backup(
    ctx: typer.Context,
    directory: Path = typer.Option(None, "--dir", "-d", help="Output directory"),
) -> None:
    """BGSAVE every reachable node and archive node tables and INFO."""
    state = get_state(ctx)

    async def _backup(runtime: Runtime) -> dict:
        target = directory or runtime.settings.backup_dir
        target.mkdir(parents=True, exist_ok=True)
        orchestrator = BackupOrchestrator(
            runtime.context, target, runtime.settings.bgsave_policy()
        )
        result = await orchestrator.run()
        return {
            "archive": str(result.archive),
            "nodes": result.nodes,
            "skipped": result.skipped,
            "plan": result.plan.to_dict(),
        }

    data = execute(state, _backup)
    if state.json_output:
        emit(state, data)
        return
    console.print(f"[green]Backup written to {data['archive']}[/green] ({len(data['nodes'])} node(s))")
    for node_id, reason in data["skipped"].items():
        console.print(f"  [yellow]skipped {node_id}:[/yellow] {reason}")
