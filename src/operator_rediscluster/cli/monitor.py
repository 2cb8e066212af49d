"""Monitoring commands.

- watch: run the monitor loop until interrupted
- alert: evaluate once and post the report to the webhook
- metrics: per-node metrics table
"""

import httpx
import typer

from operator_rediscluster.cli.common import Runtime, console, emit, err_console, execute, get_state
from operator_rediscluster.errors import ExitCode
from operator_rediscluster.health import HealthReport, evaluate
from operator_rediscluster.monitor import MonitorLoop
from operator_rediscluster.reporting.alerts import AlertSink
from operator_rediscluster.reporting.render import (
    health_table,
    health_to_dict,
    metrics_table,
    metrics_to_dict,
    to_json,
)


def watch(
    ctx: typer.Context,
    interval: float = typer.Option(
        None, "--interval", "-i", help="Seconds between checks (default from settings)"
    ),
    cycles: int = typer.Option(None, "--cycles", help="Stop after this many checks"),
) -> None:
    """
    Evaluate health continuously, alerting when findings change.

    Runs until interrupted with Ctrl+C. Alerts are posted only when
    RCLUSTER_ALERT_WEBHOOK (or alert_webhook in the config file) is set.
    """
    state = get_state(ctx)
    settings = state.settings

    def show(report: HealthReport) -> None:
        data = health_to_dict(report)
        if state.json_output:
            print(to_json(data))
        else:
            console.print(health_table(data))

    async def _watch(runtime: Runtime) -> None:
        async with httpx.AsyncClient(timeout=settings.alert_timeout) as http:
            sink = (
                AlertSink(http=http, url=settings.alert_webhook, environment=settings.environment)
                if settings.alert_webhook
                else None
            )
            loop = MonitorLoop(
                observer=runtime.observer,
                sink=sink,
                thresholds=settings.thresholds(),
                interval_seconds=interval or settings.monitor_interval,
                on_report=show,
            )
            await loop.run(max_cycles=cycles)

    if not state.json_output:
        console.print(f"Watching {len(settings.nodes)} seed node(s); press Ctrl+C to stop")
    execute(state, _watch)


def alert(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Send even when health is OK"),
) -> None:
    """Evaluate health once and post it to the alert webhook."""
    state = get_state(ctx)
    settings = state.settings
    if not settings.alert_webhook:
        err_console.print("[red]No alert webhook configured (RCLUSTER_ALERT_WEBHOOK)[/red]")
        raise typer.Exit(int(ExitCode.USAGE))

    async def _alert(runtime: Runtime) -> dict:
        observation = await runtime.observer.observe()
        report = evaluate(observation.snapshot, observation.metrics, settings.thresholds())
        async with httpx.AsyncClient(timeout=settings.alert_timeout) as http:
            sink = AlertSink(http=http, url=settings.alert_webhook, environment=settings.environment)
            delivered = await sink.send(report, force=force)
        return {"delivered": delivered, "health": health_to_dict(report)}

    data = execute(state, _alert)
    if state.json_output:
        emit(state, data)
        return
    console.print(health_table(data["health"]))
    console.print("Alert delivered" if data["delivered"] else "No alert delivered")


def metrics(ctx: typer.Context) -> None:
    """Show memory, clients, throughput, replication and persistence per node."""
    state = get_state(ctx)

    async def _metrics(runtime: Runtime) -> list[dict]:
        observation = await runtime.observer.observe()
        return metrics_to_dict(observation.metrics, observation.snapshot)

    emit(state, execute(state, _metrics), metrics_table)
