"""rcluster - operational control plane for a sharded key-value cluster."""

import logging
from pathlib import Path

import typer
from pydantic import ValidationError

from operator_rediscluster.cli import cluster, monitor
from operator_rediscluster.cli.chaos import chaos_app
from operator_rediscluster.cli.common import CliState, err_console
from operator_rediscluster.config import load_settings
from operator_rediscluster.errors import ExitCode

app = typer.Typer(
    name="rcluster",
    help="Inspect, operate and chaos-test a sharded key-value cluster",
    no_args_is_help=True,
)


@app.callback()
def root(
    ctx: typer.Context,
    config: Path = typer.Option(
        None, "--config", "-c", envvar="RCLUSTER_CONFIG", help="YAML settings file"
    ),
    node: list[str] = typer.Option(
        None, "--node", "-n", help="Seed node host:port (repeatable, overrides settings)"
    ),
    password: str = typer.Option(None, "--password", "-a", help="Node password"),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Load settings once and share them with every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings = load_settings(config, nodes=node or None, password=password)
    except (OSError, ValueError, ValidationError) as e:
        # ValidationError subclasses ValueError; both are configuration problems
        err_console.print(f"[bold red]Invalid configuration:[/bold red] {e}")
        raise typer.Exit(int(ExitCode.USAGE))
    ctx.obj = CliState(settings=settings, json_output=json_output)


# Cluster commands
app.command("status")(cluster.status)
app.command("nodes")(cluster.nodes)
app.command("slots")(cluster.slots)
app.command("info")(cluster.info)
app.command("check")(cluster.check)
app.command("fix")(cluster.fix)
app.command("failover")(cluster.failover)
app.command("reshard")(cluster.reshard)
app.command("rebalance")(cluster.rebalance)
app.command("add-node")(cluster.add_node)
app.command("del-node")(cluster.del_node)
app.command("meet")(cluster.meet)
app.command("forget")(cluster.forget)
app.command("replicate")(cluster.replicate)
app.command("backup")(cluster.backup)

# Monitoring commands
app.command("watch")(monitor.watch)
app.command("alert")(monitor.alert)
app.command("metrics")(monitor.metrics)

app.add_typer(chaos_app, name="chaos")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
