"""Chaos scenario CLI commands.

- list: available scenarios
- run: run one scenario and report phases and failed assertions
"""

from enum import Enum

import typer
from python_on_whales import DockerClient
from rich.table import Table

from operator_rediscluster.chaos import (
    SCENARIOS,
    ChaosContext,
    ChaosHarness,
    CommandNodeController,
    DockerNodeController,
    KeyspaceProbe,
    NodeController,
    connect_keyspace,
    get_scenario,
)
from operator_rediscluster.cli.common import Runtime, console, emit, err_console, execute, get_state
from operator_rediscluster.config import ControlPlaneSettings
from operator_rediscluster.errors import ExitCode
from operator_rediscluster.node_client import NodeClientPool
from operator_rediscluster.reporting.render import scenario_table

chaos_app = typer.Typer(help="Run chaos scenarios against the cluster")


class ControllerKind(str, Enum):
    """How faults are injected."""

    DOCKER = "docker"
    """Containers via python-on-whales (kill/start/pause/unpause)."""

    COMMAND = "command"
    """SHUTDOWN NOSAVE / CLIENT PAUSE plus the configured start command."""


def make_controller(
    kind: ControllerKind, settings: ControlPlaneSettings, pool: NodeClientPool
) -> NodeController:
    if kind == ControllerKind.DOCKER:
        compose = [settings.docker_compose_file] if settings.docker_compose_file else None
        return DockerNodeController(DockerClient(compose_files=compose), settings.docker_containers)
    return CommandNodeController(pool, settings.start_command)


def make_keyspace(settings: ControlPlaneSettings) -> KeyspaceProbe:
    return connect_keyspace(settings.endpoints(), settings.password, settings.timeout)


@chaos_app.command("list")
def list_scenarios(ctx: typer.Context) -> None:
    """List available scenarios."""
    state = get_state(ctx)
    data = [{"name": name, "description": cls.description} for name, cls in SCENARIOS.items()]
    if state.json_output:
        emit(state, data)
        return

    table = Table(title="Chaos scenarios")
    table.add_column("Name", style="cyan")
    table.add_column("Description")
    for row in data:
        table.add_row(row["name"], row["description"])
    console.print(table)


@chaos_app.command("run")
def run_scenario(
    ctx: typer.Context,
    name: str = typer.Argument(..., help=f"Scenario ({', '.join(SCENARIOS)})"),
    target: str = typer.Option(None, "--target", "-t", help="Node to aim the fault at"),
    controller: ControllerKind = typer.Option(
        ControllerKind.DOCKER, "--controller", "-c", help="docker or command"
    ),
) -> None:
    """Run a scenario. Exits 11 if any assertion fails."""
    state = get_state(ctx)
    if name not in SCENARIOS:
        err_console.print(f"[red]Unknown scenario {name!r}; choose from {', '.join(SCENARIOS)}[/red]")
        raise typer.Exit(int(ExitCode.USAGE))

    async def _run(runtime: Runtime) -> dict:
        keyspace = make_keyspace(runtime.settings)
        try:
            context = ChaosContext(
                orchestration=runtime.context,
                controller=make_controller(controller, runtime.settings, runtime.pool),
                keyspace=keyspace,
                settings=runtime.settings.chaos_settings(target),
            )
            result = await ChaosHarness(context).run(get_scenario(name))
        finally:
            await keyspace.aclose()
        return result.to_dict()

    data = execute(state, _run)
    emit(state, data, scenario_table)
    if not data["passed"]:
        raise typer.Exit(int(ExitCode.CHAOS_FAILED))
