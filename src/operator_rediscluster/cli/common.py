"""Shared CLI plumbing: settings, runtime wiring, output and exit codes.

Commands build a Runtime (node client pool, observer, orchestrator context)
from the settings placed on the typer context by the root callback, run one
coroutine with asyncio.run(), and map failures to the exit code taxonomy:

- OperationError subclasses exit with their own code and print the failed
  step, the last known snapshot and a remediation hint
- Configuration and argument problems exit with USAGE (2)
- Anything else exits with UNEXPECTED (1)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

import typer
from rich.console import Console

from operator_rediscluster.config import ControlPlaneSettings
from operator_rediscluster.errors import ExitCode, OperationError
from operator_rediscluster.node_client import NodeClientPool
from operator_rediscluster.observer import ClusterObserver
from operator_rediscluster.orchestration.base import OrchestratorContext
from operator_rediscluster.reporting.render import error_to_dict, snapshot_summary, to_json

T = TypeVar("T")

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)


@dataclass
class CliState:
    """Root options shared by every command (stored on ctx.obj)."""

    settings: ControlPlaneSettings
    json_output: bool = False


@dataclass
class Runtime:
    """Wired collaborators for one command invocation."""

    settings: ControlPlaneSettings
    pool: NodeClientPool
    observer: ClusterObserver
    context: OrchestratorContext


def get_state(ctx: typer.Context) -> CliState:
    state = ctx.find_root().obj
    if not isinstance(state, CliState):
        raise RuntimeError("CLI state missing; the root callback did not run")
    return state


def make_pool(settings: ControlPlaneSettings) -> NodeClientPool:
    return NodeClientPool(password=settings.password, timeout=settings.timeout)


@asynccontextmanager
async def open_runtime(settings: ControlPlaneSettings) -> AsyncIterator[Runtime]:
    """Create the pool/observer/context for one command and close the pool afterwards."""
    pool = make_pool(settings)
    observer = ClusterObserver(
        pool=pool, seeds=settings.endpoints(), discover=settings.discover
    )
    context = OrchestratorContext(
        pool=pool,
        observer=observer,
        poll=settings.poll_policy(),
        password=settings.password,
    )
    async with pool:
        yield Runtime(settings=settings, pool=pool, observer=observer, context=context)


def print_error(error: OperationError, json_output: bool) -> None:
    if json_output:
        print(to_json(error_to_dict(error)))
        return
    err_console.print(f"[bold red]Error:[/bold red] {error}")
    err_console.print(f"  [bold]Failed step:[/bold] {error.step}")
    err_console.print(f"  [bold]Last known topology:[/bold] {snapshot_summary(error.snapshot)}")
    err_console.print(f"  [bold]Remediation:[/bold] {error.remediation}")


def execute(
    state: CliState,
    command: Callable[[Runtime], Awaitable[T]],
) -> T:
    """
    Run `command` against a fresh Runtime and translate failures to exit codes.

    Raises:
        typer.Exit: On any failure, with the mapped exit code.
    """

    async def _run() -> T:
        async with open_runtime(state.settings) as runtime:
            return await command(runtime)

    try:
        return asyncio.run(_run())
    except typer.Exit:
        raise
    except OperationError as e:
        print_error(e, state.json_output)
        raise typer.Exit(int(e.exit_code))
    except (ValueError, KeyError) as e:
        # Bad references or arguments discovered after parsing
        err_console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(int(ExitCode.USAGE))
    except Exception as e:
        logger.debug("Unexpected failure", exc_info=True)
        err_console.print(f"[bold red]Unexpected error:[/bold red] {type(e).__name__}: {e}")
        raise typer.Exit(int(ExitCode.UNEXPECTED))


def emit(state: CliState, data: Any, render: Callable[[Any], Any] | None = None) -> None:
    """Print `data` as JSON, or through `render` as a rich renderable."""
    if state.json_output or render is None:
        print(to_json(data))
        return
    console.print(render(data))
