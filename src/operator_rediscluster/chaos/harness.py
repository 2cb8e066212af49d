"""
Chaos scenario harness.

A scenario runs through fixed phases:

    setup -> inject -> observe -> assert -> recover -> cleanup

The first four stop at the first phase that raises. recover and cleanup
always run, even when an earlier phase failed or an assertion did not hold.
A result lists every phase record and every failed assertion by name,
expected value and observed value; a seeded-key mismatch is always a
failure, never a warning.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar

from operator_rediscluster.chaos.faults import FaultInjectionError, NodeController
from operator_rediscluster.chaos.keyspace import KeyspaceProbe, seeded_keys
from operator_rediscluster.node_client import NodeClientPool, is_failure
from operator_rediscluster.observer import ClusterObserver
from operator_rediscluster.orchestration.base import OrchestratorContext
from operator_rediscluster.retry import PollPolicy, wait_for_state
from operator_rediscluster.types import NodeEndpoint

logger = logging.getLogger(__name__)


class ScenarioError(Exception):
    """A scenario cannot run against the current cluster (e.g. no replica to fail over to)."""


class Phase(str, Enum):
    """Scenario phases, in execution order."""

    SETUP = "setup"
    INJECT = "inject"
    OBSERVE = "observe"
    ASSERT = "assert"
    RECOVER = "recover"
    CLEANUP = "cleanup"


@dataclass
class PhaseRecord:
    """
    What happened in one phase.

    Attributes:
        phase: Which phase.
        ok: False if the phase raised or recorded a failed assertion.
        detail: Error text or summary.
        elapsed: Seconds spent in the phase.
    """

    phase: Phase
    ok: bool
    detail: str = ""
    elapsed: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "ok": self.ok,
            "detail": self.detail,
            "elapsed": round(self.elapsed, 3),
        }


@dataclass(frozen=True)
class AssertionFailure:
    """One failed assertion."""

    name: str
    expected: str
    observed: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "expected": self.expected, "observed": self.observed}


@dataclass
class ScenarioState:
    """
    Mutable per-run state shared between a scenario's phases.

    Attributes:
        keys: Seeded key -> value.
        stopped: Endpoints stopped by inject and not yet restarted.
        paused: Endpoints paused and not yet resumed.
        targets: Scenario-specific facts (chosen nodes, timings).
        events: Fault metadata returned by the NodeController.
        failures: Failed assertions so far.
    """

    keys: dict[str, str] = field(default_factory=dict)
    stopped: list[NodeEndpoint] = field(default_factory=list)
    paused: list[NodeEndpoint] = field(default_factory=list)
    targets: dict[str, Any] = field(default_factory=dict)
    events: list[dict[str, Any]] = field(default_factory=list)
    failures: list[AssertionFailure] = field(default_factory=list)

    def expect(self, name: str, ok: bool, expected: str, observed: str) -> bool:
        """Record a failed assertion when `ok` is False. Returns `ok`."""
        if not ok:
            logger.warning(f"Assertion {name} failed: expected {expected}, observed {observed}")
            self.failures.append(AssertionFailure(name, expected, observed))
        return ok


@dataclass
class ScenarioResult:
    """Pass/fail with diagnostic detail."""

    scenario: str
    passed: bool
    phases: list[PhaseRecord]
    failures: list[AssertionFailure]
    events: list[dict[str, Any]]
    targets: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "scenario": self.scenario,
            "passed": self.passed,
            "phases": [p.to_dict() for p in self.phases],
            "failures": [f.to_dict() for f in self.failures],
            "events": self.events,
            "targets": {
                k: _jsonable(v)
                for k, v in sorted(self.targets.items())
                if not k.startswith("_")
            },
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, NodeEndpoint):
        return value.address
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_jsonable(v) for v in value)
    return value


@dataclass
class ChaosSettings:
    """
    Scenario tunables.

    Attributes:
        key_prefix: Prefix of seeded keys.
        key_count: Number of seeded keys (default 50).
        poll: Deadline for the expected transition (default 1s / 15s).
        recovery: Deadline for restarted nodes to rejoin (default 1s / 60s).
        pause_seconds: Length of pause faults (default 10).
        reshard_count: Slots moved by the reshard scenario (default 1000).
        target: Optional node reference to aim faults at.
    """

    key_prefix: str = "failover:test"
    key_count: int = 50
    poll: PollPolicy = field(default_factory=lambda: PollPolicy(interval=1.0, deadline=15.0))
    recovery: PollPolicy = field(default_factory=lambda: PollPolicy(interval=1.0, deadline=60.0))
    pause_seconds: float = 10.0
    reshard_count: int = 1000
    target: str | None = None


@dataclass
class ChaosContext:
    """Everything a scenario may touch."""

    orchestration: OrchestratorContext
    controller: NodeController
    keyspace: KeyspaceProbe
    settings: ChaosSettings = field(default_factory=ChaosSettings)

    @property
    def observer(self) -> ClusterObserver:
        return self.orchestration.observer

    @property
    def pool(self) -> NodeClientPool:
        return self.orchestration.pool


class Scenario:
    """
    Base scenario.

    Subclasses override inject/observe/check and, where needed, setup and
    recover. The defaults seed keys, restart whatever was stopped, resume
    whatever was paused, and delete the seeded keys.
    """

    name: ClassVar[str] = "scenario"
    description: ClassVar[str] = ""

    async def setup(self, ctx: ChaosContext, state: ScenarioState) -> None:
        state.keys = seeded_keys(ctx.settings.key_prefix, ctx.settings.key_count)
        await ctx.keyspace.seed(state.keys)

    async def inject(self, ctx: ChaosContext, state: ScenarioState) -> None:
        pass

    async def observe(self, ctx: ChaosContext, state: ScenarioState) -> None:
        pass

    async def check(self, ctx: ChaosContext, state: ScenarioState) -> None:
        pass

    async def recover(self, ctx: ChaosContext, state: ScenarioState) -> None:
        # A failed restart is recorded and the remaining nodes still get theirs
        for endpoint in list(state.paused):
            try:
                state.events.append(await ctx.controller.resume(endpoint))
            except FaultInjectionError as e:
                state.expect(f"{endpoint.address}_resumed", False, "resumed", e.reason)
                continue
            state.paused.remove(endpoint)
        for endpoint in list(state.stopped):
            try:
                state.events.append(await ctx.controller.start(endpoint))
            except FaultInjectionError as e:
                state.expect(f"{endpoint.address}_restarted", False, "restarted", e.reason)
                continue
            state.stopped.remove(endpoint)
            await self.wait_alive(ctx, state, endpoint)

    async def cleanup(self, ctx: ChaosContext, state: ScenarioState) -> None:
        if state.keys:
            await ctx.keyspace.cleanup(list(state.keys))

    async def wait_alive(
        self, ctx: ChaosContext, state: ScenarioState, endpoint: NodeEndpoint
    ) -> bool:
        client = ctx.pool.client(endpoint)
        outcome = await wait_for_state(
            probe=client.ping,
            done=lambda result: not is_failure(result),
            policy=ctx.settings.recovery,
        )
        return state.expect(
            f"{endpoint.address}_restarted",
            outcome.satisfied,
            f"answers PING within {ctx.settings.recovery.deadline:.0f}s",
            str(outcome.last),
        )


class ChaosHarness:
    """
    Runs scenarios with guaranteed recover/cleanup.

    Example:
        harness = ChaosHarness(context)
        result = await harness.run(MasterDown())
        if not result.passed:
            for failure in result.failures:
                print(failure.name, failure.expected, failure.observed)
    """

    def __init__(self, context: ChaosContext) -> None:
        self.context = context

    async def _phase(
        self,
        phase: Phase,
        fn: Callable[[ChaosContext, ScenarioState], Awaitable[None]],
        state: ScenarioState,
        records: list[PhaseRecord],
    ) -> bool:
        started = time.monotonic()
        failures_before = len(state.failures)
        logger.info(f"Chaos phase: {phase.value}")
        try:
            await fn(self.context, state)
        except Exception as e:
            # A raising phase is a reportable scenario failure, not a crash
            detail = f"{type(e).__name__}: {e}"
            logger.error(f"Phase {phase.value} failed: {detail}")
            state.failures.append(
                AssertionFailure(f"{phase.value}_completed", "phase completes", detail)
            )
            records.append(PhaseRecord(phase, False, detail, time.monotonic() - started))
            return False

        new_failures = state.failures[failures_before:]
        records.append(
            PhaseRecord(
                phase,
                not new_failures,
                ", ".join(f.name for f in new_failures),
                time.monotonic() - started,
            )
        )
        return True

    async def run(self, scenario: Scenario) -> ScenarioResult:
        state = ScenarioState()
        records: list[PhaseRecord] = []
        try:
            for phase, fn in (
                (Phase.SETUP, scenario.setup),
                (Phase.INJECT, scenario.inject),
                (Phase.OBSERVE, scenario.observe),
                (Phase.ASSERT, scenario.check),
            ):
                if not await self._phase(phase, fn, state, records):
                    break
        finally:
            await self._phase(Phase.RECOVER, scenario.recover, state, records)
            await self._phase(Phase.CLEANUP, scenario.cleanup, state, records)

        passed = not state.failures and all(r.ok for r in records)
        logger.info(f"Scenario {scenario.name}: {'passed' if passed else 'failed'}")
        return ScenarioResult(
            scenario=scenario.name,
            passed=passed,
            phases=records,
            failures=list(state.failures),
            events=list(state.events),
            targets=dict(state.targets),
        )
