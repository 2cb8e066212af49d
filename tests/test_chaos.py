"""
Tests for the chaos harness and the named scenarios.

These tests verify:
- Every built-in scenario passes against a healthy in-memory cluster
- A failed expectation is reported by name with expected and observed values
- recover and cleanup run even when an earlier phase raises
- recover keeps restarting nodes after one restart fails
- Results render without private bookkeeping
"""

import pytest

from operator_rediscluster.chaos.faults import FaultInjectionError
from operator_rediscluster.chaos.harness import (
    ChaosContext,
    ChaosHarness,
    ChaosSettings,
    Phase,
    Scenario,
)
from operator_rediscluster.chaos.scenarios import SCENARIOS, MasterDown, get_scenario
from operator_rediscluster.observer import ClusterObserver
from operator_rediscluster.orchestration.base import OrchestratorContext
from operator_rediscluster.retry import PollPolicy
from operator_rediscluster.types import NodeRole
from tests.fakes import FakeCluster, FakeController

FAST = PollPolicy(interval=0.01, deadline=1.0)


def chaos_context(fake: FakeCluster, **settings) -> ChaosContext:
    """Observer seeded with every node so losing any one of them is survivable."""
    pool = fake.pool()
    observer = ClusterObserver(pool=pool, seeds=[n.endpoint for n in fake.nodes.values()])
    orchestration = OrchestratorContext(pool=pool, observer=observer, poll=FAST)
    options = dict(
        key_count=20,
        poll=FAST,
        recovery=FAST,
        pause_seconds=0.1,
        reshard_count=200,
    )
    options.update(settings)
    return ChaosContext(
        orchestration=orchestration,
        controller=fake.controller(),
        keyspace=fake.keyspace(),
        settings=ChaosSettings(**options),
    )


def stored_keys(fake: FakeCluster, prefix: str = "failover:test") -> list[str]:
    return [k for n in fake.nodes.values() for k in n.data if k.startswith(prefix)]


class TestScenarios:
    """Each named scenario against a healthy three-shard cluster."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "name",
        ["master-down", "replica-down", "network-split", "multi-failure", "recovery", "reshard"],
    )
    async def test_scenario_passes(self, cluster, name):
        result = await ChaosHarness(chaos_context(cluster)).run(get_scenario(name))

        assert result.passed, result.to_dict()
        assert [p.phase for p in result.phases] == list(Phase)
        assert stored_keys(cluster) == []

    @pytest.mark.asyncio
    async def test_master_down_promotes_and_old_master_rejoins(self, cluster):
        ctx = chaos_context(cluster)

        result = await ChaosHarness(ctx).run(MasterDown())

        old = cluster.by_id(result.targets["master_id"])
        promoted = cluster.by_id(result.targets["replica_id"])
        assert promoted.role == NodeRole.MASTER
        assert old.role == NodeRole.REPLICA
        assert old.master_id == promoted.node_id
        assert [a for a, _ in ctx.controller.actions] == ["stop", "start"]
        assert result.targets["promotion_seconds"] >= 0

    @pytest.mark.asyncio
    async def test_reshard_returns_slots(self, cluster):
        before = {p: set(n.slots) for p, n in cluster.nodes.items()}

        result = await ChaosHarness(chaos_context(cluster)).run(get_scenario("reshard"))

        assert result.passed
        assert {p: n.slots for p, n in cluster.nodes.items()} == before

    @pytest.mark.asyncio
    async def test_conflicting_operation_is_rejected(self, cluster):
        before = {p: set(n.slots) for p, n in cluster.nodes.items()}
        ctx = chaos_context(cluster, reshard_count=1000)

        result = await ChaosHarness(ctx).run(get_scenario("conflicting-operation"))

        assert result.passed, result.to_dict()
        assert result.targets["lock_holder"].startswith("reshard#")
        assert "locked by reshard#" in result.targets["rejected_with"]
        assert all(cluster.sent(port, "CLUSTER", "FAILOVER") == [] for port in cluster.nodes)
        assert {p: n.slots for p, n in cluster.nodes.items()} == before
        assert ctx.orchestration.locks.held() == {}

    def test_registry(self):
        assert sorted(SCENARIOS) == sorted(
            [
                "master-down",
                "replica-down",
                "network-split",
                "multi-failure",
                "recovery",
                "reshard",
                "conflicting-operation",
            ]
        )

    def test_unknown_scenario(self):
        with pytest.raises(KeyError, match="choose from"):
            get_scenario("meteor-strike")


class Explodes(Scenario):
    """Stops a node, then fails before anything is checked."""

    name = "explodes"

    def __init__(self, endpoint) -> None:
        self.endpoint = endpoint

    async def inject(self, ctx, state):
        state.events.append(await ctx.controller.stop(self.endpoint))
        state.stopped.append(self.endpoint)
        raise RuntimeError("lost contact with the datacenter")


class FailsFirstStart(FakeController):
    """Controller whose first start attempt fails."""

    def __init__(self, cluster: FakeCluster) -> None:
        super().__init__(cluster)
        self.start_attempts: list[str] = []

    async def start(self, endpoint):
        self.start_attempts.append(endpoint.address)
        if len(self.start_attempts) == 1:
            raise FaultInjectionError(endpoint, "start", "container not found")
        return await super().start(endpoint)


class TestHarness:
    """Tests for phase ordering and guaranteed recovery."""

    @pytest.mark.asyncio
    async def test_recover_and_cleanup_run_after_a_raising_phase(self, cluster):
        result = await ChaosHarness(chaos_context(cluster)).run(Explodes(cluster.endpoint(7005)))

        assert not result.passed
        assert [p.phase for p in result.phases] == [
            Phase.SETUP,
            Phase.INJECT,
            Phase.RECOVER,
            Phase.CLEANUP,
        ]
        inject = result.phases[1]
        assert not inject.ok
        assert "lost contact" in inject.detail
        assert result.failures[0].name == "inject_completed"
        assert not cluster.node(7005).down
        assert stored_keys(cluster) == []

    @pytest.mark.asyncio
    async def test_unmet_expectation_is_reported(self, cluster):
        """No automatic promotion: the replica never becomes master."""
        cluster.auto_failover = False

        result = await ChaosHarness(chaos_context(cluster, poll=PollPolicy(0.01, 0.1))).run(
            MasterDown()
        )

        assert not result.passed
        failure = next(f for f in result.failures if f.name == "replica_promoted")
        assert failure.expected.startswith("role master")
        assert "replica" in failure.observed.lower()
        assert all(not n.down for n in cluster.nodes.values())

    @pytest.mark.asyncio
    async def test_setup_error_still_cleans_up(self):
        """A cluster without replicas cannot run master-down."""
        fake = FakeCluster.create(masters=3, replicas=0)

        result = await ChaosHarness(chaos_context(fake)).run(MasterDown())

        assert not result.passed
        assert result.failures[0].name == "setup_completed"
        assert "ScenarioError" in result.failures[0].observed
        assert [p.phase for p in result.phases] == [Phase.SETUP, Phase.RECOVER, Phase.CLEANUP]

    @pytest.mark.asyncio
    async def test_to_dict_hides_private_targets(self, cluster):
        result = await ChaosHarness(chaos_context(cluster)).run(MasterDown())

        rendered = result.to_dict()
        assert not any(k.startswith("_") for k in rendered["targets"])
        assert rendered["targets"]["master"].startswith("127.0.0.1:")
        assert rendered["phases"][0] == {
            "phase": "setup",
            "ok": True,
            "detail": "",
            "elapsed": rendered["phases"][0]["elapsed"],
        }

    @pytest.mark.asyncio
    async def test_failed_restart_does_not_stop_recovery(self, cluster):
        """multi-failure stops two nodes; the second is restarted even though the first cannot be."""
        ctx = chaos_context(cluster)
        controller = FailsFirstStart(cluster)
        ctx.controller = controller

        result = await ChaosHarness(ctx).run(SCENARIOS["multi-failure"]())

        assert len(controller.start_attempts) == 2
        stuck, restarted = controller.start_attempts
        assert cluster.node(int(restarted.rsplit(":", 1)[1])).down is False
        assert cluster.node(int(stuck.rsplit(":", 1)[1])).down is True
        assert not result.passed
        failure = next(f for f in result.failures if f.name == f"{stuck}_restarted")
        assert "container not found" in failure.observed
        assert [p.phase for p in result.phases][-2:] == [Phase.RECOVER, Phase.CLEANUP]
