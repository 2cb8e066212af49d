"""
Tests for the failover orchestrator.

These tests verify FailoverOrchestrator correctly:
- Promotes a replica that then owns exactly the old master's slots
- Refuses masters and unreachable targets before sending anything
- Times out (without retrying) when promotion is never observed
- Walks the documented state sequence, tracked per run
- Refuses to plan when the master record is missing
"""

import asyncio
import logging
from dataclasses import replace

import pytest

from operator_rediscluster.errors import (
    ConflictError,
    OperationTimeoutError,
    PreconditionError,
)
from operator_rediscluster.node_client import FailoverMode
from operator_rediscluster.orchestration.failover import FailoverOrchestrator, FailoverState
from operator_rediscluster.orchestration.types import OperationStatus
from operator_rediscluster.retry import PollPolicy

FAST = PollPolicy(interval=0.01, deadline=0.2)


class TestFailoverSuccess:
    """Tests for a coordinated failover."""

    @pytest.mark.asyncio
    async def test_replica_takes_exact_slot_set(self, cluster, context):
        """After promotion the replica owns the old master's slots, no more and no less."""
        master, replica = cluster.node(7001), cluster.node(7004)
        old_slots = set(master.slots)

        result = await FailoverOrchestrator(context, FAST).run(replica.endpoint)

        assert result.promoted == replica.node_id
        assert result.old_master == master.node_id
        assert result.slots == frozenset(old_slots)
        assert result.plan.status == OperationStatus.SUCCEEDED

        promoted = result.snapshot.get(replica.node_id)
        assert promoted.is_master
        assert promoted.slot_set() == old_slots
        assert result.snapshot.get(master.node_id).replica_of == replica.node_id

    @pytest.mark.asyncio
    async def test_state_sequence(self, cluster, context):
        orchestrator = FailoverOrchestrator(context, FAST)
        result = await orchestrator.run(cluster.endpoint(7005))

        assert result.states == [
            FailoverState.INIT,
            FailoverState.VALIDATED,
            FailoverState.REQUESTED,
            FailoverState.AWAITING_PROMOTION,
            FailoverState.VERIFIED,
            FailoverState.DONE,
        ]

    @pytest.mark.asyncio
    async def test_force_mode_with_master_down(self, cluster, context):
        """FORCE works when the master is gone; the default mode would be rejected."""
        cluster.auto_failover = False
        cluster.stop(7002)

        result = await FailoverOrchestrator(context, FAST).run(
            cluster.endpoint(7005), mode=FailoverMode.FORCE
        )

        assert result.promoted == cluster.node(7005).node_id
        assert cluster.sent(7005, "CLUSTER", "FAILOVER") == [("CLUSTER", "FAILOVER", "FORCE")]

    @pytest.mark.asyncio
    async def test_locks_released_after_run(self, cluster, context):
        await FailoverOrchestrator(context, FAST).run(cluster.endpoint(7004))
        assert context.locks.held() == {}


class TestFailoverPreconditions:
    """Tests for rejected plans."""

    @pytest.mark.asyncio
    async def test_master_target_rejected_before_any_command(self, cluster, context, caplog):
        orchestrator = FailoverOrchestrator(context, FAST)
        caplog.set_level(logging.INFO)

        with pytest.raises(PreconditionError) as exc_info:
            await orchestrator.run(cluster.endpoint(7001))

        assert exc_info.value.step == FailoverState.INIT.value
        assert "init -> failed" in caplog.text
        assert cluster.sent(7001, "CLUSTER", "FAILOVER") == []

    @pytest.mark.asyncio
    async def test_unreachable_target_rejected(self, cluster, context):
        cluster.stop(7006)

        with pytest.raises(PreconditionError, match="unreachable"):
            await FailoverOrchestrator(context, FAST).run(cluster.endpoint(7006))

    @pytest.mark.asyncio
    async def test_default_mode_with_master_down_is_rejected(self, cluster, context):
        """The node's refusal surfaces as a precondition error with remediation."""
        cluster.auto_failover = False
        cluster.stop(7002)

        with pytest.raises(PreconditionError) as exc_info:
            await FailoverOrchestrator(context, FAST).run(cluster.endpoint(7005))

        assert exc_info.value.step == FailoverState.REQUESTED.value
        assert "--force" in exc_info.value.remediation

    @pytest.mark.asyncio
    async def test_locked_master_conflicts(self, cluster, context):
        context.locks.acquire([cluster.node(7001).node_id], owner="reshard#99")

        with pytest.raises(ConflictError) as exc_info:
            await FailoverOrchestrator(context, FAST).run(cluster.endpoint(7004))

        assert exc_info.value.holder == "reshard#99"
        assert cluster.sent(7004, "CLUSTER", "FAILOVER") == []


class TestFailoverTimeout:
    """Tests for promotion that never happens."""

    @pytest.mark.asyncio
    async def test_times_out_and_sends_failover_once(self, cluster, context, caplog):
        cluster.promotion = "never"
        caplog.set_level(logging.INFO)
        orchestrator = FailoverOrchestrator(context, FAST)

        with pytest.raises(OperationTimeoutError) as exc_info:
            await orchestrator.run(cluster.endpoint(7004))

        assert exc_info.value.step == FailoverState.AWAITING_PROMOTION.value
        assert exc_info.value.deadline == FAST.deadline
        assert exc_info.value.snapshot is not None
        assert len(cluster.sent(7004, "CLUSTER", "FAILOVER")) == 1
        assert "awaiting_promotion -> failed" in caplog.text
        assert context.locks.held() == {}


class TestFailoverRuns:
    """Tests for per-run state and planning against a partial view."""

    @pytest.mark.asyncio
    async def test_missing_master_record_is_a_precondition(self, cluster, context):
        orchestrator = FailoverOrchestrator(context, FAST)
        master_id = cluster.node(7001).node_id
        full = await orchestrator.snapshot()
        partial = replace(
            full, nodes={k: v for k, v in full.nodes.items() if k != master_id}
        )

        with pytest.raises(PreconditionError, match="missing from the cluster view") as exc_info:
            await orchestrator.run(cluster.endpoint(7004), snapshot=partial)

        assert exc_info.value.step == FailoverState.INIT.value
        assert "check" in exc_info.value.remediation
        assert cluster.sent(7004, "CLUSTER", "FAILOVER") == []

    @pytest.mark.asyncio
    async def test_concurrent_runs_keep_separate_histories(self, cluster, context):
        orchestrator = FailoverOrchestrator(context, FAST)

        first, second = await asyncio.gather(
            orchestrator.run(cluster.endpoint(7004)),
            orchestrator.run(cluster.endpoint(7005)),
        )

        for result in (first, second):
            assert result.states.count(FailoverState.INIT) == 1
            assert result.states[-1] == FailoverState.DONE
            assert len(result.states) == 6
        assert first.promoted != second.promoted
