"""
Tests for MonitorLoop.

These tests verify the monitor loop correctly:
- Alerts when the health findings change and stays quiet on repeats
- Announces recovery only after a non-OK report
- Survives an observation failure and keeps counting cycles
- Stops after max_cycles or when stop() is called
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from operator_rediscluster.health import HealthReport, HealthState, Issue, Severity
from operator_rediscluster.monitor import MonitorLoop, report_signature


@pytest.fixture
def sink():
    sink = MagicMock()
    sink.send = AsyncMock(return_value=True)
    return sink


class TestReportSignature:
    """Tests for report_signature."""

    def test_message_changes_do_not_matter(self):
        first = HealthReport(
            state=HealthState.DEGRADED,
            warnings=(Issue(Severity.WARNING, "n1", "memory", "memory at 81%"),),
        )
        second = HealthReport(
            state=HealthState.DEGRADED,
            warnings=(Issue(Severity.WARNING, "n1", "memory", "memory at 83%"),),
        )
        assert report_signature(first) == report_signature(second)

    def test_new_category_changes_signature(self):
        first = HealthReport(state=HealthState.DEGRADED)
        second = HealthReport(
            state=HealthState.DEGRADED,
            warnings=(Issue(Severity.WARNING, "n1", "replication_lag", "lag 20s"),),
        )
        assert report_signature(first) != report_signature(second)


class TestCheckCycle:
    """Tests for one observe/evaluate/alert cycle."""

    @pytest.mark.asyncio
    async def test_healthy_first_cycle_sends_nothing(self, cluster, context, sink):
        loop = MonitorLoop(observer=context.observer, sink=sink)

        report = await loop.check_cycle()

        assert report.state == HealthState.OK
        sink.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_alert_on_change_only(self, cluster, context, sink):
        loop = MonitorLoop(observer=context.observer, sink=sink)
        await loop.check_cycle()

        cluster.auto_failover = False
        cluster.stop(7003)
        failed = await loop.check_cycle()
        again = await loop.check_cycle()

        assert failed.state == HealthState.FAILED
        assert again.state == HealthState.FAILED
        sink.send.assert_awaited_once_with(failed)

    @pytest.mark.asyncio
    async def test_recovery_alert(self, cluster, context, sink):
        loop = MonitorLoop(observer=context.observer, sink=sink)
        cluster.auto_failover = False
        cluster.stop(7003)
        await loop.check_cycle()

        cluster.start(7003)
        recovered = await loop.check_cycle()

        assert recovered.state == HealthState.OK
        assert sink.send.await_count == 2
        sink.send.assert_awaited_with(recovered, title="Cluster health recovered", force=True)

    @pytest.mark.asyncio
    async def test_observation_failure_is_survived(self, sink):
        observer = MagicMock()
        observer.observe = AsyncMock(side_effect=RuntimeError("boom"))
        loop = MonitorLoop(observer=observer, sink=sink)

        assert await loop.check_cycle() is None
        assert loop._cycles == 1
        sink.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_on_report_callback(self, cluster, context):
        seen = []
        loop = MonitorLoop(observer=context.observer, on_report=seen.append)

        await loop.check_cycle()

        assert [r.state for r in seen] == [HealthState.OK]


class TestRun:
    """Tests for the long-running loop."""

    @pytest.mark.asyncio
    async def test_max_cycles(self, cluster, context):
        loop = MonitorLoop(observer=context.observer, interval_seconds=0.01)

        await loop.run(max_cycles=3)

        assert loop._cycles == 3

    @pytest.mark.asyncio
    async def test_stop_before_run(self, cluster, context):
        loop = MonitorLoop(observer=context.observer, interval_seconds=0.01)
        loop.stop()

        await loop.run()

        assert loop._cycles == 0
