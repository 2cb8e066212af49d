"""
MonitorLoop daemon for continuous health checking.

This module implements the monitor loop daemon that:
- Runs at a configurable interval
- Observes the cluster (topology snapshot plus per-node metrics)
- Evaluates health with the configured thresholds
- Alerts through the webhook sink when the findings change
- Sends a recovery alert when the cluster returns to OK
- Handles graceful shutdown on SIGINT/SIGTERM

Shutdown is coordinated with an asyncio.Event; the wait between cycles is
Event.wait() bounded by the interval, so a signal ends the loop at once.
"""

import asyncio
import functools
import logging
import signal
from datetime import datetime
from typing import Callable

from operator_rediscluster.health import HealthReport, HealthState, HealthThresholds, evaluate
from operator_rediscluster.observer import ClusterObserver
from operator_rediscluster.reporting.alerts import AlertSink

logger = logging.getLogger(__name__)


def report_signature(report: HealthReport) -> tuple:
    """What must change for a new alert: state plus (severity, node, category) of each issue."""
    return (
        report.state,
        tuple(sorted({(i.severity.value, i.node_id or "", i.category) for i in report.all_issues})),
    )


class MonitorLoop:
    """
    Long-running daemon that evaluates cluster health and raises alerts.

    Example:
        loop = MonitorLoop(
            observer=ClusterObserver(pool, settings.endpoints()),
            sink=AlertSink(http, settings.alert_webhook, settings.environment),
            thresholds=settings.thresholds(),
            interval_seconds=30.0,
        )
        await loop.run()  # Runs until SIGINT/SIGTERM
    """

    def __init__(
        self,
        observer: ClusterObserver,
        sink: AlertSink | None = None,
        thresholds: HealthThresholds | None = None,
        interval_seconds: float = 30.0,
        on_report: Callable[[HealthReport], None] | None = None,
    ) -> None:
        """
        Initialize monitor loop.

        Args:
            observer: Snapshot and metrics source
            sink: Alert webhook; None disables alerting
            thresholds: Evaluator thresholds (defaults when None)
            interval_seconds: Seconds between check cycles (default 30)
            on_report: Called with every report (e.g. to print it)
        """
        self.observer = observer
        self.sink = sink
        self.thresholds = thresholds or HealthThresholds()
        self.interval = interval_seconds
        self.on_report = on_report
        self._shutdown = asyncio.Event()

        # Stats for heartbeat
        self._cycles = 0
        self._last_check: datetime | None = None
        self._last_signature: tuple | None = None

    def stop(self) -> None:
        self._shutdown.set()

    async def run(self, max_cycles: int | None = None) -> None:
        """
        Run until a shutdown signal (or `max_cycles` cycles, if given).

        Registers SIGINT and SIGTERM handlers for graceful shutdown.
        """
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, functools.partial(self._handle_signal, sig))

        logger.info(f"Monitor loop starting (interval: {self.interval}s)")
        try:
            while not self._shutdown.is_set():
                await self.check_cycle()
                if max_cycles is not None and self._cycles >= max_cycles:
                    break

                try:
                    await asyncio.wait_for(self._shutdown.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass  # Normal timeout, continue loop
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        logger.info("Monitor loop stopped")

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, shutting down...")
        self._shutdown.set()

    async def check_cycle(self) -> HealthReport | None:
        """
        Observe, evaluate and alert once.

        Returns:
            The report, or None if observation failed (the failure is logged
            and the loop keeps going).
        """
        self._last_check = datetime.now()
        self._cycles += 1

        try:
            observation = await self.observer.observe()
        except Exception as e:
            logger.error(f"Check cycle failed: {type(e).__name__}: {e}")
            return None

        report = evaluate(observation.snapshot, observation.metrics, self.thresholds)
        if self.on_report is not None:
            self.on_report(report)
        await self._maybe_alert(report)
        self._log_heartbeat(report)
        return report

    async def _maybe_alert(self, report: HealthReport) -> None:
        signature = report_signature(report)
        previous = self._last_signature
        self._last_signature = signature
        if signature == previous or self.sink is None:
            return

        if report.state == HealthState.OK:
            # Only announce recovery, not a healthy first cycle
            if previous is not None:
                await self.sink.send(report, title="Cluster health recovered", force=True)
            return
        await self.sink.send(report)

    def _log_heartbeat(self, report: HealthReport) -> None:
        status = (
            "all passing"
            if report.ok
            else f"{len(report.issues)} critical, {len(report.warnings)} warning(s)"
        )
        logger.info(f"Check complete ({report.state.value}): {status}")
