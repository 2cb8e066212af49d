"""
Webhook alert sink.

Posts a JSON document to a configured URL:

    {"title": ..., "environment": ..., "timestamp": ..., "issues": [...]}

Delivery is best effort. HTTP and transport errors are logged and reported
as a False return value; they never propagate into the evaluation that
produced the alert.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx
from pydantic import BaseModel

from operator_rediscluster.health import HealthReport, HealthState
from operator_rediscluster.reporting.render import issue_to_dict

logger = logging.getLogger(__name__)


class AlertIssue(BaseModel):
    severity: str
    node_id: str | None = None
    category: str
    message: str


class AlertPayload(BaseModel):
    """Webhook body. Field names are part of the external contract."""

    title: str
    environment: str
    timestamp: datetime
    issues: list[AlertIssue]


def build_payload(
    report: HealthReport,
    environment: str,
    title: str | None = None,
    now: datetime | None = None,
) -> AlertPayload:
    """Alert for a health report; critical issues come before warnings."""
    if title is None:
        title = f"Cluster health {report.state.value.upper()} ({environment})"
    return AlertPayload(
        title=title,
        environment=environment,
        timestamp=now or datetime.now(timezone.utc),
        issues=[AlertIssue(**issue_to_dict(i)) for i in report.all_issues],
    )


@dataclass
class AlertSink:
    """
    Webhook client with an injected httpx client.

    Example:
        async with httpx.AsyncClient(timeout=5.0) as http:
            sink = AlertSink(http=http, url=settings.alert_webhook, environment="prod")
            await sink.send(report)
    """

    http: httpx.AsyncClient
    url: str
    environment: str = "default"

    async def post(self, payload: AlertPayload) -> bool:
        """POST one payload. Returns True on a 2xx response."""
        try:
            response = await self.http.post(
                self.url,
                content=payload.model_dump_json(),
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Alert delivery to {self.url} failed: {e}")
            return False
        logger.info(f"Alert delivered: {payload.title} ({len(payload.issues)} issue(s))")
        return True

    async def send(
        self, report: HealthReport, title: str | None = None, force: bool = False
    ) -> bool:
        """
        Alert on a health report.

        Args:
            report: Evaluator output.
            title: Optional title override.
            force: Send even when the report is OK.

        Returns:
            True if delivered, False if skipped or delivery failed.
        """
        if report.state == HealthState.OK and not force:
            logger.debug("Health OK, no alert sent")
            return False
        return await self.post(build_payload(report, self.environment, title))
