"""Rendering (text tables and JSON) and alert delivery."""

from operator_rediscluster.reporting.alerts import AlertPayload, AlertSink, build_payload
from operator_rediscluster.reporting.render import (
    error_to_dict,
    health_to_dict,
    metrics_to_dict,
    snapshot_summary,
    snapshot_to_dict,
    slots_to_dict,
    to_json,
)

__all__ = [
    "AlertPayload",
    "AlertSink",
    "build_payload",
    "error_to_dict",
    "health_to_dict",
    "metrics_to_dict",
    "snapshot_summary",
    "snapshot_to_dict",
    "slots_to_dict",
    "to_json",
]
