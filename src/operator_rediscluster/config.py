"""
Control plane configuration.

Settings come from, in order of precedence: values in an optional YAML
file passed to load_settings(), RCLUSTER_* environment variables, then the
defaults below. Nested chaos settings use a double underscore in the
environment (RCLUSTER_CHAOS__KEY_COUNT=100).

The settings object is built once by the entry point and handed to the
components that need it; nothing reads configuration at import time.

Example:
    settings = load_settings(Path("cluster.yaml"))
    pool = NodeClientPool(password=settings.password, timeout=settings.timeout)
    observer = ClusterObserver(pool=pool, seeds=settings.endpoints())
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from operator_rediscluster.chaos.harness import ChaosSettings
from operator_rediscluster.health import HealthThresholds
from operator_rediscluster.retry import PollPolicy
from operator_rediscluster.types import NodeEndpoint, endpoints_from


class ChaosConfig(BaseModel):
    """Chaos scenario tunables."""

    key_prefix: str = "failover:test"
    key_count: int = Field(50, gt=0)
    poll_interval: float = Field(1.0, gt=0)
    poll_deadline: float = Field(15.0, ge=0)
    recovery_deadline: float = Field(60.0, ge=0)
    pause_seconds: float = Field(10.0, gt=0)
    reshard_count: int = Field(1000, gt=0)


class ControlPlaneSettings(BaseSettings):
    """
    Control plane configuration.

    All settings can be overridden via environment variables with the
    RCLUSTER_ prefix. For example:
        RCLUSTER_NODES='["10.0.0.1:7000", "10.0.0.2:7000"]'
        RCLUSTER_PASSWORD=secret
        RCLUSTER_ALERT_WEBHOOK=https://hooks.example.com/cluster
    """

    # Seed nodes ("host:port"); the rest of the cluster is discovered
    nodes: list[str] = Field(
        default_factory=lambda: [f"127.0.0.1:{port}" for port in range(7001, 7007)]
    )
    password: str | None = None
    discover: bool = True

    # Per-command timeout and default wait policy
    timeout: float = Field(2.0, gt=0)
    poll_interval: float = Field(1.0, gt=0)
    poll_deadline: float = Field(15.0, ge=0)
    promotion_deadline: float = Field(15.0, ge=0)
    bgsave_deadline: float = Field(60.0, ge=0)

    # Slot migration
    key_batch: int = Field(100, gt=0)
    migrate_timeout_ms: int = Field(5000, gt=0)
    revalidate_every: int = Field(100, gt=0)

    # Health thresholds
    warning_memory_ratio: float = Field(0.80, gt=0, le=1)
    critical_memory_ratio: float = Field(0.90, gt=0, le=1)
    replication_lag_seconds: int = Field(10, ge=0)

    # Alerting and monitoring
    alert_webhook: str | None = None
    alert_timeout: float = Field(5.0, gt=0)
    environment: str = "development"
    monitor_interval: float = Field(30.0, gt=0)

    backup_dir: Path = Path("backups")

    # Fault injection
    docker_compose_file: Path | None = None
    docker_containers: dict[str, str] = Field(default_factory=dict)
    start_command: str | None = None
    chaos: ChaosConfig = Field(default_factory=ChaosConfig)

    model_config = SettingsConfigDict(
        env_prefix="RCLUSTER_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @field_validator("nodes")
    @classmethod
    def _nodes_parse(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one node is required")
        for address in value:
            NodeEndpoint.parse(address)
        return value

    @model_validator(mode="after")
    def _memory_ratios_ordered(self) -> "ControlPlaneSettings":
        if self.warning_memory_ratio > self.critical_memory_ratio:
            raise ValueError("warning_memory_ratio must not exceed critical_memory_ratio")
        return self

    def endpoints(self) -> list[NodeEndpoint]:
        return endpoints_from(self.nodes)

    def poll_policy(self) -> PollPolicy:
        return PollPolicy(interval=self.poll_interval, deadline=self.poll_deadline)

    def promotion_policy(self) -> PollPolicy:
        return PollPolicy(interval=self.poll_interval, deadline=self.promotion_deadline)

    def bgsave_policy(self) -> PollPolicy:
        return PollPolicy(interval=self.poll_interval, deadline=self.bgsave_deadline)

    def thresholds(self) -> HealthThresholds:
        return HealthThresholds(
            warning_memory_ratio=self.warning_memory_ratio,
            critical_memory_ratio=self.critical_memory_ratio,
            replication_lag_seconds=self.replication_lag_seconds,
        )

    def chaos_settings(self, target: str | None = None) -> ChaosSettings:
        chaos = self.chaos
        return ChaosSettings(
            key_prefix=chaos.key_prefix,
            key_count=chaos.key_count,
            poll=PollPolicy(interval=chaos.poll_interval, deadline=chaos.poll_deadline),
            recovery=PollPolicy(interval=chaos.poll_interval, deadline=chaos.recovery_deadline),
            pause_seconds=chaos.pause_seconds,
            reshard_count=chaos.reshard_count,
            target=target,
        )


def load_settings(path: Path | None = None, **overrides: Any) -> ControlPlaneSettings:
    """
    Build settings from an optional YAML file plus the environment.

    Args:
        path: YAML file with top-level keys matching ControlPlaneSettings
            fields. None uses the environment and defaults only.
        **overrides: Values that take precedence over the file (CLI flags).
            None values are ignored.

    Raises:
        FileNotFoundError: If `path` does not exist.
        ValueError: If the file is not a YAML mapping.
        pydantic.ValidationError: If a value is invalid.
    """
    data: dict[str, Any] = {}
    if path is not None:
        with open(path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f)
        if loaded is not None and not isinstance(loaded, dict):
            raise ValueError(f"{path}: expected a mapping at the top level")
        data.update(loaded or {})
    data.update({k: v for k, v in overrides.items() if v is not None})
    return ControlPlaneSettings(**data)
