"""
Cluster observer: snapshot plus per-node metrics in one call.

Shared by the CLI, the monitor loop, the orchestrators and the chaos
harness so every consumer polls the cluster the same way.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Sequence

from operator_rediscluster.node_client import NodeClientPool, describe, is_failure
from operator_rediscluster.topology import build_snapshot
from operator_rediscluster.types import Metrics, NodeEndpoint, NodeId, TopologyModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Observation:
    """A topology snapshot and the metrics collected right after it."""

    snapshot: TopologyModel
    metrics: dict[NodeId, Metrics] = field(default_factory=dict)


@dataclass
class ClusterObserver:
    """
    Polls a cluster through a NodeClientPool.

    Attributes:
        pool: Bounded node clients.
        seeds: Endpoints to start polling from.
        discover: Follow node tables to poll every member, not just seeds.
        timeout: Optional overall bound per endpoint poll.
    """

    pool: NodeClientPool
    seeds: Sequence[NodeEndpoint]
    discover: bool = True
    timeout: float | None = None

    async def snapshot(self) -> TopologyModel:
        return await build_snapshot(
            self.seeds, self.pool, timeout=self.timeout, discover=self.discover
        )

    async def collect_metrics(self, snapshot: TopologyModel) -> dict[NodeId, Metrics]:
        """INFO from every reachable node, in parallel. Failures are logged and skipped."""
        node_ids = sorted(snapshot.reachable)
        results = await asyncio.gather(
            *(
                self.pool.client(snapshot.nodes[node_id].endpoint).get_metrics()
                for node_id in node_ids
            )
        )

        metrics: dict[NodeId, Metrics] = {}
        for node_id, result in zip(node_ids, results):
            if is_failure(result):
                logger.warning(f"Metrics unavailable for {node_id}: {describe(result)}")
                continue
            metrics[node_id] = result
        return metrics

    async def observe(self) -> Observation:
        snapshot = await self.snapshot()
        return Observation(snapshot=snapshot, metrics=await self.collect_metrics(snapshot))
