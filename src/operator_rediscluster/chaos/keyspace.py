"""
Seeded-key integrity checks through cluster-aware routing.

Keys are written and read through redis.asyncio.cluster.RedisCluster so
MOVED/ASK redirections during failover and resharding are followed exactly
as an application would follow them.
"""

import logging
from dataclasses import dataclass
from typing import Sequence

from redis.asyncio.cluster import ClusterNode, RedisCluster
from redis.exceptions import RedisError

from operator_rediscluster.types import NodeEndpoint

logger = logging.getLogger(__name__)


def seeded_keys(prefix: str, count: int) -> dict[str, str]:
    """Deterministic key -> value pairs ("<prefix>:<i>" -> "value<i>")."""
    return {f"{prefix}:{i}": f"value{i}" for i in range(1, count + 1)}


@dataclass
class KeyspaceProbe:
    """
    Writes, verifies and deletes test keys.

    Attributes:
        cluster: Cluster-aware client (decode_responses=True).
    """

    cluster: RedisCluster

    async def seed(self, keys: dict[str, str]) -> None:
        """
        Write every key.

        Raises:
            redis.RedisError: If any write fails; seeding is part of setup.
        """
        for key, value in keys.items():
            await self.cluster.set(key, value)
        logger.info(f"Seeded {len(keys)} key(s)")

    async def verify(self, expected: dict[str, str]) -> list[str]:
        """
        Read every key back.

        Returns:
            One description per missing, mismatched or unreadable key (empty
            when every value round-trips).
        """
        problems = []
        for key, value in expected.items():
            try:
                actual = await self.cluster.get(key)
            except RedisError as e:
                problems.append(f"{key}: unreadable ({type(e).__name__}: {e})")
                continue
            if actual is None:
                problems.append(f"{key}: missing")
            elif actual != value:
                problems.append(f"{key}: expected {value!r}, got {actual!r}")
        return problems

    async def cleanup(self, keys: Sequence[str]) -> int:
        """Delete keys one at a time (they span slots). Returns keys deleted."""
        deleted = 0
        for key in keys:
            deleted += await self.cluster.delete(key)
        return deleted

    async def aclose(self) -> None:
        await self.cluster.aclose()


def connect_keyspace(
    seeds: Sequence[NodeEndpoint],
    password: str | None = None,
    timeout: float = 2.0,
) -> KeyspaceProbe:
    """Create a KeyspaceProbe over a new RedisCluster client."""
    cluster = RedisCluster(
        startup_nodes=[ClusterNode(e.host, e.port) for e in seeds],
        password=password,
        decode_responses=True,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
    )
    return KeyspaceProbe(cluster=cluster)
