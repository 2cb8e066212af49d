"""
Node client for one store endpoint.

This module provides NodeClient, a thin async adapter over an injected
redis.asyncio.Redis connection. Every call is bounded by an explicit timeout
and returns a typed result instead of raising:

- Unreachable: connection refused, timeout, or a reply that failed to parse
- Rejected: the node answered with an error reply
- Ack: a control command was accepted
- Alive: PING answered (with round-trip latency)

Callers treat Unreachable as a first-class state. Reply text parsing is
delegated to replies.py.

Example:
    async with NodeClientPool(password=None, timeout=2.0) as pool:
        client = pool.client(NodeEndpoint("10.0.0.1", 7000))
        result = await client.get_cluster_nodes()
        if isinstance(result, Unreachable):
            print(f"down: {result.reason}")
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, TypeVar

import redis.asyncio as redis
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    RedisError,
    ResponseError,
    TimeoutError as RedisTimeoutError,
)

from operator_rediscluster.replies import (
    ReplyParseError,
    parse_cluster_info,
    parse_cluster_nodes,
    parse_metrics,
    parse_replication,
)
from operator_rediscluster.types import (
    ClusterInfo,
    Metrics,
    NodeEndpoint,
    NodeId,
    NodeRecord,
    NodeRole,
    ReplicationInfo,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT = 2.0
"""Default per-call timeout in seconds."""

# Commands whose replies must stay raw text for replies.py
RAW_REPLY_COMMANDS = ("INFO", "CLUSTER", "LASTSAVE")


# =============================================================================
# Result types
# =============================================================================


@dataclass(frozen=True)
class Unreachable:
    """Node did not answer within the timeout, or answered garbage."""

    endpoint: NodeEndpoint
    reason: str


@dataclass(frozen=True)
class Rejected:
    """Node answered with an error reply."""

    endpoint: NodeEndpoint
    command: str
    message: str


@dataclass(frozen=True)
class Ack:
    """Control command accepted."""

    endpoint: NodeEndpoint
    command: str
    reply: Any = None


@dataclass(frozen=True)
class Alive:
    """PING answered."""

    endpoint: NodeEndpoint
    latency_ms: float


Failure = Unreachable | Rejected


def is_failure(result: object) -> bool:
    return isinstance(result, (Unreachable, Rejected))


def describe(result: object) -> str:
    """Human-readable description of a failure result."""
    if isinstance(result, Unreachable):
        return f"{result.endpoint} unreachable: {result.reason}"
    if isinstance(result, Rejected):
        return f"{result.endpoint} rejected {result.command}: {result.message}"
    return repr(result)


class SetSlotMode(str, Enum):
    """CLUSTER SETSLOT subcommands."""

    IMPORTING = "IMPORTING"
    MIGRATING = "MIGRATING"
    NODE = "NODE"
    STABLE = "STABLE"


class FailoverMode(str, Enum):
    """CLUSTER FAILOVER options."""

    DEFAULT = "default"
    FORCE = "FORCE"
    TAKEOVER = "TAKEOVER"


# =============================================================================
# Client
# =============================================================================


@dataclass
class NodeClient:
    """
    Command adapter for a single store node.

    Attributes:
        endpoint: Address this client talks to.
        redis: Pre-configured redis.asyncio.Redis client (decode_responses=True,
            raw INFO/CLUSTER callbacks).
        timeout: Per-call timeout in seconds.
    """

    endpoint: NodeEndpoint
    redis: redis.Redis
    timeout: float = DEFAULT_TIMEOUT

    async def _execute(
        self, *args: Any, timeout: float | None = None
    ) -> Any | Unreachable | Rejected:
        """
        Run one command with a hard timeout.

        Never raises for store or network failures.
        """
        label = " ".join(str(a) for a in args[:2])
        try:
            return await asyncio.wait_for(
                self.redis.execute_command(*args),
                timeout=timeout or self.timeout,
            )
        except ResponseError as e:
            logger.debug(f"{self.endpoint} rejected {label}: {e}")
            return Rejected(endpoint=self.endpoint, command=label, message=str(e))
        except (RedisConnectionError, RedisTimeoutError, TimeoutError, OSError) as e:
            reason = str(e) or type(e).__name__
            logger.debug(f"{self.endpoint} unreachable during {label}: {reason}")
            return Unreachable(endpoint=self.endpoint, reason=reason)
        except RedisError as e:
            return Unreachable(endpoint=self.endpoint, reason=f"{type(e).__name__}: {e}")

    async def _query(
        self, parser: Callable[[str], T], *args: Any
    ) -> T | Unreachable | Rejected:
        reply = await self._execute(*args)
        if is_failure(reply):
            return reply
        try:
            return parser(reply)
        except ReplyParseError as e:
            logger.warning(f"{self.endpoint}: {e}")
            return Unreachable(endpoint=self.endpoint, reason=f"malformed reply: {e}")

    async def _control(self, *args: Any, timeout: float | None = None) -> Ack | Failure:
        reply = await self._execute(*args, timeout=timeout)
        if is_failure(reply):
            return reply
        return Ack(
            endpoint=self.endpoint,
            command=" ".join(str(a) for a in args[:2]),
            reply=reply,
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def ping(self) -> Alive | Unreachable | Rejected:
        started = time.monotonic()
        reply = await self._execute("PING")
        if is_failure(reply):
            return reply
        return Alive(
            endpoint=self.endpoint,
            latency_ms=(time.monotonic() - started) * 1000,
        )

    async def get_replication_info(self) -> ReplicationInfo | Failure:
        return await self._query(parse_replication, "INFO", "replication")

    async def get_role(self) -> NodeRole | Failure:
        info = await self.get_replication_info()
        if is_failure(info):
            return info
        return info.role

    async def get_cluster_nodes(self) -> list[NodeRecord] | Failure:
        """The node's own view of the cluster node table."""
        return await self._query(parse_cluster_nodes, "CLUSTER", "NODES")

    async def get_cluster_info(self) -> ClusterInfo | Failure:
        return await self._query(parse_cluster_info, "CLUSTER", "INFO")

    async def get_my_id(self) -> NodeId | Failure:
        reply = await self._execute("CLUSTER", "MYID")
        if is_failure(reply):
            return reply
        if not isinstance(reply, str) or not reply.strip():
            return Unreachable(
                endpoint=self.endpoint, reason=f"malformed reply: MYID {reply!r}"
            )
        return reply.strip()

    async def get_metrics(self) -> Metrics | Failure:
        """Metrics from a single default INFO round-trip."""
        return await self._query(parse_metrics, "INFO")

    async def info_text(self, section: str | None = None) -> str | Failure:
        """Raw INFO text, used when writing backups."""
        args = ("INFO", section) if section else ("INFO",)
        return await self._execute(*args)

    async def cluster_nodes_text(self) -> str | Failure:
        return await self._execute("CLUSTER", "NODES")

    async def last_save(self) -> int | Failure:
        reply = await self._execute("LASTSAVE")
        if is_failure(reply):
            return reply
        try:
            return int(reply)
        except (TypeError, ValueError):
            return Unreachable(
                endpoint=self.endpoint, reason=f"malformed reply: LASTSAVE {reply!r}"
            )

    async def count_keys_in_slot(self, slot: int) -> int | Failure:
        reply = await self._execute("CLUSTER", "COUNTKEYSINSLOT", slot)
        if is_failure(reply):
            return reply
        try:
            return int(reply)
        except (TypeError, ValueError):
            logger.warning(f"{self.endpoint}: unexpected COUNTKEYSINSLOT reply {reply!r}")
            return Unreachable(
                endpoint=self.endpoint,
                reason=f"malformed reply: COUNTKEYSINSLOT {reply!r}",
            )

    async def get_keys_in_slot(self, slot: int, count: int) -> list[str] | Failure:
        reply = await self._execute("CLUSTER", "GETKEYSINSLOT", slot, count)
        if is_failure(reply):
            return reply
        return list(reply)

    # -------------------------------------------------------------------------
    # Control commands
    # -------------------------------------------------------------------------

    async def meet(self, endpoint: NodeEndpoint) -> Ack | Failure:
        return await self._control("CLUSTER", "MEET", endpoint.host, endpoint.port)

    async def forget(self, node_id: NodeId) -> Ack | Failure:
        return await self._control("CLUSTER", "FORGET", node_id)

    async def replicate(self, master_id: NodeId) -> Ack | Failure:
        return await self._control("CLUSTER", "REPLICATE", master_id)

    async def reset(self, hard: bool = False) -> Ack | Failure:
        """
        CLUSTER RESET SOFT|HARD: forget every peer and drop slot assignments.

        A replica becomes an empty master. HARD also picks a new node id.
        """
        return await self._control("CLUSTER", "RESET", "HARD" if hard else "SOFT")

    async def failover(self, mode: FailoverMode = FailoverMode.DEFAULT) -> Ack | Failure:
        """
        Ask this replica to take over its master.

        Single bounded call; never retried by the client.
        """
        if mode == FailoverMode.DEFAULT:
            return await self._control("CLUSTER", "FAILOVER")
        return await self._control("CLUSTER", "FAILOVER", mode.value)

    async def set_slot(
        self, slot: int, mode: SetSlotMode, node_id: NodeId | None = None
    ) -> Ack | Failure:
        args: list[Any] = ["CLUSTER", "SETSLOT", slot, mode.value]
        if mode != SetSlotMode.STABLE:
            if node_id is None:
                raise ValueError(f"SETSLOT {mode.value} requires a node id")
            args.append(node_id)
        return await self._control(*args)

    async def migrate_keys(
        self,
        target: NodeEndpoint,
        keys: list[str],
        timeout_ms: int = 5000,
        password: str | None = None,
        replace: bool = False,
    ) -> Ack | Failure:
        """
        Move keys to another node with MIGRATE ... KEYS.

        The client-side timeout is widened by the server-side MIGRATE timeout.
        """
        args: list[Any] = ["MIGRATE", target.host, target.port, "", 0, timeout_ms]
        if replace:
            args.append("REPLACE")
        if password:
            args.extend(["AUTH", password])
        args.append("KEYS")
        args.extend(keys)
        return await self._control(*args, timeout=self.timeout + timeout_ms / 1000)

    async def bgsave(self) -> Ack | Failure:
        return await self._control("BGSAVE")

    async def client_pause(self, milliseconds: int) -> Ack | Failure:
        return await self._control("CLIENT", "PAUSE", milliseconds)

    async def client_unpause(self) -> Ack | Failure:
        return await self._control("CLIENT", "UNPAUSE")

    async def shutdown(self, save: bool = True) -> Ack | Failure:
        """
        Shut the node down.

        A dropped connection is the expected outcome and is reported as Ack.
        """
        command = "SAVE" if save else "NOSAVE"
        result = await self._control("SHUTDOWN", command)
        if isinstance(result, Unreachable):
            return Ack(endpoint=self.endpoint, command=f"SHUTDOWN {command}")
        return result

    async def aclose(self) -> None:
        await self.redis.aclose()


# =============================================================================
# Connection factory and pool
# =============================================================================


def _raw_reply(response: Any, **options: Any) -> Any:
    return response


def connect_node(
    endpoint: NodeEndpoint,
    password: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> NodeClient:
    """
    Create a NodeClient backed by a new redis.asyncio connection.

    INFO, CLUSTER and LASTSAVE replies are kept as raw text so parsing stays
    in replies.py.
    """
    client = redis.Redis(
        host=endpoint.host,
        port=endpoint.port,
        password=password,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
        decode_responses=True,
    )
    for command in RAW_REPLY_COMMANDS:
        client.set_response_callback(command, _raw_reply)
    return NodeClient(endpoint=endpoint, redis=client, timeout=timeout)


ClientFactory = Callable[[NodeEndpoint], NodeClient]


@dataclass
class NodeClientPool:
    """
    Lazily created NodeClients keyed by host:port.

    Attributes:
        password: Opaque credential passed to every node.
        timeout: Per-call timeout in seconds.
        factory: Optional override for client construction (tests inject
            fakes here).
    """

    password: str | None = None
    timeout: float = DEFAULT_TIMEOUT
    factory: ClientFactory | None = None
    _clients: dict[str, NodeClient] = field(default_factory=dict, repr=False)

    def client(self, endpoint: NodeEndpoint) -> NodeClient:
        key = endpoint.address
        if key not in self._clients:
            if self.factory is not None:
                self._clients[key] = self.factory(endpoint)
            else:
                self._clients[key] = connect_node(endpoint, self.password, self.timeout)
        return self._clients[key]

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            try:
                await client.aclose()
            except (RedisError, OSError) as e:
                logger.debug(f"Error closing client for {client.endpoint}: {e}")

    async def __aenter__(self) -> "NodeClientPool":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()
