"""
In-memory cluster used by the test suite.

FakeCluster keeps one FakeNode per port and answers the raw commands that
NodeClient sends (through FakeRedis) with the same text shapes a real node
produces, so the real parsers, topology builder and orchestrators run
unmodified. It supports:

- slot ownership and MIGRATING/IMPORTING markers
- MIGRATE of keys between nodes
- manual and automatic failover (promotion can be disabled)
- stopping, starting and pausing nodes
- per-viewer slot and membership disagreements
- injected error replies for any command prefix
"""

import asyncio
import hashlib
from dataclasses import dataclass, field
from typing import Any, Iterable

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError, TimeoutError as RedisTimeoutError

from operator_rediscluster.chaos.keyspace import KeyspaceProbe
from operator_rediscluster.node_client import NodeClient, NodeClientPool
from operator_rediscluster.replies import format_node_line
from operator_rediscluster.slots import key_slot, ranges_from_slots
from operator_rediscluster.types import (
    TOTAL_SLOTS,
    LinkState,
    NodeEndpoint,
    NodeFlag,
    NodeRecord,
    NodeRole,
)

HOST = "127.0.0.1"
BASE_LASTSAVE = 1_700_000_000


def node_id_for(port: int) -> str:
    return hashlib.sha1(f"node-{port}".encode()).hexdigest()


def even_split(masters: int) -> list[range]:
    """Slot ranges the way redis-cli --cluster create splits them."""
    per_master = TOTAL_SLOTS / masters
    ranges = []
    for index in range(masters):
        start = round(index * per_master)
        end = round((index + 1) * per_master) - 1
        ranges.append(range(start, end + 1))
    return ranges


@dataclass
class FakeNode:
    """One node's state."""

    port: int
    role: NodeRole = NodeRole.MASTER
    master_id: str | None = None
    slots: set[int] = field(default_factory=set)
    migrating: dict[int, str] = field(default_factory=dict)
    importing: dict[int, str] = field(default_factory=dict)
    data: dict[str, str] = field(default_factory=dict)
    epoch: int = 0
    down: bool = False
    paused: bool = False
    known: set[str] = field(default_factory=set)
    last_save: int = BASE_LASTSAVE
    bgsave_ok: bool = True
    used_memory: int = 1_000_000
    maxmemory: int = 0
    lag: int = 0
    replaced_by: str | None = None
    view_overrides: dict[int, str | None] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.node_id = node_id_for(self.port)
        self.known.add(self.node_id)

    @property
    def endpoint(self) -> NodeEndpoint:
        return NodeEndpoint(HOST, self.port)

    @property
    def address(self) -> str:
        return f"{HOST}:{self.port}"

    @property
    def is_master(self) -> bool:
        return self.role == NodeRole.MASTER


@dataclass
class InjectedError:
    address: str
    prefix: tuple[str, ...]
    error: Exception
    times: int | None = None


class FakeRedis:
    """Stands in for redis.asyncio.Redis on one connection."""

    def __init__(self, cluster: "FakeCluster", address: str) -> None:
        self.cluster = cluster
        self.address = address
        self.closed = False

    async def execute_command(self, *args: Any) -> Any:
        await asyncio.sleep(0)
        return self.cluster.dispatch(self.address, args)

    async def aclose(self) -> None:
        self.closed = True


class FakeCluster:
    """
    A whole cluster in memory.

    Attributes:
        nodes: Port -> FakeNode.
        promotion: "immediate" promotes replicas as soon as failover is
            requested (or their master is stopped); "never" never does.
        auto_failover: Promote a replica when its master is stopped.
        commands: Every command received, as (address, args).
    """

    def __init__(self) -> None:
        self.nodes: dict[int, FakeNode] = {}
        self.promotion = "immediate"
        self.auto_failover = True
        self.commands: list[tuple[str, tuple[str, ...]]] = []
        self.injected: list[InjectedError] = []
        self.outsiders: set[int] = set()

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def create(cls, masters: int = 3, replicas: int = 1, base_port: int = 7001) -> "FakeCluster":
        """Masters first, then replicas assigned round-robin."""
        cluster = cls()
        for index, slots in enumerate(even_split(masters)):
            cluster.add_master(base_port + index, slots)
        port = base_port + masters
        for _ in range(replicas):
            for index in range(masters):
                cluster.add_replica(port, base_port + index)
                port += 1
        return cluster

    def add_master(self, port: int, slots: Iterable[int] = ()) -> FakeNode:
        node = FakeNode(port=port, slots=set(slots), epoch=len(self.nodes) + 1)
        self.nodes[port] = node
        self._meet_all(node)
        return node

    def add_replica(self, port: int, master_port: int) -> FakeNode:
        master = self.nodes[master_port]
        node = FakeNode(port=port, role=NodeRole.REPLICA, master_id=master.node_id)
        node.epoch = master.epoch
        self.nodes[port] = node
        self._meet_all(node)
        return node

    def add_standalone(self, port: int) -> FakeNode:
        """A cluster-enabled node that has not met anyone yet."""
        node = FakeNode(port=port)
        self.nodes[port] = node
        self.outsiders.add(port)
        return node

    def _meet_all(self, node: FakeNode) -> None:
        for other in self.nodes.values():
            if other is node or other.port in self.outsiders:
                continue
            node.known.add(other.node_id)
            other.known.add(node.node_id)

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def node(self, port: int) -> FakeNode:
        return self.nodes[port]

    def by_id(self, node_id: str) -> FakeNode | None:
        for node in self.nodes.values():
            if node.node_id == node_id:
                return node
        return None

    def by_address(self, host: str, port: int) -> FakeNode | None:
        node = self.nodes.get(int(port))
        if node is None or host != HOST:
            return None
        return node

    def owner(self, slot: int) -> FakeNode | None:
        for node in self.nodes.values():
            if node.is_master and slot in node.slots:
                return node
        return None

    def data_node(self, node: FakeNode) -> FakeNode:
        """Where a node's data lives (replicas read through their master)."""
        if node.is_master or node.master_id is None:
            return node
        return self.by_id(node.master_id) or node

    def endpoint(self, port: int) -> NodeEndpoint:
        return self.nodes[port].endpoint

    # -------------------------------------------------------------------------
    # Test wiring
    # -------------------------------------------------------------------------

    def client_factory(self, endpoint: NodeEndpoint) -> NodeClient:
        return NodeClient(
            endpoint=endpoint,
            redis=FakeRedis(self, endpoint.address),
            timeout=0.5,
        )

    def pool(self) -> NodeClientPool:
        return NodeClientPool(factory=self.client_factory)

    def keyspace(self) -> KeyspaceProbe:
        return KeyspaceProbe(cluster=FakeRoutingClient(self))

    def controller(self) -> "FakeController":
        return FakeController(self)

    def inject(
        self, port: int, *prefix: Any, error: Exception | None = None, times: int | None = None
    ) -> None:
        """Make commands starting with `prefix` on `port` fail with `error`."""
        self.injected.append(
            InjectedError(
                address=self.nodes[port].address,
                prefix=tuple(str(p).upper() for p in prefix),
                error=error or ResponseError("ERR injected failure"),
                times=times,
            )
        )

    def sent(self, port: int, *prefix: Any) -> list[tuple[str, ...]]:
        """Commands received by `port` that start with `prefix`."""
        address = self.nodes[port].address
        wanted = tuple(str(p).upper() for p in prefix)
        return [
            args
            for addr, args in self.commands
            if addr == address and args[: len(wanted)] == wanted
        ]

    # -------------------------------------------------------------------------
    # Faults
    # -------------------------------------------------------------------------

    def stop(self, port: int) -> None:
        node = self.nodes[port]
        node.down = True
        if node.is_master and node.slots and self.auto_failover and self.promotion != "never":
            replicas = sorted(
                (n for n in self.nodes.values() if n.master_id == node.node_id and not n.down),
                key=lambda n: n.node_id,
            )
            if replicas:
                self.promote(replicas[0])

    def start(self, port: int) -> None:
        node = self.nodes[port]
        node.down = False
        node.paused = False
        if node.replaced_by:
            node.role = NodeRole.REPLICA
            node.master_id = node.replaced_by
            node.replaced_by = None
            node.slots.clear()
            node.data = {}

    def pause(self, port: int) -> None:
        self.nodes[port].paused = True

    def resume(self, port: int) -> None:
        self.nodes[port].paused = False

    def promote(self, replica: FakeNode) -> None:
        """Make `replica` the master of its shard."""
        old = self.by_id(replica.master_id)
        replica.role = NodeRole.MASTER
        replica.master_id = None
        replica.epoch = max(n.epoch for n in self.nodes.values()) + 1
        if old is None:
            return
        replica.slots = set(old.slots)
        replica.data = old.data
        old.slots = set()
        old.data = {}
        for other in self.nodes.values():
            if other.master_id == old.node_id and other is not replica:
                other.master_id = replica.node_id
        if old.down:
            old.replaced_by = replica.node_id
        else:
            old.role = NodeRole.REPLICA
            old.master_id = replica.node_id

    # -------------------------------------------------------------------------
    # Command dispatch
    # -------------------------------------------------------------------------

    def dispatch(self, address: str, args: tuple[Any, ...]) -> Any:
        words = tuple(str(a) for a in args)
        upper = tuple(w.upper() for w in words)
        self.commands.append((address, upper))

        host, _, port = address.rpartition(":")
        node = self.by_address(host, int(port))
        if node is None or node.down:
            raise RedisConnectionError(f"Error 111 connecting to {address}. Connection refused.")
        if node.paused:
            raise RedisTimeoutError("Timeout reading from socket")

        for injected in list(self.injected):
            if injected.address == address and upper[: len(injected.prefix)] == injected.prefix:
                if injected.times is not None:
                    injected.times -= 1
                    if injected.times <= 0:
                        self.injected.remove(injected)
                raise injected.error

        command = upper[0]
        if command == "PING":
            return "PONG"
        if command == "INFO":
            section = upper[1].lower() if len(upper) > 1 else "default"
            return self.info(node, section)
        if command == "LASTSAVE":
            return node.last_save
        if command == "BGSAVE":
            node.last_save += 1
            return "Background saving started"
        if command == "CLIENT":
            return "OK"
        if command == "SHUTDOWN":
            self.stop(node.port)
            raise RedisConnectionError("Connection closed by server.")
        if command == "MIGRATE":
            return self.migrate(node, words)
        if command == "CLUSTER":
            return self.cluster_command(node, upper[1], words[2:])
        raise ResponseError(f"ERR unknown command '{words[0]}'")

    def cluster_command(self, node: FakeNode, sub: str, rest: tuple[str, ...]) -> Any:
        if sub == "NODES":
            return self.cluster_nodes(node)
        if sub == "INFO":
            return self.cluster_info(node)
        if sub == "MYID":
            return node.node_id
        if sub == "COUNTKEYSINSLOT":
            slot = int(rest[0])
            return sum(1 for k in node.data if key_slot(k) == slot)
        if sub == "GETKEYSINSLOT":
            slot, count = int(rest[0]), int(rest[1])
            return sorted(k for k in node.data if key_slot(k) == slot)[:count]
        if sub == "SETSLOT":
            return self.set_slot(node, int(rest[0]), rest[1].upper(), rest[2] if len(rest) > 2 else None)
        if sub == "FAILOVER":
            return self.failover(node, rest[0].upper() if rest else None)
        if sub == "MEET":
            return self.meet(node, rest[0], int(rest[1]))
        if sub == "FORGET":
            return self.forget(node, rest[0])
        if sub == "REPLICATE":
            return self.replicate(node, rest[0])
        if sub == "RESET":
            return self.reset(node)
        raise ResponseError(f"ERR unknown subcommand '{sub}'")

    # -------------------------------------------------------------------------
    # Replies
    # -------------------------------------------------------------------------

    def info(self, node: FakeNode, section: str) -> str:
        lines = ["# Replication"]
        if node.is_master:
            replicas = [n for n in self.nodes.values() if n.master_id == node.node_id]
            lines += ["role:master", f"connected_slaves:{sum(1 for r in replicas if not r.down)}"]
        else:
            master = self.by_id(node.master_id)
            link = "up" if master is not None and not master.down else "down"
            lines += [
                "role:slave",
                f"master_host:{HOST}",
                f"master_port:{master.port if master else 0}",
                f"master_link_status:{link}",
                f"master_last_io_seconds_ago:{node.lag}",
                "connected_slaves:0",
            ]
        if section == "replication":
            return "\r\n".join(lines) + "\r\n"

        keys = len(self.data_node(node).data)
        text = [
            "# Server",
            "redis_version:7.2.4",
            f"tcp_port:{node.port}",
            "# Clients",
            "connected_clients:2",
            "# Memory",
            f"used_memory:{node.used_memory}",
            f"maxmemory:{node.maxmemory}",
            "# Persistence",
            f"rdb_last_save_time:{node.last_save}",
            f"rdb_last_bgsave_status:{'ok' if node.bgsave_ok else 'err'}",
            "aof_enabled:0",
            "# Stats",
            "instantaneous_ops_per_sec:12",
            *lines,
            "# Keyspace",
        ]
        if keys:
            text.append(f"db0:keys={keys},expires=0,avg_ttl=0")
        return "\r\n".join(text) + "\r\n"

    def _view_slots(self, viewer: FakeNode) -> dict[str, set[int]]:
        owned = {n.node_id: set(n.slots) for n in self.nodes.values() if n.is_master}
        for slot, owner in viewer.view_overrides.items():
            for slots in owned.values():
                slots.discard(slot)
            if owner is not None:
                owned.setdefault(owner, set()).add(slot)
        return owned

    def cluster_nodes(self, viewer: FakeNode) -> str:
        owned = self._view_slots(viewer)
        lines = []
        for node_id in sorted(viewer.known):
            node = self.by_id(node_id)
            if node is None:
                continue
            is_self = node is viewer
            flags = set()
            if is_self:
                flags.add(NodeFlag.MYSELF)
            elif node.down:
                flags.add(NodeFlag.FAIL)
            record = NodeRecord(
                node_id=node.node_id,
                endpoint=NodeEndpoint(HOST, node.port, node.port + 10000),
                role=node.role,
                link_state=LinkState.DISCONNECTED if node.down and not is_self else LinkState.CONNECTED,
                replica_of=node.master_id if not node.is_master else None,
                owned_slots=ranges_from_slots(owned.get(node.node_id, ())) if node.is_master else (),
                flags=frozenset(flags),
                config_epoch=node.epoch,
                migrating=dict(node.migrating) if is_self else {},
                importing=dict(node.importing) if is_self else {},
            )
            lines.append(format_node_line(record))
        return "\n".join(lines) + "\n"

    def cluster_info(self, viewer: FakeNode) -> str:
        owned = self._view_slots(viewer)
        assigned = ok = failed = 0
        for owner_id, slots in owned.items():
            owner = self.by_id(owner_id)
            assigned += len(slots)
            if owner is not None and not owner.down:
                ok += len(slots)
            else:
                failed += len(slots)
        masters = sum(1 for slots in owned.values() if slots)
        state = "ok" if ok == TOTAL_SLOTS else "fail"
        return "\r\n".join(
            [
                f"cluster_state:{state}",
                f"cluster_slots_assigned:{assigned}",
                f"cluster_slots_ok:{ok}",
                "cluster_slots_pfail:0",
                f"cluster_slots_fail:{failed}",
                f"cluster_known_nodes:{len(viewer.known)}",
                f"cluster_size:{masters}",
                f"cluster_current_epoch:{max(n.epoch for n in self.nodes.values())}",
                f"cluster_my_epoch:{viewer.epoch}",
            ]
        ) + "\r\n"

    # -------------------------------------------------------------------------
    # Control commands
    # -------------------------------------------------------------------------

    def set_slot(self, node: FakeNode, slot: int, mode: str, target_id: str | None) -> str:
        if mode == "STABLE":
            node.migrating.pop(slot, None)
            node.importing.pop(slot, None)
            return "OK"

        target = self.by_id(target_id) if target_id else None
        if target is None:
            raise ResponseError(f"ERR I don't know about node {target_id}")

        if mode == "IMPORTING":
            if slot in node.slots:
                raise ResponseError(f"ERR I'm already the owner of hash slot {slot}")
            node.importing[slot] = target.node_id
            return "OK"
        if mode == "MIGRATING":
            if slot not in node.slots:
                raise ResponseError(f"ERR I'm not the owner of hash slot {slot}")
            node.migrating[slot] = target.node_id
            return "OK"
        if mode == "NODE":
            holds_keys = any(key_slot(k) == slot for k in node.data)
            if slot in node.slots and target is not node and holds_keys:
                raise ResponseError(
                    f"ERR Can't assign hashslot {slot} to a different node while I "
                    f"still hold keys for this hash slot."
                )
            for other in self.nodes.values():
                other.slots.discard(slot)
            target.slots.add(slot)
            node.migrating.pop(slot, None)
            if target is node:
                node.importing.pop(slot, None)
            return "OK"
        raise ResponseError(f"ERR Invalid CLUSTER SETSLOT action {mode}")

    def migrate(self, node: FakeNode, words: tuple[str, ...]) -> str:
        host, port = words[1], int(words[2])
        keys = list(words[words.index("KEYS") + 1 :]) if "KEYS" in words else []
        replace = "REPLACE" in words[6:]
        target = self.by_address(host, port)
        if target is None or target.down:
            raise ResponseError("IOERR error or timeout connecting to the client")
        present = [k for k in keys if k in node.data]
        if not present:
            return "NOKEY"
        for key in present:
            if key in target.data and not replace:
                raise ResponseError("BUSYKEY Target key name already exists.")
        for key in present:
            target.data[key] = node.data.pop(key)
        return "OK"

    def failover(self, node: FakeNode, option: str | None) -> str:
        if node.is_master:
            raise ResponseError("ERR You should send CLUSTER FAILOVER to a replica")
        master = self.by_id(node.master_id)
        if option is None and (master is None or master.down):
            raise ResponseError(
                "ERR Master is down or failed, please use CLUSTER FAILOVER FORCE"
            )
        if self.promotion == "immediate":
            self.promote(node)
        return "OK"

    def meet(self, node: FakeNode, host: str, port: int) -> str:
        other = self.by_address(host, port)
        if other is None or other.down:
            raise ResponseError(f"ERR Invalid node address specified: {host}:{port}")
        members = set(node.known)
        for member_id in members:
            member = self.by_id(member_id)
            if member is not None:
                member.known.add(other.node_id)
        other.known |= members
        self.outsiders.discard(other.port)
        return "OK"

    def forget(self, node: FakeNode, node_id: str) -> str:
        if node_id == node.node_id:
            raise ResponseError("ERR I tried hard but I can't forget myself...")
        if node_id == node.master_id:
            raise ResponseError("ERR Can't forget my master!")
        if node_id not in node.known:
            raise ResponseError(f"ERR Unknown node {node_id}")
        node.known.discard(node_id)
        return "OK"

    def replicate(self, node: FakeNode, master_id: str) -> str:
        master = self.by_id(master_id)
        if master is None or master_id not in node.known:
            raise ResponseError(f"ERR Unknown node {master_id}")
        if master is node:
            raise ResponseError("ERR Can't replicate myself")
        if not master.is_master:
            raise ResponseError("ERR I can only replicate a master, not a replica.")
        if node.is_master and (node.slots or node.data):
            raise ResponseError(
                "ERR To set a master the node must be empty and without assigned slots."
            )
        node.role = NodeRole.REPLICA
        node.master_id = master.node_id
        return "OK"

    def reset(self, node: FakeNode) -> str:
        """CLUSTER RESET SOFT: forget every peer and become an empty master."""
        if node.is_master and node.data:
            raise ResponseError("ERR CLUSTER RESET can't be called with master nodes containing keys")
        node.known = {node.node_id}
        node.role = NodeRole.MASTER
        node.master_id = None
        node.slots.clear()
        node.migrating.clear()
        node.importing.clear()
        self.outsiders.add(node.port)
        return "OK"


class FakeRoutingClient:
    """
    Key reads and writes routed to the slot owner.

    Follows the ASK rule: a key missing from an owner that is migrating the
    slot is looked up on the destination.
    """

    def __init__(self, cluster: FakeCluster) -> None:
        self.cluster = cluster
        self.closed = False

    def _route(self, key: str) -> FakeNode:
        slot = key_slot(key)
        owner = self.cluster.owner(slot)
        if owner is None:
            raise RedisConnectionError(f"Slot {slot} is not served")
        if owner.down:
            raise RedisConnectionError(f"Error 111 connecting to {owner.address}.")
        if owner.paused:
            raise RedisTimeoutError("Timeout reading from socket")
        if key not in owner.data and slot in owner.migrating:
            destination = self.cluster.by_id(owner.migrating[slot])
            if destination is not None and key in destination.data:
                return destination
        return owner

    async def set(self, key: str, value: str) -> bool:
        await asyncio.sleep(0)
        self._route(key).data[key] = value
        return True

    async def get(self, key: str) -> str | None:
        await asyncio.sleep(0)
        return self._route(key).data.get(key)

    async def delete(self, *keys: str) -> int:
        await asyncio.sleep(0)
        deleted = 0
        for key in keys:
            node = self._route(key)
            if node.data.pop(key, None) is not None:
                deleted += 1
        return deleted

    async def aclose(self) -> None:
        self.closed = True


class FakeController:
    """NodeController that flips FakeCluster state."""

    def __init__(self, cluster: FakeCluster) -> None:
        self.cluster = cluster
        self.actions: list[tuple[str, str]] = []

    async def _record(self, action: str, endpoint: NodeEndpoint) -> dict[str, Any]:
        await asyncio.sleep(0)
        self.actions.append((action, endpoint.address))
        return {"action": action, "endpoint": endpoint.address}

    async def stop(self, endpoint: NodeEndpoint) -> dict[str, Any]:
        self.cluster.stop(endpoint.port)
        return await self._record("stop", endpoint)

    async def start(self, endpoint: NodeEndpoint) -> dict[str, Any]:
        self.cluster.start(endpoint.port)
        return await self._record("start", endpoint)

    async def pause(self, endpoint: NodeEndpoint, seconds: float) -> dict[str, Any]:
        self.cluster.pause(endpoint.port)
        return await self._record("pause", endpoint)

    async def resume(self, endpoint: NodeEndpoint) -> dict[str, Any]:
        self.cluster.resume(endpoint.port)
        return await self._record("resume", endpoint)
