"""
Shared data types for the cluster control plane.

This module defines the core data structures used to represent Redis Cluster
nodes, slot ownership and per-node metrics. These are internal types used by
the topology builder, the health evaluator and the orchestrators - not reply
models (see replies.py for the pydantic models used while parsing).

All types use frozen @dataclass so snapshots can be shared between
concurrent readers without locking.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping

TOTAL_SLOTS = 16384
"""Size of the fixed hash-slot space."""

# Type aliases for common patterns
NodeId = str
"""Opaque node identifier assigned by the store (40 hex chars)."""


class NodeRole(str, Enum):
    """Replication role of a node."""

    MASTER = "master"
    REPLICA = "replica"


class LinkState(str, Enum):
    """Cluster bus link state as reported in the node table."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class NodeFlag(str, Enum):
    """
    Flags from the CLUSTER NODES flags column.

    Role flags (master/slave) are not part of this enum; they are
    represented by NodeRole.
    """

    MYSELF = "myself"
    FAIL = "fail"
    PFAIL = "fail?"
    HANDSHAKE = "handshake"
    NOADDR = "noaddr"
    NOFAILOVER = "nofailover"


@dataclass(frozen=True, order=True)
class NodeEndpoint:
    """
    Network address of a store node.

    Attributes:
        host: Hostname or IP address.
        port: Client port.
        bus_port: Cluster bus port (defaults to port + 10000 when unknown).
    """

    host: str
    port: int
    bus_port: int | None = None

    @property
    def address(self) -> str:
        """Address in "host:port" form."""
        return f"{self.host}:{self.port}"

    def same_address(self, other: "NodeEndpoint") -> bool:
        """True if both endpoints point at the same host:port."""
        return self.host == other.host and self.port == other.port

    @classmethod
    def parse(cls, text: str) -> "NodeEndpoint":
        """
        Parse "host:port" or "host:port@busport".

        Raises:
            ValueError: If the text has no port or a non-numeric port.
        """
        address, _, bus = text.partition("@")
        # Redis 7 appends ",hostname" after the bus port
        bus = bus.split(",", 1)[0]
        host, sep, port = address.rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError(f"Invalid endpoint '{text}': expected host:port")
        return cls(
            host=host,
            port=int(port),
            bus_port=int(bus) if bus.isdigit() else None,
        )

    def __str__(self) -> str:
        return self.address


@dataclass(frozen=True, order=True)
class SlotRange:
    """Inclusive range of hash slots."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if not 0 <= self.start <= self.end < TOTAL_SLOTS:
            raise ValueError(f"Invalid slot range {self.start}-{self.end}")

    def __len__(self) -> int:
        return self.end - self.start + 1

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.start, self.end + 1))

    def __contains__(self, slot: object) -> bool:
        return isinstance(slot, int) and self.start <= slot <= self.end

    def __str__(self) -> str:
        if self.start == self.end:
            return str(self.start)
        return f"{self.start}-{self.end}"


@dataclass(frozen=True)
class NodeRecord:
    """
    One node as seen in a cluster node table.

    Attributes:
        node_id: Store-assigned node identifier.
        endpoint: Last known network address.
        role: MASTER or REPLICA.
        link_state: Cluster bus link state.
        replica_of: Master id for replicas, None for masters.
        owned_slots: Slot ranges served by this node (masters only).
        flags: State flags (MYSELF, FAIL, PFAIL, ...).
        config_epoch: Configuration epoch from the node table.
        migrating: Slot -> destination node id for slots being migrated out.
        importing: Slot -> source node id for slots being imported.
    """

    node_id: NodeId
    endpoint: NodeEndpoint
    role: NodeRole
    link_state: LinkState = LinkState.CONNECTED
    replica_of: NodeId | None = None
    owned_slots: tuple[SlotRange, ...] = ()
    flags: frozenset[NodeFlag] = frozenset()
    config_epoch: int = 0
    migrating: Mapping[int, NodeId] = field(default_factory=dict)
    importing: Mapping[int, NodeId] = field(default_factory=dict)

    @property
    def is_master(self) -> bool:
        return self.role == NodeRole.MASTER

    @property
    def is_self(self) -> bool:
        return NodeFlag.MYSELF in self.flags

    @property
    def slot_count(self) -> int:
        return sum(len(r) for r in self.owned_slots)

    def slot_set(self) -> set[int]:
        """Expand owned ranges into a set of slot numbers."""
        return {slot for r in self.owned_slots for slot in r}


@dataclass(frozen=True)
class ClusterInfo:
    """Parsed CLUSTER INFO reply from one node."""

    state: str
    slots_assigned: int
    slots_ok: int
    slots_pfail: int = 0
    slots_fail: int = 0
    known_nodes: int = 0
    size: int = 0
    current_epoch: int = 0

    @property
    def is_ok(self) -> bool:
        return self.state == "ok"


@dataclass(frozen=True)
class ReplicationInfo:
    """
    Parsed INFO replication section.

    Attributes:
        role: MASTER or REPLICA.
        master_endpoint: Endpoint of the replicated master (replicas only).
        link_status: master_link_status ("up"/"down"), replicas only.
        connected_replicas: Number of attached replicas (masters only).
        last_io_seconds_ago: Seconds since last interaction with master.
    """

    role: NodeRole
    master_endpoint: NodeEndpoint | None = None
    link_status: str | None = None
    connected_replicas: int = 0
    last_io_seconds_ago: int | None = None


@dataclass(frozen=True)
class Metrics:
    """
    Point-in-time metrics for a single node.

    Collected from one INFO round-trip. Not persisted by the control plane.

    Attributes:
        used_memory_bytes: used_memory.
        max_memory_bytes: maxmemory (0 means unbounded).
        connected_clients: connected_clients.
        ops_per_second: instantaneous_ops_per_sec.
        replication_lag_seconds: master_last_io_seconds_ago (replicas only).
        last_save_timestamp: rdb_last_save_time as a datetime.
        aof_enabled: aof_enabled flag.
        role: Replication role at collection time.
        master_link_status: master_link_status (replicas only).
        last_bgsave_ok: rdb_last_bgsave_status == "ok".
        keys: Total keys across databases from the keyspace section.
    """

    used_memory_bytes: int
    max_memory_bytes: int
    connected_clients: int
    ops_per_second: float
    replication_lag_seconds: int | None = None
    last_save_timestamp: datetime | None = None
    aof_enabled: bool | None = None
    role: NodeRole | None = None
    master_link_status: str | None = None
    last_bgsave_ok: bool | None = None
    keys: int = 0

    @property
    def memory_ratio(self) -> float | None:
        """used/max memory, None when maxmemory is unbounded."""
        if self.max_memory_bytes <= 0:
            return None
        return self.used_memory_bytes / self.max_memory_bytes


@dataclass(frozen=True)
class SlotConflict:
    """
    Disagreement between masters about who owns a set of slots.

    Attributes:
        slots: Conflicting slots as ranges.
        claims: Viewer node id -> owner id that viewer reports (None = unassigned).
        resolved_owner: Owner chosen by the epoch tie-break, None if unresolved.
    """

    slots: tuple[SlotRange, ...]
    claims: Mapping[NodeId, NodeId | None]
    resolved_owner: NodeId | None = None

    @property
    def resolved(self) -> bool:
        return self.resolved_owner is not None


@dataclass(frozen=True)
class MembershipConflict:
    """Two polled nodes know different sets of cluster members."""

    viewer: NodeId
    missing: frozenset[NodeId]
    unexpected: frozenset[NodeId]


@dataclass(frozen=True)
class TopologyModel:
    """
    Immutable snapshot of cluster topology.

    Built by merging each polled node's view. Never mutated after
    construction; orchestrators rebuild a new snapshot instead.

    Attributes:
        nodes: NodeId -> merged NodeRecord.
        observed_at: When polling finished.
        consistent: False if polled nodes disagree on slots or membership.
        slot_conflicts: Slot ownership disagreements between masters.
        membership_conflicts: Node membership disagreements.
        unreachable: Endpoints that did not answer the poll.
        cluster_info: NodeId -> CLUSTER INFO reply for reachable nodes.
        reachable: NodeIds of nodes that answered the poll.
    """

    nodes: Mapping[NodeId, NodeRecord]
    observed_at: datetime
    consistent: bool = True
    slot_conflicts: tuple[SlotConflict, ...] = ()
    membership_conflicts: tuple[MembershipConflict, ...] = ()
    unreachable: tuple[NodeEndpoint, ...] = ()
    cluster_info: Mapping[NodeId, ClusterInfo] = field(default_factory=dict)
    reachable: frozenset[NodeId] = frozenset()

    def __post_init__(self) -> None:
        # Freeze the mappings so consumers cannot mutate a shared snapshot
        object.__setattr__(self, "nodes", MappingProxyType(dict(self.nodes)))
        object.__setattr__(
            self, "cluster_info", MappingProxyType(dict(self.cluster_info))
        )

    def get(self, node_id: NodeId) -> NodeRecord | None:
        return self.nodes.get(node_id)

    def masters(self) -> list[NodeRecord]:
        """Masters sorted by node id."""
        return sorted(
            (n for n in self.nodes.values() if n.is_master), key=lambda n: n.node_id
        )

    def live_masters(self) -> list[NodeRecord]:
        """Masters that are not flagged FAIL."""
        return [m for m in self.masters() if NodeFlag.FAIL not in m.flags]

    def replicas_of(self, master_id: NodeId) -> list[NodeRecord]:
        return sorted(
            (n for n in self.nodes.values() if n.replica_of == master_id),
            key=lambda n: n.node_id,
        )

    def find_by_endpoint(self, endpoint: NodeEndpoint) -> NodeRecord | None:
        for node in self.nodes.values():
            if node.endpoint.same_address(endpoint):
                return node
        return None

    def is_reachable(self, node_id: NodeId) -> bool:
        return node_id in self.reachable

    def slot_owners(self) -> dict[int, NodeId]:
        """Slot -> owning master id, from merged records."""
        owners: dict[int, NodeId] = {}
        for master in self.masters():
            for slot_range in master.owned_slots:
                for slot in slot_range:
                    owners[slot] = master.node_id
        return owners

    def owner_of(self, slot: int) -> NodeRecord | None:
        for master in self.masters():
            if any(slot in r for r in master.owned_slots):
                return master
        return None

    def open_slots(self) -> dict[int, tuple[NodeId | None, NodeId | None]]:
        """
        Slots in a transitional state.

        Returns:
            Slot -> (migrating_node_id, importing_node_id); either side may be
            None when only one end is marked.
        """
        result: dict[int, tuple[NodeId | None, NodeId | None]] = {}
        for node in self.nodes.values():
            for slot in node.migrating:
                _, importer = result.get(slot, (None, None))
                result[slot] = (node.node_id, importer)
            for slot in node.importing:
                migrator, _ = result.get(slot, (None, None))
                result[slot] = (migrator, node.node_id)
        return dict(sorted(result.items()))

    def covered_slot_count(self) -> int:
        return len(self.slot_owners())


def endpoints_from(addresses: Iterable[str]) -> list[NodeEndpoint]:
    """Parse a list of "host:port" strings."""
    return [NodeEndpoint.parse(a.strip()) for a in addresses if a.strip()]
