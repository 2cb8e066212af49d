"""
Typed parsers for store command replies.

The store speaks a line-oriented text protocol for INFO, CLUSTER INFO and
CLUSTER NODES. All text-format handling is isolated here: each reply shape
has a parser that returns structured values or raises ReplyParseError.

Pydantic models validate the key:value sections (lax mode converts the
string values to ints); the node table is parsed field by field.

Node table format (one node per line):
    <id> <ip:port@busport[,hostname]> <flags> <master> <ping-sent> <pong-recv>
    <config-epoch> <link-state> <slot> <slot> ... <slot>

Slot tokens are "N", "N-M", "[N->-<node-id>]" (migrating) or
"[N-<-<node-id>]" (importing). Redis only prints the bracket forms on the
"myself" line.
"""

import re
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, ValidationError

from operator_rediscluster.slots import ranges_from_slots
from operator_rediscluster.types import (
    ClusterInfo,
    LinkState,
    Metrics,
    NodeEndpoint,
    NodeFlag,
    NodeRecord,
    NodeRole,
    ReplicationInfo,
)

MIGRATING_PATTERN = re.compile(r"^\[(\d+)->-([0-9a-zA-Z]+)\]$")
IMPORTING_PATTERN = re.compile(r"^\[(\d+)-<-([0-9a-zA-Z]+)\]$")
KEYSPACE_PATTERN = re.compile(r"^db\d+$")

FLAG_VALUES = {f.value: f for f in NodeFlag}


class ReplyParseError(ValueError):
    """
    Raised when a reply does not match the expected shape.

    Attributes:
        command: Command whose reply failed to parse.
        detail: What was wrong.
    """

    def __init__(self, command: str, detail: str) -> None:
        self.command = command
        self.detail = detail
        super().__init__(f"Malformed {command} reply: {detail}")


# =============================================================================
# key:value sections
# =============================================================================


def parse_info_text(text: str) -> dict[str, str]:
    """
    Split an INFO / CLUSTER INFO reply into a flat key -> value dict.

    Section headers ("# Memory") and blank lines are skipped. Keys are unique
    across INFO sections, so a flat dict is sufficient.
    """
    if not isinstance(text, str):
        raise ReplyParseError("INFO", f"expected text, got {type(text).__name__}")

    fields: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition(":")
        if not sep:
            raise ReplyParseError("INFO", f"line without ':' separator: {line!r}")
        fields[key] = value
    return fields


class ReplicationSection(BaseModel):
    """INFO replication fields used by the control plane."""

    model_config = ConfigDict(extra="ignore")

    role: str
    master_host: str | None = None
    master_port: int | None = None
    master_link_status: str | None = None
    master_last_io_seconds_ago: int | None = None
    connected_slaves: int = 0


class InfoReply(ReplicationSection):
    """
    Default INFO reply (server, clients, memory, persistence, stats,
    replication, keyspace).
    """

    used_memory: int = 0
    maxmemory: int = 0
    connected_clients: int = 0
    instantaneous_ops_per_sec: float = 0.0
    rdb_last_save_time: int | None = None
    rdb_last_bgsave_status: str | None = None
    aof_enabled: int | None = None


class ClusterInfoReply(BaseModel):
    """CLUSTER INFO fields."""

    model_config = ConfigDict(extra="ignore")

    cluster_state: str
    cluster_slots_assigned: int = 0
    cluster_slots_ok: int = 0
    cluster_slots_pfail: int = 0
    cluster_slots_fail: int = 0
    cluster_known_nodes: int = 0
    cluster_size: int = 0
    cluster_current_epoch: int = 0


def _role_from_info(role: str) -> NodeRole:
    if role == "master":
        return NodeRole.MASTER
    if role in ("slave", "replica"):
        return NodeRole.REPLICA
    raise ReplyParseError("INFO", f"unknown role {role!r}")


def parse_replication(text: str) -> ReplicationInfo:
    """Parse an INFO replication reply."""
    try:
        section = ReplicationSection.model_validate(parse_info_text(text))
    except ValidationError as e:
        raise ReplyParseError("INFO replication", str(e)) from e

    role = _role_from_info(section.role)
    master = None
    if role == NodeRole.REPLICA and section.master_host and section.master_port:
        master = NodeEndpoint(host=section.master_host, port=section.master_port)

    return ReplicationInfo(
        role=role,
        master_endpoint=master,
        link_status=section.master_link_status if role == NodeRole.REPLICA else None,
        connected_replicas=section.connected_slaves,
        last_io_seconds_ago=section.master_last_io_seconds_ago,
    )


def _keyspace_total(fields: dict[str, str]) -> int:
    """Sum keys=N over db<N> keyspace lines."""
    total = 0
    for key, value in fields.items():
        if not KEYSPACE_PATTERN.match(key):
            continue
        for part in value.split(","):
            name, _, count = part.partition("=")
            if name == "keys" and count.isdigit():
                total += int(count)
    return total


def parse_metrics(text: str) -> Metrics:
    """Parse a default INFO reply into Metrics."""
    fields = parse_info_text(text)
    try:
        info = InfoReply.model_validate(fields)
    except ValidationError as e:
        raise ReplyParseError("INFO", str(e)) from e

    role = _role_from_info(info.role)
    is_replica = role == NodeRole.REPLICA
    last_save = None
    if info.rdb_last_save_time:
        last_save = datetime.fromtimestamp(info.rdb_last_save_time, tz=timezone.utc)

    return Metrics(
        used_memory_bytes=info.used_memory,
        max_memory_bytes=info.maxmemory,
        connected_clients=info.connected_clients,
        ops_per_second=info.instantaneous_ops_per_sec,
        replication_lag_seconds=info.master_last_io_seconds_ago if is_replica else None,
        last_save_timestamp=last_save,
        aof_enabled=None if info.aof_enabled is None else bool(info.aof_enabled),
        role=role,
        master_link_status=info.master_link_status if is_replica else None,
        last_bgsave_ok=(
            None
            if info.rdb_last_bgsave_status is None
            else info.rdb_last_bgsave_status == "ok"
        ),
        keys=_keyspace_total(fields),
    )


def parse_cluster_info(text: str) -> ClusterInfo:
    """Parse a CLUSTER INFO reply."""
    try:
        reply = ClusterInfoReply.model_validate(parse_info_text(text))
    except ValidationError as e:
        raise ReplyParseError("CLUSTER INFO", str(e)) from e

    return ClusterInfo(
        state=reply.cluster_state,
        slots_assigned=reply.cluster_slots_assigned,
        slots_ok=reply.cluster_slots_ok,
        slots_pfail=reply.cluster_slots_pfail,
        slots_fail=reply.cluster_slots_fail,
        known_nodes=reply.cluster_known_nodes,
        size=reply.cluster_size,
        current_epoch=reply.cluster_current_epoch,
    )


# =============================================================================
# CLUSTER NODES
# =============================================================================


def parse_node_line(line: str) -> NodeRecord:
    """
    Parse a single CLUSTER NODES line.

    Raises:
        ReplyParseError: If the line has fewer than 8 fields or contains an
            invalid address, epoch or slot token.
    """
    parts = line.split()
    if len(parts) < 8:
        raise ReplyParseError("CLUSTER NODES", f"expected >= 8 fields: {line!r}")

    node_id, address, flag_text, master, _ping, _pong, epoch, link = parts[:8]

    try:
        endpoint = NodeEndpoint.parse(address)
    except ValueError as e:
        raise ReplyParseError("CLUSTER NODES", str(e)) from e

    if not epoch.isdigit():
        raise ReplyParseError("CLUSTER NODES", f"invalid config epoch {epoch!r}")

    raw_flags = set(flag_text.split(","))
    flags = frozenset(FLAG_VALUES[f] for f in raw_flags if f in FLAG_VALUES)
    role = (
        NodeRole.REPLICA
        if raw_flags & {"slave", "replica"}
        else NodeRole.MASTER
    )

    slots: set[int] = set()
    migrating: dict[int, str] = {}
    importing: dict[int, str] = {}
    for token in parts[8:]:
        if match := MIGRATING_PATTERN.match(token):
            migrating[int(match.group(1))] = match.group(2)
            continue
        if match := IMPORTING_PATTERN.match(token):
            importing[int(match.group(1))] = match.group(2)
            continue
        start, _, end = token.partition("-")
        if not start.isdigit() or (end and not end.isdigit()):
            raise ReplyParseError("CLUSTER NODES", f"invalid slot token {token!r}")
        slots.update(range(int(start), int(end or start) + 1))

    try:
        owned = ranges_from_slots(slots)
    except ValueError as e:
        raise ReplyParseError("CLUSTER NODES", str(e)) from e

    is_self = NodeFlag.MYSELF in flags
    return NodeRecord(
        node_id=node_id,
        endpoint=endpoint,
        role=role,
        link_state=(
            LinkState.CONNECTED
            if is_self or link == "connected"
            else LinkState.DISCONNECTED
        ),
        replica_of=None if master == "-" or role == NodeRole.MASTER else master,
        owned_slots=owned if role == NodeRole.MASTER else (),
        flags=flags,
        config_epoch=int(epoch),
        migrating=migrating,
        importing=importing,
    )


def parse_cluster_nodes(text: str) -> list[NodeRecord]:
    """Parse a full CLUSTER NODES reply."""
    if not isinstance(text, str):
        raise ReplyParseError(
            "CLUSTER NODES", f"expected text, got {type(text).__name__}"
        )
    return [parse_node_line(line) for line in text.splitlines() if line.strip()]


def format_node_line(node: NodeRecord) -> str:
    """
    Render a NodeRecord back into CLUSTER NODES form.

    Inverse of parse_node_line for a single record.
    """
    flags = [f.value for f in sorted(node.flags, key=lambda f: f.value)]
    if NodeFlag.MYSELF in node.flags:
        flags.remove(NodeFlag.MYSELF.value)
        flags.insert(0, NodeFlag.MYSELF.value)
    flags.insert(1 if node.is_self else 0, "master" if node.is_master else "slave")

    bus = node.endpoint.bus_port or node.endpoint.port + 10000
    slot_tokens = [str(r) for r in node.owned_slots]
    slot_tokens += [f"[{s}->-{d}]" for s, d in sorted(node.migrating.items())]
    slot_tokens += [f"[{s}-<-{src}]" for s, src in sorted(node.importing.items())]

    return " ".join(
        [
            node.node_id,
            f"{node.endpoint.host}:{node.endpoint.port}@{bus}",
            ",".join(flags),
            node.replica_of or "-",
            "0",
            "0",
            str(node.config_epoch),
            node.link_state.value,
            *slot_tokens,
        ]
    )
