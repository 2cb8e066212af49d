"""
Topology snapshot builder.

Polls CLUSTER NODES and CLUSTER INFO on every endpoint concurrently and
merges the per-node views into one immutable TopologyModel:

- Records are keyed by node id; a node's description of itself (MYSELF)
  wins over what peers say about it.
- Unreachable endpoints contribute no record and do not abort the build.
  Peers' records for those nodes are marked DISCONNECTED.
- Every reachable master's slot map is compared with every other one, and
  every reachable node's member list likewise. Any disagreement is
  recorded as a conflict and clears `consistent`. Conflicts are never
  silently resolved: the epoch tie-break only annotates `resolved_owner`.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Iterable

from operator_rediscluster.node_client import (
    NodeClientPool,
    Unreachable,
    describe,
    is_failure,
)
from operator_rediscluster.slots import ranges_from_slots
from operator_rediscluster.types import (
    TOTAL_SLOTS,
    ClusterInfo,
    LinkState,
    MembershipConflict,
    NodeEndpoint,
    NodeFlag,
    NodeId,
    NodeRecord,
    SlotConflict,
    TopologyModel,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeView:
    """One reachable node's answer to the poll."""

    endpoint: NodeEndpoint
    me: NodeRecord
    records: tuple[NodeRecord, ...]
    info: ClusterInfo


async def poll_view(
    endpoint: NodeEndpoint, pool: NodeClientPool, timeout: float | None = None
) -> NodeView | Unreachable:
    """Fetch one node's view, or Unreachable if any part of it failed."""
    client = pool.client(endpoint)
    polls = asyncio.gather(client.get_cluster_nodes(), client.get_cluster_info())
    try:
        if timeout is not None:
            records, info = await asyncio.wait_for(polls, timeout=timeout)
        else:
            records, info = await polls
    except TimeoutError:
        return Unreachable(endpoint=endpoint, reason=f"poll exceeded {timeout}s")

    for result in (records, info):
        if is_failure(result):
            if isinstance(result, Unreachable):
                return result
            return Unreachable(endpoint=endpoint, reason=describe(result))

    me = next((r for r in records if r.is_self), None)
    if me is None:
        return Unreachable(
            endpoint=endpoint, reason="malformed reply: no myself entry in CLUSTER NODES"
        )
    return NodeView(endpoint=endpoint, me=me, records=tuple(records), info=info)


def _slot_map(view: NodeView) -> list[NodeId | None]:
    """Owner per slot as declared in one node's view."""
    owners: list[NodeId | None] = [None] * TOTAL_SLOTS
    for record in view.records:
        if not record.is_master:
            continue
        for slot_range in record.owned_slots:
            for slot in slot_range:
                owners[slot] = record.node_id
    return owners


def _resolve_owner(
    claims: dict[NodeId, NodeId | None], views: dict[NodeId, NodeView]
) -> NodeId | None:
    """
    Epoch tie-break.

    The claimed owner with the strictly highest config epoch, as reported by
    that owner about itself, wins. If any claimed owner did not report its
    own epoch, or the highest epoch is shared, the conflict is unresolved.
    """
    claimants = sorted({owner for owner in claims.values() if owner is not None})
    if not claimants:
        return None

    epochs: dict[NodeId, int] = {}
    for owner in claimants:
        view = views.get(owner)
        if view is None:
            return None
        epochs[owner] = view.me.config_epoch

    best = max(epochs.values())
    winners = [owner for owner, epoch in epochs.items() if epoch == best]
    return winners[0] if len(winners) == 1 else None


def find_slot_conflicts(views: dict[NodeId, NodeView]) -> list[SlotConflict]:
    """Compare every reachable master's slot map."""
    master_views = {vid: v for vid, v in sorted(views.items()) if v.me.is_master}
    if len(master_views) < 2:
        return []

    maps = {vid: _slot_map(v) for vid, v in master_views.items()}
    reference = next(iter(maps.values()))
    if all(m == reference for m in maps.values()):
        return []

    grouped: dict[tuple[tuple[NodeId, NodeId | None], ...], list[int]] = {}
    for slot in range(TOTAL_SLOTS):
        claims = tuple((vid, m[slot]) for vid, m in maps.items())
        if len({owner for _, owner in claims}) > 1:
            grouped.setdefault(claims, []).append(slot)

    conflicts = []
    for claims, slots in grouped.items():
        claim_map = dict(claims)
        conflicts.append(
            SlotConflict(
                slots=ranges_from_slots(slots),
                claims=claim_map,
                resolved_owner=_resolve_owner(claim_map, views),
            )
        )
    return sorted(conflicts, key=lambda c: c.slots[0].start)


def _members(view: NodeView) -> frozenset[NodeId]:
    return frozenset(
        r.node_id for r in view.records if NodeFlag.HANDSHAKE not in r.flags
    )


def find_membership_conflicts(
    views: dict[NodeId, NodeView],
) -> list[MembershipConflict]:
    """Compare member lists across every reachable node."""
    if len(views) < 2:
        return []

    members = {vid: _members(v) for vid, v in views.items()}
    everyone = frozenset().union(*members.values())

    conflicts = []
    for viewer, known in sorted(members.items()):
        others = frozenset().union(
            *(m for vid, m in members.items() if vid != viewer)
        )
        missing = everyone - known
        unexpected = known - others
        if missing or unexpected:
            conflicts.append(
                MembershipConflict(viewer=viewer, missing=missing, unexpected=unexpected)
            )
    return conflicts


def merge_records(
    views: dict[NodeId, NodeView], unreachable: Iterable[NodeEndpoint] = ()
) -> dict[NodeId, NodeRecord]:
    """
    Merge per-node views keyed by node id.

    Self-records win. Nodes only described by peers take the record from
    the lowest viewer id; those whose endpoint failed the poll are marked
    DISCONNECTED.
    """
    down = {e.address for e in unreachable}
    merged: dict[NodeId, NodeRecord] = {vid: v.me for vid, v in views.items()}
    for viewer_id in sorted(views):
        for record in views[viewer_id].records:
            if record.node_id in merged:
                continue
            link_state = record.link_state
            if record.endpoint.address in down:
                link_state = LinkState.DISCONNECTED
            merged[record.node_id] = replace(
                record,
                link_state=link_state,
                flags=record.flags - {NodeFlag.MYSELF},
                migrating={},
                importing={},
            )
    return merged


async def build_snapshot(
    endpoints: Iterable[NodeEndpoint],
    pool: NodeClientPool,
    timeout: float | None = None,
    discover: bool = False,
) -> TopologyModel:
    """
    Poll every endpoint in parallel and build a TopologyModel.

    Args:
        endpoints: Endpoints to poll.
        pool: Client pool providing bounded node clients.
        timeout: Optional overall bound per endpoint, on top of the client's
            per-call timeout.
        discover: Also poll endpoints learned from node tables until no new
            ones appear.

    Returns:
        A new immutable snapshot. Never raises for unreachable nodes.
    """
    pending = list(dict.fromkeys(endpoints))
    polled: set[str] = set()
    views: dict[NodeId, NodeView] = {}
    unreachable: list[NodeEndpoint] = []

    while pending:
        batch = [e for e in pending if e.address not in polled]
        polled.update(e.address for e in batch)
        results = await asyncio.gather(*(poll_view(e, pool, timeout) for e in batch))

        for endpoint, result in zip(batch, results):
            if isinstance(result, Unreachable):
                logger.warning(f"Node {endpoint} unreachable: {result.reason}")
                unreachable.append(endpoint)
                continue
            views.setdefault(result.me.node_id, result)

        pending = []
        if discover:
            for view in views.values():
                for record in view.records:
                    endpoint = record.endpoint
                    if (
                        endpoint.port
                        and endpoint.address not in polled
                        and NodeFlag.NOADDR not in record.flags
                    ):
                        pending.append(NodeEndpoint(endpoint.host, endpoint.port))
            pending = list(dict.fromkeys(pending))

    slot_conflicts = find_slot_conflicts(views)
    membership_conflicts = find_membership_conflicts(views)
    for conflict in slot_conflicts:
        logger.warning(
            f"Slot conflict on {len(conflict.slots)} range(s): claims={dict(conflict.claims)}"
        )
    for conflict in membership_conflicts:
        logger.warning(
            f"Membership conflict at {conflict.viewer}: "
            f"missing={sorted(conflict.missing)} unexpected={sorted(conflict.unexpected)}"
        )

    return TopologyModel(
        nodes=merge_records(views, unreachable),
        observed_at=datetime.now(timezone.utc),
        consistent=not slot_conflicts and not membership_conflicts,
        slot_conflicts=tuple(slot_conflicts),
        membership_conflicts=tuple(membership_conflicts),
        unreachable=tuple(sorted(unreachable)),
        cluster_info={vid: v.info for vid, v in views.items()},
        reachable=frozenset(views),
    )


def node_endpoints(snapshot: TopologyModel) -> list[NodeEndpoint]:
    """Endpoints of every addressable node in a snapshot, plus unreachable ones."""
    seen: dict[str, NodeEndpoint] = {}
    for node in sorted(snapshot.nodes.values(), key=lambda n: n.node_id):
        if NodeFlag.NOADDR in node.flags or not node.endpoint.port:
            continue
        seen.setdefault(
            node.endpoint.address, NodeEndpoint(node.endpoint.host, node.endpoint.port)
        )
    for endpoint in snapshot.unreachable:
        seen.setdefault(endpoint.address, endpoint)
    return list(seen.values())
