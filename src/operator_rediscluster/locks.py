"""
Advisory per-node lock table.

Operations that touch a node's slot set or role hold that node's lock for
their whole lifetime. A request for a node that is already held fails
immediately with ConflictError; nothing queues.

The table is the only mutable state shared between concurrent
orchestrators. It is guarded by a single threading.Lock so it is also safe
when orchestrators run in different event loops or threads.

Example:
    locks = NodeLockTable()
    with locks.hold([source_id, target_id], owner="reshard a->b"):
        ...  # run the operation
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator

from operator_rediscluster.errors import ConflictError
from operator_rediscluster.types import NodeId

logger = logging.getLogger(__name__)


class NodeLockTable:
    """Keyed advisory locks, all-or-nothing acquisition."""

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._holders: dict[NodeId, str] = {}

    def acquire(self, node_ids: Iterable[NodeId], owner: str) -> frozenset[NodeId]:
        """
        Lock every node in `node_ids` for `owner`.

        Raises:
            ConflictError: If any node is already held. No lock is taken in
                that case.
        """
        wanted = frozenset(node_ids)
        with self._mutex:
            busy = sorted(n for n in wanted if n in self._holders)
            if busy:
                holders = sorted({self._holders[n] for n in busy})
                raise ConflictError(busy, holder=", ".join(holders))
            for node_id in wanted:
                self._holders[node_id] = owner
        logger.debug(f"{owner} locked {sorted(wanted)}")
        return wanted

    def release(self, node_ids: Iterable[NodeId], owner: str) -> None:
        """Release locks held by `owner`; locks held by others are left alone."""
        with self._mutex:
            for node_id in node_ids:
                if self._holders.get(node_id) == owner:
                    del self._holders[node_id]
        logger.debug(f"{owner} released locks")

    def holder(self, node_id: NodeId) -> str | None:
        with self._mutex:
            return self._holders.get(node_id)

    def held(self) -> dict[NodeId, str]:
        with self._mutex:
            return dict(self._holders)

    @contextmanager
    def hold(self, node_ids: Iterable[NodeId], owner: str) -> Iterator[frozenset[NodeId]]:
        """Acquire on entry, release on exit (including on error)."""
        acquired = self.acquire(node_ids, owner)
        try:
            yield acquired
        finally:
            self.release(acquired, owner)
