"""
Cluster backup.

Triggers BGSAVE on every reachable node, waits (bounded) for each node's
LASTSAVE to advance, then writes every node's CLUSTER NODES and INFO text
into a timestamped directory and packs it as <timestamp>.tar.gz.

RDB files themselves stay on the nodes; the control plane has no
filesystem access to them.
"""

import asyncio
import json
import logging
import shutil
import tarfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from operator_rediscluster.errors import OperationError, OperationTimeoutError
from operator_rediscluster.node_client import Rejected, is_failure
from operator_rediscluster.orchestration.base import Orchestrator, OrchestratorContext, failure_detail
from operator_rediscluster.orchestration.types import OperationKind, OperationPlan
from operator_rediscluster.retry import PollPolicy, wait_for_state
from operator_rediscluster.types import NodeId, NodeRecord, TopologyModel

logger = logging.getLogger(__name__)

BGSAVE_POLICY = PollPolicy(interval=1.0, deadline=60.0)


@dataclass
class BackupResult:
    """
    Outcome of a backup run.

    Attributes:
        plan: The executed plan.
        archive: Path of the written .tar.gz.
        nodes: Node ids included in the archive.
        skipped: Node id -> reason for nodes left out.
    """

    plan: OperationPlan
    archive: Path
    nodes: list[NodeId] = field(default_factory=list)
    skipped: dict[NodeId, str] = field(default_factory=dict)


def _write_archive(directory: Path, name: str, files: dict[str, str]) -> Path:
    """Write files into directory/name/, pack it, and remove the staging dir."""
    staging = directory / name
    staging.mkdir(parents=True, exist_ok=False)
    try:
        for filename, content in files.items():
            (staging / filename).write_text(content, encoding="utf-8")
        archive = directory / f"{name}.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(staging, arcname=name)
    finally:
        shutil.rmtree(staging, ignore_errors=True)
    return archive


class BackupOrchestrator(Orchestrator):
    """
    Example:
        orchestrator = BackupOrchestrator(context, Path("/var/backups/cluster"))
        result = await orchestrator.run()
        print(result.archive)
    """

    def __init__(
        self,
        context: OrchestratorContext,
        directory: Path,
        policy: PollPolicy = BGSAVE_POLICY,
    ) -> None:
        super().__init__(context)
        self.directory = Path(directory)
        self.policy = policy

    async def _save(self, node: NodeRecord) -> str | None:
        """BGSAVE one node and wait for LASTSAVE to advance. Returns a failure reason."""
        client = self.client(node.endpoint)
        before = await client.last_save()
        if is_failure(before):
            return failure_detail(before)

        ack = await client.bgsave()
        # "Background save already in progress" still ends in a new LASTSAVE
        if is_failure(ack) and not (
            isinstance(ack, Rejected) and "in progress" in ack.message
        ):
            return failure_detail(ack)

        outcome = await wait_for_state(
            probe=client.last_save,
            done=lambda value: isinstance(value, int) and value > before,
            policy=self.policy,
            cancel=self.context.cancel,
        )
        if not outcome.satisfied:
            return f"LASTSAVE did not advance within {self.policy.deadline:.0f}s"
        return None

    async def _dump(self, node: NodeRecord) -> dict[str, str] | str:
        client = self.client(node.endpoint)
        nodes_text, info_text = await asyncio.gather(
            client.cluster_nodes_text(), client.info_text("all")
        )
        for result in (nodes_text, info_text):
            if is_failure(result):
                return failure_detail(result)
        return {f"{node.node_id}.nodes": nodes_text, f"{node.node_id}.info": info_text}

    async def run(self, snapshot: TopologyModel | None = None) -> BackupResult:
        """
        Back up every reachable node.

        Raises:
            OperationTimeoutError: No node completed its background save.
            OperationError: Nothing reachable, or writing the archive failed.
        """
        snapshot = snapshot or await self.snapshot()
        nodes = [snapshot.nodes[n] for n in sorted(snapshot.reachable)]
        if not nodes:
            raise OperationError("No reachable nodes to back up", step="plan", snapshot=snapshot)

        plan = OperationPlan(
            kind=OperationKind.BACKUP,
            targets=(),
            parameters={"directory": str(self.directory), "nodes": [n.node_id for n in nodes]},
        )
        skipped: dict[NodeId, str] = {}

        with self.running(plan):
            step = plan.begin("bgsave")
            reasons = await asyncio.gather(*(self._save(n) for n in nodes))
            saved = []
            for node, reason in zip(nodes, reasons):
                if reason:
                    logger.warning(f"Backup of {node.node_id} incomplete: {reason}")
                    skipped[node.node_id] = reason
                else:
                    saved.append(node)
            if not saved:
                plan.fail(step, "no node completed BGSAVE")
                raise OperationTimeoutError(
                    "No node completed BGSAVE",
                    step="bgsave",
                    deadline=self.policy.deadline,
                    snapshot=snapshot,
                )
            plan.finish(step, f"{len(saved)}/{len(nodes)} node(s) saved")

            self.checkpoint(plan, snapshot)
            step = plan.begin("dump")
            files: dict[str, str] = {}
            dumps = await asyncio.gather(*(self._dump(n) for n in saved))
            included = []
            for node, dump in zip(saved, dumps):
                if isinstance(dump, str):
                    skipped[node.node_id] = dump
                    continue
                files.update(dump)
                included.append(node.node_id)
            stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
            files["manifest.json"] = json.dumps(
                {
                    "created_at": stamp,
                    "nodes": {
                        n.node_id: {
                            "endpoint": n.endpoint.address,
                            "role": n.role.value,
                            "replica_of": n.replica_of,
                        }
                        for n in nodes
                        if n.node_id in included
                    },
                    "skipped": skipped,
                },
                indent=2,
                sort_keys=True,
            )
            plan.finish(step, f"{len(included)} node(s)")

            step = plan.begin("archive")
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
                archive = await asyncio.to_thread(_write_archive, self.directory, stamp, files)
            except OSError as e:
                plan.fail(step, str(e))
                raise OperationError(
                    f"Cannot write backup archive: {e}",
                    step="archive",
                    snapshot=snapshot,
                    remediation="Check the backup directory permissions and free space.",
                ) from e
            plan.finish(step, str(archive))

        logger.info(f"Backup written to {archive}")
        return BackupResult(plan=plan, archive=archive, nodes=included, skipped=skipped)
