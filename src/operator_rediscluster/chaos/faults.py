"""
Fault injection backends for chaos scenarios.

A NodeController stops, starts, pauses and resumes store nodes. Two
implementations are provided:

- DockerNodeController: nodes run as containers (python-on-whales). Stop is
  SIGKILL for a realistic crash, pause is `docker pause` (freezes the node
  including its cluster bus, so peers see it as failing).
- CommandNodeController: nodes are plain processes. Stop is SHUTDOWN NOSAVE,
  pause is CLIENT PAUSE (clients only, the bus keeps running), start runs a
  configured command line.

Every method returns a JSON-serializable metadata dict describing what was
done, so a scenario can record and later revert it.
"""

import asyncio
import logging
import shlex
from typing import Any, Mapping, Protocol, runtime_checkable

from python_on_whales import DockerClient
from python_on_whales.exceptions import DockerException

from operator_rediscluster.node_client import NodeClientPool, describe, is_failure
from operator_rediscluster.types import NodeEndpoint

logger = logging.getLogger(__name__)


class FaultInjectionError(Exception):
    """
    Raised when a fault could not be injected or reverted.

    Attributes:
        endpoint: Node the action targeted.
        action: "stop", "start", "pause" or "resume".
        reason: What went wrong.
    """

    def __init__(self, endpoint: NodeEndpoint, action: str, reason: str) -> None:
        self.endpoint = endpoint
        self.action = action
        self.reason = reason
        super().__init__(f"Cannot {action} {endpoint}: {reason}")


@runtime_checkable
class NodeController(Protocol):
    """Protocol for fault injection backends."""

    async def stop(self, endpoint: NodeEndpoint) -> dict[str, Any]:
        """Stop the node abruptly."""
        ...

    async def start(self, endpoint: NodeEndpoint) -> dict[str, Any]:
        """Start a previously stopped node."""
        ...

    async def pause(self, endpoint: NodeEndpoint, seconds: float) -> dict[str, Any]:
        """Make the node unresponsive for up to `seconds`."""
        ...

    async def resume(self, endpoint: NodeEndpoint) -> dict[str, Any]:
        """End a pause early."""
        ...


class DockerNodeController:
    """
    Controls nodes running as Docker containers.

    Attributes:
        docker: DockerClient (optionally configured with a compose file).
        containers: "host:port" -> container name.

    Example:
        controller = DockerNodeController(
            DockerClient(compose_files=["docker-compose.yaml"]),
            {"10.0.0.1:7000": "redis-node-1"},
        )
        await controller.stop(NodeEndpoint("10.0.0.1", 7000))
    """

    def __init__(self, docker: DockerClient, containers: Mapping[str, str]) -> None:
        self.docker = docker
        self.containers = dict(containers)

    def container_for(self, endpoint: NodeEndpoint) -> str:
        try:
            return self.containers[endpoint.address]
        except KeyError:
            raise FaultInjectionError(
                endpoint, "resolve", "no container configured for this endpoint"
            ) from None

    async def _run(self, endpoint: NodeEndpoint, action: str, fn, *args: Any) -> str:
        container = self.container_for(endpoint)
        try:
            # python-on-whales is sync; keep it off the event loop
            await asyncio.to_thread(fn, container, *args)
        except DockerException as e:
            raise FaultInjectionError(endpoint, action, str(e)) from e
        logger.info(f"docker {action} {container} ({endpoint})")
        return container

    async def stop(self, endpoint: NodeEndpoint) -> dict[str, Any]:
        container = await self._run(endpoint, "stop", self.docker.kill)
        return {"action": "stop", "endpoint": endpoint.address, "container": container, "signal": "SIGKILL"}

    async def start(self, endpoint: NodeEndpoint) -> dict[str, Any]:
        container = await self._run(endpoint, "start", self.docker.start)
        return {"action": "start", "endpoint": endpoint.address, "container": container}

    async def pause(self, endpoint: NodeEndpoint, seconds: float) -> dict[str, Any]:
        container = await self._run(endpoint, "pause", self.docker.pause)
        return {
            "action": "pause",
            "endpoint": endpoint.address,
            "container": container,
            "seconds": seconds,
        }

    async def resume(self, endpoint: NodeEndpoint) -> dict[str, Any]:
        container = await self._run(endpoint, "resume", self.docker.unpause)
        return {"action": "resume", "endpoint": endpoint.address, "container": container}


class CommandNodeController:
    """
    Controls nodes through the store protocol plus a start command.

    Attributes:
        pool: Node clients used for SHUTDOWN / CLIENT PAUSE.
        start_command: Command line template, formatted with {host} and
            {port}, e.g. "redis-server /etc/redis/{port}.conf". None disables
            start().
    """

    def __init__(self, pool: NodeClientPool, start_command: str | None = None) -> None:
        self.pool = pool
        self.start_command = start_command

    async def stop(self, endpoint: NodeEndpoint) -> dict[str, Any]:
        result = await self.pool.client(endpoint).shutdown(save=False)
        if is_failure(result):
            raise FaultInjectionError(endpoint, "stop", describe(result))
        return {"action": "stop", "endpoint": endpoint.address, "command": "SHUTDOWN NOSAVE"}

    async def start(self, endpoint: NodeEndpoint) -> dict[str, Any]:
        if not self.start_command:
            raise FaultInjectionError(endpoint, "start", "no start command configured")

        argv = shlex.split(self.start_command.format(host=endpoint.host, port=endpoint.port))
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await process.communicate()
        except OSError as e:
            raise FaultInjectionError(endpoint, "start", str(e)) from e
        if process.returncode != 0:
            raise FaultInjectionError(
                endpoint,
                "start",
                f"exit {process.returncode}: {stderr.decode(errors='replace').strip()}",
            )
        logger.info(f"Started {endpoint} with {argv[0]}")
        return {"action": "start", "endpoint": endpoint.address, "command": argv}

    async def pause(self, endpoint: NodeEndpoint, seconds: float) -> dict[str, Any]:
        milliseconds = int(seconds * 1000)
        result = await self.pool.client(endpoint).client_pause(milliseconds)
        if is_failure(result):
            raise FaultInjectionError(endpoint, "pause", describe(result))
        return {
            "action": "pause",
            "endpoint": endpoint.address,
            "command": f"CLIENT PAUSE {milliseconds}",
            "seconds": seconds,
        }

    async def resume(self, endpoint: NodeEndpoint) -> dict[str, Any]:
        result = await self.pool.client(endpoint).client_unpause()
        if is_failure(result):
            raise FaultInjectionError(endpoint, "resume", describe(result))
        return {"action": "resume", "endpoint": endpoint.address, "command": "CLIENT UNPAUSE"}
