"""Instance lifecycle: ``up`` and ``down`` for one (repo, branch) workspace.

``up`` runs: ensure workspace -> allocate port -> start job -> running ->
container up -> completed.  If the container fails to start the job is
marked failed and a freshly allocated port is released again.  No lock is
held across the clone or the container start; each manager call takes its
own lock for its own short update.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from devpool.orchestrator.models.enums import JobStatus

if TYPE_CHECKING:
    from devpool.orchestrator.instances.container import ContainerRuntime
    from devpool.orchestrator.instances.vcs import WorkspaceProvider
    from devpool.orchestrator.managers.jobs import JobStore
    from devpool.orchestrator.managers.ports import PortAllocator
    from devpool.orchestrator.models.job import PortAssignment


@dataclass
class Instance:
    """A running devcontainer instance."""

    workspace: Path
    repo: str
    branch: str
    port: int
    container_id: str
    created: bool = True
    """False when ``up`` found the workspace already holding a port."""


class InstanceLauncher:
    def __init__(
        self,
        ports: PortAllocator,
        jobs: JobStore,
        workspaces: WorkspaceProvider,
        containers: ContainerRuntime,
    ) -> None:
        self._ports = ports
        self._jobs = jobs
        self._workspaces = workspaces
        self._containers = containers

    async def up(self, repo: str, branch: str) -> Instance:
        """Bring an instance up.  Re-running ``up`` for a live workspace keeps its port.

        Raises ``CloneError``, ``PortRangeExhaustedError`` or ``ContainerStartError``.
        """
        path = await self._workspaces.ensure(repo, branch)
        workspace = str(path)

        previously_assigned = await self._ports.get(workspace) is not None
        port = await self._ports.allocate(workspace, repo, branch)

        await self._jobs.start(workspace, repo, branch)
        await self._jobs.update(workspace, JobStatus.RUNNING, port=port)
        try:
            container_id = await self._containers.up(workspace, port)
        except Exception as exc:
            await self._jobs.update(workspace, JobStatus.FAILED, error=str(exc))
            if not previously_assigned:
                await self._ports.release(workspace)
            logger.error("Failed to bring up {}: {}", workspace, exc)
            raise

        await self._jobs.update(workspace, JobStatus.COMPLETED, container_id=container_id)
        logger.info("Instance {}@{} is up at {} (port {})", repo, branch, workspace, port)
        return Instance(
            workspace=path,
            repo=repo,
            branch=branch,
            port=port,
            container_id=container_id,
            created=not previously_assigned,
        )

    async def down(self, workspace: str | Path) -> PortAssignment | None:
        """Stop the container and release the port.  Safe to call repeatedly."""
        workspace = str(workspace)
        await self._containers.down(workspace)
        released = await self._ports.release(workspace)
        if released is None:
            logger.debug("No port assigned to {}", workspace)
        return released

    async def exec(self, workspace: str | Path, command: list[str]) -> int:
        return await self._containers.exec(str(workspace), command)

    async def is_alive(self, workspace: str) -> bool:
        """An instance is alive while its job is in flight or its container runs."""
        job = await self._jobs.get(workspace)
        if job is not None and not job.status.is_terminal:
            return True
        return await self._containers.exists(workspace)

    async def reclaim_orphans(self) -> list[PortAssignment]:
        """Release ports whose instance is gone."""
        return await self._ports.reclaim_orphans(self.is_alive)
