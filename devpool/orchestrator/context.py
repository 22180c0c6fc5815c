"""Orchestrator wiring.

``OrchestratorContext`` holds one instance of every component, built from
explicit values.  ``from_settings`` is the only place settings are turned
into constructor arguments, so components never read the environment.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from devpool.orchestrator.instances.container import ContainerRuntime, DevcontainerCLI
from devpool.orchestrator.instances.launcher import InstanceLauncher
from devpool.orchestrator.instances.sessions import SessionLauncher, TmuxSessionLauncher
from devpool.orchestrator.instances.vcs import GitWorkspaceProvider
from devpool.orchestrator.locks import LockManager
from devpool.orchestrator.managers.items import ItemStateManager
from devpool.orchestrator.managers.jobs import JobStore
from devpool.orchestrator.managers.ports import PortAllocator
from devpool.orchestrator.polling.bridge import SourceBridge
from devpool.orchestrator.store.local import LocalDocumentStore

if TYPE_CHECKING:
    from devpool.orchestrator.settings import DevpoolSettings


@dataclass
class OrchestratorContext:
    settings: DevpoolSettings

    # -- Shared state ----------------------------------------------------------
    locks: LockManager
    store: LocalDocumentStore
    ports: PortAllocator
    jobs: JobStore
    items: ItemStateManager

    # -- Collaborators ---------------------------------------------------------
    workspaces: GitWorkspaceProvider
    containers: ContainerRuntime
    sessions: SessionLauncher
    launcher: InstanceLauncher
    bridge: SourceBridge

    @classmethod
    def from_settings(
        cls,
        settings: DevpoolSettings,
        *,
        containers: ContainerRuntime | None = None,
        sessions: SessionLauncher | None = None,
    ) -> OrchestratorContext:
        locks = LockManager(
            settings.lock_dir,
            stale_after=settings.lock_stale_after,
            poll_interval=settings.lock_poll_interval,
        )
        store = LocalDocumentStore(settings.state_dir)
        ports = PortAllocator(store, locks, start=settings.port_range_start, end=settings.port_range_end)
        jobs = JobStore(store, locks)
        workspaces = GitWorkspaceProvider(settings.clones_dir, clone_url_template=settings.clone_url_template)
        containers = containers or DevcontainerCLI()
        return cls(
            settings=settings,
            locks=locks,
            store=store,
            ports=ports,
            jobs=jobs,
            items=ItemStateManager(store, locks),
            workspaces=workspaces,
            containers=containers,
            sessions=sessions or TmuxSessionLauncher(),
            launcher=InstanceLauncher(ports, jobs, workspaces, containers),
            bridge=SourceBridge(settings.mcp_config_path),
        )
