"""Unit tests for instance up/down.

Ports and jobs use the real managers on a temporary directory; git and the
container runtime are fakes.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from devpool.orchestrator.instances.container import ContainerStartError
from devpool.orchestrator.instances.launcher import InstanceLauncher
from devpool.orchestrator.instances.vcs import CloneError, workspace_relpath
from devpool.orchestrator.managers.jobs import JobStore
from devpool.orchestrator.managers.ports import PortAllocator
from devpool.orchestrator.models.enums import JobStatus


class FakeWorkspaces:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.fail_with: Exception | None = None

    async def ensure(self, repo: str, branch: str) -> Path:
        if self.fail_with is not None:
            raise self.fail_with
        path = self.root / workspace_relpath(repo, branch)
        path.mkdir(parents=True, exist_ok=True)
        return path

    async def remove(self, workspace) -> None:
        pass


class FakeContainers:
    def __init__(self) -> None:
        self.running: dict[str, int] = {}
        self.fail_with: Exception | None = None
        self.exec_calls: list[tuple[str, list[str]]] = []

    async def up(self, workspace: str, port: int) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.running[workspace] = port
        return f"container-{port}"

    async def down(self, workspace: str) -> None:
        self.running.pop(workspace, None)

    async def exists(self, workspace: str) -> bool:
        return workspace in self.running

    async def exec(self, workspace: str, command: list[str]) -> int:
        self.exec_calls.append((workspace, command))
        return 0


@pytest.fixture
def workspaces(tmp_path) -> FakeWorkspaces:
    return FakeWorkspaces(tmp_path / "clones")


@pytest.fixture
def containers() -> FakeContainers:
    return FakeContainers()


@pytest.fixture
def launcher(ports: PortAllocator, jobs: JobStore, workspaces, containers) -> InstanceLauncher:
    return InstanceLauncher(ports, jobs, workspaces, containers)


async def test_up(launcher: InstanceLauncher, jobs: JobStore, containers, tmp_path) -> None:
    instance = await launcher.up("acme/api", "feature/login")

    assert instance.workspace == tmp_path / "clones" / "acme" / "api" / "feature%2Flogin"
    assert instance.port == 13000
    assert instance.container_id == "container-13000"

    job = await jobs.get(str(instance.workspace))
    assert job.status == JobStatus.COMPLETED
    assert job.port == 13000
    assert job.container_id == "container-13000"
    assert containers.running == {str(instance.workspace): 13000}


async def test_up_twice_keeps_port(launcher: InstanceLauncher, ports: PortAllocator) -> None:
    first = await launcher.up("acme/api", "main")
    second = await launcher.up("acme/api", "main")
    assert first.port == second.port
    assert first.created
    assert not second.created
    assert len(await ports.list()) == 1


async def test_container_failure_releases_new_port(
    launcher: InstanceLauncher, ports: PortAllocator, jobs: JobStore, containers, tmp_path
) -> None:
    containers.fail_with = ContainerStartError("devcontainer up failed: boom")

    with pytest.raises(ContainerStartError):
        await launcher.up("acme/api", "main")

    workspace = str(tmp_path / "clones" / "acme" / "api" / "main")
    job = await jobs.get(workspace)
    assert job.status == JobStatus.FAILED
    assert job.error == "devcontainer up failed: boom"
    assert await ports.get(workspace) is None


async def test_container_failure_keeps_existing_port(
    launcher: InstanceLauncher, ports: PortAllocator, containers
) -> None:
    instance = await launcher.up("acme/api", "main")

    containers.fail_with = ContainerStartError("rebuild failed")
    with pytest.raises(ContainerStartError):
        await launcher.up("acme/api", "main")

    assignment = await ports.get(str(instance.workspace))
    assert assignment is not None
    assert assignment.port == instance.port


async def test_clone_failure_allocates_nothing(
    launcher: InstanceLauncher, ports: PortAllocator, jobs: JobStore, workspaces
) -> None:
    workspaces.fail_with = CloneError("Failed to clone acme/api@main: early EOF")

    with pytest.raises(CloneError):
        await launcher.up("acme/api", "main")

    assert await ports.list() == []
    assert await jobs.list() == []


async def test_down(launcher: InstanceLauncher, ports: PortAllocator, containers) -> None:
    instance = await launcher.up("acme/api", "main")

    released = await launcher.down(instance.workspace)
    assert released.port == instance.port
    assert containers.running == {}
    assert await ports.list() == []

    # Second down is a no-op.
    assert await launcher.down(instance.workspace) is None


async def test_exec(launcher: InstanceLauncher, containers) -> None:
    instance = await launcher.up("acme/api", "main")
    assert await launcher.exec(instance.workspace, ["npm", "test"]) == 0
    assert containers.exec_calls == [(str(instance.workspace), ["npm", "test"])]


async def test_reclaim_orphans(launcher: InstanceLauncher, ports: PortAllocator, jobs: JobStore, containers) -> None:
    live = await launcher.up("acme/api", "main")
    dead = await launcher.up("acme/web", "main")
    containers.running.pop(str(dead.workspace))

    # A workspace whose job is still in flight counts as alive.
    await ports.allocate("/clones/starting/main", "acme/starting", "main")
    await jobs.start("/clones/starting/main", "acme/starting", "main")

    reclaimed = await launcher.reclaim_orphans()

    assert [a.workspace for a in reclaimed] == [str(dead.workspace)]
    remaining = {a.workspace for a in await ports.list()}
    assert remaining == {str(live.workspace), "/clones/starting/main"}
