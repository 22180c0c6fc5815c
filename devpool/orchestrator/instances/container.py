"""Devcontainer runtime: start, stop, check and exec into instance containers.

Containers are labelled ``devpool.workspace=<path>`` and ``devpool.port=<n>``
so they can be found again without any local bookkeeping.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Protocol

from loguru import logger

from devpool.orchestrator.instances.process import run_attached, run_command

WORKSPACE_LABEL = "devpool.workspace"
PORT_LABEL = "devpool.port"


class ContainerStartError(RuntimeError):
    """Raised when the devcontainer could not be built or started."""


class ContainerRuntime(Protocol):
    async def up(self, workspace: str, port: int) -> str: ...

    async def down(self, workspace: str) -> None: ...

    async def exists(self, workspace: str) -> bool: ...

    async def exec(self, workspace: str, command: list[str]) -> int: ...


def _parse_up_output(stdout: str) -> dict:
    """``devcontainer up`` prints progress, then one JSON line with the outcome."""
    for line in reversed(stdout.strip().splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            return json.loads(line)
        except json.JSONDecodeError:
            continue
    return {}


class DevcontainerCLI:
    """``ContainerRuntime`` backed by the ``devcontainer`` and ``docker`` CLIs."""

    def __init__(self, devcontainer_bin: str = "devcontainer", docker_bin: str = "docker") -> None:
        self._devcontainer = devcontainer_bin
        self._docker = docker_bin

    async def up(self, workspace: str, port: int) -> str:
        """Build/start the container and return its id.  Raises ``ContainerStartError``."""
        args = [
            self._devcontainer,
            "up",
            "--workspace-folder",
            workspace,
            "--id-label",
            f"{WORKSPACE_LABEL}={workspace}",
            "--id-label",
            f"{PORT_LABEL}={port}",
        ]
        try:
            result = await run_command(args, env={"DEVPOOL_PORT": str(port), "DEVPOOL_WORKSPACE": workspace})
        except FileNotFoundError as exc:
            msg = f"devcontainer CLI not found ({self._devcontainer}); install @devcontainers/cli"
            raise ContainerStartError(msg) from exc

        outcome = _parse_up_output(result.stdout)
        if not result.ok or outcome.get("outcome") not in (None, "success"):
            detail = outcome.get("message") or outcome.get("description") or result.detail()
            raise ContainerStartError(f"devcontainer up failed for {workspace}: {detail}")

        container_id = outcome.get("containerId")
        if not container_id:
            msg = f"devcontainer up for {workspace} did not report a container id"
            raise ContainerStartError(msg)
        logger.info("Container {} up for {} on port {}", container_id[:12], workspace, port)
        return container_id

    async def _container_ids(self, workspace: str, *, running_only: bool) -> list[str]:
        args = [self._docker, "ps", "-q", "--filter", f"label={WORKSPACE_LABEL}={workspace}"]
        if not running_only:
            args.insert(2, "-a")
        try:
            result = await run_command(args)
        except FileNotFoundError as exc:
            msg = f"docker CLI not found ({self._docker})"
            raise RuntimeError(msg) from exc
        if not result.ok:
            logger.warning("docker ps failed for {}: {}", workspace, result.detail())
            return []
        return result.stdout.split()

    async def exists(self, workspace: str) -> bool:
        """True when a running container carries the workspace label."""
        return bool(await self._container_ids(workspace, running_only=True))

    async def down(self, workspace: str) -> None:
        """Remove every container for the workspace.  No-op when there is none."""
        ids = await self._container_ids(workspace, running_only=False)
        if not ids:
            return
        result = await run_command([self._docker, "rm", "-f", *ids])
        if not result.ok:
            msg = f"Failed to remove containers for {workspace}: {result.detail()}"
            raise RuntimeError(msg)
        logger.info("Removed {} container(s) for {}", len(ids), workspace)

    async def exec(self, workspace: str, command: list[str]) -> int:
        args = [
            self._devcontainer,
            "exec",
            "--workspace-folder",
            workspace,
            "--id-label",
            f"{WORKSPACE_LABEL}={workspace}",
            *command,
        ]
        return await run_attached(args, cwd=Path(workspace))
