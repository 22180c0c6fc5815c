"""Detached terminal sessions (tmux) for agents working in an instance."""

from __future__ import annotations

import shlex
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from loguru import logger

from devpool.orchestrator.instances.process import run_command


class SessionError(RuntimeError):
    """Raised when a session could not be started."""


class SessionLauncher(Protocol):
    async def exists(self, name: str) -> bool: ...

    async def launch(self, name: str, workspace: str | Path, command: list[str], env: Mapping[str, str]) -> None: ...

    async def kill(self, name: str) -> bool: ...


def session_env(
    *,
    config_id: str,
    item_key: str,
    workspace: str | Path,
    branch: str,
    port: int,
) -> dict[str, str]:
    """Environment exported into every poll-launched session."""
    return {
        "DEVPOOL_POLL_CONFIG": config_id,
        "DEVPOOL_ITEM_KEY": item_key,
        "DEVPOOL_WORKSPACE": str(workspace),
        "DEVPOOL_BRANCH": branch,
        "DEVPOOL_PORT": str(port),
    }


class TmuxSessionLauncher:
    """``SessionLauncher`` backed by ``tmux``."""

    def __init__(self, tmux_bin: str = "tmux") -> None:
        self._tmux = tmux_bin

    async def exists(self, name: str) -> bool:
        try:
            result = await run_command([self._tmux, "has-session", "-t", f"={name}"])
        except FileNotFoundError:
            return False
        return result.ok

    async def launch(self, name: str, workspace: str | Path, command: list[str], env: Mapping[str, str]) -> None:
        """Start a detached session running ``command`` in ``workspace``."""
        args = [self._tmux, "new-session", "-d", "-s", name, "-c", str(workspace)]
        for key, value in env.items():
            args.extend(["-e", f"{key}={value}"])
        if command:
            args.append(shlex.join(command))

        try:
            result = await run_command(args)
        except FileNotFoundError as exc:
            msg = f"tmux not found ({self._tmux})"
            raise SessionError(msg) from exc
        if not result.ok:
            msg = f"Failed to start session {name}: {result.detail()}"
            raise SessionError(msg)
        logger.info("Started session {} in {}", name, workspace)

    async def kill(self, name: str) -> bool:
        """Kill the session.  Returns ``False`` if it did not exist."""
        try:
            result = await run_command([self._tmux, "kill-session", "-t", f"={name}"])
        except FileNotFoundError:
            return False
        if result.ok:
            logger.info("Killed session {}", name)
        return result.ok
