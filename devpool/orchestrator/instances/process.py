"""Thin async wrapper around external commands (git, devcontainer, docker, tmux)."""

from __future__ import annotations

import os
import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import anyio
from loguru import logger


@dataclass(frozen=True)
class CommandResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def detail(self) -> str:
        """Best human-readable failure reason."""
        return self.stderr.strip() or self.stdout.strip() or f"exit status {self.returncode}"


async def run_command(
    args: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run ``args`` to completion and capture its output.  Never raises on non-zero exit.

    Raises ``FileNotFoundError`` when the executable is missing.
    """
    logger.debug("Running: {}", shlex.join(args))
    result = await anyio.run_process(
        list(args),
        cwd=cwd,
        env={**os.environ, **env} if env else None,
        check=False,
    )
    return CommandResult(
        args=tuple(args),
        returncode=result.returncode,
        stdout=result.stdout.decode(errors="replace"),
        stderr=result.stderr.decode(errors="replace"),
    )


async def run_attached(args: Sequence[str], *, cwd: Path | None = None) -> int:
    """Run ``args`` with the caller's stdin/stdout/stderr.  Returns the exit status."""
    logger.debug("Running attached: {}", shlex.join(args))
    result = await anyio.run_process(list(args), cwd=cwd, stdin=None, stdout=None, stderr=None, check=False)
    return result.returncode
