"""Port allocation across concurrent devpool processes.

Each live workspace owns exactly one port from an inclusive range.  The table
lives in the ``ports`` document; every read-modify-write of it happens under
the ``ports`` lock.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from loguru import logger
from pydantic import ValidationError

from devpool.orchestrator.models.job import PortAssignment

if TYPE_CHECKING:
    from devpool.orchestrator.locks import LockManager
    from devpool.orchestrator.store.base import DocumentStore

PORTS_DOCUMENT = "ports"
PORTS_LOCK = "ports"


class PortRangeExhaustedError(RuntimeError):
    """Raised when every port in the configured range is assigned."""

    def __init__(self, start: int, end: int) -> None:
        self.start = start
        self.end = end
        super().__init__(f"No free port in range {start}-{end}; run 'devpool reclaim' or widen the range")


class PortAllocator:
    """Assign, release and list workspace ports."""

    def __init__(self, store: DocumentStore, locks: LockManager, *, start: int = 13000, end: int = 13099) -> None:
        if start > end:
            msg = f"Invalid port range {start}-{end}"
            raise ValueError(msg)
        self._store = store
        self._locks = locks
        self.start = start
        self.end = end

    async def allocate(self, workspace: str, repo: str, branch: str) -> int:
        """Return the workspace's port, assigning the lowest free one if needed.

        Raises ``PortRangeExhaustedError`` when the range is full.
        """
        async with self._locks.hold(PORTS_LOCK):
            table = await self._store.read(PORTS_DOCUMENT)

            existing = _parse(workspace, table.get(workspace))
            if existing is not None:
                return existing.port

            used = {a.port for a in _parse_all(table)}
            port = next((p for p in range(self.start, self.end + 1) if p not in used), None)
            if port is None:
                raise PortRangeExhaustedError(self.start, self.end)

            assignment = PortAssignment(
                workspace=workspace, port=port, repo=repo, branch=branch, assigned_at=datetime.now(UTC)
            )
            table[workspace] = assignment.to_record()
            await self._store.write(PORTS_DOCUMENT, table)

        logger.info("Allocated port {} to {}", port, workspace)
        return port

    async def release(self, workspace: str) -> PortAssignment | None:
        """Drop the workspace's assignment.  Unknown workspaces are a no-op."""
        async with self._locks.hold(PORTS_LOCK):
            table = await self._store.read(PORTS_DOCUMENT)
            record = table.pop(workspace, None)
            if record is None:
                return None
            await self._store.write(PORTS_DOCUMENT, table)

        released = _parse(workspace, record)
        logger.info("Released port {} from {}", released.port if released else "?", workspace)
        return released

    async def get(self, workspace: str) -> PortAssignment | None:
        table = await self._store.read(PORTS_DOCUMENT)
        return _parse(workspace, table.get(workspace))

    async def list(self) -> list[PortAssignment]:
        """All live assignments, ordered by port."""
        table = await self._store.read(PORTS_DOCUMENT)
        return sorted(_parse_all(table), key=lambda a: a.port)

    async def reclaim_orphans(self, exists: Callable[[str], Awaitable[bool]]) -> list[PortAssignment]:
        """Release every assignment whose instance no longer exists.

        ``exists`` is awaited outside the lock; each release re-takes it.
        """
        reclaimed: list[PortAssignment] = []
        for assignment in await self.list():
            if await exists(assignment.workspace):
                continue
            released = await self.release(assignment.workspace)
            if released is not None:
                logger.info("Reclaimed orphaned port {} ({})", released.port, released.workspace)
                reclaimed.append(released)
        return reclaimed


def _parse(workspace: str, record: dict | None) -> PortAssignment | None:
    if record is None:
        return None
    try:
        return PortAssignment.model_validate({**record, "workspace": workspace})
    except ValidationError as exc:
        logger.warning("Ignoring malformed port record for {}: {}", workspace, exc)
        return None


def _parse_all(table: dict[str, dict]) -> list[PortAssignment]:
    parsed = (_parse(workspace, record) for workspace, record in table.items())
    return [a for a in parsed if a is not None]
