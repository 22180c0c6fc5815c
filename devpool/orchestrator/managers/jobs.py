"""Job records: one lifecycle per workspace container action.

Status only moves forward: pending -> running -> completed | failed, and
pending may jump straight to a terminal state.  Re-applying the current
status is allowed (it updates the other fields).  Starting a new job for a
workspace replaces whatever record was there.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from loguru import logger
from pydantic import ValidationError

from devpool.orchestrator.models.enums import JobStatus
from devpool.orchestrator.models.job import Job

if TYPE_CHECKING:
    from devpool.orchestrator.locks import LockManager
    from devpool.orchestrator.store.base import DocumentStore

JOBS_DOCUMENT = "jobs"
JOBS_LOCK = "jobs"

DEFAULT_COMPLETED_MAX_AGE = 3600.0
DEFAULT_FAILED_MAX_AGE = 86400.0


class JobTransitionError(ValueError):
    """Raised when an update would move a job backwards."""

    def __init__(self, workspace: str, current: JobStatus, requested: JobStatus) -> None:
        self.workspace = workspace
        self.current = current
        self.requested = requested
        super().__init__(f"Job for {workspace} cannot move from {current} to {requested}")


def can_transition(current: JobStatus, requested: JobStatus) -> bool:
    if current == requested:
        return True
    if current.is_terminal:
        return False
    return requested.rank > current.rank


class JobStore:
    """Create, update, list and expire job records."""

    def __init__(self, store: DocumentStore, locks: LockManager) -> None:
        self._store = store
        self._locks = locks

    async def start(self, workspace: str, repo: str, branch: str) -> Job:
        """Record a new pending job, replacing any previous one."""
        job = Job(workspace=workspace, repo=repo, branch=branch, started_at=datetime.now(UTC))
        async with self._locks.hold(JOBS_LOCK):
            table = await self._store.read(JOBS_DOCUMENT)
            table[workspace] = job.to_record()
            await self._store.write(JOBS_DOCUMENT, table)
        logger.debug("Job started for {}", workspace)
        return job

    async def update(
        self,
        workspace: str,
        status: JobStatus,
        *,
        port: int | None = None,
        container_id: str | None = None,
        error: str | None = None,
    ) -> Job | None:
        """Advance a job.  Returns ``None`` when the workspace has no job.

        Raises ``JobTransitionError`` if ``status`` would regress.  Terminal
        statuses stamp ``completedAt``.
        """
        status = JobStatus(status)
        async with self._locks.hold(JOBS_LOCK):
            table = await self._store.read(JOBS_DOCUMENT)
            job = _parse(workspace, table.get(workspace))
            if job is None:
                return None

            if not can_transition(job.status, status):
                raise JobTransitionError(workspace, job.status, status)

            changes: dict = {"status": status}
            if status.is_terminal and job.completed_at is None:
                changes["completed_at"] = datetime.now(UTC)
            if port is not None:
                changes["port"] = port
            if container_id is not None:
                changes["container_id"] = container_id
            if error is not None:
                changes["error"] = error

            job = job.model_copy(update=changes)
            table[workspace] = job.to_record()
            await self._store.write(JOBS_DOCUMENT, table)

        logger.debug("Job for {} is now {}", workspace, status)
        return job

    async def get(self, workspace: str) -> Job | None:
        table = await self._store.read(JOBS_DOCUMENT)
        return _parse(workspace, table.get(workspace))

    async def list(self) -> list[Job]:
        """All jobs, oldest first."""
        table = await self._store.read(JOBS_DOCUMENT)
        jobs = [j for j in (_parse(ws, rec) for ws, rec in table.items()) if j is not None]
        return sorted(jobs, key=lambda j: j.started_at)

    async def cleanup(
        self,
        completed_max_age: float = DEFAULT_COMPLETED_MAX_AGE,
        failed_max_age: float = DEFAULT_FAILED_MAX_AGE,
        *,
        now: datetime | None = None,
    ) -> list[str]:
        """Delete terminal jobs older than their threshold.  Returns removed workspaces.

        Age is measured from ``completedAt`` (``startedAt`` if missing).
        Pending and running jobs are never removed.
        """
        now = now or datetime.now(UTC)
        thresholds = {JobStatus.COMPLETED: completed_max_age, JobStatus.FAILED: failed_max_age}

        async with self._locks.hold(JOBS_LOCK):
            table = await self._store.read(JOBS_DOCUMENT)
            removed: list[str] = []
            for workspace, record in list(table.items()):
                job = _parse(workspace, record)
                if job is None or not job.status.is_terminal:
                    continue
                reference = job.completed_at or job.started_at
                if reference.tzinfo is None:
                    reference = reference.replace(tzinfo=UTC)
                if (now - reference).total_seconds() > thresholds[job.status]:
                    del table[workspace]
                    removed.append(workspace)
            if removed:
                await self._store.write(JOBS_DOCUMENT, table)

        if removed:
            logger.info("Removed {} expired job(s)", len(removed))
        return removed


def _parse(workspace: str, record: dict | None) -> Job | None:
    if record is None:
        return None
    try:
        return Job.model_validate({**record, "workspace": workspace})
    except ValidationError as exc:
        logger.warning("Ignoring malformed job record for {}: {}", workspace, exc)
        return None
