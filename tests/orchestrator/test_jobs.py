"""Unit tests for the job store."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from devpool.orchestrator.managers.jobs import JobStore, JobTransitionError, can_transition
from devpool.orchestrator.models.enums import JobStatus
from devpool.orchestrator.store.local import LocalDocumentStore


async def test_start_creates_pending_job(jobs: JobStore) -> None:
    job = await jobs.start("/w/a", "o/a", "main")
    assert job.status == JobStatus.PENDING
    assert job.completed_at is None

    stored = await jobs.get("/w/a")
    assert stored is not None
    assert stored.repo == "o/a"
    assert stored.status == JobStatus.PENDING


async def test_start_replaces_existing(jobs: JobStore) -> None:
    await jobs.start("/w/a", "o/a", "main")
    await jobs.update("/w/a", JobStatus.FAILED, error="boom")

    job = await jobs.start("/w/a", "o/a", "main")
    assert job.status == JobStatus.PENDING
    stored = await jobs.get("/w/a")
    assert stored.error is None
    assert stored.completed_at is None
    assert len(await jobs.list()) == 1


async def test_update_through_lifecycle(jobs: JobStore) -> None:
    await jobs.start("/w/a", "o/a", "main")

    running = await jobs.update("/w/a", JobStatus.RUNNING, port=13000)
    assert running.status == JobStatus.RUNNING
    assert running.port == 13000
    assert running.completed_at is None

    done = await jobs.update("/w/a", JobStatus.COMPLETED, container_id="abc123")
    assert done.completed_at is not None
    assert done.container_id == "abc123"
    assert done.port == 13000


async def test_pending_may_fail_directly(jobs: JobStore) -> None:
    await jobs.start("/w/a", "o/a", "main")
    failed = await jobs.update("/w/a", JobStatus.FAILED, error="clone failed")
    assert failed.status == JobStatus.FAILED
    assert failed.error == "clone failed"
    assert failed.completed_at is not None


async def test_update_unknown_workspace_is_noop(jobs: JobStore) -> None:
    assert await jobs.update("/w/missing", JobStatus.RUNNING) is None
    assert await jobs.list() == []


async def test_regression_is_rejected(jobs: JobStore) -> None:
    await jobs.start("/w/a", "o/a", "main")
    await jobs.update("/w/a", JobStatus.COMPLETED)

    with pytest.raises(JobTransitionError, match="completed to running"):
        await jobs.update("/w/a", JobStatus.RUNNING)
    with pytest.raises(JobTransitionError):
        await jobs.update("/w/a", JobStatus.FAILED)

    assert (await jobs.get("/w/a")).status == JobStatus.COMPLETED


async def test_same_status_update_keeps_completed_at(jobs: JobStore) -> None:
    await jobs.start("/w/a", "o/a", "main")
    first = await jobs.update("/w/a", JobStatus.COMPLETED)
    second = await jobs.update("/w/a", JobStatus.COMPLETED, container_id="later")
    assert second.completed_at == first.completed_at
    assert second.container_id == "later"


@pytest.mark.parametrize(
    ("current", "requested", "allowed"),
    [
        (JobStatus.PENDING, JobStatus.RUNNING, True),
        (JobStatus.PENDING, JobStatus.COMPLETED, True),
        (JobStatus.RUNNING, JobStatus.FAILED, True),
        (JobStatus.RUNNING, JobStatus.PENDING, False),
        (JobStatus.FAILED, JobStatus.COMPLETED, False),
        (JobStatus.RUNNING, JobStatus.RUNNING, True),
    ],
)
def test_can_transition(current: JobStatus, requested: JobStatus, allowed: bool) -> None:
    assert can_transition(current, requested) is allowed


async def test_persisted_shape_uses_camel_case(jobs: JobStore, store: LocalDocumentStore) -> None:
    await jobs.start("/w/a", "o/a", "main")
    await jobs.update("/w/a", JobStatus.COMPLETED, container_id="abc")

    record = (await store.read("jobs"))["/w/a"]
    assert record["status"] == "completed"
    assert "startedAt" in record
    assert "completedAt" in record
    assert record["containerId"] == "abc"
    assert "workspace" not in record
    assert "error" not in record


async def test_cleanup_age_filter(jobs: JobStore) -> None:
    for name in ("done", "failed", "pending", "running"):
        await jobs.start(f"/w/{name}", "o/r", name)
    await jobs.update("/w/done", JobStatus.COMPLETED)
    await jobs.update("/w/failed", JobStatus.FAILED)
    await jobs.update("/w/running", JobStatus.RUNNING)

    # Two hours later: completed jobs (1h) expire, failed jobs (24h) stay.
    later = datetime.now(UTC) + timedelta(hours=2)
    assert await jobs.cleanup(now=later) == ["/w/done"]

    # Two days later: failed jobs expire too; in-flight jobs never do.
    much_later = datetime.now(UTC) + timedelta(days=2)
    assert await jobs.cleanup(now=much_later) == ["/w/failed"]
    assert sorted(j.workspace for j in await jobs.list()) == ["/w/pending", "/w/running"]


async def test_cleanup_custom_thresholds(jobs: JobStore) -> None:
    await jobs.start("/w/a", "o/a", "main")
    await jobs.update("/w/a", JobStatus.COMPLETED)

    assert await jobs.cleanup(completed_max_age=3600) == []
    assert await jobs.cleanup(completed_max_age=0, now=datetime.now(UTC) + timedelta(seconds=1)) == ["/w/a"]


async def test_cleanup_falls_back_to_started_at(jobs: JobStore, store: LocalDocumentStore) -> None:
    started = (datetime.now(UTC) - timedelta(hours=3)).isoformat()
    await store.write("jobs", {"/w/old": {"status": "completed", "repo": "o/r", "branch": "b", "startedAt": started}})

    assert await jobs.cleanup() == ["/w/old"]


async def test_malformed_records_skipped(jobs: JobStore, store: LocalDocumentStore) -> None:
    await store.write("jobs", {"/w/bad": {"status": "exploded"}})
    assert await jobs.list() == []
    assert await jobs.get("/w/bad") is None
