"""Job and port-assignment records.

Both are persisted as entries of a JSON object keyed by workspace path.  The
workspace itself is the key, so it is excluded from the stored record and
re-attached on read.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from devpool.orchestrator.models.enums import JobStatus


class Job(BaseModel):
    """Lifecycle record for the container action of one workspace."""

    model_config = ConfigDict(populate_by_name=True)

    workspace: str = Field(default="", exclude=True)
    status: JobStatus = JobStatus.PENDING
    repo: str
    branch: str
    started_at: datetime = Field(alias="startedAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")
    port: int | None = None
    container_id: str | None = Field(default=None, alias="containerId")
    error: str | None = None

    def to_record(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PortAssignment(BaseModel):
    """One live port reservation."""

    workspace: str = Field(default="", exclude=True)
    port: int
    repo: str
    branch: str
    assigned_at: datetime | None = None

    def to_record(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)
