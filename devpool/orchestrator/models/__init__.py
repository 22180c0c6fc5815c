"""Data models for the orchestrator."""

from devpool.orchestrator.models.enums import (
    ItemState,
    JobStatus,
    McpServerType,
    PollErrorKind,
    SourceType,
    TransportKind,
)
from devpool.orchestrator.models.job import Job, PortAssignment
from devpool.orchestrator.models.poll import (
    CleanupSpec,
    ErrorRecord,
    FetchSpec,
    FilterSpec,
    GlobFilter,
    ItemRecord,
    PollConfig,
    PromptSpec,
    SessionSpec,
    parse_duration,
)

__all__ = [
    "CleanupSpec",
    "ErrorRecord",
    "FetchSpec",
    "FilterSpec",
    "GlobFilter",
    "ItemRecord",
    "ItemState",
    "Job",
    "JobStatus",
    "McpServerType",
    "PollConfig",
    "PollErrorKind",
    "PortAssignment",
    "PromptSpec",
    "SessionSpec",
    "SourceType",
    "TransportKind",
    "parse_duration",
]
