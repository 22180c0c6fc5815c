"""Shared enumerations used across the orchestrator."""

from __future__ import annotations

from enum import StrEnum

# -- Jobs --------------------------------------------------------------------


class JobStatus(StrEnum):
    """Lifecycle of the job driving one instance's container action."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def rank(self) -> int:
        """Position in the pending -> running -> terminal order."""
        if self is JobStatus.PENDING:
            return 0
        if self is JobStatus.RUNNING:
            return 1
        return 2


# -- Poll items --------------------------------------------------------------


class ItemState(StrEnum):
    PROCESSED = "processed"
    ERROR = "error"


class PollErrorKind(StrEnum):
    """Closed set of failure categories for poll-driven work."""

    RATE_LIMITED = "rate_limited"
    NETWORK_TIMEOUT = "network_timeout"
    CLONE_FAILED = "clone_failed"
    DEVCONTAINER_FAILED = "devcontainer_failed"
    AUTH_FAILED = "auth_failed"
    REPO_NOT_FOUND = "repo_not_found"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> PollErrorKind:
        # Kinds written by other versions degrade to the non-retryable default.
        return cls.UNKNOWN


# -- Sources -----------------------------------------------------------------


class SourceType(StrEnum):
    GITHUB_ISSUE = "github_issue"
    GITHUB_PR = "github_pr"
    LINEAR_ISSUE = "linear_issue"


class McpServerType(StrEnum):
    LOCAL = "local"
    REMOTE = "remote"


class TransportKind(StrEnum):
    """How the bridge talks to an MCP server."""

    STDIO = "stdio"
    SSE = "sse"
    STREAMABLE_HTTP = "streamable_http"
