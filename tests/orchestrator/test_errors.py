"""Unit tests for poll error classification and backoff."""

from __future__ import annotations

import random
import subprocess
import sys

import httpx
import pytest

from devpool.orchestrator.instances.container import ContainerStartError
from devpool.orchestrator.instances.vcs import CloneError, WorkspaceConflictError
from devpool.orchestrator.models.enums import PollErrorKind
from devpool.orchestrator.polling.exceptions import (
    InvalidSourceError,
    SourceConnectionError,
    SourceNotConfiguredError,
    ToolExecutionError,
    ToolNotFoundError,
)
from devpool.orchestrator.polling.errors import calculate_backoff, classify_error, is_retryable, max_attempts


@pytest.mark.parametrize(
    ("kind", "retryable", "attempts"),
    [
        (PollErrorKind.RATE_LIMITED, True, 0),
        (PollErrorKind.NETWORK_TIMEOUT, True, 0),
        (PollErrorKind.CLONE_FAILED, True, 3),
        (PollErrorKind.DEVCONTAINER_FAILED, True, 3),
        (PollErrorKind.AUTH_FAILED, False, 0),
        (PollErrorKind.REPO_NOT_FOUND, False, 0),
        (PollErrorKind.UNKNOWN, False, 0),
    ],
)
def test_policy_table(kind: PollErrorKind, retryable: bool, attempts: int) -> None:
    assert is_retryable(kind) is retryable
    assert max_attempts(kind) == attempts


def test_policy_accepts_strings_and_unknown_kinds() -> None:
    assert is_retryable("clone_failed") is True
    assert is_retryable("something_new") is False


def test_backoff_first_attempt_within_jitter() -> None:
    rng = random.Random(7)
    for _ in range(200):
        assert 48 <= calculate_backoff(1, rng) <= 72


def test_backoff_doubles() -> None:
    rng = random.Random(7)
    for _ in range(200):
        assert 96 <= calculate_backoff(2, rng) <= 144
        assert 192 <= calculate_backoff(3, rng) <= 288


def test_backoff_is_capped() -> None:
    rng = random.Random(7)
    for attempts in (7, 10, 50):
        for _ in range(50):
            assert 2880 <= calculate_backoff(attempts, rng) <= 4320


def test_backoff_treats_zero_as_first_attempt() -> None:
    assert 48 <= calculate_backoff(0) <= 72


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.example.com/items")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


@pytest.mark.parametrize(
    ("exc", "kind"),
    [
        (CloneError("Failed to clone o/r@main: remote: Repository not found."), PollErrorKind.REPO_NOT_FOUND),
        (CloneError("Failed to clone o/r@main: fatal: Authentication failed"), PollErrorKind.AUTH_FAILED),
        (CloneError("Failed to clone o/r@main: could not read Username"), PollErrorKind.AUTH_FAILED),
        (CloneError("Failed to clone o/r@main: early EOF"), PollErrorKind.CLONE_FAILED),
        (CloneError("Failed to clone o/r@main: git executable is missing"), PollErrorKind.CLONE_FAILED),
        (WorkspaceConflictError("Workspace /c/o/r/main is a checkout of 'x', not y"), PollErrorKind.UNKNOWN),
        (ContainerStartError("devcontainer up exited 1"), PollErrorKind.DEVCONTAINER_FAILED),
        (SourceConnectionError("connection refused"), PollErrorKind.NETWORK_TIMEOUT),
        (ToolExecutionError("API rate limit exceeded"), PollErrorKind.RATE_LIMITED),
        (ToolExecutionError("HTTP 429"), PollErrorKind.RATE_LIMITED),
        (ToolExecutionError("Bad credentials"), PollErrorKind.AUTH_FAILED),
        (ToolExecutionError("403 Forbidden"), PollErrorKind.AUTH_FAILED),
        (ToolExecutionError("upstream hiccup"), PollErrorKind.NETWORK_TIMEOUT),
        (SourceNotConfiguredError("no server"), PollErrorKind.AUTH_FAILED),
        (ToolNotFoundError("no tool"), PollErrorKind.AUTH_FAILED),
        (InvalidSourceError("bad source"), PollErrorKind.AUTH_FAILED),
        (_status_error(429), PollErrorKind.RATE_LIMITED),
        (_status_error(401), PollErrorKind.AUTH_FAILED),
        (_status_error(404), PollErrorKind.REPO_NOT_FOUND),
        (_status_error(503), PollErrorKind.NETWORK_TIMEOUT),
        (_status_error(418), PollErrorKind.UNKNOWN),
        (TimeoutError(), PollErrorKind.NETWORK_TIMEOUT),
        (httpx.ConnectError("refused"), PollErrorKind.NETWORK_TIMEOUT),
        (httpx.ReadTimeout("slow"), PollErrorKind.NETWORK_TIMEOUT),
        (KeyError("what"), PollErrorKind.UNKNOWN),
    ],
)
def test_classify_error(exc: BaseException, kind: PollErrorKind) -> None:
    assert classify_error(exc) == kind


def test_classification_does_not_load_mcp_client() -> None:
    script = (
        "import sys\n"
        "import devpool.orchestrator.managers.items\n"
        "import devpool.orchestrator.polling.errors\n"
        "print(any(name == 'mcp' or name.startswith('mcp.') for name in sys.modules))\n"
    )
    result = subprocess.run([sys.executable, "-c", script], capture_output=True, text=True, check=True)
    assert result.stdout.strip() == "False"
