"""Poll error taxonomy: retry policy, backoff and exception classification.

Every failure met while fetching or processing a poll item is reduced to one
``PollErrorKind``.  The kind decides whether the item is retried, how many
times, and how long to wait between attempts.
"""

from __future__ import annotations

import random
import re
from dataclasses import dataclass

import httpx

from devpool.orchestrator.instances.container import ContainerStartError
from devpool.orchestrator.instances.vcs import CloneError
from devpool.orchestrator.models.enums import PollErrorKind
from devpool.orchestrator.polling.exceptions import (
    BridgeError,
    SourceConnectionError,
    ToolExecutionError,
)

BACKOFF_BASE = 60
BACKOFF_CAP = 3600
BACKOFF_JITTER = 0.2


@dataclass(frozen=True)
class RetryPolicy:
    retryable: bool
    max_attempts: int
    """0 means unlimited (only meaningful when retryable)."""


POLICY: dict[PollErrorKind, RetryPolicy] = {
    PollErrorKind.RATE_LIMITED: RetryPolicy(retryable=True, max_attempts=0),
    PollErrorKind.NETWORK_TIMEOUT: RetryPolicy(retryable=True, max_attempts=0),
    PollErrorKind.CLONE_FAILED: RetryPolicy(retryable=True, max_attempts=3),
    PollErrorKind.DEVCONTAINER_FAILED: RetryPolicy(retryable=True, max_attempts=3),
    PollErrorKind.AUTH_FAILED: RetryPolicy(retryable=False, max_attempts=0),
    PollErrorKind.REPO_NOT_FOUND: RetryPolicy(retryable=False, max_attempts=0),
    PollErrorKind.UNKNOWN: RetryPolicy(retryable=False, max_attempts=0),
}


def _policy(kind: PollErrorKind | str) -> RetryPolicy:
    return POLICY[PollErrorKind(kind)]


def is_retryable(kind: PollErrorKind | str) -> bool:
    return _policy(kind).retryable


def max_attempts(kind: PollErrorKind | str) -> int:
    return _policy(kind).max_attempts


def calculate_backoff(attempts: int, rng: random.Random | None = None) -> int:
    """Seconds to wait before attempt ``attempts + 1``.

    ``60 * 2**(attempts-1)`` capped at one hour, with +/-20% jitter.
    """
    attempts = max(1, attempts)
    base = min(BACKOFF_CAP, BACKOFF_BASE * 2 ** (attempts - 1))
    factor = (rng or random).uniform(1 - BACKOFF_JITTER, 1 + BACKOFF_JITTER)
    return round(base * factor)


# -- Classification ----------------------------------------------------------

_RATE_LIMIT_RE = re.compile(r"rate.?limit|\b429\b|too many requests", re.IGNORECASE)
_AUTH_RE = re.compile(r"\b40[13]\b|bad credentials|unauthori[sz]ed|forbidden", re.IGNORECASE)
_NOT_FOUND_RE = re.compile(r"not found|does not exist", re.IGNORECASE)
_CLONE_AUTH_RE = re.compile(r"authentication|permission denied|could not read username", re.IGNORECASE)


def classify_error(exc: BaseException) -> PollErrorKind:
    """Map an exception raised during a poll cycle to a ``PollErrorKind``."""
    if isinstance(exc, CloneError):
        detail = str(exc)
        if _NOT_FOUND_RE.search(detail):
            return PollErrorKind.REPO_NOT_FOUND
        if _CLONE_AUTH_RE.search(detail):
            return PollErrorKind.AUTH_FAILED
        return PollErrorKind.CLONE_FAILED

    if isinstance(exc, ContainerStartError):
        return PollErrorKind.DEVCONTAINER_FAILED

    if isinstance(exc, SourceConnectionError):
        return PollErrorKind.NETWORK_TIMEOUT

    if isinstance(exc, ToolExecutionError):
        detail = str(exc)
        if _RATE_LIMIT_RE.search(detail):
            return PollErrorKind.RATE_LIMITED
        if _AUTH_RE.search(detail):
            return PollErrorKind.AUTH_FAILED
        return PollErrorKind.NETWORK_TIMEOUT

    if isinstance(exc, BridgeError):
        # Not configured / tool missing / invalid source: the operator must fix it.
        return PollErrorKind.AUTH_FAILED

    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_status(exc.response.status_code)

    if isinstance(exc, TimeoutError | httpx.TimeoutException | httpx.NetworkError):
        return PollErrorKind.NETWORK_TIMEOUT

    return PollErrorKind.UNKNOWN


def _classify_status(status: int) -> PollErrorKind:
    if status == 429:
        return PollErrorKind.RATE_LIMITED
    if status in (401, 403):
        return PollErrorKind.AUTH_FAILED
    if status == 404:
        return PollErrorKind.REPO_NOT_FOUND
    if status >= 500 or status == 408:
        return PollErrorKind.NETWORK_TIMEOUT
    return PollErrorKind.UNKNOWN
