"""Fetch failures raised by the source bridge.

Kept apart from ``bridge`` so error classification and poll state do not
import the MCP client.
"""

from __future__ import annotations

EXIT_UNEXPECTED = 99


class BridgeError(Exception):
    """Base class for fetch failures.  ``exit_code`` is the CLI exit status."""

    exit_code = EXIT_UNEXPECTED


class InvalidSourceError(BridgeError, ValueError):
    exit_code = 1


class SourceNotConfiguredError(BridgeError, LookupError):
    exit_code = 10


class SourceConnectionError(BridgeError):
    exit_code = 11


class ToolNotFoundError(BridgeError, LookupError):
    exit_code = 12


class ToolExecutionError(BridgeError):
    exit_code = 13
