"""One-shot fetches from MCP servers and local commands.

Each ``SourceBridge.fetch`` call opens a fresh MCP session, resolves the
adapter's tool, calls it once, closes the session and returns normalised
items.  Failures are typed so callers (the poll loop, ``devpool fetch``) can
tell configuration problems from transient ones:

- ``InvalidSourceError``: 1
- ``SourceNotConfiguredError``: 10
- ``SourceConnectionError``: 11
- ``ToolNotFoundError``: 12
- ``ToolExecutionError``: 13
- anything else: 99

MCP server definitions are read from an opencode-style JSON file, section
``mcp.<server>``.  Remote servers whose URL path ends in ``/sse`` use the
legacy SSE transport; other remote servers use streamable HTTP; local
servers are spawned over stdio.
"""

from __future__ import annotations

import contextlib
import json
import os
import re
import shlex
from collections.abc import AsyncIterator, Mapping
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import anyio
from loguru import logger
from mcp import ClientSession, StdioServerParameters
from mcp import types as mcp_types
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from devpool.orchestrator.models.enums import McpServerType, SourceType, TransportKind
from devpool.orchestrator.polling.adapters import SourceAdapter, get_adapter, parse_items, resolve_tool
from devpool.orchestrator.polling.exceptions import (
    BridgeError,
    InvalidSourceError,
    SourceConnectionError,
    SourceNotConfiguredError,
    ToolExecutionError,
    ToolNotFoundError,
)

CLIENT_VERSION = "1.0.0"

# -- Server configuration ----------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{(\w+)\}")


def expand_env_vars(value: str, env: Mapping[str, str] | None = None) -> str:
    """Replace ``${VAR}`` with its value (empty when unset).  ``$VAR`` is left alone."""
    env = os.environ if env is None else env
    return _ENV_VAR_RE.sub(lambda m: env.get(m.group(1), ""), value)


class McpServerConfig(BaseModel):
    """One ``mcp.<server>`` entry."""

    model_config = ConfigDict(extra="ignore")

    type: McpServerType = McpServerType.LOCAL
    command: list[str] = Field(default_factory=list)
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    environment: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True

    @field_validator("command", mode="before")
    @classmethod
    def _split_command(cls, value: object) -> object:
        if isinstance(value, str):
            return shlex.split(value)
        return value

    def expanded_headers(self, env: Mapping[str, str] | None = None) -> dict[str, str]:
        return {key: expand_env_vars(value, env) for key, value in self.headers.items()}


def choose_transport(config: McpServerConfig) -> TransportKind:
    if config.type == McpServerType.REMOTE:
        if not config.url:
            msg = "Remote MCP server has no 'url'"
            raise SourceNotConfiguredError(msg)
        path = urlparse(config.url).path.rstrip("/")
        return TransportKind.SSE if path.endswith("/sse") else TransportKind.STREAMABLE_HTTP
    if not config.command:
        msg = "Local MCP server has no 'command'"
        raise SourceNotConfiguredError(msg)
    return TransportKind.STDIO


def load_server_config(config_path: Path, server: str) -> McpServerConfig:
    """Read ``mcp.<server>`` from the config file.  Raises ``SourceNotConfiguredError``."""
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        msg = f"MCP config not found: {config_path}"
        raise SourceNotConfiguredError(msg) from None
    except (OSError, json.JSONDecodeError) as exc:
        msg = f"Failed to parse MCP config {config_path}: {exc}"
        raise SourceNotConfiguredError(msg) from None

    entry = (raw.get("mcp") or {}).get(server) if isinstance(raw, dict) else None
    if not entry:
        msg = f"MCP server '{server}' not configured in {config_path}"
        raise SourceNotConfiguredError(msg)

    try:
        config = McpServerConfig.model_validate(entry)
    except ValidationError as exc:
        msg = f"MCP server '{server}' has an invalid definition: {exc}"
        raise SourceNotConfiguredError(msg) from None

    if not config.enabled:
        msg = f"MCP server '{server}' is disabled"
        raise SourceNotConfiguredError(msg)
    return config


# -- Bridge ------------------------------------------------------------------


def _result_text(result: Any) -> str | None:
    for block in getattr(result, "content", None) or []:
        text = getattr(block, "text", None)
        if text is not None:
            return text
    return None


class SourceBridge:
    """Fetch items for a ``SourceType`` through its MCP server."""

    def __init__(self, mcp_config_path: str | Path, *, client_name: str = "devpool") -> None:
        self._config_path = Path(mcp_config_path).expanduser()
        self._client_name = client_name

    async def fetch(self, source_type: SourceType | str, options: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Call the source's tool once and return normalised items."""
        try:
            adapter = get_adapter(source_type)
        except LookupError as exc:
            raise InvalidSourceError(str(exc)) from None

        config = load_server_config(self._config_path, adapter.server)
        arguments = adapter.build_arguments({**adapter.default_options, **(options or {})})

        failure: BridgeError | None = None
        text: str | None = None
        try:
            async with self.session(config) as session:
                try:
                    text = await self._call(session, adapter, arguments)
                except BridgeError as exc:
                    failure = exc
                except Exception as exc:  # noqa: BLE001
                    failure = ToolExecutionError(f"Tool execution failed: {exc}")
        except BridgeError:
            raise
        except Exception as exc:
            msg = f"Failed to connect to MCP server '{adapter.server}': {exc}"
            raise SourceConnectionError(msg) from exc

        # Raised outside the session so transport task groups cannot wrap it.
        if failure is not None:
            raise failure

        items = adapter.transform(text)
        logger.debug("Fetched {} item(s) from {}", len(items), adapter.source_type)
        return items

    @contextlib.asynccontextmanager
    async def session(self, config: McpServerConfig) -> AsyncIterator[ClientSession]:
        """Open an initialised MCP client session for ``config``."""
        kind = choose_transport(config)
        if kind == TransportKind.STDIO:
            params = StdioServerParameters(
                command=config.command[0],
                args=config.command[1:],
                env={**os.environ, **config.environment},
            )
            transport = stdio_client(params)
        elif kind == TransportKind.SSE:
            transport = sse_client(config.url, headers=config.expanded_headers())
        else:
            transport = streamablehttp_client(config.url, headers=config.expanded_headers())

        async with transport as streams:
            read_stream, write_stream = streams[0], streams[1]
            client_info = mcp_types.Implementation(name=self._client_name, version=CLIENT_VERSION)
            async with ClientSession(read_stream, write_stream, client_info=client_info) as session:
                await session.initialize()
                yield session

    async def _call(self, session: ClientSession, adapter: SourceAdapter, arguments: dict[str, Any]) -> str | None:
        listed = await session.list_tools()
        available = [tool.name for tool in listed.tools]
        tool = resolve_tool(adapter, available)
        if tool is None:
            wanted = adapter.tool or ", ".join(adapter.tool_candidates)
            msg = f"No matching tool for {adapter.source_type} (wanted {wanted}; available: {', '.join(available)})"
            raise ToolNotFoundError(msg)

        result = await session.call_tool(tool, arguments)
        text = _result_text(result)
        if getattr(result, "isError", False):
            raise ToolExecutionError(f"Tool '{tool}' returned an error: {text or 'no detail'}")
        return text


# -- Command fetch -----------------------------------------------------------


async def fetch_from_command(
    command: list[str] | str,
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> list[dict[str, Any]]:
    """Run a command that prints a JSON array of items on stdout."""
    try:
        result = await anyio.run_process(
            command,
            cwd=cwd,
            env={**os.environ, **(env or {})},
            check=False,
        )
    except OSError as exc:
        msg = f"Failed to run fetch command {command!r}: {exc}"
        raise SourceNotConfiguredError(msg) from exc

    if result.returncode != 0:
        detail = result.stderr.decode(errors="replace").strip() or f"exit status {result.returncode}"
        msg = f"Fetch command failed: {detail}"
        raise ToolExecutionError(msg)
    return parse_items(result.stdout.decode(errors="replace"), "fetch command")
