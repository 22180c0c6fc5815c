"""Per-source adapters: which MCP tool to call, with what, and how to read it.

Adapters are pure.  They never connect anywhere; the bridge hands them the
tool result text and they normalise it into plain item dicts.  Malformed
responses yield zero items and a warning, never an exception.
"""

from __future__ import annotations

import json
from typing import Any, ClassVar, Protocol

from loguru import logger

from devpool.orchestrator.models.enums import SourceType


class SourceAdapter(Protocol):
    source_type: SourceType
    server: str
    tool: str | None
    tool_candidates: tuple[str, ...]
    default_options: dict[str, Any]

    def build_arguments(self, options: dict[str, Any]) -> dict[str, Any]: ...

    def transform(self, text: str | None) -> list[dict[str, Any]]: ...


def parse_items(text: str | None, source: str) -> list[dict[str, Any]]:
    """Decode a tool response into a list of item dicts.

    Accepts a JSON array or a search envelope ``{"items": [...]}``.
    Non-dict entries are dropped.
    """
    if not text:
        return []
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.warning("Failed to parse {} response as JSON: {}", source, exc)
        return []

    if isinstance(parsed, dict) and isinstance(parsed.get("items"), list):
        parsed = parsed["items"]
    if not isinstance(parsed, list):
        logger.warning("{} response is not an array; treating as empty", source)
        return []
    return [item for item in parsed if isinstance(item, dict)]


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, list | tuple):
        return list(value)
    return [value]


# -- GitHub ------------------------------------------------------------------


def _github_repository(item: dict[str, Any]) -> dict[str, Any]:
    repo = item.get("repository") or {}
    full_name = repo.get("full_name")
    if not full_name:
        owner = repo.get("owner")
        if isinstance(owner, dict):
            owner = owner.get("login")
        if owner and repo.get("name"):
            full_name = f"{owner}/{repo['name']}"
    if not full_name:
        # Search results only carry the API URL: .../repos/{owner}/{name}
        url = item.get("repository_url") or ""
        if "/repos/" in url:
            full_name = url.split("/repos/", 1)[1]
    name = repo.get("name") or (full_name.split("/")[-1] if full_name else None)
    return {"full_name": full_name, "name": name}


class _GithubAdapter:
    server = "github"
    tool: str | None = "search_issues"
    tool_candidates: tuple[str, ...] = ()
    qualifier: ClassVar[str]

    def _query_parts(self, options: dict[str, Any]) -> list[str]:
        parts = [self.qualifier]
        if options.get("state"):
            parts.append(f"state:{options['state']}")
        if options.get("repo"):
            parts.append(f"repo:{options['repo']}")
        if options.get("org"):
            parts.append(f"org:{options['org']}")
        return parts

    def build_arguments(self, options: dict[str, Any]) -> dict[str, Any]:
        return {"q": " ".join(self._query_parts(options))}


class GithubIssueAdapter(_GithubAdapter):
    source_type = SourceType.GITHUB_ISSUE
    qualifier = "is:issue"
    default_options: ClassVar[dict[str, Any]] = {"assignee": "@me", "state": "open"}

    def _query_parts(self, options: dict[str, Any]) -> list[str]:
        parts = super()._query_parts(options)
        if options.get("assignee"):
            parts.insert(1, f"assignee:{options['assignee']}")
        parts.extend(f"label:{label}" for label in _as_list(options.get("labels")))
        return parts

    def transform(self, text: str | None) -> list[dict[str, Any]]:
        return [
            {
                "number": item.get("number"),
                "title": item.get("title"),
                "body": item.get("body"),
                "html_url": item.get("html_url") or item.get("url"),
                "repository": _github_repository(item),
                "labels": item.get("labels") or [],
                "assignees": item.get("assignees") or [],
                "state": item.get("state"),
            }
            for item in parse_items(text, self.source_type)
        ]


class GithubPRAdapter(_GithubAdapter):
    source_type = SourceType.GITHUB_PR
    qualifier = "is:pr"
    default_options: ClassVar[dict[str, Any]] = {"review_requested": "@me", "state": "open"}

    def _query_parts(self, options: dict[str, Any]) -> list[str]:
        parts = super()._query_parts(options)
        if options.get("review_requested"):
            parts.insert(1, f"review-requested:{options['review_requested']}")
        return parts

    def transform(self, text: str | None) -> list[dict[str, Any]]:
        items = []
        for item in parse_items(text, self.source_type):
            head = item.get("head") or {}
            items.append({
                "number": item.get("number"),
                "title": item.get("title"),
                "body": item.get("body"),
                "html_url": item.get("html_url") or item.get("url"),
                "repository": _github_repository(item),
                "labels": item.get("labels") or [],
                "headRefName": item.get("headRefName") or head.get("ref") or "",
                "state": item.get("state"),
            })
        return items


# -- Linear ------------------------------------------------------------------


class LinearIssueAdapter:
    source_type = SourceType.LINEAR_ISSUE
    server = "linear"
    tool: str | None = None
    tool_candidates: tuple[str, ...] = (
        "list_my_issues",
        "get_my_issues",
        "search_issues",
        "list_issues",
        "linear_search_issues",
        "linear_list_issues",
    )
    default_options: ClassVar[dict[str, Any]] = {"assignee": "@me"}

    def build_arguments(self, options: dict[str, Any]) -> dict[str, Any]:
        arguments: dict[str, Any] = {}
        if options.get("assignee") == "@me":
            arguments["assignedToMe"] = True
        if isinstance(options.get("state"), list):
            arguments["status"] = options["state"]
        return arguments

    def transform(self, text: str | None) -> list[dict[str, Any]]:
        items = []
        for item in parse_items(text, self.source_type):
            state = item.get("state")
            items.append({
                "id": item.get("id"),
                "identifier": item.get("identifier"),
                "title": item.get("title"),
                "description": item.get("description"),
                "url": item.get("url"),
                "team": item.get("team"),
                "labels": item.get("labels") or [],
                "state": state.get("name") if isinstance(state, dict) else state,
            })
        return items


ADAPTERS: dict[SourceType, SourceAdapter] = {
    SourceType.GITHUB_ISSUE: GithubIssueAdapter(),
    SourceType.GITHUB_PR: GithubPRAdapter(),
    SourceType.LINEAR_ISSUE: LinearIssueAdapter(),
}


def get_adapter(source_type: SourceType | str) -> SourceAdapter:
    """Look up the adapter for a source.  Raises ``LookupError`` if unknown."""
    try:
        return ADAPTERS[SourceType(source_type)]
    except ValueError:
        msg = f"Unknown source type: {source_type!r} (valid: {', '.join(SourceType)})"
        raise LookupError(msg) from None


def resolve_tool(adapter: SourceAdapter, available: list[str]) -> str | None:
    """Pick the tool to call given the server's tool names."""
    if adapter.tool:
        return adapter.tool if adapter.tool in available else None
    return next((name for name in adapter.tool_candidates if name in available), None)
