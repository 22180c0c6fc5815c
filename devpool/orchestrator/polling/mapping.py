"""Item mapping, filters and template rendering for poll configs.

Every string in ``item_mapping``, ``prompt`` and ``session`` may contain
Jinja2 syntax.  Templates are rendered in a sandbox with these variables:

- every top-level field of the fetched item (``title``, ``number``, ...)
- ``item``      : dict -- the whole fetched item
- ``config_id`` : str  -- the poll config id
- ``key``, ``repo``, ``branch`` and any other mapped field, once rendered

and the ``slug`` filter.  Mapping entries are rendered in order, ``key``
first, so later entries can use earlier ones.

Example mapping::

    item_mapping:
      key: "{{ repository.full_name }}#{{ number }}"
      repo: "{{ repository.full_name }}"
      branch: "fix/{{ number }}-{{ title | slug }}"
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

from jinja2.sandbox import SandboxedEnvironment

from devpool.orchestrator.models.poll import FilterSpec, GlobFilter, PollConfig

DEFAULT_BRANCH_TEMPLATE = "devpool/{{ key | slug }}"
DEFAULT_AGENT_COMMAND = ["opencode"]

_SLUG_RE = re.compile(r"[^a-z0-9]+")
_SESSION_NAME_RE = re.compile(r"[^A-Za-z0-9_-]+")


class MappingError(ValueError):
    """Raised when an item cannot be mapped (e.g. its key renders empty)."""


def slugify(value: object, max_length: int = 50) -> str:
    """``"Fix: Login #42"`` -> ``"fix-login-42"``."""
    slug = _SLUG_RE.sub("-", str(value).lower()).strip("-")
    return slug[:max_length].rstrip("-")


@lru_cache(maxsize=1)
def _environment() -> SandboxedEnvironment:
    env = SandboxedEnvironment(autoescape=False)  # noqa: S701
    env.filters["slug"] = slugify
    return env


def render(template: str, variables: dict[str, Any]) -> str:
    # Fast path: skip Jinja2 if no template syntax detected
    if "{{" not in template and "{%" not in template:
        return template
    return _environment().from_string(template).render(**variables).strip()


# -- Item mapping ------------------------------------------------------------


@dataclass
class MappedItem:
    """A fetched item with its mapping applied."""

    key: str
    repo: str
    branch: str
    item: dict[str, Any]
    fields: dict[str, str] = field(default_factory=dict)

    @property
    def state(self) -> str | None:
        """Current source state (``fields['state']``, else the item's own ``state``)."""
        state = self.fields.get("state") or self.item.get("state")
        if isinstance(state, dict):
            state = state.get("name")
        return str(state).lower() if state else None

    @property
    def labels(self) -> list[str]:
        labels = []
        for label in self.item.get("labels") or []:
            name = label.get("name") if isinstance(label, dict) else label
            if name:
                labels.append(str(name))
        return labels

    def variables(self, config_id: str) -> dict[str, Any]:
        return {**self.item, "item": self.item, "config_id": config_id, **self.fields}


def map_item(config: PollConfig, item: dict[str, Any]) -> MappedItem:
    """Render ``item_mapping`` for one fetched item.  Raises ``MappingError``."""
    variables: dict[str, Any] = {**item, "item": item, "config_id": config.id}
    fields: dict[str, str] = {}

    ordered = ["key", *(name for name in config.item_mapping if name != "key")]
    for name in ordered:
        try:
            value = render(config.item_mapping[name], variables)
        except Exception as exc:
            msg = f"mapping '{name}' failed to render: {exc}"
            raise MappingError(msg) from exc
        fields[name] = value
        variables[name] = value

    if not fields["key"]:
        msg = "item key rendered empty"
        raise MappingError(msg)

    repo = fields.get("repo") or _default_repo(item)
    if not repo:
        msg = f"no repository for item {fields['key']} (add 'repo' to item_mapping)"
        raise MappingError(msg)
    fields["repo"] = repo
    variables["repo"] = repo

    branch = fields.get("branch") or item.get("headRefName") or render(DEFAULT_BRANCH_TEMPLATE, variables)
    fields["branch"] = branch

    return MappedItem(key=fields["key"], repo=repo, branch=branch, item=item, fields=fields)


def _default_repo(item: dict[str, Any]) -> str | None:
    repository = item.get("repository")
    if isinstance(repository, dict):
        return repository.get("full_name")
    return None


# -- Filters -----------------------------------------------------------------


def _any_match(values: list[str], patterns: list[str]) -> bool:
    return any(fnmatch.fnmatchcase(v, p) for v in values for p in patterns)


def _glob_allows(values: list[str], spec: GlobFilter) -> bool:
    if spec.include and not _any_match(values, spec.include):
        return False
    return not (spec.exclude and _any_match(values, spec.exclude))


def passes_filters(filters: FilterSpec, mapped: MappedItem) -> bool:
    """Apply ``filters.repo`` and ``filters.labels`` glob rules."""
    return _glob_allows([mapped.repo], filters.repo) and _glob_allows(mapped.labels, filters.labels)


# -- Prompt & session --------------------------------------------------------


def prompt_source(config: PollConfig) -> str:
    """Raw prompt template text (inline, or read from ``prompt.file``)."""
    if config.prompt.template is not None:
        return config.prompt.template
    path = Path(config.prompt.file).expanduser()  # type: ignore[arg-type]
    if not path.is_absolute() and config.source_path is not None:
        path = config.source_path.parent / path
    return path.read_text(encoding="utf-8")


def render_prompt(config: PollConfig, mapped: MappedItem) -> str:
    return render(prompt_source(config), mapped.variables(config.id))


def render_session_name(config: PollConfig, mapped: MappedItem) -> str:
    """Session names are restricted to characters tmux accepts everywhere."""
    name = render(config.session.name_template, mapped.variables(config.id))
    return _SESSION_NAME_RE.sub("-", name).strip("-") or slugify(mapped.key)


def session_command(config: PollConfig, mapped: MappedItem, prompt: str) -> list[str]:
    """Command run inside the session.  Defaults to the agent CLI with the prompt."""
    variables = {**mapped.variables(config.id), "prompt": prompt}
    if config.session.command:
        return [render(part, variables) for part in config.session.command]
    command = list(DEFAULT_AGENT_COMMAND)
    if config.session.agent:
        command.extend(["--agent", config.session.agent])
    command.extend(["--prompt", prompt])
    return command
