"""Poll configuration and per-item poll state models.

``PollConfig`` mirrors one file in the polls directory (YAML or JSON).
``ItemRecord`` is one entry of the persisted poll-state table, keyed by the
item key rendered from ``item_mapping.key``.
"""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from devpool.orchestrator.models.enums import ItemState, PollErrorKind, SourceType

# -- Poll state --------------------------------------------------------------


class ErrorRecord(BaseModel):
    """Failure bookkeeping for an item that has not been processed yet."""

    type: PollErrorKind = PollErrorKind.UNKNOWN
    message: str = ""
    attempts: int = 0
    max_attempts: int = 0
    next_retry: datetime | None = None
    last_attempt: datetime | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_kind(cls, value: object) -> PollErrorKind:
        return PollErrorKind(value) if value is not None else PollErrorKind.UNKNOWN


class ItemRecord(BaseModel):
    """Entry in the poll-state table."""

    model_config = ConfigDict(extra="allow")

    state: ItemState
    config: str = ""
    processed_at: datetime | None = None
    workspace: str | None = None
    branch: str | None = None
    session: str | None = None
    terminal_since: datetime | None = None
    cleaned_up_at: datetime | None = None
    error: ErrorRecord | None = None


# -- Poll configuration ------------------------------------------------------

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$")
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str | int | float) -> float:
    """Parse ``"30m"`` / ``"2h"`` / ``45`` into seconds."""
    if isinstance(value, int | float):
        return float(value)
    match = _DURATION_RE.match(value)
    if match is None:
        msg = f"Invalid duration: {value!r} (expected e.g. '45s', '30m', '2h', '1d')"
        raise ValueError(msg)
    amount, unit = match.groups()
    return float(int(amount) * _UNIT_SECONDS[unit])


class FetchSpec(BaseModel):
    """Where items come from: an MCP-backed source, or a local command."""

    model_config = ConfigDict(extra="forbid")

    source: SourceType | None = None
    options: dict = Field(default_factory=dict)
    command: list[str] | str | None = Field(
        default=None, description="Command printing a JSON array of items (alternative to source)"
    )

    @model_validator(mode="after")
    def _exactly_one(self) -> FetchSpec:
        if (self.source is None) == (self.command is None):
            msg = "fetch requires exactly one of 'source' or 'command'"
            raise ValueError(msg)
        return self


class GlobFilter(BaseModel):
    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)


class FilterSpec(BaseModel):
    repo: GlobFilter = Field(default_factory=GlobFilter)
    labels: GlobFilter = Field(default_factory=GlobFilter)


class PromptSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    template: str | None = None
    file: str | None = None

    @model_validator(mode="after")
    def _exactly_one(self) -> PromptSpec:
        if (self.template is None) == (self.file is None):
            msg = "prompt requires exactly one of 'template' or 'file'"
            raise ValueError(msg)
        return self


class SessionSpec(BaseModel):
    name_template: str
    agent: str | None = None
    command: list[str] | None = Field(
        default=None, description="Command templates run inside the session; defaults to the agent CLI"
    )


class CleanupSpec(BaseModel):
    """Which item states tear an instance down, and after how long."""

    on: list[str] = Field(default_factory=list)
    delay: float = 0.0

    @model_validator(mode="before")
    @classmethod
    def _yaml_on_key(cls, data: object) -> object:
        # YAML 1.1 loads a bare ``on:`` key as boolean True.
        if isinstance(data, dict) and True in data and "on" not in data:
            data = {("on" if k is True else k): v for k, v in data.items()}
        return data

    @field_validator("delay", mode="before")
    @classmethod
    def _parse_delay(cls, value: object) -> float:
        return parse_duration(value)  # type: ignore[arg-type]

    @field_validator("on", mode="before")
    @classmethod
    def _lower(cls, value: object) -> object:
        if isinstance(value, list):
            return [str(v).lower() for v in value]
        return value


class PollConfig(BaseModel):
    """One external work source, as declared in the polls directory."""

    id: str
    enabled: bool = True
    fetch: FetchSpec
    item_mapping: dict[str, str]
    prompt: PromptSpec
    session: SessionSpec
    filters: FilterSpec = Field(default_factory=FilterSpec)
    cleanup: CleanupSpec | None = None

    source_path: Path | None = Field(default=None, exclude=True)
    """File the config was loaded from (resolves relative ``prompt.file``)."""

    @field_validator("item_mapping")
    @classmethod
    def _require_key(cls, value: dict[str, str]) -> dict[str, str]:
        if not value.get("key"):
            msg = "item_mapping must define 'key'"
            raise ValueError(msg)
        return value
