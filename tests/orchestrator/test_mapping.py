"""Unit tests for item mapping, filters and template rendering."""

from __future__ import annotations

import pytest
from jinja2.exceptions import SecurityError

from devpool.orchestrator.models.poll import PollConfig
from devpool.orchestrator.polling.mapping import (
    MappingError,
    map_item,
    passes_filters,
    render,
    render_prompt,
    render_session_name,
    session_command,
    slugify,
)

ISSUE = {
    "number": 42,
    "title": "Fix: Login button #broken",
    "state": "open",
    "repository": {"full_name": "acme/widgets"},
    "labels": [{"name": "bug"}, {"name": "ui"}],
}


def _config(**overrides) -> PollConfig:
    raw = {
        "id": "gh-issues",
        "fetch": {"source": "github_issue"},
        "item_mapping": {"key": "{{ repository.full_name }}#{{ number }}"},
        "prompt": {"template": "Fix #{{ number }}: {{ title }} in {{ repo }} on {{ branch }}"},
        "session": {"name_template": "{{ config_id }}-{{ number }}"},
    }
    raw.update(overrides)
    return PollConfig.model_validate(raw)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("Fix: Login #42", "fix-login-42"),
        ("  --Already-Slugged--  ", "already-slugged"),
        ("acme/widgets#7", "acme-widgets-7"),
        (42, "42"),
    ],
)
def test_slugify(value: object, expected: str) -> None:
    assert slugify(value) == expected


def test_slugify_truncates() -> None:
    assert len(slugify("word " * 40)) <= 50
    assert not slugify("word " * 40).endswith("-")


def test_render_plain_text_untouched() -> None:
    assert render("  plain  ", {}) == "  plain  "


def test_render_sandboxed() -> None:
    with pytest.raises(SecurityError):
        render("{{ item.__class__.__mro__ }}", {"item": {}})


def test_map_item_defaults() -> None:
    mapped = map_item(_config(), ISSUE)

    assert mapped.key == "acme/widgets#42"
    assert mapped.repo == "acme/widgets"
    assert mapped.branch == "devpool/acme-widgets-42"
    assert mapped.state == "open"
    assert mapped.labels == ["bug", "ui"]


def test_map_item_uses_earlier_fields() -> None:
    config = _config(
        item_mapping={
            "branch": "fix/{{ number }}-{{ title | slug }}",
            "key": "{{ repository.full_name }}#{{ number }}",
            "session_hint": "{{ key }}@{{ branch }}",
        }
    )
    mapped = map_item(config, ISSUE)
    assert mapped.branch == "fix/42-fix-login-button-broken"
    assert mapped.fields["session_hint"] == "acme/widgets#42@fix/42-fix-login-button-broken"


def test_map_item_pr_head_branch() -> None:
    pr = {**ISSUE, "headRefName": "feature/login"}
    assert map_item(_config(), pr).branch == "feature/login"


def test_map_item_explicit_repo() -> None:
    item = {"identifier": "ENG-12", "title": "Thing", "state": {"name": "In Progress"}}
    config = _config(item_mapping={"key": "linear:{{ identifier }}", "repo": "acme/api"})
    mapped = map_item(config, item)
    assert mapped.repo == "acme/api"
    assert mapped.state == "in progress"


def test_map_item_errors() -> None:
    with pytest.raises(MappingError, match="rendered empty"):
        map_item(_config(item_mapping={"key": "{{ missing }}"}), ISSUE)

    with pytest.raises(MappingError, match="no repository"):
        map_item(_config(item_mapping={"key": "issue-{{ number }}"}), {"number": 1})

    with pytest.raises(MappingError, match="failed to render"):
        map_item(_config(item_mapping={"key": "{{ number | nosuchfilter }}"}), ISSUE)


@pytest.mark.parametrize(
    ("filters", "allowed"),
    [
        ({}, True),
        ({"repo": {"include": ["acme/*"]}}, True),
        ({"repo": {"include": ["other/*"]}}, False),
        ({"repo": {"exclude": ["acme/wid*"]}}, False),
        ({"labels": {"include": ["bug"]}}, True),
        ({"labels": {"include": ["feature"]}}, False),
        ({"labels": {"exclude": ["u?"]}}, False),
        ({"labels": {"include": ["bug"], "exclude": ["wontfix"]}}, True),
    ],
)
def test_filters(filters: dict, allowed: bool) -> None:
    config = _config(filters=filters)
    assert passes_filters(config.filters, map_item(config, ISSUE)) is allowed


def test_label_include_rejects_unlabelled_items() -> None:
    config = _config(filters={"labels": {"include": ["bug"]}})
    item = {**ISSUE, "labels": []}
    assert passes_filters(config.filters, map_item(config, item)) is False


def test_render_prompt_inline() -> None:
    config = _config()
    prompt = render_prompt(config, map_item(config, ISSUE))
    assert prompt == "Fix #42: Fix: Login button #broken in acme/widgets on devpool/acme-widgets-42"


def test_render_prompt_from_file(tmp_path) -> None:
    (tmp_path / "prompt.md").write_text("Issue {{ number }} ({{ config_id }})\n")
    config = _config(prompt={"file": "prompt.md"})
    config.source_path = tmp_path / "gh.yaml"
    assert render_prompt(config, map_item(config, ISSUE)) == "Issue 42 (gh-issues)"


def test_session_name_is_sanitised() -> None:
    config = _config(session={"name_template": "{{ repository.full_name }}#{{ number }}"})
    assert render_session_name(config, map_item(config, ISSUE)) == "acme-widgets-42"


def test_session_command_default() -> None:
    config = _config(session={"name_template": "s", "agent": "build"})
    mapped = map_item(config, ISSUE)
    assert session_command(config, mapped, "do it") == ["opencode", "--agent", "build", "--prompt", "do it"]


def test_session_command_template() -> None:
    config = _config(session={"name_template": "s", "command": ["claude", "-p", "{{ prompt }}", "{{ key }}"]})
    mapped = map_item(config, ISSUE)
    assert session_command(config, mapped, "do it") == ["claude", "-p", "do it", "acme/widgets#42"]
