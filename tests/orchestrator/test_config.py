"""Unit tests for poll config loading."""

from __future__ import annotations

import json
import textwrap

import pytest

from devpool.orchestrator.models.enums import SourceType
from devpool.orchestrator.polling.config import PollConfigError, load_poll_config, load_poll_configs

GITHUB_CONFIG = textwrap.dedent(
    """
    id: gh-issues
    fetch:
      source: github_issue
      options:
        repo: acme/widgets
    item_mapping:
      key: "{{ repository.full_name }}#{{ number }}"
      branch: "fix/{{ number }}"
    prompt:
      template: "Fix {{ title }}"
    session:
      name_template: "gh-{{ number }}"
    filters:
      labels:
        exclude: ["wontfix"]
    cleanup:
      on: [CLOSED]
      delay: 30m
    """
)


def _write(directory, name: str, content: str):
    path = directory / name
    path.write_text(content)
    return path


def test_load_yaml_config(tmp_path) -> None:
    path = _write(tmp_path, "gh.yaml", GITHUB_CONFIG)
    config = load_poll_config(path)

    assert config.id == "gh-issues"
    assert config.enabled is True
    assert config.fetch.source == SourceType.GITHUB_ISSUE
    assert config.fetch.options == {"repo": "acme/widgets"}
    assert config.filters.labels.exclude == ["wontfix"]
    assert config.cleanup.on == ["closed"]
    assert config.cleanup.delay == 1800
    assert config.source_path == path


def test_load_json_config(tmp_path) -> None:
    raw = {
        "id": "local",
        "fetch": {"command": ["./list-items.sh"]},
        "item_mapping": {"key": "{{ id }}", "repo": "acme/widgets"},
        "prompt": {"template": "Do {{ id }}"},
        "session": {"name_template": "job-{{ id }}"},
    }
    config = load_poll_config(_write(tmp_path, "local.json", json.dumps(raw)))
    assert config.fetch.command == ["./list-items.sh"]
    assert config.fetch.source is None


def test_prompt_file_resolved_relative_to_config(tmp_path) -> None:
    _write(tmp_path, "prompt.md", "Work on {{ title }}")
    content = GITHUB_CONFIG.replace('template: "Fix {{ title }}"', "file: prompt.md")
    config = load_poll_config(_write(tmp_path, "gh.yaml", content))
    assert config.prompt.file == "prompt.md"


def test_missing_prompt_file(tmp_path) -> None:
    content = GITHUB_CONFIG.replace('template: "Fix {{ title }}"', "file: missing.md")
    with pytest.raises(PollConfigError, match="prompt file not found"):
        load_poll_config(_write(tmp_path, "gh.yaml", content))


@pytest.mark.parametrize(
    ("content", "reason"),
    [
        ("- just\n- a list\n", "top level must be a mapping"),
        ("id: [unclosed\n", "unreadable"),
        (GITHUB_CONFIG.replace('key: "{{ repository.full_name }}#{{ number }}"', 'title: "x"'), "item_mapping"),
        (GITHUB_CONFIG.replace("source: github_issue", "source: jira"), "fetch.source"),
        (GITHUB_CONFIG.replace("delay: 30m", "delay: soon"), "Invalid duration"),
    ],
)
def test_invalid_config(tmp_path, content: str, reason: str) -> None:
    with pytest.raises(PollConfigError, match=reason):
        load_poll_config(_write(tmp_path, "bad.yaml", content))


def test_fetch_requires_exactly_one_of_source_or_command(tmp_path) -> None:
    content = GITHUB_CONFIG.replace("source: github_issue", "source: github_issue\n  command: [ls]")
    with pytest.raises(PollConfigError, match="exactly one of 'source' or 'command'"):
        load_poll_config(_write(tmp_path, "both.yaml", content))


def test_load_directory_skips_invalid_and_duplicates(tmp_path) -> None:
    _write(tmp_path, "a.yaml", GITHUB_CONFIG)
    _write(tmp_path, "b.yml", GITHUB_CONFIG.replace("fix/{{ number }}", "dup/{{ number }}"))
    _write(tmp_path, "c.yaml", "not: [valid")
    _write(tmp_path, "d.yaml", GITHUB_CONFIG.replace("id: gh-issues", "id: other"))
    _write(tmp_path, "notes.txt", "ignored")

    configs = load_poll_configs(tmp_path)

    assert [c.id for c in configs] == ["gh-issues", "other"]
    # The first file wins for a duplicated id.
    assert configs[0].item_mapping["branch"] == "fix/{{ number }}"


def test_disabled_configs(tmp_path) -> None:
    _write(tmp_path, "a.yaml", GITHUB_CONFIG.replace("id: gh-issues", "id: gh-issues\nenabled: false"))

    assert load_poll_configs(tmp_path) == []
    assert [c.id for c in load_poll_configs(tmp_path, include_disabled=True)] == ["gh-issues"]


def test_missing_directory(tmp_path) -> None:
    assert load_poll_configs(tmp_path / "nope") == []
