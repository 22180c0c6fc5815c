"""Shared test fixtures.

Everything runs against temporary directories.  Tests that go through
``get_settings()`` (the CLI) use ``devpool_env``, which points every
``DEVPOOL_*`` path at ``tmp_path`` and invalidates the settings cache.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from loguru import logger

from devpool.orchestrator.settings import _get_settings_cached


@pytest.fixture
def devpool_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[dict[str, Path]]:
    """Isolated DEVPOOL_* environment rooted at ``tmp_path``."""
    paths = {
        "state_dir": tmp_path / "state",
        "clones_dir": tmp_path / "clones",
        "polls_dir": tmp_path / "polls",
        "mcp_config_path": tmp_path / "opencode.json",
    }
    for name, path in paths.items():
        monkeypatch.setenv(f"DEVPOOL_{name.upper()}", str(path))
    monkeypatch.delenv("DEVPOOL_LOG_FILE", raising=False)
    monkeypatch.delenv("DEVPOOL_LOG_LEVEL", raising=False)
    _get_settings_cached.cache_clear()

    yield paths

    _get_settings_cached.cache_clear()
    # The CLI points loguru at the runner's captured stderr; drop that sink.
    logger.remove()
