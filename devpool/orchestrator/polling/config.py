"""Poll config discovery.

Every ``*.yaml``, ``*.yml`` or ``*.json`` file in the polls directory holds one
``PollConfig``.  Files are read in name order.  A file that fails to parse or
validate is logged and skipped; it never stops the other configs from
loading.  When two files declare the same ``id`` the first one wins.
"""

from __future__ import annotations

from pathlib import Path

import yaml
from loguru import logger
from pydantic import ValidationError

from devpool.orchestrator.models.poll import PollConfig

CONFIG_SUFFIXES = (".yaml", ".yml", ".json")


class PollConfigError(ValueError):
    """Raised when a single poll config file is invalid."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


def load_poll_config(path: Path) -> PollConfig:
    """Parse and validate one config file.  Raises ``PollConfigError``."""
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise PollConfigError(path, f"unreadable: {exc}") from None

    if not isinstance(raw, dict):
        raise PollConfigError(path, "top level must be a mapping")

    try:
        config = PollConfig.model_validate(raw)
    except ValidationError as exc:
        errors = "; ".join(f"{'.'.join(str(p) for p in e['loc']) or '<root>'}: {e['msg']}" for e in exc.errors())
        raise PollConfigError(path, errors) from None

    config.source_path = path
    if config.prompt.file is not None:
        prompt_path = Path(config.prompt.file).expanduser()
        if not prompt_path.is_absolute():
            prompt_path = path.parent / prompt_path
        if not prompt_path.is_file():
            raise PollConfigError(path, f"prompt file not found: {prompt_path}")
    return config


def load_poll_configs(polls_dir: str | Path, *, include_disabled: bool = False) -> list[PollConfig]:
    """Load every valid config in ``polls_dir`` (missing directory -> no configs)."""
    directory = Path(polls_dir).expanduser()
    if not directory.is_dir():
        logger.debug("Polls directory {} does not exist", directory)
        return []

    configs: dict[str, PollConfig] = {}
    seen: dict[str, Path] = {}
    for path in sorted(p for p in directory.iterdir() if p.suffix in CONFIG_SUFFIXES and p.is_file()):
        try:
            config = load_poll_config(path)
        except PollConfigError as exc:
            logger.error("Skipping invalid poll config {}", exc)
            continue

        if config.id in seen:
            logger.warning("Poll config id '{}' in {} duplicates {}; ignoring it", config.id, path, seen[config.id])
            continue
        seen[config.id] = path
        if not config.enabled and not include_disabled:
            logger.debug("Poll config '{}' is disabled", config.id)
            continue
        configs[config.id] = config

    return list(configs.values())
