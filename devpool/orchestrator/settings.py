"""Orchestrator configuration loaded from DEVPOOL_* environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DevpoolSettings(BaseSettings):
    """devpool settings.

    All fields are read from environment variables with the ``DEVPOOL_``
    prefix.  For example, ``DEVPOOL_PORT_RANGE_START=14000`` maps to
    ``port_range_start``.

    Only the CLI reads these.  Every orchestrator component takes its
    configuration as explicit constructor arguments (see
    ``OrchestratorContext.from_settings``).
    """

    model_config = SettingsConfigDict(
        env_prefix="DEVPOOL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"
    log_file: Path | None = None
    """Optional rotating log file.  ``poll run`` defaults it to ``{state_dir}/logs/poll.log``."""

    # -- Paths -----------------------------------------------------------------
    state_dir: Path = Path("~/.cache/devpool").expanduser()
    """Root of all shared state: port table, job table, poll state, locks."""

    clones_dir: Path = Path("~/.cache/devpool/clones").expanduser()
    polls_dir: Path = Path("~/.config/devpool/polls").expanduser()
    mcp_config_path: Path = Path("~/.config/opencode/opencode.json").expanduser()
    """File holding ``mcp.<server>`` definitions used by the source bridge."""

    # -- Ports -----------------------------------------------------------------
    port_range_start: int = 13000
    port_range_end: int = 13099
    """Inclusive upper bound of the port pool."""

    # -- Locks -----------------------------------------------------------------
    lock_stale_after: float = 60.0
    """Seconds after which a held lock is presumed abandoned and reclaimed."""

    lock_poll_interval: float = 0.1

    # -- Job retention ---------------------------------------------------------
    job_completed_max_age: float = 3600.0
    job_failed_max_age: float = 86400.0

    # -- Polling ---------------------------------------------------------------
    poll_interval: float = 300.0
    poll_cycle_timeout: float = 120.0
    """Seconds all fetches of one poll cycle may take together."""

    fetch_timeout: float = 60.0

    # -- VCS -------------------------------------------------------------------
    clone_url_template: str = "https://github.com/{repo}.git"

    @model_validator(mode="after")
    def _check_port_range(self) -> DevpoolSettings:
        if self.port_range_start > self.port_range_end:
            msg = f"port_range_start ({self.port_range_start}) exceeds port_range_end ({self.port_range_end})"
            raise ValueError(msg)
        return self

    # -- Helpers ---------------------------------------------------------------

    @property
    def lock_dir(self) -> Path:
        return self.state_dir / "locks"

    @property
    def default_poll_log(self) -> Path:
        return self.state_dir / "logs" / "poll.log"


def get_settings() -> DevpoolSettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``_get_settings_cached.cache_clear()`` in tests to force a
    re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> DevpoolSettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return DevpoolSettings()


from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
