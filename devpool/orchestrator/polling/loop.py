"""The poll loop: fetch items, decide, launch instances, record outcomes.

One cycle walks every enabled poll config:

1. **Fetch** the config's items (skipped while a retryable fetch failure is
   backing off), bounded by ``fetch_timeout`` and the cycle budget.
2. **Map** each item (``item_mapping``) and drop keys already seen this cycle.
3. **Filter** by repository and label globs.
4. **Gate** on the stored item state: processed items are left alone,
   permanently failed items are skipped, failed items are retried only when
   ``should_retry`` says so, unseen items are processed.
5. **Process**: render the prompt and session, bring the instance up,
   launch the session, then ``mark_processed``.  A session that fails to
   start takes a freshly created instance down with it.  Any failure is
   classified and recorded with ``mark_error``; it never aborts the cycle.
6. **Clean up** processed items whose source state matches ``cleanup.on``
   (or that vanished from a successful fetch) once ``cleanup.delay`` passed.

In ``dry_run`` mode decisions are logged and nothing is written or launched.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import anyio
from loguru import logger

from devpool.orchestrator.instances.sessions import session_env
from devpool.orchestrator.models.enums import ItemState, PollErrorKind
from devpool.orchestrator.models.poll import PollConfig
from devpool.orchestrator.polling.bridge import fetch_from_command
from devpool.orchestrator.polling.errors import classify_error, is_retryable
from devpool.orchestrator.polling.mapping import (
    MappedItem,
    MappingError,
    map_item,
    passes_filters,
    render_prompt,
    render_session_name,
    session_command,
)

if TYPE_CHECKING:
    from loguru import Logger

    from devpool.orchestrator.instances.launcher import Instance, InstanceLauncher
    from devpool.orchestrator.instances.sessions import SessionLauncher
    from devpool.orchestrator.managers.items import ItemStateManager
    from devpool.orchestrator.models.poll import ItemRecord
    from devpool.orchestrator.polling.bridge import SourceBridge

GONE_STATE = "gone"


def fetch_key(config_id: str) -> str:
    """State-table key tracking fetch failures of one poll config."""
    return f"fetch:{config_id}"


@dataclass
class CycleReport:
    """What one cycle did, per item key."""

    fetched: int = 0
    launched: list[str] = field(default_factory=list)
    would_launch: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    filtered: list[str] = field(default_factory=list)
    failed: dict[str, PollErrorKind] = field(default_factory=dict)
    cleaned: list[str] = field(default_factory=list)
    fetch_failed: dict[str, str] = field(default_factory=dict)
    fetch_deferred: list[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"fetched={self.fetched} launched={len(self.launched)} failed={len(self.failed)} "
            f"deferred={len(self.deferred)} skipped={len(self.skipped)} cleaned={len(self.cleaned)}"
        )


ConfigSource = Sequence[PollConfig] | Callable[[], Sequence[PollConfig]]


class PollCoordinator:
    """Runs poll cycles over a set of configs.

    ``configs`` may be a callable, in which case it is called at the start of
    every cycle so configs added or edited on disk are picked up.
    """

    def __init__(
        self,
        configs: ConfigSource,
        bridge: SourceBridge,
        items: ItemStateManager,
        launcher: InstanceLauncher,
        sessions: SessionLauncher,
        *,
        fetch_timeout: float = 60.0,
        cycle_timeout: float = 120.0,
        dry_run: bool = False,
    ) -> None:
        self._configs = configs
        self._bridge = bridge
        self._items = items
        self._launcher = launcher
        self._sessions = sessions
        self._fetch_timeout = fetch_timeout
        self._cycle_timeout = cycle_timeout
        self.dry_run = dry_run

    def _current_configs(self) -> list[PollConfig]:
        configs = self._configs() if callable(self._configs) else self._configs
        return [c for c in configs if c.enabled]

    # -- Cycle -----------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        report = CycleReport()
        started = anyio.current_time()
        for config in self._current_configs():
            log = logger.bind(poll=config.id)
            try:
                await self._run_config(config, report, log, started)
            except Exception:
                log.exception("Poll cycle for '{}' failed unexpectedly", config.id)
        logger.info("Poll cycle done: {}", report.summary())
        return report

    async def run_forever(self, interval: float, stop_event: anyio.Event | None = None) -> None:
        """Run cycles every ``interval`` seconds until ``stop_event`` is set."""
        stop_event = stop_event or anyio.Event()
        logger.info("Polling every {:.0f}s{}", interval, " (dry run)" if self.dry_run else "")
        while not stop_event.is_set():
            await self.run_cycle()
            with anyio.move_on_after(interval):
                await stop_event.wait()
        logger.info("Poll loop stopped")

    async def _run_config(self, config: PollConfig, report: CycleReport, log: Logger, started: float) -> None:
        items = await self._fetch_items(config, report, log, started)
        if items is None:
            return
        report.fetched += len(items)

        states: dict[str, str | None] = {}
        for raw in items:
            try:
                mapped = map_item(config, raw)
            except MappingError as exc:
                log.warning("Skipping item: {}", exc)
                continue
            if mapped.key in states:
                log.debug("Duplicate key {} in this cycle; ignoring", mapped.key)
                continue
            states[mapped.key] = mapped.state

            if not passes_filters(config.filters, mapped):
                report.filtered.append(mapped.key)
                continue
            await self._handle_item(config, mapped, report, log)

        await self._cleanup(config, states, report, log)

    # -- Fetch -----------------------------------------------------------------

    async def _fetch_items(
        self, config: PollConfig, report: CycleReport, log: Logger, started: float
    ) -> list[dict[str, Any]] | None:
        key = fetch_key(config.id)
        previous = await self._items.get_error(key)
        if previous is not None and not await self._items.should_retry(key):
            log.debug("Fetch is backing off until {}", previous.next_retry)
            report.fetch_deferred.append(config.id)
            return None

        remaining = self._cycle_timeout - (anyio.current_time() - started)
        if remaining <= 0:
            exhausted = TimeoutError(f"Cycle budget of {self._cycle_timeout:g}s exhausted before fetching")
            await self._record_fetch_failure(config, exhausted, report, log)
            return None

        try:
            with anyio.fail_after(min(self._fetch_timeout, remaining)):
                items = await self._fetch(config)
        except Exception as exc:
            await self._record_fetch_failure(config, exc, report, log)
            return None

        if previous is not None and not self.dry_run:
            await self._items.clear(key)
        log.debug("Fetched {} item(s)", len(items))
        return items

    async def _fetch(self, config: PollConfig) -> list[dict[str, Any]]:
        spec = config.fetch
        if spec.source is not None:
            return await self._bridge.fetch(spec.source, spec.options)
        cwd = config.source_path.parent if config.source_path is not None else None
        return await fetch_from_command(spec.command, cwd=cwd)  # type: ignore[arg-type]

    async def _record_fetch_failure(self, config: PollConfig, exc: Exception, report: CycleReport, log: Logger) -> None:
        kind = classify_error(exc)
        message = str(exc) or type(exc).__name__
        report.fetch_failed[config.id] = message
        if not is_retryable(kind):
            # Configuration problems: reported every cycle, no backoff state.
            log.error("Fetch failed ({}): {}", kind, message)
            return
        if self.dry_run:
            log.warning("Fetch failed ({}): {}", kind, message)
            return
        await self._items.mark_error(fetch_key(config.id), config.id, kind, message)

    # -- Items -----------------------------------------------------------------

    async def _handle_item(self, config: PollConfig, mapped: MappedItem, report: CycleReport, log: Logger) -> None:
        key = mapped.key
        record = await self._items.get(key)

        if record is not None and record.state == ItemState.PROCESSED:
            return
        if record is not None and record.state == ItemState.ERROR:
            if await self._items.should_skip(key):
                report.skipped.append(key)
                return
            if not await self._items.should_retry(key):
                report.deferred.append(key)
                return
            log.info("Retrying {} (attempt {})", key, record.error.attempts + 1 if record.error else 1)

        if self.dry_run:
            log.info("Would launch {} -> {}@{}", key, mapped.repo, mapped.branch)
            report.would_launch.append(key)
            return

        try:
            await self._process(config, mapped, log)
        except Exception as exc:
            kind = classify_error(exc)
            report.failed[key] = kind
            await self._items.mark_error(key, config.id, kind, str(exc) or type(exc).__name__)
            return
        report.launched.append(key)

    async def _process(self, config: PollConfig, mapped: MappedItem, log: Logger) -> None:
        # Rendered before ``up``: a failure here must leave no instance behind.
        prompt = render_prompt(config, mapped)
        name = render_session_name(config, mapped)
        command = session_command(config, mapped, prompt)

        instance = await self._launcher.up(mapped.repo, mapped.branch)
        try:
            if await self._sessions.exists(name):
                log.info("Session {} already running; not starting another", name)
            else:
                env = session_env(
                    config_id=config.id,
                    item_key=mapped.key,
                    workspace=instance.workspace,
                    branch=instance.branch,
                    port=instance.port,
                )
                await self._sessions.launch(name, instance.workspace, command, env)
        except Exception:
            if instance.created:
                await self._discard_instance(instance, log)
            raise

        await self._items.mark_processed(
            mapped.key,
            config.id,
            workspace=str(instance.workspace),
            branch=instance.branch,
            session=name,
            repo=instance.repo,
            port=instance.port,
        )
        log.info("Launched {} in {} (port {}, session {})", mapped.key, instance.workspace, instance.port, name)

    async def _discard_instance(self, instance: Instance, log: Logger) -> None:
        """Tear down an instance whose session never started."""
        log.warning("Session for {} failed to start; tearing the instance down", instance.workspace)
        try:
            await self._launcher.down(instance.workspace)
        except Exception:
            log.exception("Could not tear down {}; run 'devpool down'", instance.workspace)

    # -- Cleanup ---------------------------------------------------------------

    async def _cleanup(
        self, config: PollConfig, states: dict[str, str | None], report: CycleReport, log: Logger
    ) -> None:
        policy = config.cleanup
        if policy is None or not policy.on:
            return

        now = datetime.now(UTC)
        for key, record in (await self._items.list_items(config.id)).items():
            if record.state != ItemState.PROCESSED or record.cleaned_up_at is not None:
                continue

            current = states[key] if key in states else GONE_STATE
            if current not in policy.on:
                if record.terminal_since is not None and not self.dry_run:
                    await self._items.clear_terminal(key)
                continue

            since = record.terminal_since
            if since is None:
                since = now
                log.info("{} is {}; cleaning up in {:.0f}s", key, current, policy.delay)
                if not self.dry_run:
                    await self._items.mark_terminal(key, now=now)

            if since.tzinfo is None:
                since = since.replace(tzinfo=UTC)
            if (now - since).total_seconds() < policy.delay:
                continue

            if self.dry_run:
                log.info("Would clean up {}", key)
                continue
            await self._teardown(key, record, report, log)

    async def _teardown(self, key: str, record: ItemRecord, report: CycleReport, log: Logger) -> None:
        try:
            if record.session:
                await self._sessions.kill(record.session)
            if record.workspace:
                await self._launcher.down(record.workspace)
        except Exception:
            log.exception("Cleanup of {} failed; will retry next cycle", key)
            return
        await self._items.mark_cleaned(key)
        report.cleaned.append(key)
        log.info("Cleaned up {}", key)
