import json
import signal
from collections import deque
from datetime import UTC, datetime
from functools import partial
from pathlib import Path

import anyio
import click
from loguru import logger

from devpool.orchestrator.log import setup_logging
from devpool.orchestrator.settings import DevpoolSettings, get_settings


def format_age(seconds: float) -> str:
    """Compact age for listings: ``45s``, ``5m``, ``2h``, ``2d``."""
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


def _age_since(when: datetime | None) -> str:
    if when is None:
        return "-"
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return format_age((datetime.now(UTC) - when).total_seconds())


def _context(ctx: click.Context):
    """Build the orchestrator context lazily (only commands that need it pay for it)."""
    from devpool.orchestrator.context import OrchestratorContext

    return OrchestratorContext.from_settings(ctx.obj)


def _run(func, *args):
    """Run an async manager call, turning domain errors into CLI errors."""
    try:
        return anyio.run(partial(func, *args))
    except (LookupError, ValueError, RuntimeError) as exc:
        raise click.ClickException(str(exc)) from None


@click.group()
@click.option("--log-level", default=None, help="Log level (default: from DEVPOOL_LOG_LEVEL or INFO).")
@click.pass_context
def main(ctx: click.Context, log_level: str | None) -> None:
    """devpool - concurrent ephemeral devcontainer instances, one per repo/branch."""
    settings = get_settings()
    if log_level:
        settings = settings.model_copy(update={"log_level": log_level})
    ctx.obj = settings
    setup_logging(settings.log_level)


# ---------------------------------------------------------------------------
# Instances
# ---------------------------------------------------------------------------


def _resolve(ctx: click.Context, spec: str) -> str:
    """Accept an assigned workspace path, ``owner/repo/branch``, ``repo/branch`` or a bare branch."""
    from devpool.orchestrator.instances.vcs import resolve_workspace

    if Path(spec).is_absolute():
        return spec
    settings: DevpoolSettings = ctx.obj
    try:
        return str(resolve_workspace(settings.clones_dir, spec))
    except (LookupError, ValueError) as exc:
        raise click.ClickException(str(exc)) from None


@main.command()
@click.argument("repo")
@click.argument("branch")
@click.pass_context
def up(ctx: click.Context, repo: str, branch: str) -> None:
    """Clone REPO at BRANCH and start its devcontainer on a free port."""
    orchestrator = _context(ctx)
    instance = _run(orchestrator.launcher.up, repo, branch)
    click.echo(f"{instance.workspace}  port={instance.port}  container={instance.container_id[:12]}")


@main.command()
@click.argument("workspace")
@click.pass_context
def down(ctx: click.Context, workspace: str) -> None:
    """Stop WORKSPACE's container and release its port."""
    orchestrator = _context(ctx)
    released = _run(orchestrator.launcher.down, _resolve(ctx, workspace))
    if released is None:
        click.echo("No port was assigned; nothing to release.")
    else:
        click.echo(f"Released port {released.port}.")


@main.command(name="list")
@click.pass_context
def list_instances(ctx: click.Context) -> None:
    """List port assignments with their job status."""
    orchestrator = _context(ctx)

    async def collect():
        return await orchestrator.ports.list(), {j.workspace: j for j in await orchestrator.jobs.list()}

    assignments, jobs = _run(collect)
    if not assignments:
        click.echo("No instances.")
        return
    click.echo(f"{'PORT':<6} {'STATUS':<10} {'AGE':>5}  {'REPO':<30} {'BRANCH':<25} WORKSPACE")
    for a in assignments:
        job = jobs.get(a.workspace)
        status = job.status if job else "-"
        click.echo(f"{a.port:<6} {status:<10} {_age_since(a.assigned_at):>5}  {a.repo:<30} {a.branch:<25} {a.workspace}")


@main.command(name="exec", context_settings={"ignore_unknown_options": True})
@click.argument("workspace")
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
def exec_(ctx: click.Context, workspace: str, command: tuple[str, ...]) -> None:
    """Run COMMAND inside WORKSPACE's container."""
    orchestrator = _context(ctx)
    code = _run(orchestrator.launcher.exec, _resolve(ctx, workspace), list(command))
    ctx.exit(code)


@main.command()
@click.pass_context
def reclaim(ctx: click.Context) -> None:
    """Release ports whose container is gone."""
    orchestrator = _context(ctx)
    reclaimed = _run(orchestrator.launcher.reclaim_orphans)
    for a in reclaimed:
        click.echo(f"Reclaimed port {a.port} ({a.workspace})")
    click.echo(f"{len(reclaimed)} orphaned port(s) reclaimed.")


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@main.group()
def jobs() -> None:
    """Inspect and expire job records."""


@jobs.command(name="list")
@click.pass_context
def jobs_list(ctx: click.Context) -> None:
    """List job records, oldest first."""
    orchestrator = _context(ctx)
    records = _run(orchestrator.jobs.list)
    if not records:
        click.echo("No jobs.")
        return
    click.echo(f"{'STATUS':<10} {'AGE':>5}  {'PORT':<6} {'REPO':<30} {'BRANCH':<25} ERROR")
    for job in records:
        port = str(job.port) if job.port else "-"
        click.echo(
            f"{job.status:<10} {_age_since(job.started_at):>5}  {port:<6} {job.repo:<30} {job.branch:<25} {job.error or ''}"
        )


@jobs.command(name="cleanup")
@click.option("--completed-max-age", type=float, default=None, help="Seconds to keep completed jobs.")
@click.option("--failed-max-age", type=float, default=None, help="Seconds to keep failed jobs.")
@click.pass_context
def jobs_cleanup(ctx: click.Context, completed_max_age: float | None, failed_max_age: float | None) -> None:
    """Delete completed/failed jobs older than their retention."""
    orchestrator = _context(ctx)
    settings: DevpoolSettings = ctx.obj
    removed = _run(
        orchestrator.jobs.cleanup,
        completed_max_age if completed_max_age is not None else settings.job_completed_max_age,
        failed_max_age if failed_max_age is not None else settings.job_failed_max_age,
    )
    click.echo(f"Removed {len(removed)} job(s).")


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------


@main.group()
def poll() -> None:
    """Spawn instances from GitHub / Linear work items."""


async def _poll_until_signalled(coordinator, interval: float) -> None:
    stop = anyio.Event()

    async def watch_signals() -> None:
        with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
            async for signum in signals:
                logger.info("Received {}; stopping after the current cycle", signal.Signals(signum).name)
                stop.set()
                return

    async with anyio.create_task_group() as tg:
        tg.start_soon(watch_signals)
        await coordinator.run_forever(interval, stop)
        tg.cancel_scope.cancel()


@poll.command(name="run")
@click.option("--once", is_flag=True, default=False, help="Run a single cycle and exit.")
@click.option("--dry-run", is_flag=True, default=False, help="Log decisions without launching anything.")
@click.option("--interval", type=float, default=None, help="Seconds between cycles (default: DEVPOOL_POLL_INTERVAL).")
@click.pass_context
def poll_run(ctx: click.Context, once: bool, dry_run: bool, interval: float | None) -> None:
    """Run the poll loop."""
    from devpool.orchestrator.polling.config import load_poll_configs
    from devpool.orchestrator.polling.loop import PollCoordinator

    settings: DevpoolSettings = ctx.obj
    setup_logging(settings.log_level, settings.log_file or settings.default_poll_log)

    orchestrator = _context(ctx)
    coordinator = PollCoordinator(
        partial(load_poll_configs, settings.polls_dir),
        orchestrator.bridge,
        orchestrator.items,
        orchestrator.launcher,
        orchestrator.sessions,
        fetch_timeout=settings.fetch_timeout,
        cycle_timeout=settings.poll_cycle_timeout,
        dry_run=dry_run,
    )
    if once:
        report = _run(coordinator.run_cycle)
        click.echo(report.summary())
        if report.failed or report.fetch_failed:
            ctx.exit(1)
        return
    _run(_poll_until_signalled, coordinator, interval or settings.poll_interval)


@poll.command(name="status")
@click.option("--poll", "poll_id", default=None, help="Only show items of this poll config.")
@click.pass_context
def poll_status(ctx: click.Context, poll_id: str | None) -> None:
    """Show configured polls and per-item state."""
    from devpool.orchestrator.polling.config import load_poll_configs

    settings: DevpoolSettings = ctx.obj
    configs = load_poll_configs(settings.polls_dir, include_disabled=True)
    click.echo(f"Polls ({settings.polls_dir}):")
    for config in configs:
        source = config.fetch.source or "command"
        click.echo(f"  {config.id:<24} {source:<14} {'enabled' if config.enabled else 'disabled'}")
    if not configs:
        click.echo("  (none)")

    orchestrator = _context(ctx)
    items = _run(orchestrator.items.list_items, poll_id)
    click.echo("Items:")
    if not items:
        click.echo("  (none)")
    for key, record in sorted(items.items()):
        if record.error is not None:
            error = record.error
            attempts = f"{error.attempts}/{error.max_attempts or '-'}"
            retry = f" next retry in {_age_until(error.next_retry)}" if error.next_retry else ""
            click.echo(f"  {key:<40} error {error.type} ({attempts}){retry}: {error.message}")
        else:
            extra = " cleaned" if record.cleaned_up_at else (" terminal" if record.terminal_since else "")
            click.echo(f"  {key:<40} {record.state} {_age_since(record.processed_at)} ago{extra}")


def _age_until(when: datetime) -> str:
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return format_age((when - datetime.now(UTC)).total_seconds())


@poll.command(name="clear")
@click.argument("key")
@click.pass_context
def poll_clear(ctx: click.Context, key: str) -> None:
    """Forget KEY's poll state so the next cycle processes it afresh."""
    orchestrator = _context(ctx)
    if not _run(orchestrator.items.clear, key):
        raise click.ClickException(f"No poll state for '{key}'")
    click.echo(f"Cleared {key}.")


@poll.command(name="logs")
@click.option("--poll", "poll_id", default=None, help="Only show lines of this poll config.")
@click.option("--lines", "-n", type=int, default=50, show_default=True, help="Number of lines to show.")
@click.pass_context
def poll_logs(ctx: click.Context, poll_id: str | None, lines: int) -> None:
    """Show the tail of the poll daemon's log."""
    settings: DevpoolSettings = ctx.obj
    path = Path(settings.log_file or settings.default_poll_log)
    if not path.exists():
        raise click.ClickException(f"No poll log at {path}")

    marker = f"[{poll_id}]" if poll_id else None
    with path.open(encoding="utf-8", errors="replace") as f:
        tail = deque((line for line in f if marker is None or marker in line), maxlen=lines)
    for line in tail:
        click.echo(line.rstrip("\n"))


# ---------------------------------------------------------------------------
# Source bridge
# ---------------------------------------------------------------------------


@main.command()
@click.argument("source")
@click.argument("options", required=False)
@click.pass_context
def fetch(ctx: click.Context, source: str, options: str | None) -> None:
    """Fetch SOURCE items once and print them as a JSON array.

    Exit codes: 1 invalid arguments, 10 MCP not configured, 11 connection
    failed, 12 tool not found, 13 tool failed, 99 unexpected.
    """
    from devpool.orchestrator.polling.bridge import SourceBridge
    from devpool.orchestrator.polling.exceptions import EXIT_UNEXPECTED, BridgeError, InvalidSourceError

    settings: DevpoolSettings = ctx.obj
    try:
        parsed = json.loads(options) if options else {}
        if not isinstance(parsed, dict):
            msg = "options must be a JSON object"
            raise InvalidSourceError(msg)
    except (json.JSONDecodeError, InvalidSourceError) as exc:
        click.echo(f"Invalid fetch options: {exc}", err=True)
        ctx.exit(InvalidSourceError.exit_code)

    bridge = SourceBridge(settings.mcp_config_path)
    try:
        items = anyio.run(bridge.fetch, source, parsed)
    except BridgeError as exc:
        click.echo(str(exc), err=True)
        ctx.exit(exc.exit_code)
    except Exception as exc:
        click.echo(f"Unexpected error: {exc}", err=True)
        ctx.exit(EXIT_UNEXPECTED)
    click.echo(json.dumps(items))
