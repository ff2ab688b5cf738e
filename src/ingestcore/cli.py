"""Command-line interface for IngestCore."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import click
import structlog
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ingestcore import __version__
from ingestcore.config import Config, find_config_file
from ingestcore.container import DependencyContainer
from ingestcore.exceptions import DuplicateLogNotFoundError, IngestError
from ingestcore.observability import configure_logging
from ingestcore.protocols import DuplicateResolution, SourceType
from ingestcore.utils import to_iso

console = Console()
logger = structlog.get_logger(__name__)


def _load_config(ctx: click.Context) -> Config:
    config_path: Optional[Path] = ctx.obj["config_path"] or find_config_file()
    config = Config.from_yaml(config_path) if config_path else Config()
    if ctx.obj["log_level"]:
        config.monitoring.log_level = ctx.obj["log_level"]
    return config


def _run(ctx: click.Context, command: Callable[[DependencyContainer], Awaitable[int]]) -> None:
    """Run ``command`` inside a container lifecycle and exit with its return code."""
    try:
        config = _load_config(ctx)
    except (ValidationError, FileNotFoundError) as e:
        console.print(f"[red]❌ Invalid configuration: {e}[/red]")
        sys.exit(2)
    configure_logging(config.monitoring)

    async def runner() -> int:
        container = DependencyContainer(ctx.obj["config_path"], config=config)
        async with container.lifecycle():
            return await command(container)

    try:
        code = asyncio.run(runner())
    except IngestError as e:
        console.print(f"[red]❌ {e}[/red]")
        code = 1
    sys.exit(code)


def _counts_table(title: str, counts: Dict[str, Any], key_header: str = "Metric") -> Table:
    table = Table(title=title)
    table.add_column(key_header, style="cyan")
    table.add_column("Value", style="magenta", justify="right")
    for key, value in counts.items():
        if isinstance(value, float):
            value = f"{value:.2f}"
        table.add_row(str(key), str(value))
    return table


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (overrides the configuration file)",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """IngestCore - content ingestion pipeline for a publishing site."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else None
    ctx.obj["log_level"] = log_level


# ----------------------------------------------------------------------
# Crawling
# ----------------------------------------------------------------------


@cli.command()
@click.option("--type", "source_types", multiple=True, help="Only crawl sources of this type (repeatable)")
@click.option("--source", "source_ids", multiple=True, type=int, help="Only crawl this source id (repeatable)")
@click.pass_context
def crawl(ctx: click.Context, source_types: Tuple[str, ...], source_ids: Tuple[int, ...]) -> None:
    """Crawl now, ignoring frequency buckets and fetch intervals."""

    async def run_crawl(container: DependencyContainer) -> int:
        scheduler = await container.get_scheduler()
        outcome = await scheduler.run_manual_crawl(list(source_types) or None, list(source_ids) or None)

        style = "green" if outcome.success else "red"
        console.print(Panel(outcome.message, title="Manual crawl", border_style=style))
        if outcome.summary and outcome.summary.outcomes:
            table = Table(title=f"Run {outcome.summary.run_id}")
            table.add_column("Source", style="cyan", justify="right")
            table.add_column("Status")
            table.add_column("Found", justify="right")
            table.add_column("Stored", justify="right")
            table.add_column("Rejected", justify="right")
            table.add_column("New", justify="right")
            table.add_column("Attempts", justify="right")
            table.add_column("Time (s)", justify="right")
            for result in outcome.summary.outcomes:
                table.add_row(
                    str(result.source_id),
                    "[green]ok[/green]" if result.success else f"[red]{'; '.join(result.errors) or 'failed'}[/red]",
                    str(result.items_found),
                    str(result.items_processed),
                    str(result.items_rejected),
                    str(result.new_items),
                    str(result.attempts),
                    f"{result.duration:.2f}",
                )
            console.print(table)
        return 0 if outcome.success else 1

    _run(ctx, run_crawl)


@cli.command()
@click.pass_context
def schedule(ctx: click.Context) -> None:
    """Run the periodic triggers until interrupted."""

    async def run_schedule(container: DependencyContainer) -> int:
        scheduler = await container.get_scheduler()
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        scheduler.register_periodic_triggers()
        table = Table(title="Periodic triggers")
        table.add_column("Frequency", style="cyan")
        table.add_column("First run")
        table.add_column("Source types")
        for trigger in scheduler.get_scheduled_triggers():
            table.add_row(trigger["frequency"], trigger["next_run"] or "-", ", ".join(trigger["source_types"]) or "-")
        console.print(table)
        console.print("[blue]Scheduler running, press Ctrl+C to stop.[/blue]")

        await stop.wait()
        console.print("\n[yellow]Stopping scheduler...[/yellow]")
        (await container.get_crawler()).cancel()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        return 0

    _run(ctx, run_schedule)


@cli.command("retry-failed")
@click.option("--limit", default=100, show_default=True, help="Maximum number of queued items to replay")
@click.pass_context
def retry_failed(ctx: click.Context, limit: int) -> None:
    """Replay failed items whose retry time has come."""

    async def run_retry(container: DependencyContainer) -> int:
        counts = await (await container.get_crawler()).retry_failed_items(limit=limit)
        console.print(_counts_table("Failed item retry", counts))
        return 0 if counts["failed"] == 0 else 1

    _run(ctx, run_retry)


# ----------------------------------------------------------------------
# Sources
# ----------------------------------------------------------------------


@cli.group()
def sources() -> None:
    """Manage content sources."""


@sources.command("list")
@click.option("--active-only", is_flag=True, help="Hide inactive sources")
@click.option("--type", "source_type", default=None, help="Only list sources of this type")
@click.pass_context
def sources_list(ctx: click.Context, active_only: bool, source_type: Optional[str]) -> None:
    """List registered sources."""

    async def run_list(container: DependencyContainer) -> int:
        manager = await container.get_source_manager()
        table = Table(title="Content sources")
        table.add_column("ID", style="cyan", justify="right")
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("Active")
        table.add_column("Interval (s)", justify="right")
        table.add_column("Fetches", justify="right")
        table.add_column("Last fetch")
        table.add_column("Last status")
        for source in await manager.list_sources(active_only=active_only, source_type=source_type):
            table.add_row(
                str(source.id),
                source.name,
                source.type.value,
                "✅" if source.active else "❌",
                str(source.fetch_interval),
                str(source.fetch_count),
                to_iso(source.last_fetch) or "never",
                source.last_status.value if source.last_status else "-",
            )
        console.print(table)
        return 0

    _run(ctx, run_list)


@sources.command("add")
@click.argument("name")
@click.argument("source_type", type=click.Choice([t.value for t in SourceType]))
@click.argument("url")
@click.option("--interval", type=int, default=None, help="Initial fetch interval in seconds")
@click.option("--min-interval", type=int, default=None, help="Lower bound for the fetch interval")
@click.option("--max-interval", type=int, default=None, help="Upper bound for the fetch interval")
@click.option("--content-type", "content_types", multiple=True, help="Accepted content type (repeatable)")
@click.option("--option", "options", multiple=True, help="Adapter option as KEY=VALUE (repeatable)")
@click.pass_context
def sources_add(
    ctx: click.Context,
    name: str,
    source_type: str,
    url: str,
    interval: Optional[int],
    min_interval: Optional[int],
    max_interval: Optional[int],
    content_types: Tuple[str, ...],
    options: Tuple[str, ...],
) -> None:
    """Register a new source."""
    source_config: Dict[str, str] = {}
    for option in options:
        key, sep, value = option.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {option!r}", param_hint="--option")
        source_config[key] = value

    async def run_add(container: DependencyContainer) -> int:
        manager = await container.get_source_manager()
        source = await manager.add_source(
            name,
            source_type,
            url,
            config=source_config,
            content_types=content_types,
            fetch_interval=interval,
            min_interval=min_interval,
            max_interval=max_interval,
        )
        console.print(f"[green]✅ Source {source.id} ({source.name}) added[/green]")
        return 0

    _run(ctx, run_add)


@sources.command("show")
@click.argument("source_id", type=int)
@click.option("--days", default=30, show_default=True, help="Days of metrics to show")
@click.pass_context
def sources_show(ctx: click.Context, source_id: int, days: int) -> None:
    """Show one source with its daily metrics."""

    async def run_show(container: DependencyContainer) -> int:
        manager = await container.get_source_manager()
        source = await manager.get_source(source_id)
        if source is None:
            console.print(f"[red]❌ Source {source_id} not found[/red]")
            return 1

        details = {
            "name": source.name,
            "type": source.type.value,
            "url": source.url,
            "active": source.active,
            "content types": ", ".join(sorted(source.content_types)) or "any",
            "fetch interval": f"{source.fetch_interval}s ({source.min_interval}s..{source.max_interval}s)",
            "fetch count": source.fetch_count,
            "last fetch": to_iso(source.last_fetch) or "never",
            "last status": source.last_status.value if source.last_status else "-",
            "config": json.dumps(source.config),
        }
        console.print(Panel("\n".join(f"[cyan]{k}[/cyan]: {v}" for k, v in details.items()), title=f"Source {source.id}"))

        metrics = await manager.get_source_metrics(source_id, days=days)
        if metrics:
            table = Table(title=f"Last {days} days")
            table.add_column("Date", style="cyan")
            table.add_column("Found", justify="right")
            table.add_column("Stored", justify="right")
            table.add_column("Rejected", justify="right")
            table.add_column("Errors", justify="right")
            table.add_column("Time (s)", justify="right")
            for metric in metrics:
                table.add_row(
                    metric.date,
                    str(metric.items_found),
                    str(metric.items_stored),
                    str(metric.items_rejected),
                    str(metric.error_count),
                    f"{metric.processing_time:.2f}",
                )
            console.print(table)
        return 0

    _run(ctx, run_show)


@sources.command("errors")
@click.argument("source_id", type=int)
@click.option("--limit", default=20, show_default=True)
@click.pass_context
def sources_errors(ctx: click.Context, source_id: int, limit: int) -> None:
    """Show the most recent errors of a source."""

    async def run_errors(container: DependencyContainer) -> int:
        errors = await (await container.get_source_manager()).get_source_errors(source_id, limit=limit)
        if not errors:
            console.print(f"[green]No errors recorded for source {source_id}[/green]")
            return 0
        table = Table(title=f"Errors of source {source_id}")
        table.add_column("When", style="cyan")
        table.add_column("Severity")
        table.add_column("Type")
        table.add_column("Message")
        for error in errors:
            table.add_row(error["created_at"], error["severity"], error["error_type"], error["message"])
        console.print(table)
        return 0

    _run(ctx, run_errors)


@sources.command("deactivate")
@click.argument("source_id", type=int)
@click.pass_context
def sources_deactivate(ctx: click.Context, source_id: int) -> None:
    """Stop crawling a source without deleting it."""

    async def run_deactivate(container: DependencyContainer) -> int:
        if await (await container.get_source_manager()).deactivate_source(source_id):
            console.print(f"[green]✅ Source {source_id} deactivated[/green]")
            return 0
        console.print(f"[red]❌ Source {source_id} not found[/red]")
        return 1

    _run(ctx, run_deactivate)


# ----------------------------------------------------------------------
# Duplicates
# ----------------------------------------------------------------------


@cli.group()
def duplicates() -> None:
    """Inspect and resolve logged duplicates."""


@duplicates.command("report")
@click.option("--days", type=int, default=None, help="Look-back window in days")
@click.option(
    "--status",
    default="all",
    type=click.Choice(["all", "pending", "resolved"] + [r.value for r in DuplicateResolution]),
    show_default=True,
)
@click.option("--limit", type=int, default=None, help="Maximum number of log entries")
@click.pass_context
def duplicates_report(ctx: click.Context, days: Optional[int], status: str, limit: Optional[int]) -> None:
    """Show logged duplicates grouped by fingerprint."""

    async def run_report(container: DependencyContainer) -> int:
        report = await (await container.get_deduplicator()).generate_duplicate_report(
            days=days, limit=limit, status=status
        )
        console.print(report.message)
        for group in report.groups:
            table = Table(
                title=f"#{group.kept_content_id} {group.kept_title or '(deleted)'}",
                caption=f"{group.fingerprint[:16]}  quality {group.kept_quality_score}  {group.kept_url or ''}",
            )
            table.add_column("Log", style="cyan", justify="right")
            table.add_column("Duplicate")
            table.add_column("Logged")
            table.add_column("Resolution")
            for entry in group.entries:
                table.add_row(
                    str(entry.id),
                    f"#{entry.content_id}" if entry.content_id is not None else (entry.candidate_url or "-"),
                    to_iso(entry.created_at) or "-",
                    entry.resolution.value if entry.resolution else "[yellow]pending[/yellow]",
                )
            console.print(table)
        return 0

    _run(ctx, run_report)


@duplicates.command("resolve")
@click.argument("log_id", type=int)
@click.argument("resolution", type=click.Choice([r.value for r in DuplicateResolution]))
@click.pass_context
def duplicates_resolve(ctx: click.Context, log_id: int, resolution: str) -> None:
    """Record how a logged duplicate was handled."""

    async def run_resolve(container: DependencyContainer) -> int:
        try:
            resolved = await (await container.get_deduplicator()).resolve_duplicate(log_id, resolution)
        except DuplicateLogNotFoundError as e:
            console.print(f"[red]❌ {e}[/red]")
            return 1
        if resolved:
            console.print(f"[green]✅ Duplicate {log_id} marked {resolution}[/green]")
            return 0
        console.print(f"[yellow]Duplicate {log_id} was already resolved[/yellow]")
        return 1

    _run(ctx, run_resolve)


@cli.command()
@click.option("--batch-size", type=int, default=None, help="Records indexed per invocation")
@click.pass_context
def reindex(ctx: click.Context, batch_size: Optional[int]) -> None:
    """Index stored content that is missing from the fingerprint index."""

    async def run_reindex(container: DependencyContainer) -> int:
        summary = await (await container.get_deduplicator()).reindex_content(batch_size)
        console.print(summary.pop("message"))
        console.print(_counts_table("Reindex", summary))
        return 0 if summary["errors"] == 0 else 1

    _run(ctx, run_reindex)


# ----------------------------------------------------------------------
# Reporting
# ----------------------------------------------------------------------


@cli.command()
@click.option("--days", default=30, show_default=True, help="Window for crawler metrics")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON instead of tables")
@click.pass_context
def stats(ctx: click.Context, days: int, as_json: bool) -> None:
    """Show content, duplicate, failure and crawler statistics."""

    async def run_stats(container: DependencyContainer) -> int:
        content = await (await container.get_content_store()).get_content_stats()
        dedup = await (await container.get_deduplicator()).get_stats()
        failures = await (await container.get_failed_items()).get_stats()
        crawler = await (await container.get_source_manager()).get_crawler_metrics(days)

        if as_json:
            payload = {"content": content, "duplicates": dedup, "failed_items": failures, "crawler": crawler}
            console.print_json(json.dumps(payload, default=str))
            return 0

        console.print(Panel(f"[bold]{content['total']}[/bold] stored items", title="Content"))
        console.print(_counts_table("By status", content["by_status"], "Status"))
        console.print(_counts_table("By type", content["by_type"], "Type"))
        console.print(_counts_table("Quality", content["quality_distribution"], "Bucket"))
        console.print(_counts_table("Duplicates", dedup))
        console.print(
            _counts_table(
                "Failed items",
                {k: v for k, v in failures.items() if not isinstance(v, dict)},
            )
        )
        console.print(
            _counts_table(f"Crawler (last {days} days)", {k: v for k, v in crawler.items() if not isinstance(v, list)})
        )
        return 0

    _run(ctx, run_stats)


@cli.command()
@click.pass_context
def validate_config(ctx: click.Context) -> None:
    """Validate the current configuration."""
    console.print("[blue]🔍 Validating configuration...[/blue]")
    try:
        config = _load_config(ctx)
    except ValidationError as e:
        table = Table(title="Configuration errors")
        table.add_column("Field", style="cyan")
        table.add_column("Problem", style="red")
        for error in e.errors():
            table.add_row(".".join(str(part) for part in error["loc"]), error["msg"])
        console.print(table)
        console.print("[red]❌ Configuration has issues![/red]")
        sys.exit(1)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]❌ Configuration validation failed: {e}[/red]")
        sys.exit(1)

    table = Table(title="Configuration")
    table.add_column("Section", style="cyan")
    table.add_column("Settings", style="magenta")
    for section, values in config.model_dump(mode="json").items():
        if isinstance(values, dict):
            values = ", ".join(f"{k}={v}" for k, v in values.items())
        table.add_row(section, str(values))
    console.print(table)
    console.print("[green]✅ Configuration is valid![/green]")


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
