"""
CLI interface for copyforge.

Entry point for the external scheduler (`copyforge tick`) and for queue and
spend administration.
"""

import logging
import sys
from dataclasses import replace
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from copyforge.config.loader import Settings, load_settings
from copyforge.core.errors import CopyforgeError
from copyforge.core.orchestrator import GenerationOrchestrator
from copyforge.core.results import RunState
from copyforge.storage.db import initialize_schema
from copyforge.storage.models import Page, QueueStatus
from copyforge.storage.pages import SqliteMediaStore, SqlitePageStore

app = typer.Typer()
queue_app = typer.Typer(help="Inspect and manage the generation queue.")
page_app = typer.Typer(help="Register and inspect pages.")
app.add_typer(queue_app, name="queue")
app.add_typer(page_app, name="page")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: int = logging.WARNING) -> None:
    """Configure root logging once for a CLI run."""
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to settings YAML"),
    db: Optional[str] = typer.Option(None, "--db", help="Database file (overrides settings)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log progress to stderr"),
):
    """copyforge - AI marketing copy generation pipeline."""
    configure_logging(logging.INFO if verbose else logging.WARNING)
    ctx.obj = {"config": config, "db": db}
    if ctx.invoked_subcommand is None:
        console.print("copyforge - Use --help to see available commands")


def _settings(ctx: typer.Context) -> Settings:
    obj = ctx.find_root().obj or {}
    settings = load_settings(obj.get("config"))
    if obj.get("db"):
        settings = replace(settings, db_path=obj["db"])
    return settings


def _orchestrator(ctx: typer.Context) -> GenerationOrchestrator:
    return GenerationOrchestrator.from_settings(_settings(ctx))


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/] {error}")
    sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount: float) -> str:
    return f"${amount:,.4f}"


@app.command()
def init(ctx: typer.Context):
    """Initialize the copyforge database."""
    try:
        settings = _settings(ctx)
        initialize_schema(settings.db_path)
        console.print(f"[green]✓[/] Database initialized at {settings.db_path}")
    except Exception as e:
        _fail(e)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def tick(ctx: typer.Context):
    """Process every queued page that is due. Run this from cron."""
    try:
        orchestrator = _orchestrator(ctx)
        processed = orchestrator.run_due()
    except (CopyforgeError, ValueError, FileNotFoundError) as e:
        _fail(e)

    if not processed:
        console.print("[dim]No queued pages are due.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Processed jobs")
    table.add_column("Post", justify="right")
    table.add_column("Status")
    table.add_column("Scheduled")
    table.add_column("Error")
    for entry in processed:
        table.add_row(
            str(entry.post_id),
            entry.status.value,
            entry.scheduled_time.strftime("%Y-%m-%d %H:%M:%S"),
            entry.error or "",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def generate(
    ctx: typer.Context,
    post_id: int = typer.Argument(..., help="Page to generate"),
    block: Optional[str] = typer.Option(None, "--block", "-b", help="Generate only this block"),
    user_id: int = typer.Option(0, "--user", help="User the run is attributed to"),
):
    """Generate one block, or every block of a page."""
    try:
        orchestrator = _orchestrator(ctx)
        if block:
            generation = orchestrator.generate_block(post_id, block, user_id=user_id)
        else:
            result = orchestrator.generate_all_blocks(post_id, user_id=user_id)
    except (CopyforgeError, ValueError, FileNotFoundError) as e:
        _fail(e)

    if block:
        console.print(
            f"[green]✓[/] {block}: {generation.total_tokens} tokens, "
            f"{_format_currency(generation.cost)}"
        )
        for name, value in generation.fields.items():
            console.print(f"  [bold]{name}[/]: {value}")
        sys.exit(EXIT_CODE_PASS)

    _display_bulk_result(result)
    sys.exit(EXIT_CODE_PASS if result.fully_succeeded else EXIT_CODE_FAIL)


def _display_bulk_result(result) -> None:
    console.print(f"\n[bold]Generation result for page {result.post_id}[/bold]")
    console.print("-" * 40)
    console.print(f"Blocks: {result.success_count}/{result.total_blocks} ({result.success_rate}%)")
    console.print(f"Tokens: {result.total_tokens}")
    console.print(f"Cost: {_format_currency(result.total_cost)}")
    console.print(f"Time: {result.total_time:.1f}s")
    for failure in result.failed_blocks:
        console.print(f"[red]✗[/] {failure.block}: {failure.error}")


@app.command()
def progress(
    ctx: typer.Context,
    post_id: int = typer.Argument(...),
    user_id: int = typer.Option(0, "--user"),
):
    """Show the progress record of a running generation."""
    try:
        record = _orchestrator(ctx).get_progress(post_id, user_id)
    except (CopyforgeError, ValueError, FileNotFoundError) as e:
        _fail(e)
    if record is None:
        console.print(f"[dim]No generation in progress for page {post_id} (state: {RunState.IDLE.value}).[/]")
        sys.exit(EXIT_CODE_PASS)
    for key, value in record.items():
        console.print(f"{key}: {value}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def spend(
    ctx: typer.Context,
    post_id: Optional[int] = typer.Option(None, "--post", "-p", help="Show statistics for one page"),
):
    """Show month-to-date spend against the monthly budget."""
    try:
        orchestrator = _orchestrator(ctx)
        ledger = orchestrator.ledger
        current = ledger.month_to_date_cost()
        remaining = ledger.remaining_budget()
        success_rate = ledger.success_rate()
        stats = ledger.post_statistics(post_id) if post_id is not None else None
    except (CopyforgeError, ValueError, FileNotFoundError) as e:
        _fail(e)

    console.print("\n[bold]Monthly spend[/bold]")
    console.print("-" * 40)
    console.print(f"Month to date: {_format_currency(current)}")
    if remaining is None:
        console.print("Budget: unlimited")
    else:
        console.print(f"Budget: {_format_currency(ledger.budget.monthly)}")
        console.print(f"Remaining: {_format_currency(remaining)}")
    console.print(f"Success rate (last 100): {success_rate}%")

    if stats is not None:
        console.print(f"\n[bold]Page {post_id}[/bold]")
        console.print(f"Generations: {stats['total_generations']}")
        console.print(f"Tokens: {stats['total_tokens']}")
        console.print(f"Cost: {_format_currency(stats['total_cost'])}")
        console.print(f"Average cost: {_format_currency(stats['avg_cost'])}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def cleanup(ctx: typer.Context):
    """Delete old log rows and finished queue jobs."""
    try:
        settings = _settings(ctx)
        orchestrator = GenerationOrchestrator.from_settings(settings)
        logs = orchestrator.ledger.cleanup(settings.logs.retention_days)
        jobs = orchestrator.queue.cleanup(settings.queue.cleanup_days)
    except (CopyforgeError, ValueError, FileNotFoundError) as e:
        _fail(e)
    console.print(f"[green]✓[/] Removed {logs} log rows and {jobs} finished jobs")
    sys.exit(EXIT_CODE_PASS)


@queue_app.command("add")
def queue_add(
    ctx: typer.Context,
    post_ids: List[int] = typer.Argument(..., help="Pages to queue, in order"),
    blocks: Optional[str] = typer.Option(None, "--blocks", help="Comma-separated block list"),
):
    """Queue pages for generation, paced one interval apart."""
    block_list = [b.strip() for b in blocks.split(",") if b.strip()] if blocks else None
    try:
        queue = _orchestrator(ctx).queue
        queued = queue.enqueue_many(post_ids, block_list)
    except (CopyforgeError, ValueError, FileNotFoundError) as e:
        _fail(e)
    skipped = len(post_ids) - queued
    console.print(f"[green]✓[/] Queued {queued} page(s)")
    if skipped:
        console.print(f"[yellow]Skipped {skipped} page(s) already in the queue[/]")
    sys.exit(EXIT_CODE_PASS)


@queue_app.command("list")
def queue_list(
    ctx: typer.Context,
    status: Optional[QueueStatus] = typer.Option(None, "--status", "-s"),
):
    """List queued jobs."""
    try:
        entries = _orchestrator(ctx).queue.status(status)
    except (CopyforgeError, ValueError, FileNotFoundError) as e:
        _fail(e)
    if not entries:
        console.print("[dim]Queue is empty.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Generation queue")
    table.add_column("Post", justify="right")
    table.add_column("Status")
    table.add_column("Scheduled")
    table.add_column("Retries", justify="right")
    table.add_column("Error")
    for entry in entries:
        table.add_row(
            str(entry.post_id),
            entry.status.value,
            entry.scheduled_time.strftime("%Y-%m-%d %H:%M:%S"),
            str(entry.retry_count),
            entry.error or "",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@queue_app.command("stats")
def queue_stats(ctx: typer.Context):
    """Show job counts by status."""
    try:
        queue = _orchestrator(ctx).queue
        counts = queue.stats()
        eta = queue.estimated_completion()
        paused = queue.is_paused()
    except (CopyforgeError, ValueError, FileNotFoundError) as e:
        _fail(e)
    for key in ("pending", "processing", "completed", "failed", "total"):
        console.print(f"{key}: {counts[key]}")
    console.print(f"paused: {'yes' if paused else 'no'}")
    if eta is not None:
        console.print(f"estimated completion: {eta.strftime('%Y-%m-%d %H:%M:%S')}")
    sys.exit(EXIT_CODE_PASS)


@queue_app.command("pause")
def queue_pause(ctx: typer.Context):
    """Pause processing; due jobs are pushed back one interval."""
    _orchestrator(ctx).queue.pause()
    console.print("[yellow]Queue paused[/]")
    sys.exit(EXIT_CODE_PASS)


@queue_app.command("resume")
def queue_resume(ctx: typer.Context):
    """Resume processing."""
    _orchestrator(ctx).queue.resume()
    console.print("[green]✓[/] Queue resumed")
    sys.exit(EXIT_CODE_PASS)


@queue_app.command("clear")
def queue_clear(ctx: typer.Context):
    """Remove every job from the queue."""
    _orchestrator(ctx).queue.clear()
    console.print("[green]✓[/] Queue cleared")
    sys.exit(EXIT_CODE_PASS)


@queue_app.command("remove")
def queue_remove(ctx: typer.Context, post_id: int = typer.Argument(...)):
    """Remove one job."""
    if _orchestrator(ctx).queue.remove(post_id):
        console.print(f"[green]✓[/] Removed page {post_id} from the queue")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]Error:[/] Page {post_id} is not queued")
    sys.exit(EXIT_CODE_FAIL)


@queue_app.command("retry")
def queue_retry(ctx: typer.Context, post_id: int = typer.Argument(...)):
    """Reschedule a failed job with back-off."""
    queue = _orchestrator(ctx).queue
    entry = queue.entry(post_id)
    if entry is None:
        console.print(f"[red]Error:[/] Page {post_id} is not queued")
        sys.exit(EXIT_CODE_FAIL)
    if queue.retry_failed(post_id, entry.error):
        entry = queue.entry(post_id)
        console.print(
            f"[green]✓[/] Page {post_id} rescheduled for "
            f"{entry.scheduled_time.strftime('%Y-%m-%d %H:%M:%S')}"
        )
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]Error:[/] {queue.entry(post_id).error}")
    sys.exit(EXIT_CODE_FAIL)


@page_app.command("add")
def page_add(
    ctx: typer.Context,
    post_id: int = typer.Argument(...),
    title: str = typer.Argument(...),
    keyword: str = typer.Option("", "--keyword", "-k", help="Focus keyword"),
    topic: str = typer.Option("", "--topic", "-t"),
    blocks: Optional[str] = typer.Option(None, "--blocks", help="Comma-separated block order"),
):
    """Register a draft page."""
    block_order = [b.strip() for b in blocks.split(",") if b.strip()] if blocks else None
    try:
        settings = _settings(ctx)
        initialize_schema(settings.db_path)
        SqlitePageStore(settings.db_path).create(Page(
            id=post_id,
            title=title,
            focus_keyword=keyword,
            topic=topic,
            block_order=block_order,
        ))
    except Exception as e:
        _fail(e)
    console.print(f"[green]✓[/] Page {post_id} created")
    sys.exit(EXIT_CODE_PASS)


@page_app.command("show")
def page_show(ctx: typer.Context, post_id: int = typer.Argument(...)):
    """Show a page's generated fields."""
    try:
        page = SqlitePageStore(_settings(ctx).db_path).get(post_id)
    except Exception as e:
        _fail(e)
    if page is None:
        console.print(f"[red]Error:[/] Page {post_id} not found")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"\n[bold]{page.title}[/bold] ({page.status})")
    console.print("-" * 40)
    for name, value in page.fields.items():
        console.print(f"[bold]{name}[/]: {value}")
    sys.exit(EXIT_CODE_PASS)


@app.command("image-add")
def image_add(
    ctx: typer.Context,
    image_id: int = typer.Argument(...),
    tags: str = typer.Argument(..., help="Comma-separated tag slugs"),
    title: str = typer.Option("", "--title"),
    default: bool = typer.Option(False, "--default", help="Use as the fallback image"),
):
    """Register a tagged library image for automatic assignment."""
    tag_list = [t.strip().lower() for t in tags.split(",") if t.strip()]
    try:
        settings = _settings(ctx)
        initialize_schema(settings.db_path)
        SqliteMediaStore(settings.db_path).add_image(image_id, tag_list, title=title, is_default=default)
    except Exception as e:
        _fail(e)
    console.print(f"[green]✓[/] Image {image_id} added with tags: {', '.join(tag_list)}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
