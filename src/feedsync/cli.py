"""CLI interface for feed import and outbox syndication."""

import json
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import get_config, get_config_unvalidated
from .dependencies import AppResources, build_resources
from .exceptions import ConfigurationError
from .feeds.base import FeedParser
from .feeds.registry import default_registry as default_parsers
from .import_service import parse_options_from_config
from .models import ProductRecord

app = typer.Typer(
    name="feedsync",
    help="""
    [bold]Feed Sync CLI[/bold]

    Import supplier price feeds into the catalog and syndicate changes
    to sales channels through the outbox.

    [cyan]Examples:[/cyan]
      feedsync parse ormatek.xml --limit 10
      feedsync import ormatek.xml --supplier ormatek --supplier-id 1
      feedsync drain
      feedsync status

    [cyan]Getting Started:[/cyan]
      1. Describe your channels: export CHANNELS_FILE=channels.json
      2. Import a feed: feedsync import feed.xml --supplier-id 1
      3. Deliver queued changes: feedsync drain
    """,
    no_args_is_help=True,
)

console = Console()
logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@contextmanager
def _open_resources() -> Iterator[AppResources]:
    try:
        resources = build_resources(get_config())
    except (ValueError, ConfigurationError) as e:
        console.print(f"[bold red]✗ Configuration error:[/bold red] {e}")
        raise typer.Exit(code=1)
    try:
        yield resources
    finally:
        resources.close()


def _resolve_parser(path: Path, supplier: Optional[str]) -> FeedParser:
    parsers = default_parsers()
    if supplier:
        try:
            return parsers.get(supplier)
        except ConfigurationError as e:
            console.print(f"[bold red]✗ Error:[/bold red] {e}")
            raise typer.Exit(code=1)

    parser = parsers.detect(path)
    if parser is None:
        console.print(
            f"[bold red]✗ Error:[/bold red] Could not detect feed format of {path}. "
            f"Use --supplier ({', '.join(parsers.codes())})"
        )
        raise typer.Exit(code=1)
    return parser


def _price_range(product: ProductRecord) -> str:
    low, high = product.min_price(), product.max_price()
    if low is None or high is None:
        return "no price"
    return f"{low:.2f}" if low == high else f"{low:.2f}-{high:.2f}"


@app.command()
def parse(
    input_file: Path = typer.Argument(..., help="Feed file to parse", exists=True),
    supplier: Optional[str] = typer.Option(
        None, "--supplier", "-s", help="Supplier code (default: auto-detect)"
    ),
    limit: Optional[int] = typer.Option(
        None, "--limit", "-n", help="Stop after N products (0 = unlimited)"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print products as JSON lines"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Parse a feed without touching the catalog and show what it contains."""
    _setup_logging(verbose)
    parser = _resolve_parser(input_file, supplier)
    options = parse_options_from_config(get_config_unvalidated(), max_products=limit)

    estimate = parser.estimate_count(input_file)
    if estimate and not as_json:
        console.print(f"[dim]{parser.supplier_code}: ~{estimate} product(s) expected[/dim]")

    start_time = time.time()
    with parser.open(input_file, options) as cursor:
        for product in cursor:
            if as_json:
                print(json.dumps(product.model_dump(mode="json", exclude={"raw_data"}), ensure_ascii=False))
            else:
                console.print(
                    f"  {product.supplier_sku}  [bold]{product.name}[/bold]  "
                    f"{len(product.effective_variants())} variant(s)  "
                    f"{_price_range(product)}"
                )
        stats = cursor.stats

    if not as_json:
        elapsed = time.time() - start_time
        console.print(
            f"\n[bold green]✓ Parsed {stats.products_emitted} product(s)[/bold green] "
            f"from {stats.total_parsed} item(s): {stats.skipped} skipped, "
            f"{stats.errors} error(s), {stats.duplicates} duplicate(s) ({elapsed:.1f}s)"
        )


@app.command("import")
def import_feed(
    input_file: Path = typer.Argument(..., help="Feed file to import", exists=True),
    supplier_id: int = typer.Option(..., "--supplier-id", help="Catalog supplier id"),
    supplier: Optional[str] = typer.Option(
        None, "--supplier", "-s", help="Supplier code (default: auto-detect)"
    ),
    limit: Optional[int] = typer.Option(
        None, "--limit", "-n", help="Stop after N products (0 = unlimited)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Import a feed: parse, match, update the catalog and queue outbox records."""
    _setup_logging(verbose)
    parser = _resolve_parser(input_file, supplier)

    with _open_resources() as resources:
        options = parse_options_from_config(resources.config, max_products=limit)
        start_time = time.time()
        summary = resources.import_service().import_feed(
            input_file, parser, supplier_id, options
        )
        elapsed = time.time() - start_time

    table = Table(title=f"Import {input_file.name} ({summary.supplier_code})")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for label, value in (
        ("Items parsed", summary.total_parsed),
        ("Items skipped", summary.skipped),
        ("Malformed items", summary.errors),
        ("Duplicate groups", summary.duplicates),
        ("Products", summary.products_emitted),
        ("Models created", summary.created_count),
        ("Models updated", summary.updated_count),
        ("Models unchanged", summary.unchanged_count),
        ("Product errors", summary.product_error_count),
        ("Variants matched", summary.match_stats.matched),
        ("Variants new", summary.match_stats.new),
        ("Outbox records", summary.outbox_created),
        ("Outbox coalesced", summary.outbox_coalesced),
        ("Supplier offers", summary.offers_count),
    ):
        table.add_row(label, str(value))
    console.print(table)
    if summary.match_stats.by_matcher:
        by_matcher = ", ".join(f"{k}={v}" for k, v in sorted(summary.match_stats.by_matcher.items()))
        console.print(f"[dim]Matched by: {by_matcher}[/dim]")
    console.print(f"\n[bold green]✓ Import finished[/bold green] ({elapsed:.1f}s)")

    if summary.product_error_count:
        raise typer.Exit(code=2)


@app.command()
def drain(
    max_cycles: int = typer.Option(100, "--max-cycles", help="Upper bound on drain cycles"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Deliver queued outbox records until nothing more can be settled."""
    _setup_logging(verbose)
    with _open_resources() as resources:
        report = resources.worker().drain(max_cycles=max_cycles)

    table = Table(title=f"Drain ({report.cycles} cycle(s))")
    for column in ("Lane", "Claimed", "Delivered", "Skipped", "Superseded", "Retry", "Failed", "Released"):
        table.add_column(column, justify="right" if column != "Lane" else "left")
    for lane, lane_report in report.lanes.items():
        table.add_row(
            lane,
            str(lane_report.claimed),
            str(lane_report.delivered),
            str(lane_report.skipped),
            str(lane_report.superseded),
            str(lane_report.retried),
            str(lane_report.failed),
            str(lane_report.released),
        )
    console.print(table)


@app.command()
def worker(
    worker_id: Optional[str] = typer.Option(None, "--id", help="Worker id for logs"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Run the syndication worker until interrupted."""
    _setup_logging(verbose)
    with _open_resources() as resources:
        resources.worker(worker_id).run_forever()


@app.command()
def status():
    """Show outbox counts by status and by channel/lane."""
    with _open_resources() as resources:
        stats = resources.outbox.get_queue_stats()
        by_channel = resources.outbox.get_stats_by_channel()
        names = {c.id: c.name for c in resources.channels.all()}

    table = Table(title="Outbox")
    table.add_column("Status")
    table.add_column("Records", justify="right")
    for name, count in stats.items():
        table.add_row(name, str(count))
    console.print(table)

    if by_channel:
        detail = Table(title="By channel")
        detail.add_column("Channel")
        detail.add_column("Lane")
        detail.add_column("Status")
        detail.add_column("Records", justify="right")
        for row in by_channel:
            detail.add_row(
                names.get(row["channel_id"], str(row["channel_id"])),
                row["lane"],
                row["status"],
                str(row["count"]),
            )
        console.print(detail)


@app.command()
def errors(
    channel_id: Optional[int] = typer.Option(None, "--channel", help="Only this channel"),
    limit: int = typer.Option(20, "--limit", "-n", help="Rows to show"),
    show_payload: bool = typer.Option(False, "--payload", help="Print rejected payloads"),
):
    """List failed outbox records and unresolved dead letters."""
    with _open_resources() as resources:
        failed = resources.outbox.list_failed(limit, channel_id)
        dead_letters = resources.outbox.list_dead_letters(channel_id, limit)

    if not failed and not dead_letters:
        console.print("[bold green]✓ No failed records[/bold green]")
        return

    table = Table(title="Failed outbox records")
    for column in ("Id", "Channel", "Lane", "Model", "Retries", "Error"):
        table.add_column(column)
    for record in failed:
        table.add_row(
            str(record.id),
            str(record.channel_id),
            record.lane,
            str(record.model_id),
            str(record.retry_count),
            record.error_log or "",
        )
    console.print(table)

    for entry in dead_letters:
        console.print(
            f"[yellow]DLQ #{entry.id}[/yellow] channel={entry.channel_id} model={entry.model_id} "
            f"lane={entry.lane} http={entry.error_code}: {entry.error_message}"
        )
        if show_payload and entry.payload_dump is not None:
            console.print_json(json.dumps(entry.payload_dump, ensure_ascii=False, default=str))


@app.command("retry-failed")
def retry_failed(
    channel_id: Optional[int] = typer.Option(None, "--channel", help="Only this channel"),
):
    """Move failed records back to pending with a fresh retry budget."""
    with _open_resources() as resources:
        result = resources.outbox.retry_failed(channel_id)
    console.print(
        f"[bold green]✓ {len(result.retried_ids)} record(s) re-queued[/bold green], "
        f"{result.resolved_dead_letters} dead letter(s) resolved"
    )


@app.command("reset-stuck")
def reset_stuck(
    stale_sec: Optional[float] = typer.Option(
        None, "--stale-sec", help="Claims older than this are reset (default: STALE_PROCESSING_SEC)"
    ),
):
    """Return records stuck in processing (crashed workers) to pending."""
    with _open_resources() as resources:
        threshold = stale_sec if stale_sec is not None else resources.config.stale_processing_sec
        count = resources.outbox.reset_stuck(threshold)
    console.print(f"[bold green]✓ {count} stuck record(s) reset[/bold green]")


@app.command()
def ping(
    channel_id: Optional[int] = typer.Option(None, "--channel", help="Only this channel"),
):
    """Run each active channel's health check."""
    with _open_resources() as resources:
        channels = resources.channels.active()
        if channel_id is not None:
            channels = [c for c in channels if c.id == channel_id]
        if not channels:
            console.print("[yellow]No active channels to check[/yellow]")
            raise typer.Exit(code=1)

        unhealthy = 0
        for channel in channels:
            healthy = resources.registry.get_api_client(channel).health_check(channel)
            mark = "[green]✓[/green]" if healthy else "[red]✗[/red]"
            console.print(f"{mark} {channel.name} ({channel.driver})")
            unhealthy += 0 if healthy else 1

    if unhealthy:
        raise typer.Exit(code=1)


@app.command()
def channels():
    """List configured sales channels and registered drivers."""
    with _open_resources() as resources:
        table = Table(title="Sales channels")
        for column in ("Id", "Name", "Driver", "Active"):
            table.add_column(column)
        for channel in resources.channels.all():
            table.add_row(
                str(channel.id),
                channel.name,
                channel.driver,
                "yes" if channel.is_active else "no",
            )
        console.print(table)
        console.print(f"[dim]Drivers: {', '.join(resources.registry.drivers())}[/dim]")


@app.command()
def version():
    """Show version information."""
    console.print("feedsync version 0.1.0")


if __name__ == "__main__":
    app()
