"""PriceTrail CLI - async commands over the ingestion core.

Commands:
- init: Initialize database schema
- scrape: Run one scrape cycle over all configured retailers
- sync-rates: Fetch and append exchange rates
- rates: Show latest exchange rates
- reconcile: Repair duplicate mappings for one retailer
- prune-prices: Delete prices older than the retention window
- link: Set or clear a product's canonical link
- history: Show price history for one mapping
- runs: Show recent retailer runs
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy import select

from pricetrail.config import get_config
from pricetrail.core.logging import configure_logging
from pricetrail.db.connection import close_db, get_engine, get_session
from pricetrail.db.models import Base, RetailerModel, ScrapeLogModel
from pricetrail.errors import LinkTargetNotFound, ReconciliationFailure, RetailerBusy

app = typer.Typer(
    name="pricetrail",
    help="PriceTrail - retail price history ingestion",
    no_args_is_help=True,
)

console = Console()


@app.callback()
def main_callback():
    """Configure logging before any command runs."""
    config = get_config()
    configure_logging(config.log_level, config.log_format)


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")

    async def _init():
        engine = get_engine()
        async with engine.begin() as conn:
            if drop:
                console.print("[yellow]Dropping existing tables...[/yellow]")
                await conn.run_sync(Base.metadata.drop_all)
            console.print("[green]Creating tables...[/green]")
            await conn.run_sync(Base.metadata.create_all)
        await close_db()

    asyncio.run(_init())
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command()
def scrape(
    config_file: Path | None = typer.Option(
        None, "--config", "-c", help="Retailer configuration file"
    ),
    retailer: list[int] | None = typer.Option(
        None, "--retailer", "-r", help="Only run these retailer ids"
    ),
    concurrency: int | None = typer.Option(
        None, "--concurrency", help="Retailer pipelines run in parallel"
    ),
):
    """Run one scrape cycle.

    Each retailer is processed independently - failures are isolated and logged.
    """
    from dataclasses import replace

    from pricetrail.pipeline.config_loader import load_retailer_config
    from pricetrail.pipeline.orchestrator import run_pipeline

    config = get_config()
    pipeline_config = config.pipeline
    if concurrency is not None:
        pipeline_config = replace(pipeline_config, concurrency=concurrency)
    config_file = config_file or pipeline_config.retailers_config_path

    console.print("[bold]Starting scrape cycle[/bold]")
    console.print(f"Config: {config_file}")

    async def _scrape():
        try:
            scrapers = load_retailer_config(config_file)
            if retailer:
                scrapers = [s for s in scrapers if s.retailer_id in retailer]

            if not scrapers:
                console.print("[yellow]No retailers configured or all disabled[/yellow]")
                return

            console.print(f"Loaded {len(scrapers)} retailers\n")
            summary = await run_pipeline(scrapers, config=pipeline_config)

            console.print("\n[bold]Scrape Cycle Summary[/bold]")
            console.print(f"Run timestamp: {summary['run_timestamp']}")
            console.print(
                f"Status: {summary['successful_retailers']}/{summary['total_retailers']} "
                "retailers successful"
            )

            table = Table(title="Retailer Results")
            table.add_column("Retailer", style="cyan")
            table.add_column("Status", style="bold")
            table.add_column("Seen", justify="right")
            table.add_column("New", justify="right")
            table.add_column("Updated", justify="right")
            table.add_column("Failed", justify="right")
            table.add_column("Prices", justify="right")
            table.add_column("Duration", justify="right")

            for result in summary["results"]:
                status_style = "green" if result.success else "red"
                table.add_row(
                    f"{result.retailer_name} ({result.retailer_id})",
                    f"[{status_style}]{result.status.value}[/{status_style}]",
                    str(result.listings_seen),
                    str(result.products_created),
                    str(result.mappings_updated),
                    str(result.listings_failed),
                    str(result.prices_recorded),
                    f"{result.duration_seconds:.1f}s",
                )

            console.print(table)

            if summary["failed_retailers"] > 0:
                console.print("\n[bold red]Failed Retailers:[/bold red]")
                for result in summary["results"]:
                    if not result.success:
                        console.print(f"  • {result.retailer_name}: {result.message}")

        except (FileNotFoundError, ValueError) as e:
            console.print(f"[red]Retailer config error: {e}[/red]")
            raise typer.Exit(code=1)
        finally:
            await close_db()

    asyncio.run(_scrape())


@app.command(name="sync-rates")
def sync_rates_cmd():
    """Fetch current exchange rates and append them."""
    from pricetrail.integration.exchange_rates import ExchangeRateSync
    from pricetrail.integration.rates_client import FrankfurterClient

    config = get_config()

    async def _sync():
        try:
            async with FrankfurterClient(config.rates) as client:
                async with get_session() as session:
                    result = await ExchangeRateSync(client, config.rates).sync(session)
        finally:
            await close_db()

        if result.used_fallback:
            console.print(f"[yellow]Rate source unavailable, fallback used: {result.error}[/yellow]")
        for anomaly in result.anomalies:
            console.print(
                f"[yellow]⚠ {anomaly.currency_code}: {anomaly.previous_rate} -> "
                f"{anomaly.new_rate} ({anomaly.change * 100:.2f}%)[/yellow]"
            )
        console.print(f"[bold green]✓[/bold green] {result.rows_written} rates written")

    asyncio.run(_sync())


@app.command()
def rates():
    """Show the latest exchange rate per currency."""
    from pricetrail.integration.rate_snapshot import load_rate_snapshot

    async def _rates():
        try:
            async with get_session() as session:
                snapshot = await load_rate_snapshot(session)
        finally:
            await close_db()

        table = Table(title="Exchange Rates (EUR per unit)")
        table.add_column("Currency", style="cyan")
        table.add_column("Rate", justify="right")
        table.add_column("Source")
        for code in sorted(snapshot.rates):
            table.add_row(code, f"{snapshot.rates[code]:.10f}", snapshot.sources.get(code, ""))
        console.print(table)

    asyncio.run(_rates())


@app.command()
def reconcile(
    retailer_id: int = typer.Argument(..., help="Retailer id"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report without writing"),
    no_backfill: bool = typer.Option(
        False, "--no-backfill", help="Skip external id backfill from urls"
    ),
):
    """Repair duplicate mappings for one retailer."""
    from pricetrail.maintenance.reconciliation import ReconciliationJob

    if dry_run:
        console.print("[yellow]DRY RUN MODE - No changes will be made[/yellow]\n")

    async def _reconcile():
        try:
            report = await ReconciliationJob().run(
                retailer_id, dry_run=dry_run, backfill_external_ids=not no_backfill
            )
        except RetailerBusy as e:
            console.print(f"[yellow]{e}[/yellow]")
            raise typer.Exit(code=2)
        except ReconciliationFailure as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1)
        finally:
            await close_db()

        table = Table(title=f"Reconciliation - retailer {retailer_id}")
        table.add_column("Metric", style="cyan")
        table.add_column("Count", justify="right")
        for label, value in (
            ("Mappings scanned", report.mappings_scanned),
            ("Duplicate groups", report.duplicate_groups),
            ("Mappings removed", report.mappings_deleted),
            ("Prices re-pointed", report.prices_repointed),
            ("Products removed", report.products_deleted),
            ("Canonical links moved", report.canonical_links_moved),
            ("External ids inherited", report.external_ids_inherited),
            ("External ids backfilled", report.external_ids_backfilled),
        ):
            table.add_row(label, str(value))
        console.print(table)

    asyncio.run(_reconcile())


@app.command(name="prune-prices")
def prune_prices_cmd(
    days: int | None = typer.Option(None, "--days", help="Retention window in days"),
):
    """Delete prices observed before the retention window."""
    from pricetrail.pipeline.price_recorder import PriceRecorder

    days = days or get_config().pipeline.price_retention_days

    async def _prune():
        try:
            async with get_session() as session:
                deleted = await PriceRecorder().prune(session, days)
        finally:
            await close_db()
        console.print(f"[bold green]✓[/bold green] {deleted} prices older than {days} days removed")

    asyncio.run(_prune())


@app.command()
def link(
    product_id: int = typer.Argument(..., help="Product id"),
    canonical_id: int | None = typer.Argument(None, help="Canonical product id (omit to unlink)"),
):
    """Set or clear a product's canonical link."""
    from pricetrail.canonical.linking import link_canonical_product

    async def _link():
        try:
            async with get_session() as session:
                await link_canonical_product(session, product_id, canonical_id)
        except LinkTargetNotFound as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1)
        finally:
            await close_db()

        target = canonical_id if canonical_id is not None else "none"
        console.print(f"[bold green]✓[/bold green] Product {product_id} linked to {target}")

    asyncio.run(_link())


@app.command()
def history(
    mapping_id: int = typer.Argument(..., help="Mapping id"),
    since: str | None = typer.Option(None, "--since", help="Start date (ISO format)"),
    until: str | None = typer.Option(None, "--until", help="End date, exclusive (ISO format)"),
    eur: bool = typer.Option(False, "--eur", help="Show EUR amounts"),
):
    """Show price history for one mapping."""
    from pricetrail.db.price_queries import get_price_history
    from pricetrail.integration.rate_snapshot import load_rate_snapshot

    start = datetime.fromisoformat(since) if since else None
    end = datetime.fromisoformat(until) if until else None

    async def _history():
        try:
            async with get_session() as session:
                snapshot = await load_rate_snapshot(session) if eur else None
                points = await get_price_history(session, mapping_id, start, end, snapshot)
        finally:
            await close_db()

        if not points:
            console.print(f"[yellow]No prices for mapping {mapping_id}[/yellow]")
            return

        table = Table(title=f"Price history - mapping {mapping_id}")
        table.add_column("Observed", style="cyan")
        table.add_column("Price", justify="right")
        table.add_column("Per kg/l", justify="right")
        table.add_column("Sale")
        if eur:
            table.add_column("EUR", justify="right")
        for point in points:
            row = [
                point.observed_at.strftime("%Y-%m-%d %H:%M"),
                f"{point.price} {point.currency}",
                str(point.price_per_unit) if point.price_per_unit is not None else "-",
                "yes" if point.is_on_sale else "",
            ]
            if eur:
                row.append(str(point.price_eur) if point.price_eur is not None else "-")
            table.add_row(*row)
        console.print(table)

    asyncio.run(_history())


@app.command()
def runs(
    last_n: int = typer.Option(10, "--last", "-n", help="Show last N runs"),
    retailer_id: int | None = typer.Option(None, "--retailer", "-r", help="Retailer id"),
):
    """Show recent retailer runs."""

    async def _runs():
        try:
            async with get_session() as session:
                stmt = (
                    select(ScrapeLogModel, RetailerModel.name)
                    .join(RetailerModel, RetailerModel.id == ScrapeLogModel.retailer_id)
                    .order_by(ScrapeLogModel.started_at.desc(), ScrapeLogModel.id.desc())
                    .limit(last_n)
                )
                if retailer_id is not None:
                    stmt = stmt.where(ScrapeLogModel.retailer_id == retailer_id)
                rows = (await session.execute(stmt)).all()
        finally:
            await close_db()

        if not rows:
            console.print("[yellow]No runs found[/yellow]")
            return

        styles = {"SUCCESS": "green", "PARTIAL_SUCCESS": "yellow", "RUNNING": "blue"}
        table = Table(title=f"Last {last_n} runs")
        table.add_column("Started", style="cyan")
        table.add_column("Retailer")
        table.add_column("Status", style="bold")
        table.add_column("Seen", justify="right")
        table.add_column("Failed", justify="right")
        table.add_column("Prices", justify="right")
        table.add_column("Message")
        for log, name in rows:
            style = styles.get(log.status, "red")
            table.add_row(
                log.started_at.strftime("%Y-%m-%d %H:%M:%S"),
                name,
                f"[{style}]{log.status}[/{style}]",
                str(log.listings_seen),
                str(log.listings_failed),
                str(log.prices_recorded),
                log.message or "",
            )
        console.print(table)

    asyncio.run(_runs())


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
