"""arq background worker: scheduled scrape cycle, rate sync and price pruning.

Reconciliation (``reconcile_retailer_job``) and EUR price reads
(``latest_prices_job``) are enqueued on demand. Price reads share one
rate snapshot that a rate sync invalidates.
"""

import logging
from typing import Any

from arq.connections import RedisSettings
from arq.cron import cron

from pricetrail.config import get_config
from pricetrail.core.logging import configure_logging
from pricetrail.db.connection import close_db, get_session, get_session_factory
from pricetrail.db.price_queries import get_latest_prices
from pricetrail.errors import RetailerBusy
from pricetrail.integration.exchange_rates import ExchangeRateSync
from pricetrail.integration.rate_snapshot import RateProvider
from pricetrail.integration.rates_client import FrankfurterClient
from pricetrail.maintenance.reconciliation import ReconciliationJob
from pricetrail.pipeline.config_loader import load_retailer_config
from pricetrail.pipeline.orchestrator import ScraperService
from pricetrail.pipeline.price_recorder import PriceRecorder

logger = logging.getLogger(__name__)

config = get_config()


async def startup(ctx: dict[str, Any]) -> None:
    """Initialize resources when worker starts."""
    configure_logging(config.log_level, config.log_format)
    ctx["session_maker"] = get_session_factory()
    ctx["rate_provider"] = RateProvider(config.rates.snapshot_max_age_seconds)
    logger.info("Worker started. Database connection initialized.")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Cleanup resources when worker stops."""
    await close_db()
    logger.info("Worker stopped. Database connection closed.")


async def run_scrape_cycle(ctx: dict[str, Any]) -> dict[str, Any]:
    """Run every configured retailer through the pipeline."""
    scrapers = load_retailer_config(config.pipeline.retailers_config_path)
    if not scrapers:
        logger.warning("No retailers configured; scrape cycle skipped")
        return {"status": "skipped", "retailers": 0}

    service = ScraperService(
        scrapers, session_factory=ctx["session_maker"], config=config.pipeline
    )
    summary = await service.run()
    return {
        "status": "completed",
        "retailers": summary["total_retailers"],
        "successful": summary["successful_retailers"],
        "failed": summary["failed_retailers"],
        "prices_recorded": summary["prices_recorded"],
    }


async def sync_exchange_rates_job(ctx: dict[str, Any]) -> dict[str, Any]:
    """Append the current exchange rates, falling back on an outage."""
    async with FrankfurterClient(config.rates) as client:
        async with get_session(ctx["session_maker"]) as session:
            result = await ExchangeRateSync(client, config.rates).sync(session)

    ctx["rate_provider"].invalidate()
    return {
        "status": "completed",
        "rates": result.rows_written,
        "used_fallback": result.used_fallback,
        "anomalies": [a.currency_code for a in result.anomalies],
    }


async def latest_prices_job(
    ctx: dict[str, Any], retailer_id: int | None = None
) -> dict[str, Any]:
    """Latest price per mapping with EUR amounts from the cached rate snapshot."""
    async with get_session(ctx["session_maker"]) as session:
        snapshot = await ctx["rate_provider"].get(session)
        prices = await get_latest_prices(session, retailer_id=retailer_id, snapshot=snapshot)

    return {
        "status": "completed",
        "rates_loaded_at": snapshot.loaded_at,
        "prices": [p.model_dump() for p in prices],
    }


async def prune_prices_job(ctx: dict[str, Any]) -> dict[str, Any]:
    """Delete prices older than the retention window."""
    async with get_session(ctx["session_maker"]) as session:
        deleted = await PriceRecorder().prune(session, config.pipeline.price_retention_days)
    return {"status": "completed", "deleted": deleted}


async def reconcile_retailer_job(
    ctx: dict[str, Any], retailer_id: int, dry_run: bool = False
) -> dict[str, Any]:
    """Repair duplicate mappings for one retailer.

    Returns a "busy" status instead of failing when the retailer is being
    ingested; the operator re-enqueues it later.
    """
    try:
        report = await ReconciliationJob(ctx["session_maker"]).run(retailer_id, dry_run=dry_run)
    except RetailerBusy as e:
        return {"status": "busy", "error": str(e)}

    return {
        "status": "completed",
        "dry_run": report.dry_run,
        "duplicate_groups": report.duplicate_groups,
        "mappings_deleted": report.mappings_deleted,
        "prices_repointed": report.prices_repointed,
        "products_deleted": report.products_deleted,
        "external_ids_backfilled": report.external_ids_backfilled,
    }


class WorkerSettings:
    functions = [
        run_scrape_cycle,
        sync_exchange_rates_job,
        prune_prices_job,
        latest_prices_job,
        reconcile_retailer_job,
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(config.schedule.redis_url)
    cron_jobs = [
        cron(run_scrape_cycle, hour=config.schedule.scrape_hour, minute=0, timeout=6 * 3600),
        cron(sync_exchange_rates_job, hour=config.schedule.rates_hour, minute=0),
        cron(prune_prices_job, hour=config.schedule.prune_hour, minute=30),
    ]
