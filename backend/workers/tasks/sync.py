"""
Sync tasks for Celery workers.

Runs the HubSpot reconciliation engine for every configured region on the
beat schedule, or for one region on demand.
"""
from __future__ import annotations

import sys
from pathlib import Path

# Ensure backend directory is in Python path for Celery forked workers
_backend_dir = Path(__file__).resolve().parent.parent.parent
if str(_backend_dir) not in sys.path:
    sys.path.insert(0, str(_backend_dir))

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional

from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro: Any) -> Any:
    """Run an async function in a sync context (for Celery tasks).

    Creates a fresh event loop and drops database connections bound to a
    previous loop, which asyncpg cannot reuse.
    """
    from models.database import dispose_engine

    dispose_engine()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _year_to_date_options(trigger_type: str, now: Optional[datetime] = None) -> Any:
    from services.hubspot_sync import SyncOptions

    now = now or datetime.utcnow()
    return SyncOptions(
        start_date=datetime(now.year, 1, 1),
        end_date=datetime(now.year, 12, 31, 23, 59, 59),
        trigger_type=trigger_type,
    )


async def _sync_regions(
    region_codes: Optional[list[str]] = None, trigger_type: str = "scheduled"
) -> dict[str, Any]:
    from db.repository import SqlRepository
    from services.hubspot_sync import sync_all_regions
    from services.regions import ensure_regions, load_regions

    repository = SqlRepository()
    if region_codes is None:
        regions = load_regions()
        await ensure_regions(repository, regions)
        region_codes = [region.code for region in regions]

    results = await sync_all_regions(repository, region_codes, _year_to_date_options(trigger_type))
    succeeded = sum(1 for r in results.values() if r.success)
    logger.info(
        f"Region sync complete: {succeeded} succeeded, {len(results) - succeeded} failed"
    )
    return {
        "total_regions": len(results),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "completed_at": datetime.utcnow().isoformat(),
        "results": {code: r.to_dict() for code, r in results.items()},
    }


@celery_app.task(bind=True, name="workers.tasks.sync.sync_all_regions_task")
def sync_all_regions_task(self: Any) -> dict[str, Any]:
    """
    Hourly sync for every active region in the regions file.

    Returns:
        Dict with per-region results and a summary
    """
    logger.info(f"Task {self.request.id}: Starting hourly sync for all regions")
    return run_async(_sync_regions())


@celery_app.task(bind=True, name="workers.tasks.sync.sync_region_task")
def sync_region_task(self: Any, region_code: str) -> dict[str, Any]:
    """Sync one region on demand."""
    logger.info(f"Task {self.request.id}: Syncing region {region_code}")
    return run_async(_sync_regions([region_code], trigger_type="manual"))
