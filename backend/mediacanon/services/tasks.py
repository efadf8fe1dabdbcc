"""
tasks.py

Celery tasks for the IMDb sync and TMDB backfill.
"""
import asyncio
import logging

from celery import shared_task

from mediacanon.core.config import settings
from mediacanon.core.database import SessionLocal
from mediacanon.core.redis_client import get_redis_sync

logger = logging.getLogger(__name__)

SYNC_LOCK_KEY = "lock:imdb_sync"
SYNC_LOCK_TTL = 6 * 3600

# Delete the lock only while it still holds this run's token
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


@shared_task(bind=True, name="run_imdb_sync")
def run_imdb_sync(self, force: bool = False, skip_backfill: bool = False) -> dict:
    """Download the IMDb datasets, import them if they changed, then drain the backfill queue.

    Runs are serialised with a Redis lock; an overlapping trigger returns 'skipped'.
    """
    from mediacanon.services.sync_pipeline import build_pipeline

    r = get_redis_sync()
    token = self.request.id or "local"
    if not r.set(SYNC_LOCK_KEY, token, ex=SYNC_LOCK_TTL, nx=True):
        logger.info("IMDb sync already running, skipping this trigger")
        return {"status": "skipped", "reason": "already running"}
    try:
        result = build_pipeline().run(force=force, skip_backfill=skip_backfill)
        return {"status": "complete", **result.to_dict()}
    finally:
        if not r.eval(RELEASE_LOCK_SCRIPT, 1, SYNC_LOCK_KEY, token):
            logger.warning("IMDb sync lock expired before the run finished; left the current holder alone")


@shared_task(bind=True, name="drain_backfill_queue")
def drain_backfill_queue(self, page_size: int = None, max_pages: int = None) -> dict:
    """Drain the TMDB backfill queue on its own, without touching the datasets."""
    if not settings.tmdb_enabled:
        logger.info("TMDB API key not configured; nothing to backfill")
        return {"status": "skipped", "reason": "no TMDB API key"}

    from mediacanon.services.backfill import BackfillScheduler
    from mediacanon.services.enrichment import TitleEnricher
    from mediacanon.services.tmdb_client import TMDBClient

    async def _drain():
        async with TMDBClient.from_settings(settings) as client:
            scheduler = BackfillScheduler(
                SessionLocal,
                TitleEnricher(client, poster_size=settings.tmdb_poster_size),
                page_size=page_size or settings.backfill_page_size,
                throttle_cooldown=settings.tmdb_throttle_cooldown_seconds,
                max_pages=max_pages,
            )
            return await scheduler.drain_backfill_queue()

    report = asyncio.run(_drain())
    return {"status": "complete", **report.to_dict()}
