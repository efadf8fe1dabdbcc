"""
sync_pipeline.py

Full IMDb sync: download -> fingerprint check -> diff/import -> checkpoint ->
TMDB backfill. Used by the Celery task and the sync_imdb script.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from redis.exceptions import RedisError
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from mediacanon.services.backfill import BackfillReport, BackfillScheduler
from mediacanon.services.bulk_importer import BulkDiffImporter, ImportReport
from mediacanon.services.change_detector import ChangeDetector
from mediacanon.services.enrichment import TitleEnricher
from mediacanon.services.imdb_dataset import DatasetFiles, download_datasets
from mediacanon.services.tmdb_client import TMDBClient
from mediacanon.utils.timezone import format_iso_utc, utc_now

logger = logging.getLogger(__name__)

STATUS_KEY = "mediacanon:sync:status"


class SyncStatusStore:
    """Last sync run status kept in Redis for the maintenance API."""

    def __init__(self, redis_factory: Optional[Callable] = None, key: str = STATUS_KEY):
        if redis_factory is None:
            from mediacanon.core.redis_client import get_redis_sync
            redis_factory = get_redis_sync
        self.redis_factory = redis_factory
        self.key = key

    def publish(self, status: str, **fields: Any) -> None:
        payload = {"status": status, "updated_at": format_iso_utc(utc_now()), **fields}
        try:
            self.redis_factory().set(self.key, json.dumps(payload, default=str))
        except RedisError as e:
            logger.warning(f"Failed to publish sync status '{status}': {e}")

    def read(self) -> Optional[Dict[str, Any]]:
        raw = self.redis_factory().get(self.key)
        return json.loads(raw) if raw else None


@dataclass
class SyncRunResult:
    fingerprint: Optional[str] = None
    changed: bool = False
    reason: Optional[str] = None
    import_report: Optional[ImportReport] = None
    backfill_report: Optional[BackfillReport] = None
    checkpoint_saved: bool = False
    duration: float = 0.0
    notes: list = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "changed": self.changed,
            "reason": self.reason,
            "import": self.import_report.to_dict() if self.import_report else None,
            "backfill": self.backfill_report.to_dict() if self.backfill_report else None,
            "checkpoint_saved": self.checkpoint_saved,
            "duration_seconds": round(self.duration, 1),
            "notes": list(self.notes),
        }


class SyncPipeline:
    def __init__(
        self,
        engine: Engine,
        session_factory: Callable[[], Session],
        settings,
        status_store: Optional[SyncStatusStore] = None,
        downloader: Callable[..., DatasetFiles] = download_datasets,
        client_factory: Optional[Callable[[], TMDBClient]] = None,
    ):
        self.engine = engine
        self.session_factory = session_factory
        self.settings = settings
        self.status_store = status_store
        self.downloader = downloader
        self.client_factory = client_factory or (lambda: TMDBClient.from_settings(settings))

    def _publish(self, status: str, **fields):
        if self.status_store is not None:
            self.status_store.publish(status, **fields)

    def run(self, force: bool = False, skip_backfill: bool = False,
            dataset_dir: Optional[str] = None) -> SyncRunResult:
        """Run one sync. Download and store errors propagate after an 'error' status is published."""
        started = time.monotonic()
        result = SyncRunResult()
        self._publish("running", force=force, started_at=format_iso_utc(utc_now()))
        try:
            self._run(result, force, skip_backfill, dataset_dir or self.settings.dataset_dir)
        except Exception as e:
            result.duration = time.monotonic() - started
            logger.error(f"IMDb sync failed: {e}", exc_info=True)
            self._publish("error", error=str(e), result=result.to_dict())
            raise
        result.duration = time.monotonic() - started
        logger.info(f"IMDb sync finished in {result.duration:.1f}s")
        self._publish("complete", result=result.to_dict())
        return result

    def _run(self, result: SyncRunResult, force: bool, skip_backfill: bool, dataset_dir: str):
        logger.info("=== Downloading IMDb datasets ===")
        files = self.downloader(dataset_dir, settings=self.settings)

        detector = ChangeDetector(self.session_factory)
        decision = detector.check(files.paths(), force=force)
        result.fingerprint = decision.fingerprint
        result.changed = decision.changed
        result.reason = decision.reason

        if decision.changed:
            importer = BulkDiffImporter(
                self.engine,
                batch_size=self.settings.import_batch_size,
                workers=self.settings.import_workers,
                strict_kinds=self.settings.import_strict_kinds,
            )
            result.import_report = importer.import_from(files)
            result.checkpoint_saved = detector.commit(decision.fingerprint)
        else:
            logger.info("IMDb files unchanged since last sync, skipping import")

        if skip_backfill:
            result.notes.append("backfill skipped by request")
        elif not self.settings.backfill_enabled:
            result.notes.append("backfill disabled")
        elif not self.settings.tmdb_enabled:
            logger.info("TMDB API key not configured; skipping backfill")
            result.notes.append("backfill skipped: no TMDB API key")
        else:
            result.backfill_report = asyncio.run(self._backfill())

    async def _backfill(self) -> BackfillReport:
        logger.info("=== TMDB backfill ===")
        async with self.client_factory() as client:
            scheduler = BackfillScheduler(
                self.session_factory,
                TitleEnricher(client, poster_size=self.settings.tmdb_poster_size),
                page_size=self.settings.backfill_page_size,
                throttle_cooldown=self.settings.tmdb_throttle_cooldown_seconds,
            )
            return await scheduler.drain_backfill_queue()


def build_pipeline(settings=None, with_status: bool = True) -> SyncPipeline:
    from mediacanon.core.database import SessionLocal, engine
    if settings is None:
        from mediacanon.core.config import settings
    return SyncPipeline(
        engine,
        SessionLocal,
        settings,
        status_store=SyncStatusStore() if with_status else None,
    )
