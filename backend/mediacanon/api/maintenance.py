"""
maintenance.py

API endpoints for triggering and inspecting the IMDb/TMDB sync.
"""
from fastapi import APIRouter, HTTPException
import logging

from mediacanon.schemas import MaintenanceResponse, SyncStatusResponse

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/sync", response_model=MaintenanceResponse)
async def trigger_sync(force: bool = False, skip_backfill: bool = False):
    """Queue a full IMDb sync.

    Args:
        force: Import even when the dataset fingerprint has not changed.
        skip_backfill: Stop after the import, leaving the TMDB backlog for later.
    """
    try:
        from mediacanon.services.tasks import run_imdb_sync

        task = run_imdb_sync.delay(force=force, skip_backfill=skip_backfill)
        mode = "forced" if force else "incremental"
        return MaintenanceResponse(
            status="queued",
            message=f"IMDb sync queued ({mode}). Progress is reported at /api/maintenance/sync-status.",
            task_id=task.id,
        )
    except Exception as e:
        logger.error(f"Failed to queue IMDb sync: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to queue sync: {e}")


@router.post("/backfill", response_model=MaintenanceResponse)
async def trigger_backfill(page_size: int = 100, max_pages: int = None):
    """Queue a TMDB backfill pass without re-reading the datasets."""
    try:
        from mediacanon.services.tasks import drain_backfill_queue

        task = drain_backfill_queue.delay(page_size=page_size, max_pages=max_pages)
        return MaintenanceResponse(
            status="queued",
            message="TMDB backfill queued.",
            task_id=task.id,
        )
    except Exception as e:
        logger.error(f"Failed to queue TMDB backfill: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to queue backfill: {e}")


@router.get("/sync-status", response_model=SyncStatusResponse)
async def get_sync_status():
    """Status blob written by the last (or running) sync."""
    from mediacanon.services.sync_pipeline import SyncStatusStore

    try:
        status = SyncStatusStore().read()
    except Exception as e:
        logger.error(f"Failed to read sync status: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to read sync status: {e}")
    if not status:
        return SyncStatusResponse(status="never_run")
    return SyncStatusResponse(
        status=status.get("status", "unknown"),
        updated_at=status.get("updated_at"),
        error=status.get("error"),
        result=status.get("result"),
    )
