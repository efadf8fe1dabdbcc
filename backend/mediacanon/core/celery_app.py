from celery import Celery
from celery.schedules import crontab
from celery.signals import after_setup_logger

from mediacanon.core.config import settings
from mediacanon.utils.logger import configure_logging

celery_app = Celery(
    "mediacanon",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["mediacanon.services.tasks"]
)

celery_app.conf.update(
    timezone="UTC",
    result_expires=3600,
    task_acks_late=True,
    worker_prefetch_multiplier=1,    # Sync runs are long; take one at a time
    worker_max_tasks_per_child=10,   # The bulk import holds large snapshots in memory

    broker_connection_retry_on_startup=True,

    # RedBeat scheduler configuration
    beat_scheduler='redbeat.schedulers:RedBeatScheduler',
    redbeat_redis_url=settings.redis_url,
    redbeat_key_prefix='mediacanon:beat:',

    task_routes={
        'run_imdb_sync': {'queue': 'ingestion'},
        'drain_backfill_queue': {'queue': 'ingestion'},
    },

    beat_schedule={
        # IMDb regenerates its datasets daily; the fingerprint check makes no-op runs cheap
        "nightly-imdb-sync": {
            "task": "run_imdb_sync",
            "schedule": crontab(hour=3, minute=0),
            "kwargs": {"force": False},
        },
    },
)


@after_setup_logger.connect
def setup_mediacanon_logging(**kwargs):
    configure_logging()
