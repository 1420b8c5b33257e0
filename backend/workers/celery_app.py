"""
Celery application configuration.

This configures Celery with Redis as the broker and result backend.
Beat schedule is defined here for the hourly HubSpot sync.
"""
from __future__ import annotations

import logging
import sys
from pathlib import Path

# Ensure backend directory is in Python path for Celery workers
backend_dir = Path(__file__).resolve().parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Load .env before importing config so workers see the API server's settings
from dotenv import load_dotenv
env_file = backend_dir / ".env"
if not env_file.exists():
    env_file = backend_dir.parent / ".env"
if env_file.exists():
    load_dotenv(env_file)

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_shutdown
from kombu import Exchange, Queue

from config import settings

logger = logging.getLogger(__name__)

celery_app = Celery(
    "sales_pipeline",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["workers.tasks.sync"],
)

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task settings
    task_track_started=True,
    task_time_limit=30 * 60,
    task_soft_time_limit=25 * 60,
    result_expires=60 * 60 * 24,

    # One task at a time per worker process; each process has its own pool
    worker_prefetch_multiplier=1,
    worker_concurrency=2,

    task_queues=(
        Queue("default", Exchange("default"), routing_key="default"),
        Queue("sync", Exchange("sync"), routing_key="sync.#"),
    ),
    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",
    task_routes={
        "workers.tasks.sync.*": {"queue": "sync"},
    },
)

celery_app.conf.beat_schedule = {
    # Top of every hour
    "hourly-sync-all-regions": {
        "task": "workers.tasks.sync.sync_all_regions_task",
        "schedule": crontab(minute=0),
        "options": {"queue": "sync"},
    },
}


@worker_process_shutdown.connect
def cleanup_db_connections(**kwargs) -> None:
    """Release pooled database connections when a worker process exits."""
    try:
        from models.database import dispose_engine
        dispose_engine()
        logger.info("[Celery] Database connections cleaned up on worker shutdown")
    except Exception as e:
        logger.warning(f"[Celery] Error cleaning up database connections: {e}")
