"""Celery application configuration."""

import os

from celery import Celery
from celery.schedules import crontab

BROKER_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

celery_app = Celery(
    "entitlement_sync",
    broker=BROKER_URL,
    backend=BROKER_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "prune-processed-events": {
            "task": "entitlement_sync.modules.billing.tasks.prune_processed_events",
            "schedule": crontab(hour=3, minute=15),
        },
    },
)

celery_app.autodiscover_tasks(["entitlement_sync.modules.billing"])
