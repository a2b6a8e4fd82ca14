import os
from celery import Celery
from datetime import timedelta

from .config import settings


broker = os.getenv("CELERY_BROKER_URL") or settings.REDIS_URL

celery_app = Celery(
    "ride_dispatch",
    broker=broker,
    backend=os.getenv("CELERY_RESULT_BACKEND", broker),
    include=["ride_dispatch.tasks"],
)

celery_app.conf.update(
    timezone="UTC",
    task_default_queue="dispatch",
    task_acks_late=True,
)


def build_beat_schedule() -> dict:
    schedule = {}
    if settings.RECLAIM_INTERVAL_SECS > 0:
        schedule["reclaim-sweeps"] = {
            "task": "ride_dispatch.tasks.run_reclamation",
            "schedule": timedelta(seconds=settings.RECLAIM_INTERVAL_SECS),
        }
    if settings.SURGE_INTERVAL_SECS > 0:
        schedule["surge-recompute"] = {
            "task": "ride_dispatch.tasks.recompute_surge_zones",
            "schedule": timedelta(seconds=settings.SURGE_INTERVAL_SECS),
        }
    if settings.SCHEDULED_INTERVAL_SECS > 0:
        schedule["scheduled-promotion"] = {
            "task": "ride_dispatch.tasks.promote_scheduled",
            "schedule": timedelta(seconds=settings.SCHEDULED_INTERVAL_SECS),
        }
    return schedule


celery_app.conf.beat_schedule = build_beat_schedule()
