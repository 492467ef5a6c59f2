"""Celery application configuration."""

import time

from celery import Celery
from celery.schedules import crontab
from celery.signals import task_failure, task_postrun, task_prerun

from walletpass.config import get_settings
from walletpass.metrics import celery_task_duration_seconds, celery_task_total

settings = get_settings()

celery_app = Celery(
    "walletpass",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "walletpass.tasks.update_tasks.notify_pass_updated": {"queue": "notifications"},
        "walletpass.tasks.update_tasks.*": {"queue": "default"},
    },
    beat_schedule={
        # Devices that hold none of our passes any more: daily
        "cleanup-orphaned-devices": {
            "task": "walletpass.tasks.update_tasks.cleanup_orphaned_devices",
            "schedule": crontab(hour=settings.orphan_cleanup_hour, minute=0),
        },
    },
)

_task_start_times: dict[str, float] = {}


def _on_task_prerun(task_id=None, task=None, **kwargs):
    _task_start_times[task_id] = time.monotonic()


def _on_task_postrun(task_id=None, task=None, state=None, **kwargs):
    started = _task_start_times.pop(task_id, None)
    if started is not None:
        celery_task_duration_seconds.labels(task_name=task.name).observe(time.monotonic() - started)
    if state == "SUCCESS":
        celery_task_total.labels(task_name=task.name, status="success").inc()


def _on_task_failure(task_id=None, sender=None, **kwargs):
    celery_task_total.labels(task_name=sender.name, status="failure").inc()


def _setup_task_signals() -> None:
    task_prerun.connect(_on_task_prerun, weak=False)
    task_postrun.connect(_on_task_postrun, weak=False)
    task_failure.connect(_on_task_failure, weak=False)


_setup_task_signals()

celery_app.autodiscover_tasks(["walletpass.tasks"], related_name="update_tasks")
