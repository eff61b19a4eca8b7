"""Celery application for the post-call job worker.

Run with: celery -A memoir_voice.jobs.celery_app worker --loglevel=info
"""
from celery import Celery

from memoir_voice.config import get_settings

settings = get_settings()

celery_app = Celery(
    "memoir_voice",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_BROKER_URL,
    include=["memoir_voice.jobs.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # completed jobs leave nothing behind, failures are kept for inspection
    task_ignore_result=True,
    task_store_errors_even_if_ignored=True,
    result_expires=None,
    task_acks_late=True,
    task_time_limit=600,
    task_soft_time_limit=540,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
)

if __name__ == "__main__":
    celery_app.start()
