"""Celery tasks for post-call processing."""
import asyncio
from typing import Any, Dict, Optional

from celery import Task

from memoir_voice.config import get_settings
from memoir_voice.jobs.celery_app import celery_app
from memoir_voice.jobs.queue import RUN_JOB_TASK, CeleryJobQueue, RetryPolicy
from memoir_voice.utils.logging import get_logger

logger = get_logger("memoir-voice.jobs.tasks", get_settings().LOG_LEVEL)

# One event loop and one service container per worker process; the DB and Redis
# clients built by build_services() are bound to this loop.
_loop: Optional[asyncio.AbstractEventLoop] = None
_services = None


def _worker_loop() -> asyncio.AbstractEventLoop:
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_loop)
    return _loop


async def get_worker_services():
    global _services
    if _services is None:
        from memoir_voice.services import build_services

        _services = await build_services(get_settings())
        logger.info("Worker services initialised")
    return _services


class AsyncTask(Task):
    """Base task class that runs coroutine tasks on the worker's event loop."""

    def __call__(self, *args, **kwargs):
        result = self.run(*args, **kwargs)
        if asyncio.iscoroutine(result):
            return _worker_loop().run_until_complete(result)
        return result


@celery_app.task(base=AsyncTask, bind=True, name=RUN_JOB_TASK, max_retries=None)
async def run_job(
    self,
    name: str,
    payload: Dict[str, Any],
    job_id: Optional[str] = None,
    attempts: int = 3,
    backoff_ms: int = 5000,
) -> None:
    """
    Execute one queued job through the JobProcessor.

    Retries with exponential backoff until `attempts` executions have failed; the
    final failure is re-raised so Celery records it.
    """
    services = await get_worker_services()
    policy = RetryPolicy(attempts, backoff_ms)
    attempts_made = self.request.retries + 1
    try:
        await services.processor.process(name, payload)
    except Exception as exc:
        if not policy.should_retry(attempts_made):
            logger.exception("Job %s (%s) failed after %d attempts", name, job_id, attempts_made)
            raise
        countdown = policy.delay_ms(attempts_made) / 1000.0
        logger.warning(
            "Job %s (%s) attempt %d/%d failed, retrying in %ss: %s",
            name, job_id, attempts_made, policy.attempts, countdown, exc,
        )
        raise self.retry(exc=exc, countdown=countdown, max_retries=policy.attempts - 1)

    if job_id and isinstance(services.jobs, CeleryJobQueue):
        await services.jobs.release(job_id)
    logger.info("Job %s (%s) completed", name, job_id)
