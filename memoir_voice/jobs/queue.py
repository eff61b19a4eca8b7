"""
Background job queue.

Exports:
 - RetryPolicy(attempts, backoff_ms): exponential backoff between executions
 - JobQueue: add_job / cancel_job / add_debounced_job / get_stats
 - InMemoryJobQueue: in-process queue driven by a poll loop (dev, tests)
 - CeleryJobQueue: Celery on Redis, executed by memoir_voice.jobs.tasks.run_job

Semantics shared by both backends:
 - a job runs at most `attempts` times; before retry n (1-based) it waits
   backoff_ms * 2**(n-1) milliseconds
 - completed jobs are dropped, jobs that exhaust their attempts are kept as failed
 - adding a job whose job_id is still known (waiting, delayed or failed) is a no-op
   that returns the existing id
"""
import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from celery import Celery

logger = logging.getLogger("memoir-voice.jobs.queue")

RUN_JOB_TASK = "memoir_voice.jobs.run_job"
JOB_KEY_PREFIX = "job:"
# upper bound on how long a Celery job id blocks re-adding
JOB_KEY_TTL_SECONDS = 24 * 3600

JobHandler = Callable[[str, Dict[str, Any]], Awaitable[Any]]


class RetryPolicy:
    def __init__(self, attempts: int = 3, backoff_ms: int = 5000):
        self.attempts = max(1, attempts)
        self.backoff_ms = backoff_ms

    def delay_ms(self, retry_number: int) -> int:
        """Delay before retry `retry_number` (1 for the first retry)."""
        return self.backoff_ms * 2 ** (retry_number - 1)

    def should_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.attempts


class JobQueue(ABC):
    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = policy or RetryPolicy()

    @abstractmethod
    async def add_job(
        self,
        name: str,
        payload: Dict[str, Any],
        delay_ms: Optional[int] = None,
        job_id: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> str: ...

    @abstractmethod
    async def cancel_job(self, job_id: str) -> bool: ...

    async def add_debounced_job(self, name: str, payload: Dict[str, Any], job_id: str, delay_ms: int) -> str:
        """Replace any pending job with the same id, so only the last call in a burst runs.

        A failed job under the same id is replaced too. The in-memory queue keeps it in
        failed_jobs(); on Celery the error stays in the result backend.
        """
        await self.cancel_job(job_id)
        return await self.add_job(name, payload, delay_ms=delay_ms, job_id=job_id)

    @abstractmethod
    async def get_stats(self) -> Dict[str, Any]: ...

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None


@dataclass
class Job:
    id: str
    name: str
    payload: Dict[str, Any]
    run_at: float
    max_attempts: int
    attempts_made: int = 0
    state: str = "waiting"
    last_error: Optional[str] = None
    created_at: float = field(default_factory=time.time)


class InMemoryJobQueue(JobQueue):
    """
    Process-local queue. `run_due()` executes every job whose time has come; `start()`
    runs it on a background poll loop. Jobs are lost on restart.
    """

    def __init__(
        self,
        handler: Optional[JobHandler] = None,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 0.5,
    ):
        super().__init__(policy)
        self.handler = handler
        self._clock = clock
        self.poll_interval = poll_interval
        self._jobs: Dict[str, Job] = {}
        self._completed = 0
        self._retired: List[Job] = []
        self._task: Optional[asyncio.Task] = None

    def bind(self, handler: JobHandler) -> None:
        self.handler = handler

    async def add_job(self, name, payload, delay_ms=None, job_id=None, attempts=None) -> str:
        job_id = job_id or uuid.uuid4().hex
        if job_id in self._jobs:
            logger.info("Job %s already queued (%s); not adding again", job_id, self._jobs[job_id].state)
            return job_id
        delay = max(delay_ms or 0, 0)
        self._jobs[job_id] = Job(
            id=job_id,
            name=name,
            payload=dict(payload),
            run_at=self._clock() + delay / 1000.0,
            max_attempts=attempts or self.policy.attempts,
            state="delayed" if delay else "waiting",
        )
        logger.info("Added job %s (%s) delay=%sms", name, job_id, delay)
        return job_id

    async def cancel_job(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.state == "active":
            return False
        del self._jobs[job_id]
        if job.state == "failed":
            # the id is free again but the failure stays visible
            self._retired.append(job)
        logger.info("Cancelled job %s", job_id)
        return True

    def failed_jobs(self) -> List[Job]:
        return self._retired + [j for j in self._jobs.values() if j.state == "failed"]

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    async def run_due(self) -> int:
        """Execute every due job once. Returns the number of executions."""
        if self.handler is None:
            raise RuntimeError("InMemoryJobQueue has no handler bound")
        now = self._clock()
        due = sorted(
            (j for j in self._jobs.values() if j.state in ("waiting", "delayed") and j.run_at <= now),
            key=lambda j: j.run_at,
        )
        for job in due:
            await self._execute(job)
        return len(due)

    async def _execute(self, job: Job) -> None:
        job.state = "active"
        job.attempts_made += 1
        try:
            await self.handler(job.name, job.payload)
        except Exception as exc:
            job.last_error = repr(exc)
            if job.attempts_made < job.max_attempts:
                delay = self.policy.delay_ms(job.attempts_made)
                job.state = "delayed"
                job.run_at = self._clock() + delay / 1000.0
                logger.warning(
                    "Job %s (%s) attempt %d/%d failed, retrying in %dms: %s",
                    job.name, job.id, job.attempts_made, job.max_attempts, delay, exc,
                )
            else:
                job.state = "failed"
                logger.exception("Job %s (%s) failed after %d attempts", job.name, job.id, job.attempts_made)
            return
        # completed jobs are removed so their id can be reused
        self._jobs.pop(job.id, None)
        self._completed += 1
        logger.info("Job %s (%s) completed", job.name, job.id)

    async def _poll(self) -> None:
        while True:
            try:
                await self.run_due()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Job poll loop iteration failed")
            await asyncio.sleep(self.poll_interval)

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._poll())
            logger.info("In-memory job worker started")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("In-memory job worker stopped")

    async def get_stats(self) -> Dict[str, Any]:
        counts = {"waiting": 0, "active": 0, "delayed": 0, "failed": 0}
        for job in self._jobs.values():
            counts[job.state] += 1
        counts["failed"] += len(self._retired)
        counts["completed"] = self._completed
        return counts


class CeleryJobQueue(JobQueue):
    """
    Sends jobs to the Celery worker as `run_job(name, payload, job_id, attempts, backoff_ms)`.

    Job ids are tracked in the key/value store (`job:<id>` -> celery task id) so that
    duplicates can be refused and debounced jobs revoked. The worker releases the key
    when a job completes; failed jobs keep it until JOB_KEY_TTL_SECONDS.
    """

    def __init__(self, celery_app: Celery, kv, policy: Optional[RetryPolicy] = None):
        super().__init__(policy)
        self.celery_app = celery_app
        self.kv = kv

    @staticmethod
    def key(job_id: str) -> str:
        return f"{JOB_KEY_PREFIX}{job_id}"

    async def add_job(self, name, payload, delay_ms=None, job_id=None, attempts=None) -> str:
        job_id = job_id or uuid.uuid4().hex
        # celery remembers revoked ids, so every send gets a fresh task id
        task_id = f"{job_id}:{uuid.uuid4().hex[:8]}"
        if not await self.kv.set_if_absent(self.key(job_id), task_id, JOB_KEY_TTL_SECONDS):
            logger.info("Job %s already queued; not adding again", job_id)
            return job_id

        kwargs = {
            "name": name,
            "payload": payload,
            "job_id": job_id,
            "attempts": attempts or self.policy.attempts,
            "backoff_ms": self.policy.backoff_ms,
        }
        countdown = (delay_ms or 0) / 1000.0
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: self.celery_app.send_task(RUN_JOB_TASK, kwargs=kwargs, countdown=countdown, task_id=task_id),
            )
        except Exception:
            await self.kv.delete(self.key(job_id))
            raise
        logger.info("Sent job %s (%s) to celery, countdown=%ss", name, job_id, countdown)
        return job_id

    async def cancel_job(self, job_id: str) -> bool:
        task_id = await self.kv.get(self.key(job_id))
        if not task_id:
            return False
        self.celery_app.control.revoke(task_id)
        await self.kv.delete(self.key(job_id))
        logger.info("Revoked job %s (task %s)", job_id, task_id)
        return True

    async def release(self, job_id: str) -> None:
        await self.kv.delete(self.key(job_id))

    async def get_stats(self) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        inspect = self.celery_app.control.inspect(timeout=1.0)
        active, scheduled, reserved = await loop.run_in_executor(
            None, lambda: (inspect.active() or {}, inspect.scheduled() or {}, inspect.reserved() or {})
        )

        def _count(per_worker: Dict[str, list]) -> int:
            return sum(len(tasks) for tasks in per_worker.values())

        return {"active": _count(active), "delayed": _count(scheduled), "waiting": _count(reserved)}
