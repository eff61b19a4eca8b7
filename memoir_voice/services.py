# memoir_voice/services.py
"""
Service wiring.

`build_services(settings)` connects the database and key/value store and constructs
every collaborator once. The web app keeps the result on `app.state.services`; the
Celery worker builds its own per process (see memoir_voice.jobs.tasks).
"""
import logging
from dataclasses import dataclass
from typing import Optional

from databases import Database

from memoir_voice.core.billing import BillingService
from memoir_voice.core.llm_client import LLMClient
from memoir_voice.core.memoir import MemoirService
from memoir_voice.core.memory_extraction import MemoryExtractor
from memoir_voice.core.orchestrator import ConversationOrchestrator
from memoir_voice.core.stories import StoryService
from memoir_voice.core.telephony import TelephonyClient
from memoir_voice.core.tts_client import TTSClient
from memoir_voice.db.db import connect_db, disconnect_db
from memoir_voice.jobs.processor import JobProcessor
from memoir_voice.jobs.queue import CeleryJobQueue, InMemoryJobQueue, JobQueue, RetryPolicy
from memoir_voice.state.session_store import SessionStore, connect_kv
from memoir_voice.storage.datastore import DataStore, SqlDataStore

logger = logging.getLogger("memoir-voice.services")


@dataclass
class Services:
    settings: object
    kv: object
    sessions: SessionStore
    datastore: DataStore
    llm: LLMClient
    tts: TTSClient
    telephony: TelephonyClient
    jobs: JobQueue
    billing: BillingService
    memoir: MemoirService
    stories: StoryService
    memory_extractor: MemoryExtractor
    orchestrator: ConversationOrchestrator
    processor: JobProcessor
    database: Optional[Database] = None

    async def close(self) -> None:
        await self.jobs.stop()
        await self.llm.close()
        await self.tts.close()
        await self.kv.close()
        if self.database is not None:
            await disconnect_db(self.database)


def wire_services(settings, kv, datastore: DataStore, llm, tts, telephony, jobs: JobQueue, database=None) -> Services:
    """Assemble the service graph from already-constructed collaborators."""
    sessions = SessionStore(kv, ttl_seconds=settings.SESSION_TTL_SECONDS)
    billing = BillingService(datastore, cost_per_minute_cents=settings.CALL_COST_PER_MINUTE_CENTS)
    memoir = MemoirService(datastore, llm)
    stories = StoryService(datastore, memoir, jobs)
    memory_extractor = MemoryExtractor(datastore, llm, stories)
    orchestrator = ConversationOrchestrator(sessions, datastore, llm, tts, jobs, telephony=telephony)
    processor = JobProcessor(memory_extractor, billing, memoir)
    if isinstance(jobs, InMemoryJobQueue):
        jobs.bind(processor.process)
    return Services(
        settings=settings,
        kv=kv,
        sessions=sessions,
        datastore=datastore,
        llm=llm,
        tts=tts,
        telephony=telephony,
        jobs=jobs,
        billing=billing,
        memoir=memoir,
        stories=stories,
        memory_extractor=memory_extractor,
        orchestrator=orchestrator,
        processor=processor,
        database=database,
    )


def build_job_queue(settings, kv) -> JobQueue:
    policy = RetryPolicy(attempts=settings.JOB_ATTEMPTS, backoff_ms=settings.JOB_BACKOFF_MS)
    backend = (settings.JOB_BACKEND or "memory").lower()
    if backend == "celery":
        from memoir_voice.jobs.celery_app import celery_app

        logger.info("Using Celery job queue (%s)", settings.CELERY_BROKER_URL)
        return CeleryJobQueue(celery_app, kv, policy)
    logger.info("Using in-memory job queue")
    return InMemoryJobQueue(policy=policy)


async def build_services(settings) -> Services:
    database = await connect_db(settings.DB_URL)
    kv = await connect_kv(settings.REDIS_URL)
    return wire_services(
        settings,
        kv=kv,
        datastore=SqlDataStore(database),
        llm=LLMClient(settings),
        tts=TTSClient(settings),
        telephony=TelephonyClient(settings),
        jobs=build_job_queue(settings, kv),
        database=database,
    )
