"""Pytest configuration and shared fixtures."""

from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from memoir_voice.config import Settings
from memoir_voice.core.llm_client import LLMClient
from memoir_voice.core.telephony import TelephonyClient
from memoir_voice.core.tts_client import TTSClient
from memoir_voice.jobs.queue import InMemoryJobQueue, RetryPolicy
from memoir_voice.models.schemas import (
    Call,
    CallDirection,
    Chapter,
    ChapterContent,
    ChapterStory,
    ConversationMessage,
    Memory,
    Profile,
)
from memoir_voice.services import wire_services
from memoir_voice.state.session_store import InMemoryKV, SessionStore
from memoir_voice.storage.datastore import DataStore, cosine_similarity, new_id, now_ms, utcnow


# ============================================================================
# Fakes
# ============================================================================

class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDataStore(DataStore):
    """Dictionary-backed DataStore with the same semantics as SqlDataStore."""

    def __init__(self):
        self.profiles: Dict[str, Profile] = {}
        self.phones: Dict[str, str] = {}
        self.balances: Dict[str, int] = {}
        self.transactions: List[dict] = []
        self.calls: Dict[str, Call] = {}
        self.messages: List[ConversationMessage] = []
        self.memories: Dict[str, Memory] = {}
        self.chapters: Dict[str, Chapter] = {}
        self.contents: List[ChapterContent] = []
        self.stories: Dict[str, ChapterStory] = {}

    def seed_user(self, phone: str, preferred_name: Optional[str] = "Rose", balance_cents: int = 500,
                  onboarding_completed: bool = True) -> Profile:
        profile = Profile(id=new_id(), preferred_name=preferred_name, onboarding_completed=onboarding_completed)
        self.profiles[profile.id] = profile
        self.phones[phone] = profile.id
        self.balances[profile.id] = balance_cents
        return profile

    # users
    async def find_user_by_phone(self, phone):
        user_id = self.phones.get(phone)
        return self.profiles.get(user_id) if user_id else None

    async def get_profile(self, user_id):
        return self.profiles.get(user_id)

    async def create_profile(self, preferred_name=None, full_name=None, onboarding_completed=False):
        profile = Profile(
            id=new_id(), preferred_name=preferred_name, full_name=full_name, onboarding_completed=onboarding_completed
        )
        self.profiles[profile.id] = profile
        return profile

    async def update_profile(self, user_id, **fields):
        if user_id not in self.profiles:
            return None
        self.profiles[user_id] = self.profiles[user_id].model_copy(update=fields)
        return self.profiles[user_id]

    async def link_phone(self, user_id, phone_number, is_verified=True, is_primary=True):
        self.phones[phone_number] = user_id

    async def get_balance_cents(self, user_id):
        return self.balances.get(user_id, 0)

    async def deduct_balance(self, user_id, amount_cents, call_id=None):
        if user_id not in self.balances:
            return False
        self.balances[user_id] -= amount_cents
        self.transactions.append({"user_id": user_id, "amount_cents": -amount_cents, "call_id": call_id})
        return True

    # calls
    async def create_call(self, call_sid, caller_phone, direction=CallDirection.INBOUND, user_id=None,
                          status="initiated"):
        call = Call(
            id=new_id(), call_sid=call_sid, caller_phone=caller_phone, direction=direction, user_id=user_id,
            status=status, started_at=utcnow(), created_at=utcnow(),
        )
        self.calls[call.id] = call
        return call

    async def get_call(self, call_id):
        return self.calls.get(call_id)

    async def get_call_by_sid(self, call_sid):
        return next((c for c in self.calls.values() if c.call_sid == call_sid), None)

    async def get_call_by_conversation_id(self, conversation_id):
        return next((c for c in self.calls.values() if c.voice_ai_conversation_id == conversation_id), None)

    async def update_call(self, call_id, **fields):
        if call_id not in self.calls:
            return None
        self.calls[call_id] = self.calls[call_id].model_copy(update=fields)
        return self.calls[call_id]

    async def update_call_by_sid(self, call_sid, **fields):
        call = await self.get_call_by_sid(call_sid)
        return await self.update_call(call.id, **fields) if call else None

    # transcript
    async def add_message(self, call_id, role, content, audio_url=None, timestamp_ms=None, sequence_index=0):
        base = timestamp_ms if timestamp_ms is not None else now_ms()
        message = ConversationMessage(
            id=new_id(), call_id=call_id, role=role, content=content, audio_url=audio_url,
            timestamp_ms=base + sequence_index,
        )
        self.messages.append(message)
        return message

    async def get_messages(self, call_id):
        return sorted((m for m in self.messages if m.call_id == call_id), key=lambda m: m.timestamp_ms)

    # memories
    async def create_memory(self, user_id, content, category, importance_score=0.5, call_id=None, time_period=None,
                            embedding=None):
        memory = Memory(
            id=new_id(), user_id=user_id, call_id=call_id, content=content, category=category,
            importance_score=importance_score, time_period=time_period, embedding=embedding, created_at=utcnow(),
        )
        self.memories[memory.id] = memory
        return memory

    def _active_memories(self, user_id):
        return [m for m in self.memories.values() if m.user_id == user_id and m.is_active]

    async def list_memories(self, user_id, limit=50):
        return list(reversed(self._active_memories(user_id)))[:limit]

    async def top_memories(self, user_id, limit=10):
        return sorted(self._active_memories(user_id), key=lambda m: m.importance_score, reverse=True)[:limit]

    async def search_memories(self, user_id, embedding, threshold=0.7, limit=5):
        scored = [(cosine_similarity(embedding, m.embedding or []), m) for m in self._active_memories(user_id)]
        scored = [pair for pair in scored if pair[0] >= threshold]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [m for _, m in scored[:limit]]

    async def deactivate_memory(self, memory_id, user_id):
        memory = self.memories.get(memory_id)
        if memory is None or memory.user_id != user_id:
            return False
        self.memories[memory_id] = memory.model_copy(update={"is_active": False})
        return True

    # chapters
    async def list_chapters(self, user_id):
        return sorted((c for c in self.chapters.values() if c.user_id == user_id), key=lambda c: c.display_order)

    async def create_chapter(self, user_id, title, slug, description=None, display_order=0, is_default=False):
        chapter = Chapter(
            id=new_id(), user_id=user_id, title=title, slug=slug, description=description,
            display_order=display_order, is_default=is_default,
        )
        self.chapters[chapter.id] = chapter
        return chapter

    async def get_chapter(self, chapter_id, user_id):
        chapter = self.chapters.get(chapter_id)
        return chapter if chapter and chapter.user_id == user_id else None

    async def save_chapter_content(self, chapter_id, content, story_ids):
        versions = [c.version for c in self.contents if c.chapter_id == chapter_id]
        self.contents = [
            c.model_copy(update={"is_current": False}) if c.chapter_id == chapter_id else c for c in self.contents
        ]
        saved = ChapterContent(
            id=new_id(), chapter_id=chapter_id, content=content, version=max(versions, default=0) + 1,
            word_count=len(content.split()), story_ids=list(story_ids), is_current=True, generated_at=utcnow(),
        )
        self.contents.append(saved)
        return saved

    async def get_current_chapter_content(self, chapter_id):
        return next((c for c in self.contents if c.chapter_id == chapter_id and c.is_current), None)

    # stories
    def _active_stories(self, user_id):
        return [s for s in self.stories.values() if s.user_id == user_id and s.is_active]

    async def find_story_by_hash(self, user_id, content_hash):
        return next((s for s in self._active_stories(user_id) if s.content_hash == content_hash), None)

    async def find_stories_by_title_words(self, user_id, words):
        return [
            s for s in self._active_stories(user_id)
            if s.title and any(w.lower() in s.title.lower() for w in words)
        ]

    async def create_story(self, user_id, chapter_id, content, content_hash, source_type, source_id=None,
                           title=None, summary=None, time_period=None):
        story = ChapterStory(
            id=new_id(), user_id=user_id, chapter_id=chapter_id, content=content, content_hash=content_hash,
            source_type=source_type, source_id=source_id, title=title, summary=summary, time_period=time_period,
            created_at=utcnow(),
        )
        self.stories[story.id] = story
        return story

    async def list_chapter_stories(self, chapter_id):
        return [s for s in self.stories.values() if s.chapter_id == chapter_id and s.is_active]


# ============================================================================
# Settings and collaborators
# ============================================================================

WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        ENV="test",
        DB_URL=f"sqlite:///{tmp_path / 'memoir.db'}",
        REDIS_URL=None,
        PUBLIC_BASE_URL="https://voice.example.com",
        MEDIA_DIR=str(tmp_path / "media"),
        MEDIA_BASE_URL="https://voice.example.com/media",
        LLM_MODE="stub",
        TTS_MODE="stub",
        TWILIO_AUTH_TOKEN="twilio-test-token",
        TWILIO_VALIDATE_SIGNATURE=False,
        VOICE_AI_WEBHOOK_SECRET=WEBHOOK_SECRET,
        VOICE_AI_VERIFY_SIGNATURE=True,
        JOB_BACKEND="memory",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv(clock):
    return InMemoryKV(clock=clock)


@pytest.fixture
def sessions(kv):
    return SessionStore(kv, ttl_seconds=3600)


@pytest.fixture
def datastore():
    return FakeDataStore()


@pytest.fixture
def llm():
    """Configured LLM double; tests set return values per call."""
    llm = MagicMock(spec=LLMClient)
    llm.is_configured.return_value = True
    llm.chat = AsyncMock(return_value="That sounds lovely. What happened next?")
    llm.chat_json = AsyncMock(return_value=None)
    llm.embed = AsyncMock(return_value=None)
    llm.close = AsyncMock()
    return llm


@pytest.fixture
def tts():
    tts = MagicMock(spec=TTSClient)
    tts.generate = AsyncMock(side_effect=lambda text, call_id, index: f"https://voice.example.com/media/{call_id}_{index}.mp3")
    tts.close = AsyncMock()
    return tts


@pytest.fixture
def telephony(settings):
    return TelephonyClient(settings, client=None)


@pytest.fixture
def jobs(clock):
    return InMemoryJobQueue(policy=RetryPolicy(attempts=3, backoff_ms=5000), clock=clock)


@pytest.fixture
def services(settings, kv, datastore, llm, tts, telephony, jobs):
    return wire_services(settings, kv=kv, datastore=datastore, llm=llm, tts=tts, telephony=telephony, jobs=jobs)


@pytest.fixture
def orchestrator(services):
    return services.orchestrator


@pytest.fixture
async def client(services):
    """Async HTTP client against an app wired to the test services."""
    from memoir_voice.main import create_app

    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
