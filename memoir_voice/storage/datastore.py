"""
Data-access layer used by the orchestration core.

`DataStore` is the interface the core depends on (row CRUD plus the RPC-style
procedures `deduct_balance` and `search_memories`). `SqlDataStore` implements it on
databases/SQLAlchemy Core against the tables in memoir_voice.models.db_models.
"""
import json
import logging
import math
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import sqlalchemy as sa
from databases import Database

from memoir_voice.models import db_models as t
from memoir_voice.models.schemas import (
    Call,
    CallDirection,
    Chapter,
    ChapterContent,
    ChapterStory,
    ConversationMessage,
    Memory,
    MemoryCategory,
    MessageRole,
    Profile,
    StorySource,
)

logger = logging.getLogger("memoir-voice.storage.datastore")


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(time.time() * 1000)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class DataStore(ABC):
    # users / phones / balances
    @abstractmethod
    async def find_user_by_phone(self, phone: str) -> Optional[Profile]: ...

    @abstractmethod
    async def get_profile(self, user_id: str) -> Optional[Profile]: ...

    @abstractmethod
    async def create_profile(
        self, preferred_name: Optional[str] = None, full_name: Optional[str] = None, onboarding_completed: bool = False
    ) -> Profile: ...

    @abstractmethod
    async def update_profile(self, user_id: str, **fields: Any) -> Optional[Profile]: ...

    @abstractmethod
    async def link_phone(self, user_id: str, phone_number: str, is_verified: bool = True, is_primary: bool = True) -> None: ...

    @abstractmethod
    async def get_balance_cents(self, user_id: str) -> int: ...

    @abstractmethod
    async def deduct_balance(self, user_id: str, amount_cents: int, call_id: Optional[str] = None) -> bool: ...

    # calls
    @abstractmethod
    async def create_call(
        self,
        call_sid: str,
        caller_phone: str,
        direction: CallDirection = CallDirection.INBOUND,
        user_id: Optional[str] = None,
        status: str = "initiated",
    ) -> Call: ...

    @abstractmethod
    async def get_call(self, call_id: str) -> Optional[Call]: ...

    @abstractmethod
    async def get_call_by_sid(self, call_sid: str) -> Optional[Call]: ...

    @abstractmethod
    async def get_call_by_conversation_id(self, conversation_id: str) -> Optional[Call]: ...

    @abstractmethod
    async def update_call(self, call_id: str, **fields: Any) -> Optional[Call]: ...

    @abstractmethod
    async def update_call_by_sid(self, call_sid: str, **fields: Any) -> Optional[Call]: ...

    # transcript
    @abstractmethod
    async def add_message(
        self,
        call_id: str,
        role: MessageRole,
        content: str,
        audio_url: Optional[str] = None,
        timestamp_ms: Optional[int] = None,
        sequence_index: int = 0,
    ) -> ConversationMessage: ...

    @abstractmethod
    async def get_messages(self, call_id: str) -> List[ConversationMessage]: ...

    # memories
    @abstractmethod
    async def create_memory(
        self,
        user_id: str,
        content: str,
        category: MemoryCategory,
        importance_score: float = 0.5,
        call_id: Optional[str] = None,
        time_period: Optional[str] = None,
        embedding: Optional[List[float]] = None,
    ) -> Memory: ...

    @abstractmethod
    async def list_memories(self, user_id: str, limit: int = 50) -> List[Memory]: ...

    @abstractmethod
    async def top_memories(self, user_id: str, limit: int = 10) -> List[Memory]: ...

    @abstractmethod
    async def search_memories(
        self, user_id: str, embedding: List[float], threshold: float = 0.7, limit: int = 5
    ) -> List[Memory]: ...

    # manual removal hook; memories are only ever soft-deleted, nothing in the call flow calls it
    @abstractmethod
    async def deactivate_memory(self, memory_id: str, user_id: str) -> bool: ...

    # memoir chapters
    @abstractmethod
    async def list_chapters(self, user_id: str) -> List[Chapter]: ...

    @abstractmethod
    async def create_chapter(
        self,
        user_id: str,
        title: str,
        slug: str,
        description: Optional[str] = None,
        display_order: int = 0,
        is_default: bool = False,
    ) -> Chapter: ...

    @abstractmethod
    async def get_chapter(self, chapter_id: str, user_id: str) -> Optional[Chapter]: ...

    @abstractmethod
    async def save_chapter_content(self, chapter_id: str, content: str, story_ids: List[str]) -> ChapterContent: ...

    @abstractmethod
    async def get_current_chapter_content(self, chapter_id: str) -> Optional[ChapterContent]: ...

    # stories
    @abstractmethod
    async def find_story_by_hash(self, user_id: str, content_hash: str) -> Optional[ChapterStory]: ...

    @abstractmethod
    async def find_stories_by_title_words(self, user_id: str, words: List[str]) -> List[ChapterStory]: ...

    @abstractmethod
    async def create_story(
        self,
        user_id: str,
        chapter_id: str,
        content: str,
        content_hash: str,
        source_type: StorySource,
        source_id: Optional[str] = None,
        title: Optional[str] = None,
        summary: Optional[str] = None,
        time_period: Optional[str] = None,
    ) -> ChapterStory: ...

    @abstractmethod
    async def list_chapter_stories(self, chapter_id: str) -> List[ChapterStory]: ...


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _row_dict(table: sa.Table, row) -> Dict[str, Any]:
    return {c.name: row[c.name] for c in table.c}


def _memory(row) -> Memory:
    data = _row_dict(t.user_memories, row)
    raw = data.pop("embedding_json")
    data["embedding"] = json.loads(raw) if raw else None
    return Memory(**data)


def _chapter_content(row) -> ChapterContent:
    data = _row_dict(t.chapter_content, row)
    data["story_ids"] = json.loads(data.pop("story_ids_json") or "[]")
    return ChapterContent(**data)


class SqlDataStore(DataStore):
    def __init__(self, database: Database):
        self.db = database

    # -- users ---------------------------------------------------------------

    async def find_user_by_phone(self, phone: str) -> Optional[Profile]:
        q = sa.select(t.user_phones.c.user_id).where(t.user_phones.c.phone_number == phone)
        row = await self.db.fetch_one(q)
        if not row:
            return None
        return await self.get_profile(row["user_id"])

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        row = await self.db.fetch_one(t.profiles.select().where(t.profiles.c.id == user_id))
        return Profile(**_row_dict(t.profiles, row)) if row else None

    async def create_profile(self, preferred_name=None, full_name=None, onboarding_completed=False) -> Profile:
        values = {
            "id": new_id(),
            "preferred_name": preferred_name,
            "full_name": full_name,
            "onboarding_completed": onboarding_completed,
            "created_at": utcnow().isoformat(),
        }
        await self.db.execute(t.profiles.insert().values(**values))
        logger.info("Created profile %s", values["id"])
        return await self.get_profile(values["id"])

    async def update_profile(self, user_id: str, **fields: Any) -> Optional[Profile]:
        if fields:
            q = t.profiles.update().where(t.profiles.c.id == user_id).values(
                **{k: _serialize(v) for k, v in fields.items()}
            )
            await self.db.execute(q)
        return await self.get_profile(user_id)

    async def link_phone(self, user_id: str, phone_number: str, is_verified: bool = True, is_primary: bool = True) -> None:
        await self.db.execute(
            t.user_phones.insert().values(
                id=new_id(),
                user_id=user_id,
                phone_number=phone_number,
                is_verified=is_verified,
                is_primary=is_primary,
            )
        )

    async def get_balance_cents(self, user_id: str) -> int:
        q = sa.select(t.user_balances.c.balance_cents).where(t.user_balances.c.user_id == user_id)
        row = await self.db.fetch_one(q)
        return int(row["balance_cents"]) if row else 0

    async def deduct_balance(self, user_id: str, amount_cents: int, call_id: Optional[str] = None) -> bool:
        async with self.db.transaction():
            balance = t.user_balances
            row = await self.db.fetch_one(balance.select().where(balance.c.user_id == user_id))
            if not row:
                logger.warning("No balance row for user %s; charge of %s cents not applied", user_id, amount_cents)
                return False
            await self.db.execute(
                balance.update()
                .where(balance.c.user_id == user_id)
                .values(
                    balance_cents=balance.c.balance_cents - amount_cents,
                    total_spent_cents=balance.c.total_spent_cents + amount_cents,
                    updated_at=utcnow().isoformat(),
                )
            )
            await self.db.execute(
                t.balance_transactions.insert().values(
                    id=new_id(),
                    user_id=user_id,
                    amount_cents=-amount_cents,
                    type="call_charge",
                    call_id=call_id,
                    created_at=utcnow().isoformat(),
                )
            )
        return True

    # -- calls ---------------------------------------------------------------

    async def _fetch_call(self, clause) -> Optional[Call]:
        row = await self.db.fetch_one(t.calls.select().where(clause))
        return Call(**_row_dict(t.calls, row)) if row else None

    async def create_call(self, call_sid, caller_phone, direction=CallDirection.INBOUND, user_id=None, status="initiated") -> Call:
        now = utcnow().isoformat()
        values = {
            "id": new_id(),
            "call_sid": call_sid,
            "caller_phone": caller_phone,
            "direction": _serialize(direction),
            "user_id": user_id,
            "status": status,
            "duration_seconds": 0,
            "cost_cents": 0,
            "started_at": now,
            "created_at": now,
        }
        await self.db.execute(t.calls.insert().values(**values))
        logger.info("Created call %s for sid %s", values["id"], call_sid)
        return await self.get_call(values["id"])

    async def get_call(self, call_id: str) -> Optional[Call]:
        return await self._fetch_call(t.calls.c.id == call_id)

    async def get_call_by_sid(self, call_sid: str) -> Optional[Call]:
        return await self._fetch_call(t.calls.c.call_sid == call_sid)

    async def get_call_by_conversation_id(self, conversation_id: str) -> Optional[Call]:
        return await self._fetch_call(t.calls.c.voice_ai_conversation_id == conversation_id)

    async def update_call(self, call_id: str, **fields: Any) -> Optional[Call]:
        return await self._update_call(t.calls.c.id == call_id, fields)

    async def update_call_by_sid(self, call_sid: str, **fields: Any) -> Optional[Call]:
        return await self._update_call(t.calls.c.call_sid == call_sid, fields)

    async def _update_call(self, clause, fields: Dict[str, Any]) -> Optional[Call]:
        if fields:
            q = t.calls.update().where(clause).values(**{k: _serialize(v) for k, v in fields.items()})
            await self.db.execute(q)
        return await self._fetch_call(clause)

    # -- transcript ----------------------------------------------------------

    async def add_message(self, call_id, role, content, audio_url=None, timestamp_ms=None, sequence_index=0) -> ConversationMessage:
        base = timestamp_ms if timestamp_ms is not None else now_ms()
        values = {
            "id": new_id(),
            "call_id": call_id,
            "role": _serialize(role),
            "content": content,
            "audio_url": audio_url,
            "timestamp_ms": base + sequence_index,
        }
        await self.db.execute(t.conversation_messages.insert().values(**values))
        return ConversationMessage(**values)

    async def get_messages(self, call_id: str) -> List[ConversationMessage]:
        m = t.conversation_messages
        q = m.select().where(m.c.call_id == call_id).order_by(m.c.timestamp_ms.asc())
        rows = await self.db.fetch_all(q)
        return [ConversationMessage(**_row_dict(m, r)) for r in rows]

    # -- memories ------------------------------------------------------------

    async def create_memory(self, user_id, content, category, importance_score=0.5, call_id=None, time_period=None, embedding=None) -> Memory:
        values = {
            "id": new_id(),
            "user_id": user_id,
            "call_id": call_id,
            "content": content,
            "category": _serialize(category),
            "importance_score": importance_score,
            "time_period": time_period,
            "embedding_json": json.dumps(embedding) if embedding else None,
            "is_active": True,
            "created_at": utcnow().isoformat(),
        }
        await self.db.execute(t.user_memories.insert().values(**values))
        row = await self.db.fetch_one(t.user_memories.select().where(t.user_memories.c.id == values["id"]))
        return _memory(row)

    def _active_memories(self, user_id: str):
        m = t.user_memories
        return m.select().where(m.c.user_id == user_id).where(m.c.is_active == sa.true())

    async def list_memories(self, user_id: str, limit: int = 50) -> List[Memory]:
        q = self._active_memories(user_id).order_by(t.user_memories.c.created_at.desc()).limit(limit)
        return [_memory(r) for r in await self.db.fetch_all(q)]

    async def top_memories(self, user_id: str, limit: int = 10) -> List[Memory]:
        q = self._active_memories(user_id).order_by(t.user_memories.c.importance_score.desc()).limit(limit)
        return [_memory(r) for r in await self.db.fetch_all(q)]

    async def search_memories(self, user_id, embedding, threshold=0.7, limit=5) -> List[Memory]:
        q = self._active_memories(user_id).where(t.user_memories.c.embedding_json.isnot(None))
        scored = []
        for row in await self.db.fetch_all(q):
            memory = _memory(row)
            score = cosine_similarity(embedding, memory.embedding or [])
            if score >= threshold:
                scored.append((score, memory))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [memory for _, memory in scored[:limit]]

    async def deactivate_memory(self, memory_id: str, user_id: str) -> bool:
        m = t.user_memories
        row = await self.db.fetch_one(m.select().where(m.c.id == memory_id).where(m.c.user_id == user_id))
        if not row:
            return False
        await self.db.execute(m.update().where(m.c.id == memory_id).values(is_active=False))
        return True

    # -- chapters ------------------------------------------------------------

    async def list_chapters(self, user_id: str) -> List[Chapter]:
        c = t.memoir_chapters
        rows = await self.db.fetch_all(c.select().where(c.c.user_id == user_id).order_by(c.c.display_order))
        return [Chapter(**_row_dict(c, r)) for r in rows]

    async def create_chapter(self, user_id, title, slug, description=None, display_order=0, is_default=False) -> Chapter:
        values = {
            "id": new_id(),
            "user_id": user_id,
            "title": title,
            "slug": slug,
            "description": description,
            "display_order": display_order,
            "is_default": is_default,
        }
        await self.db.execute(t.memoir_chapters.insert().values(**values))
        return Chapter(**values)

    async def get_chapter(self, chapter_id: str, user_id: str) -> Optional[Chapter]:
        c = t.memoir_chapters
        row = await self.db.fetch_one(c.select().where(c.c.id == chapter_id).where(c.c.user_id == user_id))
        return Chapter(**_row_dict(c, row)) if row else None

    async def save_chapter_content(self, chapter_id: str, content: str, story_ids: List[str]) -> ChapterContent:
        cc = t.chapter_content
        async with self.db.transaction():
            latest = await self.db.fetch_one(
                sa.select(sa.func.max(cc.c.version).label("version")).where(cc.c.chapter_id == chapter_id)
            )
            version = (latest["version"] or 0) + 1 if latest else 1
            await self.db.execute(cc.update().where(cc.c.chapter_id == chapter_id).values(is_current=False))
            values = {
                "id": new_id(),
                "chapter_id": chapter_id,
                "content": content,
                "version": version,
                "word_count": len(content.split()),
                "story_ids_json": json.dumps(story_ids),
                "is_current": True,
                "generated_at": utcnow().isoformat(),
            }
            await self.db.execute(cc.insert().values(**values))
        return await self.get_current_chapter_content(chapter_id)

    async def get_current_chapter_content(self, chapter_id: str) -> Optional[ChapterContent]:
        cc = t.chapter_content
        row = await self.db.fetch_one(
            cc.select().where(cc.c.chapter_id == chapter_id).where(cc.c.is_current == sa.true())
        )
        return _chapter_content(row) if row else None

    # -- stories -------------------------------------------------------------

    def _active_stories(self, user_id: str):
        s = t.chapter_stories
        return s.select().where(s.c.user_id == user_id).where(s.c.is_active == sa.true())

    async def find_story_by_hash(self, user_id: str, content_hash: str) -> Optional[ChapterStory]:
        q = self._active_stories(user_id).where(t.chapter_stories.c.content_hash == content_hash)
        row = await self.db.fetch_one(q)
        return ChapterStory(**_row_dict(t.chapter_stories, row)) if row else None

    async def find_stories_by_title_words(self, user_id: str, words: List[str]) -> List[ChapterStory]:
        if not words:
            return []
        title = t.chapter_stories.c.title
        q = self._active_stories(user_id).where(title.isnot(None)).where(
            sa.or_(*[title.ilike(f"%{w}%") for w in words])
        )
        rows = await self.db.fetch_all(q)
        return [ChapterStory(**_row_dict(t.chapter_stories, r)) for r in rows]

    async def create_story(self, user_id, chapter_id, content, content_hash, source_type, source_id=None, title=None, summary=None, time_period=None) -> ChapterStory:
        values = {
            "id": new_id(),
            "user_id": user_id,
            "chapter_id": chapter_id,
            "content": content,
            "content_hash": content_hash,
            "source_type": _serialize(source_type),
            "source_id": source_id,
            "title": title,
            "summary": summary,
            "time_period": time_period,
            "is_active": True,
            "created_at": utcnow().isoformat(),
        }
        await self.db.execute(t.chapter_stories.insert().values(**values))
        return ChapterStory(**values)

    async def list_chapter_stories(self, chapter_id: str) -> List[ChapterStory]:
        s = t.chapter_stories
        q = (
            s.select()
            .where(s.c.chapter_id == chapter_id)
            .where(s.c.is_active == sa.true())
            .order_by(s.c.created_at)
        )
        return [ChapterStory(**_row_dict(s, r)) for r in await self.db.fetch_all(q)]
