# memoir_voice/core/memory_extraction.py
"""
Memory extraction pipeline, run by the `extract-memories` job after a call ends.

Steps for one call:
 1. skip calls already processed (`memories_extracted_at`) or with < 2 messages
 2. ask the LLM for new memories, given what is already known about the user
 3. store each memory with its embedding
 4. ask the LLM for memoir-worthy stories and submit them through StoryService
 5. mark the call as processed

LLM transport errors propagate so the job is retried; unparsable output just yields
nothing for that step.
"""
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from memoir_voice.models.schemas import (
    ConversationMessage,
    ExtractedMemory,
    ExtractedStory,
    Memory,
    MemoryCategory,
    MessageRole,
    StorySource,
)
from memoir_voice.storage.datastore import DataStore, utcnow

logger = logging.getLogger("memoir-voice.core.memory_extraction")

TEXT_CHAT_CALLER = "text_chat"
KNOWN_MEMORIES_LIMIT = 100
DEFAULT_IMPORTANCE = 0.5

MEMORY_PROMPT = """You extract lasting facts about a person from a conversation with their AI companion.

ALREADY KNOWN (do not repeat these):
{known}

CONVERSATION:
{transcript}

Return JSON: {{"memories": [{{"content": "...", "category": "preference|fact|task|reminder|relationship|other", "importance": 0.0-1.0, "time_period": "... or null"}}]}}
Only include information the user stated about themselves. Return {{"memories": []}} if there is nothing new."""

STORY_PROMPT = """Find the personal stories in this conversation that belong in the speaker's memoir.

CONVERSATION:
{transcript}

Return JSON: {{"stories": [{{"title": "short title", "content": "the story retold in first person", "summary": "one sentence", "time_period": "... or null"}}]}}
Return {{"stories": []}} if the user did not tell any stories."""


def format_transcript(messages: List[ConversationMessage]) -> str:
    lines = []
    for m in messages:
        speaker = "User" if m.role == MessageRole.USER else "AI"
        lines.append(f"{speaker}: {m.content}")
    return "\n".join(lines)


def parse_memories(data: Optional[Dict[str, Any]]) -> List[ExtractedMemory]:
    """Validate LLM output; invalid categories become `other`, importance is clamped to [0, 1]."""
    items = (data or {}).get("memories")
    if not isinstance(items, list):
        return []
    valid_categories = {c.value for c in MemoryCategory}
    result = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            memory = ExtractedMemory.model_validate(item)
        except ValidationError:
            logger.debug("Skipping malformed memory item: %s", item)
            continue
        if not memory.content.strip():
            continue
        category = (memory.category or "").lower()
        importance = DEFAULT_IMPORTANCE if memory.importance is None else memory.importance
        result.append(
            memory.model_copy(
                update={
                    "content": memory.content.strip(),
                    "category": category if category in valid_categories else MemoryCategory.OTHER.value,
                    "importance": min(max(importance, 0.0), 1.0),
                }
            )
        )
    return result


def parse_stories(data: Optional[Dict[str, Any]]) -> List[ExtractedStory]:
    items = (data or {}).get("stories")
    if not isinstance(items, list):
        return []
    result = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            story = ExtractedStory.model_validate(item)
        except ValidationError:
            logger.debug("Skipping malformed story item: %s", item)
            continue
        if story.content.strip():
            result.append(story)
    return result


class MemoryExtractor:
    def __init__(self, datastore: DataStore, llm, stories):
        self.datastore = datastore
        self.llm = llm
        self.stories = stories

    async def extract_from_call(self, call_id: str, user_id: str) -> List[Memory]:
        call = await self.datastore.get_call(call_id)
        if call is None:
            logger.warning("extract_from_call: call %s not found", call_id)
            return []
        if call.memories_extracted_at is not None:
            logger.info("Memories for call %s already extracted at %s", call_id, call.memories_extracted_at)
            return []

        messages = await self.datastore.get_messages(call_id)
        if len(messages) < 2:
            logger.info("Call %s has %d messages; nothing to extract", call_id, len(messages))
            return []

        dialogue = [m for m in messages if m.role in (MessageRole.USER, MessageRole.ASSISTANT)]
        transcript = format_transcript(dialogue)
        known = await self.datastore.list_memories(user_id, limit=KNOWN_MEMORIES_LIMIT)

        memories = await self._store_memories(call_id, user_id, transcript, known)

        source = StorySource.CHAT if call.caller_phone == TEXT_CHAT_CALLER else StorySource.CALL
        accepted = 0
        for story in await self._extract_stories(transcript):
            result = await self.stories.add_story(
                user_id,
                story.content,
                title=story.title,
                summary=story.summary,
                time_period=story.time_period,
                source_type=source,
                source_id=call_id,
            )
            if result.accepted:
                accepted += 1
            else:
                logger.debug("Story from call %s not added: %s", call_id, result.reason)

        await self.datastore.update_call(call_id, memories_extracted_at=utcnow())
        logger.info("Call %s: stored %d memories and %d stories", call_id, len(memories), accepted)
        return memories

    async def _store_memories(self, call_id: str, user_id: str, transcript: str, known: List[Memory]) -> List[Memory]:
        known_text = "\n".join(f"- {m.content}" for m in known) or "(nothing yet)"
        data = await self.llm.chat_json(
            [{"role": "user", "content": MEMORY_PROMPT.format(known=known_text, transcript=transcript)}],
            max_tokens=1000,
            temperature=0.2,
        )
        # a retried job must not store the same memory twice
        seen = {m.content.strip().lower() for m in known}
        stored = []
        for item in parse_memories(data):
            if item.content.lower() in seen:
                continue
            seen.add(item.content.lower())
            embedding = await self.llm.embed(item.content)
            stored.append(
                await self.datastore.create_memory(
                    user_id,
                    item.content,
                    MemoryCategory(item.category),
                    importance_score=item.importance,
                    call_id=call_id,
                    time_period=item.time_period,
                    embedding=embedding,
                )
            )
        return stored

    async def _extract_stories(self, transcript: str) -> List[ExtractedStory]:
        data = await self.llm.chat_json(
            [{"role": "user", "content": STORY_PROMPT.format(transcript=transcript)}],
            max_tokens=1500,
            temperature=0.3,
        )
        return parse_stories(data)
