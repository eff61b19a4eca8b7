# memoir_voice/core/stories.py
"""
Story deduplication and chapter assignment.

A story is rejected when
 - an active story of the same user has the same content hash (SHA-256 of the
   lowercased, whitespace-collapsed first 500 characters), or
 - its title (longer than 5 characters) shares at least two of its three longest
   significant words with an existing active title.
Accepted stories are inserted and the chapter's narrative is scheduled for a
debounced rebuild.
"""
import hashlib
import logging
import re
import time
from typing import List, Optional

from memoir_voice.models.schemas import JobName, StoryResult, StorySource
from memoir_voice.storage.datastore import DataStore

logger = logging.getLogger("memoir-voice.core.stories")

HASH_PREFIX_CHARS = 500
TITLE_MIN_LENGTH = 5
MIN_WORD_LENGTH = 3
TITLE_KEY_WORDS = 3
TITLE_MATCH_THRESHOLD = 2
REGENERATE_DELAY_MS = 3000

_WORD_RE = re.compile(r"[a-z0-9']+")


def normalize_content(content: str) -> str:
    return " ".join(content.lower().split())[:HASH_PREFIX_CHARS]


def content_hash(content: str) -> str:
    return hashlib.sha256(normalize_content(content).encode("utf-8")).hexdigest()


def _words(title: str) -> List[str]:
    seen: List[str] = []
    for word in _WORD_RE.findall(title.lower()):
        if len(word) >= MIN_WORD_LENGTH and word not in seen:
            seen.append(word)
    return seen


def significant_title_words(title: str, limit: int = TITLE_KEY_WORDS) -> List[str]:
    """The `limit` longest distinct words of a title (ties keep title order)."""
    return sorted(_words(title), key=len, reverse=True)[:limit]


def shared_word_count(words: List[str], other_title: str) -> int:
    other = _words(other_title)
    return sum(1 for w in words if any(w in o or o in w for o in other))


class StoryService:
    def __init__(self, datastore: DataStore, memoir, jobs):
        self.datastore = datastore
        self.memoir = memoir
        self.jobs = jobs

    async def add_story(
        self,
        user_id: str,
        content: str,
        title: Optional[str] = None,
        summary: Optional[str] = None,
        time_period: Optional[str] = None,
        chapter_id: Optional[str] = None,
        source_type: StorySource = StorySource.MANUAL,
        source_id: Optional[str] = None,
    ) -> StoryResult:
        content = (content or "").strip()
        if not content:
            return StoryResult(accepted=False, reason="Story content is empty")

        digest = content_hash(content)
        existing = await self.datastore.find_story_by_hash(user_id, digest)
        if existing:
            logger.info("Rejected story for user %s: content hash matches story %s", user_id, existing.id)
            return StoryResult(
                accepted=False,
                reason=f"Duplicate story: content hash matches existing story {existing.id}",
            )

        title = title.strip() if title else None
        if title and len(title) > TITLE_MIN_LENGTH:
            words = significant_title_words(title)
            for candidate in await self.datastore.find_stories_by_title_words(user_id, words):
                if candidate.title and shared_word_count(words, candidate.title) >= TITLE_MATCH_THRESHOLD:
                    logger.info("Rejected story %r for user %s: similar to %r", title, user_id, candidate.title)
                    return StoryResult(
                        accepted=False,
                        reason=f"Likely duplicate of existing story titled {candidate.title!r}",
                    )

        if chapter_id:
            if await self.datastore.get_chapter(chapter_id, user_id) is None:
                return StoryResult(accepted=False, reason=f"Chapter {chapter_id} not found")
        else:
            chapter_id, time_period = await self.memoir.assign_chapter(user_id, content, time_period)
            if not chapter_id:
                return StoryResult(accepted=False, reason="No chapter available for story")

        story = await self.datastore.create_story(
            user_id,
            chapter_id,
            content,
            digest,
            source_type,
            source_id=source_id,
            title=title,
            summary=summary,
            time_period=time_period,
        )
        logger.info("Added story %s to chapter %s for user %s", story.id, chapter_id, user_id)

        await self.jobs.add_debounced_job(
            JobName.REGENERATE_CHAPTER.value,
            {"userId": user_id, "chapterId": chapter_id, "timestamp": int(time.time() * 1000)},
            job_id=f"{JobName.REGENERATE_CHAPTER.value}:{chapter_id}",
            delay_ms=REGENERATE_DELAY_MS,
        )
        return StoryResult(accepted=True, story=story)
