# memoir_voice/core/memoir.py
"""
Memoir chapters: default chapter set, chapter assignment for new stories and
narrative generation from a chapter's stories.
"""
import logging
from typing import List, Optional, Tuple

from memoir_voice.models.schemas import Chapter, ChapterContent
from memoir_voice.storage.datastore import DataStore

logger = logging.getLogger("memoir-voice.core.memoir")

DEFAULT_CHAPTERS = [
    ("early-years", "Early Years", "Birth, earliest memories and childhood at home"),
    ("growing-up", "Growing Up", "School days, friendships and the teenage years"),
    ("young-adult", "Young Adult", "College, first jobs and striking out on your own"),
    ("building-a-life", "Building a Life", "Career, marriage, homes and the work of adulthood"),
    ("family", "Family", "Parents, siblings, partners, children and the people closest to you"),
    ("reflections", "Reflections", "Lessons learned, wisdom and looking back"),
]

KEYWORD_PATTERNS = {
    "early-years": ["born", "childhood", "baby", "toddler", "kindergarten", "young child"],
    "growing-up": ["school", "high school", "teenager", "teen", "adolescent", "graduation"],
    "young-adult": ["college", "university", "first job", "moved out", "20s", "twenties"],
    "building-a-life": ["married", "career", "house", "promoted", "business"],
    "family": [
        "mother", "father", "mom", "dad", "brother", "sister", "grandpa", "grandma",
        "family", "children", "kids", "spouse", "wife", "husband",
    ],
    "reflections": ["learned", "realized", "wisdom", "advice", "regret", "proud", "grateful", "lesson"],
}

ASSIGN_PROMPT = """Given this memory or story from someone's life, decide which chapter it belongs to and pull out any time reference.

STORY: "{content}"

AVAILABLE CHAPTERS:
{chapters}

Return JSON: {{"chapter_slug": "<slug of the best chapter>", "time_period": "<time reference such as '1960s' or 'college years', or null>"}}
Family and relationship stories go to "family"; lessons and wisdom go to "reflections"."""

NARRATIVE_PROMPT = """You are helping {name} write their memoir.

CHAPTER: "{title}"
{theme}
STORIES:
{stories}

Weave these stories into a flowing first-person narrative of 2-4 paragraphs. Stay true to what was shared and do not invent events."""


class MemoirService:
    def __init__(self, datastore: DataStore, llm):
        self.datastore = datastore
        self.llm = llm

    async def get_or_create_chapters(self, user_id: str) -> List[Chapter]:
        chapters = await self.datastore.list_chapters(user_id)
        if chapters:
            return chapters
        logger.info("Creating default chapters for user %s", user_id)
        for order, (slug, title, description) in enumerate(DEFAULT_CHAPTERS):
            await self.datastore.create_chapter(
                user_id, title, slug, description=description, display_order=order, is_default=True
            )
        return await self.datastore.list_chapters(user_id)

    async def assign_chapter(
        self, user_id: str, content: str, time_period: Optional[str] = None
    ) -> Tuple[Optional[str], Optional[str]]:
        """Pick a chapter for `content`. Returns (chapter_id, time_period)."""
        chapters = await self.get_or_create_chapters(user_id)
        if not chapters:
            return None, time_period

        if self.llm.is_configured():
            listing = "\n".join(f'- "{c.title}" ({c.slug}): {c.description or "General stories"}' for c in chapters)
            try:
                parsed = await self.llm.chat_json(
                    [{"role": "user", "content": ASSIGN_PROMPT.format(content=content, chapters=listing)}],
                    max_tokens=200,
                    temperature=0.3,
                )
            except Exception as exc:
                logger.exception("Chapter assignment via LLM failed, using keywords: %s", exc)
                parsed = None
            if parsed:
                by_slug = {c.slug: c for c in chapters}
                matched = by_slug.get(parsed.get("chapter_slug") or "")
                if matched:
                    return matched.id, parsed.get("time_period") or time_period

        return self._assign_by_keywords(chapters, content), time_period

    @staticmethod
    def _assign_by_keywords(chapters: List[Chapter], content: str) -> str:
        lowered = content.lower()
        by_slug = {c.slug: c for c in chapters}
        for slug, keywords in KEYWORD_PATTERNS.items():
            if slug in by_slug and any(kw in lowered for kw in keywords):
                return by_slug[slug].id
        return chapters[0].id

    async def generate_chapter_narrative(self, user_id: str, chapter_id: str) -> Optional[ChapterContent]:
        chapter = await self.datastore.get_chapter(chapter_id, user_id)
        if chapter is None:
            logger.warning("Chapter %s not found for user %s", chapter_id, user_id)
            return None

        stories = await self.datastore.list_chapter_stories(chapter_id)
        if not stories:
            logger.info("No stories for chapter %s; nothing to generate", chapter.title)
            return None

        if self.llm.is_configured():
            profile = await self.datastore.get_profile(user_id)
            name = profile.preferred_name or profile.full_name if profile else None
            listing = "\n".join(
                f"{i}. {s.content}" + (f" ({s.time_period})" if s.time_period else "")
                for i, s in enumerate(stories, start=1)
            )
            narrative = await self.llm.chat(
                [
                    {
                        "role": "user",
                        "content": NARRATIVE_PROMPT.format(
                            name=name or "the storyteller",
                            title=chapter.title,
                            theme=f"THEME: {chapter.description}\n" if chapter.description else "",
                            stories=listing,
                        ),
                    }
                ],
                max_tokens=1500,
                temperature=0.7,
            )
        else:
            narrative = "\n\n".join(s.content for s in stories)

        if not narrative:
            logger.warning("Empty narrative for chapter %s", chapter_id)
            return None

        content = await self.datastore.save_chapter_content(chapter_id, narrative, [s.id for s in stories])
        logger.info("Generated narrative for chapter %r (v%s)", chapter.title, content.version)
        return content
