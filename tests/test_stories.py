"""Tests for story deduplication and chapter assignment."""

import pytest

from memoir_voice.core.stories import (
    content_hash,
    normalize_content,
    shared_word_count,
    significant_title_words,
)
from memoir_voice.models.schemas import StorySource


CALLER = "+15550001111"


@pytest.fixture
def stories(services):
    return services.stories


@pytest.fixture
def user(datastore):
    return datastore.seed_user(CALLER)


# ============================================================================
# Helpers
# ============================================================================

def test_hash_ignores_case_and_whitespace():
    assert content_hash("I  grew up\non a FARM.") == content_hash("i grew up on a farm.")
    assert content_hash("I grew up on a farm.") != content_hash("I grew up on a ranch.")


def test_hash_only_covers_the_first_500_characters():
    prefix = "a" * 500
    assert content_hash(prefix + " ending one") == content_hash(prefix + " ending two")
    assert len(normalize_content("x" * 900)) == 500


def test_significant_title_words():
    assert significant_title_words("The Summer We Moved to Ohio") == ["summer", "moved", "ohio"]
    assert significant_title_words("My First Car") == ["first", "car"]
    assert significant_title_words("A Day, a Day") == ["day"]


def test_shared_word_count_uses_containment():
    assert shared_word_count(["first", "car"], "My Old First Car") == 2
    assert shared_word_count(["cars", "racing"], "Car Shows") == 1
    assert shared_word_count(["first"], "Wedding Day") == 0


# ============================================================================
# StoryService.add_story
# ============================================================================

async def test_story_is_added_to_keyword_chapter(stories, datastore, jobs, user):
    result = await stories.add_story(
        user.id, "I started college in Boston and hated the winters.", title="College in Boston",
        source_type=StorySource.CALL, source_id="call-1",
    )

    assert result.accepted is True
    story = result.story
    assert datastore.chapters[story.chapter_id].slug == "young-adult"
    assert story.title == "College in Boston"
    assert story.source_type == StorySource.CALL
    assert story.source_id == "call-1"
    assert story.content_hash == content_hash(story.content)

    job = jobs.get(f"regenerate-chapter:{story.chapter_id}")
    assert job.state == "delayed"
    assert job.payload["userId"] == user.id
    assert job.payload["chapterId"] == story.chapter_id
    assert isinstance(job.payload["timestamp"], int)


async def test_empty_story_is_rejected(stories, datastore, user):
    result = await stories.add_story(user.id, "   ")
    assert result.accepted is False
    assert datastore.stories == {}


async def test_same_content_is_rejected(stories, user):
    first = await stories.add_story(user.id, "We drove to the coast every August.")
    second = await stories.add_story(user.id, "We  drove to the COAST every August.", title="Coast trips")

    assert first.accepted is True
    assert second.accepted is False
    assert first.story.id in second.reason


async def test_similar_title_is_rejected(stories, user):
    await stories.add_story(user.id, "A green Beetle with no heater.", title="My First Car")

    result = await stories.add_story(user.id, "It was a rusty old Beetle.", title="My Old First Car")

    assert result.accepted is False
    assert "My First Car" in result.reason


async def test_one_shared_title_word_is_allowed(stories, user):
    await stories.add_story(user.id, "A green Beetle with no heater.", title="My First Car")

    result = await stories.add_story(user.id, "Mrs. Hale's classroom smelled of chalk.", title="First Day of School")

    assert result.accepted is True


async def test_short_titles_are_not_compared(stories, user):
    await stories.add_story(user.id, "The lake froze solid that year.", title="Ohio")
    result = await stories.add_story(user.id, "We left for Texas in the spring.", title="Ohio")
    assert result.accepted is True


async def test_other_users_stories_do_not_collide(stories, datastore, user):
    other = datastore.seed_user("+15550009999")
    await stories.add_story(user.id, "We drove to the coast every August.", title="Summers on the Coast")

    result = await stories.add_story(other.id, "We drove to the coast every August.", title="Summers on the Coast")

    assert result.accepted is True


async def test_inactive_stories_are_ignored(stories, datastore, user):
    first = await stories.add_story(user.id, "We drove to the coast every August.")
    datastore.stories[first.story.id] = first.story.model_copy(update={"is_active": False})

    result = await stories.add_story(user.id, "We drove to the coast every August.")

    assert result.accepted is True


async def test_explicit_chapter_is_used(stories, services, datastore, llm, user):
    chapters = await services.memoir.get_or_create_chapters(user.id)
    reflections = next(c for c in chapters if c.slug == "reflections")

    result = await stories.add_story(user.id, "My first day at college.", chapter_id=reflections.id)

    assert result.story.chapter_id == reflections.id
    llm.chat_json.assert_not_awaited()


async def test_unknown_chapter_is_rejected(stories, user):
    result = await stories.add_story(user.id, "A story.", chapter_id="missing")
    assert result.accepted is False
    assert "not found" in result.reason


async def test_llm_assigned_time_period_is_stored(stories, llm, datastore, user):
    llm.chat_json.return_value = {"chapter_slug": "building-a-life", "time_period": "1980s"}

    result = await stories.add_story(user.id, "We bought the house on Elm Street.")

    assert datastore.chapters[result.story.chapter_id].slug == "building-a-life"
    assert result.story.time_period == "1980s"


async def test_chapter_rebuild_is_debounced(stories, jobs, clock, user):
    first = await stories.add_story(user.id, "My mother sang while she cooked.")
    clock.advance(2)
    second = await stories.add_story(user.id, "My father fixed radios for the neighbours.")

    assert first.story.chapter_id == second.story.chapter_id
    assert (await jobs.get_stats())["delayed"] == 1

    clock.advance(2)
    assert await jobs.run_due() == 0
    clock.advance(1)
    assert await jobs.run_due() == 1
