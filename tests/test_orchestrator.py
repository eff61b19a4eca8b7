"""Tests for the conversation orchestrator state machine."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from memoir_voice.core import orchestrator as orch
from memoir_voice.errors import MemoirVoiceError
from memoir_voice.models.schemas import CallDirection, CallState, MessageRole


CALLER = "+15550001111"


# ============================================================================
# Inbound calls
# ============================================================================

async def test_unknown_caller_starts_onboarding(orchestrator, datastore, tts):
    result = await orchestrator.handle_inbound_call("CA1", CALLER)

    assert result.session.state == CallState.ONBOARDING
    assert result.session.user_id is None
    assert result.greeting == orch.GREETING_NEW_CALLER

    call = await datastore.get_call_by_sid("CA1")
    assert call is not None
    assert call.direction == CallDirection.INBOUND
    assert result.session.call_id == call.id

    tts.generate.assert_awaited_once_with(result.greeting, call.id, 0)
    messages = await datastore.get_messages(call.id)
    assert [(m.role, m.content) for m in messages] == [(MessageRole.ASSISTANT, result.greeting)]
    assert messages[0].audio_url == result.audio_url


async def test_known_caller_with_balance_is_active(orchestrator, datastore):
    user = datastore.seed_user(CALLER, preferred_name="Rose", balance_cents=250)

    result = await orchestrator.handle_inbound_call("CA1", CALLER)

    assert result.session.state == CallState.ACTIVE
    assert result.session.user_id == user.id
    assert result.session.preferred_name == "Rose"
    assert "Rose" in result.greeting
    assert (await datastore.get_call_by_sid("CA1")).user_id == user.id


async def test_known_caller_without_balance_is_rejected(orchestrator, datastore):
    datastore.seed_user(CALLER, preferred_name="Rose", balance_cents=0)

    result = await orchestrator.handle_inbound_call("CA1", CALLER)

    assert result.session.state == CallState.ENDING
    assert "out of credits" in result.greeting


async def test_known_caller_not_onboarded_repeats_onboarding(orchestrator, datastore):
    datastore.seed_user(CALLER, preferred_name=None, onboarding_completed=False)

    result = await orchestrator.handle_inbound_call("CA1", CALLER)

    assert result.session.state == CallState.ONBOARDING
    assert result.greeting == orch.GREETING_UNFINISHED_ONBOARDING


async def test_existing_call_row_is_reused(orchestrator, datastore):
    user = datastore.seed_user(CALLER)
    existing = await datastore.create_call("CA1", CALLER, CallDirection.OUTBOUND)

    result = await orchestrator.handle_inbound_call("CA1", CALLER, CallDirection.OUTBOUND)

    assert result.session.call_id == existing.id
    assert len(datastore.calls) == 1
    assert datastore.calls[existing.id].user_id == user.id


# ============================================================================
# Conversation turns
# ============================================================================

async def test_missing_session_asks_to_call_back(orchestrator):
    result = await orchestrator.handle_user_input("CA-unknown", "hello")
    assert result.response == orch.SESSION_LOST
    assert result.should_end is True


async def test_onboarding_creates_profile_from_name(orchestrator, datastore, sessions, llm):
    await orchestrator.handle_inbound_call("CA1", CALLER)
    llm.chat.return_value = '"Rose".'

    result = await orchestrator.handle_user_input("CA1", "My name is Rose")

    assert result.should_end is False
    assert "Rose" in result.response
    session = await sessions.get("CA1")
    assert session.state == CallState.ACTIVE
    assert session.preferred_name == "Rose"

    profile = await datastore.find_user_by_phone(CALLER)
    assert profile.preferred_name == "Rose"
    assert profile.onboarding_completed is True
    assert session.user_id == profile.id
    assert (await datastore.get_call_by_sid("CA1")).user_id == profile.id


async def test_onboarding_updates_existing_profile(orchestrator, datastore, sessions, llm):
    user = datastore.seed_user(CALLER, preferred_name=None, onboarding_completed=False)
    await orchestrator.handle_inbound_call("CA1", CALLER)
    llm.chat.return_value = "Walter"

    await orchestrator.handle_user_input("CA1", "Call me Walter")

    assert datastore.profiles[user.id].preferred_name == "Walter"
    assert datastore.profiles[user.id].onboarding_completed is True
    assert len(datastore.profiles) == 1
    assert (await sessions.get("CA1")).state == CallState.ACTIVE


async def test_onboarding_reprompts_when_no_name(orchestrator, sessions, llm):
    await orchestrator.handle_inbound_call("CA1", CALLER)
    llm.chat.return_value = "NONE"

    result = await orchestrator.handle_user_input("CA1", "what is this?")

    assert result.response == orch.NAME_REPROMPT
    assert result.should_end is False
    assert (await sessions.get("CA1")).state == CallState.ONBOARDING


async def test_onboarding_name_failure_reprompts(orchestrator, sessions, llm):
    await orchestrator.handle_inbound_call("CA1", CALLER)
    llm.chat.side_effect = RuntimeError("provider down")

    result = await orchestrator.handle_user_input("CA1", "I'm Rose")

    assert result.response == orch.NAME_REPROMPT
    assert (await sessions.get("CA1")).state == CallState.ONBOARDING


async def test_onboarding_without_llm_uses_rules(orchestrator, sessions, llm):
    llm.is_configured.return_value = False
    await orchestrator.handle_inbound_call("CA1", CALLER)

    await orchestrator.handle_user_input("CA1", "well my name is rose")

    assert (await sessions.get("CA1")).preferred_name == "Rose"
    llm.chat.assert_not_awaited()


@pytest.mark.parametrize(
    "speech, expected",
    [
        ("well my name is rose", "Rose"),
        ("Margaret.", "Margaret"),
        ("call me bea", "Bea"),
        ("Hello there", None),
        ("hello", None),
        ("I'm fine thanks", None),
        ("we used to live by the river", None),
    ],
)
def test_guess_name(speech, expected):
    assert orch.guess_name(speech) == expected


async def test_onboarding_without_llm_reprompts_on_greeting(orchestrator, sessions, llm):
    llm.is_configured.return_value = False
    await orchestrator.handle_inbound_call("CA1", CALLER)

    result = await orchestrator.handle_user_input("CA1", "Hello there")

    assert result.response == orch.NAME_REPROMPT
    session = await sessions.get("CA1")
    assert session.state == CallState.ONBOARDING
    assert session.preferred_name is None


async def test_active_goodbye_ends_call(orchestrator, datastore, sessions):
    datastore.seed_user(CALLER, preferred_name="Rose")
    await orchestrator.handle_inbound_call("CA1", CALLER)

    result = await orchestrator.handle_user_input("CA1", "OK, Goodbye for now")

    assert result.should_end is True
    assert result.response.startswith("Goodbye, Rose")
    assert (await sessions.get("CA1")).state == CallState.ENDING


async def test_active_reply_uses_history_and_memories(orchestrator, datastore, llm):
    user = datastore.seed_user(CALLER, preferred_name="Rose")
    await datastore.create_memory(user.id, "Grew up on a farm in Iowa", "fact", importance_score=0.9,
                                  embedding=[1.0, 0.0])
    await datastore.create_memory(user.id, "Dislikes winter", "preference", embedding=[0.0, 1.0])
    llm.embed.return_value = [0.9, 0.1]
    llm.chat.return_value = "Tell me more about the farm."
    await orchestrator.handle_inbound_call("CA1", CALLER)

    result = await orchestrator.handle_user_input("CA1", "I was thinking about the old barn")

    assert result.response == "Tell me more about the farm."
    assert result.should_end is False
    messages = llm.chat.await_args.args[0]
    assert messages[0]["role"] == "system"
    assert "Grew up on a farm in Iowa" in messages[0]["content"]
    assert "Dislikes winter" not in messages[0]["content"]
    assert messages[-1] == {"role": "user", "content": "I was thinking about the old barn"}
    assert llm.chat.await_args.kwargs["max_tokens"] == 300


async def test_active_reply_without_embedding_uses_top_memories(orchestrator, datastore, llm):
    user = datastore.seed_user(CALLER, preferred_name="Rose")
    await datastore.create_memory(user.id, "Has three grandchildren", "relationship", importance_score=0.8)
    await orchestrator.handle_inbound_call("CA1", CALLER)

    await orchestrator.handle_user_input("CA1", "hello again")

    assert "Has three grandchildren" in llm.chat.await_args.args[0][0]["content"]


async def test_history_is_limited_to_last_ten_messages(orchestrator, datastore, llm):
    datastore.seed_user(CALLER)
    await orchestrator.handle_inbound_call("CA1", CALLER)
    for i in range(8):
        await orchestrator.handle_user_input("CA1", f"utterance {i}")

    history = llm.chat.await_args.args[0][1:]
    assert len(history) == 10
    assert history[-1]["content"] == "utterance 7"


async def test_empty_llm_reply_falls_back(orchestrator, datastore, llm):
    datastore.seed_user(CALLER)
    await orchestrator.handle_inbound_call("CA1", CALLER)
    llm.chat.return_value = None

    result = await orchestrator.handle_user_input("CA1", "hmm")

    assert result.response == orch.NOT_UNDERSTOOD
    assert result.should_end is False


async def test_ending_state_says_farewell(orchestrator, datastore):
    datastore.seed_user(CALLER, balance_cents=0)
    await orchestrator.handle_inbound_call("CA1", CALLER)

    result = await orchestrator.handle_user_input("CA1", "wait, what?")

    assert result.response == orch.FAREWELL_ENDING
    assert result.should_end is True


async def test_identifying_state_apologises_and_ends(orchestrator, sessions):
    await sessions.create("CA1", CALLER, "call-1", state=CallState.IDENTIFYING)

    result = await orchestrator.handle_user_input("CA1", "hello?")

    assert result.response == orch.UNKNOWN_STATE
    assert result.should_end is True


async def test_downstream_failure_is_swallowed(orchestrator, datastore, llm, tts):
    datastore.seed_user(CALLER)
    start = await orchestrator.handle_inbound_call("CA1", CALLER)
    llm.chat.side_effect = RuntimeError("timeout")

    result = await orchestrator.handle_user_input("CA1", "tell me something")

    call_id = start.session.call_id
    assert result.response == orch.DIDNT_CATCH
    assert result.should_end is False
    assert result.audio_url.endswith(f"{call_id}_1.mp3")
    assert tts.generate.await_args.args == (orch.DIDNT_CATCH, call_id, 1)
    messages = await datastore.get_messages(call_id)
    assert [(m.role, m.content) for m in messages[1:]] == [
        (MessageRole.USER, "tell me something"),
        (MessageRole.ASSISTANT, orch.DIDNT_CATCH),
    ]


async def test_fallback_reply_survives_synthesis_failure(orchestrator, datastore, llm, tts):
    datastore.seed_user(CALLER)
    start = await orchestrator.handle_inbound_call("CA1", CALLER)
    llm.chat.side_effect = RuntimeError("timeout")
    tts.generate.side_effect = RuntimeError("tts down")

    result = await orchestrator.handle_user_input("CA1", "tell me something")

    assert result.response == orch.DIDNT_CATCH
    assert result.audio_url is None
    messages = await datastore.get_messages(start.session.call_id)
    assert messages[-1].role == MessageRole.ASSISTANT
    assert messages[-1].audio_url is None


async def test_turns_are_stored_and_synthesized_in_order(orchestrator, datastore, tts):
    datastore.seed_user(CALLER)
    start = await orchestrator.handle_inbound_call("CA1", CALLER)

    first = await orchestrator.handle_user_input("CA1", "first")
    await orchestrator.handle_user_input("CA1", "second")

    call_id = start.session.call_id
    assert [c.args[2] for c in tts.generate.await_args_list] == [0, 1, 2]
    assert first.audio_url.endswith(f"{call_id}_1.mp3")
    roles = [m.role for m in await datastore.get_messages(call_id)]
    assert roles == [
        MessageRole.ASSISTANT, MessageRole.USER, MessageRole.ASSISTANT, MessageRole.USER, MessageRole.ASSISTANT,
    ]


# ============================================================================
# Call end
# ============================================================================

async def test_call_end_is_idempotent(orchestrator, datastore, sessions, jobs):
    user = datastore.seed_user(CALLER)
    start = await orchestrator.handle_inbound_call("CA1", CALLER)
    call_id = start.session.call_id

    assert await orchestrator.handle_call_end("CA1", 75) is True
    assert await orchestrator.handle_call_end("CA1", 75) is False

    assert await sessions.get("CA1") is None
    cost_job = jobs.get(f"calculate-call-cost:{call_id}")
    extract_job = jobs.get(f"extract-memories:{call_id}")
    assert cost_job.payload == {"callId": call_id, "durationSeconds": 75}
    assert extract_job.payload == {"callId": call_id, "userId": user.id}
    assert (await jobs.get_stats())["waiting"] == 2


async def test_concurrent_call_end_fans_out_once(orchestrator, datastore, jobs):
    datastore.seed_user(CALLER)
    await orchestrator.handle_inbound_call("CA1", CALLER)

    results = await asyncio.gather(
        orchestrator.handle_call_end("CA1", 30),
        orchestrator.handle_call_end("CA1", 30),
    )

    assert sorted(results) == [False, True]
    assert (await jobs.get_stats())["waiting"] == 2


async def test_call_end_without_user_only_bills(orchestrator, jobs):
    start = await orchestrator.handle_inbound_call("CA1", CALLER)

    assert await orchestrator.handle_call_end("CA1") is True

    call_id = start.session.call_id
    assert jobs.get(f"calculate-call-cost:{call_id}") is not None
    assert jobs.get(f"extract-memories:{call_id}") is None


async def test_call_end_without_session_is_noop(orchestrator, jobs):
    assert await orchestrator.handle_call_end("CA-missing", 10) is False
    assert (await jobs.get_stats())["waiting"] == 0


# ============================================================================
# Outbound
# ============================================================================

async def test_outbound_call_requires_telephony(orchestrator):
    with pytest.raises(MemoirVoiceError):
        await orchestrator.initiate_outbound_call("u1", "+15550002222")


async def test_outbound_call_creates_call_row(orchestrator, datastore):
    telephony = MagicMock()
    telephony.is_configured.return_value = True
    telephony.place_call = AsyncMock(return_value="CA-out")
    orchestrator.telephony = telephony

    call = await orchestrator.initiate_outbound_call("u1", "+15550002222")

    telephony.place_call.assert_awaited_once_with("+15550002222")
    assert call.call_sid == "CA-out"
    assert call.direction == CallDirection.OUTBOUND
    assert call.user_id == "u1"
    assert call.status == "initiated"


# ============================================================================
# End-to-end
# ============================================================================

def _scripted_json(messages, **kwargs):
    prompt = messages[0]["content"]
    if "ALREADY KNOWN" in prompt:
        return {"memories": [
            {"content": "Name is Rose", "category": "fact", "importance": 0.9},
            {"content": "First car was a red 1965 Mustang", "category": "fact", "importance": 1.7,
             "time_period": "1960s"},
        ]}
    if "AVAILABLE CHAPTERS" in prompt:
        return {"chapter_slug": "young-adult", "time_period": "1960s"}
    return {"stories": [
        {"title": "My First Car", "content": "I bought a red Mustang in 1965 with my own savings.",
         "summary": "Buying the Mustang", "time_period": "1960s"},
    ]}


async def test_first_call_end_to_end(services, datastore, llm, jobs, clock):
    """Unknown caller onboards, tells a story, hangs up; jobs bill the call and build the memoir."""
    orchestrator = services.orchestrator
    llm.chat_json.side_effect = _scripted_json
    llm.embed.return_value = [0.1, 0.2, 0.3]

    start = await orchestrator.handle_inbound_call("CA1", CALLER)
    assert start.session.state == CallState.ONBOARDING

    llm.chat.return_value = "Rose"
    await orchestrator.handle_user_input("CA1", "My name is Rose")
    llm.chat.return_value = "A Mustang! What a car. Where did you drive it?"
    await orchestrator.handle_user_input("CA1", "I bought a red Mustang in 1965")
    bye = await orchestrator.handle_user_input("CA1", "Alright, bye")
    assert bye.should_end is True

    # the status callback arrives first; the voice-AI provider might repeat it
    datastore.balances[(await datastore.find_user_by_phone(CALLER)).id] = 100
    assert await orchestrator.handle_call_end("CA1", 95) is True
    assert await orchestrator.handle_call_end("CA1", 95) is False

    assert await jobs.run_due() == 2

    call = await datastore.get_call(start.session.call_id)
    assert call.cost_cents == 20
    assert call.billed_at is not None
    assert call.memories_extracted_at is not None
    user_id = call.user_id
    assert datastore.balances[user_id] == 80

    memories = await datastore.list_memories(user_id)
    assert {m.content for m in memories} == {"Name is Rose", "First car was a red 1965 Mustang"}
    assert all(m.embedding == [0.1, 0.2, 0.3] for m in memories)
    assert max(m.importance_score for m in memories) == 1.0

    stories = list(datastore.stories.values())
    assert len(stories) == 1
    assert stories[0].source_id == call.id
    chapter = datastore.chapters[stories[0].chapter_id]
    assert chapter.slug == "young-adult"

    # the chapter rebuild is debounced by 3 seconds
    assert await jobs.run_due() == 0
    clock.advance(3)
    assert await jobs.run_due() == 1
    content = await datastore.get_current_chapter_content(chapter.id)
    assert content.version == 1
    assert content.story_ids == [stories[0].id]
