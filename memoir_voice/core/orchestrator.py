# memoir_voice/core/orchestrator.py
"""
Conversation orchestrator: the per-call state machine behind the telephony webhooks.

    identifying -> onboarding -> active -> ending

Entry points:
 - handle_inbound_call(call_sid, caller_phone, direction): identify the caller,
   open the session and produce the greeting
 - handle_user_input(call_sid, speech_text): one conversational turn; never raises
 - handle_call_end(call_sid, duration_seconds): close the session once and fan out
   the post-call jobs
 - enqueue_post_call_jobs(call_id, user_id, duration_seconds): the same fan-out for
   calls that never had a telephony session
 - initiate_outbound_call(user_id, phone_number)

Every spoken reply is synthesized (TTS) and stored as an assistant message.
"""
import logging
import re
from typing import Dict, List, Optional, Tuple

from memoir_voice.errors import CallRecordError, MemoirVoiceError
from memoir_voice.models.schemas import (
    Call,
    CallDirection,
    CallSession,
    CallState,
    InboundCallResult,
    JobName,
    Memory,
    MessageRole,
    UserInputResult,
)
from memoir_voice.state.session_store import SessionStore
from memoir_voice.storage.datastore import DataStore, now_ms

logger = logging.getLogger("memoir-voice.core.orchestrator")

GREETING_NEW_CALLER = (
    "Hi there! Welcome to Memoir, your personal storytelling companion. "
    "I don't recognize your number yet. What's your name? I'd love to know what to call you."
)
GREETING_UNFINISHED_ONBOARDING = (
    "Welcome back! I have your number saved, but we haven't finished setting things up. "
    "What would you like me to call you?"
)
GREETING_OUT_OF_CREDIT = (
    "Hi {name}! I'm sorry, but you're out of credits. "
    "Please add more balance on our website to keep talking. Have a great day!"
)
GREETING_ACTIVE = "Hey {name}! Great to hear from you. What's on your mind today?"

NAME_REPROMPT = "I didn't quite catch your name. Could you tell me again what you'd like me to call you?"
NAME_CONFIRMED = (
    "Great to meet you, {name}! I'm here to listen to your stories and remember what matters to you. "
    "What would you like to talk about?"
)
FAREWELL_ACTIVE = "Goodbye{name_suffix}! It was great talking with you. Talk soon!"
FAREWELL_ENDING = "Goodbye! Talk to you soon."
SESSION_LOST = "I'm sorry, there was an error. Please call back."
UNKNOWN_STATE = "I'm sorry, something went wrong on my end. Please call back."
NOT_UNDERSTOOD = "I'm sorry, I didn't quite understand. Could you repeat that?"
DIDNT_CATCH = "I'm sorry, I didn't catch that. Could you say that again?"

GOODBYE_PHRASES = ("goodbye", "bye", "hang up", "end call")

HISTORY_WINDOW = 10
LAST_MESSAGE_KEY = "last_message_ms"
MEMORY_CONTEXT_LIMIT = 5
MEMORY_MATCH_THRESHOLD = 0.7

NAME_PROMPT = """Extract the person's name from this speech. If they say something like "My name is John" or "Call me Sarah" or "I'm Mike", extract just the name. If no clear name is given, respond with "NONE".

Speech: "{speech}"

Respond with just the name or "NONE"."""

SYSTEM_PROMPT = """You are a warm, patient companion talking with {name} on the phone. You help them remember and tell the stories of their life.
Keep replies short and conversational (two or three sentences), ask one gentle follow-up question at a time, and never use lists or markdown.
{memories}"""

_NAME_QUOTES = "'\"‘’“”"
_NAME_PATTERN = re.compile(r"\b(?:my name is|call me|i'm|i am|it's|this is)\s+([a-z][a-z\-]*)", re.IGNORECASE)
_NOT_NAMES = {
    "hello", "hi", "hey", "yes", "yeah", "no", "nope", "ok", "okay", "sure", "thanks", "what", "sorry",
    "fine", "good", "great", "well", "here", "not", "just", "the", "um", "uh", "hmm", "pardon",
}


def is_goodbye(text: str) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in GOODBYE_PHRASES)


def clean_name(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    name = raw.strip()
    if "NONE" in name.upper():
        return None
    for ch in _NAME_QUOTES:
        name = name.replace(ch, "")
    name = name.strip().rstrip(".!,").strip()
    return name or None


def guess_name(speech: str) -> Optional[str]:
    """Rule-based name extraction used when no LLM is configured."""
    match = _NAME_PATTERN.search(speech)
    if match:
        candidate = match.group(1)
    else:
        # a bare reply only counts when it is a single word
        words = re.findall(r"[A-Za-z\-]+", speech)
        if len(words) != 1:
            return None
        candidate = words[0]
    if candidate.lower() in _NOT_NAMES:
        return None
    return candidate.capitalize()


def build_system_prompt(name: str, memories: List[Memory]) -> str:
    if memories:
        facts = "\n".join(f"- [{m.category.value}] {m.content}" for m in memories)
        block = f"Things you remember about {name}:\n{facts}"
    else:
        block = ""
    return SYSTEM_PROMPT.format(name=name, memories=block).strip()


class ConversationOrchestrator:
    def __init__(self, sessions: SessionStore, datastore: DataStore, llm, tts, jobs, telephony=None):
        self.sessions = sessions
        self.datastore = datastore
        self.llm = llm
        self.tts = tts
        self.jobs = jobs
        self.telephony = telephony

    # ------------------------------------------------------------------ inbound

    async def handle_inbound_call(
        self, call_sid: str, caller_phone: str, direction: CallDirection = CallDirection.INBOUND
    ) -> InboundCallResult:
        user = await self.datastore.find_user_by_phone(caller_phone)
        user_id = user.id if user else None

        call = await self._ensure_call(call_sid, caller_phone, direction, user_id)

        if user is None:
            state, greeting = CallState.ONBOARDING, GREETING_NEW_CALLER
        elif not user.onboarding_completed:
            state, greeting = CallState.ONBOARDING, GREETING_UNFINISHED_ONBOARDING
        else:
            balance = await self.datastore.get_balance_cents(user.id)
            if balance <= 0:
                state, greeting = CallState.ENDING, GREETING_OUT_OF_CREDIT.format(name=user.display_name)
            else:
                state, greeting = CallState.ACTIVE, GREETING_ACTIVE.format(name=user.display_name)

        session = await self.sessions.create(
            call_sid,
            caller_phone,
            call.id,
            user_id=user_id,
            state=state,
            preferred_name=user.preferred_name if user else None,
        )

        audio_url = await self.tts.generate(greeting, call.id, 0)
        await self.datastore.add_message(
            call.id, MessageRole.ASSISTANT, greeting, audio_url=audio_url, timestamp_ms=session.created_at
        )
        logger.info("Inbound call %s from %s -> state=%s user=%s", call_sid, caller_phone, state.value, user_id)
        return InboundCallResult(greeting=greeting, audio_url=audio_url, session=session)

    async def _ensure_call(
        self, call_sid: str, caller_phone: str, direction: CallDirection, user_id: Optional[str]
    ) -> Call:
        call = await self.datastore.get_call_by_sid(call_sid)
        if call is None:
            call = await self.datastore.create_call(
                call_sid, caller_phone, direction, user_id=user_id, status="in-progress"
            )
            if call is None:
                raise CallRecordError(f"could not create call record for {call_sid}")
        elif user_id and not call.user_id:
            call = await self.datastore.update_call(call.id, user_id=user_id)
        return call

    # ------------------------------------------------------------------ turns

    async def handle_user_input(self, call_sid: str, speech_text: str) -> UserInputResult:
        session = await self.sessions.get(call_sid)
        if session is None:
            logger.warning("User input for unknown or expired session %s", call_sid)
            return UserInputResult(response=SESSION_LOST, should_end=True)

        # messages of one call are ordered by a per-call clock that never goes backwards
        turn_ms = max(now_ms(), session.context.get(LAST_MESSAGE_KEY, session.created_at) + 1)
        message_index = session.message_count + 1
        try:
            await self.datastore.add_message(session.call_id, MessageRole.USER, speech_text, timestamp_ms=turn_ms)
            message_index = await self.sessions.increment_message_count(call_sid)
            await self.sessions.set_context(call_sid, LAST_MESSAGE_KEY, turn_ms + 1)

            should_end = False
            if session.state == CallState.ONBOARDING:
                response = await self._handle_onboarding(session, speech_text)
            elif session.state == CallState.ACTIVE:
                response, should_end = await self._handle_active(session, speech_text)
            elif session.state == CallState.ENDING:
                response, should_end = FAREWELL_ENDING, True
            else:
                logger.warning("Session %s in unexpected state %s", call_sid, session.state)
                response, should_end = UNKNOWN_STATE, True

            audio_url = await self.tts.generate(response, session.call_id, message_index)
            await self.datastore.add_message(
                session.call_id,
                MessageRole.ASSISTANT,
                response,
                audio_url=audio_url,
                timestamp_ms=turn_ms,
                sequence_index=1,
            )
            return UserInputResult(response=response, audio_url=audio_url, should_end=should_end)
        except Exception as exc:
            logger.exception("Failed to handle input for call %s: %s", call_sid, exc)
            audio_url = await self._store_fallback_reply(session, DIDNT_CATCH, message_index, turn_ms)
            return UserInputResult(response=DIDNT_CATCH, audio_url=audio_url, should_end=False)

    async def _store_fallback_reply(
        self, session: CallSession, response: str, message_index: int, turn_ms: int
    ) -> Optional[str]:
        audio_url = None
        try:
            audio_url = await self.tts.generate(response, session.call_id, message_index)
        except Exception as exc:
            logger.warning("Fallback synthesis failed for call %s: %s", session.call_sid, exc)
        try:
            await self.datastore.add_message(
                session.call_id,
                MessageRole.ASSISTANT,
                response,
                audio_url=audio_url,
                timestamp_ms=turn_ms,
                sequence_index=1,
            )
        except Exception as exc:
            logger.warning("Could not store fallback reply for call %s: %s", session.call_sid, exc)
        return audio_url

    async def _handle_onboarding(self, session: CallSession, speech_text: str) -> str:
        name = await self._extract_name(speech_text)
        if not name:
            return NAME_REPROMPT

        if session.user_id:
            await self.datastore.update_profile(session.user_id, preferred_name=name, onboarding_completed=True)
            user_id = session.user_id
        else:
            profile = await self.datastore.create_profile(preferred_name=name, onboarding_completed=True)
            await self.datastore.link_phone(profile.id, session.caller_phone)
            await self.datastore.update_call(session.call_id, user_id=profile.id)
            user_id = profile.id

        await self.sessions.update(session.call_sid, user_id=user_id, preferred_name=name, state=CallState.ACTIVE)
        logger.info("Onboarded user %s as %r on call %s", user_id, name, session.call_sid)
        return NAME_CONFIRMED.format(name=name)

    async def _extract_name(self, speech_text: str) -> Optional[str]:
        if not self.llm.is_configured():
            return guess_name(speech_text)
        try:
            raw = await self.llm.chat(
                [{"role": "user", "content": NAME_PROMPT.format(speech=speech_text)}],
                max_tokens=50,
                temperature=0,
            )
        except Exception as exc:
            logger.exception("Name extraction failed: %s", exc)
            return None
        return clean_name(raw)

    async def _handle_active(self, session: CallSession, speech_text: str) -> Tuple[str, bool]:
        if is_goodbye(speech_text):
            await self.sessions.set_state(session.call_sid, CallState.ENDING)
            suffix = f", {session.preferred_name}" if session.preferred_name else ""
            return FAREWELL_ACTIVE.format(name_suffix=suffix), True

        messages = await self.datastore.get_messages(session.call_id)
        history: List[Dict[str, str]] = [
            {"role": m.role.value, "content": m.content}
            for m in messages
            if m.role in (MessageRole.USER, MessageRole.ASSISTANT)
        ][-HISTORY_WINDOW:]

        memories = await self._relevant_memories(session.user_id, speech_text) if session.user_id else []
        system = build_system_prompt(session.preferred_name or "friend", memories)

        reply = await self.llm.chat([{"role": "system", "content": system}] + history, max_tokens=300, temperature=0.7)
        return reply or NOT_UNDERSTOOD, False

    async def _relevant_memories(self, user_id: str, text: str) -> List[Memory]:
        embedding = await self.llm.embed(text)
        if embedding:
            return await self.datastore.search_memories(
                user_id, embedding, threshold=MEMORY_MATCH_THRESHOLD, limit=MEMORY_CONTEXT_LIMIT
            )
        return await self.datastore.top_memories(user_id, limit=MEMORY_CONTEXT_LIMIT)

    # ------------------------------------------------------------------ call end

    async def handle_call_end(self, call_sid: str, duration_seconds: Optional[int] = None) -> bool:
        """
        Close the call's session and enqueue post-call jobs. Only the caller that
        actually deletes the session does the fan-out; everyone else gets False.
        """
        session = await self.sessions.get(call_sid)
        if session is None:
            logger.debug("handle_call_end: no session for %s", call_sid)
            return False
        if not await self.sessions.delete(call_sid):
            logger.info("handle_call_end: session %s already closed by another handler", call_sid)
            return False

        await self.enqueue_post_call_jobs(session.call_id, session.user_id, duration_seconds)
        logger.info("Call %s ended and cleaned up", call_sid)
        return True

    async def enqueue_post_call_jobs(
        self, call_id: str, user_id: Optional[str], duration_seconds: Optional[int] = None
    ) -> None:
        cost_job = JobName.CALCULATE_CALL_COST.value
        await self.jobs.add_job(
            cost_job,
            {"callId": call_id, "durationSeconds": duration_seconds},
            job_id=f"{cost_job}:{call_id}",
        )
        if user_id:
            extract_job = JobName.EXTRACT_MEMORIES.value
            await self.jobs.add_job(
                extract_job,
                {"callId": call_id, "userId": user_id},
                job_id=f"{extract_job}:{call_id}",
            )
            logger.info("Queued memory extraction for call %s", call_id)

    # ------------------------------------------------------------------ outbound

    async def initiate_outbound_call(self, user_id: str, phone_number: str) -> Call:
        if self.telephony is None or not self.telephony.is_configured():
            raise MemoirVoiceError("outbound calls need TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER")

        call_sid = await self.telephony.place_call(phone_number)
        # the voice webhook can arrive before this point and create the row itself
        call = await self.datastore.get_call_by_sid(call_sid)
        if call is None:
            call = await self.datastore.create_call(
                call_sid, phone_number, CallDirection.OUTBOUND, user_id=user_id, status="initiated"
            )
        elif not call.user_id:
            call = await self.datastore.update_call(call.id, user_id=user_id, direction=CallDirection.OUTBOUND)
        if call is None:
            raise CallRecordError(f"could not create call record for {call_sid}")
        logger.info("Outbound call %s to %s for user %s", call_sid, phone_number, user_id)
        return call
