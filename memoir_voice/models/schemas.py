"""
Pydantic schemas: ephemeral call session, durable rows, webhook payloads and job payloads.
"""
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field


class CallState(str, Enum):
    IDENTIFYING = "identifying"
    ONBOARDING = "onboarding"
    ACTIVE = "active"
    ENDING = "ending"


class CallDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MemoryCategory(str, Enum):
    PREFERENCE = "preference"
    FACT = "fact"
    TASK = "task"
    REMINDER = "reminder"
    RELATIONSHIP = "relationship"
    OTHER = "other"


class StorySource(str, Enum):
    CHAT = "chat"
    CALL = "call"
    MANUAL = "manual"
    GUEST = "guest"


class JobName(str, Enum):
    EXTRACT_MEMORIES = "extract-memories"
    CALCULATE_CALL_COST = "calculate-call-cost"
    REGENERATE_CHAPTER = "regenerate-chapter"


# ---------------------------------------------------------------------------
# Ephemeral state
# ---------------------------------------------------------------------------

SESSION_SCHEMA_VERSION = 1


class CallSession(BaseModel):
    schema_version: int = SESSION_SCHEMA_VERSION
    call_id: str
    call_sid: str
    user_id: Optional[str] = None
    state: CallState = CallState.IDENTIFYING
    caller_phone: str
    preferred_name: Optional[str] = None
    message_count: int = 0
    context: Dict[str, Any] = Field(default_factory=dict)
    created_at: int
    updated_at: int


# ---------------------------------------------------------------------------
# Durable rows (owned by the datastore)
# ---------------------------------------------------------------------------

class Profile(BaseModel):
    id: str
    full_name: Optional[str] = None
    preferred_name: Optional[str] = None
    onboarding_completed: bool = False

    @property
    def display_name(self) -> str:
        return self.preferred_name or self.full_name or "there"


class Call(BaseModel):
    id: str
    user_id: Optional[str] = None
    call_sid: str
    caller_phone: str
    direction: CallDirection = CallDirection.INBOUND
    status: str = "initiated"
    duration_seconds: int = 0
    cost_cents: int = 0
    voice_ai_conversation_id: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    billed_at: Optional[datetime] = None
    memories_extracted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class ConversationMessage(BaseModel):
    id: str
    call_id: str
    role: MessageRole
    content: str
    audio_url: Optional[str] = None
    timestamp_ms: int


class Memory(BaseModel):
    id: str
    user_id: str
    call_id: Optional[str] = None
    content: str
    category: MemoryCategory = MemoryCategory.OTHER
    importance_score: float = 0.5
    time_period: Optional[str] = None
    embedding: Optional[List[float]] = None
    is_active: bool = True
    created_at: Optional[datetime] = None


class Chapter(BaseModel):
    id: str
    user_id: str
    title: str
    slug: str
    description: Optional[str] = None
    display_order: int = 0
    is_default: bool = False


class ChapterContent(BaseModel):
    id: str
    chapter_id: str
    content: str
    version: int
    word_count: int
    story_ids: List[str] = []
    is_current: bool = True
    generated_at: Optional[datetime] = None


class ChapterStory(BaseModel):
    id: str
    chapter_id: str
    user_id: str
    content: str
    title: Optional[str] = None
    summary: Optional[str] = None
    time_period: Optional[str] = None
    content_hash: str
    source_type: StorySource = StorySource.MANUAL
    source_id: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Orchestrator / service results
# ---------------------------------------------------------------------------

class InboundCallResult(BaseModel):
    greeting: str
    audio_url: Optional[str] = None
    session: CallSession


class UserInputResult(BaseModel):
    response: str
    audio_url: Optional[str] = None
    should_end: bool = False


class StoryResult(BaseModel):
    accepted: bool
    story: Optional[ChapterStory] = None
    reason: Optional[str] = None


class ExtractedMemory(BaseModel):
    content: str
    category: Optional[str] = MemoryCategory.OTHER.value
    importance: Optional[float] = None
    time_period: Optional[str] = None


class ExtractedStory(BaseModel):
    content: str
    title: Optional[str] = None
    summary: Optional[str] = None
    time_period: Optional[str] = None


# ---------------------------------------------------------------------------
# Telephony webhooks (form-encoded, provider field names)
# ---------------------------------------------------------------------------

class TwilioVoiceWebhook(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    call_sid: str = Field(..., alias="CallSid")
    from_number: str = Field("", alias="From")
    to_number: str = Field("", alias="To")
    call_status: str = Field("", alias="CallStatus")
    direction: str = Field("inbound", alias="Direction")


class TwilioGatherWebhook(TwilioVoiceWebhook):
    speech_result: str = Field("", alias="SpeechResult")
    confidence: Optional[str] = Field(None, alias="Confidence")


class TwilioStatusWebhook(TwilioVoiceWebhook):
    call_duration: Optional[str] = Field(None, alias="CallDuration")


# ---------------------------------------------------------------------------
# Voice-AI webhooks (two historical shapes: nested `data.*` and flattened)
# ---------------------------------------------------------------------------

class TranscriptLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str = "user"
    message: Optional[str] = None


class VoiceAIEventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: Optional[str] = None
    agent_id: Optional[str] = None
    status: Optional[str] = None
    duration_seconds: Optional[float] = None
    transcript: Optional[List[TranscriptLine]] = None
    metadata: Optional[Dict[str, Any]] = None


class VoiceAIWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    event_id: Optional[str] = None
    conversation_id: Optional[str] = None
    data: Optional[VoiceAIEventData] = None
    transcript: Optional[List[TranscriptLine]] = None
    metadata: Optional[Dict[str, Any]] = None
    call_duration_secs: Optional[float] = None

    def resolved_conversation_id(self) -> Optional[str]:
        if self.data and self.data.conversation_id:
            return self.data.conversation_id
        return self.conversation_id

    def resolved_transcript(self) -> List[TranscriptLine]:
        if self.data and self.data.transcript:
            return self.data.transcript
        return self.transcript or []

    def resolved_metadata(self) -> Dict[str, Any]:
        if self.data and self.data.metadata:
            return self.data.metadata
        return self.metadata or {}

    def resolved_duration(self) -> int:
        candidates = [
            self.data.duration_seconds if self.data else None,
            self.call_duration_secs,
            self.resolved_metadata().get("call_duration_secs"),
        ]
        for value in candidates:
            if isinstance(value, (int, float)):
                return max(int(value), 0)
        return 0


# ---------------------------------------------------------------------------
# Job payloads (camelCase on the wire)
# ---------------------------------------------------------------------------

class ExtractMemoriesPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    call_id: str = Field(..., alias="callId")
    user_id: str = Field(..., alias="userId")


class CalculateCallCostPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    call_id: str = Field(..., alias="callId")
    duration_seconds: Optional[int] = Field(None, alias="durationSeconds")


class RegenerateChapterPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    chapter_id: str = Field(..., alias="chapterId")
    timestamp: Optional[int] = None
