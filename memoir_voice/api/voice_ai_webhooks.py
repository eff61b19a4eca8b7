# memoir_voice/api/voice_ai_webhooks.py
"""
Conversational voice-AI provider webhook (JSON).

Events: conversation.initiated, conversation.transcript, conversation.ended and
post_call_transcription, in either the nested (`data.*`) or flattened shape. Every
event is resolved to a Call through metadata.call_id or the stored conversation id;
events that resolve to nothing are acknowledged and dropped.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from memoir_voice.api.deps import get_services
from memoir_voice.errors import SignatureError
from memoir_voice.models.schemas import Call, MessageRole, TranscriptLine, VoiceAIWebhook
from memoir_voice.services import Services
from memoir_voice.storage.datastore import now_ms, utcnow
from memoir_voice.utils.security import verify_signature

logger = logging.getLogger("memoir-voice.api.voice_ai_webhooks")
router = APIRouter()

SIGNATURE_HEADERS = ("ElevenLabs-Signature", "X-ElevenLabs-Signature")
INITIATED = "conversation.initiated"
TRANSCRIPT = "conversation.transcript"
ENDED_EVENTS = {"conversation.ended", "post_call_transcription"}


def _check_signature(request: Request, body: bytes, settings) -> None:
    if not settings.VOICE_AI_VERIFY_SIGNATURE:
        return
    if not settings.VOICE_AI_WEBHOOK_SECRET:
        logger.error("VOICE_AI_VERIFY_SIGNATURE is on but VOICE_AI_WEBHOOK_SECRET is not set")
        raise SignatureError("Webhook secret not configured")
    signature = next((request.headers.get(h) for h in SIGNATURE_HEADERS if request.headers.get(h)), None)
    if not verify_signature(body, signature, settings.VOICE_AI_WEBHOOK_SECRET):
        logger.warning("Rejected voice-AI webhook: %s signature", "bad" if signature else "missing")
        raise SignatureError("Invalid signature")


async def resolve_call(services: Services, event: VoiceAIWebhook) -> Optional[Call]:
    call_id = event.resolved_metadata().get("call_id")
    if call_id:
        call = await services.datastore.get_call(str(call_id))
        if call is not None:
            return call
    conversation_id = event.resolved_conversation_id()
    if conversation_id:
        return await services.datastore.get_call_by_conversation_id(conversation_id)
    return None


async def store_transcript(services: Services, call: Call, lines: List[TranscriptLine]) -> int:
    base = now_ms()
    stored = 0
    for index, line in enumerate(lines):
        text = (line.message or "").strip()
        if not text:
            continue
        role = MessageRole.ASSISTANT if line.role in ("agent", "assistant") else MessageRole.USER
        await services.datastore.add_message(call.id, role, text, timestamp_ms=base, sequence_index=index)
        stored += 1
    return stored


async def handle_event(services: Services, event: VoiceAIWebhook) -> None:
    call = await resolve_call(services, event)
    if call is None:
        logger.warning(
            "Voice-AI event %s for unknown call (conversation=%s); dropping",
            event.type, event.resolved_conversation_id(),
        )
        return

    if event.type == INITIATED:
        await services.datastore.update_call(
            call.id, voice_ai_conversation_id=event.resolved_conversation_id(), status="in-progress"
        )
        logger.info("Voice-AI conversation %s started for call %s", event.resolved_conversation_id(), call.id)

    elif event.type == TRANSCRIPT:
        stored = await store_transcript(services, call, event.resolved_transcript())
        logger.info("Stored %d transcript lines for call %s", stored, call.id)

    elif event.type in ENDED_EVENTS:
        await store_transcript(services, call, event.resolved_transcript())
        duration = event.resolved_duration()
        # once closed (and possibly billed) the call row belongs to the billing job
        closed = call.ended_at is not None or call.billed_at is not None
        if closed:
            logger.info("Call %s already closed; keeping its status, duration and cost", call.id)
        else:
            await services.datastore.update_call(
                call.id,
                status="completed",
                duration_seconds=duration,
                cost_cents=services.billing.calculate_call_cost(duration),
                ended_at=utcnow(),
            )

        if await services.sessions.get(call.call_sid) is not None:
            await services.orchestrator.handle_call_end(call.call_sid, duration)
        elif not closed:
            await services.orchestrator.enqueue_post_call_jobs(call.id, call.user_id, duration)
        else:
            logger.info("Call %s was already closed; no post-call jobs", call.id)

    else:
        logger.info("Ignoring voice-AI event type %s", event.type)


@router.post("/voice-ai")
async def voice_ai_webhook(request: Request, services: Services = Depends(get_services)):
    body = await request.body()
    try:
        _check_signature(request, body, services.settings)
    except SignatureError as exc:
        raise HTTPException(status_code=401, detail=str(exc))
    try:
        event = VoiceAIWebhook.model_validate_json(body)
        logger.info("Voice-AI webhook %s", event.type)
        await handle_event(services, event)
        return {"success": True}
    except Exception as exc:
        logger.exception("Voice-AI webhook failed: %s", exc)
        return {"success": False, "error": str(exc)}
