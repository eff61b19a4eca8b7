# memoir_voice/api/twilio_webhooks.py
"""
Telephony webhooks (form-encoded, Twilio field names).

 - POST /voice   call answered -> greeting TwiML
 - POST /gather  speech recognised -> reply TwiML
 - POST /status  call progress -> JSON ack; terminal statuses close the call

voice/gather always answer with valid TwiML (an apology and hangup on errors) so the
caller never hits a provider error message.
"""
import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from memoir_voice.api.deps import get_services
from memoir_voice.errors import SignatureError
from memoir_voice.core.telephony import error_twiml, greeting_twiml, reply_twiml
from memoir_voice.models.schemas import (
    CallDirection,
    CallState,
    TwilioGatherWebhook,
    TwilioStatusWebhook,
    TwilioVoiceWebhook,
)
from memoir_voice.services import Services
from memoir_voice.storage.datastore import utcnow
from memoir_voice.utils.security import validate_twilio_request

logger = logging.getLogger("memoir-voice.api.twilio_webhooks")
router = APIRouter()

TERMINAL_STATUSES = {"completed", "failed", "busy", "no-answer", "canceled"}


def _check_signature(request: Request, params: Dict[str, str], settings) -> None:
    if not settings.TWILIO_VALIDATE_SIGNATURE:
        return
    # Twilio signs the public URL it called, not the one we see behind a proxy
    url = f"{settings.PUBLIC_BASE_URL.rstrip('/')}{request.url.path}"
    signature = request.headers.get("X-Twilio-Signature")
    if not validate_twilio_request(settings.TWILIO_AUTH_TOKEN, url, params, signature):
        logger.warning("Rejected telephony webhook %s: bad signature", request.url.path)
        raise SignatureError("Invalid Twilio signature")


async def _read_form(request: Request, services: Services) -> Dict[str, str]:
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    _check_signature(request, params, services.settings)
    return params


def _twiml(xml: str) -> Response:
    return Response(content=xml, media_type="application/xml")


@router.post("/voice")
async def voice(request: Request, services: Services = Depends(get_services)):
    try:
        params = await _read_form(request, services)
        hook = TwilioVoiceWebhook.model_validate(params)
        outbound = hook.direction.startswith("outbound")
        # for calls we placed, the person we are talking to is the callee
        phone = hook.to_number if outbound else hook.from_number
        logger.info("Voice webhook %s (%s) phone=%s", hook.call_sid, hook.direction, phone)

        result = await services.orchestrator.handle_inbound_call(
            hook.call_sid, phone, CallDirection.OUTBOUND if outbound else CallDirection.INBOUND
        )
        xml = greeting_twiml(
            result.greeting,
            result.audio_url,
            services.telephony.webhook_url("gather"),
            end_call=result.session.state == CallState.ENDING,
        )
    except SignatureError as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    except Exception as exc:
        logger.exception("Voice webhook failed: %s", exc)
        xml = error_twiml()
    return _twiml(xml)


@router.post("/gather")
async def gather(request: Request, services: Services = Depends(get_services)):
    try:
        params = await _read_form(request, services)
        hook = TwilioGatherWebhook.model_validate(params)
        logger.info("Gather webhook %s speech=%r confidence=%s", hook.call_sid, hook.speech_result, hook.confidence)

        result = await services.orchestrator.handle_user_input(hook.call_sid, hook.speech_result)
        xml = reply_twiml(
            result.response,
            result.audio_url,
            services.telephony.webhook_url("gather"),
            should_end=result.should_end,
        )
    except SignatureError as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    except Exception as exc:
        logger.exception("Gather webhook failed: %s", exc)
        xml = error_twiml()
    return _twiml(xml)


@router.post("/status")
async def status(request: Request, services: Services = Depends(get_services)):
    try:
        params = await _read_form(request, services)
        hook = TwilioStatusWebhook.model_validate(params)
        duration = int(hook.call_duration) if hook.call_duration and hook.call_duration.isdigit() else None
        terminal = hook.call_status in TERMINAL_STATUSES
        logger.info("Status webhook %s status=%s duration=%s", hook.call_sid, hook.call_status, duration)

        fields = {"status": hook.call_status}
        if duration is not None:
            fields["duration_seconds"] = duration
        if terminal:
            call = await services.datastore.get_call_by_sid(hook.call_sid)
            if call is not None and call.ended_at is None:
                fields["ended_at"] = utcnow()
        await services.datastore.update_call_by_sid(hook.call_sid, **fields)

        if terminal:
            await services.orchestrator.handle_call_end(hook.call_sid, duration)
        return {"success": True}
    except SignatureError as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    except Exception as exc:
        logger.exception("Status webhook failed: %s", exc)
        return {"success": False}
