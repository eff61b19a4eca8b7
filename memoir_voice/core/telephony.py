# memoir_voice/core/telephony.py
"""
Telephony helpers: TwiML documents for the voice/gather webhooks and a thin wrapper
around the Twilio REST client for outbound calls.

Every spoken turn uses <Play> when synthesized audio exists and <Say> otherwise.
"""
import asyncio
import logging
from typing import Optional

from twilio.rest import Client
from twilio.twiml.voice_response import Gather, VoiceResponse

logger = logging.getLogger("memoir-voice.core.telephony")

SAY_VOICE = "alice"
STILL_THERE_PROMPT = "Are you still there?"
GOODBYE_PROMPT = "Goodbye!"
ERROR_MESSAGE = "I'm sorry, something went wrong. Please try calling again later."


def _speak(response: VoiceResponse, text: str, audio_url: Optional[str]) -> None:
    if audio_url:
        response.play(audio_url)
    elif text:
        response.say(text, voice=SAY_VOICE)


def _gather(action: str, speech_timeout: str) -> Gather:
    return Gather(
        input="speech",
        action=action,
        method="POST",
        speech_timeout=speech_timeout,
        language="en-US",
    )


def _listen(response: VoiceResponse, gather_url: str) -> None:
    response.append(_gather(gather_url, "auto"))
    response.say(STILL_THERE_PROMPT, voice=SAY_VOICE)
    response.append(_gather(gather_url, "3"))
    response.say(GOODBYE_PROMPT, voice=SAY_VOICE)
    response.hangup()


def greeting_twiml(text: str, audio_url: Optional[str], gather_url: str, end_call: bool = False) -> str:
    response = VoiceResponse()
    _speak(response, text, audio_url)
    if end_call:
        response.hangup()
    else:
        _listen(response, gather_url)
    return str(response)


def reply_twiml(text: str, audio_url: Optional[str], gather_url: str, should_end: bool) -> str:
    # same shape as the greeting: speak, then either hang up or keep listening
    return greeting_twiml(text, audio_url, gather_url, end_call=should_end)


def error_twiml(message: str = ERROR_MESSAGE) -> str:
    response = VoiceResponse()
    response.say(message, voice=SAY_VOICE)
    response.hangup()
    return str(response)


class TelephonyClient:
    """Outbound call placement through the Twilio REST API."""

    def __init__(self, settings, client: Optional[Client] = None):
        self.settings = settings
        self.base_url = settings.PUBLIC_BASE_URL.rstrip("/")
        self.from_number = settings.TWILIO_PHONE_NUMBER
        self._client = client
        if self._client is None and settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN:
            self._client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        if self._client is None:
            logger.warning("Twilio credentials not configured; outbound calls are disabled")

    def is_configured(self) -> bool:
        return self._client is not None and bool(self.from_number)

    def webhook_url(self, path: str) -> str:
        return f"{self.base_url}/webhook/twilio/{path.lstrip('/')}"

    async def place_call(self, to_number: str) -> str:
        """Start an outbound call and return its CallSid."""
        if not self.is_configured():
            raise RuntimeError("Twilio client not configured")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._blocking_create_call, to_number)

    def _blocking_create_call(self, to_number: str) -> str:
        call = self._client.calls.create(
            to=to_number,
            from_=self.from_number,
            url=self.webhook_url("voice"),
            status_callback=self.webhook_url("status"),
            status_callback_event=["initiated", "ringing", "answered", "completed"],
            status_callback_method="POST",
        )
        logger.info("Outbound call %s placed to %s", call.sid, to_number)
        return call.sid
