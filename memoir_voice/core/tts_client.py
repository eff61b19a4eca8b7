# memoir_voice/core/tts_client.py
"""
TTS client wrapper.

Provides async `generate(text, call_id, message_index)` which writes an audio file into
MEDIA_DIR and returns its public URL (MEDIA_BASE_URL/<call_id>_<index>.<ext>), or None
when no audio was produced. Callers speak the text with <Say> when they get None.

Modes:
 - stub: no audio produced, returns None
 - local: pyttsx3 writes a .wav file (offline)
 - elevenlabs: ElevenLabs text-to-speech REST API (mp3)
"""
import asyncio
import logging
from pathlib import Path
from typing import Optional

import httpx
import pyttsx3

logger = logging.getLogger("memoir-voice.core.tts")

ELEVENLABS_TTS_URL = "https://api.elevenlabs.io/v1/text-to-speech/{voice_id}"


class TTSClient:
    def __init__(self, settings, http: Optional[httpx.AsyncClient] = None):
        self.mode = (settings.TTS_MODE or "stub").lower()
        self.settings = settings
        self.media_base_url = settings.MEDIA_BASE_URL.rstrip("/")
        self._http = http

        if self.mode == "elevenlabs" and not settings.ELEVENLABS_API_KEY:
            logger.warning("TTS_MODE=elevenlabs but ELEVENLABS_API_KEY missing; falling back to stub")
            self.mode = "stub"
        if self.mode == "elevenlabs" and self._http is None:
            self._http = httpx.AsyncClient(timeout=30.0)

        self.media_dir = Path(settings.MEDIA_DIR)
        self.media_dir.mkdir(parents=True, exist_ok=True)

    async def generate(self, text: str, call_id: str, message_index: int) -> Optional[str]:
        """
        Synthesize text for one turn of a call. Returns a media URL or None.
        Provider failures are logged and reported as None.
        """
        if not text or self.mode == "stub":
            return None

        ext = "mp3" if self.mode == "elevenlabs" else "wav"
        filename = f"{call_id}_{message_index}.{ext}"
        out_path = self.media_dir.joinpath(filename)

        if self.mode == "local":
            loop = asyncio.get_running_loop()
            saved = await loop.run_in_executor(None, self._blocking_pyttsx3_save, text, str(out_path))
        elif self.mode == "elevenlabs":
            saved = await self._elevenlabs_save(text, out_path)
        else:
            logger.warning("Unknown TTS_MODE=%s; not producing audio", self.mode)
            return None

        if not saved:
            return None
        return f"{self.media_base_url}/{filename}"

    async def _elevenlabs_save(self, text: str, out_path: Path) -> bool:
        url = ELEVENLABS_TTS_URL.format(voice_id=self.settings.ELEVENLABS_VOICE_ID)
        try:
            resp = await self._http.post(
                url,
                headers={"xi-api-key": self.settings.ELEVENLABS_API_KEY, "accept": "audio/mpeg"},
                json={
                    "text": text,
                    "model_id": self.settings.ELEVENLABS_MODEL_ID,
                    "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
                },
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.exception("ElevenLabs TTS request failed: %s", exc)
            return False
        out_path.write_bytes(resp.content)
        logger.debug("Saved TTS audio to %s (%d bytes)", out_path, len(resp.content))
        return True

    def _blocking_pyttsx3_save(self, text: str, out_file: str) -> bool:
        """
        Use pyttsx3 to save audio synchronously.
        """
        try:
            engine = pyttsx3.init()
            engine.save_to_file(text, out_file)
            engine.runAndWait()
        except Exception as exc:
            logger.exception("pyttsx3 TTS failed: %s", exc)
            return False
        logger.debug("Saved TTS audio to %s", out_file)
        return True

    async def close(self) -> None:
        if self._http is not None:
            await self._http.aclose()
