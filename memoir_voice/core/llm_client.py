# memoir_voice/core/llm_client.py
"""
LLM client wrapper.

Provides async helpers around chat completions and embeddings:
    chat(messages, max_tokens, temperature, json_mode) -> str | None
    chat_json(messages, ...) -> dict | None
    embed(text) -> list[float] | None

Supports:
 - openai (API) if LLM_MODE=openai and api key present
 - stub otherwise: every call returns None and callers use their rule-based fallbacks

Transport errors from the provider propagate to the caller; only unparsable JSON
output is swallowed (logged and returned as None).
"""
import json
import logging
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

logger = logging.getLogger("memoir-voice.core.llm")

# embeddings input is capped to stay well under the model's token limit
MAX_EMBEDDING_CHARS = 8000


class LLMClient:
    def __init__(self, settings, client: Optional[AsyncOpenAI] = None):
        self.mode = (settings.LLM_MODE or "openai").lower()
        self.model = settings.LLM_MODEL
        self.embedding_model = settings.EMBEDDING_MODEL
        self._client = client
        if self._client is None and self.mode == "openai":
            if settings.LLM_API_KEY:
                self._client = AsyncOpenAI(api_key=settings.LLM_API_KEY, timeout=30.0, max_retries=1)
            else:
                logger.warning("LLM_MODE=openai but no LLM_API_KEY set; LLM features use fallbacks")

    def is_configured(self) -> bool:
        return self._client is not None

    async def chat(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int = 500,
        temperature: float = 0.7,
        json_mode: bool = False,
    ) -> Optional[str]:
        if not self._client:
            logger.debug("LLM stub mode - no completion produced")
            return None

        kwargs: Dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        resp = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            **kwargs,
        )
        content = resp.choices[0].message.content
        return content.strip() if content else None

    async def chat_json(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int = 1000,
        temperature: float = 0.2,
    ) -> Optional[Dict[str, Any]]:
        content = await self.chat(messages, max_tokens=max_tokens, temperature=temperature, json_mode=True)
        if not content:
            return None
        try:
            parsed = json.loads(content)
        except ValueError:
            logger.warning("LLM returned non-JSON output: %.200s", content)
            return None
        if not isinstance(parsed, dict):
            logger.warning("LLM returned JSON that is not an object: %.200s", content)
            return None
        return parsed

    async def embed(self, text: str) -> Optional[List[float]]:
        if not self._client or not text:
            return None
        resp = await self._client.embeddings.create(model=self.embedding_model, input=text[:MAX_EMBEDDING_CHARS])
        return list(resp.data[0].embedding)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
