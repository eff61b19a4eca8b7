"""
Job dispatch: maps a job name to the service that handles it.

Handlers raise to signal failure so the queue can retry; a payload that does not
validate can never succeed and is dropped with an error log instead.
"""
import logging
from typing import Any, Dict

from pydantic import ValidationError

from memoir_voice.models.schemas import (
    CalculateCallCostPayload,
    ExtractMemoriesPayload,
    JobName,
    RegenerateChapterPayload,
)

logger = logging.getLogger("memoir-voice.jobs.processor")


class JobProcessor:
    def __init__(self, memory_extractor, billing, memoir):
        self.memory_extractor = memory_extractor
        self.billing = billing
        self.memoir = memoir

    async def process(self, name: str, payload: Dict[str, Any]) -> None:
        logger.info("Processing job %s payload=%s", name, payload)
        try:
            if name == JobName.EXTRACT_MEMORIES.value:
                data = ExtractMemoriesPayload.model_validate(payload)
                await self.memory_extractor.extract_from_call(data.call_id, data.user_id)
            elif name == JobName.CALCULATE_CALL_COST.value:
                data = CalculateCallCostPayload.model_validate(payload)
                await self.billing.charge_for_call(data.call_id, data.duration_seconds)
            elif name == JobName.REGENERATE_CHAPTER.value:
                data = RegenerateChapterPayload.model_validate(payload)
                await self.memoir.generate_chapter_narrative(data.user_id, data.chapter_id)
            else:
                logger.warning("Unknown job name %s; ignoring", name)
        except ValidationError as exc:
            logger.error("Dropping job %s with invalid payload %s: %s", name, payload, exc)
