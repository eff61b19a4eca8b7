# memoir_voice/core/billing.py
"""
Per-call billing: duration -> cost and a single balance deduction per call.

`billed_at` on the call row makes `charge_for_call` safe to re-run. The row is
marked before the balance is touched, so a crash in between under-charges
rather than charging twice.
"""
import logging
import math
from typing import Optional

from memoir_voice.storage.datastore import DataStore, utcnow

logger = logging.getLogger("memoir-voice.core.billing")


class BillingService:
    def __init__(self, datastore: DataStore, cost_per_minute_cents: int = 10):
        self.datastore = datastore
        self.cost_per_minute_cents = cost_per_minute_cents

    def calculate_call_cost(self, duration_seconds: int) -> int:
        if not duration_seconds or duration_seconds <= 0:
            return 0
        return math.ceil(duration_seconds / 60) * self.cost_per_minute_cents

    async def charge_for_call(self, call_id: str, duration_seconds: Optional[int] = None) -> Optional[int]:
        """Bill a finished call once. Returns the cost in cents, or None for an unknown call."""
        call = await self.datastore.get_call(call_id)
        if call is None:
            logger.warning("charge_for_call: call %s not found", call_id)
            return None
        if call.billed_at is not None:
            logger.info("Call %s already billed at %s", call_id, call.billed_at)
            return call.cost_cents

        duration = duration_seconds if duration_seconds is not None else call.duration_seconds
        cost = self.calculate_call_cost(duration)
        await self.datastore.update_call(call_id, duration_seconds=duration, cost_cents=cost, billed_at=utcnow())

        if call.user_id and cost > 0:
            deducted = await self.datastore.deduct_balance(call.user_id, cost, call_id=call_id)
            if not deducted:
                logger.warning("Balance deduction of %s cents for call %s did not apply", cost, call_id)
        logger.info("Billed call %s: %ss -> %s cents", call_id, duration, cost)
        return cost
