"""
Call session store with Redis (async) backend and in-memory fallback.

Exports:
 - connect_kv(redis_url) -> RedisKV | InMemoryKV
 - SessionStore(kv, ttl_seconds): create / get / update / delete / extend,
   plus get_context / set_context for transient per-call flags

Behavior:
 - If REDIS_URL is not provided or Redis can't be reached, falls back to an in-process
   dict that honours TTLs (fine for a single dev process, not for multiple workers).
 - Sessions are stored as JSON under `call_session:<call_sid>` and every successful
   write refreshes the TTL.
 - Missing, expired or undecodable sessions read as None; callers treat that as
   "conversation lost".
"""
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from memoir_voice.models.schemas import CallSession, CallState, SESSION_SCHEMA_VERSION

logger = logging.getLogger("memoir-voice.state.session_store")

SESSION_PREFIX = "call_session:"
DEFAULT_SESSION_TTL = 3600

# Fields that identify a session and must not be overwritten by update()
_IMMUTABLE_FIELDS = {"call_sid", "created_at", "schema_version"}


def _now_ms() -> int:
    return int(time.time() * 1000)


class RedisKV:
    """Thin async key/value wrapper around a redis.asyncio client."""

    def __init__(self, client: "redis.Redis"):
        self.client = client

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.setex(key, ttl_seconds, value)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(await self.client.set(key, value, ex=ttl_seconds, nx=True))

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(key))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self.client.expire(key, ttl_seconds))

    async def close(self) -> None:
        await self.client.aclose()


class InMemoryKV:
    """Process-local key/value store with TTL semantics matching Redis SETEX/EXPIRE."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}

    def _live(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            self._data.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._data[key] = (value, self._clock() + ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        if self._live(key) is not None:
            return False
        await self.set(key, value, ttl_seconds)
        return True

    async def delete(self, key: str) -> bool:
        return self._live(key) is not None and self._data.pop(key, None) is not None

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        entry = self._live(key)
        if entry is None:
            return False
        self._data[key] = (entry[0], self._clock() + ttl_seconds)
        return True

    def ttl(self, key: str) -> Optional[float]:
        entry = self._live(key)
        return entry[1] - self._clock() if entry else None

    async def close(self) -> None:
        self._data.clear()


async def connect_kv(redis_url: Optional[str]):
    """
    Connect to Redis if redis_url is provided and reachable.
    Returns a RedisKV on success, otherwise an InMemoryKV.
    """
    if not redis_url:
        logger.info("No REDIS_URL configured; call sessions are kept in-memory.")
        return InMemoryKV()

    client = redis.from_url(redis_url, decode_responses=True)
    try:
        # ping to ensure connection; this may raise if unreachable
        await client.ping()
    except Exception as exc:
        logger.exception("Failed to connect to Redis at %s, falling back to in-memory: %s", redis_url, exc)
        await client.aclose()
        return InMemoryKV()
    logger.info("Connected to Redis at %s", redis_url)
    return RedisKV(client)


class SessionStore:
    def __init__(self, kv, ttl_seconds: int = DEFAULT_SESSION_TTL):
        self.kv = kv
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(call_sid: str) -> str:
        return f"{SESSION_PREFIX}{call_sid}"

    async def _write(self, session: CallSession) -> None:
        await self.kv.set(self.key(session.call_sid), session.model_dump_json(), self.ttl_seconds)

    async def create(
        self,
        call_sid: str,
        caller_phone: str,
        call_id: str,
        user_id: Optional[str] = None,
        state: CallState = CallState.IDENTIFYING,
        preferred_name: Optional[str] = None,
    ) -> CallSession:
        now = _now_ms()
        session = CallSession(
            call_id=call_id,
            call_sid=call_sid,
            user_id=user_id,
            state=state,
            caller_phone=caller_phone,
            preferred_name=preferred_name,
            created_at=now,
            updated_at=now,
        )
        await self._write(session)
        logger.info("Created session for call %s (state=%s)", call_sid, state.value)
        return session

    async def get(self, call_sid: str) -> Optional[CallSession]:
        raw = await self.kv.get(self.key(call_sid))
        if not raw:
            return None
        try:
            session = CallSession.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Discarding undecodable session for call %s: %s", call_sid, exc)
            return None
        if session.schema_version != SESSION_SCHEMA_VERSION:
            logger.warning(
                "Ignoring session for call %s with schema_version=%s", call_sid, session.schema_version
            )
            return None
        return session

    async def update(self, call_sid: str, **fields: Any) -> Optional[CallSession]:
        """
        Read-modify-write: merge `fields` into the stored session, bump updated_at
        and refresh the TTL. Returns None if the session no longer exists.
        """
        session = await self.get(call_sid)
        if session is None:
            logger.debug("update on missing session %s ignored", call_sid)
            return None

        blocked = _IMMUTABLE_FIELDS.intersection(fields)
        if blocked:
            raise ValueError(f"cannot update immutable session fields: {sorted(blocked)}")

        data = session.model_dump()
        data.update(fields)
        # strictly increasing even when two writes land in the same millisecond
        data["updated_at"] = max(_now_ms(), session.updated_at + 1)
        updated = CallSession.model_validate(data)
        await self._write(updated)
        logger.debug("Updated session %s fields=%s", call_sid, sorted(fields))
        return updated

    async def set_state(self, call_sid: str, state: CallState) -> Optional[CallSession]:
        return await self.update(call_sid, state=state)

    async def set_user_id(self, call_sid: str, user_id: str) -> Optional[CallSession]:
        return await self.update(call_sid, user_id=user_id)

    async def set_preferred_name(self, call_sid: str, name: str) -> Optional[CallSession]:
        return await self.update(call_sid, preferred_name=name)

    async def increment_message_count(self, call_sid: str) -> int:
        session = await self.get(call_sid)
        if session is None:
            return 0
        updated = await self.update(call_sid, message_count=session.message_count + 1)
        return updated.message_count if updated else 0

    async def get_context(self, call_sid: str, key: str, default: Any = None) -> Any:
        session = await self.get(call_sid)
        if session is None:
            return default
        return session.context.get(key, default)

    async def set_context(self, call_sid: str, key: str, value: Any) -> Optional[CallSession]:
        session = await self.get(call_sid)
        if session is None:
            return None
        return await self.update(call_sid, context={**session.context, key: value})

    async def delete(self, call_sid: str) -> bool:
        """Remove the session. True only for the caller that actually removed it."""
        removed = await self.kv.delete(self.key(call_sid))
        if removed:
            logger.info("Deleted session for call %s", call_sid)
        return removed

    async def extend(self, call_sid: str) -> bool:
        extended = await self.kv.expire(self.key(call_sid), self.ttl_seconds)
        if extended:
            logger.debug("Extended session TTL for call %s", call_sid)
        return extended
