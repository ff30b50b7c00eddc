from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from wedding_admin.logging import get_logger
from wedding_admin.storage.counters import LockoutCounter, SlidingWindowState, TokenBucketState
from wedding_admin.storage.errors import StoreUnavailableError
from wedding_admin.storage.models import Clock, Session, utcnow

logger = get_logger(__name__)


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (RedisError, OSError) as exc:
        logger.warning("redis_operation_failed", operation=operation, error=str(exc))
        raise StoreUnavailableError(f"counter store {operation} failed", operation=operation) from exc


def _ms(seconds: float) -> int:
    return max(1, int(seconds * 1000))


def _build_client(redis_url: str, socket_timeout: float) -> aioredis.Redis:
    return aioredis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )


def verify_connection(redis_url: str) -> None:
    """Assert Redis connectivity before enabling dependent features."""
    # Short-lived synchronous client so the async client is not bound to a
    # temporary event loop during startup checks.
    sync_client = Redis.from_url(redis_url, decode_responses=True)
    try:
        sync_client.ping()
    finally:
        sync_client.close()


class RedisCounterStore:
    """Counter store backed by Redis; every operation is one Lua script."""

    # INCR with the TTL applied only when the key is created
    _INCR_SCRIPT = """
local value = redis.call('INCR', KEYS[1])
if value == 1 or redis.call('PTTL', KEYS[1]) < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
return value
"""

    # KEYS[1] lock key, KEYS[2] attempts key
    # ARGV: threshold, window ms, lock ms
    _LOCKOUT_SCRIPT = """
local lock_ttl = redis.call('PTTL', KEYS[1])
if lock_ttl > 0 then
  return {0, 1, 0, lock_ttl}
end

local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 or redis.call('PTTL', KEYS[2]) < 0 then
  redis.call('PEXPIRE', KEYS[2], ARGV[2])
end
local window_ttl = redis.call('PTTL', KEYS[2])

if attempts >= tonumber(ARGV[1]) then
  redis.call('SET', KEYS[1], '1', 'PX', ARGV[3])
  redis.call('DEL', KEYS[2])
  return {attempts, 1, window_ttl, tonumber(ARGV[3])}
end

return {attempts, 0, window_ttl, 0}
"""

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)
local ttl = math.max(math.ceil(capacity / refill_rate), 1)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, ttl)
  return {0, tostring(tokens), reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, ttl)
return {1, tostring(tokens), 0}
"""

    # Sliding log: one sorted-set member per admitted request, scored by time.
    # ARGV: now, window seconds, limit, member
    _SLIDING_LOG_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < limit then
  redis.call('ZADD', key, now, ARGV[4])
  redis.call('PEXPIRE', key, math.ceil(window * 1000))
  count = count + 1
  allowed = 1
end

local reset_after = 0
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if oldest[2] then
  reset_after = math.max(0, tonumber(oldest[2]) + window - now)
end
return {allowed, count, tostring(reset_after)}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 2.0,
        client: aioredis.Redis | None = None,
    ) -> None:
        self.redis_url = redis_url
        self.client = client or _build_client(redis_url, socket_timeout)
        self._incr = self.client.register_script(self._INCR_SCRIPT)
        self._lockout = self.client.register_script(self._LOCKOUT_SCRIPT)
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._sliding_log = self.client.register_script(self._SLIDING_LOG_SCRIPT)

    async def increment_and_get(self, key: str, ttl_seconds: float) -> int:
        with _store_errors("increment"):
            value = await self._incr(keys=[key], args=[_ms(ttl_seconds)])
        return int(value)

    async def get(self, key: str) -> int:
        with _store_errors("get"):
            value = await self.client.get(key)
        return int(value) if value is not None else 0

    async def ttl(self, key: str) -> Optional[float]:
        with _store_errors("ttl"):
            remaining = await self.client.pttl(key)
        # -2: missing, -1: no expiry
        if remaining is None or int(remaining) < 0:
            return None
        return int(remaining) / 1000.0

    async def reset(self, *keys: str) -> None:
        if not keys:
            return
        with _store_errors("reset"):
            await self.client.delete(*keys)

    async def increment_and_lock(
        self,
        attempts_key: str,
        lock_key: str,
        *,
        threshold: int,
        window_seconds: float,
        lock_seconds: float,
    ) -> LockoutCounter:
        with _store_errors("increment_and_lock"):
            count, locked, window_ms, lock_ms = await self._lockout(
                keys=[lock_key, attempts_key],
                args=[threshold, _ms(window_seconds), _ms(lock_seconds)],
            )
        return LockoutCounter(
            count=int(count),
            locked=bool(int(locked)),
            window_remaining=max(0, int(window_ms)) / 1000.0,
            lock_remaining=max(0, int(lock_ms)) / 1000.0,
        )

    async def consume_token(
        self,
        key: str,
        *,
        capacity: int,
        refill_per_second: float,
        now: float,
        cost: int = 1,
    ) -> TokenBucketState:
        with _store_errors("consume_token"):
            allowed, tokens, reset_after = await self._token_bucket(
                keys=[key], args=[now, refill_per_second, capacity, max(1, cost)]
            )
        return TokenBucketState(
            allowed=bool(int(allowed)),
            tokens=float(tokens),
            retry_after=float(reset_after or 0),
        )

    async def record_in_window(
        self,
        key: str,
        *,
        limit: int,
        window_seconds: float,
        now: float,
    ) -> SlidingWindowState:
        with _store_errors("record_in_window"):
            allowed, count, reset_after = await self._sliding_log(
                keys=[key], args=[now, window_seconds, limit, uuid.uuid4().hex]
            )
        return SlidingWindowState(
            allowed=bool(int(allowed)), count=int(count), reset_after=float(reset_after)
        )

    async def purge_expired(self) -> int:
        # Redis expires keys on its own
        return 0

    async def close(self) -> None:
        await self.client.aclose()

    def verify_connection(self) -> None:
        verify_connection(self.redis_url)


class RedisSessionStore:
    """Sessions and CSRF bindings stored as Redis keys with native TTLs."""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 2.0,
        client: aioredis.Redis | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.redis_url = redis_url
        self.client = client or _build_client(redis_url, socket_timeout)
        self._clock = clock

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"admin:session:{session_id}"

    @staticmethod
    def _subject_key(subject_id: str) -> str:
        return f"admin:subject_sessions:{subject_id}"

    @staticmethod
    def _csrf_key(binding_key: str) -> str:
        return f"admin:csrf:{binding_key}"

    def _ttl_ms(self, expires_at: datetime) -> int:
        """TTL in ms from an absolute expiry, clamped so Redis never sees <= 0."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return _ms((expires_at - self._clock()).total_seconds())

    async def put_session(self, session: Session) -> None:
        ttl_ms = self._ttl_ms(session.expires_at)
        with _store_errors("put_session"):
            pipe = self.client.pipeline()
            pipe.set(self._session_key(session.id), json.dumps(session.to_dict()), px=ttl_ms)
            # Tracked per subject so deactivation can revoke every session
            pipe.sadd(self._subject_key(session.subject_id), session.id)
            pipe.pexpire(self._subject_key(session.subject_id), ttl_ms, nx=True)
            pipe.pexpire(self._subject_key(session.subject_id), ttl_ms, gt=True)
            await pipe.execute()

    async def touch_session(self, session: Session) -> bool:
        # XX: never recreate a record deleted by logout or revocation
        with _store_errors("touch_session"):
            updated = await self.client.set(
                self._session_key(session.id),
                json.dumps(session.to_dict()),
                px=self._ttl_ms(session.expires_at),
                xx=True,
            )
        return bool(updated)

    async def get_session(self, session_id: str) -> Optional[Session]:
        with _store_errors("get_session"):
            raw = await self.client.get(self._session_key(session_id))
        if raw is None:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (ValueError, KeyError) as exc:
            logger.error("session_record_corrupt", error=str(exc))
            return None

    async def delete_session(self, session_id: str) -> bool:
        with _store_errors("delete_session"):
            deleted = await self.client.delete(self._session_key(session_id))
        return bool(deleted)

    async def delete_subject_sessions(
        self, subject_id: str, except_session_id: Optional[str] = None
    ) -> int:
        subject_key = self._subject_key(subject_id)
        with _store_errors("delete_subject_sessions"):
            session_ids = await self.client.smembers(subject_key)
            if not session_ids:
                return 0
            revoked = 0
            pipe = self.client.pipeline()
            for session_id in session_ids:
                if except_session_id and session_id == except_session_id:
                    continue
                pipe.delete(self._session_key(session_id))
                pipe.delete(self._csrf_key(session_id))
                pipe.srem(subject_key, session_id)
                revoked += 1
            await pipe.execute()
        return revoked

    async def bind_csrf(self, binding_key: str, cookie_hash: str, expires_at: datetime) -> None:
        with _store_errors("bind_csrf"):
            await self.client.set(
                self._csrf_key(binding_key), cookie_hash, px=self._ttl_ms(expires_at)
            )

    async def get_csrf(self, binding_key: str) -> Optional[str]:
        with _store_errors("get_csrf"):
            return await self.client.get(self._csrf_key(binding_key))

    async def unbind_csrf(self, binding_key: str) -> None:
        with _store_errors("unbind_csrf"):
            await self.client.delete(self._csrf_key(binding_key))

    async def purge_expired(self, now: datetime, inactivity_seconds: float) -> int:
        return 0

    async def close(self) -> None:
        await self.client.aclose()
