"""Tests for the Redis-backed stores against a mocked client."""

import json
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from wedding_admin.storage.errors import StoreUnavailableError
from wedding_admin.storage.models import Session
from wedding_admin.storage.redis_cache import RedisCounterStore, RedisSessionStore


@pytest.fixture
def redis_client():
    client = Mock()
    client.register_script.side_effect = lambda script: AsyncMock()
    client.get = AsyncMock(return_value=None)
    client.pttl = AsyncMock(return_value=-2)
    client.delete = AsyncMock(return_value=1)
    client.set = AsyncMock()
    client.smembers = AsyncMock(return_value=set())
    client.aclose = AsyncMock()
    pipe = Mock()
    pipe.execute = AsyncMock(return_value=[])
    client.pipeline.return_value = pipe
    return client


@pytest.fixture
def counters(redis_client):
    return RedisCounterStore("redis://localhost:6379/0", client=redis_client)


class TestRedisCounterStore:
    def test_scripts_registered_once(self, counters, redis_client):
        """Each Lua script is registered when the store is built."""
        assert redis_client.register_script.call_count == 4

    async def test_increment_passes_ttl_in_ms(self, counters):
        """increment_and_get runs the INCR script with the TTL in milliseconds."""
        counters._incr.return_value = 3

        assert await counters.increment_and_get("rate:k", 60) == 3
        counters._incr.assert_awaited_once_with(keys=["rate:k"], args=[60000])

    async def test_get_and_ttl(self, counters, redis_client):
        """Missing keys read as zero and no TTL."""
        assert await counters.get("k") == 0
        assert await counters.ttl("k") is None

        redis_client.get.return_value = "4"
        redis_client.pttl.return_value = 1500
        assert await counters.get("k") == 4
        assert await counters.ttl("k") == 1.5

    async def test_increment_and_lock_result(self, counters):
        """The lockout script's reply is decoded into a LockoutCounter."""
        counters._lockout.return_value = [5, 1, 120000, 900000]

        result = await counters.increment_and_lock(
            "attempts", "lock", threshold=5, window_seconds=900, lock_seconds=900
        )

        assert result.count == 5
        assert result.locked
        assert result.window_remaining == 120
        assert result.lock_remaining == 900
        counters._lockout.assert_awaited_once_with(
            keys=["lock", "attempts"], args=[5, 900000, 900000]
        )

    async def test_consume_token_result(self, counters):
        """Token bucket replies carry allowance, tokens and retry time."""
        counters._token_bucket.return_value = [0, "0.5", 2]

        state = await counters.consume_token(
            "bucket", capacity=3, refill_per_second=0.25, now=1000.0
        )

        assert not state.allowed
        assert state.tokens == 0.5
        assert state.retry_after == 2

    async def test_record_in_window_result(self, counters):
        """The sliding-log reply is decoded and each call gets a unique member."""
        counters._sliding_log.return_value = [0, 5, "12.5"]

        state = await counters.record_in_window("log", limit=5, window_seconds=60, now=1000.0)

        assert not state.allowed
        assert state.count == 5
        assert state.reset_after == 12.5
        args = counters._sliding_log.await_args.kwargs["args"]
        assert args[:3] == [1000.0, 60, 5]
        assert len(args[3]) == 32

    async def test_reset_without_keys_is_noop(self, counters, redis_client):
        """reset() with nothing to delete does not call Redis."""
        await counters.reset()
        redis_client.delete.assert_not_awaited()

        await counters.reset("a", "b")
        redis_client.delete.assert_awaited_once_with("a", "b")

    async def test_redis_errors_become_store_unavailable(self, counters):
        """Client failures surface as StoreUnavailableError."""
        counters._incr.side_effect = RedisConnectionError("connection refused")

        with pytest.raises(StoreUnavailableError) as exc_info:
            await counters.increment_and_get("k", 60)
        assert exc_info.value.operation == "increment"

    async def test_close(self, counters, redis_client):
        """close releases the client connection pool."""
        await counters.close()
        redis_client.aclose.assert_awaited_once()


class TestRedisSessionStore:
    def _session(self, clock):
        return Session.new(
            "subject-1", "admin", frozenset({"manage_content"}), now=clock(), ttl=timedelta(hours=2)
        )

    async def test_put_session_sets_ttl_and_index(self, redis_client, clock):
        """Sessions are written with their remaining lifetime and indexed by subject."""
        store = RedisSessionStore("redis://x", client=redis_client, clock=clock)
        session = self._session(clock)

        await store.put_session(session)

        pipe = redis_client.pipeline.return_value
        key, payload = pipe.set.call_args.args
        assert key == f"admin:session:{session.id}"
        assert json.loads(payload)["subject_id"] == "subject-1"
        assert pipe.set.call_args.kwargs["px"] == 2 * 3600 * 1000
        pipe.sadd.assert_called_once_with("admin:subject_sessions:subject-1", session.id)
        pipe.execute.assert_awaited_once()

    async def test_touch_session_only_updates_existing(self, redis_client, clock):
        """Activity touches use SET XX so a deleted session is never recreated."""
        store = RedisSessionStore("redis://x", client=redis_client, clock=clock)
        session = self._session(clock)
        redis_client.set.return_value = None

        assert await store.touch_session(session) is False
        assert redis_client.set.call_args.kwargs["xx"] is True
        assert redis_client.set.call_args.kwargs["px"] == 2 * 3600 * 1000

        redis_client.set.return_value = True
        assert await store.touch_session(session) is True

    async def test_get_session_round_trip(self, redis_client, clock):
        """Stored JSON is decoded back into a Session."""
        store = RedisSessionStore("redis://x", client=redis_client, clock=clock)
        session = self._session(clock)
        redis_client.get.return_value = json.dumps(session.to_dict())

        loaded = await store.get_session(session.id)

        assert loaded == session

    async def test_corrupt_record_reads_as_missing(self, redis_client, clock):
        """Undecodable records are treated as absent."""
        store = RedisSessionStore("redis://x", client=redis_client, clock=clock)
        redis_client.get.return_value = "{not json"

        assert await store.get_session("abc") is None

    async def test_delete_subject_sessions_keeps_exception(self, redis_client, clock):
        """All indexed sessions but the excepted one are deleted."""
        store = RedisSessionStore("redis://x", client=redis_client, clock=clock)
        redis_client.smembers.return_value = {"s1", "s2"}

        revoked = await store.delete_subject_sessions("subject-1", except_session_id="s2")

        assert revoked == 1
        pipe = redis_client.pipeline.return_value
        pipe.delete.assert_any_call("admin:session:s1")
        pipe.delete.assert_any_call("admin:csrf:s1")

    async def test_csrf_binding(self, redis_client, clock):
        """CSRF hashes are stored with a TTL matching the token expiry."""
        store = RedisSessionStore("redis://x", client=redis_client, clock=clock)

        await store.bind_csrf("s1", "123.abc", clock() + timedelta(minutes=10))

        redis_client.set.assert_awaited_once_with("admin:csrf:s1", "123.abc", px=600000)

    async def test_errors_become_store_unavailable(self, redis_client, clock):
        """Session store failures are reported uniformly."""
        store = RedisSessionStore("redis://x", client=redis_client, clock=clock)
        redis_client.get.side_effect = RedisConnectionError("down")

        with pytest.raises(StoreUnavailableError):
            await store.get_session("abc")
