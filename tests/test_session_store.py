"""Tests for the in-process session store contract.

The same contract is implemented by RedisSessionStore; these tests pin the
semantics both must share: digest-keyed lookup, single-winner consume, TTL
expiry and per-user revocation.
"""

import asyncio
import json

import pytest

from boilerhub.storage.session_store import (
    MemorySessionStore,
    SessionRecord,
    refresh_key,
    session_key,
    token_digest,
    user_sessions_key,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemorySessionStore(clock=clock)


class TestKeys:
    def test_key_layout(self):
        assert session_key("u1", "s1") == "auth:session:u1:s1"
        assert refresh_key("abc") == "auth:refresh:abc"
        assert user_sessions_key("u1") == "auth:user_sessions:u1"

    def test_digest_is_sha256_hex(self):
        digest = token_digest("refresh-token")
        assert len(digest) == 64
        assert digest != "refresh-token"
        assert digest == token_digest("refresh-token")

    def test_record_json_round_trip_is_stable(self):
        record = SessionRecord.from_json(
            json.dumps(
                {
                    "user_id": "u1",
                    "session_id": "s1",
                    "created_at": "2024-01-01T00:00:00",
                    "token_digest": "d",
                }
            )
        )
        assert record.created_at.tzinfo is not None
        assert SessionRecord.from_json(record.to_json()) == record


class TestLookup:
    async def test_put_then_get_by_refresh_value(self, store):
        await store.put("u1", "s1", "token-a", 60)
        record = await store.get_by_refresh_value("token-a")
        assert record is not None
        assert (record.user_id, record.session_id) == ("u1", "s1")
        assert record.token_digest == token_digest("token-a")
        assert await store.session_exists("u1", "s1")

    async def test_unknown_token_is_absent(self, store):
        assert await store.get_by_refresh_value("never-issued") is None

    async def test_entries_expire_after_ttl(self, store, clock):
        await store.put("u1", "s1", "token-a", 60)
        clock.now += 59
        assert await store.get_by_refresh_value("token-a") is not None
        clock.now += 1
        assert await store.get_by_refresh_value("token-a") is None
        assert not await store.session_exists("u1", "s1")

    async def test_put_sweeps_expired_entries_never_read_again(self, store, clock):
        for i in range(10):
            await store.put(f"u{i}", "s1", f"token-{i}", 60)
        clock.now += 61

        await store.put("fresh", "s1", "token-fresh", 60)

        assert list(store._by_session) == [("fresh", "s1")]
        assert list(store._by_digest) == [token_digest("token-fresh")]
        assert store._user_sessions == {"fresh": {"s1"}}


class TestConsume:
    async def test_consume_removes_both_entries(self, store):
        record = await store.put("u1", "s1", "token-a", 60)
        assert await store.consume(record) is True
        assert await store.get_by_refresh_value("token-a") is None
        assert not await store.session_exists("u1", "s1")

    async def test_second_consume_loses(self, store):
        record = await store.put("u1", "s1", "token-a", 60)
        assert await store.consume(record) is True
        assert await store.consume(record) is False

    async def test_concurrent_consumers_have_one_winner(self, store):
        record = await store.put("u1", "s1", "token-a", 60)
        results = await asyncio.gather(*(store.consume(record) for _ in range(10)))
        assert results.count(True) == 1

    async def test_expired_record_cannot_be_consumed(self, store, clock):
        record = await store.put("u1", "s1", "token-a", 60)
        clock.now += 61
        assert await store.consume(record) is False


class TestRevocation:
    async def test_delete_all_sessions_counts_live_sessions(self, store):
        await store.put("u1", "s1", "token-a", 60)
        await store.put("u1", "s2", "token-b", 60)
        await store.put("u2", "s3", "token-c", 60)
        assert await store.delete_all_sessions("u1") == 2
        assert await store.get_by_refresh_value("token-a") is None
        assert await store.get_by_refresh_value("token-b") is None
        assert await store.get_by_refresh_value("token-c") is not None

    async def test_delete_all_sessions_is_idempotent(self, store):
        await store.put("u1", "s1", "token-a", 60)
        assert await store.delete_all_sessions("u1") == 1
        assert await store.delete_all_sessions("u1") == 0
        assert await store.delete_all_sessions("nobody") == 0

    async def test_delete_single_session(self, store):
        await store.put("u1", "s1", "token-a", 60)
        await store.put("u1", "s2", "token-b", 60)
        assert await store.delete_session("u1", "s1") is True
        assert await store.delete_session("u1", "s1") is False
        assert await store.get_by_refresh_value("token-a") is None
        assert await store.session_exists("u1", "s2")

    async def test_rewriting_a_session_drops_the_old_token(self, store):
        await store.put("u1", "s1", "token-a", 60)
        await store.put("u1", "s1", "token-b", 60)
        assert await store.get_by_refresh_value("token-a") is None
        assert await store.get_by_refresh_value("token-b") is not None
