from __future__ import annotations

import hashlib
import json
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Set, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError

from boilerhub.logging import get_logger
from boilerhub.storage.errors import SessionStoreUnavailable

logger = get_logger(__name__)

SESSION_PREFIX = "auth:session:"
REFRESH_PREFIX = "auth:refresh:"
USER_SESSIONS_PREFIX = "auth:user_sessions:"


def token_digest(refresh_token: str) -> str:
    """SHA-256 hex digest used to key a refresh token without storing it."""
    return hashlib.sha256(refresh_token.encode("utf-8")).hexdigest()


def session_key(user_id: str, session_id: str) -> str:
    return f"{SESSION_PREFIX}{user_id}:{session_id}"


def refresh_key(digest: str) -> str:
    return f"{REFRESH_PREFIX}{digest}"


def user_sessions_key(user_id: str) -> str:
    return f"{USER_SESSIONS_PREFIX}{user_id}"


@dataclass(frozen=True)
class SessionRecord:
    user_id: str
    session_id: str
    created_at: datetime
    token_digest: str

    def to_json(self) -> str:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return json.dumps(payload, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "SessionRecord":
        data = json.loads(raw)
        created_at = datetime.fromisoformat(data["created_at"])
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return cls(
            user_id=str(data["user_id"]),
            session_id=str(data["session_id"]),
            created_at=created_at,
            token_digest=str(data["token_digest"]),
        )


class RedisSessionStore:
    """Session records in Redis, keyed both by identity and by refresh token.

    Layout:
    - ``auth:session:{user_id}:{session_id}`` -> record JSON
    - ``auth:refresh:{sha256(token)}`` -> the same record JSON
    - ``auth:user_sessions:{user_id}`` -> set of live session ids

    Every mutation that touches more than one key runs inside MULTI/EXEC or a
    Lua script, so the two record keys are always created and removed together.
    """

    # KEYS: token key, session key, user index. ARGV: expected session id
    _CONSUME_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local rec = cjson.decode(raw)
if rec['session_id'] ~= ARGV[1] then
  return 0
end
redis.call('DEL', KEYS[1], KEYS[2])
redis.call('SREM', KEYS[3], ARGV[1])
return 1
"""

    # KEYS: session key, user index. ARGV: session id, refresh key prefix
    _DELETE_SESSION_SCRIPT = """
redis.call('SREM', KEYS[2], ARGV[1])
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local rec = cjson.decode(raw)
redis.call('DEL', KEYS[1], ARGV[2] .. rec['token_digest'])
return 1
"""

    # KEYS: user index. ARGV: session key prefix for the user, refresh key prefix
    _DELETE_ALL_SCRIPT = """
local ids = redis.call('SMEMBERS', KEYS[1])
local removed = 0
for _, sid in ipairs(ids) do
  local skey = ARGV[1] .. sid
  local raw = redis.call('GET', skey)
  if raw then
    local rec = cjson.decode(raw)
    redis.call('DEL', skey, ARGV[2] .. rec['token_digest'])
    removed = removed + 1
  end
end
redis.call('DEL', KEYS[1])
return removed
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        max_retries: int = 3,
        backoff_cap: float = 3.0,
    ):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            retry=Retry(ExponentialBackoff(cap=backoff_cap, base=1.0), max_retries),
            retry_on_timeout=True,
        )
        self._register_scripts()

    def _register_scripts(self) -> None:
        self._consume = self.client.register_script(self._CONSUME_SCRIPT)
        self._delete_session = self.client.register_script(self._DELETE_SESSION_SCRIPT)
        self._delete_all = self.client.register_script(self._DELETE_ALL_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # A short-lived sync client keeps the async pool off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def put(
        self, user_id: str, session_id: str, refresh_token: str, ttl_seconds: int
    ) -> SessionRecord:
        record = SessionRecord(
            user_id=user_id,
            session_id=session_id,
            created_at=datetime.now(timezone.utc),
            token_digest=token_digest(refresh_token),
        )
        payload = record.to_json()
        ttl = max(1, int(ttl_seconds))
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.set(session_key(user_id, session_id), payload, ex=ttl)
            pipe.set(refresh_key(record.token_digest), payload, ex=ttl)
            pipe.sadd(user_sessions_key(user_id), session_id)
            pipe.expire(user_sessions_key(user_id), ttl)
            await pipe.execute()
        except RedisError as exc:
            raise SessionStoreUnavailable("put", exc) from exc
        return record

    async def get_by_refresh_value(self, refresh_token: str) -> Optional[SessionRecord]:
        try:
            raw = await self.client.get(refresh_key(token_digest(refresh_token)))
        except RedisError as exc:
            raise SessionStoreUnavailable("get", exc) from exc
        if not raw:
            return None
        try:
            return SessionRecord.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("session_record_corrupt", error=str(exc))
            return None

    async def consume(self, record: SessionRecord) -> bool:
        """Atomically delete ``record`` if it is still the live one.

        Exactly one of several concurrent callers holding the same record gets
        ``True``.
        """
        keys = [
            refresh_key(record.token_digest),
            session_key(record.user_id, record.session_id),
            user_sessions_key(record.user_id),
        ]
        try:
            result = await self._consume(keys=keys, args=[record.session_id])
        except RedisError as exc:
            raise SessionStoreUnavailable("consume", exc) from exc
        return int(result or 0) == 1

    async def session_exists(self, user_id: str, session_id: str) -> bool:
        try:
            return bool(await self.client.exists(session_key(user_id, session_id)))
        except RedisError as exc:
            raise SessionStoreUnavailable("exists", exc) from exc

    async def delete_session(self, user_id: str, session_id: str) -> bool:
        try:
            result = await self._delete_session(
                keys=[session_key(user_id, session_id), user_sessions_key(user_id)],
                args=[session_id, REFRESH_PREFIX],
            )
        except RedisError as exc:
            raise SessionStoreUnavailable("delete", exc) from exc
        return int(result or 0) == 1

    async def delete_all_sessions(self, user_id: str) -> int:
        try:
            result = await self._delete_all(
                keys=[user_sessions_key(user_id)],
                args=[f"{SESSION_PREFIX}{user_id}:", REFRESH_PREFIX],
            )
        except RedisError as exc:
            raise SessionStoreUnavailable("delete_all", exc) from exc
        return int(result or 0)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as exc:
            raise SessionStoreUnavailable("ping", exc) from exc

    async def close(self) -> None:
        await self.client.aclose()


class MemorySessionStore:
    """In-process session store with the same contract as ``RedisSessionStore``.

    Entries expire against ``clock`` (seconds, monotonic by default): reads
    drop the entry they hit, and every ``put`` sweeps all expired entries.
    The lock is never held across an await.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._by_session: Dict[Tuple[str, str], Tuple[SessionRecord, float]] = {}
        self._by_digest: Dict[str, Tuple[SessionRecord, float]] = {}
        self._user_sessions: Dict[str, Set[str]] = {}

    def verify_connection(self) -> None:
        return None

    def _live(self, entry: Optional[Tuple[SessionRecord, float]]) -> Optional[SessionRecord]:
        if entry is None:
            return None
        record, expires_at = entry
        if expires_at <= self._clock():
            self._drop(record)
            return None
        return record

    def _sweep(self) -> None:
        now = self._clock()
        expired = [record for record, expires_at in self._by_session.values() if expires_at <= now]
        for record in expired:
            self._drop(record)

    def _drop(self, record: SessionRecord) -> None:
        self._by_session.pop((record.user_id, record.session_id), None)
        self._by_digest.pop(record.token_digest, None)
        sessions = self._user_sessions.get(record.user_id)
        if sessions is not None:
            sessions.discard(record.session_id)
            if not sessions:
                self._user_sessions.pop(record.user_id, None)

    async def put(
        self, user_id: str, session_id: str, refresh_token: str, ttl_seconds: int
    ) -> SessionRecord:
        record = SessionRecord(
            user_id=user_id,
            session_id=session_id,
            created_at=datetime.now(timezone.utc),
            token_digest=token_digest(refresh_token),
        )
        expires_at = self._clock() + max(1, int(ttl_seconds))
        with self._lock:
            self._sweep()
            previous = self._by_session.get((user_id, session_id))
            if previous is not None:
                self._drop(previous[0])
            self._by_session[(user_id, session_id)] = (record, expires_at)
            self._by_digest[record.token_digest] = (record, expires_at)
            self._user_sessions.setdefault(user_id, set()).add(session_id)
        return record

    async def get_by_refresh_value(self, refresh_token: str) -> Optional[SessionRecord]:
        with self._lock:
            return self._live(self._by_digest.get(token_digest(refresh_token)))

    async def consume(self, record: SessionRecord) -> bool:
        with self._lock:
            current = self._live(self._by_digest.get(record.token_digest))
            if current is None or current.session_id != record.session_id:
                return False
            self._drop(current)
            return True

    async def session_exists(self, user_id: str, session_id: str) -> bool:
        with self._lock:
            return self._live(self._by_session.get((user_id, session_id))) is not None

    async def delete_session(self, user_id: str, session_id: str) -> bool:
        with self._lock:
            entry = self._by_session.get((user_id, session_id))
            if entry is None:
                return False
            live = self._live(entry) is not None
            self._drop(entry[0])
            return live

    async def delete_all_sessions(self, user_id: str) -> int:
        with self._lock:
            removed = 0
            for session_id in list(self._user_sessions.get(user_id, ())):
                entry = self._by_session.get((user_id, session_id))
                if entry is None:
                    continue
                if self._live(entry) is not None:
                    removed += 1
                    self._drop(entry[0])
            self._user_sessions.pop(user_id, None)
            return removed

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


__all__ = [
    "SessionRecord",
    "RedisSessionStore",
    "MemorySessionStore",
    "token_digest",
]
