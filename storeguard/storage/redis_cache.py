from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import List, Optional, Tuple, Union

import redis.asyncio as aioredis

from storeguard.logging import get_logger
from storeguard.storage.models import Session

logger = get_logger(__name__)


def _ttl_seconds(expires_at: datetime, now: Optional[datetime] = None) -> int:
    """Seconds until ``expires_at``, clamped to at least 1 for Redis EX."""

    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    reference = now or datetime.now(timezone.utc)
    return max(1, int((expires_at - reference).total_seconds()))


class RedisSessionStore:
    """Session records as JSON under ``session:{id}`` with an account index set.

    Conditional updates run as Lua scripts so a concurrent delete can never be
    undone by a late touch or refresh.
    """

    _PUT_SCRIPT = """
redis.call('SET', KEYS[1], ARGV[1], 'EX', tonumber(ARGV[2]))
redis.call('SADD', KEYS[2], ARGV[3])
if redis.call('TTL', KEYS[2]) < tonumber(ARGV[2]) then
  redis.call('EXPIRE', KEYS[2], tonumber(ARGV[2]))
end
return 1
"""

    _TOUCH_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local data = cjson.decode(raw)
data['last_accessed_at'] = ARGV[1]
redis.call('SET', KEYS[1], cjson.encode(data), 'KEEPTTL')
return 1
"""

    # Extension only ever moves expiry forward so racing refreshes converge
    _EXTEND_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local data = cjson.decode(raw)
data['last_accessed_at'] = ARGV[2]
local ttl = tonumber(ARGV[3])
if redis.call('TTL', KEYS[1]) < ttl then
  data['expires_at'] = ARGV[1]
  redis.call('SET', KEYS[1], cjson.encode(data), 'EX', ttl)
  if redis.call('TTL', KEYS[2]) < ttl then
    redis.call('EXPIRE', KEYS[2], ttl)
  end
else
  redis.call('SET', KEYS[1], cjson.encode(data), 'KEEPTTL')
end
return 1
"""

    _MFA_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local data = cjson.decode(raw)
data['mfa_verified'] = true
redis.call('SET', KEYS[1], cjson.encode(data), 'KEEPTTL')
return 1
"""

    def __init__(self, client: aioredis.Redis):
        self.client = client
        self._put = client.register_script(self._PUT_SCRIPT)
        self._touch = client.register_script(self._TOUCH_SCRIPT)
        self._extend = client.register_script(self._EXTEND_SCRIPT)
        self._mark_mfa = client.register_script(self._MFA_SCRIPT)

    @staticmethod
    def _key(session_id: str) -> str:
        return f"session:{session_id}"

    @staticmethod
    def _account_key(account_id: str) -> str:
        return f"session:account:{account_id}"

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[Session]:
        if raw is None:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("session_record_corrupt")
            return None

    async def put(self, session: Session) -> None:
        await self._put(
            keys=[self._key(session.id), self._account_key(session.account_id)],
            args=[
                json.dumps(session.to_dict()),
                _ttl_seconds(session.expires_at),
                session.id,
            ],
        )

    async def get(self, session_id: str) -> Optional[Session]:
        return self._decode(await self.client.get(self._key(session_id)))

    async def touch(self, session_id: str, now: datetime) -> bool:
        result = await self._touch(keys=[self._key(session_id)], args=[now.isoformat()])
        return bool(int(result))

    async def extend(self, session_id: str, expires_at: datetime, now: datetime) -> bool:
        sess = await self.get(session_id)
        if sess is None:
            return False
        result = await self._extend(
            keys=[self._key(session_id), self._account_key(sess.account_id)],
            args=[expires_at.isoformat(), now.isoformat(), _ttl_seconds(expires_at, now)],
        )
        return bool(int(result))

    async def mark_mfa_verified(self, session_id: str) -> bool:
        result = await self._mark_mfa(keys=[self._key(session_id)], args=[])
        return bool(int(result))

    async def pop(self, session_id: str) -> Optional[Session]:
        sess = self._decode(await self.client.getdel(self._key(session_id)))
        if sess is not None:
            await self.client.srem(self._account_key(sess.account_id), session_id)
        return sess

    async def delete_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> List[str]:
        index_key = self._account_key(account_id)
        session_ids = [
            sid
            for sid in await self.client.smembers(index_key)
            if not (except_session_id and sid == except_session_id)
        ]
        if not session_ids:
            return []
        pipe = self.client.pipeline()
        for session_id in session_ids:
            pipe.delete(self._key(session_id))
        for session_id in session_ids:
            pipe.srem(index_key, session_id)
        results = await pipe.execute()
        return [sid for sid, deleted in zip(session_ids, results) if int(deleted)]

    async def list_account_sessions(self, account_id: str) -> List[Session]:
        index_key = self._account_key(account_id)
        session_ids = list(await self.client.smembers(index_key))
        if not session_ids:
            return []
        raws = await self.client.mget([self._key(sid) for sid in session_ids])
        sessions: List[Session] = []
        stale: List[str] = []
        for session_id, raw in zip(session_ids, raws):
            sess = self._decode(raw)
            if sess is None:
                stale.append(session_id)
            else:
                sessions.append(sess)
        if stale:
            await self.client.srem(index_key, *stale)
        return sessions

    async def cleanup_expired(
        self, now: datetime, idle_before: Optional[datetime] = None
    ) -> int:
        """Drop idle sessions and prune index entries whose record already expired."""
        removed = 0
        async for index_key in self.client.scan_iter(match="session:account:*"):
            account_id = index_key.split(":", 2)[2]
            # Listing prunes index entries whose record already expired
            sessions = await self.list_account_sessions(account_id)
            if idle_before is None:
                continue
            for sess in sessions:
                if sess.last_accessed_at <= idle_before:
                    if await self.pop(sess.id) is not None:
                        removed += 1
        return removed


class RedisCache:
    """Thin Redis wrapper for sessions and rate limits."""

    # Lua token bucket: atomic refill + consume
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

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tostring(tokens), reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tostring(tokens), 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self.sessions = RedisSessionStore(self.client)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as exc:
            logger.warning("redis_ping_failed", error=str(exc))
            return False

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so emails never appear in key names."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check a rate limit using the Redis-backed token bucket."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisCache", "RedisSessionStore"]
