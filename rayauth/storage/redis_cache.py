from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime
from typing import Any, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

KEY_PREFIX = "rayauth"


def _client_options(socket_timeout: float) -> dict:
    return {
        "decode_responses": True,
        "socket_timeout": socket_timeout,
        "socket_connect_timeout": socket_timeout,
    }

# KEYS[1] bucket; ARGV: now, tokens per second, capacity, cost.
# Returns {allowed, tokens left, seconds until the cost is affordable}.
_BUCKET_LUA = """
local state = redis.call('HMGET', KEYS[1], 'level', 'stamp')
local now, rate, cap, cost = tonumber(ARGV[1]), tonumber(ARGV[2]), tonumber(ARGV[3]), tonumber(ARGV[4])
local level = tonumber(state[1]) or cap
local stamp = tonumber(state[2]) or now
level = math.min(cap, level + math.max(0, now - stamp) * rate)
local ok = 0
if level >= cost then
  level = level - cost
  ok = 1
end
redis.call('HSET', KEYS[1], 'level', level, 'stamp', now)
redis.call('EXPIRE', KEYS[1], math.max(1, math.ceil((cap - level) / rate)))
if ok == 1 then
  return {1, level, 0}
end
return {0, level, math.ceil((cost - level) / rate)}
"""

# Spends one attempt without resurrecting a code that expired meanwhile
_OTP_ATTEMPT_LUA = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return -1
end
return redis.call('HINCRBY', KEYS[1], 'attempts', 1)
"""


def _bucket_key(key: str) -> str:
    # Client-supplied parts (emails, IPs) are hashed into a fixed-width key
    return f"{KEY_PREFIX}:rate:{hashlib.sha256(key.encode()).hexdigest()}"


def _otp_key(contact: str) -> str:
    return f"{KEY_PREFIX}:otp:{hashlib.sha256(contact.encode()).hexdigest()}"


class RedisCache:
    """Shared ephemeral state: rate-limit buckets, OAuth states and OTP codes."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = self._connect(redis_url, socket_timeout)
        self._bucket = self.client.register_script(_BUCKET_LUA)
        self._otp_attempt = self.client.register_script(_OTP_ATTEMPT_LUA)

    def _connect(self, redis_url: str, socket_timeout: float) -> Any:
        return aioredis.from_url(redis_url, **_client_options(socket_timeout))

    async def _run(self, pending: Any) -> Any:
        return await pending

    def verify_connection(self) -> None:
        # A throwaway sync client keeps the async pool off the startup loop
        with Redis.from_url(self.redis_url) as startup_client:
            startup_client.ping()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, return_remaining: bool = False, cost: int = 1
    ) -> Union[bool, Tuple[bool, int, int]]:
        rate = float(limit) / float(window_seconds)
        ok, level, wait = await self._run(
            self._bucket(keys=[_bucket_key(key)], args=[time.time(), rate, limit, max(1, cost)])
        )
        allowed = bool(int(ok))
        if return_remaining:
            return allowed, max(0, int(float(level))), int(wait or 0)
        return allowed

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        ttl = max(1, int(expires_at.timestamp() - time.time()))
        payload = json.dumps({"provider": provider, "expires_at": expires_at.isoformat()})
        await self._run(self.client.set(f"{KEY_PREFIX}:oauth:{state}", payload, ex=ttl))

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        """Read and delete in one GETDEL so a state cannot be replayed."""
        raw = await self._run(self.client.getdel(f"{KEY_PREFIX}:oauth:{state}"))
        try:
            data = json.loads(raw)
            return data["provider"], datetime.fromisoformat(data["expires_at"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            # Missing (None) or unreadable states are treated alike
            return None

    async def put_otp(self, contact: str, code_hash: str, issued_at: float, ttl_seconds: int) -> None:
        """Replace any pending code for ``contact`` with a fresh one."""
        key = _otp_key(contact)
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(key)
        pipe.hset(key, mapping={"code_hash": code_hash, "issued_at": issued_at, "attempts": 0})
        pipe.expire(key, ttl_seconds)
        await self._run(pipe.execute())

    async def get_otp(self, contact: str) -> Optional[dict]:
        fields = await self._run(self.client.hgetall(_otp_key(contact)))
        if not fields:
            return None
        return {
            "code_hash": fields.get("code_hash", ""),
            "issued_at": float(fields.get("issued_at", 0)),
            "attempts": int(fields.get("attempts", 0)),
        }

    async def record_otp_attempt(self, contact: str) -> int:
        """Count one verification attempt; -1 when no code is pending."""
        return int(await self._run(self._otp_attempt(keys=[_otp_key(contact)])))

    async def drop_otp(self, contact: str) -> bool:
        """Delete the pending code; only the caller that sees True consumed it."""
        return bool(await self._run(self.client.delete(_otp_key(contact))))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache(RedisCache):
    """RedisCache over a blocking client.

    Tests open and close event loops freely; a sync client is never bound to
    one, while callers still await the same methods.
    """

    def _connect(self, redis_url: str, socket_timeout: float) -> Any:
        return Redis.from_url(redis_url, **_client_options(socket_timeout))

    async def _run(self, pending: Any) -> Any:
        return pending

    def verify_connection(self) -> None:
        self.client.ping()

    async def close(self) -> None:
        self.client.close()
