import os
import time
from typing import Optional

from redis.asyncio import Redis

# Checkout creates provider-side objects; a handful per minute is plenty
CHECKOUT_USER_RL_PER_MIN = int(os.getenv("CHECKOUT_USER_RL_PER_MIN", "5") or 5)
CHECKOUT_IP_RL_PER_MIN = int(os.getenv("CHECKOUT_IP_RL_PER_MIN", "30") or 30)
EMAIL_IP_RL_PER_MIN = int(os.getenv("EMAIL_IP_RL_PER_MIN", "10") or 10)

_redis: Optional[Redis] = None
_mem: dict[str, tuple[int, float]] = {}


def _redis_client() -> Optional[Redis]:
    global _redis
    if _redis is not None:
        return _redis
    url = os.getenv("REDIS_URL")
    if url:
        _redis = Redis.from_url(url, encoding="utf-8", decode_responses=True)
    return _redis


def _minute_bucket(ts: Optional[float] = None) -> int:
    return int((ts or time.time()) // 60)


async def _allow(scope: str, ident: Optional[str], limit: int) -> bool:
    if not ident:
        return True
    limit = max(1, limit)
    r = _redis_client()
    if r is not None:
        key = f"lm:rl:{scope}:{ident}:{_minute_bucket()}"
        try:
            val = await r.incr(key)
            if val == 1:
                await r.expire(key, 120)
            return val <= limit
        except Exception:
            pass
    # Fallback in-memory counter (per-process only)
    mem_key = f"{scope}:{ident}"
    now = time.time()
    count, bucket_ts = _mem.get(mem_key, (0, now))
    if _minute_bucket(bucket_ts) != _minute_bucket(now):
        count = 0
        bucket_ts = now
    count += 1
    _mem[mem_key] = (count, bucket_ts)
    return count <= limit


async def allow_checkout_user(user_id: Optional[str]) -> bool:
    return await _allow("checkout:user", user_id, CHECKOUT_USER_RL_PER_MIN)


async def allow_checkout_ip(ip: Optional[str]) -> bool:
    return await _allow("checkout:ip", ip, CHECKOUT_IP_RL_PER_MIN)


async def allow_email_ip(ip: Optional[str]) -> bool:
    return await _allow("email:ip", ip, EMAIL_IP_RL_PER_MIN)


def reset_memory_counters() -> None:
    _mem.clear()
