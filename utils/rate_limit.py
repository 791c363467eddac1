"""Per-IP quota for the admin subscription endpoints (throttled-py)."""
import os
from datetime import timedelta

from throttled import RateLimiterType, Throttled, rate_limiter, store

from core.config import logger

ADMIN_REQUESTS_PER_MINUTE = int((os.getenv("ADMIN_REQUESTS_PER_MINUTE") or "30").strip() or "30")


def _make_store():
    """Redis when REDIS_URL is set so the quota holds across workers; memory otherwise."""
    redis_url = (os.getenv("REDIS_URL") or "").strip()
    if not redis_url:
        return store.MemoryStore()
    try:
        return store.RedisStore(server=redis_url)
    except Exception as ex:
        logger.warning(f"[admin.rate_limit] redis store unavailable, falling back to memory: {ex}")
        return store.MemoryStore()


admin_throttle = Throttled(
    using=RateLimiterType.FIXED_WINDOW.value,
    quota=rate_limiter.per_duration(timedelta(minutes=1), limit=ADMIN_REQUESTS_PER_MINUTE),
    store=_make_store(),
)


def check_admin_rate_limit(ip: str) -> tuple[bool, str]:
    """(allowed, error message) for one admin request from ``ip``; fails open."""
    try:
        result = admin_throttle.limit(f"admin:{ip}", cost=1)
    except Exception as ex:
        logger.warning(f"[admin.rate_limit] quota check failed for {ip}: {ex}")
        return True, ""
    if result.limited:
        return False, f"admin quota exceeded: {ADMIN_REQUESTS_PER_MINUTE} requests per minute"
    return True, ""
