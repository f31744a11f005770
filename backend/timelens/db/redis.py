"""Redis client for sessions, CSRF tokens, rate limiting and locks"""
import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Optional

import redis

from timelens.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5
        )
    return _client


# Session TTL (30 days)
SESSION_TTL = 30 * 24 * 60 * 60

# Activity tracking TTL (1 hour - users active within last hour)
ACTIVITY_TTL = 60 * 60

# Rate limiting configuration
if settings.ENVIRONMENT == "development":
    RATE_LIMIT_WINDOW = 60  # seconds
    RATE_LIMIT_REQUESTS = 1000
    RATE_LIMIT_STRICT_WINDOW = 60
    RATE_LIMIT_STRICT_REQUESTS = 1000
else:
    RATE_LIMIT_WINDOW = 60
    RATE_LIMIT_REQUESTS = 600
    RATE_LIMIT_STRICT_WINDOW = 60
    RATE_LIMIT_STRICT_REQUESTS = 120


def set_session(session_id: str, user_id: int) -> None:
    """Store session in Redis"""
    get_redis_client().setex(f"session:{session_id}", SESSION_TTL, user_id)


def get_session(session_id: str) -> Optional[int]:
    """Get user_id from session"""
    user_id = get_redis_client().get(f"session:{session_id}")
    return int(user_id) if user_id else None


def delete_session(session_id: str) -> None:
    """Delete session and its CSRF token from Redis"""
    client = get_redis_client()
    client.delete(f"session:{session_id}")
    client.delete(f"csrf:{session_id}")


def set_csrf_token(session_id: str, token: str) -> None:
    """Store CSRF token in Redis"""
    get_redis_client().setex(f"csrf:{session_id}", SESSION_TTL, token)


def get_csrf_token(session_id: str) -> Optional[str]:
    """Get CSRF token from Redis"""
    return get_redis_client().get(f"csrf:{session_id}")


def get_or_create_csrf_token(session_id: str) -> str:
    """Get existing CSRF token or create new one if it doesn't exist"""
    csrf_token = get_csrf_token(session_id)
    if not csrf_token:
        csrf_token = secrets.token_urlsafe(32)
        set_csrf_token(session_id, csrf_token)
    return csrf_token


def increment_rate_limit(identifier: str, window: int) -> int:
    """Increment rate limit counter and return current count.
    Uses a pipeline so the TTL is only set when the window starts (fixed window rate limiting)."""
    key = f"ratelimit:{identifier}"
    client = get_redis_client()
    pipe = client.pipeline()
    pipe.incr(key)
    pipe.ttl(key)
    count, ttl = pipe.execute()
    if ttl is None or ttl < 0:
        client.expire(key, window)
    return int(count)


def check_rate_limit(identifier: str, strict: bool = False) -> bool:
    """Check if request is within rate limit using Redis. Returns True if allowed, False if rate limited."""
    window = RATE_LIMIT_STRICT_WINDOW if strict else RATE_LIMIT_WINDOW
    max_requests = RATE_LIMIT_STRICT_REQUESTS if strict else RATE_LIMIT_REQUESTS
    return increment_rate_limit(identifier, window) <= max_requests


def set_user_activity(user_id: int) -> None:
    """Track user activity with a heartbeat key that expires after ACTIVITY_TTL"""
    data = {"timestamp": datetime.now(timezone.utc).isoformat()}
    get_redis_client().setex(f"activity:{user_id}", ACTIVITY_TTL, json.dumps(data))


def acquire_lock(lock_key: str, timeout: int = 30) -> bool:
    """Acquire a distributed lock using Redis SET with NX and EX.

    Returns:
        True if lock was acquired, False if lock already exists
    """
    result = get_redis_client().set(lock_key, "1", nx=True, ex=timeout)
    return result is True


def release_lock(lock_key: str) -> None:
    """Release a distributed lock by deleting the key."""
    get_redis_client().delete(lock_key)
