"""
Redis client for session-keyed local state.

Provides a singleton sync Upstash Redis client. LocalStore writes are
synchronous from the caller's point of view, so only the sync client is
used here.
"""

from typing import Optional

from upstash_redis import Redis

from cartsync.config import LOCAL_STORE_KEY, UPSTASH_REDIS_REST_TOKEN, UPSTASH_REDIS_REST_URL

_sync_redis_client: Optional[Redis] = None


def get_redis_sync() -> Redis:
    """
    Get sync Upstash Redis client (singleton).

    Uses the standard Upstash env var names:
    - UPSTASH_REDIS_REST_URL
    - UPSTASH_REDIS_REST_TOKEN
    """
    global _sync_redis_client

    if _sync_redis_client is None:
        if not UPSTASH_REDIS_REST_URL or not UPSTASH_REDIS_REST_TOKEN:
            raise ValueError("UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN must be set")
        _sync_redis_client = Redis(url=UPSTASH_REDIS_REST_URL, token=UPSTASH_REDIS_REST_TOKEN)

    return _sync_redis_client


class RedisKeys:
    """Redis key layout for local state."""

    LOCAL_STATE = f"{LOCAL_STORE_KEY}:"  # cartsync:local:{session_id}

    @staticmethod
    def local_state_key(session_id: str) -> str:
        return f"{RedisKeys.LOCAL_STATE}{session_id}"
