"""Webhook idempotency — Redis-based deduplication.

Contract:
- Tracks delivery IDs in Redis with 24h TTL
- Key pattern: webhook:seen:{provider}:{delivery_id}
- If Redis is down, falls back to allowing (fail-open for availability)
- is_duplicate() checks and marks in one SETNX (Telegram updates)
- seen_before() / mark_seen() split the two so a payment callback only
  counts as seen once it has been matched to a transaction

This is a prefilter only. Exactly-once fulfillment is enforced by the
ledger's guarded status update, so a callback that slips through while
Redis is down is still harmless.
"""

from __future__ import annotations

import logging
import os

import redis

logger = logging.getLogger(__name__)

_DEDUP_TTL_SECONDS = 86400  # 24 hours

_KEY_PREFIX = "webhook:seen"

_client: redis.Redis | None = None


def _get_redis() -> redis.Redis:
    """Get (or lazily create) the shared Redis client."""
    global _client
    if _client is None:
        redis_url = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
        _client = redis.Redis.from_url(
            redis_url, decode_responses=True, socket_connect_timeout=2, socket_timeout=2
        )
    return _client


def is_duplicate(provider: str, delivery_id: str) -> bool:
    """Check-and-mark a delivery ID with SETNX.

    Args:
        provider: "telegram" or "mpesa"
        delivery_id: Telegram update_id or M-Pesa CheckoutRequestID

    Returns:
        True if this delivery has already been seen
    """
    if not delivery_id:
        return False

    key = f"{_KEY_PREFIX}:{provider}:{delivery_id}"
    try:
        was_set = _get_redis().set(key, "1", nx=True, ex=_DEDUP_TTL_SECONDS)
    except redis.RedisError:
        logger.warning(
            "Redis unavailable for webhook dedup, allowing %s/%s",
            provider,
            delivery_id,
            exc_info=True,
        )
        return False
    if not was_set:
        logger.info("Duplicate webhook rejected: %s/%s", provider, delivery_id)
        return True
    return False


def seen_before(provider: str, delivery_id: str) -> bool:
    """Read-only check for a delivery ID recorded by mark_seen().

    Pair with mark_seen() when the ID must only count as seen once the
    delivery has actually been processed. Fails open like is_duplicate().
    """
    if not delivery_id:
        return False

    key = f"{_KEY_PREFIX}:{provider}:{delivery_id}"
    try:
        seen = _get_redis().exists(key)
    except redis.RedisError:
        logger.warning(
            "Redis unavailable for webhook dedup, allowing %s/%s",
            provider,
            delivery_id,
            exc_info=True,
        )
        return False
    if seen:
        logger.info("Duplicate webhook rejected: %s/%s", provider, delivery_id)
        return True
    return False


def mark_seen(provider: str, delivery_id: str) -> None:
    """Record a processed delivery ID for 24h. Redis errors are logged and ignored."""
    if not delivery_id:
        return

    key = f"{_KEY_PREFIX}:{provider}:{delivery_id}"
    try:
        _get_redis().set(key, "1", ex=_DEDUP_TTL_SECONDS)
    except redis.RedisError:
        logger.warning(
            "Redis unavailable, %s/%s not recorded as seen", provider, delivery_id, exc_info=True
        )
