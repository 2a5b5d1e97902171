"""
cache.py — Redis hot cache for promoted learned answers.

Namespace conventions:
  learned:{template_id}:{sha256(question)}  → {answer, confidence}   TTL 1h (3600s)

Design:
  - Uses redis.asyncio (async client, part of redis-py 5.x)
  - Pool created once in lifespan, stored on app.state.redis (None if Redis is down)
  - Helper functions take the client as a param — no module-level global state
  - Only hits are cached; a miss always falls through to PostgreSQL so a newly
    promoted answer is visible immediately
  - Key uses SHA-256 of the lowercased question, matching the case-insensitive lookup
  - Every Redis failure is logged and treated as a miss
"""
import hashlib
import json
import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from setup_assistant.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# TTL constants (seconds)
# ---------------------------------------------------------------------------
LEARNED_TTL: int = 3600    # 1 hour

# ---------------------------------------------------------------------------
# Key prefix constants
# ---------------------------------------------------------------------------
LEARNED_PREFIX = "learned"


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def make_learned_key(template_id: str, question: str) -> str:
    """
    Build Redis key for a promoted answer.
    Question is lowercased (not stripped) so the key agrees with the
    case-insensitive exact match used by the database lookup.
    """
    digest = hashlib.sha256(question.lower().encode("utf-8")).hexdigest()
    return f"{LEARNED_PREFIX}:{template_id}:{digest}"


# ---------------------------------------------------------------------------
# Pool factory — called once in lifespan
# ---------------------------------------------------------------------------

async def create_redis_pool() -> aioredis.Redis:
    """
    Create and return an async Redis connection pool.
    Verifies connectivity with PING before returning.
    """
    client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    await client.ping()
    logger.info("Redis connection pool established at %s", settings.redis_url)
    return client


# ---------------------------------------------------------------------------
# Learned-answer helpers
# ---------------------------------------------------------------------------

async def get_learned_cache(
    client: Optional[aioredis.Redis], template_id: str, question: str
) -> Optional[dict]:
    """Return a cached {answer, confidence} dict, or None on miss / no client / error."""
    if client is None:
        return None
    key = make_learned_key(template_id, question)
    try:
        raw = await client.get(key)
    except RedisError as exc:
        logger.warning("Redis read failed key=%s: %s", key, exc)
        return None
    if raw is None:
        return None
    logger.info("Learned cache hit key=%s", key)
    return json.loads(raw)


async def set_learned_cache(
    client: Optional[aioredis.Redis], template_id: str, question: str, payload: dict
) -> None:
    """Store a promoted answer with TTL 1h. Silently skipped without a client."""
    if client is None:
        return
    key = make_learned_key(template_id, question)
    try:
        await client.setex(key, LEARNED_TTL, json.dumps(payload))
    except RedisError as exc:
        logger.warning("Redis write failed key=%s: %s", key, exc)
        return
    logger.info("Learned answer cached key=%s ttl=%ds", key, LEARNED_TTL)


async def invalidate_learned_cache(
    client: Optional[aioredis.Redis], template_id: str, question: str
) -> None:
    """Drop the cached answer for (template_id, question) after new feedback."""
    if client is None:
        return
    key = make_learned_key(template_id, question)
    try:
        await client.delete(key)
    except RedisError as exc:
        logger.warning("Redis delete failed key=%s: %s", key, exc)


async def ping_redis(client: Optional[aioredis.Redis]) -> bool:
    if client is None:
        return False
    try:
        return bool(await client.ping())
    except RedisError:
        return False
