"""
learned.py — Promotion rule for previously successful answers.

An answer is promoted for (question, template_id) when, among external/learned
interactions from the last 30 days with the same question (case-insensitive):
  - it was given at least 2 times, and
  - more than 70% of the non-null feedback on it is 'helpful'.
Among promoted answers the highest (usage_count, helpfulness_ratio) wins.
confidence = min(0.95, helpfulness_ratio × usage_count / 10).

Storage failures never escape: they are logged and reported as a miss.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import redis.asyncio as aioredis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from setup_assistant.cache import get_learned_cache, set_learned_cache
from setup_assistant.config import settings
from setup_assistant.database import session_scope
from setup_assistant.errors import CacheLookupFailure
from setup_assistant.store import AnswerGroup, get_answer_groups

logger = logging.getLogger(__name__)

MAX_LEARNED_CONFIDENCE = 0.95


@dataclass(frozen=True)
class LearnedAnswer:
    answer: str
    confidence: float


def select_promoted(
    groups: list[AnswerGroup],
    min_usage: int = settings.learned_min_usage,
    min_helpfulness: float = settings.learned_min_helpfulness,
) -> Optional[LearnedAnswer]:
    """Pick the promoted answer from grouped history, or None."""
    eligible = [
        g for g in groups
        if g.usage_count >= min_usage and g.helpfulness_ratio > min_helpfulness
    ]
    if not eligible:
        return None
    best = max(eligible, key=lambda g: (g.usage_count, g.helpfulness_ratio))
    confidence = min(
        MAX_LEARNED_CONFIDENCE, best.helpfulness_ratio * best.usage_count / 10
    )
    return LearnedAnswer(answer=best.answer, confidence=round(confidence, 4))


async def _query_store(
    session_factory: async_sessionmaker[AsyncSession],
    question: str,
    template_id: str,
    since: datetime,
) -> list[AnswerGroup]:
    try:
        async with session_scope(session_factory) as db:
            return await get_answer_groups(db, question, template_id, since)
    except (SQLAlchemyError, OSError) as exc:
        raise CacheLookupFailure(str(exc)) from exc


async def find_learned_response(
    session_factory: async_sessionmaker[AsyncSession],
    question: str,
    template_id: str,
    redis: Optional[aioredis.Redis] = None,
    now: Optional[datetime] = None,
) -> Optional[LearnedAnswer]:
    """
    Redis hot cache first, then the interaction log.
    Returns None on miss or on any storage failure.
    """
    cached = await get_learned_cache(redis, template_id, question)
    if cached is not None:
        return LearnedAnswer(answer=cached["answer"], confidence=cached["confidence"])

    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=settings.learned_window_days)
    try:
        groups = await _query_store(session_factory, question, template_id, since)
    except CacheLookupFailure as exc:
        logger.warning("Learned lookup failed, failing open template_id=%s: %s", template_id, exc)
        return None

    promoted = select_promoted(groups)
    if promoted is None:
        return None

    logger.info(
        "Learned answer promoted template_id=%s groups=%d confidence=%.2f",
        template_id, len(groups), promoted.confidence,
    )
    await set_learned_cache(
        redis, template_id, question,
        {"answer": promoted.answer, "confidence": promoted.confidence},
    )
    return promoted
