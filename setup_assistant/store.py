"""
store.py — Data access facade for the Setup Assistant.

Provides a consistent, high-level API for persisting and querying interactions,
template intelligence and conversation-state snapshots.
Graph nodes, routes and scheduler jobs use these functions — nothing else
touches SQLAlchemy directly.

Design principles:
  - All functions are async and accept an AsyncSession parameter
  - No raw SQL: ORM / Core expressions only, portable between PostgreSQL and SQLite
  - Uses flush() (not commit()) — the caller's session scope handles commit
  - Logs ids, tiers and counts — never question or answer text
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import and_, case, delete, distinct, func, or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from setup_assistant.agents.responder.schemas import (
    FeedbackRequest,
    FeedbackValue,
    GENERAL_CHAT_TEMPLATE,
    InteractionSource,
    LEARNABLE_SOURCES,
    QuestionCategory,
)
from setup_assistant.errors import MalformedFeedbackRequest, PersistenceWriteFailure
from setup_assistant.models.conversation_state import ConversationStateORM
from setup_assistant.models.interaction import InteractionORM
from setup_assistant.models.template_intelligence import TemplateIntelligenceORM
from setup_assistant.rules import CATEGORY_KEYWORDS, classify

logger = logging.getLogger(__name__)

# Initial learning score per tier; anything not listed starts at DEFAULT_LEARNING_SCORE
INITIAL_LEARNING_SCORES: dict[InteractionSource, int] = {
    InteractionSource.learned: 10,
    InteractionSource.external: 5,
}
DEFAULT_LEARNING_SCORE = 3

HELPFUL_DELTA = 2
UNHELPFUL_DELTA = -1

SUCCESS_WINDOW = timedelta(days=7)
LOW_QUALITY_LEARNED_AGE = timedelta(days=7)
LOW_QUALITY_LEARNED_SCORE = 3

ENGAGED_USER_INTERACTIONS = 5
EXAMPLE_QUESTION_CHARS = 100
MAX_EXAMPLE_QUESTIONS = 3

COMMON_ISSUE_CATEGORIES = (
    QuestionCategory.troubleshooting.value,
    QuestionCategory.configuration.value,
    QuestionCategory.credentials.value,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything in this app is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def categorize_question(question: str) -> QuestionCategory:
    label = classify(question, CATEGORY_KEYWORDS, default=QuestionCategory.general.value)
    return QuestionCategory(label)


# ---------------------------------------------------------------------------
# Interaction log
# ---------------------------------------------------------------------------

async def log_interaction(
    db: AsyncSession,
    *,
    template_id: str,
    question: str,
    answer: str,
    user_id: str,
    source: InteractionSource,
    category: Optional[QuestionCategory] = None,
    created_at: Optional[datetime] = None,
) -> str:
    """
    Persist a single question/answer exchange and return its id.
    Raises PersistenceWriteFailure if the write fails — callers swallow it,
    the user-visible answer is already computed.
    """
    orm = InteractionORM(
        id=str(uuid.uuid4()),
        template_id=template_id,
        question=question,
        answer=answer,
        user_id=user_id,
        source=source.value,
        category=(category or categorize_question(question)).value,
        learning_score=INITIAL_LEARNING_SCORES.get(source, DEFAULT_LEARNING_SCORE),
        created_at=created_at or _now(),
    )
    try:
        db.add(orm)
        await db.flush()
    except SQLAlchemyError as exc:
        raise PersistenceWriteFailure(f"could not log interaction: {exc}") from exc
    logger.info(
        "Logged interaction id=%s template_id=%s source=%s category=%s",
        orm.id, template_id, source.value, orm.category,
    )
    return orm.id


async def get_interaction(db: AsyncSession, interaction_id: str) -> Optional[InteractionORM]:
    result = await db.execute(
        select(InteractionORM).where(InteractionORM.id == interaction_id)
    )
    return result.scalar_one_or_none()


@dataclass(frozen=True)
class AnswerGroup:
    """Aggregate of identical answers given to one question."""
    answer: str
    usage_count: int
    rated_count: int
    helpful_count: int

    @property
    def helpfulness_ratio(self) -> float:
        if self.rated_count == 0:
            return 0.0
        return self.helpful_count / self.rated_count


async def get_answer_groups(
    db: AsyncSession,
    question: str,
    template_id: str,
    since: datetime,
) -> list[AnswerGroup]:
    """
    Group learnable interactions for (question, template_id) by answer text.
    Question match is case-insensitive exact equality.
    rated_count counts only rows with non-NULL feedback.
    """
    helpful = case(
        (InteractionORM.user_feedback == FeedbackValue.helpful.value, 1),
        else_=0,
    )
    result = await db.execute(
        select(
            InteractionORM.answer,
            func.count().label("usage_count"),
            func.count(InteractionORM.user_feedback).label("rated_count"),
            func.sum(helpful).label("helpful_count"),
        )
        .where(
            func.lower(InteractionORM.question) == func.lower(question),
            InteractionORM.template_id == template_id,
            InteractionORM.source.in_([s.value for s in LEARNABLE_SOURCES]),
            InteractionORM.created_at >= since,
        )
        .group_by(InteractionORM.answer)
    )
    return [
        AnswerGroup(
            answer=row.answer,
            usage_count=int(row.usage_count),
            rated_count=int(row.rated_count),
            helpful_count=int(row.helpful_count or 0),
        )
        for row in result.all()
    ]


async def record_feedback(
    db: AsyncSession,
    body: FeedbackRequest,
) -> Optional[InteractionORM]:
    """
    Apply explicit feedback to one interaction.

    helpful   → learning_score +2, but only for external-tier answers
    unhelpful → learning_score -1 (no floor)
    question/answer are never touched.

    Returns the updated row, or None if the id is unknown (caller raises 404).
    Raises MalformedFeedbackRequest if `helpful` contradicts `feedback`.
    """
    is_helpful = body.feedback is FeedbackValue.helpful
    if body.helpful is not None and body.helpful != is_helpful:
        raise MalformedFeedbackRequest(
            f"feedback={body.feedback.value!r} contradicts helpful={body.helpful}"
        )

    orm = await get_interaction(db, body.interaction_id)
    if orm is None:
        return None

    if is_helpful:
        delta = HELPFUL_DELTA if orm.source == InteractionSource.external.value else 0
    else:
        delta = UNHELPFUL_DELTA

    orm.user_feedback = body.feedback.value
    orm.learning_score = orm.learning_score + delta
    await db.flush()
    logger.info(
        "Recorded feedback id=%s feedback=%s score_delta=%d",
        orm.id, body.feedback.value, delta,
    )
    return orm


async def prune_interactions(
    db: AsyncSession,
    retention_days: int,
    now: Optional[datetime] = None,
) -> int:
    """
    Retention sweep. Deletes:
      - every interaction older than retention_days
      - learned-tier interactions older than 7 days whose learning_score < 3
    Idempotent. Returns the number of deleted rows.
    """
    now = now or _now()
    expired = await db.execute(
        delete(InteractionORM).where(
            InteractionORM.created_at < now - timedelta(days=retention_days)
        )
    )
    low_quality = await db.execute(
        delete(InteractionORM).where(
            InteractionORM.source == InteractionSource.learned.value,
            InteractionORM.learning_score < LOW_QUALITY_LEARNED_SCORE,
            InteractionORM.created_at < now - LOW_QUALITY_LEARNED_AGE,
        )
    )
    removed = (expired.rowcount or 0) + (low_quality.rowcount or 0)
    logger.info(
        "Pruned interactions expired=%d low_quality_learned=%d",
        expired.rowcount or 0, low_quality.rowcount or 0,
    )
    return removed


# ---------------------------------------------------------------------------
# Template intelligence
# ---------------------------------------------------------------------------

async def compute_success_rate(
    db: AsyncSession,
    template_id: str,
    now: Optional[datetime] = None,
) -> float:
    """
    Percentage (0–100) of the template's interactions in the last 7 days that
    were not degraded (source != 'error') and not marked unhelpful.
    0.0 when there is nothing in the window.
    """
    now = now or _now()
    succeeded = case(
        (
            and_(
                InteractionORM.source != InteractionSource.error.value,
                or_(
                    InteractionORM.user_feedback.is_(None),
                    InteractionORM.user_feedback != FeedbackValue.unhelpful.value,
                ),
            ),
            1,
        ),
        else_=0,
    )
    result = await db.execute(
        select(func.count(), func.sum(succeeded)).where(
            InteractionORM.template_id == template_id,
            InteractionORM.created_at >= now - SUCCESS_WINDOW,
        )
    )
    total, ok = result.one()
    if not total:
        return 0.0
    return round(100.0 * int(ok or 0) / int(total), 2)


async def upsert_template_intelligence(
    db: AsyncSession,
    template_id: str,
    question: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TemplateIntelligenceORM:
    """
    Create or update the aggregate row for template_id.
    question (if given) is appended to common_questions unless already present.
    success_rate is always recomputed from the rolling window.
    """
    now = now or _now()
    result = await db.execute(
        select(TemplateIntelligenceORM).where(
            TemplateIntelligenceORM.template_id == template_id
        )
    )
    orm = result.scalar_one_or_none()
    rate = await compute_success_rate(db, template_id, now)

    if orm is None:
        orm = TemplateIntelligenceORM(
            template_id=template_id,
            common_questions=[question] if question else [],
            success_rate=rate,
            last_updated=now,
        )
        db.add(orm)
    else:
        if question and question not in orm.common_questions:
            # New list object so SQLAlchemy sees the JSON column as dirty
            orm.common_questions = [*orm.common_questions, question]
        orm.success_rate = rate
        orm.last_updated = now

    await db.flush()
    logger.info(
        "Template intelligence updated template_id=%s questions=%d success_rate=%.1f",
        template_id, len(orm.common_questions), rate,
    )
    return orm


async def refresh_template_intelligence(
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> int:
    """Recompute success_rate for every template active in the last 7 days."""
    now = now or _now()
    result = await db.execute(
        select(distinct(InteractionORM.template_id)).where(
            InteractionORM.created_at >= now - SUCCESS_WINDOW
        )
    )
    template_ids = [row[0] for row in result.all()]
    for template_id in template_ids:
        await upsert_template_intelligence(db, template_id, now=now)
    return len(template_ids)


async def get_template_intelligence(
    db: AsyncSession,
    template_id: str,
) -> Optional[dict[str, Any]]:
    result = await db.execute(
        select(TemplateIntelligenceORM).where(
            TemplateIntelligenceORM.template_id == template_id
        )
    )
    orm = result.scalar_one_or_none()
    if orm is None:
        return None
    return {
        "template_id": orm.template_id,
        "common_questions": list(orm.common_questions),
        "success_rate": orm.success_rate,
        "last_updated": as_utc(orm.last_updated).isoformat(),
    }


async def get_template_report(
    db: AsyncSession,
    template_id: str,
    since: datetime,
) -> dict[str, Any]:
    """
    Activity for one template since `since`:
      - recent_interactions, unique_users
      - common_issues: questions asked >= 2 times in credential / configuration /
        troubleshooting categories, most frequent first, least helpful first on ties
    """
    counts = await db.execute(
        select(func.count(), func.count(distinct(InteractionORM.user_id))).where(
            InteractionORM.template_id == template_id,
            InteractionORM.created_at >= since,
        )
    )
    recent, unique_users = counts.one()

    helpful = case(
        (InteractionORM.user_feedback == FeedbackValue.helpful.value, 1.0),
        else_=0.0,
    )
    frequency = func.count().label("frequency")
    helpfulness = func.avg(helpful).label("helpfulness_rate")
    issues = await db.execute(
        select(
            InteractionORM.question,
            frequency,
            helpfulness,
            func.max(InteractionORM.created_at).label("last_asked"),
        )
        .where(
            InteractionORM.template_id == template_id,
            InteractionORM.created_at >= since,
            InteractionORM.category.in_(COMMON_ISSUE_CATEGORIES),
        )
        .group_by(InteractionORM.question)
        .having(func.count() >= 2)
        .order_by(frequency.desc(), helpfulness.asc())
        .limit(10)
    )
    common_issues = [
        {
            "question": row.question,
            "frequency": int(row.frequency),
            "helpfulness_rate": round(float(row.helpfulness_rate or 0.0), 3),
            "last_asked": as_utc(row.last_asked).isoformat() if row.last_asked else None,
        }
        for row in issues.all()
    ]
    return {
        "recent_interactions": int(recent),
        "unique_users": int(unique_users),
        "common_issues": common_issues,
    }


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

async def get_learning_stats(db: AsyncSession, since: datetime) -> dict[str, Any]:
    """
    Tier distribution and per-category scores since `since`.
    cost_savings_percentage = learned / total × 100.
    """
    def _count_source(source: InteractionSource):
        return func.sum(case((InteractionORM.source == source.value, 1), else_=0))

    totals = await db.execute(
        select(
            func.count(),
            _count_source(InteractionSource.learned),
            _count_source(InteractionSource.external),
            _count_source(InteractionSource.fallback),
        ).where(InteractionORM.created_at >= since)
    )
    total, learned, external, fallback = (int(v or 0) for v in totals.one())

    categories = await db.execute(
        select(
            InteractionORM.category,
            func.count().label("count"),
            func.avg(InteractionORM.learning_score).label("avg_score"),
        )
        .where(InteractionORM.created_at >= since)
        .group_by(InteractionORM.category)
        .order_by(func.count().desc())
    )

    return {
        "overall": {
            "total_interactions": total,
            "learned_responses": learned,
            "api_calls": external,
            "fallback_responses": fallback,
            "api_calls_avoided": total - external,
            "cost_savings_percentage": round(learned * 100.0 / total, 2) if total else 0.0,
        },
        "categories": [
            {
                "question_category": row.category,
                "count": int(row.count),
                "avg_score": round(float(row.avg_score or 0.0), 2),
            }
            for row in categories.all()
        ],
    }


def _count_where(condition):
    return func.sum(case((condition, 1), else_=0))


async def get_performance_analytics(db: AsyncSession, since: datetime) -> dict[str, Any]:
    """
    Activity since `since`:
      - daily_trends: per-day totals, learned, external calls, completions, mean score
      - cost_savings: external calls made vs. avoided by learned answers
      - top_templates: 10 busiest templates (general_chat excluded) with
        completion_rate = completions / unique users × 100
      - user_engagement: users, mean / max interactions per user, users with >= 5
    """
    is_learned = InteractionORM.source == InteractionSource.learned.value
    is_external = InteractionORM.source == InteractionSource.external.value
    is_completion = InteractionORM.source == InteractionSource.conversation_completion.value
    in_window = InteractionORM.created_at >= since

    day = func.date(InteractionORM.created_at).label("day")
    daily = await db.execute(
        select(
            day,
            func.count().label("total"),
            _count_where(is_learned).label("learned"),
            _count_where(is_external).label("external"),
            _count_where(is_completion).label("completions"),
            func.avg(InteractionORM.learning_score).label("avg_score"),
        )
        .where(in_window)
        .group_by(day)
        .order_by(day.desc())
    )
    daily_trends = [
        {
            "day": str(row.day),
            "total_interactions": int(row.total),
            "learned_responses": int(row.learned or 0),
            "api_calls": int(row.external or 0),
            "completions": int(row.completions or 0),
            "avg_learning_score": round(float(row.avg_score or 0.0), 2),
        }
        for row in daily.all()
    ]

    totals = await db.execute(
        select(func.count(), _count_where(is_external), _count_where(is_learned)).where(in_window)
    )
    total, api_calls, saved = (int(v or 0) for v in totals.one())

    interaction_count = func.count().label("interaction_count")
    templates = await db.execute(
        select(
            InteractionORM.template_id,
            interaction_count,
            func.count(distinct(InteractionORM.user_id)).label("unique_users"),
            _count_where(is_completion).label("completions"),
            func.avg(InteractionORM.learning_score).label("avg_score"),
        )
        .where(in_window, InteractionORM.template_id != GENERAL_CHAT_TEMPLATE)
        .group_by(InteractionORM.template_id)
        .order_by(interaction_count.desc())
        .limit(10)
    )
    top_templates = []
    for row in templates.all():
        users, completions = int(row.unique_users), int(row.completions or 0)
        top_templates.append({
            "template_id": row.template_id,
            "interaction_count": int(row.interaction_count),
            "unique_users": users,
            "completion_count": completions,
            "completion_rate": round(completions * 100.0 / users, 2) if users else 0.0,
            "avg_learning_score": round(float(row.avg_score or 0.0), 2),
        })

    per_user = (
        select(InteractionORM.user_id, func.count().label("n"))
        .where(in_window)
        .group_by(InteractionORM.user_id)
        .subquery()
    )
    engagement = await db.execute(
        select(
            func.count(),
            func.avg(per_user.c.n),
            func.max(per_user.c.n),
            _count_where(per_user.c.n >= ENGAGED_USER_INTERACTIONS),
        )
    )
    users, avg_per_user, max_per_user, engaged = engagement.one()

    return {
        "daily_trends": daily_trends,
        "cost_savings": {
            "total_interactions": total,
            "total_api_calls": api_calls,
            "saved_api_calls": saved,
        },
        "top_templates": top_templates,
        "user_engagement": {
            "total_users": int(users or 0),
            "avg_interactions_per_user": round(float(avg_per_user or 0.0), 2),
            "max_interactions_per_user": int(max_per_user or 0),
            "engaged_users": int(engaged or 0),
        },
    }


async def get_user_journey(
    db: AsyncSession,
    template_id: str,
    since: datetime,
) -> list[dict[str, Any]]:
    """
    Interactions for one template grouped by (category, tier): count, mean
    learning score and up to 3 example questions (first 100 chars), busiest first.
    """
    step_frequency = func.count().label("step_frequency")
    groups = await db.execute(
        select(
            InteractionORM.category,
            InteractionORM.source,
            step_frequency,
            func.avg(InteractionORM.learning_score).label("avg_score"),
        )
        .where(InteractionORM.template_id == template_id, InteractionORM.created_at >= since)
        .group_by(InteractionORM.category, InteractionORM.source)
        .order_by(step_frequency.desc())
    )
    journey = {
        (row.category, row.source): {
            "question_category": row.category,
            "source": row.source,
            "step_frequency": int(row.step_frequency),
            "avg_learning_score": round(float(row.avg_score or 0.0), 2),
            "example_questions": [],
        }
        for row in groups.all()
    }

    examples = await db.execute(
        select(
            InteractionORM.category,
            InteractionORM.source,
            func.substr(InteractionORM.question, 1, EXAMPLE_QUESTION_CHARS).label("snippet"),
        )
        .where(InteractionORM.template_id == template_id, InteractionORM.created_at >= since)
        .distinct()
        .order_by(InteractionORM.category, InteractionORM.source, "snippet")
    )
    for row in examples.all():
        bucket = journey[(row.category, row.source)]["example_questions"]
        if len(bucket) < MAX_EXAMPLE_QUESTIONS:
            bucket.append(row.snippet)
    return list(journey.values())


async def count_recent_learned(db: AsyncSession, since: datetime) -> int:
    result = await db.execute(
        select(func.count()).where(
            InteractionORM.source == InteractionSource.learned.value,
            InteractionORM.created_at >= since,
        )
    )
    return int(result.scalar_one())


async def export_interactions(
    db: AsyncSession,
    template_id: str,
    since: datetime,
) -> list[dict[str, Any]]:
    """All interactions for a template since `since`, newest first."""
    result = await db.execute(
        select(InteractionORM)
        .where(
            InteractionORM.template_id == template_id,
            InteractionORM.created_at >= since,
        )
        .order_by(InteractionORM.created_at.desc())
    )
    return [
        {
            "id": row.id,
            "template_id": row.template_id,
            "question": row.question,
            "answer": row.answer,
            "user_id": row.user_id,
            "created_at": as_utc(row.created_at).isoformat(),
            "source": row.source,
            "category": row.category,
            "learning_score": row.learning_score,
            "user_feedback": row.user_feedback,
        }
        for row in result.scalars().all()
    ]


async def ping(db: AsyncSession) -> None:
    """Raises if the database is unreachable."""
    await db.execute(text("SELECT 1"))


# ---------------------------------------------------------------------------
# Conversation-state snapshots
# ---------------------------------------------------------------------------

async def save_conversation_states(
    db: AsyncSession,
    snapshots: list[dict[str, Any]],
) -> int:
    """
    Replace the stored conversation states with ``snapshots``. Each snapshot:
      {user_id, template_id, state_data: dict, last_activity: datetime}
    Rows for keys absent from the snapshot (reset or swept) are deleted, so the
    table mirrors the live map. Last writer wins — no version check.
    """
    removed = await db.execute(delete(ConversationStateORM))
    await db.flush()
    for snap in snapshots:
        db.add(
            ConversationStateORM(
                user_id=snap["user_id"],
                template_id=snap["template_id"],
                state_data=snap["state_data"],
                last_activity=snap["last_activity"],
            )
        )
    await db.flush()
    logger.info(
        "Saved conversation states count=%d replaced=%d",
        len(snapshots), removed.rowcount or 0,
    )
    return len(snapshots)


async def load_conversation_states(
    db: AsyncSession,
    since: datetime,
) -> list[dict[str, Any]]:
    """Snapshots whose last_activity is at or after `since`."""
    result = await db.execute(
        select(ConversationStateORM).where(ConversationStateORM.last_activity >= since)
    )
    return [
        {
            "user_id": row.user_id,
            "template_id": row.template_id,
            "state_data": dict(row.state_data),
            "last_activity": as_utc(row.last_activity),
        }
        for row in result.scalars().all()
    ]
