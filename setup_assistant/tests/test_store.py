"""
test_store.py — Interaction log, feedback scoring, promotion grouping,
retention and template intelligence against a real (SQLite) database.
"""
from datetime import timedelta

import pytest

from conftest import T0
from setup_assistant.agents.responder.learned import select_promoted
from setup_assistant.agents.responder.schemas import (
    FeedbackRequest,
    FeedbackValue,
    InteractionSource,
)
from setup_assistant.errors import MalformedFeedbackRequest
from setup_assistant.store import (
    AnswerGroup,
    compute_success_rate,
    get_answer_groups,
    get_interaction,
    count_recent_learned,
    get_learning_stats,
    get_performance_analytics,
    get_template_intelligence,
    get_template_report,
    get_user_journey,
    log_interaction,
    prune_interactions,
    record_feedback,
    refresh_template_intelligence,
    upsert_template_intelligence,
)


async def _log(db, source=InteractionSource.external, question="How do I test it?",
               answer="Click Execute Workflow.", template_id="T1", user_id="u1",
               created_at=T0):
    return await log_interaction(
        db,
        template_id=template_id,
        question=question,
        answer=answer,
        user_id=user_id,
        source=source,
        created_at=created_at,
    )


# ---------------------------------------------------------------------------
# Interaction log + feedback
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize(
    "source,expected",
    [
        (InteractionSource.learned, 10),
        (InteractionSource.external, 5),
        (InteractionSource.fallback, 3),
        (InteractionSource.error, 3),
    ],
)
async def test_initial_learning_score_by_tier(db, source, expected) -> None:
    interaction_id = await _log(db, source=source)
    orm = await get_interaction(db, interaction_id)
    assert orm.learning_score == expected
    assert orm.user_feedback is None
    assert orm.category == "testing"


@pytest.mark.asyncio
async def test_unhelpful_feedback_decrements_by_exactly_one(db) -> None:
    interaction_id = await _log(db)
    before = await get_interaction(db, interaction_id)
    question, answer, score = before.question, before.answer, before.learning_score

    orm = await record_feedback(
        db,
        FeedbackRequest(interaction_id=interaction_id, feedback="unhelpful", helpful=False),
    )
    assert orm.learning_score == score - 1
    assert orm.question == question
    assert orm.answer == answer
    assert orm.user_feedback == "unhelpful"


@pytest.mark.asyncio
async def test_helpful_feedback_scores_external_only(db) -> None:
    external_id = await _log(db, source=InteractionSource.external)
    fallback_id = await _log(db, source=InteractionSource.fallback)

    external = await record_feedback(db, FeedbackRequest(interaction_id=external_id, feedback="helpful"))
    fallback = await record_feedback(db, FeedbackRequest(interaction_id=fallback_id, feedback="helpful"))
    assert external.learning_score == 7
    assert fallback.learning_score == 3
    assert fallback.user_feedback == "helpful"


@pytest.mark.asyncio
async def test_contradictory_feedback_is_rejected_without_mutation(db) -> None:
    interaction_id = await _log(db)
    with pytest.raises(MalformedFeedbackRequest):
        await record_feedback(
            db,
            FeedbackRequest(interaction_id=interaction_id, feedback="helpful", helpful=False),
        )
    orm = await get_interaction(db, interaction_id)
    assert orm.user_feedback is None
    assert orm.learning_score == 5


@pytest.mark.asyncio
async def test_feedback_on_unknown_id_returns_none(db) -> None:
    assert await record_feedback(db, FeedbackRequest(interaction_id="missing", feedback="helpful")) is None


# ---------------------------------------------------------------------------
# Promotion grouping
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_answer_groups_match_case_insensitively_and_ignore_other_tiers(db) -> None:
    a = await _log(db, question="How do I test it?")
    b = await _log(db, question="HOW DO I TEST IT?")
    await _log(db, question="how do i test it?", source=InteractionSource.fallback)
    await _log(db, question="how do i test it?", template_id="T2")
    await _log(db, question="how do i test it?", created_at=T0 - timedelta(days=31))
    for interaction_id in (a, b):
        await record_feedback(db, FeedbackRequest(interaction_id=interaction_id, feedback="helpful"))

    groups = await get_answer_groups(db, "How do I test it?", "T1", since=T0 - timedelta(days=30))
    assert groups == [
        AnswerGroup(answer="Click Execute Workflow.", usage_count=2, rated_count=2, helpful_count=2)
    ]


def test_select_promoted_thresholds() -> None:
    promoted = select_promoted([AnswerGroup("A", usage_count=2, rated_count=2, helpful_count=2)])
    assert promoted.answer == "A"
    assert promoted.confidence == pytest.approx(0.2)

    # single use, ratio at the threshold, and unrated answers are never promoted
    assert select_promoted([AnswerGroup("A", 1, 1, 1)]) is None
    assert select_promoted([AnswerGroup("A", 10, 10, 7)]) is None
    assert select_promoted([AnswerGroup("A", 5, 0, 0)]) is None


def test_select_promoted_prefers_usage_then_ratio_and_caps_confidence() -> None:
    groups = [
        AnswerGroup("popular", usage_count=20, rated_count=10, helpful_count=8),
        AnswerGroup("loved", usage_count=3, rated_count=3, helpful_count=3),
    ]
    promoted = select_promoted(groups)
    assert promoted.answer == "popular"
    assert promoted.confidence == pytest.approx(0.95)


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_prune_interactions(db) -> None:
    old = await _log(db, created_at=T0 - timedelta(days=91))
    recent = await _log(db, created_at=T0 - timedelta(days=10))
    weak_learned = await _log(db, source=InteractionSource.learned, created_at=T0 - timedelta(days=8))
    young_learned = await _log(db, source=InteractionSource.learned, created_at=T0 - timedelta(days=2))
    for interaction_id in (weak_learned, young_learned):
        orm = await get_interaction(db, interaction_id)
        orm.learning_score = 2
    await db.flush()

    assert await prune_interactions(db, retention_days=90, now=T0) == 2
    assert await get_interaction(db, old) is None
    assert await get_interaction(db, weak_learned) is None
    assert await get_interaction(db, recent) is not None
    assert await get_interaction(db, young_learned) is not None
    assert await prune_interactions(db, retention_days=90, now=T0) == 0


# ---------------------------------------------------------------------------
# Template intelligence + reporting
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_success_rate_excludes_errors_and_unhelpful(db) -> None:
    await _log(db)
    await _log(db, source=InteractionSource.error)
    bad = await _log(db)
    await _log(db, created_at=T0 - timedelta(days=8))
    await record_feedback(db, FeedbackRequest(interaction_id=bad, feedback="unhelpful"))

    assert await compute_success_rate(db, "T1", now=T0) == pytest.approx(33.33)
    assert await compute_success_rate(db, "nothing", now=T0) == 0.0


@pytest.mark.asyncio
async def test_upsert_template_intelligence_dedupes_questions(db) -> None:
    await _log(db)
    await upsert_template_intelligence(db, "T1", "How do I test it?", now=T0)
    await upsert_template_intelligence(db, "T1", "How do I test it?", now=T0)
    await upsert_template_intelligence(db, "T1", "Where is the webhook URL?", now=T0)

    intelligence = await get_template_intelligence(db, "T1")
    assert intelligence["common_questions"] == ["How do I test it?", "Where is the webhook URL?"]
    assert intelligence["success_rate"] == 100.0
    assert await get_template_intelligence(db, "T2") is None


@pytest.mark.asyncio
async def test_refresh_template_intelligence_covers_active_templates(db) -> None:
    await _log(db, template_id="T1")
    await _log(db, template_id="T2")
    await _log(db, template_id="T3", created_at=T0 - timedelta(days=9))

    assert await refresh_template_intelligence(db, now=T0) == 2
    assert await get_template_intelligence(db, "T2") is not None
    assert await get_template_intelligence(db, "T3") is None


@pytest.mark.asyncio
async def test_template_report_common_issues(db) -> None:
    for user in ("u1", "u2", "u3"):
        await _log(db, question="Credential error in Gmail node", user_id=user)
    await _log(db, question="Thanks!", user_id="u1")
    await _log(db, question="Thanks!", user_id="u2")

    report = await get_template_report(db, "T1", since=T0 - timedelta(days=30))
    assert report["recent_interactions"] == 5
    assert report["unique_users"] == 3
    assert [i["question"] for i in report["common_issues"]] == ["Credential error in Gmail node"]
    assert report["common_issues"][0]["frequency"] == 3


@pytest.mark.asyncio
async def test_learning_stats(db) -> None:
    await _log(db, source=InteractionSource.learned)
    await _log(db, source=InteractionSource.external)
    await _log(db, source=InteractionSource.fallback)
    await _log(db, source=InteractionSource.fallback)

    stats = await get_learning_stats(db, since=T0 - timedelta(days=30))
    overall = stats["overall"]
    assert overall["total_interactions"] == 4
    assert overall["learned_responses"] == 1
    assert overall["api_calls"] == 1
    assert overall["fallback_responses"] == 2
    assert overall["api_calls_avoided"] == 3
    assert overall["cost_savings_percentage"] == 25.0
    assert stats["categories"][0]["question_category"] == "testing"


@pytest.mark.asyncio
async def test_performance_analytics_on_empty_window(db) -> None:
    await _log(db, created_at=T0 - timedelta(days=60))
    analytics = await get_performance_analytics(db, since=T0 - timedelta(days=30))
    assert analytics["daily_trends"] == []
    assert analytics["top_templates"] == []
    assert analytics["cost_savings"] == {"total_interactions": 0, "total_api_calls": 0, "saved_api_calls": 0}
    assert analytics["user_engagement"]["total_users"] == 0
    assert analytics["user_engagement"]["avg_interactions_per_user"] == 0.0


@pytest.mark.asyncio
async def test_performance_analytics_daily_trends_split_by_day(db) -> None:
    await _log(db, source=InteractionSource.learned)
    await _log(db, created_at=T0 - timedelta(days=1))
    await _log(db, created_at=T0 - timedelta(days=1), user_id="u2")
    analytics = await get_performance_analytics(db, since=T0 - timedelta(days=7))
    trends = [(d["day"], d["total_interactions"], d["learned_responses"], d["api_calls"])
              for d in analytics["daily_trends"]]
    assert trends == [("2026-03-01", 1, 1, 0), ("2026-02-28", 2, 0, 2)]


@pytest.mark.asyncio
async def test_user_journey_keeps_three_examples_per_step(db) -> None:
    for n in range(5):
        await _log(db, question=f"How do I test step {n}?")
    journey = await get_user_journey(db, "T1", since=T0 - timedelta(days=30))
    assert len(journey) == 1
    assert journey[0]["step_frequency"] == 5
    assert len(journey[0]["example_questions"]) == 3


@pytest.mark.asyncio
async def test_count_recent_learned(db) -> None:
    await _log(db, source=InteractionSource.learned)
    await _log(db, source=InteractionSource.learned, created_at=T0 - timedelta(days=2))
    await _log(db)
    assert await count_recent_learned(db, since=T0 - timedelta(hours=24)) == 1
