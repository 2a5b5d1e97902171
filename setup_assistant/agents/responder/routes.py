"""
routes.py — Setup Assistant HTTP endpoints.

POST /api/ask-ai                                — tiered answer (learned → JSON → disclosure → fallback → model)
POST /api/ai/feedback                           — helpful / unhelpful on one interaction
GET  /api/ai/learning-stats                     — 30-day tier distribution and category scores
GET  /api/ai/template-intelligence/{templateId} — per-template aggregate, user journey + recommendations
GET  /api/ai/performance-analytics              — daily trends, savings, top templates, engagement
POST /api/ai/reset-conversation                 — drop conversation state
POST /api/ai/mark-complete                      — mark deployment done
GET  /api/ai/conversation-state                 — state + completion progress
GET  /api/ai/export-conversations/{templateId}  — JSON or CSV export
GET  /api/ai/health                             — dependency checks

No authentication: the caller is trusted to send its own userId.
app.state resources (response_router, state_store, redis, llm_client) are set in main.py lifespan.
"""
import csv
import io
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from setup_assistant.agents.conversation.progress import completion_status
from setup_assistant.agents.conversation.state_store import ConversationState
from setup_assistant.agents.responder.responses import COMPLETION_RESPONSE
from setup_assistant.agents.responder.schemas import (
    AskRequest,
    AskResponse,
    ConversationRequest,
    FeedbackRequest,
    FeedbackResponse,
    InteractionSource,
)
from setup_assistant.cache import invalidate_learned_cache, ping_redis
from setup_assistant.database import get_db
from setup_assistant.store import (
    count_recent_learned,
    export_interactions,
    get_learning_stats,
    get_performance_analytics,
    get_template_intelligence,
    get_template_report,
    get_user_journey,
    log_interaction,
    ping,
    record_feedback,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["Setup Assistant"])

REPORT_WINDOW = timedelta(days=30)
LEARNING_HEALTH_WINDOW = timedelta(hours=24)
LOW_SUCCESS_RATE = 80.0
POPULAR_TEMPLATE_INTERACTIONS = 50

EXPORT_FIELDS = [
    "id", "template_id", "question", "answer", "user_id",
    "created_at", "source", "category", "learning_score", "user_feedback",
]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _state_payload(state: ConversationState) -> dict[str, Any]:
    return {
        "userId": state.user_id,
        "templateId": state.template_id,
        "startTime": state.start_time.isoformat(),
        "lastActivity": state.last_activity.isoformat(),
        "interactionCount": state.interaction_count,
        "completedSteps": list(state.completed_steps),
        "progress": completion_status(state).model_dump(by_alias=True),
    }


def generate_template_recommendations(
    intelligence: Optional[dict[str, Any]],
    report: dict[str, Any],
) -> list[dict[str, str]]:
    recommendations = []
    if report["common_issues"]:
        top = report["common_issues"][0]
        recommendations.append({
            "type": "common_issue",
            "message": (
                f"Users frequently ask: \"{top['question']}\" "
                f"({top['frequency']} times). Consider documenting it in the template."
            ),
        })
    if intelligence is not None and intelligence["success_rate"] < LOW_SUCCESS_RATE:
        recommendations.append({
            "type": "success_rate",
            "message": (
                f"Success rate is {intelligence['success_rate']:.1f}%. "
                "Review the setup instructions for this template."
            ),
        })
    if report["recent_interactions"] > POPULAR_TEMPLATE_INTERACTIONS:
        recommendations.append({
            "type": "popular_template",
            "message": (
                f"{report['recent_interactions']} interactions in the last 30 days. "
                "This template is popular; keep its guide up to date."
            ),
        })
    return recommendations


# ---------------------------------------------------------------------------
# Ask + feedback
# ---------------------------------------------------------------------------

@router.post("/ask-ai", response_model=AskResponse)
async def ask_endpoint(body: AskRequest, request: Request) -> AskResponse:
    """
    Answer one setup question through the tiered router.

    Always 200 for a well-formed body: model failures degrade to the
    rule-based answer and unexpected failures to a generic help text.
    """
    response_router = request.app.state.response_router
    return await response_router.route(body)


@router.post("/ai/feedback", response_model=FeedbackResponse)
async def feedback_endpoint(
    body: FeedbackRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> FeedbackResponse:
    """
    Record helpful / unhelpful on a logged interaction.

    404 when the interaction id is unknown; 422 when `helpful` contradicts `feedback`.
    The hot-cache entry for the interaction's question is dropped so the next
    ask re-evaluates promotion against the new feedback.
    """
    orm = await record_feedback(db, body)
    if orm is None:
        raise HTTPException(status_code=404, detail=f"Interaction {body.interaction_id} not found")
    await invalidate_learned_cache(request.app.state.redis, orm.template_id, orm.question)
    return FeedbackResponse(message=f"Feedback recorded as {body.feedback.value}")


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

@router.get("/ai/learning-stats")
async def learning_stats_endpoint(db: AsyncSession = Depends(get_db)) -> dict:
    stats = await get_learning_stats(db, _now() - REPORT_WINDOW)
    overall = stats["overall"]
    stats["message"] = (
        f"{overall['api_calls_avoided']} of {overall['total_interactions']} questions "
        "in the last 30 days were answered without an external model call"
    )
    logger.info("Learning stats request total=%d", overall["total_interactions"])
    return stats


@router.get("/ai/template-intelligence/{template_id}")
async def template_intelligence_endpoint(
    template_id: str,
    db: AsyncSession = Depends(get_db),
) -> dict:
    intelligence = await get_template_intelligence(db, template_id)
    since = _now() - REPORT_WINDOW
    report = await get_template_report(db, template_id, since)
    return {
        "template_id": template_id,
        "intelligence": intelligence,
        **report,
        "user_journey": await get_user_journey(db, template_id, since),
        "recommendations": generate_template_recommendations(intelligence, report),
    }


@router.get("/ai/performance-analytics")
async def performance_analytics_endpoint(
    timeframe: int = Query(default=30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Daily trends, external-call savings, busiest templates and user engagement over `timeframe` days."""
    analytics = await get_performance_analytics(db, _now() - timedelta(days=timeframe))
    analytics["metadata"] = {
        "timeframe": f"{timeframe} days",
        "generated_at": _now().isoformat(),
    }
    logger.info(
        "Performance analytics request timeframe=%d templates=%d",
        timeframe, len(analytics["top_templates"]),
    )
    return analytics


@router.get("/ai/export-conversations/{template_id}")
async def export_conversations_endpoint(
    template_id: str,
    format: Literal["json", "csv"] = Query(default="json"),
    days: int = Query(default=30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
):
    rows = await export_interactions(db, template_id, _now() - timedelta(days=days))
    logger.info("Export request template_id=%s format=%s rows=%d", template_id, format, len(rows))
    if format == "json":
        return {"template_id": template_id, "days": days, "count": len(rows), "interactions": rows}

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=EXPORT_FIELDS)
    writer.writeheader()
    writer.writerows(rows)
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="conversations_{template_id}.csv"'
        },
    )


# ---------------------------------------------------------------------------
# Conversation state
# ---------------------------------------------------------------------------

@router.post("/ai/reset-conversation")
async def reset_conversation_endpoint(
    body: ConversationRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    state_store = request.app.state.state_store
    existed = state_store.reset(body.user_id, body.template_id)
    await log_interaction(
        db,
        template_id=body.template_id,
        question="Conversation reset",
        answer="Conversation state cleared",
        user_id=body.user_id,
        source=InteractionSource.conversation_reset,
    )
    logger.info("Conversation reset template_id=%s existed=%s", body.template_id, existed)
    return {
        "success": True,
        "message": "Conversation reset",
        "state": _state_payload(state_store.get(body.user_id, body.template_id)),
    }


@router.post("/ai/mark-complete")
async def mark_complete_endpoint(
    body: ConversationRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    state_store = request.app.state.state_store
    state = state_store.update(body.user_id, body.template_id, completed_steps=["deployment"])
    message = COMPLETION_RESPONSE.format(template_id=body.template_id)
    await log_interaction(
        db,
        template_id=body.template_id,
        question="Setup marked complete",
        answer=message,
        user_id=body.user_id,
        source=InteractionSource.conversation_completion,
    )
    return {"success": True, "message": message, "state": _state_payload(state)}


@router.get("/ai/conversation-state")
async def conversation_state_endpoint(
    request: Request,
    user_id: str = Query(..., alias="userId", min_length=1),
    template_id: str = Query(..., alias="templateId", min_length=1),
) -> dict:
    state = request.app.state.state_store.get(user_id, template_id)
    return _state_payload(state)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@router.get("/ai/health")
async def assistant_health_endpoint(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    """`healthy` when every dependency check passes, otherwise `degraded`."""
    try:
        await ping(db)
        database_ok = True
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Health check: database unreachable: %s", exc)
        database_ok = False

    learned_last_24h: Optional[int] = None
    try:
        learned_last_24h = await count_recent_learned(db, _now() - LEARNING_HEALTH_WINDOW)
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Health check: learning system query failed: %s", exc)

    checks = {
        "database": database_ok,
        "learning_system": learned_last_24h is not None,
        "redis": await ping_redis(request.app.state.redis),
        "external_model": request.app.state.llm_client is not None,
        "conversation_store": request.app.state.state_store is not None,
    }
    return {
        "status": "healthy" if all(checks.values()) else "degraded",
        "checks": checks,
        "active_conversations": len(request.app.state.state_store),
        "learned_responses_24h": learned_last_24h,
        "timestamp": _now().isoformat(),
    }
