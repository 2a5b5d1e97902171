"""
test_api.py — HTTP surface: ask, feedback, reporting, conversation and health
endpoints, plus the error envelope.

The lifespan is not run (ASGITransport does not send lifespan events):
app.state is populated by the fixture and get_db is overridden to use the
per-test SQLite database.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from setup_assistant.agents.conversation.state_store import ConversationStateStore
from setup_assistant.agents.responder.schemas import InteractionSource, QuestionCategory
from setup_assistant.database import get_db, session_scope
from setup_assistant.graph.graph import ResponseRouter
from setup_assistant.graph.nodes import RouterResources
from setup_assistant.main import app
from setup_assistant.store import get_interaction, log_interaction


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(session_factory):
    """Async httpx client using ASGI transport — no live server needed."""
    store = ConversationStateStore()
    redis = AsyncMock()
    app.state.redis = redis
    app.state.llm_client = None
    app.state.state_store = store
    app.state.response_router = ResponseRouter(
        RouterResources(session_factory=session_factory, state_store=store)
    )

    async def _override_get_db():
        async with session_scope(session_factory) as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


async def _seed(session_factory, **overrides) -> str:
    fields = dict(
        template_id="T1",
        question="Credential error in Gmail node",
        answer="Reconnect the Gmail credential.",
        user_id="u1",
        source=InteractionSource.external,
        created_at=datetime.now(timezone.utc) - timedelta(hours=1),
    )
    fields.update(overrides)
    async with session_scope(session_factory) as db:
        return await log_interaction(db, **fields)


# ---------------------------------------------------------------------------
# Ask
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ask_returns_camel_case_answer(client: AsyncClient) -> None:
    response = await client.post(
        "/api/ask-ai",
        json={
            "question": "How do I add OpenAI credentials?",
            "templateContext": {"templateId": "T1"},
            "userId": "u1",
        },
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["source"] == "fallback"
    assert body["confidence"] >= 0.9
    assert body["interactionId"]
    assert body["routeState"] == "FALLBACK_HIGH_CONFIDENCE"
    assert body["progress"]["completedSteps"] == ["credentials"]


@pytest.mark.asyncio
async def test_ask_accepts_prompt_alias_and_history(client: AsyncClient) -> None:
    response = await client.post(
        "/api/ask-ai",
        json={
            "prompt": "What does this template do?",
            "history": [{"role": "user", "content": "hi"}],
        },
    )
    assert response.status_code == 200
    assert response.json()["source"] == "no_api_key"


@pytest.mark.asyncio
async def test_ask_without_question_is_422(client: AsyncClient) -> None:
    response = await client.post("/api/ask-ai", json={"templateContext": {"templateId": "T1"}})
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_unhelpful_feedback(client: AsyncClient, session_factory) -> None:
    interaction_id = await _seed(session_factory)

    response = await client.post(
        "/api/ai/feedback",
        json={"interactionId": interaction_id, "feedback": "unhelpful", "helpful": False},
    )

    assert response.status_code == 200, response.text
    assert response.json()["success"] is True
    async with session_scope(session_factory) as db:
        orm = await get_interaction(db, interaction_id)
        assert orm.learning_score == 4
        assert orm.answer == "Reconnect the Gmail credential."
        assert orm.question == "Credential error in Gmail node"
    app.state.redis.delete.assert_awaited_once()


@pytest.mark.asyncio
async def test_feedback_unknown_id_is_404(client: AsyncClient) -> None:
    response = await client.post(
        "/api/ai/feedback", json={"interactionId": "nope", "feedback": "helpful"}
    )
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"feedback": "helpful"},
        {"interactionId": "x", "feedback": "meh"},
        {"interactionId": "x", "feedback": "helpful", "rating": 5},
    ],
)
async def test_malformed_feedback_is_422(client: AsyncClient, payload) -> None:
    response = await client.post("/api/ai/feedback", json=payload)
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_contradictory_feedback_is_422_and_unchanged(client: AsyncClient, session_factory) -> None:
    interaction_id = await _seed(session_factory)
    response = await client.post(
        "/api/ai/feedback",
        json={"interactionId": interaction_id, "feedback": "unhelpful", "helpful": True},
    )
    assert response.status_code == 422
    async with session_scope(session_factory) as db:
        orm = await get_interaction(db, interaction_id)
        assert orm.learning_score == 5
        assert orm.user_feedback is None


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_learning_stats(client: AsyncClient, session_factory) -> None:
    await _seed(session_factory, source=InteractionSource.learned)
    await _seed(session_factory, source=InteractionSource.external)
    response = await client.get("/api/ai/learning-stats")
    assert response.status_code == 200
    body = response.json()
    assert body["overall"]["total_interactions"] == 2
    assert body["overall"]["cost_savings_percentage"] == 50.0
    assert "message" in body


@pytest.mark.asyncio
async def test_template_intelligence_recommends_common_issue(client: AsyncClient, session_factory) -> None:
    await _seed(session_factory, user_id="u1")
    await _seed(session_factory, user_id="u2")
    response = await client.get("/api/ai/template-intelligence/T1")
    assert response.status_code == 200
    body = response.json()
    assert body["intelligence"] is None
    assert body["unique_users"] == 2
    assert [r["type"] for r in body["recommendations"]] == ["common_issue"]


@pytest.mark.asyncio
async def test_template_intelligence_includes_user_journey(client: AsyncClient, session_factory) -> None:
    long_question = "Gmail credential keeps expiring " + "x" * 150
    await _seed(session_factory, question=long_question, category=QuestionCategory.credentials)
    await _seed(session_factory, question=long_question, category=QuestionCategory.credentials, user_id="u2")
    await _seed(session_factory, question="How do I test it?", category=QuestionCategory.testing,
                source=InteractionSource.learned)
    await _seed(session_factory, category=QuestionCategory.credentials,
                created_at=datetime.now(timezone.utc) - timedelta(days=40))

    response = await client.get("/api/ai/template-intelligence/T1")
    journey = response.json()["user_journey"]
    assert [(step["question_category"], step["source"], step["step_frequency"]) for step in journey] == [
        ("credentials", "external", 2),
        ("testing", "learned", 1),
    ]
    assert journey[0]["example_questions"] == [long_question[:100]]
    assert journey[0]["avg_learning_score"] == 5.0
    assert journey[1]["avg_learning_score"] == 10.0


@pytest.mark.asyncio
async def test_performance_analytics(client: AsyncClient, session_factory) -> None:
    for _ in range(5):
        await _seed(session_factory, user_id="heavy")
    await _seed(session_factory, user_id="u2", source=InteractionSource.learned)
    await _seed(session_factory, user_id="u2", source=InteractionSource.conversation_completion)
    await _seed(session_factory, user_id="u3", template_id="general_chat")
    await _seed(session_factory, user_id="u4", created_at=datetime.now(timezone.utc) - timedelta(days=20))

    response = await client.get("/api/ai/performance-analytics", params={"timeframe": 7})
    assert response.status_code == 200
    body = response.json()

    assert body["cost_savings"] == {"total_interactions": 8, "total_api_calls": 6, "saved_api_calls": 1}
    assert sum(day["total_interactions"] for day in body["daily_trends"]) == 8
    assert sum(day["completions"] for day in body["daily_trends"]) == 1

    [template] = body["top_templates"]
    assert template["template_id"] == "T1"
    assert template["interaction_count"] == 7
    assert template["unique_users"] == 2
    assert template["completion_count"] == 1
    assert template["completion_rate"] == 50.0

    assert body["user_engagement"] == {
        "total_users": 3,
        "avg_interactions_per_user": 2.67,
        "max_interactions_per_user": 5,
        "engaged_users": 1,
    }
    assert body["metadata"]["timeframe"] == "7 days"
    assert "generated_at" in body["metadata"]


@pytest.mark.asyncio
async def test_performance_analytics_rejects_bad_timeframe(client: AsyncClient) -> None:
    response = await client.get("/api/ai/performance-analytics", params={"timeframe": 0})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_export_csv(client: AsyncClient, session_factory) -> None:
    await _seed(session_factory)
    await _seed(session_factory, template_id="T2")
    response = await client.get("/api/ai/export-conversations/T1", params={"format": "csv"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    lines = response.text.strip().splitlines()
    assert lines[0].startswith("id,template_id,question")
    assert len(lines) == 2


@pytest.mark.asyncio
async def test_export_json_respects_days(client: AsyncClient, session_factory) -> None:
    await _seed(session_factory)
    await _seed(session_factory, created_at=datetime.now(timezone.utc) - timedelta(days=10))
    response = await client.get("/api/ai/export-conversations/T1", params={"days": 7})
    assert response.json()["count"] == 1


# ---------------------------------------------------------------------------
# Conversation state
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_mark_complete_then_reset(client: AsyncClient, session_factory) -> None:
    response = await client.post("/api/ai/mark-complete", json={"userId": "u1", "templateId": "T1"})
    assert response.status_code == 200
    assert "T1" in response.json()["message"]
    assert response.json()["state"]["completedSteps"] == ["deployment"]

    state = await client.get("/api/ai/conversation-state", params={"userId": "u1", "templateId": "T1"})
    assert state.json()["progress"]["nextRecommendedStep"] == "credentials"

    reset = await client.post("/api/ai/reset-conversation", json={"userId": "u1", "templateId": "T1"})
    assert reset.status_code == 200
    assert reset.json()["state"]["completedSteps"] == []
    assert ("u1", "T1") not in app.state.state_store

    export = await client.get("/api/ai/export-conversations/T1")
    sources = sorted(row["source"] for row in export.json()["interactions"])
    assert sources == ["conversation_completion", "conversation_reset"]


@pytest.mark.asyncio
async def test_conversation_state_requires_ids(client: AsyncClient) -> None:
    response = await client.get("/api/ai/conversation-state", params={"userId": "u1"})
    assert response.status_code == 422


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_health_endpoints(client: AsyncClient, session_factory) -> None:
    await _seed(session_factory, source=InteractionSource.learned)
    await _seed(session_factory, source=InteractionSource.learned,
                created_at=datetime.now(timezone.utc) - timedelta(hours=30))
    liveness = await client.get("/api/health")
    assert liveness.json()["status"] == "ok"

    response = await client.get("/api/ai/health")
    body = response.json()
    assert body["checks"]["database"] is True
    assert body["checks"]["learning_system"] is True
    assert body["learned_responses_24h"] == 1
    assert body["checks"]["redis"] is True
    assert body["checks"]["external_model"] is False
    assert body["status"] == "degraded"


@pytest.mark.asyncio
async def test_health_reports_learning_system_down_when_database_fails(client: AsyncClient) -> None:
    broken = AsyncMock()
    broken.execute.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))

    async def _broken_db():
        yield broken

    app.dependency_overrides[get_db] = _broken_db
    body = (await client.get("/api/ai/health")).json()
    assert body["checks"]["database"] is False
    assert body["checks"]["learning_system"] is False
    assert body["learned_responses_24h"] is None
    assert body["status"] == "degraded"
