"""
nodes.py — Routing nodes for the response LangGraph pipeline.

Every node is an async method on ResponseNodes, which holds the injected
resources (session factory, conversation store, external client, Redis).

Reads / writes follow graph/state.py. A node that decides the answer sets
route_state, answer, source and confidence; a node that passes leaves
route_state unset. finalize is the only node that writes anywhere.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from setup_assistant.agents.conversation.progress import completion_status, detect_steps
from setup_assistant.agents.conversation.state_store import (
    Clock,
    ConversationStateStore,
    utc_now,
)
from setup_assistant.agents.responder.fallback import generate_smart_fallback
from setup_assistant.agents.responder.guards import find_workflow_json, is_prompt_disclosure
from setup_assistant.agents.responder.learned import find_learned_response
from setup_assistant.agents.responder.llm_service import ExternalAnswerClient
from setup_assistant.agents.responder.responses import DISCLOSURE_REFUSAL, ONBOARDING_RESPONSE
from setup_assistant.agents.responder.schemas import InteractionSource
from setup_assistant.config import settings
from setup_assistant.database import session_scope
from setup_assistant.errors import ExternalCallError, PersistenceWriteFailure
from setup_assistant.graph.state import RouteState, RouterState
from setup_assistant.store import log_interaction, upsert_template_intelligence

logger = logging.getLogger(__name__)

NO_API_KEY = "no_api_key"
JSON_UPLOAD_QUESTION = "JSON template provided"


def _pass() -> dict:
    """No decision; hand over to the next tier."""
    return {"errors": []}


@dataclass
class RouterResources:
    """Everything the routing nodes need; built once in main.py lifespan."""
    session_factory: async_sessionmaker[AsyncSession]
    state_store: ConversationStateStore
    llm_client: Optional[ExternalAnswerClient] = None
    redis: Any = None
    fallback_threshold: float = settings.fallback_accept_threshold
    clock: Clock = field(default=utc_now)


class ResponseNodes:
    def __init__(self, resources: RouterResources):
        self.r = resources

    # ------------------------------------------------------------------
    # 1. Learned cache
    # ------------------------------------------------------------------
    async def learned_lookup(self, state: RouterState) -> dict:
        learned = await find_learned_response(
            self.r.session_factory,
            state["question"],
            state["template_id"],
            redis=self.r.redis,
            now=self.r.clock(),
        )
        if learned is None:
            return _pass()
        logger.info("Learned answer served template_id=%s — external call saved", state["template_id"])
        return {
            "route_state": RouteState.LEARNED_HIT.value,
            "answer": learned.answer,
            "source": InteractionSource.learned.value,
            "confidence": learned.confidence,
        }

    # ------------------------------------------------------------------
    # 2. Workflow JSON upload
    # ------------------------------------------------------------------
    async def json_guard(self, state: RouterState) -> dict:
        if find_workflow_json(state["question"], state.get("history", [])) is None:
            return _pass()
        logger.info("Workflow JSON detected template_id=%s", state["template_id"])
        return {
            "route_state": RouteState.JSON_VALIDATION.value,
            "answer": ONBOARDING_RESPONSE,
            "source": InteractionSource.json_validation.value,
            "confidence": None,
            "logged_question": JSON_UPLOAD_QUESTION,
        }

    # ------------------------------------------------------------------
    # 3. Disclosure guard
    # ------------------------------------------------------------------
    async def disclosure_guard(self, state: RouterState) -> dict:
        if not is_prompt_disclosure(state["question"]):
            return _pass()
        logger.info("Prompt disclosure attempt refused template_id=%s", state["template_id"])
        return {
            "route_state": RouteState.DISCLOSURE_REFUSED.value,
            "answer": DISCLOSURE_REFUSAL,
            "source": InteractionSource.disclosure_refused.value,
            "confidence": None,
        }

    # ------------------------------------------------------------------
    # 4. Rule-based fallback
    # ------------------------------------------------------------------
    async def fallback_candidate(self, state: RouterState) -> dict:
        candidate = generate_smart_fallback(
            state["question"], state["template_id"], state.get("history", [])
        )
        update: dict = {
            "fallback_answer": candidate.answer,
            "fallback_confidence": candidate.confidence,
            "fallback_topic": candidate.topic,
        }
        if candidate.confidence > self.r.fallback_threshold:
            logger.info(
                "High-confidence fallback topic=%s confidence=%.2f — external call saved",
                candidate.topic, candidate.confidence,
            )
            update.update({
                "route_state": RouteState.FALLBACK_HIGH_CONFIDENCE.value,
                "answer": candidate.answer,
                "source": InteractionSource.fallback.value,
                "confidence": candidate.confidence,
            })
        return update

    # ------------------------------------------------------------------
    # 5. External model
    # ------------------------------------------------------------------
    async def external_call(self, state: RouterState) -> dict:
        client = self.r.llm_client
        if client is None:
            return {"external_error": NO_API_KEY}
        try:
            answer = await client.answer(
                state["question"], state["template_id"], state.get("history", [])
            )
        except ExternalCallError as exc:
            logger.warning("External tier failed (%s), degrading to fallback", type(exc).__name__)
            return {"external_error": f"{type(exc).__name__}: {exc}"}
        return {
            "route_state": RouteState.EXTERNAL_CALL.value,
            "answer": answer,
            "source": InteractionSource.external.value,
            "confidence": None,
        }

    # ------------------------------------------------------------------
    # 6. Low-confidence fallback: runs whenever the external tier did not answer
    # ------------------------------------------------------------------
    async def low_confidence_fallback(self, state: RouterState) -> dict:
        no_key = state.get("external_error") == NO_API_KEY
        source = InteractionSource.no_api_key if no_key else InteractionSource.error
        return {
            "route_state": RouteState.FALLBACK_LOW_CONFIDENCE.value,
            "answer": state["fallback_answer"],
            "source": source.value,
            "confidence": state.get("fallback_confidence"),
        }

    # ------------------------------------------------------------------
    # Terminal bookkeeping
    # ------------------------------------------------------------------
    async def finalize(self, state: RouterState) -> dict:
        """
        Writes exactly one interaction; feeds template intelligence from
        EXTERNAL_CALL only; updates conversation state unless DISCLOSURE_REFUSED.
        Persistence failures are logged and swallowed.
        """
        route_state = RouteState(state["route_state"])
        source = InteractionSource(state["source"])
        errors: list[str] = []

        interaction_id: Optional[str] = None
        try:
            async with session_scope(self.r.session_factory) as db:
                interaction_id = await log_interaction(
                    db,
                    template_id=state["template_id"],
                    question=state.get("logged_question") or state["question"],
                    answer=state["answer"],
                    user_id=state["user_id"],
                    source=source,
                    created_at=self.r.clock(),
                )
        except (PersistenceWriteFailure, SQLAlchemyError, OSError) as exc:
            logger.error("Interaction not logged template_id=%s source=%s: %s", state["template_id"], source.value, exc)
            errors.append(f"log_interaction: {exc}")
            interaction_id = None

        if route_state is RouteState.EXTERNAL_CALL:
            try:
                async with session_scope(self.r.session_factory) as db:
                    await upsert_template_intelligence(
                        db, state["template_id"], state["question"], now=self.r.clock()
                    )
            except (SQLAlchemyError, OSError) as exc:
                logger.error("Template intelligence not updated template_id=%s: %s", state["template_id"], exc)
                errors.append(f"template_intelligence: {exc}")

        progress: Optional[dict] = None
        if route_state is not RouteState.DISCLOSURE_REFUSED:
            steps = detect_steps(state["question"], state.get("history", []))
            conversation = self.r.state_store.record_interaction(
                state["user_id"], state["template_id"], steps
            )
            progress = completion_status(conversation).model_dump()

        logger.info(
            "Routed question template_id=%s route_state=%s source=%s interaction_id=%s",
            state["template_id"], route_state.value, source.value, interaction_id,
        )
        return {"interaction_id": interaction_id, "progress": progress, "errors": errors}


def terminal_or(next_node: str):
    """Conditional-edge selector: jump to finalize once a terminal state is set."""
    def _select(state: RouterState) -> str:
        return "finalize" if state.get("route_state") else next_node
    return _select
