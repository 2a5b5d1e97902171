"""
graph.py — ResponseRouter: the tiered answer pipeline as a LangGraph StateGraph.

Node execution order (each node may end the run by setting route_state):
  learned_lookup → json_guard → disclosure_guard → fallback_candidate
  → external_call → low_confidence_fallback → finalize → END

Usage:
    from setup_assistant.graph.graph import ResponseRouter
    from setup_assistant.graph.nodes import RouterResources

    # At FastAPI startup:
    app.state.response_router = ResponseRouter(RouterResources(...))

    # At request time:
    response = await app.state.response_router.route(body)
"""
from __future__ import annotations

import logging

from langgraph.graph import END, StateGraph
from sqlalchemy.exc import SQLAlchemyError

from setup_assistant.agents.responder.responses import GENERIC_ERROR_RESPONSE
from setup_assistant.agents.responder.schemas import (
    AskRequest,
    AskResponse,
    ConversationProgress,
    InteractionSource,
)
from setup_assistant.database import session_scope
from setup_assistant.errors import PersistenceWriteFailure
from setup_assistant.graph.nodes import ResponseNodes, RouterResources, terminal_or
from setup_assistant.graph.state import RouterState
from setup_assistant.store import log_interaction

logger = logging.getLogger(__name__)


def build_graph(resources: RouterResources):
    """
    Builds and compiles the response StateGraph.

    Every tier node has one conditional edge: to finalize when it produced the
    answer, otherwise to the next tier. external_call always continues to
    low_confidence_fallback when it did not answer (failure or no API key).
    """
    nodes = ResponseNodes(resources)
    workflow = StateGraph(RouterState)

    workflow.add_node("learned_lookup", nodes.learned_lookup)
    workflow.add_node("json_guard", nodes.json_guard)
    workflow.add_node("disclosure_guard", nodes.disclosure_guard)
    workflow.add_node("fallback_candidate", nodes.fallback_candidate)
    workflow.add_node("external_call", nodes.external_call)
    workflow.add_node("low_confidence_fallback", nodes.low_confidence_fallback)
    workflow.add_node("finalize", nodes.finalize)

    workflow.set_entry_point("learned_lookup")

    chain = [
        ("learned_lookup", "json_guard"),
        ("json_guard", "disclosure_guard"),
        ("disclosure_guard", "fallback_candidate"),
        ("fallback_candidate", "external_call"),
        ("external_call", "low_confidence_fallback"),
    ]
    for node, next_node in chain:
        workflow.add_conditional_edges(
            node,
            terminal_or(next_node),
            {"finalize": "finalize", next_node: next_node},
        )

    workflow.add_edge("low_confidence_fallback", "finalize")
    workflow.add_edge("finalize", END)

    compiled = workflow.compile()
    logger.info("Response graph compiled successfully")
    return compiled


class ResponseRouter:
    """Entry point for one question: runs the graph, never raises for a valid request."""

    def __init__(self, resources: RouterResources):
        self.resources = resources
        self.graph = build_graph(resources)

    async def route(self, body: AskRequest) -> AskResponse:
        initial: RouterState = {
            "question": body.question,
            "history": list(body.conversation_history),
            "template_id": body.template_key,
            "user_id": body.user_key,
            "errors": [],
        }
        try:
            result = await self.graph.ainvoke(initial)
        except Exception as exc:
            logger.error("Response graph failed template_id=%s: %s", body.template_key, exc, exc_info=True)
            return await self._unexpected_failure(body)

        progress = result.get("progress")
        return AskResponse(
            answer=result["answer"],
            source=InteractionSource(result["source"]),
            confidence=result.get("confidence"),
            interaction_id=result.get("interaction_id"),
            route_state=result["route_state"],
            progress=ConversationProgress(**progress) if progress else None,
        )

    async def _unexpected_failure(self, body: AskRequest) -> AskResponse:
        interaction_id = None
        try:
            async with session_scope(self.resources.session_factory) as db:
                interaction_id = await log_interaction(
                    db,
                    template_id=body.template_key,
                    question=body.question,
                    answer=GENERIC_ERROR_RESPONSE,
                    user_id=body.user_key,
                    source=InteractionSource.error,
                )
        except (PersistenceWriteFailure, SQLAlchemyError, OSError) as exc:
            logger.error("Error-path interaction not logged: %s", exc)
        return AskResponse(
            answer=GENERIC_ERROR_RESPONSE,
            source=InteractionSource.error,
            interaction_id=interaction_id,
        )
