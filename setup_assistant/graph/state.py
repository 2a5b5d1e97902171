"""
state.py — Shared RouterState TypedDict for the response LangGraph pipeline.

This is the single source of truth that flows through every routing node:
  learned_lookup → json_guard → disclosure_guard → fallback_candidate
  → external_call → low_confidence_fallback → finalize

Each node either leaves `route_state` unset (pass to the next tier) or sets it
to one of the RouteState terminals, after which the graph jumps to finalize.
"""
from __future__ import annotations

import operator
from enum import Enum
from typing import Annotated, Any, Optional

from typing_extensions import TypedDict


class RouteState(str, Enum):
    """Terminal routing states, in strict priority order."""
    LEARNED_HIT = "LEARNED_HIT"
    JSON_VALIDATION = "JSON_VALIDATION"
    DISCLOSURE_REFUSED = "DISCLOSURE_REFUSED"
    FALLBACK_HIGH_CONFIDENCE = "FALLBACK_HIGH_CONFIDENCE"
    EXTERNAL_CALL = "EXTERNAL_CALL"
    FALLBACK_LOW_CONFIDENCE = "FALLBACK_LOW_CONFIDENCE"


class RouterState(TypedDict, total=False):
    # ---- Request (set before graph.ainvoke) ---------------------------------
    question: str
    history: list[Any]                  # list[Turn]
    template_id: str                    # templateId or 'general_chat'
    user_id: str                        # userId or 'anonymous'

    # ---- Fallback candidate (kept as last-resort answer) --------------------
    fallback_answer: str
    fallback_confidence: float
    fallback_topic: str

    # ---- External tier -------------------------------------------------------
    external_error: Optional[str]       # 'no_api_key' or failure description

    # ---- Terminal decision ---------------------------------------------------
    route_state: str                    # RouteState value
    answer: str
    source: str                         # InteractionSource value
    confidence: Optional[float]
    logged_question: str                # question text written to the log

    # ---- finalize outputs ----------------------------------------------------
    interaction_id: Optional[str]
    progress: Optional[dict]
    errors: Annotated[list[str], operator.add]
