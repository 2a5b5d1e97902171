"""
fallback.py — Deterministic, rule-based answers with a confidence score.

No external call is ever made here. The router accepts the candidate outright
only when confidence > settings.fallback_accept_threshold (0.8); below that the
candidate is kept as the answer of last resort.

Confidence:
  whitelisted question (e.g. "openai" + "credential")  → 0.95, fixed
  otherwise: 0.5 base, +0.3 credential keywords in the question,
             +0.2 history mentions nodes / workflow / template,
             capped at 0.7
"""
from dataclasses import dataclass
from typing import Sequence

from setup_assistant.agents.responder.responses import FALLBACK_ANSWERS, GENERIC_HELP
from setup_assistant.agents.responder.schemas import Turn
from setup_assistant.rules import (
    FALLBACK_SIGNAL_KEYWORDS,
    SERVICE_KEYWORDS,
    classify,
    matching_labels,
    whitelisted_answer_key,
)

BASE_CONFIDENCE = 0.5
CREDENTIAL_BOOST = 0.3
CONTEXT_BOOST = 0.2
WHITELIST_CONFIDENCE = 0.95
GENERIC_CONFIDENCE_CAP = 0.7

SUMMARY_WINDOW = 3
SUMMARY_SNIPPET = 50


@dataclass(frozen=True)
class FallbackCandidate:
    answer: str
    confidence: float
    topic: str


def conversation_summary(history: Sequence[Turn]) -> str:
    """Short digest of the last few user turns, used in prompts and topic checks."""
    recent = [t for t in history[-SUMMARY_WINDOW:] if t.role == "user"]
    if not recent:
        return "New conversation"
    snippets = " | ".join(t.content[:SUMMARY_SNIPPET] for t in recent)
    return f"Recent questions: {snippets}"


def _structured_answer(question: str, template_id: str, history: Sequence[Turn]) -> tuple[str, str]:
    lowered = question.lower()
    summary = conversation_summary(history).lower()
    credentials_in_context = any(k in summary for k in ("credential", "openai", "api"))

    if (
        "add credential" in lowered
        or "how do i add" in lowered
        or ("credential" in lowered and credentials_in_context)
    ):
        return FALLBACK_ANSWERS["credentials_howto"], "credential_setup"

    service = classify(question, SERVICE_KEYWORDS)
    if service is not None:
        return FALLBACK_ANSWERS[service], f"service:{service}"

    return GENERIC_HELP.format(template_id=template_id), "generic"


def generate_smart_fallback(
    question: str,
    template_id: str,
    history: Sequence[Turn] = (),
) -> FallbackCandidate:
    answer_key = whitelisted_answer_key(question)
    if answer_key is not None:
        return FallbackCandidate(
            answer=FALLBACK_ANSWERS[answer_key],
            confidence=WHITELIST_CONFIDENCE,
            topic=f"whitelisted:{answer_key}",
        )

    confidence = BASE_CONFIDENCE
    if "credential_setup" in matching_labels([question], FALLBACK_SIGNAL_KEYWORDS):
        confidence += CREDENTIAL_BOOST
    if "template_context" in matching_labels((t.content for t in history), FALLBACK_SIGNAL_KEYWORDS):
        confidence += CONTEXT_BOOST

    answer, topic = _structured_answer(question, template_id, history)
    return FallbackCandidate(
        answer=answer,
        confidence=round(min(confidence, GENERIC_CONFIDENCE_CAP), 2),
        topic=topic,
    )
