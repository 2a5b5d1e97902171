"""
progress.py — Setup-progress classification and the completion heuristic.

Advisory only: the front end uses it to offer "you're done" instead of looping
on questions. It never changes which tier answers a question.
"""
from typing import Iterable, Sequence

from setup_assistant.agents.conversation.state_store import ConversationState
from setup_assistant.agents.responder.schemas import ConversationProgress, Turn
from setup_assistant.rules import ESSENTIAL_STEPS, SETUP_STEP_KEYWORDS, matching_labels

OFFER_COMPLETION_PERCENTAGE = 80.0
OFFER_COMPLETION_MIN_INTERACTIONS = 3


def detect_steps(question: str, history: Sequence[Turn] = ()) -> list[str]:
    """Setup steps mentioned in any user turn (history plus the current question)."""
    user_turns: Iterable[str] = [t.content for t in history if t.role == "user"] + [question]
    return matching_labels(user_turns, SETUP_STEP_KEYWORDS)


def next_recommended_step(completed: Sequence[str]) -> str:
    for step in ESSENTIAL_STEPS:
        if step not in completed:
            return step
    if "deployment" not in completed:
        return "deployment"
    return "complete"


def completion_status(state: ConversationState) -> ConversationProgress:
    completed_essential = sum(1 for s in ESSENTIAL_STEPS if s in state.completed_steps)
    percentage = completed_essential / len(ESSENTIAL_STEPS) * 100
    return ConversationProgress(
        completed_steps=list(state.completed_steps),
        interaction_count=state.interaction_count,
        completion_percentage=percentage,
        next_recommended_step=next_recommended_step(state.completed_steps),
        should_offer_completion=(
            percentage >= OFFER_COMPLETION_PERCENTAGE
            and state.interaction_count >= OFFER_COMPLETION_MIN_INTERACTIONS
        ),
    )
