"""
guards.py — Cheap checks that run before the fallback generator.

Order matters: workflow-JSON detection is checked before the disclosure guard,
so a pasted workflow that happens to contain "system prompt" is still treated
as a template upload.
"""
import json
import re
from typing import Optional, Sequence

from setup_assistant.agents.responder.schemas import Turn

DISCLOSURE_PATTERNS = [
    re.compile(r"prompt.*(runs|controls|used|that.*runs.*this.*chat)", re.IGNORECASE),
    re.compile(r"instructions.*(you.*follow|given.*to.*you)", re.IGNORECASE),
    re.compile(r"system.*(message|prompt)", re.IGNORECASE),
]


def _parses_as_workflow(text: str) -> bool:
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError):
        return False
    return isinstance(parsed, dict) and isinstance(parsed.get("nodes"), list)


def find_workflow_json(question: str, history: Sequence[Turn]) -> Optional[str]:
    """
    Return the text of the most recent user turn if it parses as a JSON object
    with a `nodes` array, else None.

    The question itself is the most recent user turn. Front ends that append the
    current turn to history send the JSON there instead, so a trailing user turn
    in history is checked too.
    """
    candidates = [question]
    if history and history[-1].role == "user":
        candidates.append(history[-1].content)
    for text in candidates:
        if _parses_as_workflow(text):
            return text
    return None


def is_prompt_disclosure(question: str) -> bool:
    """True if the question tries to extract the assistant's own instructions."""
    return any(pattern.search(question) for pattern in DISCLOSURE_PATTERNS)
