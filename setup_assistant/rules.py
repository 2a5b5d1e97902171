"""
rules.py — Keyword tables and the single classifier that consumes them.

Every keyword-based decision in the pipeline (interaction category, setup
progress, fallback confidence boosts) reads one of the tables below through
classify() / matching_labels(). Tables map label → keywords; order matters
for classify(), which returns the first label that matches.
"""
from typing import Iterable, Mapping, Optional, Sequence

KeywordTable = Mapping[str, Sequence[str]]


# Interaction.category: first match wins, 'general' otherwise
CATEGORY_KEYWORDS: dict[str, list[str]] = {
    "credentials": ["credential", "api key"],
    "testing": ["test", "workflow"],
    "configuration": ["node", "configure"],
    "troubleshooting": ["error", "troubleshoot"],
}

# Conversation progress: every matching step is marked complete
SETUP_STEP_KEYWORDS: dict[str, list[str]] = {
    "credentials": ["credential", "api key", "token", "authentication", "oauth"],
    "testing": ["test", "execute", "execution", "run the workflow", "manual run"],
    "deployment": ["activate", "deploy", "production", "go live"],
    "troubleshooting": ["error", "troubleshoot", "not working", "failed", "issue"],
}

ESSENTIAL_STEPS: tuple[str, ...] = ("credentials", "testing")

# Fallback generator inputs
FALLBACK_SIGNAL_KEYWORDS: dict[str, list[str]] = {
    "credential_setup": [
        "credential", "credentials", "api key", "setup", "configure",
        "authentication", "login", "token",
    ],
    "template_context": ["node", "workflow", "template"],
}

# Service-specific topics for the structured fallback answers
SERVICE_KEYWORDS: dict[str, list[str]] = {
    "openai": ["openai", "langchain", "@n8n/n8n-nodes-langchain"],
    "slack": ["slack"],
}

# Questions with a hand-authored answer that is trusted outright.
# Each entry: (all-of keyword groups, answer key). A group matches if any of
# its keywords is present.
WHITELISTED_PATTERNS: list[tuple[tuple[tuple[str, ...], ...], str]] = [
    ((("openai",), ("credential", "api key")), "openai"),
    ((("slack",), ("credential", "token")), "slack"),
]


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    return any(kw in text for kw in keywords)


def classify(text: str, table: KeywordTable, default: Optional[str] = None) -> Optional[str]:
    """Return the first label in ``table`` whose keywords appear in ``text`` (case-insensitive)."""
    lowered = text.lower()
    for label, keywords in table.items():
        if _contains_any(lowered, keywords):
            return label
    return default


def matching_labels(texts: Iterable[str], table: KeywordTable) -> list[str]:
    """Return every label in ``table`` matched by any of ``texts``, in table order."""
    combined = " ".join(texts).lower()
    return [
        label
        for label, keywords in table.items()
        if _contains_any(combined, keywords)
    ]


def whitelisted_answer_key(text: str) -> Optional[str]:
    """Answer key for a whitelisted question, or None."""
    lowered = text.lower()
    for groups, answer_key in WHITELISTED_PATTERNS:
        if all(_contains_any(lowered, group) for group in groups):
            return answer_key
    return None
