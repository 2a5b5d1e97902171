"""
test_rules.py — Keyword tables, question categories and setup-step detection.
"""
from setup_assistant.agents.conversation.progress import detect_steps, next_recommended_step
from setup_assistant.agents.responder.schemas import QuestionCategory, Turn
from setup_assistant.rules import (
    CATEGORY_KEYWORDS,
    SETUP_STEP_KEYWORDS,
    classify,
    matching_labels,
    whitelisted_answer_key,
)
from setup_assistant.store import categorize_question


def test_classify_returns_first_matching_label() -> None:
    # "credential" (credentials) and "error" (troubleshooting) both match, table order wins
    assert classify("Credential error on save", CATEGORY_KEYWORDS) == "credentials"


def test_classify_default_when_nothing_matches() -> None:
    assert classify("hello there", CATEGORY_KEYWORDS, default="general") == "general"


def test_categorize_question_is_case_insensitive() -> None:
    assert categorize_question("Where is the API KEY field?") is QuestionCategory.credentials
    assert categorize_question("How do I configure the HTTP node?") is QuestionCategory.configuration
    assert categorize_question("What does this do?") is QuestionCategory.general


def test_matching_labels_keeps_table_order() -> None:
    labels = matching_labels(["I activated it", "then added the credential"], SETUP_STEP_KEYWORDS)
    assert labels == ["credentials", "deployment"]


def test_whitelisted_answer_key_needs_every_group() -> None:
    assert whitelisted_answer_key("How do I add OpenAI credentials?") == "openai"
    assert whitelisted_answer_key("Where does my Slack token go?") == "slack"
    assert whitelisted_answer_key("What is OpenAI?") is None


def test_detect_steps_reads_user_turns_only() -> None:
    history = [
        Turn(role="assistant", content="Next, activate the workflow."),
        Turn(role="user", content="I pasted my api key"),
    ]
    assert detect_steps("now let me test it", history) == ["credentials", "testing"]


def test_next_recommended_step_order() -> None:
    assert next_recommended_step([]) == "credentials"
    assert next_recommended_step(["credentials"]) == "testing"
    assert next_recommended_step(["testing", "credentials"]) == "deployment"
    assert next_recommended_step(["credentials", "testing", "deployment"]) == "complete"
