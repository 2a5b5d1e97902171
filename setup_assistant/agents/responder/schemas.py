"""
schemas.py — Responder Pydantic v2 data contracts.

Defines:
  - InteractionSource  enum (tier that produced an answer)
  - QuestionCategory   enum (coarse topic of a question)
  - FeedbackValue      enum (helpful / unhelpful)
  - Turn               (single message in conversation history)
  - AskRequest         (incoming question from the front end)
  - AskResponse        (answer + tier + optional confidence)
  - FeedbackRequest    (explicit user feedback on one interaction)
  - ConversationRequest / ConversationProgress (state endpoints)

Inbound JSON is camelCase (templateId, conversationHistory); Python code uses
snake_case. Both spellings are accepted on input; responses are camelCase.
"""
from enum import Enum
from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

GENERAL_CHAT_TEMPLATE = "general_chat"
ANONYMOUS_USER = "anonymous"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class InteractionSource(str, Enum):
    learned = "learned"
    json_validation = "json_validation"
    disclosure_refused = "disclosure_refused"
    fallback = "fallback"
    external = "external"
    error = "error"
    no_api_key = "no_api_key"
    conversation_reset = "conversation_reset"
    conversation_completion = "conversation_completion"


# Tiers whose answers can be promoted by the learned-response lookup
LEARNABLE_SOURCES = (InteractionSource.external, InteractionSource.learned)


class QuestionCategory(str, Enum):
    credentials = "credentials"
    testing = "testing"
    configuration = "configuration"
    troubleshooting = "troubleshooting"
    general = "general"


class FeedbackValue(str, Enum):
    helpful = "helpful"
    unhelpful = "unhelpful"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Ask
# ---------------------------------------------------------------------------

class Turn(_CamelModel):
    """Single message in the conversation history sent by the front end."""

    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: Optional[str] = None


class TemplateContext(_CamelModel):
    template_id: Optional[str] = None


class AskRequest(_CamelModel):
    """
    Incoming setup question.

    templateContext.templateId is optional — without it the exchange is logged
    under the 'general_chat' sentinel. userId defaults to 'anonymous'.
    """
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore",
    )

    question: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("question", "prompt"),
        description="User question, or a pasted workflow JSON document.",
    )
    conversation_history: List[Turn] = Field(
        default_factory=list,
        validation_alias=AliasChoices("conversationHistory", "conversation_history", "history"),
    )
    template_context: TemplateContext = Field(
        default_factory=TemplateContext,
        validation_alias=AliasChoices("templateContext", "template_context"),
    )
    user_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("userId", "user_id"),
    )

    @property
    def template_key(self) -> str:
        return self.template_context.template_id or GENERAL_CHAT_TEMPLATE

    @property
    def user_key(self) -> str:
        return self.user_id or ANONYMOUS_USER


class ConversationProgress(_CamelModel):
    """Advisory completion heuristic for the front end."""

    completed_steps: List[str] = Field(default_factory=list)
    interaction_count: int = 0
    completion_percentage: float = 0.0
    next_recommended_step: str = "credentials"
    should_offer_completion: bool = False


class AskResponse(_CamelModel):
    answer: str
    source: InteractionSource
    confidence: Optional[float] = None
    interaction_id: Optional[str] = None
    route_state: Optional[str] = None
    progress: Optional[ConversationProgress] = None


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------

class FeedbackRequest(_CamelModel):
    """
    Explicit feedback on one logged interaction.
    `helpful`, when sent, must agree with `feedback` (checked in store.record_feedback).
    """
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid",
    )

    interaction_id: str = Field(..., min_length=1)
    feedback: FeedbackValue
    helpful: Optional[bool] = None


class FeedbackResponse(BaseModel):
    success: bool = True
    message: str = "Feedback recorded"


# ---------------------------------------------------------------------------
# Conversation endpoints
# ---------------------------------------------------------------------------

class ConversationRequest(_CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="forbid",
    )

    template_id: str = Field(..., min_length=1)
    user_id: str = Field(default=ANONYMOUS_USER, min_length=1)


__all__ = [
    "ANONYMOUS_USER",
    "AskRequest",
    "AskResponse",
    "ConversationProgress",
    "ConversationRequest",
    "FeedbackRequest",
    "FeedbackResponse",
    "FeedbackValue",
    "GENERAL_CHAT_TEMPLATE",
    "InteractionSource",
    "LEARNABLE_SOURCES",
    "QuestionCategory",
    "TemplateContext",
    "Turn",
]
