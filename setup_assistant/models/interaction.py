"""
models/interaction.py — SQLAlchemy ORM model for logged question/answer exchanges.

Table: interactions
One row per answered question, whichever tier produced the answer.
Rows with source 'external' or 'learned' feed the learned-response lookup.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from setup_assistant.database import Base


class InteractionORM(Base):
    """
    ORM model for a single question/answer exchange.

    template_id: opaque template key, or the 'general_chat' sentinel.
    source:      tier that produced the answer (learned, fallback, external, error, ...).
    learning_score: advisory score, moved by explicit feedback only.
    user_feedback:  NULL until feedback arrives, then 'helpful' or 'unhelpful'.
    """
    __tablename__ = "interactions"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="UUID row identifier",
    )
    template_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        comment="Template key or 'general_chat'",
    )
    question: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="User's question text",
    )
    answer: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Answer returned to the user",
    )
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="anonymous",
        comment="Opaque user key, 'anonymous' allowed",
    )
    source: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Answer tier — InteractionSource enum value",
    )
    category: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="general",
        comment="Question category — QuestionCategory enum value",
    )
    learning_score: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=3,
    )
    user_feedback: Mapped[Optional[str]] = mapped_column(
        String(16),
        nullable=True,
        comment="'helpful' | 'unhelpful' | NULL",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
