"""
models/template_intelligence.py — SQLAlchemy ORM for per-template aggregates.

Table: template_intelligence
One row per template_id. Never written by users directly: upserted after every
successful external answer and refreshed by the maintenance job.
"""
from datetime import datetime, timezone

from sqlalchemy import DateTime, Float, String
from sqlalchemy.orm import Mapped, mapped_column

from setup_assistant.database import Base, JSONType


class TemplateIntelligenceORM(Base):
    """
    common_questions: JSON list of question strings, deduplicated on insert, append-only.
    success_rate:     0–100, recomputed from the rolling 7-day interaction window.
    """
    __tablename__ = "template_intelligence"

    template_id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )
    common_questions: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )
    success_rate: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=0.0,
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
