"""initial_schema

Revision ID: 001_initial_schema
Revises: 
Create Date: 2026-10-18 12:00:00.000000 UTC

Creates the three assistant tables:
  - interactions           (one row per answered question, any tier)
  - template_intelligence  (per-template aggregate, JSONB question list)
  - conversation_states    (shutdown snapshot of the in-process state map)
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_COLUMN = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    # --- interactions table ---
    op.create_table(
        "interactions",
        sa.Column("id", sa.String(length=36), nullable=False, comment="UUID row identifier"),
        sa.Column("template_id", sa.String(length=255), nullable=False, comment="Template key or 'general_chat'"),
        sa.Column("question", sa.Text(), nullable=False, comment="User's question text"),
        sa.Column("answer", sa.Text(), nullable=False, comment="Answer returned to the user"),
        sa.Column("user_id", sa.String(length=255), nullable=False, comment="Opaque user key, 'anonymous' allowed"),
        sa.Column("source", sa.String(length=32), nullable=False, comment="Answer tier — InteractionSource enum value"),
        sa.Column("category", sa.String(length=32), nullable=False, comment="Question category — QuestionCategory enum value"),
        sa.Column("learning_score", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("user_feedback", sa.String(length=16), nullable=True, comment="'helpful' | 'unhelpful' | NULL"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_interactions_template_id"), "interactions", ["template_id"], unique=False)
    op.create_index(op.f("ix_interactions_created_at"), "interactions", ["created_at"], unique=False)

    # --- template_intelligence table ---
    op.create_table(
        "template_intelligence",
        sa.Column("template_id", sa.String(length=255), nullable=False),
        sa.Column("common_questions", JSON_COLUMN, nullable=False),
        sa.Column("success_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("template_id"),
    )

    # --- conversation_states table ---
    op.create_table(
        "conversation_states",
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("template_id", sa.String(length=255), nullable=False),
        sa.Column("state_data", JSON_COLUMN, nullable=False, comment="Serialized ConversationState"),
        sa.Column("last_activity", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id", "template_id"),
    )
    op.create_index(op.f("ix_conversation_states_last_activity"), "conversation_states", ["last_activity"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_conversation_states_last_activity"), table_name="conversation_states")
    op.drop_table("conversation_states")
    op.drop_table("template_intelligence")
    op.drop_index(op.f("ix_interactions_created_at"), table_name="interactions")
    op.drop_index(op.f("ix_interactions_template_id"), table_name="interactions")
    op.drop_table("interactions")
