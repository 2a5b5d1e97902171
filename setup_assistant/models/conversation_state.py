"""
models/conversation_state.py — SQLAlchemy ORM for conversation-state snapshots.

Table: conversation_states

The live map is in-process (agents/conversation/state_store.py). This table only
holds the snapshot written at shutdown and read back at startup.
"""
from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from setup_assistant.database import Base, JSONType


class ConversationStateORM(Base):
    __tablename__ = "conversation_states"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    template_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    state_data: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Serialized ConversationState",
    )
    last_activity: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
