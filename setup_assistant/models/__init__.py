"""
models/__init__.py — imports all ORM models so Alembic's env.py
sees them via Base.metadata when generating migrations.
"""
from setup_assistant.models.interaction import InteractionORM
from setup_assistant.models.template_intelligence import TemplateIntelligenceORM
from setup_assistant.models.conversation_state import ConversationStateORM

__all__ = ["InteractionORM", "TemplateIntelligenceORM", "ConversationStateORM"]
