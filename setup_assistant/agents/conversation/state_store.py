"""
state_store.py — Bounded, expiring per-(user, template) conversation state.

The live map is in-process and owned exclusively by ConversationStateStore;
nothing else mutates a ConversationState. Entries idle for more than the TTL
(24h) are removed by sweep(). flush() / load() move the map to and from the
conversation_states table at shutdown / startup.

The clock is injectable so tests can move time without sleeping.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from setup_assistant.database import session_scope
from setup_assistant.store import load_conversation_states, save_conversation_states

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
StateKey = tuple[str, str]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConversationState(BaseModel):
    user_id: str
    template_id: str
    start_time: datetime
    last_activity: datetime
    interaction_count: int = 0
    completed_steps: list[str] = Field(default_factory=list)


class ConversationStateStore:
    """In-memory map of ConversationState keyed by (user_id, template_id)."""

    def __init__(self, ttl: timedelta = timedelta(hours=24), clock: Clock = utc_now):
        self.ttl = ttl
        self.clock = clock
        self._states: dict[StateKey, ConversationState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, key: StateKey) -> bool:
        return key in self._states

    def _fresh(self, user_id: str, template_id: str) -> ConversationState:
        now = self.clock()
        return ConversationState(
            user_id=user_id,
            template_id=template_id,
            start_time=now,
            last_activity=now,
        )

    def get(self, user_id: str, template_id: str) -> ConversationState:
        """Existing state (as a copy) or a fresh zero-valued one. Never inserts."""
        state = self._states.get((user_id, template_id))
        if state is None:
            return self._fresh(user_id, template_id)
        return state.model_copy(deep=True)

    def update(self, user_id: str, template_id: str, **patch: Any) -> ConversationState:
        """
        Merge ``patch`` into the state and refresh last_activity.
        completed_steps is merged as a set union, other fields are overwritten.
        """
        current = self.get(user_id, template_id)
        steps = patch.pop("completed_steps", None)
        if steps:
            merged = list(current.completed_steps)
            merged.extend(s for s in steps if s not in merged)
            patch["completed_steps"] = merged
        patch["last_activity"] = self.clock()
        updated = current.model_copy(update=patch)
        self._states[(user_id, template_id)] = updated
        return updated.model_copy(deep=True)

    def record_interaction(
        self, user_id: str, template_id: str, steps: Optional[list[str]] = None
    ) -> ConversationState:
        current = self.get(user_id, template_id)
        return self.update(
            user_id,
            template_id,
            interaction_count=current.interaction_count + 1,
            completed_steps=steps or [],
        )

    def reset(self, user_id: str, template_id: str) -> bool:
        return self._states.pop((user_id, template_id), None) is not None

    def _is_expired(self, state: ConversationState, now: datetime) -> bool:
        return now - state.last_activity > self.ttl

    def sweep(self) -> int:
        """Remove every entry idle for longer than the TTL. Idempotent."""
        now = self.clock()
        expired = [k for k, s in self._states.items() if self._is_expired(s, now)]
        for key in expired:
            del self._states[key]
        if expired:
            logger.info("Swept expired conversation states count=%d remaining=%d", len(expired), len(self._states))
        return len(expired)

    # ------------------------------------------------------------------
    # Durable snapshot
    # ------------------------------------------------------------------

    def snapshot(self) -> list[dict[str, Any]]:
        return [
            {
                "user_id": state.user_id,
                "template_id": state.template_id,
                "state_data": state.model_dump(mode="json"),
                "last_activity": state.last_activity,
            }
            for state in self._states.values()
        ]

    def restore(self, snapshots: list[dict[str, Any]]) -> int:
        """Load snapshots still inside the TTL window. Returns the number restored."""
        now = self.clock()
        restored = 0
        for snap in snapshots:
            state = ConversationState.model_validate(
                {**snap["state_data"], "last_activity": snap["last_activity"]}
            )
            if self._is_expired(state, now):
                continue
            self._states[(state.user_id, state.template_id)] = state
            restored += 1
        return restored

    async def flush(self, session_factory: async_sessionmaker[AsyncSession]) -> int:
        """Write every live entry to durable storage (last writer wins)."""
        snapshots = self.snapshot()
        async with session_scope(session_factory) as db:
            await save_conversation_states(db, snapshots)
        logger.info("Flushed conversation states count=%d", len(snapshots))
        return len(snapshots)

    async def load(self, session_factory: async_sessionmaker[AsyncSession]) -> int:
        """
        Reload entries younger than the TTL. Storage being unreachable must not
        block startup: the failure is logged and the store starts empty.
        """
        since = self.clock() - self.ttl
        try:
            async with session_scope(session_factory) as db:
                snapshots = await load_conversation_states(db, since)
        except Exception as exc:
            logger.warning("Could not reload conversation states, starting empty: %s", exc)
            return 0
        restored = self.restore(snapshots)
        logger.info("Loaded conversation states count=%d", restored)
        return restored
