"""
scheduler.py — Periodic background jobs, detached from request handling.

Jobs:
  conversation_sweep     (hourly)   — drop conversation states idle > 24h
  interaction_maintenance (6-hourly) — retention prune + template-intelligence refresh

Each job is an async callable registered by name. start() runs one asyncio
task per job (sleep, run, repeat); run_job() runs a job once and awaits it, so
tests never wait on real timers. Both jobs are idempotent.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from setup_assistant.agents.conversation.state_store import ConversationStateStore
from setup_assistant.config import settings
from setup_assistant.database import session_scope
from setup_assistant.store import prune_interactions, refresh_template_intelligence

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


@dataclass
class Job:
    name: str
    interval_s: float
    func: JobFunc


class JobScheduler:
    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def add_job(self, name: str, interval_s: float, func: JobFunc) -> None:
        if name in self._jobs:
            raise ValueError(f"job {name!r} already registered")
        self._jobs[name] = Job(name=name, interval_s=interval_s, func=func)

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs)

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())

    async def run_job(self, name: str) -> Any:
        """Run one job immediately and return its result. Exceptions propagate."""
        return await self._jobs[name].func()

    async def _loop(self, job: Job) -> None:
        while True:
            await asyncio.sleep(job.interval_s)
            try:
                result = await job.func()
                logger.info("Background job %s completed result=%s", job.name, result)
            except Exception as exc:
                # One failed run must not kill the timer
                logger.error("Background job %s failed: %s", job.name, exc, exc_info=True)

    def start(self) -> None:
        for name, job in self._jobs.items():
            if name in self._tasks and not self._tasks[name].done():
                continue
            self._tasks[name] = asyncio.create_task(self._loop(job), name=f"job:{name}")
        logger.info("Background scheduler started jobs=%s", self.job_names)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Background scheduler stopped")


def build_scheduler(
    state_store: ConversationStateStore,
    session_factory: async_sessionmaker[AsyncSession],
    retention_days: int = settings.retention_days,
    sweep_interval_s: Optional[float] = None,
    maintenance_interval_s: Optional[float] = None,
) -> JobScheduler:
    """Register the two standard jobs against the given store and session factory."""

    async def conversation_sweep() -> int:
        return state_store.sweep()

    async def interaction_maintenance() -> dict:
        async with session_scope(session_factory) as db:
            pruned = await prune_interactions(db, retention_days)
            refreshed = await refresh_template_intelligence(db)
        return {"pruned": pruned, "templates_refreshed": refreshed}

    scheduler = JobScheduler()
    scheduler.add_job(
        "conversation_sweep",
        sweep_interval_s or settings.sweep_interval_s,
        conversation_sweep,
    )
    scheduler.add_job(
        "interaction_maintenance",
        maintenance_interval_s or settings.maintenance_interval_s,
        interaction_maintenance,
    )
    return scheduler
