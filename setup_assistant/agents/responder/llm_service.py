"""
llm_service.py — Mistral async generation layer for the Setup Assistant.

Components:
  SYSTEM_PROMPT_TEMPLATE  — technical-writer persona + template / history context
  build_messages()        — system + user message pair for one question
  ExternalAnswerClient    — one bounded call: asyncio.Semaphore for concurrency,
                            asyncio.wait_for for the 30s deadline (cancels the call)

No module-level asyncio.Semaphore — the semaphore is created in main.py lifespan
and passed in (avoids RuntimeError: no running event loop at import).

Never retries. Every failure is raised as ExternalCallTimeout or
ExternalCallRejected; the router decides what to serve instead.
"""
import asyncio
import logging
from typing import Optional, Sequence

from mistralai import Mistral

from setup_assistant.agents.responder.fallback import conversation_summary
from setup_assistant.agents.responder.schemas import Turn
from setup_assistant.config import settings
from setup_assistant.errors import ExternalCallRejected, ExternalCallTimeout

logger = logging.getLogger(__name__)


SYSTEM_PROMPT_TEMPLATE = """You are a technical writer specializing in beginner-friendly n8n automation guides.

CONTEXT: The user is setting up an n8n workflow template.
Template: {template_id}
Previous conversation: {summary}

USER QUESTION: "{question}"

Provide a detailed, step-by-step answer focusing on:
1. Exact n8n UI navigation (button names, menu locations)
2. Credential setup with exact field names
3. Common errors and how to fix them
4. What to do next

Name interface elements precisely, e.g. "Credentials → Add Credential → [Service Name]" and the "API Key" field.
Keep every instruction practical and actionable for a beginner."""


def build_messages(
    question: str,
    template_id: str,
    history: Sequence[Turn] = (),
) -> list[dict]:
    system_prompt = SYSTEM_PROMPT_TEMPLATE.format(
        template_id=template_id,
        summary=conversation_summary(history),
        question=question,
    )
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": question},
    ]


class ExternalAnswerClient:
    """Wraps a Mistral client with the deadline, concurrency limit and error mapping."""

    def __init__(
        self,
        client: Mistral,
        semaphore: asyncio.Semaphore,
        model: str = settings.llm_model,
        timeout_s: float = settings.llm_timeout_s,
        temperature: float = settings.llm_temperature,
        max_tokens: int = settings.llm_max_tokens,
    ):
        self.client = client
        self.semaphore = semaphore
        self.model = model
        self.timeout_s = timeout_s
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def _complete(self, messages: list[dict]):
        async with self.semaphore:
            return await self.client.chat.complete_async(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )

    async def answer(
        self,
        question: str,
        template_id: str,
        history: Sequence[Turn] = (),
    ) -> str:
        """
        Single call to the external model. Returns the answer text.

        Raises:
          ExternalCallTimeout  — no response within timeout_s (the call is cancelled)
          ExternalCallRejected — non-2xx / transport error / empty or malformed payload
        """
        messages = build_messages(question, template_id, history)
        logger.info(
            "Calling external model model=%s template_id=%s timeout=%.0fs",
            self.model, template_id, self.timeout_s,
        )
        try:
            response = await asyncio.wait_for(self._complete(messages), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            logger.warning("External model timed out after %.0fs", self.timeout_s)
            raise ExternalCallTimeout(f"no response within {self.timeout_s}s") from exc
        except Exception as exc:
            logger.warning("External model call failed: %s", exc)
            raise ExternalCallRejected(str(exc)) from exc

        text = _extract_text(response)
        if not text:
            raise ExternalCallRejected("malformed or empty completion payload")
        logger.info("External model response received answer_len=%d", len(text))
        return text


def _extract_text(response) -> Optional[str]:
    try:
        content = response.choices[0].message.content
    except (AttributeError, IndexError, TypeError):
        return None
    if not isinstance(content, str):
        return None
    return content.strip() or None


def create_external_client(semaphore: asyncio.Semaphore) -> Optional[ExternalAnswerClient]:
    """
    Build the client once at startup. Returns None when no API key is configured —
    the router then degrades permanently to the learned / fallback tiers.
    """
    if not settings.llm_enabled:
        logger.warning("No external model API key configured — external tier disabled")
        return None
    kwargs = {"api_key": settings.mistral_api_key}
    if settings.llm_server_url:
        kwargs["server_url"] = settings.llm_server_url
    logger.info("External model client initialized model=%s", settings.llm_model)
    return ExternalAnswerClient(Mistral(**kwargs), semaphore)
