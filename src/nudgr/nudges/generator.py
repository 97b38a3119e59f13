"""Motivational message generation with a pluggable text provider.

``MessageGenerator`` owns prompt building and output validation; providers
only turn a prompt into raw text. The provider is chosen by
``NUDGR_NUDGE_PROVIDER``: ``gemini`` calls the Gemini REST API, ``template``
produces a deterministic message locally.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from nudgr.config import get_settings
from nudgr.errors import GenerationError, MessageRejectedError
from nudgr.nudges.prompts import build_nudge_prompt

logger = structlog.get_logger()

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"


@dataclass(frozen=True)
class NudgeContext:
    """What the generator knows about the task and the user's mood."""

    title: str
    description: str = ""
    recent_emotions: list[str] = field(default_factory=list)


class BaseMessageProvider(ABC):
    """Turns a prompt into raw model text."""

    name = "base"

    @abstractmethod
    async def complete(self, prompt: str, context: NudgeContext) -> str:
        """Return the raw completion. Raise on transport or API failure."""
        ...


class GeminiProvider(BaseMessageProvider):
    """Google Gemini ``generateContent`` over plain HTTPS."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash",
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client = client

    async def _post(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> dict[str, Any]:
        response = await client.post(
            f"{GEMINI_API_BASE}/models/{self.model}:generateContent",
            headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
            json=payload,
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    async def complete(self, prompt: str, context: NudgeContext) -> str:
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"maxOutputTokens": 1000},
        }
        if self._client is not None:
            data = await self._post(self._client, payload)
        else:
            async with httpx.AsyncClient() as client:
                data = await self._post(client, payload)

        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = candidates[0].get("content", {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)


class TemplateProvider(BaseMessageProvider):
    """Offline provider for development and tests; ignores the prompt."""

    name = "template"

    @staticmethod
    def _short(title: str, limit: int = 60) -> str:
        title = " ".join(title.split())
        return title if len(title) <= limit else title[: limit - 3].rstrip() + "..."

    async def complete(self, prompt: str, context: NudgeContext) -> str:
        title = self._short(context.title)
        if context.recent_emotions:
            mood = context.recent_emotions[0].replace("_", " ")
            return f"You've felt {mood} lately. Try starting with one small piece of '{title}'."
        return f"Take a moment to start the first part of '{title}'. It doesn't have to be perfect."


class MessageGenerator:
    """Builds the coaching prompt, calls the provider and validates the answer."""

    def __init__(self, provider: BaseMessageProvider, max_length: int = 200) -> None:
        self.provider = provider
        self.max_length = max_length

    def validate(self, message: str) -> str:
        """Return the trimmed message or raise.

        Raises:
            GenerationError: nothing left after trimming.
            MessageRejectedError: longer than ``max_length`` characters.
        """
        message = message.strip()
        if not message:
            msg = "Message provider returned an empty message"
            raise GenerationError(msg)
        if len(message) > self.max_length:
            msg = f"Generated message is {len(message)} characters, limit is {self.max_length}"
            raise MessageRejectedError(msg)
        return message

    async def generate(self, context: NudgeContext) -> str:
        prompt = build_nudge_prompt(context.title, context.description, context.recent_emotions, self.max_length)
        try:
            raw = await self.provider.complete(prompt, context)
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.warning("nudge_generation_failed", provider=self.provider.name, error=str(e))
            msg = "Failed to generate motivational message"
            raise GenerationError(msg) from e

        try:
            return self.validate(raw)
        except GenerationError as e:
            logger.warning("nudge_message_rejected", provider=self.provider.name, reason=e.message)
            raise


def _create_provider() -> BaseMessageProvider:
    settings = get_settings()
    provider_name = settings.nudge_provider.lower()
    if provider_name == "gemini":
        if not settings.gemini_api_key:
            msg = "NUDGR_GEMINI_API_KEY is required for the gemini nudge provider"
            raise ValueError(msg)
        return GeminiProvider(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            timeout=settings.gemini_timeout_seconds,
        )
    if provider_name == "template":
        return TemplateProvider()
    msg = f"Unsupported nudge provider: {provider_name}"
    raise ValueError(msg)


# Module-level singleton
_generator: MessageGenerator | None = None


def get_message_generator() -> MessageGenerator:
    global _generator  # noqa: PLW0603
    if _generator is None:
        _generator = MessageGenerator(_create_provider(), max_length=get_settings().nudge_max_length)
    return _generator


def reset_message_generator(generator: MessageGenerator | None = None) -> None:
    """Replace or clear the singleton."""
    global _generator  # noqa: PLW0603
    _generator = generator
