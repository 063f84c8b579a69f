# app/infra/text_generator.py
"""
AI text generation providers for ``ai_generate`` flow nodes.

Supported providers:
- OpenAI Chat Completions (gpt-4o-mini by default)
- Google Gemini generateContent (gemini-2.0-flash by default)

Architecture:
- All providers are async (httpx-based) with strict timeouts.
- Every failure surfaces as ``TextGenerationError``; the flow executor
  replaces it with a fallback reply, so a broken provider never halts a
  conversation.
- API key loaded from env only (never logged).
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx

logger = logging.getLogger(__name__)


class TextGenerationError(Exception):
    """Provider call failed (auth, quota, network, malformed response)."""

    def __init__(self, provider: str, message: str, *, status: int | None = None):
        self.provider = provider
        self.status = status
        super().__init__(f"{provider} generation failed (status={status}): {message}")


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------

class TextGenerationProvider(ABC):
    name = "base"
    default_model = ""

    def __init__(self, api_key: str, model: str | None = None, timeout: int = 20):
        self._api_key = api_key
        self._model = model or self.default_model
        self._timeout = timeout

    @abstractmethod
    async def _call_api(self, client: httpx.AsyncClient, prompt: str, persona: str) -> str:
        """Provider-specific request. Returns the generated text."""
        ...

    async def generate(self, prompt: str, persona: str) -> str:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await self._call_api(client, prompt, persona)
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("%s returned HTTP %s", self.name, status)
            raise TextGenerationError(self.name, "HTTP error", status=status) from exc
        except httpx.HTTPError as exc:
            raise TextGenerationError(self.name, type(exc).__name__) from exc
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise TextGenerationError(self.name, f"unexpected response shape: {exc}") from exc


# ---------------------------------------------------------------------------
# OpenAI provider
# ---------------------------------------------------------------------------

class OpenAITextGenerator(TextGenerationProvider):
    name = "openai"
    default_model = "gpt-4o-mini"

    _URL = "https://api.openai.com/v1/chat/completions"

    async def _call_api(self, client: httpx.AsyncClient, prompt: str, persona: str) -> str:
        resp = await client.post(
            self._URL,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": self._model,
                "temperature": 0.7,
                "messages": [
                    {"role": "system", "content": persona},
                    {"role": "user", "content": prompt},
                ],
            },
        )
        resp.raise_for_status()
        data = resp.json()
        return data["choices"][0]["message"]["content"] or ""


# ---------------------------------------------------------------------------
# Gemini provider
# ---------------------------------------------------------------------------

class GeminiTextGenerator(TextGenerationProvider):
    name = "gemini"
    default_model = "gemini-2.0-flash"

    _URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    async def _call_api(self, client: httpx.AsyncClient, prompt: str, persona: str) -> str:
        resp = await client.post(
            self._URL.format(model=self._model),
            headers={"x-goog-api-key": self._api_key},
            json={
                "systemInstruction": {"parts": [{"text": persona}]},
                "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            },
        )
        resp.raise_for_status()
        data = resp.json()
        parts = data["candidates"][0]["content"]["parts"]
        return "".join(p.get("text", "") for p in parts)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_PROVIDERS: dict[str, type[TextGenerationProvider]] = {
    "openai": OpenAITextGenerator,
    "gemini": GeminiTextGenerator,
}


def get_text_generator() -> TextGenerationProvider | None:
    """Create a text generator from app config.

    Returns ``None`` if AI generation is disabled or not configured.
    """
    from app.config import settings

    provider_name = settings.ai_provider
    if provider_name == "none" or provider_name not in _PROVIDERS:
        return None

    if not settings.ai_api_key:
        logger.error(
            "AI provider '%s' configured but AI_API_KEY is not set",
            provider_name,
        )
        return None

    cls = _PROVIDERS[provider_name]
    return cls(
        api_key=settings.ai_api_key,
        model=settings.ai_model,
        timeout=settings.ai_timeout_seconds,
    )
