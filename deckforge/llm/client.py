"""
LLM text-completion clients.

The pipeline treats the model as an opaque capability: a prompt goes in, text
comes out, or a classified error is raised. Providers:
- GeminiClient: google-generativeai, lazily loaded
- OpenRouterClient: OpenAI-compatible chat completions over httpx
- ScriptedLLMClient: canned responses for tests and offline runs

BoundedLLMClient wraps any of them with a semaphore so that the number of
in-flight calls across all jobs stays under a ceiling.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Union

import httpx
from loguru import logger

from deckforge.errors import MalformedOutput, TransientDependencyError, UpstreamRateLimited

if TYPE_CHECKING:
    from config import Settings


@dataclass
class LLMResponse:
    """Text returned by a model plus rough token accounting."""

    text: str
    model: str
    prompt_tokens_est: int = 0
    completion_tokens_est: int = 0

    @property
    def tokens_est(self) -> int:
        return self.prompt_tokens_est + self.completion_tokens_est


def estimate_tokens(text: str) -> int:
    """Rough token estimate (4 characters per token)."""
    return (len(text) + 3) // 4


class LLMClient(ABC):
    """Text-completion capability consumed by the stages and the verifier."""

    name: str = "llm"
    model: str = "unknown"

    @abstractmethod
    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.3,
        max_output_tokens: int = 2048,
    ) -> LLMResponse:
        """Send a prompt and return the model's text."""

    async def aclose(self) -> None:
        return None


# ========================================
# Gemini
# ========================================


class GeminiClient(LLMClient):
    """Google Gemini via google-generativeai."""

    name = "gemini"

    def __init__(self, api_key: str, model: str = "gemini-2.0-flash"):
        self.api_key = api_key
        self.model = model
        self._genai = None

    @property
    def genai(self):
        """Lazy-load the Gemini SDK."""
        if self._genai is None:
            if not self.api_key:
                raise ValueError("Gemini API key not configured")

            import google.generativeai as genai

            genai.configure(api_key=self.api_key)
            self._genai = genai
        return self._genai

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.3,
        max_output_tokens: int = 2048,
    ) -> LLMResponse:
        model = self.genai.GenerativeModel(
            model_name=self.model,
            system_instruction=system_prompt,
        )
        try:
            response = await model.generate_content_async(
                prompt,
                generation_config={
                    "temperature": temperature,
                    "top_p": 0.8,
                    "max_output_tokens": max_output_tokens,
                },
            )
        except Exception as e:
            logger.error(f"Gemini API error: {e}")
            raise

        text = getattr(response, "text", "") or ""
        if not text:
            logger.warning("Empty response from Gemini")
            raise MalformedOutput("Empty response from Gemini")

        return LLMResponse(
            text=text,
            model=self.model,
            prompt_tokens_est=estimate_tokens((system_prompt or "") + prompt),
            completion_tokens_est=estimate_tokens(text),
        )


# ========================================
# OpenRouter (OpenAI-compatible)
# ========================================


class OpenRouterClient(LLMClient):
    """Chat-completions client for OpenRouter or any OpenAI-compatible endpoint."""

    name = "openrouter"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://openrouter.ai/api/v1",
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.3,
        max_output_tokens: int = 2048,
    ) -> LLMResponse:
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        response = await self.client.post(
            "/chat/completions",
            json={
                "model": self.model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_output_tokens,
            },
        )

        if response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            raise UpstreamRateLimited(
                "OpenRouter rate limit exceeded",
                dependency=self.name,
                status_code=429,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code >= 500:
            raise TransientDependencyError(
                f"OpenRouter server error {response.status_code}",
                dependency=self.name,
                status_code=response.status_code,
            )
        response.raise_for_status()

        data = response.json()
        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise MalformedOutput(f"Unexpected OpenRouter response shape: {str(data)[:200]}") from e

        usage = data.get("usage") or {}
        return LLMResponse(
            text=text,
            model=data.get("model", self.model),
            prompt_tokens_est=usage.get("prompt_tokens") or estimate_tokens(prompt),
            completion_tokens_est=usage.get("completion_tokens") or estimate_tokens(text),
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# ========================================
# Scripted (tests / offline)
# ========================================

ScriptedResponse = Union[str, BaseException, Callable[[str], str]]


class ScriptedLLMClient(LLMClient):
    """
    Plays back canned responses in order.

    Each scripted entry is a string (returned), an exception (raised), or a
    callable receiving the prompt. Every prompt is recorded in `calls`.
    """

    name = "scripted"
    model = "scripted"

    def __init__(
        self,
        responses: Iterable[ScriptedResponse] = (),
        default: ScriptedResponse | None = None,
    ):
        self._responses = list(responses)
        self.default = default
        self.calls: list[str] = []
        self.system_prompts: list[str | None] = []

    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        temperature: float = 0.3,
        max_output_tokens: int = 2048,
    ) -> LLMResponse:
        self.calls.append(prompt)
        self.system_prompts.append(system_prompt)

        if self._responses:
            entry = self._responses.pop(0)
        elif self.default is not None:
            entry = self.default
        else:
            raise RuntimeError("ScriptedLLMClient has no more responses")

        if isinstance(entry, BaseException):
            raise entry
        text = entry(prompt) if callable(entry) else entry
        return LLMResponse(
            text=text,
            model=self.model,
            prompt_tokens_est=estimate_tokens(prompt),
            completion_tokens_est=estimate_tokens(text),
        )


# ========================================
# Concurrency bound
# ========================================


class BoundedLLMClient(LLMClient):
    """Caps concurrently in-flight calls to the wrapped client."""

    def __init__(self, inner: LLMClient, max_in_flight: int = 2):
        self.inner = inner
        self.name = inner.name
        self.model = inner.model
        self.max_in_flight = max_in_flight
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self.in_flight = 0

    async def complete(self, prompt: str, **kwargs: Any) -> LLMResponse:
        async with self._semaphore:
            self.in_flight += 1
            try:
                return await self.inner.complete(prompt, **kwargs)
            finally:
                self.in_flight -= 1

    async def aclose(self) -> None:
        await self.inner.aclose()


def get_llm_client(settings: Settings) -> LLMClient | None:
    """
    Build the configured LLM client.

    Returns None in mock mode; stages then run their deterministic offline path.
    """
    if settings.llm_provider == "mock":
        return None

    if settings.llm_provider == "gemini":
        client: LLMClient = GeminiClient(api_key=settings.gemini_api_key, model=settings.ai_model)
    else:
        client = OpenRouterClient(
            api_key=settings.openrouter_api_key,
            model=settings.openrouter_model,
            base_url=settings.openrouter_base_url,
            timeout=settings.llm_timeout_ms / 1000,
        )

    if not settings.has_llm_configured():
        logger.warning(f"LLM provider '{settings.llm_provider}' selected but no API key configured")

    return BoundedLLMClient(client, max_in_flight=settings.llm_max_concurrency)
