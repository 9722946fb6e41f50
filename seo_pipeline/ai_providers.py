"""
AI completion providers.

Thin async wrappers around the Anthropic, Google Gemini and OpenAI SDKs.  Each
provider exposes ``complete(config, messages, system)`` returning an
:class:`AIResponse`; only Anthropic also implements ``stream``.  SDK errors are
re-raised as :class:`ProviderError` carrying the HTTP status so the router can
decide whether to retry.

Messages use the chat shape ``{"role": "user" | "assistant", "content": str}``.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import anthropic
import google.generativeai as genai
import openai
from google.api_core import exceptions as google_exceptions

from seo_pipeline.content_model import ModelConfig

logger = logging.getLogger("seo_pipeline.ai_providers")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)
    logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ProviderError(Exception):
    """Error returned by a completion provider."""

    def __init__(self, message: str, status_code: int = 0, provider: str = "") -> None:
        self.status_code = status_code
        self.provider = provider
        super().__init__(message)


class ProviderNotConfiguredError(ProviderError):
    """Raised when the provider's API key is missing."""


# ---------------------------------------------------------------------------
# Response
# ---------------------------------------------------------------------------


@dataclass
class AIResponse:
    content: str
    model: str
    provider: str
    tokens_in: int = 0
    tokens_out: int = 0
    duration_ms: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


class ClaudeProvider:
    """Anthropic Messages API with prompt caching on the system prompt."""

    name = "anthropic"
    supports_streaming = True

    def __init__(self, api_key: Optional[str] = None) -> None:
        self._api_key = api_key
        self._client: Optional[anthropic.AsyncAnthropic] = None

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            api_key = self._api_key or os.environ.get("ANTHROPIC_API_KEY", "")
            if not api_key:
                raise ProviderNotConfiguredError(
                    "ANTHROPIC_API_KEY non configure. Ajoutez-la dans les "
                    "variables d'environnement.",
                    provider=self.name,
                )
            self._client = anthropic.AsyncAnthropic(api_key=api_key)
        return self._client

    @staticmethod
    def _system_blocks(system: Optional[str]) -> Any:
        if not system:
            return anthropic.NOT_GIVEN
        return [
            {
                "type": "text",
                "text": system,
                "cache_control": {"type": "ephemeral"},
            }
        ]

    async def complete(
        self,
        config: ModelConfig,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
    ) -> AIResponse:
        client = self._get_client()
        start = time.monotonic()
        try:
            response = await client.messages.create(
                model=config.model,
                max_tokens=config.max_tokens,
                temperature=config.temperature,
                system=self._system_blocks(system),
                messages=messages,
            )
        except anthropic.APIError as exc:
            raise ProviderError(
                str(exc), getattr(exc, "status_code", 0) or 0, self.name
            ) from exc

        text = next(
            (block.text for block in response.content if block.type == "text"), ""
        )
        usage = response.usage
        return AIResponse(
            content=text,
            model=config.model,
            provider=self.name,
            tokens_in=usage.input_tokens,
            tokens_out=usage.output_tokens,
            duration_ms=_elapsed_ms(start),
            cache_creation_tokens=getattr(usage, "cache_creation_input_tokens", 0) or 0,
            cache_read_tokens=getattr(usage, "cache_read_input_tokens", 0) or 0,
        )

    async def stream(
        self,
        config: ModelConfig,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield ``text`` deltas, then one ``done`` event with token counts."""
        client = self._get_client()
        try:
            async with client.messages.stream(
                model=config.model,
                max_tokens=config.max_tokens,
                temperature=config.temperature,
                system=self._system_blocks(system),
                messages=messages,
            ) as stream:
                async for text in stream.text_stream:
                    yield {"type": "text", "text": text}
                final = await stream.get_final_message()
        except anthropic.APIError as exc:
            raise ProviderError(
                str(exc), getattr(exc, "status_code", 0) or 0, self.name
            ) from exc

        yield {
            "type": "done",
            "model": config.model,
            "tokens_in": final.usage.input_tokens,
            "tokens_out": final.usage.output_tokens,
        }


# ---------------------------------------------------------------------------
# Google Gemini
# ---------------------------------------------------------------------------


class GeminiProvider:
    name = "google"
    supports_streaming = False

    def __init__(self, api_key: Optional[str] = None) -> None:
        self._api_key = api_key
        self._configured = False

    def _ensure_configured(self) -> None:
        if self._configured:
            return
        api_key = (
            self._api_key
            or os.environ.get("GOOGLE_AI_API_KEY", "")
            or os.environ.get("GEMINI_API_KEY", "")
        )
        if not api_key:
            raise ProviderNotConfiguredError(
                "GOOGLE_AI_API_KEY non configure.", provider=self.name
            )
        genai.configure(api_key=api_key)
        self._configured = True

    async def complete(
        self,
        config: ModelConfig,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
    ) -> AIResponse:
        self._ensure_configured()
        model = genai.GenerativeModel(config.model, system_instruction=system or None)
        contents = [
            {
                "role": "model" if m["role"] == "assistant" else "user",
                "parts": [{"text": m["content"]}],
            }
            for m in messages
        ]
        start = time.monotonic()
        try:
            response = await model.generate_content_async(
                contents,
                generation_config=genai.types.GenerationConfig(
                    max_output_tokens=config.max_tokens,
                    temperature=config.temperature,
                ),
            )
        except google_exceptions.GoogleAPICallError as exc:
            raise ProviderError(str(exc), int(exc.code or 0), self.name) from exc

        usage = getattr(response, "usage_metadata", None)
        return AIResponse(
            content=response.text,
            model=config.model,
            provider=self.name,
            tokens_in=getattr(usage, "prompt_token_count", 0) or 0,
            tokens_out=getattr(usage, "candidates_token_count", 0) or 0,
            duration_ms=_elapsed_ms(start),
        )


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------


class OpenAIProvider:
    name = "openai"
    supports_streaming = False

    def __init__(self, api_key: Optional[str] = None) -> None:
        self._api_key = api_key
        self._client: Optional[openai.AsyncOpenAI] = None

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            api_key = self._api_key or os.environ.get("OPENAI_API_KEY", "")
            if not api_key:
                raise ProviderNotConfiguredError(
                    "OPENAI_API_KEY non configure. Ajoutez-la dans Settings ou "
                    "les variables d'environnement.",
                    provider=self.name,
                )
            self._client = openai.AsyncOpenAI(api_key=api_key)
        return self._client

    async def complete(
        self,
        config: ModelConfig,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
    ) -> AIResponse:
        client = self._get_client()
        chat = ([{"role": "system", "content": system}] if system else []) + list(messages)
        start = time.monotonic()
        try:
            response = await client.chat.completions.create(
                model=config.model,
                max_tokens=config.max_tokens,
                temperature=config.temperature,
                messages=chat,
            )
        except openai.APIError as exc:
            raise ProviderError(
                str(exc), getattr(exc, "status_code", 0) or 0, self.name
            ) from exc

        return AIResponse(
            content=response.choices[0].message.content or "",
            model=config.model,
            provider=self.name,
            tokens_in=response.usage.prompt_tokens if response.usage else 0,
            tokens_out=response.usage.completion_tokens if response.usage else 0,
            duration_ms=_elapsed_ms(start),
        )


def build_default_providers(openai_api_key: Optional[str] = None) -> Dict[str, Any]:
    """Provider instances keyed by provider name, clients built lazily."""
    return {
        ClaudeProvider.name: ClaudeProvider(),
        GeminiProvider.name: GeminiProvider(),
        OpenAIProvider.name: OpenAIProvider(api_key=openai_api_key),
    }
