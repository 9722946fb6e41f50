"""
AI Router
=========

Resolves a logical task name ("plan_article", "write_block", ...) to a
provider + model, performs the call, and owns the failure policy:

    1. Call the configured provider/model.
    2. On a retryable error (HTTP 429/503/529 or an overload / rate-limit
       message) wait 2s, then 5s, retrying the same model.
    3. When every same-model attempt failed, try the cross-provider fallback
       for that model exactly once.
    4. If the fallback fails too, raise the ORIGINAL error.
    5. Anything non-retryable is raised immediately.

Routing, fallback and price tables are read-only mappings handed to the
router at construction.  Per-call overrides produce a new ModelConfig via
``dataclasses.replace``; the tables themselves are never edited.

Usage:
    router = AIRouter(build_default_providers())
    response = await router.route("write_block", [{"role": "user", "content": prompt}])
    cost = router.cost_of(response)
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import asdict, dataclass, replace
from types import MappingProxyType
from typing import (
    Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple,
)

from seo_pipeline.ai_providers import AIResponse, ProviderError, ProviderNotConfiguredError
from seo_pipeline.content_model import ModelConfig

logger = logging.getLogger("seo_pipeline.ai_router")

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
# Model identifiers & tables
# ---------------------------------------------------------------------------

MODEL_SONNET = "claude-sonnet-4-20250514"
MODEL_HAIKU = "claude-haiku-4-5-20251001"
MODEL_GEMINI_PRO = "gemini-3.1-pro-preview"
MODEL_GEMINI_FLASH = "gemini-3-flash-preview"
MODEL_GEMINI_2_FLASH = "gemini-2.0-flash"
MODEL_GPT4O = "gpt-4o"
MODEL_GPT4O_MINI = "gpt-4o-mini"

TASK_ROUTING: Mapping[str, ModelConfig] = MappingProxyType({
    "plan_article": ModelConfig("anthropic", MODEL_SONNET, 4096, 0.7),
    "write_block": ModelConfig("anthropic", MODEL_SONNET, 2048, 0.8),
    "critique": ModelConfig("anthropic", MODEL_SONNET, 2048, 0.3),
    "generate_title": ModelConfig("google", MODEL_GEMINI_2_FLASH, 256, 0.7),
    "generate_meta": ModelConfig("google", MODEL_GEMINI_2_FLASH, 512, 0.5),
    "extract_keywords": ModelConfig("google", MODEL_GEMINI_2_FLASH, 1024, 0.2),
    "summarize": ModelConfig("google", MODEL_GEMINI_2_FLASH, 1024, 0.3),
    "analyze_serp": ModelConfig("google", MODEL_GEMINI_2_FLASH, 2048, 0.3),
    "analyze_competitor_content": ModelConfig("google", MODEL_GEMINI_2_FLASH, 2048, 0.2),
    "evaluate_authority_links": ModelConfig("google", MODEL_GEMINI_2_FLASH, 1024, 0.3),
})

# model -> (provider, model) tried once after same-model retries are exhausted
FALLBACK_MODEL: Mapping[str, Tuple[str, str]] = MappingProxyType({
    MODEL_SONNET: ("google", MODEL_GEMINI_2_FLASH),
    MODEL_HAIKU: ("google", MODEL_GEMINI_2_FLASH),
    MODEL_GPT4O: ("anthropic", MODEL_SONNET),
    MODEL_GPT4O_MINI: ("google", MODEL_GEMINI_2_FLASH),
    MODEL_GEMINI_PRO: ("anthropic", MODEL_SONNET),
    MODEL_GEMINI_FLASH: ("anthropic", MODEL_SONNET),
    MODEL_GEMINI_2_FLASH: ("anthropic", MODEL_SONNET),
})

# USD per 1K tokens: (input, output)
COST_PER_1K: Mapping[str, Tuple[float, float]] = MappingProxyType({
    MODEL_SONNET: (0.003, 0.015),
    MODEL_HAIKU: (0.001, 0.005),
    MODEL_GEMINI_PRO: (0.002, 0.012),
    MODEL_GEMINI_FLASH: (0.0005, 0.003),
    MODEL_GEMINI_2_FLASH: (0.0001, 0.0004),
    MODEL_GPT4O_MINI: (0.00015, 0.0006),
    MODEL_GPT4O: (0.0025, 0.01),
})

CACHE_WRITE_MULTIPLIER = 1.25
CACHE_READ_MULTIPLIER = 0.1

RETRY_DELAYS: Tuple[float, ...] = (2.0, 5.0)
RETRYABLE_STATUS_CODES = frozenset({429, 503, 529})
_RETRYABLE_MESSAGE = re.compile(r"overloaded|rate.?limit|too many requests", re.IGNORECASE)


@dataclass(frozen=True)
class AvailableModel:
    """Model selectable by an operator; prices are USD per 1M tokens."""
    id: str
    label: str
    provider: str
    cost_input: float
    cost_output: float
    tag: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


AVAILABLE_MODELS: Tuple[AvailableModel, ...] = (
    AvailableModel(MODEL_SONNET, "Claude Sonnet 4", "anthropic", 3, 15, "Recommande"),
    AvailableModel(MODEL_HAIKU, "Claude Haiku 4.5", "anthropic", 1, 5, "Equilibre"),
    AvailableModel(MODEL_GEMINI_PRO, "Gemini 3.1 Pro", "google", 2, 12, "Puissant"),
    AvailableModel(MODEL_GEMINI_FLASH, "Gemini 3 Flash", "google", 0.5, 3, "Rapide"),
    AvailableModel(MODEL_GEMINI_2_FLASH, "Gemini 2.0 Flash", "google", 0.1, 0.4, "Economique"),
    AvailableModel(MODEL_GPT4O_MINI, "GPT-4o mini", "openai", 0.15, 0.6, "Economique+"),
    AvailableModel(MODEL_GPT4O, "GPT-4o", "openai", 2.5, 10, "Premium"),
)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def is_retryable_error(exc: BaseException) -> bool:
    """True for rate-limit / overload failures worth retrying on the same model."""
    for attr in ("status_code", "status", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and value in RETRYABLE_STATUS_CODES:
            return True
    return bool(_RETRYABLE_MESSAGE.search(str(exc)))


def estimate_cost(
    tokens_in: int,
    tokens_out: int,
    model: str,
    cache_creation_tokens: int = 0,
    cache_read_tokens: int = 0,
    prices: Mapping[str, Tuple[float, float]] = COST_PER_1K,
) -> float:
    """USD cost of a call, rounded to 6 decimals; unknown models cost 0.

    >>> estimate_cost(1000, 500, MODEL_SONNET)
    0.0105
    """
    rates = prices.get(model)
    if rates is None:
        return 0.0
    rate_in, rate_out = rates
    cost = tokens_in / 1000 * rate_in + tokens_out / 1000 * rate_out
    if cache_creation_tokens:
        cost += cache_creation_tokens / 1000 * rate_in * CACHE_WRITE_MULTIPLIER
    if cache_read_tokens:
        cost += cache_read_tokens / 1000 * rate_in * CACHE_READ_MULTIPLIER
    return round(cost, 6)


def model_id_to_override(model_id: Optional[str]) -> Optional[Dict[str, str]]:
    """Map an AVAILABLE_MODELS id to a ``{provider, model}`` override."""
    if not model_id:
        return None
    for entry in AVAILABLE_MODELS:
        if entry.id == model_id:
            return {"provider": entry.provider, "model": entry.id}
    return None


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


class AIRouter:
    """Task-based routing with retry, backoff and one cross-provider fallback.

    Parameters
    ----------
    providers : mapping
        Provider name ("anthropic", "google", "openai") to an object with an
        async ``complete(config, messages, system)`` method.
    routing, fallbacks, prices : mapping, optional
        Lookup tables; default to the module constants.
    retry_delays : sequence of float
        Sleep before each same-model retry.  Its length is the retry count.
    sleep : callable
        Awaitable sleep, replaceable in tests.
    """

    def __init__(
        self,
        providers: Mapping[str, Any],
        routing: Mapping[str, ModelConfig] = TASK_ROUTING,
        fallbacks: Mapping[str, Tuple[str, str]] = FALLBACK_MODEL,
        prices: Mapping[str, Tuple[float, float]] = COST_PER_1K,
        retry_delays: Sequence[float] = RETRY_DELAYS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._providers = MappingProxyType(dict(providers))
        self._routing = MappingProxyType(dict(routing))
        self._fallbacks = MappingProxyType(dict(fallbacks))
        self._prices = MappingProxyType(dict(prices))
        self._retry_delays = tuple(retry_delays)
        self._sleep = sleep
        self.retry_count = 0
        self.fallback_count = 0

    # ------------------------------------------------------------------
    # Configuration lookups
    # ------------------------------------------------------------------

    def get_model_config(
        self, task: str, overrides: Optional[Mapping[str, Any]] = None
    ) -> ModelConfig:
        """Routing entry for ``task`` with ``overrides`` merged into a copy.

        Raises
        ------
        ValueError
            If the task has no routing entry.
        """
        config = self._routing.get(task)
        if config is None:
            raise ValueError(f"Tache IA inconnue: {task}")
        if overrides:
            changes = {
                key: overrides[key]
                for key in ("provider", "model", "max_tokens", "temperature")
                if overrides.get(key) is not None
            }
            config = replace(config, **changes)
        return config

    def get_all_routing_configs(self) -> Dict[str, Dict[str, Any]]:
        return {task: config.to_dict() for task, config in self._routing.items()}

    def estimate_task_cost(self, task: str, input_tokens: int) -> Dict[str, float]:
        """Cost band before calling: output between 50% and 100% of max_tokens."""
        config = self.get_model_config(task)
        return {
            "min": estimate_cost(
                input_tokens, config.max_tokens // 2, config.model, prices=self._prices
            ),
            "max": estimate_cost(
                input_tokens, config.max_tokens, config.model, prices=self._prices
            ),
        }

    def cost_of(self, response: AIResponse) -> float:
        return estimate_cost(
            response.tokens_in,
            response.tokens_out,
            response.model,
            cache_creation_tokens=response.cache_creation_tokens,
            cache_read_tokens=response.cache_read_tokens,
            prices=self._prices,
        )

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def _provider_for(self, config: ModelConfig) -> Any:
        provider = self._providers.get(config.provider)
        if provider is None:
            raise ProviderNotConfiguredError(
                f"Fournisseur IA non configure: {config.provider}",
                provider=config.provider,
            )
        return provider

    async def _call(
        self, config: ModelConfig, messages: List[Dict[str, str]], system: Optional[str]
    ) -> AIResponse:
        return await self._provider_for(config).complete(config, messages, system)

    async def route(
        self,
        task: str,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> AIResponse:
        """Run ``task`` with retry/backoff and a single fallback attempt.

        Raises
        ------
        Exception
            The first non-retryable error, or the primary model's last
            retryable error when retries and fallback are exhausted.
        """
        config = self.get_model_config(task, overrides)
        attempts = len(self._retry_delays) + 1
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                return await self._call(config, messages, system)
            except Exception as exc:
                if not is_retryable_error(exc):
                    raise
                last_error = exc
                if attempt < len(self._retry_delays):
                    delay = self._retry_delays[attempt]
                    logger.warning(
                        "Task %s | %s/%s | attempt %d/%d failed (%s), retrying in %.0fs",
                        task, config.provider, config.model, attempt + 1, attempts,
                        exc, delay,
                    )
                    self.retry_count += 1
                    await self._sleep(delay)

        fallback = self._fallbacks.get(config.model)
        if fallback is None:
            logger.error("Task %s | %s exhausted retries, no fallback", task, config.model)
            raise last_error

        fb_provider, fb_model = fallback
        fb_config = replace(config, provider=fb_provider, model=fb_model)
        logger.warning(
            "Task %s | falling back from %s to %s/%s",
            task, config.model, fb_provider, fb_model,
        )
        self.fallback_count += 1
        try:
            return await self._call(fb_config, messages, system)
        except Exception as fb_exc:
            logger.error(
                "Task %s | fallback %s failed (%s), raising original error",
                task, fb_model, fb_exc,
            )
            raise last_error

    async def stream(
        self,
        task: str,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Stream ``task`` output; no retry, callers fall back to :meth:`route`."""
        config = self.get_model_config(task, overrides)
        provider = self._provider_for(config)
        if not getattr(provider, "supports_streaming", False):
            raise ProviderError(
                f"Le streaming n'est pas supporte pour la tache {task} "
                f"(fournisseur {config.provider})",
                provider=config.provider,
            )
        async for event in provider.stream(config, messages, system):
            yield event
