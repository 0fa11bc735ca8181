"""Completion providers and the model catalog.

A provider turns (prompt row, model id) into a Completion. Three variants:

- mock_random: sleeps 2-4s and fabricates 100-499 tokens (the default)
- mock_fixed:  deterministic values, for tests and demos
- litellm:     one real call through LiteLLM, no retries

The catalog is the static display list of models with their $/1K-token price.
It is read from config.yaml and falls back to the built-in list.
"""

import asyncio
import logging
import os
import random
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import litellm
import yaml
from pydantic import BaseModel, Field, ValidationError

# We do not retry provider calls; a failed run is re-triggered by the user.
litellm.num_retries = 0
litellm.suppress_debug_info = True

logger = logging.getLogger(__name__)

CATALOG_PATH = Path(os.environ.get("MODEL_CATALOG_PATH") or Path(__file__).parent / "config.yaml")

MOCK_DELAY_MS = (2000, 4000)
MOCK_TOKENS = (100, 500)


# ---------------------------------------------------------------------------
# Model catalog
# ---------------------------------------------------------------------------

class ModelEntry(BaseModel):
    id: str = Field(..., min_length=1)
    label: str
    cost_per_1k: float = Field(default=0.0, ge=0)


class CatalogSchema(BaseModel):
    models: list[ModelEntry]


DEFAULT_MODELS = [
    {"id": "gpt-4", "label": "GPT-4", "cost_per_1k": 0.03},
    {"id": "gpt-3.5-turbo", "label": "GPT-3.5 Turbo", "cost_per_1k": 0.002},
    {"id": "claude-3-opus", "label": "Claude 3 Opus", "cost_per_1k": 0.015},
    {"id": "claude-3-sonnet", "label": "Claude 3 Sonnet", "cost_per_1k": 0.003},
    {"id": "gemini-pro", "label": "Gemini Pro", "cost_per_1k": 0.00025},
]


class ModelCatalog:
    """Lookup of display label and unit cost by model id."""

    def __init__(self, models: list[dict]):
        self._models = {m["id"]: m for m in models}

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._models

    def list(self) -> list[dict]:
        return list(self._models.values())

    def unit_cost(self, model_id: str) -> float:
        """Price per 1K tokens; 0 for models not in the catalog."""
        entry = self._models.get(model_id)
        return entry["cost_per_1k"] if entry else 0.0

    def cost(self, model_id: str, tokens: int) -> float:
        """(tokens / 1000) * unit cost, fixed to 6 decimal places."""
        return round((tokens / 1000) * self.unit_cost(model_id), 6)


def load_catalog(path: Optional[Path] = None) -> ModelCatalog:
    """Load and validate the model catalog from YAML.

    A missing file yields the built-in list. An invalid file is a startup
    error, same as a broken config in any other part of the app.
    """
    path = Path(path) if path else CATALOG_PATH
    if not path.exists():
        logger.info("No model catalog at %s, using built-in models", path)
        return ModelCatalog(DEFAULT_MODELS)
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    try:
        validated = CatalogSchema(**raw)
    except ValidationError as e:
        for err in e.errors():
            loc = " -> ".join(str(x) for x in err["loc"])
            logger.error("Model catalog error in %s: %s: %s", path, loc, err["msg"])
        raise
    return ModelCatalog([m.model_dump() for m in validated.models])


_catalog: Optional[ModelCatalog] = None


def get_catalog() -> ModelCatalog:
    """Process-wide catalog, loaded on first use."""
    global _catalog
    if _catalog is None:
        _catalog = load_catalog()
    return _catalog


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

@dataclass
class Completion:
    """What a provider hands back for one prompt execution."""
    response: str
    tokens_used: int
    latency_ms: int
    cost_usd: Optional[float] = None  # only when the provider prices the call itself


class ProviderError(Exception):
    """A provider call failed. `message` is safe to store and show."""

    def __init__(self, message: str, latency_ms: int = 0):
        super().__init__(message)
        self.message = message
        self.latency_ms = latency_ms


def simulated_response(model: str) -> str:
    return (
        f"This is a simulated response from {model}. "
        "In a real implementation, this would call the actual LLM API."
    )


class CompletionProvider:
    """Base class for completion providers."""

    name = "base"

    async def complete(self, prompt: dict, model: str) -> Completion:
        raise NotImplementedError


class MockRandomProvider(CompletionProvider):
    """Sleeps a random 2-4s, then fabricates a token count."""

    name = "mock_random"

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    async def complete(self, prompt: dict, model: str) -> Completion:
        delay_ms = self.rng.uniform(*MOCK_DELAY_MS)
        start = time.perf_counter()
        await asyncio.sleep(delay_ms / 1000)
        latency_ms = round((time.perf_counter() - start) * 1000)
        tokens = self.rng.randrange(*MOCK_TOKENS)
        return Completion(
            response=simulated_response(model),
            tokens_used=tokens,
            latency_ms=latency_ms,
        )


class MockFixedProvider(CompletionProvider):
    """Returns the same latency and token count every time."""

    name = "mock_fixed"

    def __init__(self, latency_ms: int = 2500, tokens: int = 300, sleep: bool = False):
        self.latency_ms = latency_ms
        self.tokens = tokens
        self.sleep = sleep

    async def complete(self, prompt: dict, model: str) -> Completion:
        if self.sleep:
            await asyncio.sleep(self.latency_ms / 1000)
        return Completion(
            response=simulated_response(model),
            tokens_used=self.tokens,
            latency_ms=self.latency_ms,
        )


def sanitize_error(error_msg: str, api_key: Optional[str] = None) -> str:
    """Remove API keys and sensitive tokens from error messages."""
    msg = error_msg
    if api_key and len(api_key) > 8:
        msg = msg.replace(api_key, "***")
    msg = re.sub(r'(sk-[a-zA-Z0-9]{8})[a-zA-Z0-9-]+', r'\1***', msg)
    msg = re.sub(r'(key-[a-zA-Z0-9]{4})[a-zA-Z0-9-]+', r'\1***', msg)
    msg = re.sub(r'(gsk_[a-zA-Z0-9]{4})[a-zA-Z0-9-]+', r'\1***', msg)
    msg = re.sub(r'(AIza[a-zA-Z0-9]{4})[a-zA-Z0-9-]+', r'\1***', msg)
    msg = re.sub(r'Bearer\s+[a-zA-Z0-9._-]+', 'Bearer ***', msg)
    return msg


class LiteLLMProvider(CompletionProvider):
    """Single non-streaming call through LiteLLM.

    API keys come from the usual provider env vars (OPENAI_API_KEY, ...),
    which LiteLLM reads itself.
    """

    name = "litellm"

    def __init__(self, timeout: int = 120, api_base: Optional[str] = None, api_key: Optional[str] = None):
        self.timeout = timeout
        self.api_base = api_base
        self.api_key = api_key

    def build_kwargs(self, prompt: dict, model: str) -> dict:
        kwargs = {
            "model": model,
            "messages": [{"role": "user", "content": prompt["content"]}],
            "timeout": self.timeout,
        }
        if prompt.get("temperature") is not None:
            kwargs["temperature"] = prompt["temperature"]
        if prompt.get("max_tokens"):
            kwargs["max_tokens"] = prompt["max_tokens"]
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key
        return kwargs

    async def complete(self, prompt: dict, model: str) -> Completion:
        kwargs = self.build_kwargs(prompt, model)
        start = time.perf_counter()
        try:
            resp = await litellm.acompletion(**kwargs)
        except litellm.exceptions.RateLimitError as e:
            raise ProviderError(f"[rate_limited] {sanitize_error(str(e)[:180], self.api_key)}", _elapsed_ms(start))
        except litellm.exceptions.AuthenticationError as e:
            raise ProviderError(f"[auth_failed] {sanitize_error(str(e)[:180], self.api_key)}", _elapsed_ms(start))
        except litellm.exceptions.Timeout as e:
            raise ProviderError(f"[timeout] {sanitize_error(str(e)[:180], self.api_key)}", _elapsed_ms(start))
        except Exception as e:
            raise ProviderError(sanitize_error(str(e)[:200], self.api_key), _elapsed_ms(start))
        latency_ms = _elapsed_ms(start)

        text = ""
        if resp.choices and resp.choices[0].message:
            text = resp.choices[0].message.content or ""
        usage = getattr(resp, "usage", None)
        tokens = (usage.total_tokens or 0) if usage else 0

        # Not every model has LiteLLM pricing
        try:
            cost = litellm.completion_cost(completion_response=resp)
        except Exception:
            cost = None
        return Completion(response=text, tokens_used=tokens, latency_ms=latency_ms, cost_usd=cost)


def _elapsed_ms(start: float) -> int:
    return round((time.perf_counter() - start) * 1000)


PROVIDERS = {
    MockRandomProvider.name: MockRandomProvider,
    MockFixedProvider.name: MockFixedProvider,
    LiteLLMProvider.name: LiteLLMProvider,
}


def get_provider(name: Optional[str] = None) -> CompletionProvider:
    """Build the provider named by `name` or RUN_PROVIDER (default mock_random)."""
    name = (name or os.environ.get("RUN_PROVIDER") or MockRandomProvider.name).strip().lower()
    if name not in PROVIDERS:
        raise ValueError(f"Unknown run provider '{name}'. Choose one of {sorted(PROVIDERS)}")
    if name == LiteLLMProvider.name:
        return LiteLLMProvider(timeout=int(os.environ.get("PROVIDER_TIMEOUT", "120")))
    return PROVIDERS[name]()
