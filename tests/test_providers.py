"""Tests for providers.py -- model catalog and completion providers."""

import random
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from pydantic import ValidationError

import providers
from providers import (
    DEFAULT_MODELS,
    LiteLLMProvider,
    MockFixedProvider,
    MockRandomProvider,
    ModelCatalog,
    ProviderError,
    get_provider,
    load_catalog,
    sanitize_error,
)


PROMPT = {"id": "p1", "content": "Summarize this", "temperature": 0.2, "max_tokens": 256}


# ──────────── ModelCatalog ────────────

class TestModelCatalog:
    def test_default_unit_costs(self, catalog):
        assert catalog.unit_cost("gpt-4") == 0.03
        assert catalog.unit_cost("gpt-3.5-turbo") == 0.002
        assert catalog.unit_cost("claude-3-opus") == 0.015
        assert catalog.unit_cost("claude-3-sonnet") == 0.003
        assert catalog.unit_cost("gemini-pro") == 0.00025

    def test_unknown_model_costs_nothing(self, catalog):
        assert catalog.unit_cost("llama-70b") == 0
        assert catalog.cost("llama-70b", 10_000) == 0

    def test_cost_formula(self, catalog):
        assert catalog.cost("gpt-4", 250) == pytest.approx(0.0075)
        assert catalog.cost("gemini-pro", 400) == pytest.approx(0.0001)

    def test_cost_rounded_to_six_places(self, catalog):
        # 123 tokens of gemini-pro = 0.00003075
        assert catalog.cost("gemini-pro", 123) == pytest.approx(0.000031)

    def test_membership(self, catalog):
        assert "gpt-4" in catalog
        assert "gpt-5" not in catalog

    def test_list_keeps_order(self, catalog):
        assert [m["id"] for m in catalog.list()] == [m["id"] for m in DEFAULT_MODELS]


class TestLoadCatalog:
    def test_missing_file_uses_defaults(self, tmp_path):
        cat = load_catalog(tmp_path / "nope.yaml")
        assert len(cat.list()) == len(DEFAULT_MODELS)

    def test_reads_yaml(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text(
            "models:\n"
            "  - id: local-llama\n"
            "    label: Local Llama\n"
            "    cost_per_1k: 0.0\n"
            "  - id: gpt-4\n"
            "    label: GPT-4\n"
            "    cost_per_1k: 0.06\n"
        )
        cat = load_catalog(path)
        assert "local-llama" in cat
        assert cat.unit_cost("gpt-4") == 0.06

    def test_negative_price_rejected(self, tmp_path):
        path = tmp_path / "catalog.yaml"
        path.write_text("models:\n  - id: bad\n    label: Bad\n    cost_per_1k: -1\n")
        with pytest.raises(ValidationError):
            load_catalog(path)

    def test_shipped_config_matches_defaults(self):
        cat = load_catalog(providers.Path(providers.__file__).parent / "config.yaml")
        for entry in DEFAULT_MODELS:
            assert cat.unit_cost(entry["id"]) == entry["cost_per_1k"]


# ──────────── Mock providers ────────────

class TestMockRandomProvider:
    @pytest.mark.asyncio
    async def test_tokens_and_delay_in_range(self):
        sleep = AsyncMock()
        with patch.object(providers.asyncio, "sleep", sleep):
            provider = MockRandomProvider(rng=random.Random(7))
            for _ in range(25):
                result = await provider.complete(PROMPT, "gpt-4")
                assert 100 <= result.tokens_used <= 499
                assert result.latency_ms >= 0
                assert result.cost_usd is None

        for call in sleep.await_args_list:
            assert 2.0 <= call.args[0] <= 4.0

    @pytest.mark.asyncio
    async def test_response_names_model(self):
        with patch.object(providers.asyncio, "sleep", AsyncMock()):
            result = await MockRandomProvider().complete(PROMPT, "claude-3-opus")
        assert result.response == (
            "This is a simulated response from claude-3-opus. "
            "In a real implementation, this would call the actual LLM API."
        )


class TestMockFixedProvider:
    @pytest.mark.asyncio
    async def test_returns_configured_values(self):
        result = await MockFixedProvider(latency_ms=2500, tokens=250).complete(PROMPT, "gpt-4")
        assert result.latency_ms == 2500
        assert result.tokens_used == 250
        assert "gpt-4" in result.response


# ──────────── LiteLLMProvider ────────────

def _fake_response(text="hi there", total_tokens=42):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


class TestLiteLLMProvider:
    def test_build_kwargs(self):
        kwargs = LiteLLMProvider(timeout=30, api_base="http://localhost:8000").build_kwargs(PROMPT, "gpt-4")
        assert kwargs["model"] == "gpt-4"
        assert kwargs["messages"] == [{"role": "user", "content": "Summarize this"}]
        assert kwargs["temperature"] == 0.2
        assert kwargs["max_tokens"] == 256
        assert kwargs["timeout"] == 30
        assert kwargs["api_base"] == "http://localhost:8000"
        assert "api_key" not in kwargs

    def test_build_kwargs_skips_unset_params(self):
        kwargs = LiteLLMProvider().build_kwargs({"content": "x"}, "gpt-4")
        assert "temperature" not in kwargs
        assert "max_tokens" not in kwargs

    @pytest.mark.asyncio
    async def test_success(self):
        with patch.object(providers.litellm, "acompletion", AsyncMock(return_value=_fake_response())), \
             patch.object(providers.litellm, "completion_cost", return_value=0.0012):
            result = await LiteLLMProvider().complete(PROMPT, "gpt-4")
        assert result.response == "hi there"
        assert result.tokens_used == 42
        assert result.cost_usd == 0.0012

    @pytest.mark.asyncio
    async def test_unpriced_model_has_no_cost(self):
        with patch.object(providers.litellm, "acompletion", AsyncMock(return_value=_fake_response())), \
             patch.object(providers.litellm, "completion_cost", side_effect=Exception("no pricing")):
            result = await LiteLLMProvider().complete(PROMPT, "my-local-model")
        assert result.cost_usd is None

    @pytest.mark.asyncio
    async def test_failure_becomes_provider_error(self):
        boom = AsyncMock(side_effect=RuntimeError("upstream said no to sk-abcdefgh12345678"))
        with patch.object(providers.litellm, "acompletion", boom):
            with pytest.raises(ProviderError) as exc:
                await LiteLLMProvider().complete(PROMPT, "gpt-4")
        assert "upstream said no" in exc.value.message
        assert "12345678" not in exc.value.message
        assert exc.value.latency_ms >= 0


class TestSanitizeError:
    def test_masks_explicit_key(self):
        assert "supersecretkey" not in sanitize_error("bad key supersecretkey", "supersecretkey")

    def test_masks_bearer(self):
        assert sanitize_error("Authorization: Bearer abc.def.ghi") == "Authorization: Bearer ***"


# ──────────── get_provider ────────────

class TestGetProvider:
    def test_default_is_mock_random(self, monkeypatch):
        monkeypatch.delenv("RUN_PROVIDER", raising=False)
        assert isinstance(get_provider(), MockRandomProvider)

    def test_env_selects_provider(self, monkeypatch):
        monkeypatch.setenv("RUN_PROVIDER", "mock_fixed")
        assert isinstance(get_provider(), MockFixedProvider)

    def test_litellm_timeout_from_env(self, monkeypatch):
        monkeypatch.setenv("PROVIDER_TIMEOUT", "15")
        provider = get_provider("litellm")
        assert isinstance(provider, LiteLLMProvider)
        assert provider.timeout == 15

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown run provider"):
            get_provider("carrier-pigeon")
