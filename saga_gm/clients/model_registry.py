"""
Model and provider registry.

Built-in models and the upstream providers (API relays) they are reached
through. The wire format for a model is an explicit table lookup: custom
models first, then built-ins, then the configured default.
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from typing import Literal

from pydantic import BaseModel, Field

from saga_gm.chat.models import ApiFormat

CostTier = Literal["low", "medium", "high", "premium"]

DEFAULT_PROVIDER_ID = "tuzi"
DEFAULT_API_FORMAT: ApiFormat = "openai"


class ProviderDefinition(BaseModel):
    """An upstream relay and the environment variables holding its credentials."""

    id: str
    name: str
    description: str = ""
    env_api_key_name: str
    env_base_url_name: str
    default_base_url: str
    extra_headers: dict[str, str] = Field(default_factory=dict)

    def resolve_credentials(self) -> tuple[str, str]:
        """Return ``(api_key, base_url)`` from the environment."""
        api_key = os.getenv(self.env_api_key_name, "")
        base_url = os.getenv(self.env_base_url_name) or self.default_base_url
        return api_key, base_url

    @property
    def has_api_key(self) -> bool:
        return bool(os.getenv(self.env_api_key_name))


class ModelDefinition(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    provider: str = ""
    provider_id: str = DEFAULT_PROVIDER_ID
    api_format: ApiFormat = DEFAULT_API_FORMAT
    cost_tier: CostTier = "medium"
    description: str = ""
    supports_tools: bool = True
    supports_streaming: bool = True
    supports_multimodal: bool = False
    max_output_tokens: int = Field(default=4096, gt=0)


PROVIDERS: tuple[ProviderDefinition, ...] = (
    ProviderDefinition(
        id="tuzi",
        name="Tuzi API",
        description="API relay serving every mainstream model family",
        env_api_key_name="TUZI_API_KEY",
        env_base_url_name="TUZI_BASE_URL",
        default_base_url="https://api.tu-zi.com",
    ),
    ProviderDefinition(
        id="openrouter",
        name="OpenRouter",
        description="OpenRouter multi-model aggregator",
        env_api_key_name="OPENROUTER_API_KEY",
        env_base_url_name="OPENROUTER_BASE_URL",
        default_base_url="https://openrouter.ai/api",
        extra_headers={
            "HTTP-Referer": "https://chaossaga.app",
            "X-Title": "ChaosSaga",
        },
    ),
)

BUILTIN_MODELS: tuple[ModelDefinition, ...] = (
    ModelDefinition(
        id="gpt-4o-mini",
        name="GPT-4o Mini",
        provider="OpenAI",
        api_format="openai",
        cost_tier="low",
        description="Cheapest option with multimodal input, good for light turns",
        supports_multimodal=True,
        max_output_tokens=4096,
    ),
    ModelDefinition(
        id="claude-haiku-4-5-20251001-thinking",
        name="Claude Haiku 4.5",
        provider="Anthropic",
        api_format="anthropic",
        cost_tier="low",
        description="Low-cost Claude with fast responses",
        max_output_tokens=4096,
    ),
    ModelDefinition(
        id="gemini-3-pro",
        name="Gemini 3 Pro",
        provider="Google",
        api_format="google",
        cost_tier="medium",
        description="Balanced quality and cost",
        supports_multimodal=True,
        max_output_tokens=4096,
    ),
    ModelDefinition(
        id="grok-4.1",
        name="Grok 4.1",
        provider="xAI",
        api_format="openai",
        cost_tier="medium",
        description="General conversation at medium cost",
        max_output_tokens=4096,
    ),
    ModelDefinition(
        id="gemini-3-pro-all",
        name="Gemini 3 Pro All",
        provider="Google",
        api_format="google",
        cost_tier="high",
        description="Full Gemini build with stronger reasoning",
        supports_multimodal=True,
        max_output_tokens=8192,
    ),
    ModelDefinition(
        id="gpt-5.1-thinking",
        name="GPT-5.1 Thinking",
        provider="OpenAI",
        api_format="openai",
        cost_tier="high",
        description="Deep reasoning model",
        supports_multimodal=True,
        max_output_tokens=8192,
    ),
    ModelDefinition(
        id="gpt-5.1-thinking-all",
        name="GPT-5.1 Thinking All",
        provider="OpenAI",
        api_format="openai",
        cost_tier="premium",
        description="Full GPT-5.1 thinking model",
        supports_multimodal=True,
        max_output_tokens=16384,
    ),
    ModelDefinition(
        id="claude-opus-4-5-20251101-thinking",
        name="Claude Opus 4.5",
        provider="Anthropic",
        api_format="anthropic",
        cost_tier="premium",
        description="Strongest model for creative writing and complex reasoning",
        max_output_tokens=8192,
    ),
    ModelDefinition(
        id="moonshotai/kimi-k2.5",
        name="Kimi K2.5",
        provider="Moonshot AI",
        provider_id="openrouter",
        api_format="openai",
        cost_tier="medium",
        description="Strong Chinese-language narration and reasoning",
        max_output_tokens=8192,
    ),
)

_BUILTIN_BY_ID = {model.id: model for model in BUILTIN_MODELS}
_PROVIDERS_BY_ID = {provider.id: provider for provider in PROVIDERS}


def is_builtin_model(model_id: str) -> bool:
    return model_id in _BUILTIN_BY_ID


def get_model_definition(
    model_id: str, custom_models: Iterable[ModelDefinition] = ()
) -> ModelDefinition | None:
    """Find a model by id: custom models shadow built-ins."""
    for model in custom_models:
        if model.id == model_id:
            return model
    return _BUILTIN_BY_ID.get(model_id)


def api_format_for(
    model_id: str,
    custom_models: Iterable[ModelDefinition] = (),
    default: ApiFormat = DEFAULT_API_FORMAT,
) -> ApiFormat:
    """Wire format used to talk to ``model_id``."""
    model = get_model_definition(model_id, custom_models)
    if model is None:
        return default
    return model.api_format


def get_provider(provider_id: str | None) -> ProviderDefinition:
    """Provider by id, falling back to the default relay."""
    if provider_id and provider_id in _PROVIDERS_BY_ID:
        return _PROVIDERS_BY_ID[provider_id]
    return _PROVIDERS_BY_ID[DEFAULT_PROVIDER_ID]
