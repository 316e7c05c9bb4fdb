from dataclasses import dataclass, field
from enum import Enum

from tollgate.usage import Pricing


class Provider(Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"
    CUSTOM = "custom"


@dataclass(frozen=True)
class Model:
    id: str
    provider: Provider
    max_context_tokens: int
    max_output_tokens: int = 8192
    pricing: Pricing = field(default_factory=Pricing)


@dataclass(frozen=True)
class ProviderConfig:
    """Resolved settings for one backend. Credentials are raw values, never logged."""

    provider: Provider
    enabled: bool = True
    base_url: str | None = None
    default_model: str | None = None
    oauth_token: str | None = None
    api_key: str | None = None
    config_api_key: str | None = None

    def __repr__(self) -> str:
        return (
            f"ProviderConfig(provider={self.provider.value!r}, enabled={self.enabled}, "
            f"base_url={self.base_url!r}, default_model={self.default_model!r})"
        )


# USD per million tokens: input, output, cache read, cache write
CATALOGUE = [
    Model("claude-opus-4-6", Provider.ANTHROPIC, 200_000, 16384, Pricing(5, 25, 0.50, 6.25)),
    Model("claude-sonnet-4-6", Provider.ANTHROPIC, 200_000, 8192, Pricing(3, 15, 0.30, 3.75)),
    Model("claude-haiku-4-5", Provider.ANTHROPIC, 200_000, 8192, Pricing(1, 5, 0.10, 1.25)),
    Model("gpt-5.2", Provider.OPENAI, 128_000, 16384, Pricing(2, 8, 0.50)),
    Model("gpt-5-mini", Provider.OPENAI, 128_000, 16384, Pricing(0.25, 2, 0.025)),
    Model("gemini-3-pro-preview", Provider.GOOGLE, 1_000_000, 65536, Pricing(1.25, 10, 0.31)),
    Model("gemini-3-flash-preview", Provider.GOOGLE, 1_000_000, 65536, Pricing(0.15, 0.60, 0.04)),
]

_models: dict[str, Model] = {m.id: m for m in CATALOGUE}


def register_model(model: Model) -> None:
    """Add or replace a catalogue entry, e.g. for a custom OpenAI-compatible endpoint."""
    _models[model.id] = model


def pricing_for(model_id: str) -> Pricing:
    # Unregistered models (typically custom endpoints) are unpriced
    model = _models.get(model_id)
    return model.pricing if model else Pricing()


def max_output_tokens(model_id: str, default: int = 8192) -> int:
    model = _models.get(model_id)
    return model.max_output_tokens if model else default


def provider_for(model_id: str) -> Provider | None:
    model = _models.get(model_id)
    return model.provider if model else None
