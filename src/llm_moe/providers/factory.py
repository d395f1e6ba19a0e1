"""プロバイダクライアントの生成と束ね。"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import os

from ..errors import AuthError, ConfigError
from ..models import ProviderTag
from ..provider_spi import LLMClient
from .gemini import GeminiProvider
from .mock import MockProvider
from .openai import OpenAIProvider
from .openrouter import OpenRouterProvider

API_KEY_ENV: dict[ProviderTag, str] = {
    ProviderTag.GEMINI: "GEMINI_API_KEY",
    ProviderTag.OPENAI: "OPENAI_API_KEY",
    ProviderTag.OPENROUTER: "OPENROUTER_API_KEY",
}

__all__ = ["API_KEY_ENV", "ProviderClients", "create_client", "provider_for_model"]


def create_client(tag: ProviderTag, environ: Mapping[str, str] | None = None) -> LLMClient:
    env = os.environ if environ is None else environ
    match tag:
        case ProviderTag.GEMINI:
            return GeminiProvider(api_key=env.get(API_KEY_ENV[tag]))
        case ProviderTag.OPENAI:
            return OpenAIProvider(
                api_key=env.get(API_KEY_ENV[tag]), base_url=env.get("OPENAI_BASE_URL")
            )
        case ProviderTag.OPENROUTER:
            return OpenRouterProvider(
                api_key=env.get(API_KEY_ENV[tag]), base_url=env.get("OPENROUTER_BASE_URL")
            )
    raise ConfigError(f"unsupported provider: {tag!r}")


def provider_for_model(model: str) -> ProviderTag:
    """モデル ID からプロバイダファミリを推定する。"""
    normalized = model.strip().lower()
    if "/" in normalized:
        return ProviderTag.OPENROUTER
    if normalized.startswith("gemini"):
        return ProviderTag.GEMINI
    if normalized.startswith(("gpt-", "o1", "o3", "o4")):
        return ProviderTag.OPENAI
    raise ConfigError(f"cannot infer provider for model {model!r}")


@dataclass(frozen=True, slots=True)
class ProviderClients:
    """プロバイダタグごとに 1 つのクライアントを保持する。"""

    gemini: LLMClient | None = None
    openai: LLMClient | None = None
    openrouter: LLMClient | None = None

    def for_provider(self, tag: ProviderTag) -> LLMClient:
        match tag:
            case ProviderTag.GEMINI:
                client = self.gemini
            case ProviderTag.OPENAI:
                client = self.openai
            case ProviderTag.OPENROUTER:
                client = self.openrouter
            case _:
                raise ConfigError(f"unsupported provider: {tag!r}")
        if client is None:
            raise AuthError(f"{tag.label} API key is not configured")
        return client

    def has(self, tag: ProviderTag) -> bool:
        return getattr(self, tag.value) is not None

    @classmethod
    def from_environment(cls, environ: Mapping[str, str] | None = None) -> ProviderClients:
        """API キーが設定されているプロバイダだけクライアントを作る。"""
        env = os.environ if environ is None else environ
        clients = {
            tag.value: create_client(tag, env)
            for tag in ProviderTag
            if env.get(API_KEY_ENV[tag])
        }
        return cls(**clients)

    @classmethod
    def uniform(cls, client: LLMClient) -> ProviderClients:
        return cls(gemini=client, openai=client, openrouter=client)

    @classmethod
    def mock(cls, base_latency_ms: int = 50) -> ProviderClients:
        return cls(
            gemini=MockProvider("gemini-mock", base_latency_ms),
            openai=MockProvider("openai-mock", base_latency_ms),
            openrouter=MockProvider("openrouter-mock", base_latency_ms),
        )
