from .base import BaseProvider, SyncStream
from .factory import ProviderClients, create_client, provider_for_model
from .gemini import GeminiProvider
from .mock import MockProvider
from .openai import OpenAIProvider, is_reasoning_model
from .openrouter import OpenRouterProvider

__all__ = [
    "BaseProvider",
    "SyncStream",
    "ProviderClients",
    "create_client",
    "provider_for_model",
    "GeminiProvider",
    "MockProvider",
    "OpenAIProvider",
    "is_reasoning_model",
    "OpenRouterProvider",
]
