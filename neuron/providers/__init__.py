"""
Embedding and LLM providers.

Providers are injected into the analysis engines; the OpenAI
implementations are used in production and the mock implementations in
tests and offline runs.
"""

from neuron.providers.base import (
    EmbeddingProvider,
    EmbeddingResponse,
    LLMProvider,
    LLMResponse,
)
from neuron.providers.errors import ProviderError, ProviderErrorCode
from neuron.providers.openai_provider import (
    OpenAIEmbeddingProvider,
    OpenAILLMProvider,
    map_openai_error,
)
from neuron.providers.testing import MockEmbeddingProvider, MockLLMProvider

__all__ = [
    "EmbeddingProvider",
    "EmbeddingResponse",
    "LLMProvider",
    "LLMResponse",
    "ProviderError",
    "ProviderErrorCode",
    "OpenAIEmbeddingProvider",
    "OpenAILLMProvider",
    "map_openai_error",
    "MockEmbeddingProvider",
    "MockLLMProvider",
]
