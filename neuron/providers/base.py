"""Provider contracts for embeddings and LLM completions."""

from __future__ import annotations

from typing import Literal, Protocol, runtime_checkable

from pydantic import BaseModel

ResponseFormat = Literal["json"]


class EmbeddingUsage(BaseModel):
    prompt_tokens: int | None = None
    total_tokens: int | None = None


class EmbeddingResponse(BaseModel):
    """Vectors in the same order as the request inputs."""

    embeddings: list[list[float]]
    model: str
    usage: EmbeddingUsage | None = None


class LLMUsage(BaseModel):
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None


class LLMResponse(BaseModel):
    content: str
    model: str
    usage: LLMUsage | None = None


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Turns text into vectors.

    Implementations must return one vector per input, in input order, and
    raise ``ProviderError`` on failure.
    """

    name: str

    async def embed(
        self, model: str, input: str | list[str], dimensions: int | None = None
    ) -> EmbeddingResponse: ...


@runtime_checkable
class LLMProvider(Protocol):
    """Generates JSON-mode completions for relationship inference."""

    name: str

    async def generate(
        self, model: str, prompt: str, response_format: ResponseFormat = "json"
    ) -> LLMResponse: ...
