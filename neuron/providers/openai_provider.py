"""
OpenAI-backed embedding and LLM providers.

Both providers lazily create an ``AsyncOpenAI`` client and convert every
SDK exception into a ``ProviderError`` via ``map_openai_error``.
"""

from __future__ import annotations

import logging

import openai
from openai import AsyncOpenAI

from neuron.providers.base import (
    EmbeddingResponse,
    EmbeddingUsage,
    LLMResponse,
    LLMUsage,
    ResponseFormat,
)
from neuron.providers.errors import (
    ProviderError,
    ProviderErrorCode,
    retry_after_ms_from_headers,
)

logger = logging.getLogger(__name__)


def map_openai_error(error: Exception) -> ProviderError:
    """
    Map an OpenAI SDK exception onto the provider error taxonomy.

    Args:
        error: Exception raised by the OpenAI client

    Returns:
        ProviderError with the matching code (the original is chained as __cause__)
    """
    mapped: ProviderError
    if isinstance(error, openai.AuthenticationError | openai.PermissionDeniedError):
        mapped = ProviderError(
            error.message, ProviderErrorCode.AUTH_ERROR, status=error.status_code
        )
    elif isinstance(error, openai.RateLimitError):
        mapped = ProviderError(
            error.message,
            ProviderErrorCode.RATE_LIMITED,
            status=error.status_code,
            retry_after_ms=retry_after_ms_from_headers(error.response.headers),
        )
    elif isinstance(error, openai.BadRequestError | openai.UnprocessableEntityError):
        mapped = ProviderError(
            error.message, ProviderErrorCode.INVALID_REQUEST, status=error.status_code
        )
    elif isinstance(error, openai.APIConnectionError):
        # Includes APITimeoutError
        mapped = ProviderError(error.message, ProviderErrorCode.TRANSIENT)
    elif isinstance(error, openai.InternalServerError):
        mapped = ProviderError(
            error.message, ProviderErrorCode.TRANSIENT, status=error.status_code
        )
    elif isinstance(error, openai.APIStatusError):
        status = error.status_code
        if status in (401, 403):
            code = ProviderErrorCode.AUTH_ERROR
        elif status == 429:
            code = ProviderErrorCode.RATE_LIMITED
        elif status >= 500:
            code = ProviderErrorCode.TRANSIENT
        else:
            code = ProviderErrorCode.UNKNOWN
        mapped = ProviderError(
            error.message,
            code,
            status=status,
            retry_after_ms=(
                retry_after_ms_from_headers(error.response.headers)
                if status == 429
                else None
            ),
        )
    else:
        mapped = ProviderError(str(error), ProviderErrorCode.UNKNOWN)

    mapped.__cause__ = error
    return mapped


class _OpenAIClientMixin:
    """Lazy ``AsyncOpenAI`` construction shared by both providers."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        organization: str | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._organization = organization
        self._client: AsyncOpenAI | None = None

    @property
    def client(self) -> AsyncOpenAI:
        """Lazy-initialize the OpenAI client (falls back to OPENAI_API_KEY)."""
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                base_url=self._base_url,
                organization=self._organization,
                max_retries=0,  # retries are handled by the caller's policy
            )
        return self._client


class OpenAIEmbeddingProvider(_OpenAIClientMixin):
    """Embedding provider using the OpenAI embeddings endpoint."""

    name = "openai"

    async def embed(
        self, model: str, input: str | list[str], dimensions: int | None = None
    ) -> EmbeddingResponse:
        inputs = [input] if isinstance(input, str) else list(input)
        kwargs = {"dimensions": dimensions} if dimensions else {}
        try:
            response = await self.client.embeddings.create(
                model=model, input=inputs, **kwargs
            )
        except openai.OpenAIError as e:
            raise map_openai_error(e) from e

        ordered = sorted(response.data, key=lambda item: item.index)
        return EmbeddingResponse(
            embeddings=[list(item.embedding) for item in ordered],
            model=response.model,
            usage=(
                EmbeddingUsage(
                    prompt_tokens=response.usage.prompt_tokens,
                    total_tokens=response.usage.total_tokens,
                )
                if response.usage
                else None
            ),
        )


class OpenAILLMProvider(_OpenAIClientMixin):
    """LLM provider using chat completions in JSON mode."""

    name = "openai"

    async def generate(
        self, model: str, prompt: str, response_format: ResponseFormat = "json"
    ) -> LLMResponse:
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": prompt}],
                response_format={"type": "json_object"},
            )
        except openai.OpenAIError as e:
            raise map_openai_error(e) from e

        content = response.choices[0].message.content if response.choices else None
        usage = response.usage
        return LLMResponse(
            content=content or "",
            model=response.model or model,
            usage=(
                LLMUsage(
                    input_tokens=usage.prompt_tokens,
                    output_tokens=usage.completion_tokens,
                    total_tokens=usage.total_tokens,
                )
                if usage
                else None
            ),
        )
