"""
Deterministic providers for tests and offline runs.

``MockEmbeddingProvider`` derives a stable vector from the SHA-256 of each
input; ``MockLLMProvider`` answers with a fixed JSON payload unless a
responder is supplied.
"""

from __future__ import annotations

import hashlib
import inspect
import json
import math
from collections.abc import Callable
from typing import Any

from neuron.providers.base import (
    EmbeddingResponse,
    EmbeddingUsage,
    LLMResponse,
    LLMUsage,
    ResponseFormat,
)

# Returns LLMResponse, dict, None, or an awaitable of one of those
Responder = Callable[[str, str], Any]


def _estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


class MockEmbeddingProvider:
    """Stable, semantically meaningless embeddings."""

    name = "mock"

    def __init__(self, dimensions: int = 8) -> None:
        self.dimensions = max(1, dimensions)
        self.calls: list[list[str]] = []

    def embed_text(self, text: str, dimensions: int | None = None) -> list[float]:
        """Map SHA-256 bytes of ``text`` into [-1, 1]."""
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        dims = dimensions or self.dimensions
        return [digest[i % len(digest)] / 127.5 - 1 for i in range(dims)]

    async def embed(
        self, model: str, input: str | list[str], dimensions: int | None = None
    ) -> EmbeddingResponse:
        inputs = [input] if isinstance(input, str) else list(input)
        self.calls.append(inputs)
        tokens = sum(_estimate_tokens(text) for text in inputs)
        return EmbeddingResponse(
            embeddings=[self.embed_text(text, dimensions) for text in inputs],
            model=model,
            usage=EmbeddingUsage(prompt_tokens=tokens, total_tokens=tokens),
        )


class MockLLMProvider:
    """
    Scriptable LLM provider.

    Args:
        responder: Optional callable ``(model, prompt)`` returning an
            LLMResponse, a dict (serialized as JSON content) or None to fall
            back to ``default_json``. May be sync or async.
        default_json: Payload used when no responder answers
            (defaults to ``{"hasRelationship": false}``)
    """

    name = "mock"

    def __init__(
        self,
        responder: Responder | None = None,
        default_json: dict[str, Any] | None = None,
    ) -> None:
        self._responder = responder
        self._default = default_json or {"hasRelationship": False}
        self.prompts: list[str] = []

    async def generate(
        self, model: str, prompt: str, response_format: ResponseFormat = "json"
    ) -> LLMResponse:
        self.prompts.append(prompt)
        answer: Any = None
        if self._responder is not None:
            answer = self._responder(model, prompt)
            if inspect.isawaitable(answer):
                answer = await answer

        if isinstance(answer, LLMResponse):
            return answer
        payload = answer if isinstance(answer, dict) else self._default
        content = json.dumps(payload)
        return LLMResponse(
            content=content,
            model=model,
            usage=LLMUsage(
                input_tokens=_estimate_tokens(prompt),
                output_tokens=_estimate_tokens(content),
                total_tokens=_estimate_tokens(prompt + content),
            ),
        )
