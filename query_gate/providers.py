"""Model and embedding providers.

The pipeline talks to two collaborators:
- ModelProvider: chat completion for a list of role/content messages
- Embedder: a fixed-length vector for a piece of text

OpenAI-compatible implementations use httpx; the mock implementations keep
the pipeline usable offline when no API key is configured.
"""

from __future__ import annotations

import hashlib
import logging
import math
import random
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import httpx

from query_gate.core.errors import ProviderError
from query_gate.core.query_classifier import estimate_tokens
from query_gate.settings import Settings

logger = logging.getLogger(__name__)

Message = Dict[str, str]


@dataclass
class ProviderResponse:
    """Text returned by a chat completion plus its usage."""

    text: str
    model: str
    tokens: int = 0
    elapsed_ms: float = 0.0


class ModelProvider(Protocol):
    name: str

    async def complete(self, model: str, messages: Sequence[Message]) -> ProviderResponse:
        ...


class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("error", {}).get("message") or response.text
    except ValueError:
        return response.text


class OpenAIChatProvider:
    """Chat completions against an OpenAI-compatible endpoint."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.7,
        max_tokens: int = 500,
        timeout: float = 30.0,
        name: str = "openai",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.name = name
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout
        self._client = client

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, payload: dict) -> httpx.Response:
        url = f"{self._base_url}{path}"
        if self._client is not None:
            return await self._client.post(
                url, json=payload, headers=self._headers(), timeout=self._timeout
            )
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(url, json=payload, headers=self._headers())

    async def complete(self, model: str, messages: Sequence[Message]) -> ProviderResponse:
        """Request a chat completion.

        Raises:
            ProviderError: On transport errors, non-2xx responses or empty content
        """
        payload = {
            "model": model,
            "messages": list(messages),
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
            "stream": False,
        }
        started = time.perf_counter()
        try:
            response = await self._post("/chat/completions", payload)
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.name} request failed: {e}") from e

        if response.status_code >= 400:
            raise ProviderError(
                f"{self.name} API error: {_error_message(response)}",
                status_code=response.status_code,
            )

        data = response.json()
        choices = data.get("choices") or []
        content = choices[0].get("message", {}).get("content") if choices else None
        if not content:
            raise ProviderError(f"No response from {self.name}", status_code=response.status_code)

        usage = data.get("usage") or {}
        return ProviderResponse(
            text=content,
            model=data.get("model", model),
            tokens=int(usage.get("total_tokens", 0)),
            elapsed_ms=(time.perf_counter() - started) * 1000,
        )


class OpenAIEmbedder(OpenAIChatProvider):
    """Embeddings against an OpenAI-compatible endpoint."""

    def __init__(self, api_key: str, model: str = "text-embedding-3-small", **kwargs):
        super().__init__(api_key, **kwargs)
        self._model = model

    async def embed(self, text: str) -> List[float]:
        try:
            response = await self._post("/embeddings", {"model": self._model, "input": text})
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.name} embedding request failed: {e}") from e

        if response.status_code >= 400:
            raise ProviderError(
                f"{self.name} embedding error: {_error_message(response)}",
                status_code=response.status_code,
            )
        data = response.json().get("data") or []
        if not data or not data[0].get("embedding"):
            raise ProviderError(f"No embedding returned by {self.name}")
        return [float(value) for value in data[0]["embedding"]]


# =============================================================================
# Offline implementations
# =============================================================================

MOCK_RESPONSES = (
    "I'd be happy to help you with that! Let me check our inventory for you.",
    "That's a great question! Based on your preferences, I'd recommend checking out "
    "our featured products section.",
    "I can help you find what you're looking for. Could you provide a bit more detail?",
)


class MockProvider:
    """Canned answers for development without an API key."""

    def __init__(self, name: str = "mock", responses: Sequence[str] = MOCK_RESPONSES):
        self.name = name
        self._responses = tuple(responses)
        self.calls = 0

    async def complete(self, model: str, messages: Sequence[Message]) -> ProviderResponse:
        self.calls += 1
        text = random.choice(self._responses)
        prompt_tokens = sum(estimate_tokens(m.get("content", "")) for m in messages)
        return ProviderResponse(text=text, model=model, tokens=prompt_tokens + estimate_tokens(text))


class HashingEmbedder:
    """Bag-of-words feature hashing; identical word sets map to identical vectors."""

    def __init__(self, dimensions: int = 64):
        self._dimensions = dimensions

    async def embed(self, text: str) -> List[float]:
        vector = [0.0] * self._dimensions
        for word in text.lower().split():
            digest = hashlib.sha1(word.strip("?!.,").encode()).hexdigest()
            vector[int(digest, 16) % self._dimensions] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector] if norm else vector


def build_provider(
    settings: Settings,
    client: Optional[httpx.AsyncClient] = None,
) -> Tuple[ModelProvider, Embedder]:
    """Pick the HTTP provider when an API key is configured, the mocks otherwise."""
    provider_settings = settings.provider
    if not provider_settings.has_api_key:
        logger.warning("No OPENAI_API_KEY configured, using the mock provider")
        return MockProvider(), HashingEmbedder()

    api_key = provider_settings.openai_api_key.get_secret_value()
    common = dict(
        base_url=provider_settings.base_url,
        temperature=provider_settings.temperature,
        max_tokens=provider_settings.max_tokens,
        timeout=provider_settings.timeout_seconds,
        name=provider_settings.provider_name,
        client=client,
    )
    return (
        OpenAIChatProvider(api_key, **common),
        OpenAIEmbedder(api_key, model=settings.classifier.embedding_model, **common),
    )
