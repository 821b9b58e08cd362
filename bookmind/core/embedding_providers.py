"""Embedding providers for chunk and query vectors (OpenAI, Ollama)."""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import struct
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from bookmind.core.errors import ProviderError

logger = logging.getLogger(__name__)

# Retry settings for rate limits
MAX_RETRIES = 5
INITIAL_DELAY = 2.0  # seconds
MAX_DELAY = 60.0  # seconds

OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"

# Vector width per supported model
OPENAI_DIMENSIONS = {"text-embedding-3-small": 1536, "text-embedding-3-large": 3072}
OLLAMA_DIMENSIONS = {"nomic-embed-text": 768, "mxbai-embed-large": 1024}


def serialize_f32(vector: list[float]) -> bytes:
    """Serialize a list of floats into bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


def deserialize_f32(blob: bytes) -> list[float]:
    """Inverse of serialize_f32."""
    return list(struct.unpack(f"{len(blob) // 4}f", blob))


class EmbeddingError(ProviderError):
    """Error during embedding generation."""

    def __init__(self, message: str, provider: str, retriable: bool = False):
        super().__init__(message, provider=provider, retriable=retriable)


@dataclass
class HealthCheckResult:
    healthy: bool
    provider: str
    model: str
    message: str
    latency_ms: int | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "provider": self.provider,
            "model": self.model,
            "message": self.message,
            "latency_ms": self.latency_ms,
            "details": self.details,
        }


def _vector(value: Any) -> list[float]:
    """A JSON float list or a base64 float32 blob as a list of floats."""
    if isinstance(value, str):
        return deserialize_f32(base64.b64decode(value, validate=True))
    if not isinstance(value, list) or not value:
        raise TypeError(f"embedding is {type(value).__name__}, not a vector")
    return [float(v) for v in value]


class EmbeddingProvider(ABC):
    """Turns texts into fixed-width vectors.

    Every failure surfaces as EmbeddingError, including a response that
    arrives but cannot be decoded.
    """

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def model_id(self) -> str: ...

    @property
    @abstractmethod
    def dimensions(self) -> int: ...

    @property
    def supports_batch(self) -> bool:
        """Whether embed() sends all texts in one request."""
        return False

    @property
    def max_batch_size(self) -> int:
        return 1

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Vectors for texts, in input order.

        Raises:
            EmbeddingError: The request failed or the response was malformed.
        """

    async def embed_single(self, text: str) -> list[float]:
        return (await self.embed([text]))[0]

    def _malformed(self, error: Exception) -> EmbeddingError:
        return EmbeddingError(
            f"{self.name} returned an unreadable response: {type(error).__name__}: {error}",
            provider=self.name,
            retriable=False,
        )

    async def health_check(self) -> HealthCheckResult:
        """Embed a short test string and report latency or the failure."""
        start = time.monotonic()
        try:
            await self.embed_single("test")
        except EmbeddingError as e:
            return HealthCheckResult(
                healthy=False,
                provider=self.name,
                model=self.model_id,
                message=str(e),
                details={"retriable": e.retriable},
            )

        return HealthCheckResult(
            healthy=True,
            provider=self.name,
            model=self.model_id,
            message="Connected",
            latency_ms=int((time.monotonic() - start) * 1000),
            details={"dimensions": self.dimensions},
        )


class OpenAIProvider(EmbeddingProvider):
    """OpenAI embeddings API, all texts of a batch in one request."""

    def __init__(self, model: str = "text-embedding-3-small", api_key: str | None = None):
        if model not in OPENAI_DIMENSIONS:
            raise ValueError(f"Unknown OpenAI model: {model}. Available: {sorted(OPENAI_DIMENSIONS)}")
        self._model = model
        self._api_key = api_key or os.getenv("OPENAI_API_KEY", "").strip()

    @property
    def name(self) -> str:
        return "OpenAI"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return OPENAI_DIMENSIONS[self._model]

    @property
    def supports_batch(self) -> bool:
        return True

    @property
    def max_batch_size(self) -> int:
        return 2048

    async def embed(self, texts: list[str], use_base64: bool = True) -> list[list[float]]:
        """Embed texts in one API call.

        Args:
            texts: Texts to embed
            use_base64: Ask for base64 float32 payloads (about 4x smaller)
        """
        if not texts:
            return []
        if not self._api_key:
            raise EmbeddingError("OPENAI_API_KEY is not set.", provider=self.name, retriable=False)

        body: dict[str, Any] = {"model": self._model, "input": texts}
        if use_base64:
            body["encoding_format"] = "base64"

        response = await self._post_with_backoff(body)
        try:
            return self._decode(response.json(), len(texts))
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise self._malformed(e) from e

    def _decode(self, payload: dict[str, Any], expected: int) -> list[list[float]]:
        items = payload["data"]
        vectors: list[list[float] | None] = [None] * expected
        for item in items:
            index = item["index"]
            if not 0 <= index < expected:
                raise IndexError(f"embedding index {index} outside 0..{expected - 1}")
            vectors[index] = _vector(item["embedding"])

        if any(v is None for v in vectors):
            raise EmbeddingError(f"Expected {expected} embeddings, got {len(items)}", provider=self.name)
        return vectors  # type: ignore[return-value]

    async def _post_with_backoff(self, body: dict[str, Any]) -> httpx.Response:
        """POST the request, sleeping through 429s with doubling delays."""
        headers = {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}
        delay = INITIAL_DELAY
        last_error: Exception | None = None

        async with httpx.AsyncClient(timeout=120.0) as client:
            for attempt in range(1, MAX_RETRIES + 1):
                try:
                    response = await client.post(OPENAI_EMBEDDINGS_URL, headers=headers, json=body)
                    response.raise_for_status()
                    return response
                except httpx.RequestError as e:
                    raise EmbeddingError(f"OpenAI not reachable: {e}", provider=self.name, retriable=True) from e
                except httpx.HTTPStatusError as e:
                    status = e.response.status_code
                    if status == 401:
                        raise EmbeddingError("OpenAI API key rejected.", provider=self.name) from e
                    if status != 429:
                        raise EmbeddingError(
                            f"OpenAI API error: {status} - {e.response.text}",
                            provider=self.name,
                            retriable=status >= 500,
                        ) from e
                    if "quota" in e.response.text.lower():
                        raise EmbeddingError("OpenAI quota exceeded.", provider=self.name) from e

                    last_error = e
                    logger.warning(f"OpenAI rate limit, attempt {attempt}/{MAX_RETRIES}, waiting {delay:.1f}s")
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, MAX_DELAY)

        raise EmbeddingError(
            f"Rate limit not cleared after {MAX_RETRIES} attempts.",
            provider=self.name,
            retriable=True,
        ) from last_error


class OllamaProvider(EmbeddingProvider):
    """Local Ollama server; one request per text."""

    def __init__(self, model: str = "nomic-embed-text", base_url: str | None = None):
        if model not in OLLAMA_DIMENSIONS:
            raise ValueError(f"Unknown Ollama model: {model}. Available: {sorted(OLLAMA_DIMENSIONS)}")
        self._model = model
        self._base_url = (base_url or os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")).rstrip("/")

    @property
    def name(self) -> str:
        return "Ollama"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return OLLAMA_DIMENSIONS[self._model]

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        async with httpx.AsyncClient(timeout=30.0) as client:
            return [await self._embed_one(client, text) for text in texts]

    async def _embed_one(self, client: httpx.AsyncClient, text: str) -> list[float]:
        url = f"{self._base_url}/api/embeddings"
        try:
            response = await client.post(url, json={"model": self._model, "prompt": text})
            response.raise_for_status()
        except httpx.ConnectError as e:
            raise EmbeddingError(
                f"Ollama not reachable at {self._base_url}.", provider=self.name, retriable=True
            ) from e
        except httpx.RequestError as e:
            raise EmbeddingError(f"Ollama request failed: {e}", provider=self.name, retriable=True) from e
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                message = f"Model '{self._model}' not found. Run 'ollama pull {self._model}'."
            else:
                message = f"Ollama error: {e.response.status_code} - {e.response.text}"
            raise EmbeddingError(message, provider=self.name, retriable=e.response.status_code >= 500) from e

        try:
            return _vector(response.json()["embedding"])
        except (ValueError, KeyError, TypeError) as e:
            raise self._malformed(e) from e


def get_provider(provider_name: str = "openai", model: str | None = None) -> EmbeddingProvider:
    """Build the configured provider.

    Raises:
        ValueError: Unknown provider or model.
    """
    provider_name = provider_name.lower()
    if provider_name == "openai":
        return OpenAIProvider(model=model or "text-embedding-3-small")
    if provider_name == "ollama":
        return OllamaProvider(model=model or "nomic-embed-text")
    raise ValueError(f"Unknown provider: {provider_name}. Available: openai, ollama")
