"""Embedding provider clients for Jobflow.

The pipeline only depends on the EmbeddingProvider protocol: one call that
turns a text into a vector. OpenAIEmbeddingClient is the shipped
implementation and talks to an OpenAI-compatible /embeddings endpoint over
httpx.

Provider calls are never retried here. Every failure is translated into a
ProviderError subclass and left to the task queue's retry bookkeeping:
- ProviderRateLimitError: quota or rate limit hit (transient)
- ProviderTransportError: network failure, timeout or 5xx (transient)
- ProviderRejectedError: request refused for good, e.g. invalid input (permanent)

Example usage:
    >>> from jobflow.config import ProviderConfig
    >>> from jobflow.matching.provider import OpenAIEmbeddingClient
    >>>
    >>> async with OpenAIEmbeddingClient(ProviderConfig(api_key="sk-...")) as client:
    ...     vector = await client.embed("Senior backend engineer, 5 years Go")
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx
import structlog

from jobflow.config import ProviderConfig

logger = structlog.get_logger(__name__)


class ProviderError(Exception):
    """Base exception for embedding provider failures."""

    transient: bool = True


class ProviderRateLimitError(ProviderError):
    """The provider throttled the request."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderTransportError(ProviderError):
    """The provider could not be reached or failed server-side."""


class ProviderRejectedError(ProviderError):
    """The provider refused the request in a way retrying will not fix."""

    transient = False


class EmbeddingProvider(Protocol):
    """Protocol for embedding provider implementations."""

    model: str

    async def embed(self, text: str) -> list[float]:
        """Return the embedding vector for text."""
        ...


class OpenAIEmbeddingClient:
    """OpenAI-compatible embeddings API client.

    Attributes:
        config: Provider configuration (key, base URL, model, timeout)
        model: Embedding model name
    """

    def __init__(self, config: ProviderConfig) -> None:
        """Initialize the client.

        Args:
            config: Provider configuration

        Raises:
            ValueError: If no API key is configured
        """
        if not config.api_key:
            raise ValueError(
                "Embedding provider API key required: set JOBFLOW_PROVIDER__API_KEY "
                "or OPENAI_API_KEY"
            )
        self.config = config
        self.model = config.model
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> OpenAIEmbeddingClient:
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=httpx.Timeout(self.config.timeout_seconds),
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("OpenAIEmbeddingClient must be used as async context manager")
        return self._client

    async def embed(self, text: str) -> list[float]:
        """Generate an embedding with a single API call.

        Args:
            text: Input text to embed

        Returns:
            Embedding vector as list of floats

        Raises:
            ProviderRateLimitError: On HTTP 429
            ProviderTransportError: On network errors, timeouts, 5xx or a
                malformed response body
            ProviderRejectedError: On any other 4xx response
        """
        client = self._get_client()
        payload: dict[str, Any] = {"input": text, "model": self.model}
        if self.model.startswith("text-embedding-3"):
            payload["dimensions"] = self.config.dimensions

        logger.debug("provider_embedding_request", text_length=len(text), model=self.model)

        try:
            response = await client.post("/embeddings", json=payload)
        except httpx.TimeoutException as e:
            logger.warning("provider_timeout", model=self.model, error=str(e))
            raise ProviderTransportError(f"Embedding request timed out: {e}") from e
        except httpx.RequestError as e:
            logger.warning("provider_request_error", model=self.model, error=str(e))
            raise ProviderTransportError(f"Embedding request failed: {e}") from e

        if response.status_code == 429:
            retry_after = _parse_retry_after(response.headers.get("retry-after"))
            logger.warning("provider_rate_limited", model=self.model, retry_after=retry_after)
            raise ProviderRateLimitError("Embedding provider rate limit exceeded", retry_after)
        if response.status_code >= 500:
            logger.warning("provider_server_error", status_code=response.status_code)
            raise ProviderTransportError(
                f"Embedding provider returned HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.error(
                "provider_request_rejected",
                status_code=response.status_code,
                detail=detail,
            )
            raise ProviderRejectedError(
                f"Embedding provider rejected request (HTTP {response.status_code}): {detail}"
            )

        try:
            embedding = response.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderTransportError(f"Malformed embedding response: {e}") from e

        logger.debug(
            "provider_embedding_generated",
            text_length=len(text),
            embedding_dim=len(embedding),
            model=self.model,
        )
        return embedding


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return str(body["error"].get("message", ""))[:200]
    return str(body)[:200]
