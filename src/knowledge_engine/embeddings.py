"""Async client for an Ollama-compatible embedding service.

One POST to ``{base_url}/api/embeddings`` per text with ``{model, prompt}``;
the response must carry an ``embedding`` array. Requests for a batch
overlap, bounded by a semaphore. Transport failures (connect errors,
timeouts) are retried per text with exponential backoff; an HTTP error
status or a malformed body fails immediately.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.knowledge_engine.config import KnowledgeEngineConfig
from src.knowledge_engine.errors import EmbeddingError

logger = structlog.get_logger(__name__)


class EmbeddingClient:
    """Turns texts into fixed-dimension vectors.

    The client owns one ``httpx.AsyncClient`` unless one is injected; call
    ``aclose()`` when done.

    Args:
        base_url: Service root, e.g. "http://127.0.0.1:11434".
        model: Embedding model name.
        timeout: Per-request timeout in seconds.
        max_concurrency: Maximum outstanding requests per client.
        max_retries: Attempts per text on transport failures.
        backoff_min: Minimum backoff between attempts in seconds.
        backoff_max: Maximum backoff between attempts in seconds.
        http_client: Optional pre-built httpx client.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout: float = 30.0,
        max_concurrency: int = 4,
        max_retries: int = 3,
        backoff_min: float = 1.0,
        backoff_max: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/api/embeddings"
        self._model = model
        self._max_retries = max_retries
        self._backoff_min = backoff_min
        self._backoff_max = backoff_max
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(cls, config: KnowledgeEngineConfig) -> EmbeddingClient:
        return cls(
            base_url=config.embedding_base_url,
            model=config.embedding_model,
            timeout=config.embedding_timeout,
            max_concurrency=config.embedding_max_concurrency,
            max_retries=config.embedding_max_retries,
        )

    @property
    def model(self) -> str:
        return self._model

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed every text, preserving input order.

        Any single failure fails the whole call; requests still in flight
        are cancelled.

        Raises:
            EmbeddingError: If any text cannot be embedded.
        """
        if not texts:
            return []

        tasks = [asyncio.ensure_future(self._embed_bounded(text)) for text in texts]
        try:
            vectors = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

        logger.debug("embeddings.batch_completed", count=len(vectors), model=self._model)
        return list(vectors)

    async def embed_one(self, text: str) -> list[float]:
        """Embed a single text.

        Raises:
            EmbeddingError: If the text cannot be embedded.
        """
        return await self._embed_bounded(text)

    async def _embed_bounded(self, text: str) -> list[float]:
        async with self._semaphore:
            return await self._request(text)

    async def _request(self, text: str) -> list[float]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=1, min=self._backoff_min, max=self._backoff_max),
            retry=retry_if_exception_type(httpx.TransportError),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._client.post(
                        self._url,
                        json={"model": self._model, "prompt": text},
                    )
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.warning("embeddings.transport_failed", url=self._url, error=str(cause))
            raise EmbeddingError(f"Embedding request failed: {cause}") from cause

        if response.is_error:
            logger.warning(
                "embeddings.request_failed",
                status_code=response.status_code,
                body=response.text[:200],
            )
            raise EmbeddingError(
                f"Embedding request failed ({response.status_code}): {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise EmbeddingError("Embedding response was not valid JSON") from e

        embedding = data.get("embedding") if isinstance(data, dict) else None
        if not isinstance(embedding, list) or not embedding:
            raise EmbeddingError("Embedding response missing embedding array")
        return [float(value) for value in embedding]

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()
