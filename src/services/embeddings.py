"""Embedding service backed by the Ollama embeddings API."""

from __future__ import annotations

import logging
from typing import Protocol, Sequence

import httpx

from config import settings

logger = logging.getLogger(__name__)


class EmbeddingService(Protocol):
    """Turns text into vectors."""

    async def embed(self, text: str) -> list[float]:
        ...

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        ...


class OllamaEmbeddingService:
    """Embeds text with Ollama's ``/api/embeddings`` endpoint."""

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url or settings.llm.embed_base_url).rstrip("/")
        self._model = model or settings.llm.embed_model
        self._timeout = timeout if timeout is not None else settings.llm.embed_timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _embed_with(self, client: httpx.AsyncClient, text: str) -> list[float]:
        response = await client.post(
            f"{self._base_url}/api/embeddings",
            json={"model": self._model, "prompt": text},
        )
        response.raise_for_status()
        payload = response.json()
        embedding = payload.get("embedding")
        if not embedding:
            raise ValueError("Ollama embeddings response missing 'embedding'.")
        return [float(value) for value in embedding]

    async def embed(self, text: str) -> list[float]:
        """Embed a single text."""
        async with self._client() as client:
            return await self._embed_with(client, text)

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed several texts over one connection.

        A text that fails to embed yields an empty vector so the caller can
        skip it without losing the rest of the batch.
        """
        vectors: list[list[float]] = []
        async with self._client() as client:
            for text in texts:
                try:
                    vectors.append(await self._embed_with(client, text))
                except (httpx.HTTPError, ValueError) as exc:
                    logger.warning("Embedding failed for text of length %s: %s", len(text), exc)
                    vectors.append([])
        return vectors
