"""
Embedder  —  Sequential Batched Embeddings, All-or-Nothing
═══════════════════════════════════════════════════════════

Attaches one vector to every chunk by calling the embedding service in
fixed-size batches.

OpenAI embedding model:
  text-embedding-3-small  → 1536 dims  (default, matches pdf_chunks.embedding)

Batching strategy:
  - BATCH_SIZE texts per call (default 100), batches issued one at a time
  - a fixed pause between batches (default 100 ms), none after the last
  - a progress event before each batch:
        "Generating embeddings for chunks 101-200..."

Failure policy:
  Any failed batch aborts the whole call with EmbeddingError. Vectors from
  earlier batches are discarded, so callers never see a partially embedded
  list. A response whose length differs from the batch, or whose vectors
  disagree on dimensionality, is treated as a failed batch.
  No internal retry: a retry is a fresh run scheduled by the orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Sequence

from studymate.processing.cancellation import CancellationToken
from studymate.processing.chunking import TextChunk
from studymate.processing.errors import EmbeddingError
from studymate.processing.progress import ProgressCallback, emit_progress
from studymate.schemas.documents import ProcessingPhase

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

EMBEDDING_BATCH_SIZE        = 100    # texts per embedding call
EMBEDDING_BATCH_DELAY_SECS  = 0.1    # pause between batches


# ---------------------------------------------------------------------------
# Embedding service clients
# ---------------------------------------------------------------------------

class EmbeddingClient(ABC):
    """Embedding service port: one call embeds a list of texts, order preserved."""

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        ...


class OpenAIEmbeddingClient(EmbeddingClient):
    """
    OpenAI embeddings via openai.AsyncOpenAI.

    The AsyncOpenAI client is created on first use and reused for every batch.
    """

    def __init__(
        self,
        model:      str = "text-embedding-3-small",
        dimensions: int = 1536,
        api_key:    str = "",
    ) -> None:
        self._model      = model
        self._dimensions = dimensions
        self._api_key    = api_key
        self._client     = None

    @classmethod
    def from_settings(cls) -> "OpenAIEmbeddingClient":
        from studymate.core.config import settings
        return cls(
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            api_key=settings.openai_api_key,
        )

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self._api_key or None)
        return self._client

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        kwargs = {"model": self._model, "input": texts}
        # dimensions param only works for text-embedding-3-* models
        if self._model.startswith("text-embedding-3") and self._dimensions != 1536:
            kwargs["dimensions"] = self._dimensions

        response = await self._get_client().embeddings.create(**kwargs)

        if response.usage:
            logger.debug(
                "OpenAI embeddings | size=%d tokens=%d",
                len(texts), response.usage.total_tokens,
            )
        ordered = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in ordered]


# ---------------------------------------------------------------------------
# Embedder
# ---------------------------------------------------------------------------

class Embedder:
    """
    Stateless per call.

    Usage:
        embedder = Embedder(OpenAIEmbeddingClient.from_settings())
        embedded = await embedder.embed(chunks, on_progress=sink)
    """

    def __init__(
        self,
        client:              EmbeddingClient,
        batch_size:          int   = EMBEDDING_BATCH_SIZE,
        batch_delay_seconds: float = EMBEDDING_BATCH_DELAY_SECS,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._client              = client
        self._batch_size          = batch_size
        self._batch_delay_seconds = batch_delay_seconds

    async def embed(
        self,
        chunks:       Sequence[TextChunk],
        on_progress:  ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> list[TextChunk]:
        """
        Return copies of `chunks` with `embedding` set, in input order.

        Raises:
            EmbeddingError: any batch failed or returned an unusable response
            PipelineCancelledError: the token was cancelled between batches
        """
        total = len(chunks)
        if total == 0:
            return []

        t0 = time.monotonic()
        vectors: list[list[float]] = []
        dimensions: int | None = None

        for batch_start in range(0, total, self._batch_size):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled(ProcessingPhase.EMBEDDING.value)

            batch_end = min(batch_start + self._batch_size, total)
            batch = chunks[batch_start:batch_end]

            await emit_progress(
                on_progress,
                ProcessingPhase.EMBEDDING,
                round(batch_start / total * 100),
                f"Generating embeddings for chunks {batch_start + 1}-{batch_end}...",
                chunks_processed=batch_start,
                total_chunks=total,
            )

            batch_vectors = await self._embed_one_batch(batch, batch_start)
            for vector in batch_vectors:
                if dimensions is None:
                    dimensions = len(vector)
                elif len(vector) != dimensions:
                    raise EmbeddingError(
                        f"Embedding dimension mismatch: expected {dimensions}, got {len(vector)}"
                    )
            vectors.extend(batch_vectors)

            if batch_end < total and self._batch_delay_seconds > 0:
                await asyncio.sleep(self._batch_delay_seconds)

        logger.info(
            "Embedder done | chunks=%d dims=%s elapsed_ms=%.0f",
            total, dimensions, (time.monotonic() - t0) * 1000,
        )
        return [replace(chunk, embedding=vector) for chunk, vector in zip(chunks, vectors)]

    async def _embed_one_batch(
        self,
        batch:       Sequence[TextChunk],
        batch_start: int,
    ) -> list[list[float]]:
        texts = [chunk.content for chunk in batch]
        t_api = time.monotonic()
        try:
            batch_vectors = await self._client.embed_batch(texts)
        except EmbeddingError:
            raise
        except Exception as exc:
            logger.error(
                "Embedding batch failed | start=%d size=%d error=%s %s",
                batch_start, len(batch), type(exc).__name__, exc,
            )
            raise EmbeddingError(f"Embedding request failed: {exc}", cause=exc) from exc

        if len(batch_vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding service returned {len(batch_vectors)} vectors for {len(texts)} inputs"
            )

        logger.debug(
            "Embedding batch | start=%d size=%d api_ms=%.0f",
            batch_start, len(batch), (time.monotonic() - t_api) * 1000,
        )
        return list(batch_vectors)
