"""Embedding orchestration for chunked health records.

This module provides the EmbeddingOrchestrator class that renders chunks
to text, embeds them in concurrency-limited batches and persists one
EmbeddingDocument per chunk.
"""

import asyncio
import json
import logging
import math
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Protocol

from healthrag.config import Settings
from healthrag.exceptions import HealthRagError, PersistenceError, ProviderError, ValidationError
from healthrag.models import (
    Chunk,
    EmbeddingDocument,
    ProcessingResult,
    embedding_document_id,
)
from healthrag.rag.chunker import estimate_tokens, render_chunk
from healthrag.rag.embeddings import ensure_dimension
from healthrag.rag.vectorstore import VectorStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
DEFAULT_MAX_TEXT_LENGTH = 8000
DEFAULT_MAX_TOKENS = 8000
DEFAULT_EMBEDDING_DIM = 1536

ProgressCallback = Callable[[int, int], None]


class AsyncEmbedder(Protocol):
    async def aembed_query(self, text: str) -> list[float]: ...


async def _gather_fail_fast(aws: Iterable[Awaitable]) -> list:
    """Run awaitables concurrently; on the first failure cancel the rest.

    Returns only after every task has settled, so callers can rely on
    nothing from this group still running.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def build_chunk_metadata(chunk: Chunk) -> str:
    """Serialize a chunk's records plus the facts retrieval filters on."""
    records = chunk.records
    metric_types = list(dict.fromkeys(r.type for r in records))
    first = min(records, key=lambda r: r.start_time)
    last = max(records, key=lambda r: r.end_time)
    return json.dumps(
        {
            "record_count": len(records),
            "metric_types": metric_types,
            "start_date": first.start_date,
            "end_date": last.end_date or last.start_date,
            "records": [r.model_dump(exclude_none=True) for r in records],
        }
    )


class EmbeddingOrchestrator:
    """Turns chunks into persisted embedding documents.

    Chunks are processed in batches of ``batch_size``: at most that many
    provider calls are in flight, and a batch starts only once the previous
    one has settled.
    """

    def __init__(
        self,
        embedder: AsyncEmbedder,
        store: VectorStore,
        embedding_dim: int = DEFAULT_EMBEDDING_DIM,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_text_length: int = DEFAULT_MAX_TEXT_LENGTH,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> None:
        """Initialize orchestrator.

        Args:
            embedder: Embedding provider client exposing ``aembed_query``.
            store: Vector store receiving the documents.
            embedding_dim: Dimension every embedding must have.
            batch_size: Number of chunks embedded concurrently.
            max_text_length: Characters of chunk text sent to the provider.
            max_tokens: Estimated token ceiling of the provider.
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.embedder = embedder
        self.store = store
        self.embedding_dim = embedding_dim
        self.batch_size = batch_size
        self.max_text_length = max_text_length
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(
        cls, settings: Settings, embedder: AsyncEmbedder, store: VectorStore
    ) -> "EmbeddingOrchestrator":
        return cls(
            embedder,
            store,
            embedding_dim=settings.embedding_dim,
            batch_size=settings.embed_batch_size,
            max_text_length=settings.max_text_length,
            max_tokens=settings.max_embed_tokens,
        )

    async def generate_embedding(self, text: str) -> list[float]:
        """Embed one chunk text after truncation and budget checks.

        Raises:
            ValidationError: Empty text, token budget exceeded, or a vector
                of the wrong dimension.
            ProviderError: The provider call failed.
        """
        if not text or not text.strip():
            raise ValidationError("Empty text provided for embedding generation")

        trimmed = text[: self.max_text_length]
        estimated = estimate_tokens(trimmed)
        if estimated > self.max_tokens:
            raise ValidationError(
                f"Text too long: {estimated} estimated tokens (max {self.max_tokens})"
            )

        try:
            embedding = await self.embedder.aembed_query(trimmed)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Embedding generation failed: {e}") from e
        return ensure_dimension(embedding, self.embedding_dim)

    @staticmethod
    def create_embedding_document(
        chunk: Chunk, document_id: str, user_id: str, embedding: list[float]
    ) -> EmbeddingDocument:
        return EmbeddingDocument(
            id=embedding_document_id(document_id, chunk.index),
            user_id=user_id,
            document_id=document_id,
            chunk_index=chunk.index,
            content_chunk=render_chunk(chunk),
            embedding=embedding,
            metadata=build_chunk_metadata(chunk),
            timestamp=datetime.now(timezone.utc).isoformat(),
            partition_key=user_id,
        )

    async def _embed_chunk(
        self, chunk: Chunk, document_id: str, user_id: str
    ) -> EmbeddingDocument:
        try:
            embedding = await self.generate_embedding(render_chunk(chunk))
        except HealthRagError as e:
            logger.error(f"Failed to process chunk {chunk.index}: {e}")
            raise
        return self.create_embedding_document(chunk, document_id, user_id, embedding)

    async def _store(self, doc: EmbeddingDocument) -> None:
        try:
            await asyncio.to_thread(self.store.create, doc)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(
                f"Failed to store document {doc.id}: {e}", document_id=doc.id
            ) from e

    async def process_chunks(
        self,
        chunks: list[Chunk],
        document_id: str,
        user_id: str,
        isolate_failures: bool = False,
        progress_callback: ProgressCallback | None = None,
    ) -> ProcessingResult:
        """Embed and persist all chunks of one document.

        By default the job is fail-fast: a failed embedding aborts its batch
        before anything from that batch is persisted, and no later batch
        starts. A failed write aborts the job as well; documents already
        written stay in place. The raised error carries
        ``processed_chunks``.

        With ``isolate_failures`` every chunk succeeds or fails on its own
        and failures are reported in the result instead of raised.

        Args:
            chunks: Chunks to embed, in index order.
            document_id: Parent import identifier.
            user_id: Owner and partition key.
            isolate_failures: Continue past failed chunks.
            progress_callback: Called with ``(processed, total)`` after each
                batch.

        Returns:
            Processing counts for the document.
        """
        started = time.perf_counter()
        total_batches = math.ceil(len(chunks) / self.batch_size)
        processed = 0
        errors: list[str] = []

        for batch_no, start in enumerate(range(0, len(chunks), self.batch_size), start=1):
            batch = chunks[start : start + self.batch_size]
            jobs = [self._embed_chunk(c, document_id, user_id) for c in batch]

            if isolate_failures:
                outcomes = await asyncio.gather(*jobs, return_exceptions=True)
                for chunk, outcome in zip(batch, outcomes):
                    if isinstance(outcome, BaseException):
                        if not isinstance(outcome, Exception):
                            raise outcome
                        errors.append(f"chunk {chunk.index}: {outcome}")
                        continue
                    try:
                        await self._store(outcome)
                    except PersistenceError as e:
                        logger.error(str(e))
                        errors.append(f"chunk {chunk.index}: {e}")
                        continue
                    processed += 1
            else:
                try:
                    docs = await _gather_fail_fast(jobs)
                    for doc in docs:
                        await self._store(doc)
                        processed += 1
                        logger.debug(f"Stored {doc.id}")
                except HealthRagError as e:
                    e.processed_chunks = processed
                    logger.error(
                        f"Aborting document {document_id} in batch {batch_no} of {total_batches} "
                        f"after {processed} stored chunks: {e}"
                    )
                    raise

            logger.info(f"Completed batch {batch_no} of {total_batches}")
            if progress_callback is not None:
                progress_callback(processed, len(chunks))

        return ProcessingResult(
            document_id=document_id,
            user_id=user_id,
            processed_chunks=processed,
            failed_chunks=len(errors),
            total_records=sum(c.size for c in chunks),
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            errors=errors,
        )
