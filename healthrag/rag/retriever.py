"""Similarity search over a user's embedded health data.

This module provides cosine similarity scoring and the SimilarityRetriever
class, which prefers the vector store's native search and falls back to
scoring candidates client-side.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, List, Tuple

import numpy as np

from healthrag.exceptions import PersistenceError, ValidationError
from healthrag.models import (
    EmbeddingDocument,
    HealthDataChunk,
    SearchOptions,
    parse_timestamp,
)
from healthrag.rag.parser import format_health_type
from healthrag.rag.vectorstore import VectorStore

logger = logging.getLogger(__name__)

CANDIDATE_MULTIPLIER = 3


def cosine_similarity(vector_a: List[float], vector_b: List[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm.

    Raises:
        ValidationError: The vectors have different lengths.
    """
    if len(vector_a) != len(vector_b):
        raise ValidationError(
            f"Embedding vectors must have the same length ({len(vector_a)} != {len(vector_b)})"
        )
    a = np.asarray(vector_a, dtype=np.float64)
    b = np.asarray(vector_b, dtype=np.float64)
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.clip(np.dot(a, b) / (norm_a * norm_b), -1.0, 1.0))


def decode_metadata(raw: Any) -> dict[str, Any]:
    """Decode a stored metadata string into a dict ({} when unreadable)."""
    data = raw
    # older documents were JSON-encoded twice
    for _ in range(2):
        if not isinstance(data, str):
            break
        try:
            data = json.loads(data or "{}")
        except json.JSONDecodeError:
            return {}
    if isinstance(data, list):
        return {"records": data}
    return data if isinstance(data, dict) else {}


def to_health_chunk(doc: EmbeddingDocument, similarity: float) -> HealthDataChunk:
    return HealthDataChunk(
        id=doc.id,
        content=doc.content_chunk,
        similarity=similarity,
        metadata=decode_metadata(doc.metadata),
        timestamp=doc.timestamp,
        chunk_index=doc.chunk_index,
    )


def _optional_time(value: str | None, name: str) -> datetime | None:
    if value is None:
        return None
    try:
        return parse_timestamp(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {name}: {value!r}") from e


class SimilarityRetriever:
    """Rank a user's embedding documents against a query embedding."""

    def __init__(self, store: VectorStore, candidate_multiplier: int = CANDIDATE_MULTIPLIER):
        self.store = store
        self.candidate_multiplier = candidate_multiplier

    async def search(
        self,
        user_id: str,
        query_embedding: List[float],
        options: SearchOptions | None = None,
    ) -> List[HealthDataChunk]:
        """Return the most similar chunks for a user, best first.

        Args:
            user_id: Owner partition to search.
            query_embedding: Embedding of the user's query.
            options: Limit, threshold and optional metric/time filters.

        Returns:
            At most ``options.limit`` chunks with similarity at or above the
            threshold, sorted by similarity (ties keep fetch order).
        """
        options = options or SearchOptions()
        scored = await self._native_search(user_id, query_embedding, options)
        if scored:
            logger.info(f"Used native vector search, found {len(scored)} results")
        else:
            logger.info("Falling back to client-side similarity calculation")
            scored = await self._client_side_search(user_id, query_embedding, options)

        if not scored:
            logger.info(f"No embedding documents found for user {user_id}")
            return []

        chunks = self._apply_filters(
            [to_health_chunk(doc, sim) for doc, sim in scored], options
        )
        relevant = sorted(chunks, key=lambda c: c.similarity, reverse=True)[: options.limit]
        logger.info(
            f"Found {len(relevant)} relevant health data chunks "
            f"(similarity threshold: {options.similarity_threshold})"
        )
        return relevant

    async def _native_search(
        self, user_id: str, query_embedding: List[float], options: SearchOptions
    ) -> List[Tuple[EmbeddingDocument, float]]:
        search = getattr(self.store, "vector_search", None)
        if search is None:
            return []
        try:
            return await asyncio.to_thread(
                search, user_id, query_embedding, options.limit * self.candidate_multiplier
            )
        except Exception as e:
            logger.warning(f"Vector search failed, falling back to client-side calculation: {e}")
            return []

    async def _client_side_search(
        self, user_id: str, query_embedding: List[float], options: SearchOptions
    ) -> List[Tuple[EmbeddingDocument, float]]:
        try:
            docs = await asyncio.to_thread(
                self.store.query_by_partition,
                user_id,
                None,
                options.limit * self.candidate_multiplier,
            )
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to fetch embeddings for user {user_id}: {e}") from e
        return [(doc, cosine_similarity(query_embedding, doc.embedding)) for doc in docs]

    def _apply_filters(
        self, chunks: List[HealthDataChunk], options: SearchOptions
    ) -> List[HealthDataChunk]:
        range_start = _optional_time(options.time_range_start, "time_range_start")
        range_end = _optional_time(options.time_range_end, "time_range_end")
        wanted_types = (
            {t.lower() for t in options.metric_types} if options.metric_types else None
        )

        kept = []
        for chunk in chunks:
            if chunk.similarity < options.similarity_threshold:
                continue
            if wanted_types is not None and not self._has_metric_type(chunk, wanted_types):
                continue
            if (range_start or range_end) and not self._in_time_range(chunk, range_start, range_end):
                continue
            kept.append(chunk)
        return kept

    @staticmethod
    def _has_metric_type(chunk: HealthDataChunk, wanted: set[str]) -> bool:
        for metric_type in chunk.metadata.get("metric_types", []):
            if metric_type.lower() in wanted or format_health_type(metric_type) in wanted:
                return True
        return False

    @staticmethod
    def _in_time_range(
        chunk: HealthDataChunk, start: datetime | None, end: datetime | None
    ) -> bool:
        first = chunk.metadata.get("start_date")
        last = chunk.metadata.get("end_date") or first
        if not first:
            return True
        try:
            chunk_start = parse_timestamp(first)
            chunk_end = parse_timestamp(last)
        except ValueError:
            return True
        if start is not None and chunk_end < start:
            return False
        if end is not None and chunk_start > end:
            return False
        return True
