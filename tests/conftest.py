"""Shared fixtures for the healthrag test suite."""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from healthrag.config import Settings
from healthrag.models import EmbeddingDocument, Record

BASE_TIME = datetime(2024, 6, 1, 8, 0, 0, tzinfo=timezone(timedelta(hours=2)))
HEART_RATE = "HKQuantityTypeIdentifierHeartRate"
STEP_COUNT = "HKQuantityTypeIdentifierStepCount"


def apple_date(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d %H:%M:%S %z")


def make_record(
    type: str = HEART_RATE,
    value: str = "72",
    unit: str | None = "count/min",
    minutes: int = 0,
    **kwargs,
) -> Record:
    """Record starting ``minutes`` after BASE_TIME."""
    start = apple_date(BASE_TIME + timedelta(minutes=minutes))
    return Record(
        type=type,
        value=value,
        unit=unit,
        start_date=kwargs.pop("start_date", start),
        source_name=kwargs.pop("source_name", "Apple Watch"),
        **kwargs,
    )


def make_document(
    index: int,
    embedding: list[float],
    user_id: str = "user-1",
    document_id: str = "doc-1",
    metadata: str = "{}",
) -> EmbeddingDocument:
    return EmbeddingDocument(
        id=f"{document_id}-chunk-{index}",
        user_id=user_id,
        document_id=document_id,
        chunk_index=index,
        content_chunk=f"heart rate: {60 + index} count/min",
        embedding=embedding,
        metadata=metadata,
        timestamp="2024-06-01T08:00:00+00:00",
        partition_key=user_id,
    )


class FakeEmbedder:
    """Async embedder returning a fixed vector and tracking concurrency."""

    def __init__(self, dim: int = 4, fail_on: set[str] | None = None, sizes: dict | None = None):
        self.dim = dim
        self.fail_on = fail_on or set()
        self.sizes = sizes or {}
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def aembed_query(self, text: str) -> list[float]:
        self.calls.append(text)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            for marker in self.fail_on:
                if marker in text:
                    raise RuntimeError(f"provider rejected input containing {marker}")
            for marker, size in self.sizes.items():
                if marker in text:
                    return [0.1] * size
            return [1.0] + [0.0] * (self.dim - 1)
        finally:
            self.in_flight -= 1


class MemoryStore:
    """In-memory store implementing the document store contract without native search."""

    def __init__(self, fail_on_id: str | None = None):
        self.docs: list[EmbeddingDocument] = []
        self.fail_on_id = fail_on_id

    def create(self, doc: EmbeddingDocument) -> EmbeddingDocument:
        if doc.id == self.fail_on_id:
            raise IOError("disk full")
        self.docs.append(doc)
        return doc

    def delete_by_owner_and_document(self, user_id, document_id=None):
        self.docs = [
            d
            for d in self.docs
            if not (d.user_id == user_id and (document_id is None or d.document_id == document_id))
        ]

    def query_by_partition(self, user_id, document_id=None, limit=None):
        rows = [
            d
            for d in self.docs
            if d.user_id == user_id and (document_id is None or d.document_id == document_id)
        ]
        return rows[:limit] if limit else rows

    def count_by_partition(self, user_id, document_id=None):
        return len(self.query_by_partition(user_id, document_id))


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    for key in ("COS_HMAC_ACCESS_KEY_ID", "COS_HMAC_SECRET_ACCESS_KEY", "VECTOR_BACKEND"):
        monkeypatch.delenv(key, raising=False)
    return replace(
        Settings.from_env(),
        vector_backend="faiss",
        faiss_index_path=str(tmp_path / "index.faiss"),
        faiss_meta_path=str(tmp_path / "meta.json"),
        cos_bucket="health-exports",
        embedding_dim=4,
        chunk_strategy="grouped",
        max_chunk_size=35,
        embed_batch_size=5,
        max_text_length=8000,
        max_embed_tokens=8000,
        top_k=10,
        similarity_threshold=0.5,
        max_context_length=8000,
        chat_history_limit=20,
    )


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()
