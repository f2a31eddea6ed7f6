"""Data models for the health-record RAG pipeline.

This module defines Pydantic models for parsed health records, chunks,
persisted embedding documents, retrieval results and job results.
"""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Apple Health export timestamps look like "2024-06-15 14:25:19 +0200"
APPLE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S %z"


def parse_timestamp(value: str) -> datetime:
    """Parse an Apple Health or ISO-8601 timestamp into an aware datetime.

    Naive timestamps are taken as UTC so that all values stay comparable.

    Raises:
        ValueError: If the string matches neither format.
    """
    text = value.strip()
    try:
        parsed = datetime.strptime(text, APPLE_DATE_FORMAT)
    except ValueError:
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def embedding_document_id(document_id: str, chunk_index: int) -> str:
    """Deterministic id of the embedding document for one chunk."""
    return f"{document_id}-chunk-{chunk_index}"


class Record(BaseModel):
    """One health observation from an export.

    Attributes:
        type: Metric identifier, e.g. ``HKQuantityTypeIdentifierHeartRate``.
        value: Observed value as it appeared in the export.
        unit: Unit of the value, if any.
        start_date: Start timestamp (raw export text).
        end_date: End timestamp; defaults to ``start_date``.
        source_name: App or device that wrote the record.
        source_version: Version of the source.
        device: Device description.
        creation_date: Time the record was written.
    """

    model_config = ConfigDict(frozen=True)

    type: str
    value: str | int | float
    unit: str | None = None
    start_date: str
    end_date: str | None = None
    source_name: str | None = None
    source_version: str | None = None
    device: str | None = None
    creation_date: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _default_end_date(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("end_date"):
            data = {**data, "end_date": data.get("start_date")}
        return data

    @field_validator("type", "start_date")
    @classmethod
    def _required_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("value")
    @classmethod
    def _required_value(cls, v: str | int | float) -> str | int | float:
        if isinstance(v, str):
            v = v.strip()
            if not v:
                raise ValueError("must not be empty")
        return v

    @field_validator("start_date", "end_date")
    @classmethod
    def _parseable_date(cls, v: str | None) -> str | None:
        if v is not None:
            parse_timestamp(v)
        return v

    @property
    def start_time(self) -> datetime:
        return parse_timestamp(self.start_date)

    @property
    def end_time(self) -> datetime:
        return parse_timestamp(self.end_date or self.start_date)


class Chunk(BaseModel):
    """Ordered, non-empty group of records embedded as one unit."""

    index: int = Field(ge=0)
    records: list[Record] = Field(min_length=1)

    @property
    def size(self) -> int:
        return len(self.records)


class EmbeddingDocument(BaseModel):
    """Persisted embedding of one chunk.

    Attributes:
        id: ``{document_id}-chunk-{chunk_index}``.
        user_id: Owner of the document, also the partition key.
        document_id: Parent import identifier.
        chunk_index: 0-based index of the chunk within the document.
        content_chunk: Newline-joined record lines that were embedded.
        embedding: Embedding vector.
        metadata: JSON-serialized description of the original chunk.
        timestamp: Creation time (ISO-8601, UTC).
        partition_key: Same value as ``user_id``.
    """

    id: str
    user_id: str
    document_id: str
    chunk_index: int
    content_chunk: str
    embedding: list[float]
    metadata: str
    timestamp: str
    partition_key: str


class SearchOptions(BaseModel):
    """Options for similarity search over a user's embeddings."""

    limit: int = Field(default=10, ge=1)
    similarity_threshold: float = 0.5
    time_range_start: str | None = None
    time_range_end: str | None = None
    metric_types: list[str] | None = None


class HealthDataChunk(BaseModel):
    """Retrieved chunk with its similarity to the query."""

    id: str
    content: str
    similarity: float
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: str
    chunk_index: int


class HealthDataContext(BaseModel):
    """Retrieved chunks plus their natural-language summary."""

    query: str
    relevant_data: list[HealthDataChunk]
    context_summary: str
    total_matches: int
    search_options: SearchOptions


class RagResponse(BaseModel):
    """Context and guarded system prompt for the chat model."""

    context: HealthDataContext
    enhanced_prompt: str
    original_query: str


class ProcessingResult(BaseModel):
    """Outcome of embedding one imported document."""

    document_id: str
    user_id: str
    processed_chunks: int
    failed_chunks: int = 0
    total_records: int
    processing_time_ms: int
    errors: list[str] = Field(default_factory=list)


class ChatMessage(BaseModel):
    """One turn of a conversation."""

    role: Literal["user", "assistant", "system"]
    content: str
