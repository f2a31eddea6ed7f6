"""RAG pipeline for health export ingestion and query processing.

This module provides the IngestionPipeline and HealthRagService classes
and the build_services factory that wires them together.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from healthrag.config import Settings
from healthrag.exceptions import ConfigError, HealthRagError, PersistenceError, ValidationError
from healthrag.models import (
    EmbeddingDocument,
    HealthDataChunk,
    HealthDataContext,
    ProcessingResult,
    RagResponse,
    SearchOptions,
)
from healthrag.rag.chat import ChatService
from healthrag.rag.chunker import ChunkStrategy, group_records_into_chunks
from healthrag.rag.context import ContextAssembler
from healthrag.rag.cos_client import COSClient
from healthrag.rag.embeddings import EmbeddingClient, ensure_dimension
from healthrag.rag.faiss_store import FaissStore
from healthrag.rag.generator import GeneratorClient
from healthrag.rag.orchestrator import EmbeddingOrchestrator, ProgressCallback
from healthrag.rag.parser import parse_export
from healthrag.rag.retriever import SimilarityRetriever
from healthrag.rag.vectorstore import MilvusStore, VectorStore

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".xml": "application/xml",
    ".json": "application/json",
    ".csv": "text/csv",
}


def _content_type(filename: str) -> str:
    for ext, content_type in CONTENT_TYPES.items():
        if filename.lower().endswith(ext):
            return content_type
    return "application/octet-stream"


class IngestionPipeline:
    """Pipeline for ingesting and embedding health exports.

    Handles export upload, parsing, chunking, embedding and storage in the
    vector store.
    """

    def __init__(
        self,
        settings: Settings,
        embedder: EmbeddingClient,
        store: VectorStore,
        cos: COSClient | None = None,
        orchestrator: EmbeddingOrchestrator | None = None,
    ) -> None:
        """Initialize ingestion pipeline.

        Args:
            settings: Application settings.
            embedder: Embedding provider client.
            store: Vector store receiving embedding documents.
            cos: Blob store holding uploaded exports (optional for inline content).
            orchestrator: Embedding orchestrator; built from settings when omitted.
        """
        self.settings = settings
        self.embed = embedder
        self.vs = store
        self.cos = cos
        self.orchestrator = orchestrator or EmbeddingOrchestrator.from_settings(
            settings, embedder, store
        )

    def _require_cos(self) -> COSClient:
        if self.cos is None:
            raise ConfigError("Cloud Object Storage is not configured. Please set COS_BUCKET.")
        return self.cos

    async def upload_export(
        self, user_id: str, document_id: str, filename: str, data: bytes
    ) -> str:
        """Store an export file and its manifest in Cloud Object Storage.

        The export is deleted again when the manifest cannot be written.

        Returns:
            URI of the stored export.
        """
        cos = self._require_cos()
        prefix = f"exports/{user_id}/{document_id}"
        source_uri = await asyncio.to_thread(
            cos.upload_bytes, f"{prefix}/{filename}", data, _content_type(filename)
        )
        manifest = {
            "document_id": document_id,
            "user_id": user_id,
            "filename": filename,
            "source_uri": source_uri,
            "size": len(data),
            "uploaded_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await asyncio.to_thread(
                cos.upload_bytes,
                f"{prefix}/manifest.json",
                json.dumps(manifest).encode("utf-8"),
                "application/json",
            )
        except Exception as e:
            logger.error(f"Manifest write failed for {document_id}, removing {source_uri}: {e}")
            try:
                await asyncio.to_thread(cos.delete, source_uri)
            except HealthRagError as cleanup_error:
                logger.error(f"Failed to remove orphaned export {source_uri}: {cleanup_error}")
            raise PersistenceError(
                f"Failed to record upload of {filename}: {e}", document_id=document_id
            ) from e
        logger.info(f"Uploaded {filename} ({len(data)} bytes) to {source_uri}")
        return source_uri

    async def process_document_embeddings(
        self,
        document_id: str,
        user_id: str,
        source_uri: str | None = None,
        content: str | None = None,
        filename: str = "export.xml",
        replace_existing: bool = True,
        isolate_failures: bool = False,
        strict: bool = False,
        progress_callback: ProgressCallback | None = None,
    ) -> ProcessingResult:
        """Parse, chunk and embed one health export for a user.

        Args:
            document_id: Import identifier; embedding ids derive from it.
            user_id: Owner and partition key.
            source_uri: Stored export to download (``s3://bucket/key``).
            content: Export text, used instead of ``source_uri``.
            filename: Name used to pick the export format.
            replace_existing: Delete this document's embeddings first.
            isolate_failures: Continue past failed chunks.
            strict: Fail on the first invalid record instead of skipping it.
            progress_callback: Called with ``(processed, total)`` per batch.

        Returns:
            Processing counts for the document.
        """
        started = time.perf_counter()
        if content is None:
            if source_uri is None:
                raise ValidationError("Either source_uri or content must be provided")
            content = await asyncio.to_thread(self._require_cos().download_text, source_uri)
            if source_uri.lower().endswith(tuple(CONTENT_TYPES)):
                filename = source_uri.rsplit("/", 1)[-1]

        records = parse_export(content, filename, strict=strict)
        chunks = group_records_into_chunks(
            records,
            strategy=ChunkStrategy(self.settings.chunk_strategy),
            max_chunk_size=self.settings.max_chunk_size,
        )
        logger.info(
            f"Parsed {len(records)} records into {len(chunks)} chunks for document {document_id}"
        )

        if replace_existing:
            await self.delete_embedding_documents(user_id, document_id)

        result = await self.orchestrator.process_chunks(
            chunks,
            document_id,
            user_id,
            isolate_failures=isolate_failures,
            progress_callback=progress_callback,
        )
        result.processing_time_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            f"Processed document {document_id}: {result.processed_chunks} chunks stored, "
            f"{result.failed_chunks} failed in {result.processing_time_ms} ms"
        )
        return result

    async def get_embedding_documents(
        self, user_id: str, document_id: str | None = None
    ) -> list[EmbeddingDocument]:
        return await asyncio.to_thread(self.vs.query_by_partition, user_id, document_id)

    async def count_embedding_documents(
        self, user_id: str, document_id: str | None = None
    ) -> int:
        return await asyncio.to_thread(self.vs.count_by_partition, user_id, document_id)

    async def delete_embedding_documents(
        self, user_id: str, document_id: str | None = None
    ) -> None:
        try:
            await asyncio.to_thread(self.vs.delete_by_owner_and_document, user_id, document_id)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(
                f"Failed to delete embeddings for user {user_id}: {e}", document_id=document_id
            ) from e


class HealthRagService:
    """Answers-side pipeline: query embedding, retrieval and prompt assembly."""

    def __init__(
        self,
        settings: Settings,
        embedder: EmbeddingClient,
        store: VectorStore,
        retriever: SimilarityRetriever | None = None,
        assembler: ContextAssembler | None = None,
    ) -> None:
        self.settings = settings
        self.embed = embedder
        self.vs = store
        self.retriever = retriever or SimilarityRetriever(store)
        self.assembler = assembler or ContextAssembler(settings.max_context_length)

    def default_options(self) -> SearchOptions:
        return SearchOptions(
            limit=self.settings.top_k,
            similarity_threshold=self.settings.similarity_threshold,
        )

    async def generate_query_embedding(self, query: str) -> list[float]:
        if not query or not query.strip():
            raise ValidationError("Query must not be empty")
        embedding = await self.embed.aembed_query(query.strip())
        return ensure_dimension(embedding, self.settings.embedding_dim)

    async def search_relevant_health_data(
        self, user_id: str, query: str, options: SearchOptions | None = None
    ) -> list[HealthDataChunk]:
        query_embedding = await self.generate_query_embedding(query)
        return await self.retriever.search(
            user_id, query_embedding, options or self.default_options()
        )

    async def generate_health_context(
        self, user_id: str, query: str, options: SearchOptions | None = None
    ) -> HealthDataContext:
        options = options or self.default_options()
        chunks = await self.search_relevant_health_data(user_id, query, options)
        return self.assembler.build_context(query, chunks, options)

    async def create_rag_enhanced_prompt(
        self, user_id: str, query: str, options: SearchOptions | None = None
    ) -> RagResponse:
        context = await self.generate_health_context(user_id, query, options)
        return RagResponse(
            context=context,
            enhanced_prompt=self.assembler.build_prompt(query, context),
            original_query=query,
        )

    async def health_check(self) -> dict:
        """Check that the embedding provider and the vector store respond."""
        status = {"embedding": "unknown", "vector_store": "unknown"}
        try:
            await self.generate_query_embedding("health check")
            status["embedding"] = "healthy"
        except HealthRagError as e:
            logger.warning(f"Embedding health check failed: {e}")
            status["embedding"] = f"unhealthy: {e}"
        try:
            await asyncio.to_thread(self.vs.count_by_partition, "__health_check__")
            status["vector_store"] = "healthy"
        except Exception as e:
            logger.warning(f"Vector store health check failed: {e}")
            status["vector_store"] = f"unhealthy: {e}"
        status["status"] = (
            "healthy"
            if status["embedding"] == status["vector_store"] == "healthy"
            else "degraded"
        )
        return status


@dataclass
class Services:
    settings: Settings
    embedder: EmbeddingClient
    store: VectorStore
    cos: COSClient | None
    ingestion: IngestionPipeline
    rag: HealthRagService
    chat: ChatService


def build_store(settings: Settings) -> VectorStore:
    if settings.vector_backend == "faiss":
        return FaissStore(settings)
    if settings.vector_backend == "milvus":
        return MilvusStore(settings)
    raise ConfigError(
        f"Unknown VECTOR_BACKEND {settings.vector_backend!r} (expected 'faiss' or 'milvus')"
    )


def build_services(settings: Settings) -> Services:
    """Construct every service object once, for the life of the process."""
    embedder = EmbeddingClient(settings)
    store = build_store(settings)
    cos = COSClient(settings) if settings.cos_bucket else None
    chat = ChatService(GeneratorClient(settings), history_limit=settings.chat_history_limit)
    return Services(
        settings=settings,
        embedder=embedder,
        store=store,
        cos=cos,
        ingestion=IngestionPipeline(settings, embedder, store, cos=cos),
        rag=HealthRagService(settings, embedder, store),
        chat=chat,
    )
