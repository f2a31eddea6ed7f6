"""
Unit tests for the ingestion pipeline and the RAG service.
"""

import json
from unittest.mock import MagicMock

import pytest

from conftest import FakeEmbedder, MemoryStore
from healthrag.exceptions import ConfigError, PersistenceError, ProviderError, ValidationError
from healthrag.rag.faiss_store import FaissStore
from healthrag.rag.pipeline import HealthRagService, IngestionPipeline, build_store

EXPORT_XML = """<HealthData>
{records}
</HealthData>"""

RECORD_XML = (
    '<Record type="{type}" sourceName="Apple Watch" unit="{unit}" value="{value}" '
    'startDate="2024-06-01 {hour:02d}:{minute:02d}:00 +0000"/>'
)


def export_xml(heart_rates: int = 40, steps: int = 3) -> str:
    records = [
        RECORD_XML.format(
            type="HKQuantityTypeIdentifierHeartRate",
            unit="count/min",
            value=60 + i % 30,
            hour=i // 60,
            minute=i % 60,
        )
        for i in range(heart_rates)
    ]
    records += [
        RECORD_XML.format(
            type="HKQuantityTypeIdentifierStepCount", unit="count", value=1000 + i, hour=12, minute=i
        )
        for i in range(steps)
    ]
    return EXPORT_XML.format(records="\n".join(records))


class FailingEmbedder:
    async def aembed_query(self, text):
        raise ProviderError("quota exceeded", provider="watsonx.ai")


@pytest.fixture
def cos():
    client = MagicMock()
    client.upload_bytes.side_effect = lambda key, data, content_type: f"s3://health-exports/{key}"
    return client


@pytest.fixture
def pipeline(settings, embedder, memory_store, cos) -> IngestionPipeline:
    return IngestionPipeline(settings, embedder, memory_store, cos=cos)


class TestIngestionPipeline:
    """Tests for parsing, chunking and embedding an export."""

    @pytest.mark.asyncio
    async def test_inline_content(self, pipeline, memory_store):
        result = await pipeline.process_document_embeddings(
            "doc-1", "user-1", content=export_xml(), filename="export.xml"
        )
        # 40 heart rate records in windows of 35, plus one step count chunk
        assert result.processed_chunks == 3
        assert result.total_records == 43
        assert [d.id for d in memory_store.docs] == [
            "doc-1-chunk-0",
            "doc-1-chunk-1",
            "doc-1-chunk-2",
        ]

    @pytest.mark.asyncio
    async def test_regeneration_replaces_documents(self, pipeline, memory_store):
        await pipeline.process_document_embeddings("doc-1", "user-1", content=export_xml())
        await pipeline.process_document_embeddings("doc-1", "user-1", content=export_xml(steps=0))
        assert await pipeline.count_embedding_documents("user-1", "doc-1") == 2

    @pytest.mark.asyncio
    async def test_sequential_strategy_from_settings(self, settings, embedder, memory_store):
        settings.chunk_strategy = "sequential"
        settings.max_chunk_size = 15
        pipeline = IngestionPipeline(settings, embedder, memory_store)
        result = await pipeline.process_document_embeddings("doc-1", "user-1", content=export_xml())
        assert result.processed_chunks == 3

    @pytest.mark.asyncio
    async def test_downloads_from_source_uri(self, pipeline, cos):
        cos.download_text.return_value = json.dumps(
            [{"type": "HKQuantityTypeIdentifierStepCount", "value": 10, "startDate": "2024-06-01T08:00:00Z"}]
        )
        result = await pipeline.process_document_embeddings(
            "doc-1", "user-1", source_uri="s3://health-exports/exports/user-1/doc-1/steps.json"
        )
        cos.download_text.assert_called_once_with("s3://health-exports/exports/user-1/doc-1/steps.json")
        assert result.processed_chunks == 1

    @pytest.mark.asyncio
    async def test_requires_content_or_uri(self, pipeline):
        with pytest.raises(ValidationError):
            await pipeline.process_document_embeddings("doc-1", "user-1")

    @pytest.mark.asyncio
    async def test_delete_embedding_documents(self, pipeline, memory_store):
        await pipeline.process_document_embeddings("doc-1", "user-1", content=export_xml())
        await pipeline.delete_embedding_documents("user-1", "doc-1")
        assert await pipeline.get_embedding_documents("user-1") == []


class TestUploadExport:
    """Tests for export upload with manifest."""

    @pytest.mark.asyncio
    async def test_upload_writes_export_and_manifest(self, pipeline, cos):
        uri = await pipeline.upload_export("user-1", "doc-1", "export.xml", b"<HealthData/>")

        assert uri == "s3://health-exports/exports/user-1/doc-1/export.xml"
        export_call, manifest_call = cos.upload_bytes.call_args_list
        assert export_call.args[2] == "application/xml"
        assert manifest_call.args[0] == "exports/user-1/doc-1/manifest.json"
        manifest = json.loads(manifest_call.args[1])
        assert manifest["source_uri"] == uri
        assert manifest["size"] == len(b"<HealthData/>")

    @pytest.mark.asyncio
    async def test_failed_manifest_removes_export(self, pipeline, cos):
        cos.upload_bytes.side_effect = [
            "s3://health-exports/exports/user-1/doc-1/export.xml",
            PersistenceError("bucket unavailable"),
        ]
        with pytest.raises(PersistenceError) as exc_info:
            await pipeline.upload_export("user-1", "doc-1", "export.xml", b"<HealthData/>")

        assert exc_info.value.document_id == "doc-1"
        cos.delete.assert_called_once_with("s3://health-exports/exports/user-1/doc-1/export.xml")

    @pytest.mark.asyncio
    async def test_requires_cos(self, settings, embedder, memory_store):
        pipeline = IngestionPipeline(settings, embedder, memory_store)
        with pytest.raises(ConfigError):
            await pipeline.upload_export("user-1", "doc-1", "export.xml", b"")


class TestHealthRagService:
    """Tests for query embedding, retrieval and prompt assembly."""

    @pytest.mark.asyncio
    async def test_empty_query(self, settings, embedder, memory_store):
        service = HealthRagService(settings, embedder, memory_store)
        with pytest.raises(ValidationError):
            await service.generate_query_embedding("  ")

    @pytest.mark.asyncio
    async def test_query_embedding_dimension_checked(self, settings, memory_store):
        service = HealthRagService(settings, FakeEmbedder(dim=3), memory_store)
        with pytest.raises(ValidationError, match="Unexpected embedding dimensions"):
            await service.generate_query_embedding("heart rate")

    @pytest.mark.asyncio
    async def test_enhanced_prompt_from_ingested_data(self, pipeline, settings, embedder, memory_store):
        await pipeline.process_document_embeddings("doc-1", "user-1", content=export_xml())
        service = HealthRagService(settings, embedder, memory_store)

        response = await service.create_rag_enhanced_prompt("user-1", "What was my heart rate?")

        assert response.original_query == "What was my heart rate?"
        assert response.context.total_matches == 3
        assert "heart rate: 60 count/min" in response.enhanced_prompt
        assert "Data includes: heart rate, step count." in response.context.context_summary

    @pytest.mark.asyncio
    async def test_no_data(self, settings, embedder, memory_store):
        service = HealthRagService(settings, embedder, memory_store)
        context = await service.generate_health_context("user-1", "How did I sleep?")
        assert context.total_matches == 0
        assert context.context_summary == "No relevant health data found for this query."

    @pytest.mark.asyncio
    async def test_health_check(self, settings, embedder, memory_store):
        status = await HealthRagService(settings, embedder, memory_store).health_check()
        assert status["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_health_check_degraded(self, settings):
        status = await HealthRagService(settings, FailingEmbedder(), MemoryStore()).health_check()
        assert status["status"] == "degraded"
        assert status["embedding"].startswith("unhealthy: quota exceeded")
        assert status["vector_store"] == "healthy"


class TestBuildStore:
    """Tests for vector backend selection."""

    def test_faiss_backend(self, settings):
        assert isinstance(build_store(settings), FaissStore)

    def test_unknown_backend(self, settings):
        settings.vector_backend = "sqlite"
        with pytest.raises(ConfigError):
            build_store(settings)
