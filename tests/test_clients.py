"""
Unit tests for the watsonx.ai embedding client and the COS blob client.
"""

import io
from unittest.mock import MagicMock

import pytest

from healthrag.exceptions import (
    ConfigError,
    ParseError,
    PersistenceError,
    ProviderError,
    ValidationError,
)
from healthrag.rag.cos_client import COSClient, split_uri
from healthrag.rag.embeddings import EmbeddingClient, ensure_dimension


class TestEmbeddingClient:
    """Tests for response-shape handling and error wrapping."""

    @pytest.mark.parametrize(
        "response",
        [
            [0.1, 0.2, 0.3],
            [[0.1, 0.2, 0.3]],
            {"results": [{"embedding": [0.1, 0.2, 0.3]}]},
            {"embedding": [0.1, 0.2, 0.3]},
        ],
    )
    def test_response_shapes(self, settings, response):
        provider = MagicMock(spec=["embed_query"])
        provider.embed_query.return_value = response
        assert EmbeddingClient(settings, client=provider).embed_query("hr") == [0.1, 0.2, 0.3]

    def test_unexpected_shape(self, settings):
        provider = MagicMock(spec=["embed_query"])
        provider.embed_query.return_value = {"status": "ok"}
        with pytest.raises(ProviderError, match="Unexpected query embedding response"):
            EmbeddingClient(settings, client=provider).embed_query("hr")

    def test_provider_failure(self, settings):
        provider = MagicMock(spec=["embed_query"])
        provider.embed_query.side_effect = ConnectionError("timed out")
        with pytest.raises(ProviderError) as exc_info:
            EmbeddingClient(settings, client=provider).embed_query("hr")
        assert exc_info.value.provider == "watsonx.ai"

    @pytest.mark.asyncio
    async def test_async_entry_point(self, settings):
        provider = MagicMock(spec=["embed_query"])
        provider.embed_query.return_value = [1.0, 0.0]
        assert await EmbeddingClient(settings, client=provider).aembed_query("hr") == [1.0, 0.0]

    def test_ensure_dimension(self):
        assert ensure_dimension([0.0] * 3, 3) == [0.0] * 3
        with pytest.raises(ValidationError, match="512 \\(expected 1536\\)"):
            ensure_dimension([0.0] * 512, 1536)


class TestCOSClient:
    """Tests for upload, download and delete."""

    @pytest.fixture
    def s3(self):
        return MagicMock()

    def test_upload_bytes(self, settings, s3):
        uri = COSClient(settings, client=s3).upload_bytes("exports/u/d/export.xml", b"x", "application/xml")
        assert uri == "s3://health-exports/exports/u/d/export.xml"
        s3.put_object.assert_called_once_with(
            Bucket="health-exports", Key="exports/u/d/export.xml", Body=b"x", ContentType="application/xml"
        )

    def test_download_text(self, settings, s3):
        s3.get_object.return_value = {"Body": io.BytesIO("<HealthData/>".encode("utf-8"))}
        text = COSClient(settings, client=s3).download_text("s3://other-bucket/a/b.xml")
        assert text == "<HealthData/>"
        s3.get_object.assert_called_once_with(Bucket="other-bucket", Key="a/b.xml")

    def test_download_invalid_text(self, settings, s3):
        s3.get_object.return_value = {"Body": io.BytesIO(b"\xff\xfe<HealthData>")}
        with pytest.raises(ParseError, match="not valid utf-8 text"):
            COSClient(settings, client=s3).download_text("s3://health-exports/a/b.xml")

    def test_delete(self, settings, s3):
        COSClient(settings, client=s3).delete("s3://health-exports/a.xml")
        s3.delete_object.assert_called_once_with(Bucket="health-exports", Key="a.xml")

    def test_errors_wrapped(self, settings, s3):
        s3.put_object.side_effect = RuntimeError("AccessDenied")
        with pytest.raises(PersistenceError, match="AccessDenied"):
            COSClient(settings, client=s3).upload_bytes("k", b"x")

    @pytest.mark.parametrize("uri", ["https://bucket/key", "s3://bucket-only"])
    def test_invalid_uri(self, uri):
        with pytest.raises(PersistenceError):
            split_uri(uri)

    def test_missing_configuration(self, settings):
        settings.cos_endpoint = ""
        with pytest.raises(ConfigError):
            COSClient(settings)
