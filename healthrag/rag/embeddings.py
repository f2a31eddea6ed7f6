import asyncio
import logging

from ibm_watsonx_ai import Credentials
from ibm_watsonx_ai.foundation_models import Embeddings as WXEmbeddings

from healthrag.config import Settings
from healthrag.exceptions import ProviderError, ValidationError

logger = logging.getLogger(__name__)

PROVIDER = "watsonx.ai"


def ensure_dimension(embedding: list[float], expected_dim: int) -> list[float]:
    """Reject vectors whose length differs from the model's dimension."""
    if len(embedding) != expected_dim:
        raise ValidationError(
            f"Unexpected embedding dimensions: {len(embedding)} (expected {expected_dim})"
        )
    return embedding


class EmbeddingClient:
    def __init__(self, settings: Settings, client=None):
        self.settings = settings
        if client is None:
            credentials = Credentials(
                api_key=settings.ibm_cloud_api_key,
                url=f"https://{settings.watsonx_region}.ml.cloud.ibm.com",
            )
            client = WXEmbeddings(
                model_id=settings.watsonx_embed_model,
                project_id=settings.watsonx_project_id,
                credentials=credentials,
            )
        self.client = client

    @property
    def model_id(self) -> str:
        return self.settings.watsonx_embed_model

    def embed_query(self, text: str) -> list[float]:
        try:
            result = self.client.embed_query(text)
        except Exception as e:
            raise ProviderError(
                f"Embedding generation failed: {e}", provider=PROVIDER
            ) from e
        data = result.get_result() if hasattr(result, "get_result") else result
        if isinstance(data, dict):
            # {"results": [{"embedding"|"vector"|"values": [...]}, ...]}
            if (
                "results" in data
                and isinstance(data["results"], list)
                and data["results"]
            ):
                first = data["results"][0]
                if isinstance(first, dict):
                    for key in ("embedding", "vector", "values"):
                        if key in first:
                            return list(first[key])
            if "embedding" in data:
                return list(data["embedding"])
            if data.get("embeddings"):
                return list(data["embeddings"][0])
        # list-shaped: either a single vector or list of vectors
        if isinstance(data, list):
            if data and isinstance(data[0], list):
                return list(data[0])
            if data and isinstance(data[0], (int, float)):
                return list(data)
        if hasattr(result, "embedding"):
            return list(result.embedding)
        raise ProviderError(
            f"Unexpected query embedding response format from watsonx.ai: {type(data)} keys={list(data.keys()) if isinstance(data, dict) else 'n/a'}",
            provider=PROVIDER,
        )

    async def aembed_query(self, text: str) -> list[float]:
        """Embed one text without blocking the event loop."""
        return await asyncio.to_thread(self.embed_query, text)
