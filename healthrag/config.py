"""Settings for the health-record RAG pipeline.

Values come from environment variables (a .env file is loaded by the
CLI); malformed numbers and unknown backend or strategy names raise
ConfigError when the settings are loaded.
"""

from dataclasses import dataclass
import os

from healthrag.exceptions import ConfigError

VECTOR_BACKENDS = {"faiss", "milvus"}
CHUNK_STRATEGIES = {"grouped", "sequential"}


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Attributes:
        ibm_cloud_api_key: IBM Cloud API key for authentication.
        watsonx_region: Watsonx.ai service region.
        watsonx_project_id: Watsonx.ai project ID.
        watsonx_embed_model: Embedding model ID.
        watsonx_gen_model: Generation (chat) model ID.
        cos_endpoint: Cloud Object Storage endpoint.
        cos_bucket: Cloud Object Storage bucket name.
        cos_instance_crn: Cloud Object Storage instance CRN.
        cos_api_key: Cloud Object Storage API key (optional).
        cos_auth_endpoint: Cloud Object Storage auth endpoint.
        cos_hmac_access_key_id: HMAC access key ID.
        cos_hmac_secret_access_key: HMAC secret access key.
        vector_backend: Vector store backend, ``faiss`` or ``milvus``.
        milvus_host: Milvus database host.
        milvus_port: Milvus database port.
        milvus_db: Milvus database name (optional).
        milvus_tls: Whether to use TLS for Milvus.
        milvus_collection: Milvus collection holding embedding documents.
        faiss_index_path: Path to FAISS index file.
        faiss_meta_path: Path to FAISS metadata file.
        chunk_strategy: ``grouped`` (by metric type, adaptive) or ``sequential``.
        max_chunk_size: Maximum number of records per chunk.
        embed_batch_size: Number of chunks embedded concurrently.
        max_text_length: Character budget for one embedding input.
        max_embed_tokens: Estimated token ceiling of the embedding model.
        embedding_dim: Expected embedding dimension.
        top_k: Default number of chunks retrieved per query.
        similarity_threshold: Default minimum cosine similarity.
        max_context_length: Character budget for the assembled context.
        chat_history_limit: Messages kept per conversation.
        temperature: Generation temperature.
        log_level: Root logging level name.
    """

    ibm_cloud_api_key: str
    watsonx_region: str
    watsonx_project_id: str
    watsonx_embed_model: str
    watsonx_gen_model: str

    cos_endpoint: str
    cos_bucket: str
    cos_instance_crn: str
    cos_api_key: str | None
    cos_auth_endpoint: str
    cos_hmac_access_key_id: str
    cos_hmac_secret_access_key: str

    vector_backend: str
    milvus_host: str
    milvus_port: int
    milvus_db: str | None
    milvus_tls: bool
    milvus_collection: str

    faiss_index_path: str
    faiss_meta_path: str

    chunk_strategy: str
    max_chunk_size: int
    embed_batch_size: int
    max_text_length: int
    max_embed_tokens: int
    embedding_dim: int

    top_k: int
    similarity_threshold: float
    max_context_length: int
    chat_history_limit: int
    temperature: float
    log_level: str

    @staticmethod
    def _get_bool(value: str | None, default: bool = False) -> bool:
        if value is None:
            return default
        return value.lower() in {"1", "true", "t", "yes", "y"}

    @staticmethod
    def _get_number(name: str, default: str, kind: type = int):
        raw = os.getenv(name, default)
        try:
            return kind(raw)
        except ValueError as e:
            label = "an integer" if kind is int else "a number"
            raise ConfigError(f"{name} must be {label}, got {raw!r}") from e

    def validate(self) -> "Settings":
        """Check values that cannot be expressed by the field types.

        Raises:
            ConfigError: An unknown backend or strategy, or a non-positive size.
        """
        if self.vector_backend not in VECTOR_BACKENDS:
            raise ConfigError(
                f"VECTOR_BACKEND must be one of {sorted(VECTOR_BACKENDS)}, got {self.vector_backend!r}"
            )
        if self.chunk_strategy not in CHUNK_STRATEGIES:
            raise ConfigError(
                f"CHUNK_STRATEGY must be one of {sorted(CHUNK_STRATEGIES)}, got {self.chunk_strategy!r}"
            )
        for name in ("max_chunk_size", "embed_batch_size", "max_text_length", "embedding_dim", "top_k"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name.upper()} must be >= 1, got {getattr(self, name)}")
        return self

    @classmethod
    def from_env(cls) -> "Settings":
        """Create Settings instance from environment variables.

        Returns:
            Validated Settings instance.

        Raises:
            ConfigError: A value is malformed or out of range.
        """
        return cls(
            ibm_cloud_api_key=os.getenv("IBM_CLOUD_API_KEY", ""),
            watsonx_region=os.getenv("WATSONX_REGION", "us-south"),
            watsonx_project_id=os.getenv("WATSONX_PROJECT_ID", ""),
            watsonx_embed_model=os.getenv(
                "WATSONX_EMBED_MODEL",
                "ibm/slate-125m-english-rtrvr-v2",
            ),
            watsonx_gen_model=os.getenv(
                "WATSONX_GEN_MODEL", "ibm/granite-3-8b-instruct"
            ),
            cos_endpoint=os.getenv("COS_ENDPOINT", ""),
            cos_bucket=os.getenv("COS_BUCKET", ""),
            cos_instance_crn=os.getenv("COS_INSTANCE_CRN", ""),
            cos_api_key=os.getenv("COS_API_KEY") or os.getenv("IBM_CLOUD_API_KEY"),
            cos_auth_endpoint=os.getenv(
                "COS_AUTH_ENDPOINT",
                "https://iam.cloud.ibm.com/identity/token",
            ),
            cos_hmac_access_key_id=os.getenv("COS_HMAC_ACCESS_KEY_ID", ""),
            cos_hmac_secret_access_key=os.getenv("COS_HMAC_SECRET_ACCESS_KEY", ""),
            vector_backend=os.getenv("VECTOR_BACKEND", "faiss").lower(),
            milvus_host=os.getenv("MILVUS_HOST", "localhost"),
            milvus_port=cls._get_number("MILVUS_PORT", "19530"),
            milvus_db=os.getenv("MILVUS_DB"),
            milvus_tls=cls._get_bool(os.getenv("MILVUS_TLS"), False),
            milvus_collection=os.getenv("MILVUS_COLLECTION", "health_embeddings"),
            faiss_index_path=os.getenv("FAISS_INDEX_PATH", "data/index.faiss"),
            faiss_meta_path=os.getenv("FAISS_META_PATH", "data/meta.json"),
            chunk_strategy=os.getenv("CHUNK_STRATEGY", "grouped").lower(),
            max_chunk_size=cls._get_number("MAX_CHUNK_SIZE", "35"),
            embed_batch_size=cls._get_number("EMBED_BATCH_SIZE", "5"),
            max_text_length=cls._get_number("MAX_TEXT_LENGTH", "8000"),
            max_embed_tokens=cls._get_number("MAX_EMBED_TOKENS", "8000"),
            embedding_dim=cls._get_number("EMBEDDING_DIM", "1536"),
            top_k=cls._get_number("TOP_K", "10"),
            similarity_threshold=cls._get_number("SIMILARITY_THRESHOLD", "0.5", float),
            max_context_length=cls._get_number("MAX_CONTEXT_LENGTH", "8000"),
            chat_history_limit=cls._get_number("CHAT_HISTORY_LIMIT", "20"),
            temperature=cls._get_number("TEMPERATURE", "0.2", float),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        ).validate()
