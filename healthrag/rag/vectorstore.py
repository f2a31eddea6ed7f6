import json
import logging
from typing import List, Protocol, Tuple, runtime_checkable

from pymilvus import connections, FieldSchema, CollectionSchema, DataType, Collection, utility

from healthrag.config import Settings
from healthrag.exceptions import PersistenceError
from healthrag.models import EmbeddingDocument

logger = logging.getLogger(__name__)

DOC_FIELDS = [
    "id",
    "user_id",
    "document_id",
    "chunk_index",
    "content_chunk",
    "embedding",
    "metadata",
    "timestamp",
]


@runtime_checkable
class VectorStore(Protocol):
    """Storage contract for embedding documents, partitioned by owner."""

    def create(self, doc: EmbeddingDocument) -> EmbeddingDocument: ...

    def delete_by_owner_and_document(
        self, user_id: str, document_id: str | None = None
    ) -> None: ...

    def query_by_partition(
        self, user_id: str, document_id: str | None = None, limit: int | None = None
    ) -> List[EmbeddingDocument]: ...

    def count_by_partition(self, user_id: str, document_id: str | None = None) -> int: ...

    def vector_search(
        self, user_id: str, query_embedding: List[float], limit: int
    ) -> List[Tuple[EmbeddingDocument, float]]: ...


def _partition_expr(user_id: str, document_id: str | None = None) -> str:
    # json.dumps gives a double-quoted, escaped literal
    expr = f"user_id == {json.dumps(user_id)}"
    if document_id is not None:
        expr += f" && document_id == {json.dumps(document_id)}"
    return expr


def _row_to_doc(row: dict) -> EmbeddingDocument:
    return EmbeddingDocument(
        id=row["id"],
        user_id=row["user_id"],
        document_id=row["document_id"],
        chunk_index=int(row["chunk_index"]),
        content_chunk=row["content_chunk"],
        embedding=[float(x) for x in row["embedding"]],
        metadata=row["metadata"],
        timestamp=row["timestamp"],
        partition_key=row["user_id"],
    )


class MilvusStore:
    def __init__(self, settings: Settings, collection_name: str | None = None):
        self.settings = settings
        self.collection_name = collection_name or settings.milvus_collection
        self._connect()
        self._ensure_collection()

    def _connect(self) -> None:
        alias = "default"
        if connections.has_connection(alias):
            return
        kwargs = {}
        if self.settings.milvus_db:
            kwargs["db_name"] = self.settings.milvus_db
        connections.connect(
            alias=alias,
            host=self.settings.milvus_host,
            port=str(self.settings.milvus_port),
            secure=self.settings.milvus_tls,
            **kwargs,
        )

    def _ensure_collection(self) -> None:
        fields = [
            FieldSchema(name="id", dtype=DataType.VARCHAR, is_primary=True, max_length=256),
            FieldSchema(name="user_id", dtype=DataType.VARCHAR, max_length=128, is_partition_key=True),
            FieldSchema(name="document_id", dtype=DataType.VARCHAR, max_length=128),
            FieldSchema(name="chunk_index", dtype=DataType.INT64),
            FieldSchema(name="content_chunk", dtype=DataType.VARCHAR, max_length=16384),
            FieldSchema(name="embedding", dtype=DataType.FLOAT_VECTOR, dim=self.settings.embedding_dim),
            FieldSchema(name="metadata", dtype=DataType.VARCHAR, max_length=65535),
            FieldSchema(name="timestamp", dtype=DataType.VARCHAR, max_length=64),
        ]
        schema = CollectionSchema(fields=fields, description="Health record embeddings")

        if not utility.has_collection(self.collection_name):
            self.collection = Collection(self.collection_name, schema=schema)
            self.collection.create_index(
                field_name="embedding",
                index_params={
                    "index_type": "IVF_FLAT",
                    "metric_type": "COSINE",
                    "params": {"nlist": 1024},
                },
            )
            logger.info(f"Created Milvus collection {self.collection_name}")
        else:
            self.collection = Collection(self.collection_name)

        self.collection.load()

    def create(self, doc: EmbeddingDocument) -> EmbeddingDocument:
        try:
            existing = self.collection.query(
                expr=f"id == {json.dumps(doc.id)}", output_fields=["id"]
            )
            if existing:
                raise PersistenceError(
                    f"Failed to store document {doc.id}: document already exists",
                    document_id=doc.id,
                )
            self.collection.insert(
                [
                    [doc.id],
                    [doc.user_id],
                    [doc.document_id],
                    [doc.chunk_index],
                    [doc.content_chunk],
                    [doc.embedding],
                    [doc.metadata],
                    [doc.timestamp],
                ]
            )
            self.collection.flush()
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(
                f"Failed to store document {doc.id}: {e}", document_id=doc.id
            ) from e
        return doc

    def delete_by_owner_and_document(
        self, user_id: str, document_id: str | None = None
    ) -> None:
        try:
            self.collection.delete(expr=_partition_expr(user_id, document_id))
            self.collection.flush()
        except Exception as e:
            raise PersistenceError(
                f"Failed to delete embeddings for user {user_id} document {document_id}: {e}",
                document_id=document_id,
            ) from e

    def query_by_partition(
        self, user_id: str, document_id: str | None = None, limit: int | None = None
    ) -> List[EmbeddingDocument]:
        kwargs = {"limit": limit} if limit else {}
        rows = self.collection.query(
            expr=_partition_expr(user_id, document_id),
            output_fields=DOC_FIELDS,
            **kwargs,
        )
        docs = [_row_to_doc(row) for row in rows]
        docs.sort(key=lambda d: (d.document_id, d.chunk_index))
        return docs

    def count_by_partition(self, user_id: str, document_id: str | None = None) -> int:
        rows = self.collection.query(
            expr=_partition_expr(user_id, document_id),
            output_fields=["count(*)"],
        )
        return int(rows[0]["count(*)"]) if rows else 0

    def vector_search(
        self, user_id: str, query_embedding: List[float], limit: int
    ) -> List[Tuple[EmbeddingDocument, float]]:
        results = self.collection.search(
            data=[query_embedding],
            anns_field="embedding",
            param={"metric_type": "COSINE", "params": {"nprobe": 16}},
            limit=limit,
            expr=_partition_expr(user_id),
            output_fields=DOC_FIELDS,
        )
        hits = []
        for hit in results[0]:
            row = {f: hit.entity.get(f) for f in DOC_FIELDS}
            hits.append((_row_to_doc(row), float(hit.distance)))
        return hits
