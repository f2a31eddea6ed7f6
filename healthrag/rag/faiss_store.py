import os
import json
import logging
from typing import List, Tuple, Dict, Any

import faiss
import numpy as np

from healthrag.config import Settings
from healthrag.exceptions import PersistenceError
from healthrag.models import EmbeddingDocument

logger = logging.getLogger(__name__)


class FaissStore:
    """Local, file-backed vector store.

    Documents (including their raw vectors) live in a JSON metadata file;
    the FAISS index holds the normalized vectors in the same order.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.dim = settings.embedding_dim
        self.index_path = settings.faiss_index_path
        self.meta_path = settings.faiss_meta_path
        for path in (self.index_path, self.meta_path):
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
        self.index = None
        self.metadata: List[Dict[str, Any]] = []
        self._load()

    @staticmethod
    def _normalize(vecs: np.ndarray) -> np.ndarray:
        norms = np.linalg.norm(vecs, axis=1, keepdims=True) + 1e-12
        return vecs / norms

    def _create_index(self) -> None:
        # Inner product search on normalized vectors = cosine similarity
        self.index = faiss.IndexFlatIP(self.dim)

    def _load(self) -> None:
        if os.path.exists(self.index_path) and os.path.exists(self.meta_path):
            self.index = faiss.read_index(self.index_path)
            with open(self.meta_path, "r", encoding="utf-8") as f:
                self.metadata = json.load(f)
            if self.index.d != self.dim:
                raise PersistenceError(
                    f"FAISS index dimension mismatch: index.d={self.index.d} vs EMBEDDING_DIM={self.dim}. "
                    f"Delete the existing FAISS files ({self.index_path}, {self.meta_path}) to rebuild."
                )
        else:
            self._create_index()
            self.metadata = []

    def _save(self) -> None:
        faiss.write_index(self.index, self.index_path)
        with open(self.meta_path, "w", encoding="utf-8") as f:
            json.dump(self.metadata, f)

    def _rebuild(self) -> None:
        self._create_index()
        if self.metadata:
            vecs = np.array([m["embedding"] for m in self.metadata], dtype=np.float32)
            self.index.add(self._normalize(vecs))

    def _restore(self, metadata: List[Dict[str, Any]]) -> None:
        """Return to the last saved state after a failed write."""
        self.metadata = metadata
        self._rebuild()

    def create(self, doc: EmbeddingDocument) -> EmbeddingDocument:
        if any(m["id"] == doc.id for m in self.metadata):
            raise PersistenceError(
                f"Failed to store document {doc.id}: document already exists",
                document_id=doc.id,
            )
        if len(doc.embedding) != self.dim:
            raise PersistenceError(
                f"Failed to store document {doc.id}: embedding has {len(doc.embedding)} dimensions, index expects {self.dim}",
                document_id=doc.id,
            )
        vec = self._normalize(np.array([doc.embedding], dtype=np.float32))
        previous = self.metadata
        try:
            self.index.add(vec)
            self.metadata = previous + [doc.model_dump()]
            self._save()
        except (OSError, RuntimeError) as e:
            self._restore(previous)
            raise PersistenceError(
                f"Failed to store document {doc.id}: {e}", document_id=doc.id
            ) from e
        return doc

    def delete_by_owner_and_document(
        self, user_id: str, document_id: str | None = None
    ) -> None:
        kept = [
            m
            for m in self.metadata
            if not (
                m["user_id"] == user_id
                and (document_id is None or m["document_id"] == document_id)
            )
        ]
        removed = len(self.metadata) - len(kept)
        if not removed:
            return
        previous = self.metadata
        self.metadata = kept
        self._rebuild()
        try:
            self._save()
        except (OSError, RuntimeError) as e:
            self._restore(previous)
            raise PersistenceError(
                f"Failed to delete embeddings for user {user_id} document {document_id}: {e}",
                document_id=document_id,
            ) from e
        logger.info(f"Deleted {removed} embedding documents for user {user_id}")

    def _partition(self, user_id: str, document_id: str | None = None) -> List[Dict[str, Any]]:
        return [
            m
            for m in self.metadata
            if m["user_id"] == user_id
            and (document_id is None or m["document_id"] == document_id)
        ]

    def query_by_partition(
        self, user_id: str, document_id: str | None = None, limit: int | None = None
    ) -> List[EmbeddingDocument]:
        rows = self._partition(user_id, document_id)
        if limit:
            rows = rows[:limit]
        return [EmbeddingDocument(**m) for m in rows]

    def count_by_partition(self, user_id: str, document_id: str | None = None) -> int:
        return len(self._partition(user_id, document_id))

    def vector_search(
        self, user_id: str, query_embedding: List[float], limit: int
    ) -> List[Tuple[EmbeddingDocument, float]]:
        if self.index is None or self.index.ntotal == 0:
            return []
        q = np.array([query_embedding], dtype=np.float32)
        q = self._normalize(q)
        # Flat index has no owner filter: score everything, then keep the partition
        scores, idxs = self.index.search(q, self.index.ntotal)
        hits: List[Tuple[EmbeddingDocument, float]] = []
        for score, idx in zip(scores[0].tolist(), idxs[0].tolist()):
            if idx < 0 or idx >= len(self.metadata):
                continue
            m = self.metadata[idx]
            if m["user_id"] != user_id:
                continue
            hits.append((EmbeddingDocument(**m), float(score)))
            if len(hits) >= limit:
                break
        return hits
