"""Optional Qdrant vector index for chunk embeddings."""

from __future__ import annotations

import hashlib
import logging
import uuid
from pathlib import Path
from typing import Any, Sequence

from .models import Chunk, Document
from .utils import COLLECTION_NAME, EMBEDDING_DIM

log = logging.getLogger(__name__)


def point_id(document_id: str, chunk_index: int) -> str:
    """Deterministic UUID point id for one chunk of one document."""
    source = f"{document_id}::{chunk_index}"
    digest = hashlib.sha1(source.encode("utf-8")).hexdigest()
    return str(uuid.UUID(hex=digest[:32]))


class QdrantChunkIndex:
    """Local Qdrant collection (cosine distance) keyed by document and chunk."""

    def __init__(
        self,
        path: Path,
        collection_name: str = COLLECTION_NAME,
        embedding_dim: int = EMBEDDING_DIM,
        batch_size: int = 128,
        recreate: bool = False,
    ) -> None:
        from qdrant_client import QdrantClient
        from qdrant_client.models import Distance, VectorParams

        self.collection_name = collection_name
        self.embedding_dim = embedding_dim
        self.batch_size = max(1, batch_size)
        self._client = QdrantClient(path=str(path))

        exists = self._client.collection_exists(collection_name)
        if recreate and exists:
            self._client.delete_collection(collection_name)
            exists = False
        if not exists:
            self._client.create_collection(
                collection_name=collection_name,
                vectors_config=VectorParams(size=embedding_dim, distance=Distance.COSINE),
            )
            log.info("Created Qdrant collection %s (dim=%s)", collection_name, embedding_dim)

    def delete_document(self, document_id: str) -> None:
        from qdrant_client.models import FieldCondition, Filter, MatchValue

        self._client.delete(
            collection_name=self.collection_name,
            points_selector=Filter(
                must=[
                    FieldCondition(
                        key="document_id",
                        match=MatchValue(value=document_id),
                    )
                ]
            ),
            wait=True,
        )

    def upsert(
        self,
        document: Document,
        chunks: Sequence[Chunk],
        vectors: Sequence[Sequence[float]],
    ) -> int:
        """Replace *document*'s points with one point per chunk. Returns the count."""
        from qdrant_client.models import PointStruct

        if len(chunks) != len(vectors):
            raise ValueError(
                f"expected {len(chunks)} vectors, got {len(vectors)}"
            )

        # Drop the previous points so a changed chunk count leaves nothing stale.
        self.delete_document(document.document_id)

        points: list[Any] = [
            PointStruct(
                id=point_id(document.document_id, chunk.index),
                vector=[float(value) for value in vector],
                payload={
                    "text": chunk.text,
                    "document_id": document.document_id,
                    "chunk_id": chunk.chunk_id(document.document_id),
                    "doc_title": document.title,
                    "source_path": document.source_path,
                    "chunk_index": chunk.index,
                    "start_page": chunk.start_page,
                    "end_page": chunk.end_page,
                    "word_count": chunk.word_count,
                    "content_type": chunk.metadata.get("content_type", ""),
                },
            )
            for chunk, vector in zip(chunks, vectors)
        ]
        for i in range(0, len(points), self.batch_size):
            self._client.upsert(
                collection_name=self.collection_name,
                points=points[i : i + self.batch_size],
            )
        log.debug("Upserted %s points for %s", len(points), document.document_id)
        return len(points)

    def count(self) -> int:
        return self._client.count(collection_name=self.collection_name).count

    def close(self) -> None:
        self._client.close()
