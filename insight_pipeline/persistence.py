"""Persistence collaborators for documents and their analysis artifacts."""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, Sequence

from .models import (
    Chunk,
    Document,
    DocumentStatus,
    Insight,
    Keyword,
    Provenance,
    Quote,
    Theme,
)
from .utils import load_manifest, save_manifest

log = logging.getLogger(__name__)

ARTIFACT_KINDS = ("chunks", "themes", "quotes", "insights", "keywords", "embeddings")


class DocumentStore(Protocol):
    def create_document(self, document: Document) -> None: ...

    def update_document_status(
        self, document_id: str, status: DocumentStatus, error: Optional[str] = None
    ) -> None: ...

    def bulk_insert_chunks(self, document_id: str, chunks: Sequence[Chunk]) -> int: ...

    def bulk_insert_themes(self, document_id: str, themes: Sequence[Theme]) -> int: ...

    def bulk_insert_quotes(self, document_id: str, quotes: Sequence[Quote]) -> int: ...

    def bulk_insert_insights(
        self, document_id: str, insights: Sequence[Insight]
    ) -> int: ...

    def bulk_insert_keywords(
        self, document_id: str, keywords: Sequence[Keyword]
    ) -> int: ...

    def bulk_insert_embeddings(
        self, document_id: str, embeddings: dict[str, list[float]]
    ) -> int: ...

    def mark_processing(self, document_id: str) -> None: ...

    def mark_completed(
        self,
        document_id: str,
        provenance: Optional[Provenance],
        summary: Optional[str] = None,
        artifacts: Optional[Mapping[str, Any]] = None,
    ) -> bool: ...

    def mark_failed(self, document_id: str, error: str) -> None: ...

    def get_document(self, document_id: str) -> Optional[Document]: ...


class InMemoryStore:
    """Lock-protected in-process store.

    Every bulk insert replaces the document's previous artifacts of that
    kind, so re-running a document never duplicates rows.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._documents: dict[str, Document] = {}
        self._artifacts: dict[str, dict[str, Any]] = {}
        self._summaries: dict[str, str] = {}

    def _require(self, document_id: str) -> Document:
        document = self._documents.get(document_id)
        if document is None:
            raise KeyError(f"unknown document {document_id!r}")
        return document

    def _persist(self, document_id: str) -> None:
        """Hook for write-through subclasses."""

    # -- documents ----------------------------------------------------------

    def create_document(self, document: Document) -> None:
        with self._lock:
            self._documents[document.document_id] = dataclasses.replace(document)
            self._artifacts[document.document_id] = {
                kind: {} if kind == "embeddings" else [] for kind in ARTIFACT_KINDS
            }
            self._summaries.pop(document.document_id, None)
            self._persist(document.document_id)

    def update_document_status(
        self, document_id: str, status: DocumentStatus, error: Optional[str] = None
    ) -> None:
        with self._lock:
            document = self._require(document_id)
            document.status = DocumentStatus(status)
            document.error = error
            self._persist(document_id)

    def mark_processing(self, document_id: str) -> None:
        self.update_document_status(document_id, DocumentStatus.PROCESSING)

    def mark_completed(
        self,
        document_id: str,
        provenance: Optional[Provenance],
        summary: Optional[str] = None,
        artifacts: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Move a processing document to completed, writing *artifacts* with it.

        *artifacts* maps an artifact kind (``themes``, ``embeddings``, ...) to
        its items. Nothing is written and False is returned unless the
        document is still processing, so a document failed in the meantime
        stays failed. ``None`` for *provenance* or *summary* keeps the
        stored value.
        """
        artifacts = dict(artifacts or {})
        unknown = set(artifacts) - set(ARTIFACT_KINDS)
        if unknown:
            raise KeyError(f"unknown artifact kinds {sorted(unknown)}")

        with self._lock:
            document = self._require(document_id)
            if document.status is not DocumentStatus.PROCESSING:
                log.warning(
                    "Not completing %s: it is %s", document_id, document.status.value
                )
                return False
            for kind, items in artifacts.items():
                self._artifacts[document_id][kind] = (
                    dict(items) if kind == "embeddings" else list(items)
                )
            document.status = DocumentStatus.COMPLETED
            if provenance is not None:
                document.provenance = Provenance(provenance)
            document.error = None
            if summary is not None:
                self._summaries[document_id] = summary
            self._persist(document_id)
            return True

    def mark_failed(self, document_id: str, error: str) -> None:
        self.update_document_status(document_id, DocumentStatus.FAILED, error)

    def get_document(self, document_id: str) -> Optional[Document]:
        with self._lock:
            document = self._documents.get(document_id)
            return dataclasses.replace(document) if document is not None else None

    def document_ids(self) -> list[str]:
        with self._lock:
            return list(self._documents)

    # -- artifacts ----------------------------------------------------------

    def _replace(self, document_id: str, kind: str, items: Any) -> int:
        with self._lock:
            self._require(document_id)
            self._artifacts[document_id][kind] = items
            self._persist(document_id)
            return len(items)

    def bulk_insert_chunks(self, document_id: str, chunks: Sequence[Chunk]) -> int:
        return self._replace(document_id, "chunks", list(chunks))

    def bulk_insert_themes(self, document_id: str, themes: Sequence[Theme]) -> int:
        return self._replace(document_id, "themes", list(themes))

    def bulk_insert_quotes(self, document_id: str, quotes: Sequence[Quote]) -> int:
        return self._replace(document_id, "quotes", list(quotes))

    def bulk_insert_insights(self, document_id: str, insights: Sequence[Insight]) -> int:
        return self._replace(document_id, "insights", list(insights))

    def bulk_insert_keywords(self, document_id: str, keywords: Sequence[Keyword]) -> int:
        return self._replace(document_id, "keywords", list(keywords))

    def bulk_insert_embeddings(
        self, document_id: str, embeddings: dict[str, list[float]]
    ) -> int:
        return self._replace(document_id, "embeddings", dict(embeddings))

    def artifacts(self, document_id: str) -> dict[str, Any]:
        """Copy of everything stored for *document_id*, plus its summary."""
        with self._lock:
            self._require(document_id)
            stored = self._artifacts[document_id]
            data = {kind: type(stored[kind])(stored[kind]) for kind in ARTIFACT_KINDS}
            data["summary"] = self._summaries.get(document_id, "")
            return data


class JsonDirectoryStore(InMemoryStore):
    """Write-through store: ``documents/<id>.json`` plus a merged manifest."""

    def __init__(self, output_dir: Path) -> None:
        super().__init__()
        self.output_dir = Path(output_dir)
        self.documents_dir = self.output_dir / "documents"
        self.documents_dir.mkdir(parents=True, exist_ok=True)

    def document_path(self, document_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in document_id)
        return self.documents_dir / f"{safe}.json"

    def _persist(self, document_id: str) -> None:
        document = self._documents[document_id]
        stored = self._artifacts[document_id]
        summary = self._summaries.get(document_id, "")
        record = {
            "document": {
                "document_id": document.document_id,
                "title": document.title,
                "source_path": document.source_path,
                "file_size": document.file_size,
                "status": document.status,
                "provenance": document.provenance,
                "error": document.error,
                "page_breaks": document.page_breaks,
            },
            "summary": summary,
            "chunks": [dataclasses.asdict(chunk) for chunk in stored["chunks"]],
            "themes": [dataclasses.asdict(theme) for theme in stored["themes"]],
            "quotes": [dataclasses.asdict(quote) for quote in stored["quotes"]],
            "insights": [dataclasses.asdict(item) for item in stored["insights"]],
            "keywords": [dataclasses.asdict(item) for item in stored["keywords"]],
            "embeddings": stored["embeddings"],
        }
        path = self.document_path(document_id)
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(record, fh, indent=2, ensure_ascii=False, default=str)

        entries = load_manifest(self.output_dir)
        entries[document_id] = {
            "document_id": document_id,
            "title": document.title,
            "source_path": document.source_path,
            "status": document.status,
            "provenance": document.provenance,
            "error": (document.error or "")[:500] or None,
            "num_chunks": len(stored["chunks"]),
            "num_themes": len(stored["themes"]),
            "num_quotes": len(stored["quotes"]),
            "num_insights": len(stored["insights"]),
            "summary": summary[:500],
            "result_file": path.name,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        save_manifest(self.output_dir, entries)
        log.debug("Persisted %s (%s)", document_id, document.status.value)
