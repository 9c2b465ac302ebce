"""Document pipeline and the job-submission facade around it."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from .aggregation import aggregate
from .analysis import run_analysis
from .cache import ArtifactCache
from .capability import (
    ChatCompletionCapability,
    EmbeddingCapability,
    FastEmbedEmbedder,
    LanguageCapability,
    RateLimiter,
)
from .chunking import DocumentChunker
from .config import ChunkingConfig, Settings
from .conversion import create_converter, document_id_for, extract_document
from .errors import CapabilityError, PipelineError, SchedulingError
from .fallback import extractive_summary
from .models import (
    AggregatedResult,
    Chunk,
    Document,
    DocumentStatus,
    Job,
    JobStatus,
    JobType,
)
from .persistence import DocumentStore
from .scheduler import JobScheduler, JobSnapshot, recommend_strategy
from .utils import ANALYSIS_BATCH_SIZE, content_hash

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Per-document pipeline
# ---------------------------------------------------------------------------


class DocumentPipeline:
    """Chunk, analyze, aggregate and persist one document."""

    def __init__(
        self,
        store: DocumentStore,
        chunking_config: Optional[ChunkingConfig] = None,
        capability: Optional[LanguageCapability] = None,
        embedder: Optional[EmbeddingCapability] = None,
        vector_index: Any = None,
        cache: Optional[ArtifactCache] = None,
        batch_size: int = ANALYSIS_BATCH_SIZE,
        summary_policy: str = "concatenate",
    ) -> None:
        self.store = store
        self.chunker = DocumentChunker(chunking_config)
        self.capability = capability
        self.embedder = embedder
        self.vector_index = vector_index
        self.cache = cache
        self.batch_size = batch_size
        self.summary_policy = summary_policy

    def _chunks(self, document: Document) -> list[Chunk]:
        key = "chunks:" + content_hash(
            document.document_id, document.text, repr(self.chunker.config)
        )
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                log.debug("Chunk cache hit for %s", document.document_id)
                return cached
        chunks = self.chunker.chunk(document.text, document.page_breaks)
        if self.cache is not None:
            self.cache.set(key, chunks, size=2 * sum(len(c.text) for c in chunks))
        return chunks

    def chunk_only(self, document: Document) -> list[Chunk]:
        """Chunk *document* and store the chunks without analyzing them."""
        self.store.mark_processing(document.document_id)
        try:
            chunks = self._chunks(document)
        except PipelineError as exc:
            self.store.mark_failed(document.document_id, str(exc))
            raise
        if not self.store.mark_completed(
            document.document_id, None, artifacts={"chunks": chunks}
        ):
            log.warning(
                "%s was failed while chunking; discarding late chunks",
                document.document_id,
            )
        return chunks

    def process(self, document: Document) -> AggregatedResult:
        """Run the full pipeline for *document*.

        A document completes (possibly with fallback provenance) unless the
        chunker, the aggregator or the fallback analyzer itself fails.
        """
        document_id = document.document_id
        self.store.mark_processing(document_id)
        try:
            chunks = self._chunks(document)
            self.store.bulk_insert_chunks(document_id, chunks)
            log.info("%s: %s chunks", document_id, len(chunks))

            run = run_analysis(
                chunks,
                self.capability,
                title=document.title,
                batch_size=self.batch_size,
                cache=self.cache,
            )
            aggregated = aggregate(
                run.results,
                summary_policy=self.summary_policy,
                summarizer=(
                    self.capability.summarize if self.capability is not None else None
                ),
                full_text=document.text,
                title=document.title,
                chunks_failed=run.chunks_failed,
                empty_provenance=run.provenance,
            )
        except PipelineError as exc:
            self.store.mark_failed(document_id, str(exc))
            raise

        current = self.store.get_document(document_id)
        if current is not None and current.status is DocumentStatus.FAILED:
            # Failed from outside (job timeout) while this run was in flight.
            log.warning(
                "%s was failed while processing; discarding late result", document_id
            )
            return aggregated

        if not aggregated.summary:
            aggregated.summary = extractive_summary(document.text)

        artifacts: dict[str, Any] = {
            "themes": aggregated.themes,
            "quotes": aggregated.quotes,
            "insights": aggregated.insights,
            "keywords": aggregated.keywords,
        }
        embedded = self._embed(document, chunks)
        if embedded:
            artifacts["embeddings"] = {
                chunk.chunk_id(document_id): vector for chunk, vector in embedded
            }
        # Artifacts and status land together, and only if nobody failed the
        # document while it was being embedded.
        if not self.store.mark_completed(
            document_id, aggregated.provenance, aggregated.summary, artifacts
        ):
            log.warning(
                "%s was failed while processing; discarding late result", document_id
            )
            return aggregated
        self._index(document, embedded)

        log.info(
            "%s completed (%s): %s themes, %s quotes, %s insights, %s/%s chunks failed",
            document_id,
            aggregated.provenance.value,
            len(aggregated.themes),
            len(aggregated.quotes),
            len(aggregated.insights),
            aggregated.chunks_failed,
            len(chunks),
        )
        return aggregated

    def _embed(
        self, document: Document, chunks: list[Chunk]
    ) -> list[tuple[Chunk, list[float]]]:
        """Embed each chunk; failures are logged and never fail the document."""
        if self.embedder is None or not chunks:
            return []

        embedded: list[tuple[Chunk, list[float]]] = []
        for chunk in chunks:
            try:
                embedded.append((chunk, self.embedder.embed(chunk.text)))
            except CapabilityError as exc:
                log.warning(
                    "Embedding chunk %s of %s failed: %s",
                    chunk.index,
                    document.document_id,
                    exc,
                )
        return embedded

    def _index(
        self, document: Document, embedded: list[tuple[Chunk, list[float]]]
    ) -> None:
        if self.vector_index is None or not embedded:
            return
        try:
            self.vector_index.upsert(
                document,
                [chunk for chunk, _ in embedded],
                [vector for _, vector in embedded],
            )
        except Exception as exc:
            log.warning(
                "Vector index update failed for %s: %s", document.document_id, exc
            )


# ---------------------------------------------------------------------------
# Job executors
# ---------------------------------------------------------------------------


class AnalysisExecutor:
    def __init__(self, pipeline: DocumentPipeline) -> None:
        self.pipeline = pipeline

    def execute(self, job: Job) -> AggregatedResult:
        return self.pipeline.process(job.payload)


class ChunkingExecutor:
    def __init__(self, pipeline: DocumentPipeline) -> None:
        self.pipeline = pipeline

    def execute(self, job: Job) -> int:
        return len(self.pipeline.chunk_only(job.payload))


class ExtractionExecutor:
    """Extract a file into a document, then hand it to *on_extracted*."""

    def __init__(
        self,
        on_extracted: Callable[[Document, Mapping[str, Any]], str],
        converter_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.on_extracted = on_extracted
        self.converter_factory = converter_factory
        self._converter: Any = None

    def _converter_for(self, path: Path) -> Any:
        if path.suffix.lower() != ".pdf":
            return None
        if self._converter is None:
            factory = self.converter_factory or (lambda: create_converter()[0])
            self._converter = factory()
        return self._converter

    def execute(self, job: Job) -> dict[str, Any]:
        path = Path(job.payload["path"])
        document = extract_document(
            path, self._converter_for(path), document_id=job.document_id
        )
        analysis_job_id = self.on_extracted(document, job.payload.get("options") or {})
        return {"document_id": document.document_id, "analysis_job_id": analysis_job_id}


# ---------------------------------------------------------------------------
# Service facade
# ---------------------------------------------------------------------------


class InsightService:
    """Submission, status and metrics surface for the surrounding application."""

    def __init__(
        self,
        store: DocumentStore,
        pipeline: DocumentPipeline,
        scheduler: JobScheduler,
        converter_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.store = store
        self.pipeline = pipeline
        self.scheduler = scheduler
        scheduler.register_executor(JobType.ANALYSIS, AnalysisExecutor(pipeline))
        scheduler.register_executor(JobType.CHUNKING, ChunkingExecutor(pipeline))
        scheduler.register_executor(
            JobType.EXTRACTION,
            ExtractionExecutor(self._submit_extracted, converter_factory=converter_factory),
        )
        scheduler.add_listener(self._on_job_finished)

    def submit(self, document: Document, options: Optional[Mapping[str, Any]] = None) -> str:
        """Store *document* and queue it for processing.

        Options: ``priority`` (defaults from the file size), ``job_type``
        (``analysis`` or ``chunking``) and ``file_size``.

        Raises:
            QueueFullError: the scheduler queue is at capacity.
        """
        return self._queue_document(document, options, enforce_capacity=True)

    def _submit_extracted(self, document: Document, options: Mapping[str, Any]) -> str:
        # The extraction job already passed admission; its analysis must not
        # be refused for capacity.
        return self._queue_document(document, options, enforce_capacity=False)

    def _queue_document(
        self,
        document: Document,
        options: Optional[Mapping[str, Any]],
        *,
        enforce_capacity: bool,
    ) -> str:
        options = dict(options or {})
        job_type = JobType(options.get("job_type") or JobType.ANALYSIS)
        if job_type is JobType.EXTRACTION:
            raise SchedulingError("extraction jobs take a file; use submit_file()")
        file_size = int(options.get("file_size") or document.file_size)
        priority = options.get("priority") or recommend_strategy(file_size).priority

        self.store.create_document(document)
        return self.scheduler.submit(
            document.document_id,
            job_type,
            priority,
            file_size=file_size,
            payload=document,
            enforce_capacity=enforce_capacity,
        )

    def submit_file(self, path: Path, options: Optional[Mapping[str, Any]] = None) -> str:
        """Queue an extraction job; a successful extraction queues the analysis."""
        path = Path(path)
        options = dict(options or {})
        file_size = path.stat().st_size
        strategy = recommend_strategy(file_size)
        priority = options.get("priority") or strategy.priority
        for warning in strategy.warnings:
            log.warning("%s: %s", path.name, warning)

        document_id = options.pop("document_id", None) or document_id_for(path)
        return self.scheduler.submit(
            document_id,
            JobType.EXTRACTION,
            priority,
            file_size=file_size,
            payload={"path": str(path), "options": options},
        )

    def _on_job_finished(self, snapshot: JobSnapshot) -> None:
        if snapshot.status is not JobStatus.FAILED:
            return
        document = self.store.get_document(snapshot.document_id)
        if document is None:
            # Extraction failed before the document existed.
            self.store.create_document(
                Document(document_id=snapshot.document_id, text="")
            )
        elif document.status is DocumentStatus.FAILED:
            return
        self.store.mark_failed(snapshot.document_id, snapshot.error or "job failed")

    def status(self, job_id: str) -> Optional[dict[str, Any]]:
        snapshot = self.scheduler.status(job_id)
        if snapshot is None:
            return None
        info: dict[str, Any] = {
            "state": snapshot.status.value,
            "document_id": snapshot.document_id,
            "job_type": snapshot.job_type.value,
        }
        if snapshot.error:
            info["error"] = snapshot.error
        if snapshot.job_type is JobType.EXTRACTION and isinstance(snapshot.result, dict):
            info["analysis_job_id"] = snapshot.result.get("analysis_job_id")
        document = self.store.get_document(snapshot.document_id)
        if document is not None and document.provenance is not None:
            info["provenance"] = document.provenance.value
        return info

    def metrics(self) -> dict[str, Any]:
        m = self.scheduler.metrics()
        return {
            "queued": m.queued,
            "active": m.active,
            "completed": m.completed,
            "failed": m.failed,
            "avg_processing_time": m.avg_processing_time_ms,
            "cache_size": m.cache_size,
        }

    def join(self, timeout: Optional[float] = None) -> bool:
        return self.scheduler.join(timeout)

    def shutdown(self, wait: bool = True) -> None:
        self.scheduler.shutdown(wait=wait)


def build_service(
    settings: Settings,
    store: DocumentStore,
    *,
    use_capability: bool = True,
    embed: bool = False,
    vector_index: Any = None,
    converter_factory: Optional[Callable[[], Any]] = None,
) -> InsightService:
    """Wire cache, capability, pipeline and scheduler from *settings*."""
    cache = ArtifactCache(
        max_size_bytes=settings.cache.max_size_bytes,
        max_age_seconds=settings.cache.max_age_seconds,
    )

    capability: Optional[LanguageCapability] = None
    cap = settings.capability
    if use_capability and cap.enabled:
        capability = ChatCompletionCapability(
            base_url=cap.base_url,
            model=cap.model,
            api_key=cap.api_key or None,
            timeout_seconds=cap.timeout_seconds,
            rate_limiter=RateLimiter(cap.requests_per_minute),
        )
        log.info("Language capability: %s at %s", cap.model, cap.base_url)
    else:
        log.info("Language capability disabled; fallback analysis only")

    embedder = FastEmbedEmbedder(settings.embedding_model) if embed else None
    pipeline = DocumentPipeline(
        store,
        chunking_config=settings.chunking,
        capability=capability,
        embedder=embedder,
        vector_index=vector_index,
        cache=cache,
        batch_size=cap.batch_size,
        summary_policy=settings.summary_policy,
    )
    scheduler = JobScheduler(settings.scheduler, cache=cache)
    return InsightService(store, pipeline, scheduler, converter_factory=converter_factory)
