"""Per-chunk analysis: batched capability calls with a rule-based fallback."""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Sequence

from .cache import ArtifactCache
from .capability import LanguageCapability
from .errors import AggregationError, CapabilityError, FallbackError
from .fallback import analyze_chunk_fallback
from .models import AnalysisResult, Chunk, Provenance
from .utils import ANALYSIS_BATCH_SIZE, content_hash

log = logging.getLogger(__name__)


@dataclass
class ChunkOutcome:
    """Result of one capability call: either a result or the captured error."""

    chunk_index: int
    result: Optional[AnalysisResult] = None
    error: Optional[str] = None
    cached: bool = False

    @property
    def ok(self) -> bool:
        return self.result is not None


@dataclass
class AnalysisRun:
    results: list[AnalysisResult] = field(default_factory=list)
    provenance: Provenance = Provenance.AI
    chunks_failed: int = 0
    errors: list[str] = field(default_factory=list)


def _cache_key(text: str, context: Mapping[str, Any]) -> str:
    return "analysis:" + content_hash(
        text, json.dumps(dict(context), sort_keys=True, default=str)
    )


class AnalysisInvoker:
    """Runs capability calls in fixed-size batches.

    Batches run one after another; the calls inside a batch run concurrently.
    A failing call never fails its batch: the error is captured in the
    chunk's ``ChunkOutcome``.
    """

    def __init__(
        self,
        capability: LanguageCapability,
        batch_size: int = ANALYSIS_BATCH_SIZE,
        cache: Optional[ArtifactCache] = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self.capability = capability
        self.batch_size = batch_size
        self.cache = cache

    def invoke(self, chunk: Chunk, context: Mapping[str, Any]) -> ChunkOutcome:
        call_context = {**context, "chunk_index": chunk.index}
        key = _cache_key(chunk.text, call_context)
        payload = self.cache.get(key) if self.cache is not None else None
        cached = payload is not None

        try:
            if payload is None:
                payload = self.capability.analyze_chunk(chunk.text, call_context)
            result = AnalysisResult.from_payload(chunk.index, payload, Provenance.AI)
        except (CapabilityError, AggregationError) as exc:
            log.warning("Analysis of chunk %s failed: %s", chunk.index, exc)
            if cached:
                self.cache.delete(key)
            return ChunkOutcome(chunk_index=chunk.index, error=str(exc))

        if self.cache is not None and not cached:
            self.cache.set(key, payload)
        return ChunkOutcome(chunk_index=chunk.index, result=result, cached=cached)

    def analyze_chunks(
        self, chunks: Sequence[Chunk], context: Optional[Mapping[str, Any]] = None
    ) -> list[ChunkOutcome]:
        """Analyze *chunks* batch by batch; outcomes come back in chunk order."""
        base = {**(context or {}), "total_chunks": len(chunks)}
        outcomes: list[ChunkOutcome] = []
        for offset in range(0, len(chunks), self.batch_size):
            batch = list(chunks[offset : offset + self.batch_size])
            with ThreadPoolExecutor(
                max_workers=len(batch), thread_name_prefix="analysis"
            ) as pool:
                outcomes.extend(pool.map(lambda chunk: self.invoke(chunk, base), batch))
            log.debug(
                "Analysis batch %s-%s of %s done",
                offset,
                offset + len(batch) - 1,
                len(chunks),
            )
        return outcomes


def _run_fallback(
    chunks: Sequence[Chunk],
    title: str,
    fallback: Callable[[Chunk, str], AnalysisResult],
) -> list[AnalysisResult]:
    try:
        return [fallback(chunk, title) for chunk in chunks]
    except Exception as exc:
        raise FallbackError(f"fallback analysis failed: {exc}") from exc


def run_analysis(
    chunks: Sequence[Chunk],
    capability: Optional[LanguageCapability] = None,
    *,
    title: str = "",
    batch_size: int = ANALYSIS_BATCH_SIZE,
    cache: Optional[ArtifactCache] = None,
    fallback: Callable[[Chunk, str], AnalysisResult] = analyze_chunk_fallback,
) -> AnalysisRun:
    """Analyze every chunk, degrading to the fallback analyzer when needed.

    With no capability, or when every capability call fails, the fallback
    analyzer runs on all chunks and the run is tagged ``fallback``. Partial
    failure keeps only the successful chunk results. An empty *chunks*
    gives an empty ``ai`` run when a capability is configured.

    Raises:
        FallbackError: the fallback analyzer itself failed.
    """
    if capability is None:
        log.info("No language capability configured; using fallback analysis")
        results = _run_fallback(chunks, title, fallback)
        return AnalysisRun(results=results, provenance=Provenance.FALLBACK)

    if not chunks:
        log.info("No chunks to analyze")
        return AnalysisRun(provenance=Provenance.AI)

    invoker = AnalysisInvoker(capability, batch_size=batch_size, cache=cache)
    outcomes = invoker.analyze_chunks(chunks, {"title": title})
    succeeded = [outcome.result for outcome in outcomes if outcome.ok]
    errors = [outcome.error for outcome in outcomes if outcome.error]

    if not succeeded:
        log.warning(
            "All %s chunk analyses failed; switching to fallback analysis",
            len(outcomes),
        )
        results = _run_fallback(chunks, title, fallback)
        return AnalysisRun(
            results=results,
            provenance=Provenance.FALLBACK,
            chunks_failed=len(errors),
            errors=errors,
        )

    if errors:
        log.warning(
            "%s of %s chunk analyses failed; keeping %s results",
            len(errors),
            len(outcomes),
            len(succeeded),
        )
    return AnalysisRun(
        results=succeeded,
        provenance=Provenance.AI,
        chunks_failed=len(errors),
        errors=errors,
    )
