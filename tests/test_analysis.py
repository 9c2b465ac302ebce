"""Tests for batched chunk analysis and the fallback switch."""

from __future__ import annotations

import threading

import pytest

from conftest import FakeCapability
from insight_pipeline.aggregation import aggregate
from insight_pipeline.analysis import AnalysisInvoker, run_analysis
from insight_pipeline.cache import ArtifactCache
from insight_pipeline.errors import FallbackError
from insight_pipeline.fallback import analyze_chunk_fallback
from insight_pipeline.models import Chunk, Provenance


def _chunks(count: int) -> list[Chunk]:
    chunks = []
    start = 0
    for index in range(count):
        text = f"Chunk {index} says youth services need more support in the region."
        chunks.append(
            Chunk(
                index=index,
                start=start,
                end=start + len(text),
                text=text,
                word_count=len(text.split()),
            )
        )
        start += len(text)
    return chunks


class TestRunAnalysis:
    def test_partial_failure_keeps_successful_chunks(self):
        capability = FakeCapability(fail_on={2})
        run = run_analysis(_chunks(5), capability, title="Report")

        assert run.provenance is Provenance.AI
        assert [r.chunk_index for r in run.results] == [0, 1, 3, 4]
        assert run.chunks_failed == 1
        assert len(run.errors) == 1

        merged = aggregate(run.results, chunks_failed=run.chunks_failed)
        theme_names = {t.name for t in merged.themes}
        assert "Theme 2" not in theme_names
        assert {"Theme 0", "Theme 1", "Theme 3", "Theme 4"} <= theme_names
        assert "Quote from chunk 2" not in {q.text for q in merged.quotes}
        assert "Insight 2" not in {i.text for i in merged.insights}

    def test_total_failure_switches_to_fallback(self):
        capability = FakeCapability(fail_all=True)
        calls = []

        def fallback(chunk, title):
            calls.append(chunk.index)
            return analyze_chunk_fallback(chunk, title)

        run = run_analysis(_chunks(5), capability, fallback=fallback)

        assert run.provenance is Provenance.FALLBACK
        assert calls == [0, 1, 2, 3, 4]
        assert len(run.results) == 5
        assert run.chunks_failed == 5
        assert all(r.provenance is Provenance.FALLBACK for r in run.results)
        assert aggregate(run.results).provenance is Provenance.FALLBACK

    def test_no_chunks_is_not_a_degraded_run(self, caplog):
        capability = FakeCapability()
        with caplog.at_level("WARNING"):
            run = run_analysis([], capability)

        assert run.provenance is Provenance.AI
        assert run.results == [] and run.chunks_failed == 0
        assert capability.calls == []
        assert "failed" not in caplog.text
        merged = aggregate(run.results, empty_provenance=run.provenance)
        assert merged.provenance is Provenance.AI

    def test_no_capability_uses_fallback(self):
        run = run_analysis(_chunks(2), None)
        assert run.provenance is Provenance.FALLBACK
        assert run.chunks_failed == 0
        assert [r.chunk_index for r in run.results] == [0, 1]

    def test_fallback_failure_raises(self):
        def broken(chunk, title):
            raise RuntimeError("regex engine exploded")

        with pytest.raises(FallbackError):
            run_analysis(_chunks(2), None, fallback=broken)

    def test_malformed_payload_counts_as_failure(self):
        class HalfBroken(FakeCapability):
            def analyze_chunk(self, text, context):
                payload = super().analyze_chunk(text, context)
                if context["chunk_index"] == 1:
                    payload["themes"] = [{"name": "Bad", "confidence": float("nan")}]
                return payload

        run = run_analysis(_chunks(3), HalfBroken())
        assert [r.chunk_index for r in run.results] == [0, 2]
        assert run.chunks_failed == 1


class TestAnalysisInvoker:
    def test_outcomes_in_chunk_order(self):
        capability = FakeCapability(fail_on={4})
        outcomes = AnalysisInvoker(capability, batch_size=3).analyze_chunks(_chunks(7))
        assert [o.chunk_index for o in outcomes] == list(range(7))
        assert [o.ok for o in outcomes] == [True] * 4 + [False] + [True] * 2
        assert "chunk 4 unavailable" in outcomes[4].error

    def test_batches_run_one_after_another(self):
        lock = threading.Lock()
        state = {"running": 0, "peak": 0}

        class Counting(FakeCapability):
            def analyze_chunk(self, text, context):
                with lock:
                    state["running"] += 1
                    state["peak"] = max(state["peak"], state["running"])
                try:
                    return super().analyze_chunk(text, context)
                finally:
                    with lock:
                        state["running"] -= 1

        AnalysisInvoker(Counting(), batch_size=2).analyze_chunks(_chunks(6))
        assert state["peak"] <= 2

    def test_context_carries_position(self):
        capability = FakeCapability()
        AnalysisInvoker(capability).analyze_chunks(_chunks(2), {"title": "Report"})
        contexts = sorted(capability.contexts, key=lambda c: c["chunk_index"])
        assert contexts[0] == {"title": "Report", "total_chunks": 2, "chunk_index": 0}

    def test_cache_hit_skips_capability(self):
        cache = ArtifactCache()
        capability = FakeCapability()
        invoker = AnalysisInvoker(capability, cache=cache)
        chunks = _chunks(2)

        first = invoker.analyze_chunks(chunks)
        second = invoker.analyze_chunks(chunks)

        assert len(capability.calls) == 2
        assert not any(o.cached for o in first)
        assert all(o.cached for o in second)
        assert [o.result for o in first] == [o.result for o in second]

    def test_failures_are_not_cached(self):
        cache = ArtifactCache()
        invoker = AnalysisInvoker(FakeCapability(fail_all=True), cache=cache)
        invoker.analyze_chunks(_chunks(2))
        assert len(cache) == 0

    def test_rejects_zero_batch(self):
        with pytest.raises(ValueError):
            AnalysisInvoker(FakeCapability(), batch_size=0)
