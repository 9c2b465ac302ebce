from __future__ import annotations

import pytest

from insight_pipeline.config import get_settings
from insight_pipeline.errors import AggregationError, CapabilityError, JobTimeoutError
from insight_pipeline.models import AnalysisResult, Chunk, Document, Provenance
from insight_pipeline.utils import MB


class TestAnalysisResultFromPayload:
    def test_parses_contract(self):
        payload = {
            "summary": "  A short summary.  ",
            "themes": [{"name": "Housing", "confidence": 0.7, "evidence": "waitlists"}],
            "quotes": [
                {
                    "text": "We need homes",
                    "speaker": "Parent",
                    "confidence": 0.9,
                    "sensitivity": "sacred",
                }
            ],
            "insights": [{"text": "Housing gap", "category": "service_gap", "importance": 8}],
            "keywords": [{"term": "housing", "frequency": 3}],
        }
        result = AnalysisResult.from_payload(2, payload)

        assert result.chunk_index == 2
        assert result.summary == "A short summary."
        assert result.themes[0].evidence == ["waitlists"]
        assert result.quotes[0].sensitivity == "sacred"
        assert result.insights[0].confidence == 0.8
        assert result.keywords[0].frequency == 3
        assert result.provenance is Provenance.AI

    def test_defaults_and_clamping(self):
        result = AnalysisResult.from_payload(
            0,
            {
                "themes": [{"name": "Over", "confidence": 4}],
                "quotes": [{"text": "Hello there", "sensitivity": "secret"}],
                "insights": [{"text": "No score"}],
            },
        )
        assert result.themes[0].confidence == 1.0
        assert result.quotes[0].confidence == 0.5
        assert result.quotes[0].sensitivity == "public"
        assert result.insights[0].importance == 5.0
        assert result.summary is None

    @pytest.mark.parametrize(
        "payload",
        [
            [],
            {"themes": "not a list"},
            {"themes": ["string entry"]},
            {"themes": [{"confidence": 0.5}]},
            {"quotes": [{"text": "x", "confidence": "high"}]},
            {"insights": [{"text": "x", "importance": float("inf")}]},
        ],
    )
    def test_malformed_shapes_raise(self, payload):
        with pytest.raises(AggregationError):
            AnalysisResult.from_payload(0, payload)


def test_document_size_defaults_to_encoded_text():
    assert Document(document_id="d", text="héllo").file_size == 6
    assert Document(document_id="d", text="x", file_size=99).file_size == 99


def test_chunk_id_format():
    chunk = Chunk(index=7, start=0, end=1, text="x", word_count=1)
    assert chunk.chunk_id("doc_abc") == "doc_abc::chunk_0007"


def test_error_taxonomy():
    assert str(CapabilityError("HTTP 429", transient=True)) == "HTTP 429 (transient)"
    assert str(CapabilityError("bad JSON")) == "bad JSON (terminal)"
    assert issubclass(JobTimeoutError, TimeoutError)


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("INSIGHT_CHUNK_SIZE", "1200")
    monkeypatch.setenv("INSIGHT_MEMORY_THRESHOLD_MB", "256")
    monkeypatch.setenv("INSIGHT_PRESERVE_SENTENCES", "false")
    monkeypatch.setenv("INSIGHT_SUMMARY_POLICY", "regenerate")
    get_settings.cache_clear()

    settings = get_settings()

    assert settings.chunking.max_chunk_size == 1200
    assert settings.chunking.preserve_sentences is False
    assert settings.scheduler.memory_threshold_bytes == 256 * MB
    assert settings.summary_policy == "regenerate"
    assert settings.capability.enabled is False


def test_settings_defaults():
    settings = get_settings()
    assert settings.chunking.max_chunk_size == 2000
    assert settings.chunking.overlap_size == 200
    assert settings.scheduler.max_concurrent_jobs == 3
    assert settings.cache.max_size_bytes == 100 * MB
