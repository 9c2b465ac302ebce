"""Tests for the rule-based fallback analyzer."""

from __future__ import annotations

from insight_pipeline.fallback import (
    analyze_chunk_fallback,
    analyze_text_fallback,
    classify_sensitivity,
    extract_insights,
    extract_keywords,
    extract_quotes,
    extract_themes,
    extractive_summary,
)
from insight_pipeline.models import Chunk, Provenance


class TestExtractThemes:
    def test_finds_families_in_report(self, sample_report):
        names = [theme.name for theme in extract_themes(sample_report)]
        assert "Youth Development" in names
        assert "Community Support" in names

    def test_confidence_is_capped(self, sample_report):
        for theme in extract_themes(sample_report):
            assert 0.0 < theme.confidence <= 0.9
            assert theme.provenance is Provenance.FALLBACK

    def test_single_mention_is_not_a_theme(self):
        assert extract_themes("The health of the river was discussed once.") == []

    def test_title_hits_count_double(self):
        text = "The school opened a new wing."
        assert extract_themes(text) == []
        themes = extract_themes(text, title="School report")
        assert [t.name for t in themes] == ["Education Services"]

    def test_evidence_is_a_matching_sentence(self):
        text = "Youth need mentors. The youth hub is busy. Young people visit daily."
        themes = extract_themes(text)
        youth = next(t for t in themes if t.name == "Youth Development")
        assert youth.evidence == ["Youth need mentors."]

    def test_at_most_five_themes(self, sample_report):
        assert len(extract_themes(sample_report * 3)) <= 5


class TestExtractQuotes:
    def test_double_quoted_speech(self, sample_report):
        quotes = extract_quotes(sample_report)
        texts = [q.text for q in quotes]
        assert any(t.startswith("We need a safe place") for t in texts)

    def test_community_voice_sentences_have_speaker(self, sample_report):
        quotes = extract_quotes(sample_report)
        speakers = {q.speaker for q in quotes if q.speaker}
        assert "Elders" in speakers

    def test_confidence_rewards_speech_and_first_person(self):
        text = 'At the meeting she explained: "We want our children to learn in their own language."'
        quote = extract_quotes(text)[0]
        assert quote.confidence == 0.8
        assert quote.speaker is None

    def test_short_and_metadata_spans_skipped(self):
        text = '"too short" and "see https://example.org/report for the full details"'
        assert extract_quotes(text) == []

    def test_duplicates_removed(self):
        line = '"This centre has given our young people somewhere to belong." '
        assert len(extract_quotes(line * 3)) == 1

    def test_sensitivity_tiers(self):
        assert classify_sensitivity("The ceremony was held at dawn") == "sacred"
        assert classify_sensitivity("Shared under cultural protocol only") == "restricted"
        assert classify_sensitivity("The bus runs twice a day") == "public"


class TestExtractInsights:
    def test_categories_from_patterns(self, sample_report):
        categories = {i.category for i in extract_insights(sample_report)}
        assert "service_gap" in categories
        assert "barrier" in categories

    def test_community_needs(self):
        insights = extract_insights("Residents asked for childcare services in town.")
        assert [i.text for i in insights] == [
            "Community need identified: childcare services"
        ]
        assert insights[0].importance == 7.0

    def test_importance_tracks_confidence(self, sample_report):
        for insight in extract_insights(sample_report):
            assert insight.importance == round(insight.confidence * 10, 1)

    def test_capped_at_eight(self, sample_report):
        assert len(extract_insights(sample_report * 4)) <= 8


class TestKeywordsAndSummary:
    def test_keywords_ranked_by_frequency(self):
        text = "youth youth youth program program centre"
        keywords = extract_keywords(text)
        assert keywords[0].term == "youth"
        assert keywords[0].frequency == 3
        freqs = [k.frequency for k in keywords]
        assert freqs == sorted(freqs, reverse=True)

    def test_keywords_respect_top_n(self, sample_report):
        assert len(extract_keywords(sample_report, top_n=5)) == 5

    def test_keywords_empty_for_stop_words(self):
        assert extract_keywords("the and of it") == []
        assert extract_keywords("   ") == []

    def test_extractive_summary_takes_long_sentences(self):
        text = (
            "Short one. This sentence is clearly long enough to be kept in the summary. "
            "And this second sentence is also long enough to be kept as well. "
            "A third long sentence that should not appear in a two sentence summary."
        )
        summary = extractive_summary(text, num_sentences=2)
        assert summary.startswith("This sentence")
        assert "third" not in summary

    def test_extractive_summary_empty(self):
        assert extractive_summary("") == ""


class TestAnalyzeFallback:
    def test_result_is_tagged_fallback(self, sample_report):
        result = analyze_text_fallback(sample_report, chunk_index=3)
        assert result.chunk_index == 3
        assert result.provenance is Provenance.FALLBACK
        assert result.themes and result.quotes and result.insights and result.keywords
        assert result.summary

    def test_deterministic(self, sample_report):
        assert analyze_text_fallback(sample_report) == analyze_text_fallback(sample_report)

    def test_chunk_wrapper_uses_chunk_index(self):
        chunk = Chunk(index=4, start=0, end=5, text="hello", word_count=1)
        result = analyze_chunk_fallback(chunk)
        assert result.chunk_index == 4
        assert result.summary is None
