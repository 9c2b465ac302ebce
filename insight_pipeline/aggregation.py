"""Merge per-chunk analysis results into one document-level result."""

from __future__ import annotations

import logging
import math
from typing import Callable, Iterable, Optional

from .errors import AggregationError, CapabilityError
from .models import (
    AggregatedResult,
    AnalysisResult,
    Insight,
    Keyword,
    Provenance,
    Quote,
    Theme,
)
from .utils import INSIGHT_LIMIT, KEYWORD_LIMIT, QUOTE_LIMIT

log = logging.getLogger(__name__)

SUMMARY_POLICIES = ("concatenate", "regenerate")

Summarizer = Callable[[str, str], str]


def _check_score(value: object, what: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise AggregationError(f"{what} must be numeric, got {value!r}")
    if math.isnan(value) or math.isinf(value):
        raise AggregationError(f"{what} must be finite, got {value!r}")


def _validate(results: Iterable[object]) -> list[AnalysisResult]:
    validated = []
    for result in results:
        if not isinstance(result, AnalysisResult):
            raise AggregationError(
                f"expected AnalysisResult, got {type(result).__name__}"
            )
        for theme in result.themes:
            _check_score(theme.confidence, f"theme {theme.name!r} confidence")
        for quote in result.quotes:
            _check_score(quote.confidence, "quote confidence")
        for insight in result.insights:
            _check_score(insight.importance, "insight importance")
            _check_score(insight.confidence, "insight confidence")
        for keyword in result.keywords:
            _check_score(keyword.frequency, f"keyword {keyword.term!r} frequency")
        validated.append(result)
    return sorted(validated, key=lambda r: r.chunk_index)


def _merge_themes(results: list[AnalysisResult]) -> list[Theme]:
    merged: dict[str, Theme] = {}
    for result in results:
        for theme in result.themes:
            key = theme.name.strip().lower()
            current = merged.get(key)
            if current is None:
                merged[key] = Theme(
                    name=theme.name,
                    confidence=theme.confidence,
                    evidence=list(theme.evidence),
                    description=theme.description,
                    provenance=theme.provenance,
                )
                continue
            current.confidence = max(current.confidence, theme.confidence)
            current.evidence.extend(theme.evidence)
            if not current.description:
                current.description = theme.description
            if theme.provenance is Provenance.AI:
                current.provenance = Provenance.AI
    # sorted() is stable, so equal confidences keep first-seen order.
    return sorted(merged.values(), key=lambda t: t.confidence, reverse=True)


def _merge_quotes(results: list[AnalysisResult], limit: int) -> list[Quote]:
    best: dict[tuple[str, Optional[str]], Quote] = {}
    for result in results:
        for quote in result.quotes:
            key = (quote.text, quote.speaker)
            current = best.get(key)
            if current is None or quote.confidence > current.confidence:
                best[key] = quote
    ranked = sorted(best.values(), key=lambda q: q.confidence, reverse=True)
    return ranked[:limit]


def _rank_insights(results: list[AnalysisResult], limit: int) -> list[Insight]:
    insights = [insight for result in results for insight in result.insights]
    return sorted(insights, key=lambda i: i.importance, reverse=True)[:limit]


def _merge_keywords(results: list[AnalysisResult], limit: int) -> list[Keyword]:
    merged: dict[str, Keyword] = {}
    for result in results:
        for keyword in result.keywords:
            key = keyword.term.strip().lower()
            current = merged.get(key)
            if current is None:
                merged[key] = Keyword(
                    term=key,
                    frequency=keyword.frequency,
                    category=keyword.category,
                    provenance=keyword.provenance,
                )
            else:
                current.frequency += keyword.frequency
                if keyword.provenance is Provenance.AI:
                    current.provenance = Provenance.AI
    ranked = sorted(merged.values(), key=lambda k: (-k.frequency, k.term))
    return ranked[:limit]


def _concatenate_summaries(results: list[AnalysisResult]) -> str:
    return "\n\n".join(r.summary for r in results if r.summary)


def aggregate(
    results: Iterable[AnalysisResult],
    *,
    summary_policy: str = "concatenate",
    quote_limit: int = QUOTE_LIMIT,
    insight_limit: int = INSIGHT_LIMIT,
    keyword_limit: int = KEYWORD_LIMIT,
    summarizer: Optional[Summarizer] = None,
    full_text: str = "",
    title: str = "",
    chunks_failed: int = 0,
    empty_provenance: Provenance = Provenance.FALLBACK,
) -> AggregatedResult:
    """Merge per-chunk results; the output does not depend on input order.

    Args:
        results: Per-chunk analysis results, in any order.
        summary_policy: ``"concatenate"`` joins chunk summaries;
            ``"regenerate"`` asks *summarizer* for a summary of *full_text*
            and falls back to concatenation if that call fails.
        quote_limit: Maximum number of quotes kept.
        insight_limit: Maximum number of insights kept.
        keyword_limit: Maximum number of keywords kept.
        summarizer: ``summarizer(full_text, title) -> str``.
        full_text: Whole document text, used by ``regenerate``.
        title: Document title, used by ``regenerate``.
        chunks_failed: Number of chunks whose analysis was dropped.
        empty_provenance: Provenance reported when *results* is empty.

    Raises:
        AggregationError: a result has the wrong type or a non-finite score,
            or *summary_policy* is unknown.
    """
    if summary_policy not in SUMMARY_POLICIES:
        raise AggregationError(f"unknown summary policy {summary_policy!r}")

    ordered = _validate(results)

    summary = _concatenate_summaries(ordered)
    if summary_policy == "regenerate" and summarizer is not None and full_text:
        try:
            regenerated = summarizer(full_text, title)
        except CapabilityError as exc:
            log.warning("Summary regeneration failed, concatenating: %s", exc)
        else:
            if regenerated and regenerated.strip():
                summary = regenerated.strip()

    if ordered:
        any_ai = any(r.provenance is Provenance.AI for r in ordered)
        provenance = Provenance.AI if any_ai else Provenance.FALLBACK
    else:
        provenance = Provenance(empty_provenance)
    return AggregatedResult(
        themes=_merge_themes(ordered),
        quotes=_merge_quotes(ordered, quote_limit),
        insights=_rank_insights(ordered, insight_limit),
        keywords=_merge_keywords(ordered, keyword_limit),
        summary=summary,
        provenance=provenance,
        chunks_analyzed=len(ordered),
        chunks_failed=chunks_failed,
    )
