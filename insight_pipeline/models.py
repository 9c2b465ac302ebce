"""Shared data models for the pipeline."""

from __future__ import annotations

import math
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from .errors import AggregationError, SchedulingError


class DocumentStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Provenance(str, Enum):
    AI = "ai"
    FALLBACK = "fallback"


class JobType(str, Enum):
    EXTRACTION = "extraction"
    ANALYSIS = "analysis"
    THUMBNAILING = "thumbnailing"
    CHUNKING = "chunking"


class JobPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def weight(self) -> int:
        return _PRIORITY_WEIGHTS[self]


_PRIORITY_WEIGHTS = {
    JobPriority.CRITICAL: 4,
    JobPriority.HIGH: 3,
    JobPriority.MEDIUM: 2,
    JobPriority.LOW: 1,
}


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


SENSITIVITY_TIERS = ("public", "restricted", "sacred")


# ---------------------------------------------------------------------------
# Documents and chunks
# ---------------------------------------------------------------------------


@dataclass
class Document:
    """A single uploaded document and its processing state."""

    document_id: str
    text: str
    title: str = ""
    file_size: int = 0
    source_path: str = ""
    page_breaks: Optional[list[int]] = None
    status: DocumentStatus = DocumentStatus.QUEUED
    provenance: Optional[Provenance] = None
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.file_size and isinstance(self.text, str):
            self.file_size = len(self.text.encode("utf-8"))


@dataclass
class Chunk:
    """A bounded, overlapping slice ``text[start:end]`` of a document."""

    index: int
    start: int
    end: int
    text: str
    word_count: int
    start_page: Optional[int] = None
    end_page: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def chunk_id(self, document_id: str) -> str:
        return f"{document_id}::chunk_{self.index:04d}"


# ---------------------------------------------------------------------------
# Analysis artifacts
# ---------------------------------------------------------------------------


@dataclass
class Theme:
    name: str
    confidence: float
    evidence: list[str] = field(default_factory=list)
    description: str = ""
    provenance: Provenance = Provenance.AI


@dataclass
class Quote:
    text: str
    confidence: float
    speaker: Optional[str] = None
    context: str = ""
    significance: str = ""
    sensitivity: str = "public"
    provenance: Provenance = Provenance.AI


@dataclass
class Insight:
    text: str
    category: str
    importance: float
    confidence: float
    provenance: Provenance = Provenance.AI


@dataclass
class Keyword:
    term: str
    frequency: int
    category: str = "general"
    provenance: Provenance = Provenance.AI


def _score(value: Any, what: str, *, default: Optional[float] = None) -> float:
    if value is None and default is not None:
        return default
    if isinstance(value, bool):
        raise AggregationError(f"{what} must be numeric, got bool")
    try:
        score = float(value)
    except (TypeError, ValueError) as exc:
        raise AggregationError(f"{what} must be numeric, got {value!r}") from exc
    if math.isnan(score) or math.isinf(score):
        raise AggregationError(f"{what} must be finite, got {value!r}")
    return score


def _clamped(
    item: dict[str, Any], key: str, what: str, *, default: float, upper: float = 1.0
) -> float:
    return min(upper, max(0.0, _score(item.get(key), what, default=default)))


def _items(payload: dict[str, Any], key: str) -> list[dict[str, Any]]:
    raw = payload.get(key)
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise AggregationError(f"'{key}' must be a list, got {type(raw).__name__}")
    items = []
    for item in raw:
        if not isinstance(item, dict):
            raise AggregationError(f"'{key}' entries must be objects, got {item!r}")
        items.append(item)
    return items


def _text(item: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise AggregationError(f"entry is missing a non-empty {keys[0]!r}: {item!r}")


@dataclass
class AnalysisResult:
    """Themes, quotes, insights and keywords found in one chunk."""

    chunk_index: int
    themes: list[Theme] = field(default_factory=list)
    quotes: list[Quote] = field(default_factory=list)
    insights: list[Insight] = field(default_factory=list)
    keywords: list[Keyword] = field(default_factory=list)
    summary: Optional[str] = None
    provenance: Provenance = Provenance.AI

    @classmethod
    def from_payload(
        cls,
        chunk_index: int,
        payload: Any,
        provenance: Provenance = Provenance.AI,
    ) -> "AnalysisResult":
        """Parse the capability's JSON contract into an ``AnalysisResult``.

        Raises ``AggregationError`` when the payload does not have the
        documented shape.
        """
        if not isinstance(payload, dict):
            raise AggregationError(
                f"analysis payload must be an object, got {type(payload).__name__}"
            )

        themes = []
        for item in _items(payload, "themes"):
            evidence = item.get("evidence") or ""
            themes.append(
                Theme(
                    name=_text(item, "name", "theme"),
                    confidence=_clamped(
                        item, "confidence", "theme confidence", default=0.5
                    ),
                    evidence=[str(evidence)] if evidence else [],
                    description=str(item.get("description") or ""),
                    provenance=provenance,
                )
            )

        quotes = []
        for item in _items(payload, "quotes"):
            sensitivity = str(
                item.get("sensitivity") or item.get("cultural_sensitivity") or "public"
            )
            speaker = item.get("speaker")
            quotes.append(
                Quote(
                    text=_text(item, "text", "quote"),
                    confidence=_clamped(
                        item, "confidence", "quote confidence", default=0.5
                    ),
                    speaker=str(speaker).strip() if speaker else None,
                    context=str(item.get("context") or ""),
                    significance=str(item.get("significance") or ""),
                    sensitivity=sensitivity if sensitivity in SENSITIVITY_TIERS else "public",
                    provenance=provenance,
                )
            )

        insights = []
        for item in _items(payload, "insights"):
            importance = _clamped(
                item, "importance", "insight importance", default=5.0, upper=10.0
            )
            insights.append(
                Insight(
                    text=_text(item, "text", "insight"),
                    category=str(item.get("category") or item.get("type") or "general"),
                    importance=importance,
                    confidence=round(importance / 10.0, 2),
                    provenance=provenance,
                )
            )

        keywords = []
        for item in _items(payload, "keywords"):
            keywords.append(
                Keyword(
                    term=_text(item, "term", "keyword"),
                    frequency=max(
                        1,
                        int(
                            _score(
                                item.get("frequency"), "keyword frequency", default=1.0
                            )
                        ),
                    ),
                    category=str(item.get("category") or "general"),
                    provenance=provenance,
                )
            )

        summary = payload.get("summary")
        return cls(
            chunk_index=chunk_index,
            themes=themes,
            quotes=quotes,
            insights=insights,
            keywords=keywords,
            summary=(
                summary.strip()
                if isinstance(summary, str) and summary.strip()
                else None
            ),
            provenance=provenance,
        )


@dataclass
class AggregatedResult:
    """Document-level merge of every available per-chunk result."""

    themes: list[Theme] = field(default_factory=list)
    quotes: list[Quote] = field(default_factory=list)
    insights: list[Insight] = field(default_factory=list)
    keywords: list[Keyword] = field(default_factory=list)
    summary: str = ""
    provenance: Provenance = Provenance.AI
    chunks_analyzed: int = 0
    chunks_failed: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["provenance"] = self.provenance.value
        for key in ("themes", "quotes", "insights", "keywords"):
            for item in data[key]:
                item["provenance"] = item["provenance"].value
        return data


# ---------------------------------------------------------------------------
# Jobs and cache entries
# ---------------------------------------------------------------------------


_ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: (JobStatus.PROCESSING,),
    JobStatus.PROCESSING: (JobStatus.COMPLETED, JobStatus.FAILED),
}


@dataclass
class Job:
    """A scheduled unit of pipeline work for one document."""

    job_id: str
    document_id: str
    job_type: JobType
    priority: JobPriority
    file_size: int
    estimated_ms: int
    sequence: int
    payload: Any = None
    status: JobStatus = JobStatus.QUEUED
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    result: Any = None

    def transition(self, status: JobStatus, *, at: float) -> None:
        if status not in _ALLOWED_TRANSITIONS.get(self.status, ()):
            raise SchedulingError(
                f"job {self.job_id}: illegal transition "
                f"{self.status.value} -> {status.value}"
            )
        self.status = status
        if status is JobStatus.PROCESSING:
            self.started_at = at
        else:
            self.finished_at = at

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at) * 1000.0


@dataclass
class CacheEntry:
    key: str
    payload: Any
    size: int
    timestamp: float
