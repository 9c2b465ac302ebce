"""Rule-based analysis used when the language capability is absent or failing.

Everything here is a pure function of the chunk text (and document title):
keyword-family theme matching, regex quote extraction with sensitivity
tiers, phrase-pattern insights and term-frequency keywords. The output has
the same shape as capability results, tagged with ``Provenance.FALLBACK``.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from .models import AnalysisResult, Chunk, Insight, Keyword, Provenance, Quote, Theme

log = logging.getLogger(__name__)

FALLBACK = Provenance.FALLBACK

# ---------------------------------------------------------------------------
# Themes
# ---------------------------------------------------------------------------

THEME_FAMILIES = (
    {
        "name": "Youth Development",
        "keywords": ("youth", "young people", "children", "students", "teenager"),
        "description": "Programs and services focused on young people in the community",
    },
    {
        "name": "Cultural Identity",
        "keywords": (
            "cultural",
            "traditional",
            "aboriginal",
            "indigenous",
            "cultural identity",
        ),
        "description": "Cultural preservation and traditional knowledge systems",
    },
    {
        "name": "Economic Development",
        "keywords": ("employment", "jobs", "training", "workforce", "business", "economic"),
        "description": "Employment opportunities and economic growth initiatives",
    },
    {
        "name": "Education Services",
        "keywords": ("education", "school", "learning", "training", "boarding"),
        "description": "Educational programs and learning opportunities",
    },
    {
        "name": "Health and Wellbeing",
        "keywords": ("health", "medical", "wellbeing", "trauma", "mental health"),
        "description": "Health services and community wellbeing programs",
    },
    {
        "name": "Community Support",
        "keywords": ("community", "social", "family", "support", "services"),
        "description": "Social services and community support programs",
    },
    {
        "name": "Infrastructure Development",
        "keywords": ("infrastructure", "facility", "centre", "hub", "accommodation"),
        "description": "Community facilities and infrastructure projects",
    },
    {
        "name": "Governance and Leadership",
        "keywords": (
            "governance",
            "government",
            "leadership",
            "partnership",
            "collaboration",
        ),
        "description": "Government partnerships and community leadership",
    },
)

MIN_MATCHED_KEYWORDS = 2
MIN_WEIGHTED_MENTIONS = 3
TITLE_WEIGHT = 2
MAX_THEMES = 5

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


def _sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_SPLIT.split(text) if s.strip()]


def _keyword_regex(keyword: str) -> re.Pattern[str]:
    return re.compile(rf"\b{re.escape(keyword)}\b", re.IGNORECASE)


def extract_themes(text: str, title: str = "") -> list[Theme]:
    """Score each theme family by weighted keyword matches."""
    sentences = _sentences(text)
    themes: list[Theme] = []

    for family in THEME_FAMILIES:
        matched = 0
        mentions = 0
        evidence: Optional[str] = None
        for keyword in family["keywords"]:
            pattern = _keyword_regex(keyword)
            body_hits = len(pattern.findall(text))
            title_hits = len(pattern.findall(title))
            if body_hits or title_hits:
                matched += 1
                mentions += body_hits + title_hits * TITLE_WEIGHT
            if evidence is None and body_hits:
                evidence = next((s for s in sentences if pattern.search(s)), None)

        if matched < MIN_MATCHED_KEYWORDS and mentions < MIN_WEIGHTED_MENTIONS:
            continue
        confidence = min(0.9, 0.4 + matched * 0.1 + mentions * 0.05)
        themes.append(
            Theme(
                name=family["name"],
                confidence=round(confidence, 2),
                evidence=[evidence[:300]] if evidence else [],
                description=family["description"],
                provenance=FALLBACK,
            )
        )

    themes.sort(key=lambda theme: theme.confidence, reverse=True)
    return themes[:MAX_THEMES]


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------

MAX_QUOTES = 10

_QUOTE_PATTERNS = (
    re.compile(r"\"([^\"]{30,300})\""),
    re.compile(r"“([^”]{30,300})”"),
    re.compile(r"(?<!\w)'([^']{30,300})'(?!\w)"),
)

_COMMUNITY_VOICE = re.compile(
    r"\b(?P<speaker>community members?|elders?|young people|parents|families|"
    r"staff|participants)\s+"
    r"(?:said|say|says|believe|believed|feel|felt|think|thought|expressed|"
    r"explained|shared|reported|told us)\b[^.!?\n]{20,200}[.!?]",
    re.IGNORECASE,
)

_SPEECH_INDICATORS = ("said", "explained", "stated", "mentioned", "told", "shared")
_PERSONAL_MARKERS = re.compile(r"\b(?:I|we|my|our)\b")

SACRED_TERMS = ("sacred", "ceremony", "ritual")
RESTRICTED_TERMS = (
    "traditional knowledge",
    "cultural protocol",
    "men's business",
    "women's business",
)


def classify_sensitivity(text: str) -> str:
    """Assign a quote to the public, restricted or sacred tier."""
    lowered = text.lower()
    if any(term in lowered for term in SACRED_TERMS):
        return "sacred"
    if any(term in lowered for term in RESTRICTED_TERMS):
        return "restricted"
    return "public"


def _looks_like_metadata(text: str) -> bool:
    return (
        "http" in text
        or "www" in text
        or "@" in text
        or text.replace(" ", "").isdigit()
        or not re.search(r"[A-Za-z]", text)
    )


def _quote_confidence(quote: str, context: str, speaker: Optional[str]) -> float:
    confidence = 0.5
    lowered = context.lower()
    if any(term in lowered for term in _SPEECH_INDICATORS):
        confidence += 0.2
    if _PERSONAL_MARKERS.search(quote):
        confidence += 0.1
    if speaker:
        confidence += 0.1
    return round(min(1.0, confidence), 2)


def extract_quotes(text: str) -> list[Quote]:
    """Quoted spans plus reporting-verb sentences from community roles."""
    quotes: list[Quote] = []
    seen: set[str] = set()

    def _add(body: str, start: int, speaker: Optional[str]) -> None:
        body = body.strip()
        if len(body) < 30 or body in seen or _looks_like_metadata(body):
            return
        seen.add(body)
        before = text[max(0, start - 100) : start]
        quotes.append(
            Quote(
                text=body,
                confidence=_quote_confidence(body, before, speaker),
                speaker=speaker,
                context=before[before.rfind(".") + 1 :].strip(),
                sensitivity=classify_sensitivity(body),
                provenance=FALLBACK,
            )
        )

    for pattern in _QUOTE_PATTERNS:
        for match in pattern.finditer(text):
            _add(match.group(1), match.start(), None)

    for match in _COMMUNITY_VOICE.finditer(text):
        speaker = match.group("speaker").strip()
        _add(match.group(0), match.start(), speaker[0].upper() + speaker[1:].lower())

    quotes.sort(key=lambda quote: quote.confidence, reverse=True)
    return quotes[:MAX_QUOTES]


# ---------------------------------------------------------------------------
# Insights
# ---------------------------------------------------------------------------

MAX_INSIGHTS = 8

INSIGHT_PATTERNS = (
    (
        re.compile(
            r"(?:lack|need|gap|missing|insufficient|limited|shortage)[^.!?\n]*?"
            r"(?:service|program|facility|support|resource)s?",
            re.IGNORECASE,
        ),
        "service_gap",
        0.8,
    ),
    (
        re.compile(
            r"(?:barrier|challenge|obstacle|difficulty|problem)[^.!?\n]*?"
            r"(?:access|delivery|implementation)",
            re.IGNORECASE,
        ),
        "barrier",
        0.7,
    ),
    (
        re.compile(
            r"(?:opportunity|potential|could|should|recommend)[^.!?\n]*?"
            r"(?:develop|establish|create|improve|enhance)",
            re.IGNORECASE,
        ),
        "opportunity",
        0.6,
    ),
    (
        re.compile(
            r"(?:success|effective|working|achievement|positive)[^.!?\n]*?"
            r"(?:outcome|result|impact|change)s?",
            re.IGNORECASE,
        ),
        "success_story",
        0.8,
    ),
)

COMMUNITY_NEEDS = (
    "accommodation for students",
    "youth support services",
    "crisis support",
    "cultural programs",
    "employment opportunities",
    "health services",
    "transport services",
    "childcare services",
)
COMMUNITY_NEED_CONFIDENCE = 0.7


def extract_insights(text: str) -> list[Insight]:
    """Gap, barrier, opportunity and success phrases plus known community needs."""
    insights: list[Insight] = []
    for pattern, category, confidence in INSIGHT_PATTERNS:
        for match in pattern.finditer(text):
            body = match.group(0).strip()
            if 20 < len(body) < 200:
                insights.append(
                    Insight(
                        text=body,
                        category=category,
                        importance=round(confidence * 10, 1),
                        confidence=confidence,
                        provenance=FALLBACK,
                    )
                )

    lowered = text.lower()
    for need in COMMUNITY_NEEDS:
        if need in lowered:
            insights.append(
                Insight(
                    text=f"Community need identified: {need}",
                    category="community_need",
                    importance=round(COMMUNITY_NEED_CONFIDENCE * 10, 1),
                    confidence=COMMUNITY_NEED_CONFIDENCE,
                    provenance=FALLBACK,
                )
            )

    insights.sort(key=lambda insight: insight.confidence, reverse=True)
    return insights[:MAX_INSIGHTS]


# ---------------------------------------------------------------------------
# Keywords and summary
# ---------------------------------------------------------------------------


def extract_keywords(text: str, top_n: int = 15) -> list[Keyword]:
    """Most frequent non-stop-word terms and bigrams in *text*."""
    from sklearn.feature_extraction.text import CountVectorizer

    if not text.strip():
        return []
    vectorizer = CountVectorizer(
        stop_words="english",
        ngram_range=(1, 2),
        token_pattern=r"(?u)\b[a-zA-Z][a-zA-Z'-]{3,}\b",
    )
    try:
        counts = vectorizer.fit_transform([text])
    except ValueError:
        # Only stop words or no tokens long enough.
        return []
    terms = vectorizer.get_feature_names_out()
    row = counts.toarray()[0]
    ranked = sorted(
        ((terms[i], int(row[i])) for i in range(len(terms)) if row[i] > 0),
        key=lambda pair: (-pair[1], pair[0]),
    )
    return [
        Keyword(term=term, frequency=freq, provenance=FALLBACK)
        for term, freq in ranked[:top_n]
    ]


def extractive_summary(text: str, num_sentences: int = 2) -> str:
    """Fast extractive summary -- first N non-trivial sentences."""
    sentences = [s for s in _sentences(text[:50_000]) if len(s) > 40]
    return " ".join(sentences[:num_sentences])


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


def analyze_text_fallback(
    text: str, chunk_index: int = 0, title: str = ""
) -> AnalysisResult:
    """Run all rule-based passes over *text*."""
    summary = extractive_summary(text)
    return AnalysisResult(
        chunk_index=chunk_index,
        themes=extract_themes(text, title),
        quotes=extract_quotes(text),
        insights=extract_insights(text),
        keywords=extract_keywords(text),
        summary=summary or None,
        provenance=FALLBACK,
    )


def analyze_chunk_fallback(chunk: Chunk, title: str = "") -> AnalysisResult:
    return analyze_text_fallback(chunk.text, chunk.index, title)
