"""Runtime configuration: component configs and environment-driven settings."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache

from .utils import (
    ANALYSIS_BATCH_SIZE,
    DEFAULT_MAX_CHUNK_SIZE,
    DEFAULT_MIN_CHUNK_SIZE,
    DEFAULT_OVERLAP_SIZE,
    EMBEDDING_MODEL,
    MB,
)


@dataclass(frozen=True)
class ChunkingConfig:
    max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE
    overlap_size: int = DEFAULT_OVERLAP_SIZE
    min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE
    preserve_sentences: bool = True
    preserve_paragraphs: bool = True
    # How far back from the size cutoff a sentence/paragraph break is searched.
    boundary_window: int = 100


@dataclass(frozen=True)
class SchedulerConfig:
    max_concurrent_jobs: int = 3
    memory_threshold_bytes: int = 512 * MB
    per_job_memory_bytes: int = 50 * MB
    history_size: int = 100
    max_queue_size: int = 1000
    max_timeout_ms: int = 300_000
    min_timeout_ms: int = 30_000
    admission_retry_seconds: float = 1.0


@dataclass(frozen=True)
class CacheConfig:
    max_size_bytes: int = 100 * MB
    max_age_seconds: float = 30 * 60


@dataclass(frozen=True)
class CapabilityConfig:
    base_url: str = ""
    model: str = ""
    api_key: str = ""
    timeout_seconds: float = 60.0
    requests_per_minute: int = 60
    batch_size: int = ANALYSIS_BATCH_SIZE

    @property
    def enabled(self) -> bool:
        return bool(self.base_url and self.model)


@dataclass(frozen=True)
class Settings:
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    capability: CapabilityConfig = field(default_factory=CapabilityConfig)
    summary_policy: str = "concatenate"
    embedding_model: str = EMBEDDING_MODEL


def _to_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(value: str | None, *, default: int, minimum: int) -> int:
    if value is None:
        return default
    return max(minimum, int(value))


def _to_float(value: str | None, *, default: float, minimum: float) -> float:
    if value is None:
        return default
    return max(minimum, float(value))


@lru_cache
def get_settings() -> Settings:
    """Build settings from ``INSIGHT_*`` environment variables."""
    env = os.getenv
    return Settings(
        chunking=ChunkingConfig(
            max_chunk_size=_to_int(
                env("INSIGHT_CHUNK_SIZE"), default=DEFAULT_MAX_CHUNK_SIZE, minimum=100
            ),
            overlap_size=_to_int(
                env("INSIGHT_CHUNK_OVERLAP"), default=DEFAULT_OVERLAP_SIZE, minimum=0
            ),
            min_chunk_size=_to_int(
                env("INSIGHT_MIN_CHUNK_SIZE"), default=DEFAULT_MIN_CHUNK_SIZE, minimum=0
            ),
            preserve_sentences=_to_bool(
                env("INSIGHT_PRESERVE_SENTENCES"), default=True
            ),
            preserve_paragraphs=_to_bool(
                env("INSIGHT_PRESERVE_PARAGRAPHS"), default=True
            ),
        ),
        scheduler=SchedulerConfig(
            max_concurrent_jobs=_to_int(
                env("INSIGHT_MAX_CONCURRENT_JOBS"), default=3, minimum=1
            ),
            memory_threshold_bytes=_to_int(
                env("INSIGHT_MEMORY_THRESHOLD_MB"), default=512, minimum=1
            )
            * MB,
            history_size=_to_int(env("INSIGHT_HISTORY_SIZE"), default=100, minimum=1),
            max_queue_size=_to_int(
                env("INSIGHT_MAX_QUEUE_SIZE"), default=1000, minimum=1
            ),
            min_timeout_ms=_to_int(
                env("INSIGHT_MIN_TIMEOUT_MS"), default=30_000, minimum=1
            ),
            max_timeout_ms=_to_int(
                env("INSIGHT_MAX_TIMEOUT_MS"), default=300_000, minimum=1
            ),
        ),
        cache=CacheConfig(
            max_size_bytes=_to_int(env("INSIGHT_CACHE_MAX_MB"), default=100, minimum=1)
            * MB,
            max_age_seconds=_to_float(
                env("INSIGHT_CACHE_MAX_AGE_SECONDS"), default=1800.0, minimum=1.0
            ),
        ),
        capability=CapabilityConfig(
            base_url=env("INSIGHT_LLM_BASE_URL", ""),
            model=env("INSIGHT_LLM_MODEL", ""),
            api_key=env("INSIGHT_LLM_API_KEY", ""),
            timeout_seconds=_to_float(
                env("INSIGHT_LLM_TIMEOUT_SECONDS"), default=60.0, minimum=1.0
            ),
            requests_per_minute=_to_int(
                env("INSIGHT_LLM_REQUESTS_PER_MINUTE"), default=60, minimum=1
            ),
            batch_size=_to_int(
                env("INSIGHT_ANALYSIS_BATCH_SIZE"),
                default=ANALYSIS_BATCH_SIZE,
                minimum=1,
            ),
        ),
        summary_policy=env("INSIGHT_SUMMARY_POLICY", "concatenate"),
        embedding_model=env("INSIGHT_EMBEDDING_MODEL", EMBEDDING_MODEL),
    )
