"""Document insight pipeline: chunking, analysis, aggregation and scheduling.

Public API -- all symbols that tests and external code import live here.
Internally the code is split across focused submodules; this file
re-exports the stable public surface so ``from insight_pipeline import X``
works. Modules with heavy optional dependencies (``conversion`` for
Docling, ``vectorstores`` for Qdrant) import them lazily.
"""

from .aggregation import aggregate
from .analysis import AnalysisInvoker, AnalysisRun, ChunkOutcome, run_analysis
from .cache import ArtifactCache
from .capability import (
    ChatCompletionCapability,
    EmbeddingCapability,
    FastEmbedEmbedder,
    LanguageCapability,
    RateLimiter,
    parse_json_object,
)
from .chunking import (
    DocumentChunker,
    analyze_chunk_content,
    chunk_text,
    chunking_stats,
    reconstruct_text,
)
from .config import (
    CacheConfig,
    CapabilityConfig,
    ChunkingConfig,
    SchedulerConfig,
    Settings,
    get_settings,
)
from .conversion import create_converter, document_id_for, extract_document
from .errors import (
    AggregationError,
    CapabilityError,
    ChunkingError,
    FallbackError,
    JobTimeoutError,
    PipelineError,
    QueueFullError,
    SchedulingError,
)
from .fallback import (
    analyze_chunk_fallback,
    analyze_text_fallback,
    classify_sensitivity,
    extract_insights,
    extract_keywords,
    extract_quotes,
    extract_themes,
    extractive_summary,
)
from .models import (
    AggregatedResult,
    AnalysisResult,
    CacheEntry,
    Chunk,
    Document,
    DocumentStatus,
    Insight,
    Job,
    JobPriority,
    JobStatus,
    JobType,
    Keyword,
    Provenance,
    Quote,
    Theme,
)
from .persistence import DocumentStore, InMemoryStore, JsonDirectoryStore
from .scheduler import (
    JobExecutor,
    JobScheduler,
    JobSnapshot,
    ProcessingStrategy,
    SchedulerMetrics,
    estimate_processing_ms,
    recommend_strategy,
)
from .service import DocumentPipeline, InsightService, build_service
from .utils import (
    COLLECTION_NAME,
    EMBEDDING_DIM,
    EMBEDDING_MODEL,
    discover_documents,
    load_manifest,
    save_manifest,
)
from .vectorstores import QdrantChunkIndex

__all__ = [
    # Models
    "Document",
    "DocumentStatus",
    "Chunk",
    "Theme",
    "Quote",
    "Insight",
    "Keyword",
    "AnalysisResult",
    "AggregatedResult",
    "Provenance",
    "Job",
    "JobType",
    "JobPriority",
    "JobStatus",
    "CacheEntry",
    # Errors
    "PipelineError",
    "ChunkingError",
    "CapabilityError",
    "AggregationError",
    "FallbackError",
    "QueueFullError",
    "SchedulingError",
    "JobTimeoutError",
    # Config
    "ChunkingConfig",
    "SchedulerConfig",
    "CacheConfig",
    "CapabilityConfig",
    "Settings",
    "get_settings",
    # Constants
    "EMBEDDING_MODEL",
    "EMBEDDING_DIM",
    "COLLECTION_NAME",
    # Utils
    "discover_documents",
    "load_manifest",
    "save_manifest",
    # Chunking
    "chunk_text",
    "reconstruct_text",
    "DocumentChunker",
    "analyze_chunk_content",
    "chunking_stats",
    # Fallback analysis
    "extract_themes",
    "extract_quotes",
    "extract_insights",
    "extract_keywords",
    "extractive_summary",
    "classify_sensitivity",
    "analyze_text_fallback",
    "analyze_chunk_fallback",
    # Capabilities
    "LanguageCapability",
    "EmbeddingCapability",
    "ChatCompletionCapability",
    "RateLimiter",
    "FastEmbedEmbedder",
    "parse_json_object",
    # Analysis and aggregation
    "AnalysisInvoker",
    "AnalysisRun",
    "ChunkOutcome",
    "run_analysis",
    "aggregate",
    # Cache
    "ArtifactCache",
    # Scheduling
    "JobExecutor",
    "JobScheduler",
    "JobSnapshot",
    "SchedulerMetrics",
    "ProcessingStrategy",
    "estimate_processing_ms",
    "recommend_strategy",
    # Persistence
    "DocumentStore",
    "InMemoryStore",
    "JsonDirectoryStore",
    # Extraction
    "create_converter",
    "document_id_for",
    "extract_document",
    # Vector index
    "QdrantChunkIndex",
    # Service
    "DocumentPipeline",
    "InsightService",
    "build_service",
]
