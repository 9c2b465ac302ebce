"""Exception taxonomy for the insight pipeline."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class ChunkingError(PipelineError):
    """Chunker received malformed input or an invalid configuration."""


class CapabilityError(PipelineError):
    """An external capability call failed.

    ``transient`` marks failures worth trying again later (timeouts,
    connection resets, rate limiting, 5xx); terminal failures will not
    succeed on resubmission.
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient

    def __str__(self) -> str:
        kind = "transient" if self.transient else "terminal"
        return f"{super().__str__()} ({kind})"


class AggregationError(PipelineError):
    """A per-chunk analysis result has a malformed shape."""


class FallbackError(PipelineError):
    """The rule-based fallback analyzer could not produce a result."""


class SchedulingError(PipelineError):
    """Queue at capacity, scheduler shutting down, or illegal job transition."""


class JobTimeoutError(PipelineError, TimeoutError):
    """A job's execution exceeded its time bound."""


class QueueFullError(SchedulingError):
    """The queue refused a job because it already holds ``max_queue_size``."""
