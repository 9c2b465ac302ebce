"""Priority job scheduler with concurrency and memory-based admission control.

Jobs wait in a priority queue (critical > high > medium > low, FIFO within a
tier) and are dispatched to a bounded worker pool while two conditions hold:
fewer than ``max_concurrent_jobs`` are active and the estimated memory usage
is under ``memory_threshold_bytes``. When memory is over the threshold the
artifact cache is optimized and the check repeated; if it still fails the
job stays queued.

A job that overruns its timeout is failed at once, but its worker thread
cannot be stopped. Until that thread returns it is counted as stalled and
still occupies a concurrency slot, so no more than ``max_concurrent_jobs``
executor calls ever run at the same time.

All queue, active-set and history state lives behind one lock. Status
queries return copies, so a reader never sees a job in two places at once.
"""

from __future__ import annotations

import bisect
import collections
import dataclasses
import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from .cache import ArtifactCache
from .config import SchedulerConfig
from .errors import JobTimeoutError, QueueFullError, SchedulingError
from .models import Job, JobPriority, JobStatus, JobType
from .utils import MB

log = logging.getLogger(__name__)


class JobExecutor(Protocol):
    def execute(self, job: Job) -> Any: ...


@dataclass(frozen=True)
class JobSnapshot:
    """Immutable copy of a job's state at one instant."""

    job_id: str
    document_id: str
    job_type: JobType
    priority: JobPriority
    status: JobStatus
    file_size: int
    estimated_ms: int
    timeout_ms: int
    created_at: float
    started_at: Optional[float]
    finished_at: Optional[float]
    duration_ms: Optional[float]
    error: Optional[str]
    result: Any


@dataclass(frozen=True)
class SchedulerMetrics:
    queued: int
    active: int
    completed: int
    failed: int
    avg_processing_time_ms: float
    cache_size: int
    total: int
    memory_usage: int
    stalled: int = 0


@dataclass(frozen=True)
class ProcessingStrategy:
    strategy: str
    priority: JobPriority
    chunk_size: Optional[int] = None
    warnings: tuple[str, ...] = ()


JobListener = Callable[[JobSnapshot], None]

# ---------------------------------------------------------------------------
# Estimation
# ---------------------------------------------------------------------------

BASE_MS_PER_MB = {
    JobType.EXTRACTION: 2000,
    JobType.ANALYSIS: 5000,
    JobType.THUMBNAILING: 1000,
    JobType.CHUNKING: 500,
}
DEFAULT_MS_PER_MB = 2000
LARGE_FILE_MB = 10
LARGE_FILE_OVERHEAD_MS_PER_MB = 200


def estimate_processing_ms(file_size: int, job_type: JobType | str) -> int:
    """Expected processing time: size in MB times a per-type rate.

    Files above 10 MB carry an extra 200 ms per MB.
    """
    try:
        rate = BASE_MS_PER_MB[JobType(job_type)]
    except ValueError:
        rate = DEFAULT_MS_PER_MB
    size_mb = max(0, file_size) / MB
    estimate = size_mb * rate
    if size_mb > LARGE_FILE_MB:
        estimate += size_mb * LARGE_FILE_OVERHEAD_MS_PER_MB
    return int(round(estimate))


def recommend_strategy(file_size: int) -> ProcessingStrategy:
    """Suggest how (and at what priority) to process a file of *file_size* bytes."""
    size_mb = file_size / MB
    if size_mb < 1:
        return ProcessingStrategy("immediate", JobPriority.HIGH)
    if size_mb < 5:
        return ProcessingStrategy("queued", JobPriority.MEDIUM)
    if size_mb < 25:
        return ProcessingStrategy(
            "queued",
            JobPriority.LOW,
            warnings=("Large file may take several minutes to process",),
        )
    if size_mb < 50:
        return ProcessingStrategy(
            "chunked",
            JobPriority.LOW,
            chunk_size=5 * MB,
            warnings=(
                "Very large file will be processed in chunks",
                "Processing may take 10+ minutes",
                "Consider splitting document manually for better performance",
            ),
        )
    return ProcessingStrategy(
        "deferred",
        JobPriority.LOW,
        warnings=(
            "Extremely large file detected",
            "Manual processing recommended",
            "Consider reducing file size or splitting into smaller documents",
            "Automatic processing may fail due to memory constraints",
        ),
    )


def _queue_key(job: Job) -> tuple[int, int]:
    return (-job.priority.weight, job.sequence)


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class JobScheduler:
    """Owns every job record and the queued, active and history collections."""

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        cache: Optional[ArtifactCache] = None,
        memory_probe: Optional[Callable[[], int]] = None,
        executors: Optional[dict[JobType, JobExecutor]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or SchedulerConfig()
        if self._config.max_concurrent_jobs <= 0:
            raise ValueError("max_concurrent_jobs must be > 0")
        self._cache = cache
        self._memory_probe = memory_probe or self._estimate_memory
        self._executors: dict[JobType, JobExecutor] = dict(executors or {})
        self._clock = clock

        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._queue: list[Job] = []
        self._active: dict[str, Job] = {}
        self._stalled = 0
        self._history: collections.deque[Job] = collections.deque(
            maxlen=self._config.history_size
        )
        self._jobs: dict[str, Job] = {}
        self._unsettled: set[str] = set()
        self._listeners: list[JobListener] = []
        self._sequence = 0
        self._completed = 0
        self._failed = 0
        self._paused = False
        self._accepting = True
        self._closed = False
        self._retry_timer: Optional[threading.Timer] = None
        self._pool = self._new_pool(self._config.max_concurrent_jobs)
        self._retired_pools: list[ThreadPoolExecutor] = []

    @staticmethod
    def _new_pool(workers: int) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=workers, thread_name_prefix="job")

    @property
    def config(self) -> SchedulerConfig:
        with self._lock:
            return self._config

    # -- registration -------------------------------------------------------

    def register_executor(self, job_type: JobType | str, executor: JobExecutor) -> None:
        with self._lock:
            self._executors[JobType(job_type)] = executor

    def add_listener(self, listener: JobListener) -> None:
        """Call *listener* with a snapshot whenever a job completes or fails."""
        with self._lock:
            self._listeners.append(listener)

    # -- submission ---------------------------------------------------------

    def submit(
        self,
        document_id: str,
        job_type: JobType | str,
        priority: JobPriority | str = JobPriority.MEDIUM,
        file_size: int = 0,
        payload: Any = None,
        enforce_capacity: bool = True,
    ) -> str:
        """Queue a job and try to dispatch immediately.

        *enforce_capacity* False admits the job past ``max_queue_size``; used
        for follow-up work of a job that was itself admitted.

        Raises:
            QueueFullError: the queue already holds ``max_queue_size`` jobs.
            SchedulingError: the scheduler is shutting down.
        """
        job_type = JobType(job_type)
        priority = JobPriority(priority)
        with self._lock:
            if not self._accepting:
                raise SchedulingError("scheduler is shutting down")
            if enforce_capacity and len(self._queue) >= self._config.max_queue_size:
                raise QueueFullError(
                    f"queue at capacity ({self._config.max_queue_size} jobs)"
                )
            self._sequence += 1
            job = Job(
                job_id=f"job_{uuid.uuid4().hex[:12]}",
                document_id=document_id,
                job_type=job_type,
                priority=priority,
                file_size=max(0, int(file_size)),
                estimated_ms=estimate_processing_ms(file_size, job_type),
                sequence=self._sequence,
                payload=payload,
                created_at=self._clock(),
            )
            bisect.insort(self._queue, job, key=_queue_key)
            self._jobs[job.job_id] = job
            position = self._queue.index(job)

        log.info(
            "Queued %s job %s for %s (priority=%s, position=%s, est=%sms)",
            job_type.value,
            job.job_id,
            document_id,
            priority.value,
            position,
            job.estimated_ms,
        )
        self._dispatch()
        return job.job_id

    def cancel(self, job_id: str) -> bool:
        """Remove a job that has not started yet. In-flight jobs are not touched."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.QUEUED:
                return False
            self._queue.remove(job)
            del self._jobs[job_id]
            self._changed.notify_all()
        log.info("Cancelled queued job %s", job_id)
        return True

    # -- dispatch -----------------------------------------------------------

    def _estimate_memory(self) -> int:
        cache_size = self._cache.total_size if self._cache is not None else 0
        running = len(self._active) + self._stalled
        return running * self._config.per_job_memory_bytes + cache_size

    def _memory_available(self) -> bool:
        threshold = self._config.memory_threshold_bytes
        usage = self._memory_probe()
        if usage < threshold:
            return True

        if self._cache is not None:
            evicted = self._cache.optimize()
            usage = self._memory_probe()
            log.info(
                "Memory %s >= threshold %s; cache optimized (%s evicted)",
                usage,
                threshold,
                evicted,
            )
            if usage < threshold:
                return True

        log.warning(
            "Memory usage %s over threshold %s; %s job(s) held in queue",
            usage,
            threshold,
            len(self._queue),
        )
        if not self._active:
            self._arm_retry()
        return False

    def _arm_retry(self) -> None:
        # With nothing active no completion will trigger the next dispatch.
        if self._retry_timer is not None or self._closed:
            return
        timer = threading.Timer(self._config.admission_retry_seconds, self._on_retry)
        timer.daemon = True
        self._retry_timer = timer
        timer.start()

    def _on_retry(self) -> None:
        with self._lock:
            self._retry_timer = None
        self._dispatch()

    def _dispatch(self) -> None:
        with self._lock:
            while (
                self._queue
                and not self._paused
                and not self._closed
                and len(self._active) + self._stalled < self._config.max_concurrent_jobs
            ):
                if not self._memory_available():
                    break
                job = self._queue.pop(0)
                job.transition(JobStatus.PROCESSING, at=self._clock())
                self._active[job.job_id] = job
                log.info(
                    "Started %s job %s for %s (active=%s/%s)",
                    job.job_type.value,
                    job.job_id,
                    job.document_id,
                    len(self._active),
                    self._config.max_concurrent_jobs,
                )
                self._pool.submit(self._run, job)
            self._changed.notify_all()

    # -- execution ----------------------------------------------------------

    def timeout_ms(self, job: Job) -> int:
        """Execution bound: twice the estimate, clamped to the configured range."""
        config = self._config
        return min(max(2 * job.estimated_ms, config.min_timeout_ms), config.max_timeout_ms)

    def _execute(self, executor: JobExecutor, job: Job) -> Any:
        bound_ms = self.timeout_ms(job)
        outcome: Future = Future()

        def target() -> None:
            if not outcome.set_running_or_notify_cancel():
                return
            try:
                outcome.set_result(executor.execute(job))
            except Exception as exc:
                outcome.set_exception(exc)

        worker = threading.Thread(target=target, name=f"{job.job_id}-exec", daemon=True)
        worker.start()
        try:
            return outcome.result(timeout=bound_ms / 1000.0)
        except FuturesTimeoutError:
            if outcome.done():
                # The executor itself raised a TimeoutError.
                raise
            with self._lock:
                self._stalled += 1
            log.warning(
                "Job %s overran %s ms; its worker keeps a slot until it returns",
                job.job_id,
                bound_ms,
            )
            outcome.add_done_callback(self._on_stalled_done)
            raise JobTimeoutError(
                f"job {job.job_id} exceeded its {bound_ms} ms bound"
            ) from None

    def _on_stalled_done(self, outcome: Future) -> None:
        with self._lock:
            self._stalled -= 1
            remaining = self._stalled
        log.info("Stalled worker returned; %s still outstanding", remaining)
        self._dispatch()

    def _run(self, job: Job) -> None:
        executor = self._executors.get(job.job_type)
        try:
            if executor is None:
                raise SchedulingError(
                    f"no executor registered for {job.job_type.value} jobs"
                )
            result = self._execute(executor, job)
        except Exception as exc:
            self._finish(job, error=exc)
        else:
            self._finish(job, result=result)

    def _remember(self, job: Job) -> None:
        if len(self._history) == self._history.maxlen and self._history:
            oldest = self._history[0]
            self._jobs.pop(oldest.job_id, None)
            self._unsettled.discard(oldest.job_id)
        self._history.append(job)

    def _finish(
        self,
        job: Job,
        *,
        result: Any = None,
        error: Optional[BaseException] = None,
    ) -> None:
        with self._lock:
            self._active.pop(job.job_id, None)
            if error is None:
                job.result = result
                job.transition(JobStatus.COMPLETED, at=self._clock())
                self._completed += 1
            else:
                job.error = _describe(error)
                job.transition(JobStatus.FAILED, at=self._clock())
                self._failed += 1
            self._remember(job)
            self._unsettled.add(job.job_id)
            snapshot = self._snapshot(job)
            listeners = list(self._listeners)

        if error is None:
            log.info(
                "Completed %s job %s in %.0fms",
                job.job_type.value,
                job.job_id,
                snapshot.duration_ms or 0.0,
            )
        else:
            log.error(
                "Job %s (%s, document %s) failed: %s",
                job.job_id,
                job.job_type.value,
                job.document_id,
                job.error,
            )

        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                log.exception("Job listener failed for %s", job.job_id)

        with self._lock:
            self._unsettled.discard(job.job_id)
            self._changed.notify_all()
        self._dispatch()

    # -- queries ------------------------------------------------------------

    def _snapshot(self, job: Job) -> JobSnapshot:
        return JobSnapshot(
            job_id=job.job_id,
            document_id=job.document_id,
            job_type=job.job_type,
            priority=job.priority,
            status=job.status,
            file_size=job.file_size,
            estimated_ms=job.estimated_ms,
            timeout_ms=self.timeout_ms(job),
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            duration_ms=job.duration_ms,
            error=job.error,
            result=job.result,
        )

    def status(self, job_id: str) -> Optional[JobSnapshot]:
        with self._lock:
            job = self._jobs.get(job_id)
            return self._snapshot(job) if job is not None else None

    def queued_jobs(self) -> list[JobSnapshot]:
        with self._lock:
            return [self._snapshot(job) for job in self._queue]

    def active_jobs(self) -> list[JobSnapshot]:
        with self._lock:
            return [self._snapshot(job) for job in self._active.values()]

    def history(self) -> list[JobSnapshot]:
        with self._lock:
            return [self._snapshot(job) for job in self._history]

    def metrics(self) -> SchedulerMetrics:
        with self._lock:
            durations = [
                job.duration_ms
                for job in self._history
                if job.status is JobStatus.COMPLETED and job.duration_ms is not None
            ]
            return SchedulerMetrics(
                queued=len(self._queue),
                active=len(self._active),
                completed=self._completed,
                failed=self._failed,
                avg_processing_time_ms=(
                    sum(durations) / len(durations) if durations else 0.0
                ),
                cache_size=self._cache.total_size if self._cache is not None else 0,
                total=len(self._queue) + len(self._active) + len(self._history),
                memory_usage=self._memory_probe(),
                stalled=self._stalled,
            )

    # -- waiting ------------------------------------------------------------

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[JobSnapshot]:
        """Block until *job_id* has finished and its listeners have run."""

        def settled() -> bool:
            job = self._jobs.get(job_id)
            return job is None or (
                job.status.terminal and job_id not in self._unsettled
            )

        with self._changed:
            self._changed.wait_for(settled, timeout=timeout)
            job = self._jobs.get(job_id)
            return self._snapshot(job) if job is not None else None

    def join(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is queued, active or settling. Returns success."""
        with self._changed:
            return self._changed.wait_for(
                lambda: not self._queue and not self._active and not self._unsettled,
                timeout=timeout,
            )

    def wait_for_capacity(self, timeout: Optional[float] = None) -> bool:
        """Block until the queue has room for another job.

        Returns False on timeout; also returns once the scheduler stops
        accepting jobs, so the caller's next ``submit`` reports that.
        """
        with self._changed:
            return self._changed.wait_for(
                lambda: not self._accepting
                or len(self._queue) < self._config.max_queue_size,
                timeout=timeout,
            )

    # -- control ------------------------------------------------------------

    def pause(self) -> None:
        """Stop dispatching; queued jobs stay queued, active jobs run on."""
        with self._lock:
            self._paused = True
        log.info("Scheduler paused")

    def resume(self) -> None:
        with self._lock:
            self._paused = False
        log.info("Scheduler resumed")
        self._dispatch()

    def update_config(
        self,
        *,
        max_concurrent_jobs: Optional[int] = None,
        memory_threshold_bytes: Optional[int] = None,
        cache_max_size: Optional[int] = None,
    ) -> SchedulerConfig:
        """Change limits at runtime; in-flight jobs are never preempted."""
        changes: dict[str, Any] = {}
        if max_concurrent_jobs is not None:
            if max_concurrent_jobs <= 0:
                raise ValueError("max_concurrent_jobs must be > 0")
            changes["max_concurrent_jobs"] = max_concurrent_jobs
        if memory_threshold_bytes is not None:
            changes["memory_threshold_bytes"] = memory_threshold_bytes

        with self._lock:
            previous = self._config
            self._config = dataclasses.replace(previous, **changes)
            if self._config.max_concurrent_jobs > previous.max_concurrent_jobs:
                self._retired_pools.append(self._pool)
                self._pool = self._new_pool(self._config.max_concurrent_jobs)
            config = self._config

        if cache_max_size is not None and self._cache is not None:
            self._cache.resize(cache_max_size)
        log.info("Scheduler config updated: %s", changes or "no changes")
        self._dispatch()
        return config

    def shutdown(self, wait: bool = True, cancel_pending: bool = True) -> None:
        """Stop accepting jobs.

        With *cancel_pending* every queued job fails with ``SchedulingError``;
        otherwise queued jobs still run (and *wait* blocks until they finish).
        """
        with self._lock:
            self._accepting = False
            pending = list(self._queue) if cancel_pending else []
            if cancel_pending:
                self._queue.clear()
                now = self._clock()
                for job in pending:
                    # Torn down at the instant it would have started.
                    job.transition(JobStatus.PROCESSING, at=now)

        for job in pending:
            self._finish(
                job, error=SchedulingError("scheduler shut down before the job started")
            )

        if wait and not cancel_pending:
            self.join()

        with self._lock:
            self._closed = True
            if self._retry_timer is not None:
                self._retry_timer.cancel()
                self._retry_timer = None
            pools = [self._pool, *self._retired_pools]
            self._changed.notify_all()

        for pool in pools:
            pool.shutdown(wait=wait)
        log.info("Scheduler shut down (%s pending job(s) failed)", len(pending))

    def __enter__(self) -> "JobScheduler":
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()
