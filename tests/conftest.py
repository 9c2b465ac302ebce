"""Shared fixtures for the insight pipeline test suite.

Capabilities, executors and clocks are deterministic fakes, so nothing here
talks to a network service or depends on wall-clock luck.
"""

from __future__ import annotations

import logging
import sys
import threading
from typing import Any, Mapping

import pytest

from insight_pipeline.errors import CapabilityError

# ---------------------------------------------------------------------------
# Configure verbose logging for test debugging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
    force=True,
)
log = logging.getLogger("conftest")


SAMPLE_REPORT = (
    "Community consultation report for the regional youth hub.\n\n"
    "Young people told us that the lack of youth support services after school "
    "is the biggest problem. Elders said that cultural programs on country give "
    "young people a strong sense of cultural identity and belonging. "
    '"We need a safe place where our kids can learn, play and stay connected '
    'to family," one parent explained during the workshop.\n\n'
    "Families reported barriers to service access including transport services and the "
    "cost of travel to the nearest health services. There is a shortage of "
    "crisis support programs in the region. Participants believe the council "
    "should establish a youth centre with training and employment pathways.\n\n"
    "The after-school program has been effective, with positive outcomes for "
    "school attendance. Community members felt that partnership with local "
    "government and community leadership will make the hub work long term."
)


class FakeCapability:
    """Deterministic language capability.

    Each chunk yields one theme named after its index plus a shared theme, one
    quote, one insight and a keyword. Chunk indexes in *fail_on* raise
    ``CapabilityError``.
    """

    def __init__(
        self,
        fail_on: set[int] | None = None,
        fail_all: bool = False,
        summary: str = "Regenerated summary.",
        summary_error: bool = False,
    ) -> None:
        self.fail_on = set(fail_on or ())
        self.fail_all = fail_all
        self.summary = summary
        self.summary_error = summary_error
        self.calls: list[int] = []
        self.contexts: list[dict[str, Any]] = []
        self.summarize_calls = 0
        self._lock = threading.Lock()

    def analyze_chunk(self, text: str, context: Mapping[str, Any]) -> dict[str, Any]:
        index = int(context["chunk_index"])
        with self._lock:
            self.calls.append(index)
            self.contexts.append(dict(context))
        if self.fail_all or index in self.fail_on:
            raise CapabilityError(f"chunk {index} unavailable", transient=True)
        return {
            "summary": f"Summary of chunk {index}.",
            "themes": [
                {
                    "name": f"Theme {index}",
                    "confidence": 0.5,
                    "evidence": f"evidence {index}",
                },
                {"name": "Shared", "confidence": 0.1 * (index + 1), "evidence": f"e{index}"},
            ],
            "quotes": [
                {
                    "text": f"Quote from chunk {index}",
                    "speaker": "Elder",
                    "confidence": 0.7,
                }
            ],
            "insights": [
                {"text": f"Insight {index}", "category": "service_gap", "importance": index + 1}
            ],
            "keywords": [{"term": "youth", "frequency": 2}],
        }

    def summarize(self, full_text: str, title: str) -> str:
        self.summarize_calls += 1
        if self.summary_error:
            raise CapabilityError("summary unavailable", transient=True)
        return self.summary


class FakeClock:
    """Manually advanced clock; ``sleep`` advances it instead of blocking."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class RecordingExecutor:
    """Records the order jobs start in and returns the job's document id."""

    def __init__(self) -> None:
        self.started: list[str] = []
        self._lock = threading.Lock()

    def execute(self, job) -> str:
        with self._lock:
            self.started.append(job.document_id)
        return job.document_id


class BlockingExecutor:
    """Blocks every job until ``release`` is set; tracks peak concurrency."""

    def __init__(self) -> None:
        self.release = threading.Event()
        self.started: list[str] = []
        self.running = 0
        self.peak = 0
        self._lock = threading.Lock()
        self._started = threading.Condition(self._lock)

    def execute(self, job) -> str:
        with self._lock:
            self.started.append(job.document_id)
            self.running += 1
            self.peak = max(self.peak, self.running)
            self._started.notify_all()
        try:
            self.release.wait(timeout=10)
        finally:
            with self._lock:
                self.running -= 1
        return job.document_id

    def wait_started(self, count: int, timeout: float = 5.0) -> bool:
        with self._started:
            return self._started.wait_for(lambda: len(self.started) >= count, timeout)


class FailingExecutor:
    def execute(self, job):
        raise RuntimeError(f"cannot process {job.document_id}")


@pytest.fixture
def sample_report() -> str:
    return SAMPLE_REPORT


@pytest.fixture
def fake_capability() -> FakeCapability:
    return FakeCapability()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def blocking_executor():
    executor = BlockingExecutor()
    yield executor
    executor.release.set()


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    """Keep INSIGHT_* variables from the host out of cached settings."""
    from insight_pipeline.config import get_settings

    for name in (
        "INSIGHT_LLM_BASE_URL",
        "INSIGHT_LLM_MODEL",
        "INSIGHT_LLM_API_KEY",
        "INSIGHT_SUMMARY_POLICY",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
