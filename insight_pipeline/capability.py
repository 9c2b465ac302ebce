"""Clients for the external language and embedding capabilities."""

from __future__ import annotations

import collections
import json
import logging
import re
import threading
import time
from typing import Any, Callable, Mapping, Optional, Protocol

import httpx

from .errors import CapabilityError
from .utils import EMBEDDING_MODEL, SUMMARY_CONTEXT_CHARS

log = logging.getLogger(__name__)


class LanguageCapability(Protocol):
    def analyze_chunk(self, text: str, context: Mapping[str, Any]) -> dict[str, Any]: ...

    def summarize(self, full_text: str, title: str) -> str: ...


class EmbeddingCapability(Protocol):
    def embed(self, text: str) -> list[float]: ...


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class RateLimiter:
    """Sliding one-minute window shared by every thread calling a capability."""

    WINDOW_SECONDS = 60.0

    def __init__(
        self,
        requests_per_minute: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be > 0")
        self.requests_per_minute = requests_per_minute
        self._clock = clock
        self._sleep = sleep
        self._calls: collections.deque[float] = collections.deque()
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.WINDOW_SECONDS:
            self._calls.popleft()

    def acquire(self, timeout: Optional[float] = None) -> None:
        """Take a slot, blocking until one frees.

        Raises a transient ``CapabilityError`` when no slot frees within
        *timeout* seconds.
        """
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            with self._lock:
                now = self._clock()
                self._purge(now)
                if len(self._calls) < self.requests_per_minute:
                    self._calls.append(now)
                    return
                wait = self._calls[0] + self.WINDOW_SECONDS - now

            if deadline is not None:
                remaining = deadline - now
                if remaining <= 0 or wait > remaining:
                    raise CapabilityError(
                        f"rate limit of {self.requests_per_minute}/min exhausted",
                        transient=True,
                    )
            log.debug("Rate limit reached; waiting %.2fs for a slot", wait)
            self._sleep(max(wait, 0.0))

    @property
    def in_window(self) -> int:
        with self._lock:
            self._purge(self._clock())
            return len(self._calls)


# ---------------------------------------------------------------------------
# Chat-completion language capability
# ---------------------------------------------------------------------------

ANALYSIS_PROMPT = """You analyze sections of community documents.
Return ONLY one JSON object, with no text before or after it, shaped as:
{
  "summary": "2-3 sentence summary of the section",
  "themes": [{"name": "...", "confidence": 0.0-1.0, "evidence": "supporting text"}],
  "quotes": [{"text": "exact quote", "speaker": "who said it or null",
              "context": "...", "significance": "...", "confidence": 0.0-1.0}],
  "keywords": [{"term": "...", "frequency": 1, "category": "..."}],
  "insights": [{"text": "...", "category": "...", "importance": 1-10}]
}
Use empty lists when nothing applies."""

SUMMARY_PROMPT = (
    "Summarize the document in one or two short paragraphs. "
    "Focus on the main themes, community needs and recommendations. "
    "Return plain text only."
)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

_TRANSIENT_STATUS = {408, 425, 429}


def _is_transient_status(status_code: int) -> bool:
    return status_code in _TRANSIENT_STATUS or status_code >= 500


def parse_json_object(content: str) -> dict[str, Any]:
    """Extract the JSON object from a model reply, tolerating code fences."""
    cleaned = _FENCE.sub("", content.strip())
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end < start:
        raise CapabilityError("capability reply contains no JSON object")
    try:
        payload = json.loads(cleaned[start : end + 1])
    except ValueError as exc:
        raise CapabilityError(f"capability reply is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise CapabilityError("capability reply is not a JSON object")
    return payload


class ChatCompletionCapability:
    """OpenAI-compatible ``/chat/completions`` client."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 60.0,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._rate_limiter = rate_limiter

    @property
    def model(self) -> str:
        return self._model

    def analyze_chunk(self, text: str, context: Mapping[str, Any]) -> dict[str, Any]:
        header = []
        if context.get("title"):
            header.append(f"Document: {context['title']}")
        if context.get("chunk_index") is not None:
            header.append(
                f"Section {int(context['chunk_index']) + 1} "
                f"of {context.get('total_chunks', '?')}"
            )
        user = "\n".join(header + ["", text])
        content = self._chat_completion(system=ANALYSIS_PROMPT, user=user)
        return parse_json_object(content)

    def summarize(self, full_text: str, title: str) -> str:
        user = f"Title: {title}\n\n{full_text[:SUMMARY_CONTEXT_CHARS]}"
        return self._chat_completion(system=SUMMARY_PROMPT, user=user)

    def _chat_completion(self, *, system: str, user: str) -> str:
        if self._rate_limiter is not None:
            self._rate_limiter.acquire(timeout=self._timeout_seconds)

        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            response = httpx.post(
                f"{self._base_url}/chat/completions",
                json={
                    "model": self._model,
                    "messages": [
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                    "temperature": 0,
                },
                headers=headers,
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            raise CapabilityError(
                f"chat completion failed with HTTP {status_code}",
                transient=_is_transient_status(status_code),
            ) from exc
        except httpx.HTTPError as exc:
            raise CapabilityError(
                f"chat completion request failed: {exc}", transient=True
            ) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise CapabilityError("chat completion response is not JSON") from exc

        choices = payload.get("choices") if isinstance(payload, dict) else None
        if not isinstance(choices, list) or not choices:
            raise CapabilityError("Invalid chat completion payload: missing choices")

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise CapabilityError(
                "Invalid chat completion payload: missing assistant content"
            )
        return content.strip()


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------


class FastEmbedEmbedder:
    """Local FastEmbed model, loaded on first use."""

    def __init__(
        self, model_name: str = EMBEDDING_MODEL, threads: Optional[int] = None
    ) -> None:
        self.model_name = model_name
        self.threads = threads
        self._model: Any = None
        self._lock = threading.Lock()

    def _load(self) -> Any:
        with self._lock:
            if self._model is None:
                from fastembed import TextEmbedding

                log.info("Loading embedding model %s ...", self.model_name)
                self._model = TextEmbedding(self.model_name, threads=self.threads)
            return self._model

    def embed_many(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            vectors = list(self._load().embed(texts))
        except Exception as exc:
            raise CapabilityError(f"embedding failed: {exc}") from exc
        return [[float(value) for value in vector] for vector in vectors]

    def embed(self, text: str) -> list[float]:
        return self.embed_many([text])[0]
