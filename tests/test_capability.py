"""Tests for the chat-completion client and the rate limiter."""

from __future__ import annotations

import json

import httpx
import pytest

from insight_pipeline.capability import (
    ChatCompletionCapability,
    RateLimiter,
    parse_json_object,
)
from insight_pipeline.errors import CapabilityError


class _FakeResponse:
    def __init__(self, payload, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("POST", "http://llm.test/v1/chat/completions")
            response = httpx.Response(self.status_code, request=request)
            raise httpx.HTTPStatusError("boom", request=request, response=response)

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def _reply(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _capability(**kwargs) -> ChatCompletionCapability:
    return ChatCompletionCapability(
        base_url="http://llm.test/v1/", model="test-model", **kwargs
    )


class TestParseJsonObject:
    def test_plain_object(self):
        assert parse_json_object('{"themes": []}') == {"themes": []}

    def test_code_fenced(self):
        content = '```json\n{"summary": "ok", "themes": []}\n```'
        assert parse_json_object(content)["summary"] == "ok"

    def test_surrounding_prose(self):
        assert parse_json_object('Here you go: {"a": 1} hope it helps') == {"a": 1}

    @pytest.mark.parametrize("content", ["no json here", "{not: valid}", "[1, 2]"])
    def test_invalid_raises_terminal(self, content):
        with pytest.raises(CapabilityError) as excinfo:
            parse_json_object(content)
        assert excinfo.value.transient is False


class TestChatCompletionCapability:
    def test_analyze_chunk_posts_and_parses(self, monkeypatch):
        captured = {}

        def fake_post(url, *, json, headers, timeout):
            captured.update(url=url, json=json, headers=headers, timeout=timeout)
            return _FakeResponse(_reply('{"summary": "s", "themes": []}'))

        monkeypatch.setattr("insight_pipeline.capability.httpx.post", fake_post)

        payload = _capability(api_key="secret").analyze_chunk(
            "chunk body", {"title": "Report", "chunk_index": 0, "total_chunks": 3}
        )

        assert payload == {"summary": "s", "themes": []}
        assert captured["url"] == "http://llm.test/v1/chat/completions"
        assert captured["json"]["model"] == "test-model"
        assert captured["headers"]["Authorization"] == "Bearer secret"
        user = captured["json"]["messages"][1]["content"]
        assert "Document: Report" in user
        assert "Section 1 of 3" in user
        assert user.endswith("chunk body")

    def test_no_auth_header_without_key(self, monkeypatch):
        seen = {}

        def fake_post(url, *, json, headers, timeout):
            seen.update(headers)
            return _FakeResponse(_reply("plain summary"))

        monkeypatch.setattr("insight_pipeline.capability.httpx.post", fake_post)
        assert _capability().summarize("text", "Title") == "plain summary"
        assert "Authorization" not in seen

    def test_summarize_truncates_input(self, monkeypatch):
        sent = {}

        def fake_post(url, *, json, headers, timeout):
            sent["user"] = json["messages"][1]["content"]
            return _FakeResponse(_reply("summary"))

        monkeypatch.setattr("insight_pipeline.capability.httpx.post", fake_post)
        _capability().summarize("x" * 20_000, "Big")
        assert sent["user"].count("x") == 8000

    @pytest.mark.parametrize(
        "status_code, transient",
        [(429, True), (503, True), (408, True), (400, False), (401, False)],
    )
    def test_http_errors_classified(self, monkeypatch, status_code, transient):
        monkeypatch.setattr(
            "insight_pipeline.capability.httpx.post",
            lambda url, **kwargs: _FakeResponse({}, status_code=status_code),
        )
        with pytest.raises(CapabilityError) as excinfo:
            _capability().analyze_chunk("text", {})
        assert excinfo.value.transient is transient

    def test_transport_error_is_transient(self, monkeypatch):
        def fake_post(url, **kwargs):
            raise httpx.ConnectError("connection refused")

        monkeypatch.setattr("insight_pipeline.capability.httpx.post", fake_post)
        with pytest.raises(CapabilityError) as excinfo:
            _capability().analyze_chunk("text", {})
        assert excinfo.value.transient is True

    @pytest.mark.parametrize(
        "payload",
        [{}, {"choices": []}, _reply("   "), json.JSONDecodeError("bad", "x", 0)],
    )
    def test_malformed_reply_is_terminal(self, monkeypatch, payload):
        monkeypatch.setattr(
            "insight_pipeline.capability.httpx.post",
            lambda url, **kwargs: _FakeResponse(payload),
        )
        with pytest.raises(CapabilityError) as excinfo:
            _capability().analyze_chunk("text", {})
        assert excinfo.value.transient is False

    def test_uses_rate_limiter(self, monkeypatch, fake_clock):
        monkeypatch.setattr(
            "insight_pipeline.capability.httpx.post",
            lambda url, **kwargs: _FakeResponse(_reply("{}")),
        )
        limiter = RateLimiter(5, clock=fake_clock, sleep=fake_clock.sleep)
        capability = _capability(rate_limiter=limiter)
        capability.analyze_chunk("a", {})
        capability.analyze_chunk("b", {})
        assert limiter.in_window == 2


class TestRateLimiter:
    def test_allows_up_to_limit_without_waiting(self, fake_clock):
        limiter = RateLimiter(3, clock=fake_clock, sleep=fake_clock.sleep)
        for _ in range(3):
            limiter.acquire()
        assert fake_clock.sleeps == []
        assert limiter.in_window == 3

    def test_waits_for_oldest_slot(self, fake_clock):
        limiter = RateLimiter(2, clock=fake_clock, sleep=fake_clock.sleep)
        limiter.acquire()
        fake_clock.advance(10)
        limiter.acquire()
        limiter.acquire()
        assert fake_clock.sleeps == [50.0]

    def test_timeout_raises_transient(self, fake_clock):
        limiter = RateLimiter(1, clock=fake_clock, sleep=fake_clock.sleep)
        limiter.acquire()
        with pytest.raises(CapabilityError) as excinfo:
            limiter.acquire(timeout=5)
        assert excinfo.value.transient is True
        assert fake_clock.sleeps == []

    def test_window_slides(self, fake_clock):
        limiter = RateLimiter(1, clock=fake_clock, sleep=fake_clock.sleep)
        limiter.acquire()
        fake_clock.advance(60)
        assert limiter.in_window == 0

    def test_rejects_non_positive_limit(self):
        with pytest.raises(ValueError):
            RateLimiter(0)
