"""Tests for the PageSpeed and LLM clients and the rate limiter.

All network access is mocked.
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from site_auditor.integrations.google_pagespeed import PAGESPEED_API_URL, PageSpeedInsights
from site_auditor.integrations.llm_client import LLMClient, ResponseCache, UsageStats, parse_json_response
from site_auditor.utils.rate_limiter import RateLimiter

SAMPLE_PSI = {
    "lighthouseResult": {
        "categories": {"performance": {"score": 0.72}},
        "audits": {
            "first-contentful-paint": {"numericValue": 1234.56},
            "largest-contentful-paint": {"numericValue": 2890.04},
            "cumulative-layout-shift": {"numericValue": 0.04567},
            "server-response-time": {"numericValue": 310.0},
            "render-blocking-resources": {
                "title": "Eliminate render-blocking resources",
                "score": 0.3,
                "details": {"type": "opportunity", "overallSavingsMs": 450},
            },
            "unused-javascript": {
                "title": "Reduce unused JavaScript",
                "details": {"type": "opportunity", "overallSavingsMs": 900},
            },
            "uses-http2": {"details": {"type": "opportunity", "overallSavingsMs": 0}},
        },
    },
    "loadingExperience": {"metrics": {"FIRST_INPUT_DELAY_MS": {"percentile": 18}}},
}


def _response(status, json_data=None):
    request = httpx.Request("GET", PAGESPEED_API_URL)
    return httpx.Response(status, json=json_data if json_data is not None else {}, request=request)


@pytest.fixture()
def psi():
    return PageSpeedInsights(api_key="test-key", requests_per_minute=100, backoff_seconds=0)


# ---------------------------------------------------------------------------
# PageSpeed
# ---------------------------------------------------------------------------

class TestPageSpeedInsights:
    """Response parsing, retries and failure handling."""

    @pytest.mark.asyncio
    async def test_analyze_url(self, psi):
        psi._request_with_retry = AsyncMock(return_value=SAMPLE_PSI)
        result = await psi.analyze_url("https://example.com/")
        assert result["performance_score"] == 72.0
        assert result["metrics"] == {"fcp": 1234.6, "lcp": 2890.0, "cls": 0.046, "ttfb": 310.0}
        assert result["field_fid"] == 18.0
        assert [o["id"] for o in result["opportunities"]] == ["unused-javascript", "render-blocking-resources"]
        params = psi._request_with_retry.call_args.args[2]
        assert params["key"] == "test-key"
        assert params["strategy"] == "mobile"

    @pytest.mark.asyncio
    async def test_performance_signals(self, psi):
        psi._request_with_retry = AsyncMock(return_value=SAMPLE_PSI)
        signals = await psi.get_performance_signals("https://example.com/")
        assert signals.source == "pagespeed"
        assert signals.lcp == 2890.0
        assert signals.fid == 18.0
        assert len(signals.opportunities) == 2

    @pytest.mark.asyncio
    async def test_api_error_returns_none(self, psi):
        psi._request_with_retry = AsyncMock(side_effect=httpx.ConnectError("down"))
        assert await psi.get_performance_signals("https://example.com/") is None

    @pytest.mark.asyncio
    async def test_empty_result_returns_none(self, psi):
        psi._request_with_retry = AsyncMock(return_value={})
        assert await psi.get_performance_signals("https://example.com/") is None

    @pytest.mark.asyncio
    async def test_retries_after_429(self, psi):
        client = MagicMock()
        client.get = AsyncMock(side_effect=[_response(429), _response(200, {"ok": True})])
        data = await psi._request_with_retry(client, PAGESPEED_API_URL, {})
        assert data == {"ok": True}
        assert client.get.await_count == 2

    @pytest.mark.asyncio
    async def test_timeout_retries_exhausted(self, psi):
        client = MagicMock()
        client.get = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        with pytest.raises(httpx.TimeoutException):
            await psi._request_with_retry(client, PAGESPEED_API_URL, {})
        assert client.get.await_count == 4

    @pytest.mark.asyncio
    async def test_server_error_raises(self, psi):
        client = MagicMock()
        client.get = AsyncMock(return_value=_response(500))
        with pytest.raises(httpx.HTTPStatusError):
            await psi._request_with_retry(client, PAGESPEED_API_URL, {})

    def test_keyless_limits(self, monkeypatch):
        monkeypatch.delenv("PAGESPEED_API_KEY", raising=False)
        client = PageSpeedInsights()
        assert client._limiter._limit == 3


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

class TestRateLimiter:
    def test_rejects_zero_limit(self):
        with pytest.raises(ValueError):
            RateLimiter(0)

    @pytest.mark.asyncio
    async def test_counts_requests_in_window(self):
        limiter = RateLimiter(requests_per_minute=3, name="test")
        for _ in range(3):
            async with limiter:
                pass
        assert limiter.requests_in_window == 3
        assert limiter.wait_time() > 0

    @pytest.mark.asyncio
    async def test_window_expires(self):
        limiter = RateLimiter(requests_per_minute=1, window=0.05)
        await limiter.acquire()
        await limiter.acquire()
        assert limiter.requests_in_window <= 1


# ---------------------------------------------------------------------------
# LLM client
# ---------------------------------------------------------------------------

class TestParseJsonResponse:
    def test_plain_json(self):
        assert parse_json_response('{"a": 1}') == {"a": 1}

    def test_code_fence(self):
        assert parse_json_response('```json\n{"a": [1, 2]}\n```') == {"a": [1, 2]}

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_json_response("Sure! Here are some competitors.")


class TestResponseCache:
    def test_keyed_by_provider(self):
        cache = ResponseCache()
        cache.set("openai", "prompt", "system", "answer")
        assert cache.get("openai", "prompt", "system") == "answer"
        assert cache.get("gemini", "prompt", "system") is None

    def test_evicts_oldest(self):
        cache = ResponseCache(max_size=1)
        cache.set("openai", "one", "", "1")
        cache.set("openai", "two", "", "2")
        assert cache.get("openai", "one", "") is None
        assert cache.get("openai", "two", "") == "2"

    def test_expired_entries(self):
        cache = ResponseCache(ttl_hours=0)
        cache.set("openai", "p", "", "v")
        assert cache.get("openai", "p", "") is None


class TestLLMClient:
    """Provider availability, caching and JSON parsing."""

    @pytest.fixture()
    def no_keys(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    def test_unconfigured(self, no_keys):
        client = LLMClient()
        assert not client.is_available("openai")
        assert not client.is_available("gemini")
        assert not client.is_available("claude")

    @pytest.mark.asyncio
    async def test_unconfigured_provider_raises(self, no_keys):
        with pytest.raises(RuntimeError):
            await LLMClient().generate_text("hi", provider="openai")

    @pytest.mark.asyncio
    async def test_unknown_provider(self, no_keys):
        with pytest.raises(ValueError):
            await LLMClient().generate_text("hi", provider="llama")

    @pytest.mark.asyncio
    async def test_generate_json_cached(self, no_keys):
        client = LLMClient(openai_api_key="sk-test")
        client._call_openai = AsyncMock(return_value='```json\n{"competitors": []}\n```')
        first = await client.generate_json("find rivals", provider="openai")
        second = await client.generate_json("find rivals", provider="openai")
        assert first == second == {"competitors": []}
        assert client._call_openai.await_count == 1

    @pytest.mark.asyncio
    async def test_cache_disabled(self, no_keys):
        client = LLMClient(openai_api_key="sk-test", cache_enabled=False)
        client._call_openai = AsyncMock(return_value="ok")
        await client.generate_text("p")
        await client.generate_text("p")
        assert client._call_openai.await_count == 2

    def test_usage_summary(self, no_keys):
        client = LLMClient()
        cost = client.usage.add_usage(1000, 1000)
        assert cost == pytest.approx(0.00075)
        assert client.get_usage_summary()["total_requests"] == 1


class TestUsageStats:
    def test_accumulates(self):
        stats = UsageStats()
        stats.add_usage(10, 20)
        stats.add_usage(5, 5)
        assert (stats.total_input_tokens, stats.total_output_tokens, stats.total_requests) == (15, 25, 2)
