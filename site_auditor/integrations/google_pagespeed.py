"""Google PageSpeed Insights integration for Core Web Vitals and opportunities."""

import asyncio
import logging
import os
from typing import Any, Optional

import httpx

from site_auditor.models.page import PerformanceSignals
from site_auditor.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"

_METRIC_KEYS = {
    "fcp": "first-contentful-paint",
    "lcp": "largest-contentful-paint",
    "cls": "cumulative-layout-shift",
    "ttfb": "server-response-time",
}


class PageSpeedInsights:
    """Lab Core Web Vitals for the homepage of an audit.

    Usage::

        signals = await PageSpeedInsights().get_performance_signals("https://example.com/")
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        requests_per_minute: Optional[int] = None,
        timeout: int = 120,
        max_retries: int = 3,
        backoff_seconds: float = 30.0,
    ):
        self._api_key = api_key or os.getenv("PAGESPEED_API_KEY", "")
        # Google is strict with keyless traffic
        rpm = requests_per_minute if requests_per_minute is not None else (10 if self._api_key else 3)
        self._limiter = RateLimiter(requests_per_minute=rpm, name="pagespeed")
        self._timeout = timeout
        self._max_retries = max_retries
        self._backoff = backoff_seconds

        if not self._api_key:
            logger.warning(
                "No PAGESPEED_API_KEY set. Using the keyless tier with strict rate limits."
            )

    async def _request_with_retry(
        self,
        client: httpx.AsyncClient,
        url: str,
        params: dict,
    ) -> dict:
        """GET with exponential backoff on 429 responses and timeouts."""
        for attempt in range(self._max_retries + 1):
            try:
                async with self._limiter:
                    response = await client.get(url, params=params)
                if response.status_code == 429 and attempt < self._max_retries:
                    wait = self._backoff * (2 ** attempt)
                    logger.warning(
                        "PageSpeed 429 Too Many Requests. Retry %d/%d in %.0fs...",
                        attempt + 1, self._max_retries, wait,
                    )
                    await asyncio.sleep(wait)
                    continue
                response.raise_for_status()
                return response.json()
            except httpx.TimeoutException:
                if attempt < self._max_retries:
                    wait = self._backoff / 3 * (2 ** attempt)
                    logger.warning(
                        "PageSpeed timeout. Retry %d/%d in %.0fs...",
                        attempt + 1, self._max_retries, wait,
                    )
                    await asyncio.sleep(wait)
                    continue
                raise
        return {}

    async def analyze_url(self, url: str, strategy: str = "mobile") -> dict[str, Any]:
        """Run a performance analysis on *url*.

        Raises:
            httpx.HTTPError: the API could not be reached or refused the request.
        """
        params: dict[str, Any] = {"url": url, "strategy": strategy, "category": ["performance"]}
        if self._api_key:
            params["key"] = self._api_key

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            data = await self._request_with_retry(client, PAGESPEED_API_URL, params)

        lighthouse = data.get("lighthouseResult", {})
        audits = lighthouse.get("audits", {})
        perf = lighthouse.get("categories", {}).get("performance", {})
        result = {
            "url": url,
            "strategy": strategy,
            "performance_score": round((perf.get("score") or 0) * 100, 1),
            "metrics": self._extract_metrics(audits),
            "field_fid": self._extract_field_fid(data),
            "opportunities": self._extract_opportunities(audits),
        }
        logger.info("PageSpeed %s score for %s: %.0f", strategy, url, result["performance_score"])
        return result

    async def get_performance_signals(self, url: str, strategy: str = "mobile") -> Optional[PerformanceSignals]:
        """Performance signals for *url*, or ``None`` when the API fails."""
        try:
            analysis = await self.analyze_url(url, strategy=strategy)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("PageSpeed lookup failed for %s: %s", url, exc)
            return None
        metrics = analysis["metrics"]
        signals = PerformanceSignals(
            lcp=metrics.get("lcp"),
            fcp=metrics.get("fcp"),
            cls=metrics.get("cls"),
            fid=analysis.get("field_fid"),
            ttfb=metrics.get("ttfb"),
            opportunities=tuple(analysis["opportunities"]),
            source="pagespeed",
        )
        return signals if signals.is_usable else None

    @staticmethod
    def _extract_metrics(audits: dict) -> dict[str, Optional[float]]:
        metrics: dict[str, Optional[float]] = {}
        for name, key in _METRIC_KEYS.items():
            val = audits.get(key, {}).get("numericValue")
            metrics[name] = round(val, 3 if name == "cls" else 1) if val is not None else None
        return metrics

    @staticmethod
    def _extract_field_fid(data: dict) -> Optional[float]:
        fid = data.get("loadingExperience", {}).get("metrics", {}).get("FIRST_INPUT_DELAY_MS", {})
        value = fid.get("percentile")
        return float(value) if value is not None else None

    @staticmethod
    def _extract_opportunities(audits: dict) -> list[dict[str, Any]]:
        """Opportunity audits with positive savings, largest first."""
        found = [
            {
                "id": audit_id,
                "title": entry.get("title", audit_id),
                "description": entry.get("description", ""),
                "savings_ms": entry["details"].get("overallSavingsMs", 0),
                "score": entry.get("score"),
            }
            for audit_id, entry in audits.items()
            if entry.get("details", {}).get("type") == "opportunity"
            and entry["details"].get("overallSavingsMs", 0) > 0
        ]
        return sorted(found, key=lambda item: item["savings_ms"], reverse=True)
