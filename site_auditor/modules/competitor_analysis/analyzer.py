"""Competitor crawling and keyword gap analysis.

Each competitor gets a small crawl (``COMPETITOR_PAGE_LIMIT`` pages, depth 1)
through the same fetcher and extractor as the audited site.  Keywords found
on competitors are split into shared keywords (the site has them too) and
gap keywords (enough competitors use them, the site does not).
"""

import asyncio
import logging
from collections import Counter
from typing import Iterable, Optional, Sequence

from site_auditor.errors import AuditError, CompetitorCrawlFailure
from site_auditor.integrations.llm_client import LLMClient
from site_auditor.models.competitor import CompetitorCrawl, CompetitorReport, SuggestionResult
from site_auditor.models.page import PageSignals
from site_auditor.modules.competitor_analysis.suggestions import SuggestionChain, pattern_keywords
from site_auditor.modules.technical_audit.canonicalizer import UrlCanonicalizer
from site_auditor.modules.technical_audit.crawler import SiteCrawler
from site_auditor.modules.technical_audit.fetcher import PageFetcher

logger = logging.getLogger(__name__)

COMPETITOR_PAGE_LIMIT = 4
COMPETITOR_DEPTH = 1
MIN_CONFIDENCE = 0.6


def aggregate_keywords(pages: Iterable[PageSignals], limit: int) -> list[str]:
    """Most frequent keywords across *pages*; ties keep first-seen order."""
    counts: Counter = Counter()
    for page in pages:
        counts.update(dict.fromkeys(page.keywords, 1))
    return [kw for kw, _n in counts.most_common(limit)]


class CompetitorAnalyzer:
    """Crawl competitor sites and compare their keywords with the audited site."""

    def __init__(
        self,
        fetcher: PageFetcher,
        canonicalizer: UrlCanonicalizer,
        llm_client: Optional[LLMClient] = None,
        suggestion_chain: Optional[SuggestionChain] = None,
        page_limit: int = COMPETITOR_PAGE_LIMIT,
        crawl_timeout: float = 60.0,
        keyword_limit: int = 20,
        min_confidence: float = MIN_CONFIDENCE,
    ):
        self._fetcher = fetcher
        self._canon = canonicalizer
        self._chain = suggestion_chain or SuggestionChain.default(llm_client)
        self._page_limit = page_limit
        self._crawl_timeout = crawl_timeout
        self._keyword_limit = keyword_limit
        self._min_confidence = min_confidence

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    async def suggest_competitors(self, site_keywords: Sequence[str], domain: str) -> SuggestionResult:
        return await self._chain.suggest(site_keywords, domain)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def analyze(
        self,
        target_keywords: Sequence[str],
        competitor_urls: Sequence[str],
        suggestion_provider: Optional[str] = None,
    ) -> CompetitorReport:
        """Crawl every competitor and build the keyword comparison."""
        urls = list(dict.fromkeys(u.strip() for u in competitor_urls if u and u.strip()))
        logger.info("Analysing %d competitors", len(urls))
        crawls = list(await asyncio.gather(*(self._crawl_safely(u) for u in urls)))

        succeeded = [c for c in crawls if c.ok]
        confidence = round(len(succeeded) / len(urls), 2) if urls else 0.0
        degraded = confidence < self._min_confidence

        site_keywords = {kw.lower() for kw in target_keywords}
        shared, gaps = self._compare(site_keywords, succeeded)

        fallback: tuple[str, ...] = ()
        fallback_source = None
        if not succeeded:
            fallback = tuple(pattern_keywords(list(target_keywords)))
            fallback_source = "pattern"
            logger.warning("No competitor crawl succeeded; using pattern keyword suggestions")
        elif degraded:
            logger.warning(
                "Competitor analysis degraded: %d of %d crawls succeeded", len(succeeded), len(urls)
            )

        return CompetitorReport(
            competitor_crawls=tuple(crawls),
            shared_keywords=tuple(shared),
            gap_keywords=tuple(gaps),
            confidence=confidence,
            degraded=degraded,
            fallback_keywords=fallback,
            fallback_source=fallback_source,
            suggestion_provider=suggestion_provider,
        )

    @staticmethod
    def _compare(site_keywords: set[str], crawls: list[CompetitorCrawl]) -> tuple[list[str], list[str]]:
        usage: Counter = Counter()
        for crawl in crawls:
            usage.update(set(crawl.keywords))
        required = min(2, len(crawls))
        shared = sorted(kw for kw in usage if kw in site_keywords)
        gaps = [
            kw for kw, count in sorted(usage.items(), key=lambda item: (-item[1], item[0]))
            if count >= required and kw not in site_keywords
        ]
        return shared, gaps

    async def _crawl_safely(self, url: str) -> CompetitorCrawl:
        try:
            return await self.crawl_competitor(url)
        except CompetitorCrawlFailure as exc:
            logger.warning("%s", exc)
            return CompetitorCrawl(url=url, ok=False, error=exc.reason)

    async def crawl_competitor(self, url: str) -> CompetitorCrawl:
        """Crawl one competitor.

        Raises:
            CompetitorCrawlFailure: the site could not be reached, could not be
                rendered or yielded no pages.
        """
        raw = url if "://" in url else "https://" + url
        try:
            resolution = await self._canon.follow_redirects(raw)
            target = self._canon.build_target(raw, resolution.final_url)
            crawler = SiteCrawler(
                self._fetcher,
                self._canon,
                max_pages=self._page_limit,
                max_depth=COMPETITOR_DEPTH,
                audit_timeout=self._crawl_timeout,
                keyword_limit=self._keyword_limit,
                check_site_files=False,
            )
            outcome = await crawler.crawl(target)
        except AuditError as exc:
            raise CompetitorCrawlFailure(url, str(exc)) from exc

        pages = outcome.pages
        if not pages:
            raise CompetitorCrawlFailure(url, "no pages could be analysed")

        logger.info("Competitor %s: %d pages crawled", url, len(pages))
        return CompetitorCrawl(
            url=url,
            ok=True,
            pages_crawled=len(pages),
            keywords=tuple(aggregate_keywords(pages, self._keyword_limit)),
            titles=tuple(p.title.text for p in pages if p.title.text),
            avg_word_count=round(sum(p.word_count for p in pages) / len(pages), 1),
        )
