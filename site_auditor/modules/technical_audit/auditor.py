"""Technical SEO auditor: orchestrates crawl, analysis and scoring.

Brings together SiteCrawler, PageSpeedInsights and the competitor analyzer
to produce a scored, actionable ``AuditResult``.  An audit moves through
``PENDING -> CRAWLING -> AGGREGATING -> SCORED -> DONE``; it can only fail
while crawling.
"""

import logging
import time
import uuid
from dataclasses import replace
from typing import Optional

from site_auditor.errors import FetchError, RenderSubsystemUnavailable, RootUnreachableError
from site_auditor.integrations.google_pagespeed import PageSpeedInsights
from site_auditor.integrations.llm_client import LLMClient
from site_auditor.models.audit import AuditRequest, AuditResult, AuditState, CrawlTarget, TierLimits
from site_auditor.models.competitor import CompetitorReport
from site_auditor.models.page import PageSignals, PerformanceSignals
from site_auditor.modules.competitor_analysis.analyzer import CompetitorAnalyzer, aggregate_keywords
from site_auditor.modules.technical_audit.canonicalizer import UrlCanonicalizer
from site_auditor.modules.technical_audit.crawler import SiteCrawler
from site_auditor.modules.technical_audit.duplicates import DuplicateDetector
from site_auditor.modules.technical_audit.fetcher import PageFetcher
from site_auditor.modules.technical_audit.issues import detect_issues, image_alt_findings
from site_auditor.modules.technical_audit.link_graph import LinkGraphBuilder
from site_auditor.modules.technical_audit.performance import validate_metrics
from site_auditor.modules.technical_audit.scoring import ScoringEngine

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Audit state machine
# ---------------------------------------------------------------------------

_TRANSITIONS: dict[AuditState, frozenset] = {
    AuditState.PENDING: frozenset({AuditState.CRAWLING}),
    AuditState.CRAWLING: frozenset({AuditState.AGGREGATING, AuditState.FAILED}),
    AuditState.AGGREGATING: frozenset({AuditState.SCORED}),
    AuditState.SCORED: frozenset({AuditState.DONE}),
    AuditState.DONE: frozenset(),
    AuditState.FAILED: frozenset(),
}


class AuditStateMachine:
    """Tracks one audit's lifecycle and rejects illegal transitions."""

    def __init__(self) -> None:
        self.state = AuditState.PENDING
        self.history: list[AuditState] = [AuditState.PENDING]

    def advance(self, new_state: AuditState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal audit transition {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)


def merge_performance(
    browser: Optional[PerformanceSignals], lab: PerformanceSignals
) -> PerformanceSignals:
    """PageSpeed values win; browser values fill the gaps."""
    if browser is None:
        return lab
    return replace(
        lab,
        lcp=lab.lcp if lab.lcp is not None else browser.lcp,
        fcp=lab.fcp if lab.fcp is not None else browser.fcp,
        cls=lab.cls if lab.cls is not None else browser.cls,
        fid=lab.fid if lab.fid is not None else browser.fid,
        ttfb=lab.ttfb if lab.ttfb is not None else browser.ttfb,
    )


# ---------------------------------------------------------------------------
# TechnicalAuditor
# ---------------------------------------------------------------------------

class TechnicalAuditor:
    """Run a full site audit for one ``AuditRequest``."""

    def __init__(
        self,
        fetcher: PageFetcher,
        canonicalizer: Optional[UrlCanonicalizer] = None,
        pagespeed_client: Optional[PageSpeedInsights] = None,
        llm_client: Optional[LLMClient] = None,
        competitor_analyzer: Optional[CompetitorAnalyzer] = None,
        concurrency: int = 3,
        check_site_files: bool = True,
        scoring_engine: Optional[ScoringEngine] = None,
    ) -> None:
        self._fetcher = fetcher
        self._canon = canonicalizer or UrlCanonicalizer()
        self._psi = pagespeed_client
        self._competitors = competitor_analyzer or CompetitorAnalyzer(
            fetcher, self._canon, llm_client=llm_client
        )
        self._concurrency = concurrency
        self._check_site_files = check_site_files
        self._scoring = scoring_engine or ScoringEngine()

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def run_audit(self, request: AuditRequest) -> AuditResult:
        """Audit ``request.url`` within the limits of its tier.

        Raises:
            RootUnreachableError: the root URL cannot be fetched.
            RenderSubsystemUnavailable: rendering is required but unavailable.
        """
        machine = AuditStateMachine()
        limits = request.limits()
        audit_id = uuid.uuid4().hex
        start = time.monotonic()
        logger.info("Starting %s audit %s for %s", request.tier.value, audit_id, request.url)

        # --- Stage 1: Crawl ---
        machine.advance(AuditState.CRAWLING)
        try:
            target = await self._resolve_target(request.url)
            crawler = SiteCrawler(
                self._fetcher,
                self._canon,
                max_pages=limits.max_pages,
                max_depth=limits.max_depth,
                concurrency=self._concurrency,
                audit_timeout=limits.audit_timeout,
                keyword_limit=limits.keyword_count,
                check_site_files=self._check_site_files,
            )
            outcome = await crawler.crawl(target)
        except (RootUnreachableError, RenderSubsystemUnavailable) as exc:
            machine.advance(AuditState.FAILED)
            logger.error("Audit %s failed: %s", audit_id, exc)
            raise

        # --- Stage 2: Aggregate ---
        machine.advance(AuditState.AGGREGATING)
        pages = list(outcome.pages)
        homepage = self._homepage_url(pages, target)
        pages = await self._attach_pagespeed(pages, homepage)
        pages, warnings = self._validate_performance(pages)

        issues = detect_issues(pages, outcome.site_wide, schema_analysis=limits.schema_analysis)
        issues.extend(DuplicateDetector(self._canon, target).detect(pages).issues)

        link_graph = None
        if limits.link_graph:
            graph = LinkGraphBuilder().build(pages, homepage=homepage)
            link_graph = graph.nodes
            issues.extend(graph.issues)

        # --- Stage 3: Score ---
        machine.advance(AuditState.SCORED)
        scores = self._scoring.score(issues, pages, outcome.site_wide)
        issues.extend(self._scoring.meta_issues(scores, pages))

        # --- Stage 4: Extras ---
        site_keywords = aggregate_keywords(pages, limits.keyword_count)
        competitor_report = None
        if limits.max_competitors > 0:
            competitor_report = await self._analyze_competitors(request, limits, target, site_keywords)
        findings = image_alt_findings(pages) if request.add_ons.image_alt_tags else []

        diagnostics = replace(outcome.diagnostics, validation_warnings=tuple(warnings))
        machine.advance(AuditState.DONE)
        result = AuditResult(
            audit_id=audit_id,
            request=request,
            target=target,
            pages=tuple(pages),
            issues=tuple(issues),
            scores=scores,
            diagnostics=diagnostics,
            site_wide=outcome.site_wide,
            link_graph=link_graph,
            competitor_report=competitor_report,
            site_keywords=tuple(site_keywords),
            image_alt_findings=tuple(findings),
            state=machine.state,
        )
        logger.info(
            "Audit complete for %s: overall=%.1f, %d issues, %d pages in %.1fs",
            target.final_url,
            scores.overall,
            len(issues),
            len(pages),
            time.monotonic() - start,
        )
        return result

    async def close(self) -> None:
        await self._fetcher.close()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _resolve_target(self, url: str) -> CrawlTarget:
        try:
            resolution = await self._canon.follow_redirects(url)
        except FetchError as exc:
            raise RootUnreachableError(url, exc.reason) from exc
        return self._canon.build_target(url, resolution.final_url, resolution.chain)

    def _homepage_url(self, pages: list[PageSignals], target: CrawlTarget) -> Optional[str]:
        root = self._canon.normalize(target.final_url, target)
        if any(p.url == root for p in pages):
            return root
        return pages[0].url if pages else None

    async def _attach_pagespeed(self, pages: list[PageSignals], homepage: Optional[str]) -> list[PageSignals]:
        if self._psi is None or homepage is None:
            return pages
        lab = await self._psi.get_performance_signals(homepage)
        if lab is None:
            logger.info("No PageSpeed data for %s; using browser metrics", homepage)
            return pages
        return [
            replace(p, performance=merge_performance(p.performance, lab)) if p.url == homepage else p
            for p in pages
        ]

    @staticmethod
    def _validate_performance(pages: list[PageSignals]) -> tuple[list[PageSignals], list[str]]:
        validated: list[PageSignals] = []
        warnings: list[str] = []
        for page in pages:
            if page.performance is None:
                validated.append(page)
                continue
            checked = validate_metrics(page.performance)
            warnings.extend(f"{page.url}: {w}" for w in checked.warnings)
            validated.append(page if checked is page.performance else replace(page, performance=checked))
        return validated, warnings

    async def _analyze_competitors(
        self,
        request: AuditRequest,
        limits: TierLimits,
        target: CrawlTarget,
        site_keywords: list[str],
    ) -> CompetitorReport:
        urls = list(request.competitor_urls[: limits.max_competitors])
        provider = "user" if urls else None
        if not urls:
            suggestion = await self._competitors.suggest_competitors(site_keywords, target.root_domain)
            urls = list(suggestion.competitors[: limits.max_competitors])
            provider = suggestion.provider
        return await self._competitors.analyze(site_keywords, urls, suggestion_provider=provider)
