"""Crawl orchestration for a single audit.

A ``SiteCrawler`` owns one ``CrawlState`` per crawl: the FIFO frontier, the
visited set and the results.  Fetches for distinct URLs run concurrently as
asyncio tasks, but only the coordinating loop in ``crawl`` touches the
state.  Pages are recorded in completion order.
"""

import asyncio
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Optional
from urllib.parse import urljoin
from xml.etree import ElementTree as ET

import aiohttp

from site_auditor.errors import (
    FetchError,
    PageTimeoutError,
    RedirectLoopError,
    RootUnreachableError,
)
from site_auditor.models.audit import CrawlDiagnostics, CrawlTarget, SiteWideSignals, SkippedPage, TransportSignals
from site_auditor.models.page import PageSignals
from site_auditor.modules.technical_audit.canonicalizer import UrlCanonicalizer
from site_auditor.modules.technical_audit.extractor import PageSignalExtractor
from site_auditor.modules.technical_audit.fetcher import DEFAULT_USER_AGENT, FetchOutcome, PageFetcher
from site_auditor.modules.technical_audit.transport import inspect_transport

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_PLATFORM_FINGERPRINTS: list[tuple[str, re.Pattern]] = [
    ("wix", re.compile(r"static\.wixstatic\.com|wix\.com/|x-wix-|_wixCIDX|wix-bolt", re.I)),
    ("shopify", re.compile(r"cdn\.shopify\.com|Shopify\.theme|myshopify\.com|x-shopid", re.I)),
    ("squarespace", re.compile(r"static1\.squarespace\.com|squarespace\.com|Static\.SQUARESPACE_CONTEXT", re.I)),
    ("webflow", re.compile(r"assets\.website-files\.com|data-wf-page|generator\"?\s+content=\"Webflow", re.I)),
    ("wordpress", re.compile(r"wp-content/|wp-includes/|generator\"?\s+content=\"WordPress|wp-json", re.I)),
]

_SITEMAP_CANDIDATES = ("/sitemap.xml", "/sitemap_index.xml")
_SITEMAP_MAX_DEPTH = 2
# Fetch attempts (skipped pages included) are capped at this multiple of the page budget.
_ATTEMPT_FACTOR = 3


def detect_platform(html: str, headers: Optional[dict[str, str]] = None) -> str:
    """Fingerprint the CMS that produced *html*; ``custom`` when unknown."""
    haystack = html[:300_000]
    if headers:
        haystack += "\n" + "\n".join(f"{k}: {v}" for k, v in headers.items())
    for name, pattern in _PLATFORM_FINGERPRINTS:
        if pattern.search(haystack):
            return name
    return "custom"


def parse_robots_txt(text: str, user_agent: str = "*") -> dict[str, Any]:
    """Parse robots.txt rules that apply to ``*`` or *user_agent*."""
    result: dict[str, Any] = {
        "disallowed_paths": [],
        "allowed_paths": [],
        "sitemaps": [],
        "crawl_delay": None,
        "disallow_all": False,
    }
    agent_token = user_agent.split("/")[0].lower()
    group_agents: list[str] = []
    in_rules = False
    for raw_line in text.splitlines():
        line = raw_line.split("#")[0].strip()
        if not line or ":" not in line:
            continue
        key, value = line.split(":", 1)
        key, value = key.strip().lower(), value.strip()
        if key == "user-agent":
            # consecutive user-agent lines share one group
            if in_rules:
                group_agents, in_rules = [], False
            group_agents.append(value.lower())
            continue
        if key == "sitemap":
            if value:
                result["sitemaps"].append(value)
            continue
        in_rules = True
        applies = any(a == "*" or (a and a in agent_token) for a in group_agents)
        if not applies:
            continue
        if key == "disallow" and value:
            result["disallowed_paths"].append(value)
            if value == "/" and "*" in group_agents:
                result["disallow_all"] = True
        elif key == "allow" and value:
            result["allowed_paths"].append(value)
        elif key == "crawl-delay":
            try:
                result["crawl_delay"] = float(value)
            except ValueError:
                logger.debug("Ignoring invalid crawl-delay %r", value)
    return result


# ---------------------------------------------------------------------------
# Crawl state
# ---------------------------------------------------------------------------

@dataclass
class CrawlState:
    """Mutable state of one crawl, owned by the coordinating loop."""

    frontier: deque = field(default_factory=deque)
    visited: set[str] = field(default_factory=set)
    queued: set[str] = field(default_factory=set)
    in_flight: dict[asyncio.Task, tuple[str, int]] = field(default_factory=dict)
    pages: list[PageSignals] = field(default_factory=list)
    skipped: list[SkippedPage] = field(default_factory=list)
    platform: str = "custom"
    transport: Optional[TransportSignals] = None
    degraded_pages: int = 0
    timed_out: bool = False
    started: float = field(default_factory=time.monotonic)

    def enqueue(self, url: str, depth: int) -> bool:
        if url in self.visited or url in self.queued:
            return False
        self.queued.add(url)
        self.frontier.append((url, depth))
        return True

    def next_url(self) -> Optional[tuple[str, int]]:
        while self.frontier:
            url, depth = self.frontier.popleft()
            self.queued.discard(url)
            if url not in self.visited:
                return url, depth
        return None

    def skip(self, url: str, reason: str, status_code: Optional[int] = None) -> None:
        self.skipped.append(SkippedPage(url=url, reason=reason, status_code=status_code))


@dataclass(frozen=True)
class CrawlOutcome:
    pages: tuple[PageSignals, ...]
    diagnostics: CrawlDiagnostics
    site_wide: SiteWideSignals


# ---------------------------------------------------------------------------
# SiteCrawler
# ---------------------------------------------------------------------------

class SiteCrawler:
    """Bounded-concurrency crawler feeding the extractor."""

    def __init__(
        self,
        fetcher: PageFetcher,
        canonicalizer: UrlCanonicalizer,
        max_pages: int = 20,
        max_depth: int = 3,
        concurrency: int = 3,
        audit_timeout: float = 300.0,
        keyword_limit: int = 20,
        check_site_files: bool = True,
        request_timeout: int = 15,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self._fetcher = fetcher
        self._canon = canonicalizer
        self.max_pages = max(max_pages, 1)
        self.max_depth = max_depth
        self.concurrency = min(max(concurrency, 1), 5)
        self.audit_timeout = audit_timeout
        self._keyword_limit = keyword_limit
        self._check_site_files = check_site_files
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._user_agent = user_agent

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def crawl(self, target: CrawlTarget) -> CrawlOutcome:
        """Crawl *target* and return analysed pages plus diagnostics.

        Raises:
            RootUnreachableError: the root page could not be fetched or
                answered with an error status.
        """
        state = CrawlState()
        extractor = PageSignalExtractor(self._canon, target, keyword_limit=self._keyword_limit)
        site_wide = SiteWideSignals()
        max_pages = self.max_pages
        if self._check_site_files:
            site_wide = await self.check_site_files(target)
            if site_wide.robots_disallow_all:
                logger.info("robots.txt disallows all crawling; auditing the root page only")
                max_pages = 1

        root = self._canon.normalize(target.final_url, target)
        state.enqueue(root, 0)
        deadline = state.started + self.audit_timeout
        logger.info("Crawl started for %s (budget %d pages)", root, max_pages)

        try:
            await self._run_loop(state, extractor, target, root, max_pages, deadline)
        finally:
            await self._cancel_in_flight(state)
        site_wide = replace(site_wide, transport=state.transport)

        diagnostics = CrawlDiagnostics(
            pages_crawled=len(state.pages),
            pages_skipped=len(state.skipped),
            error_pages=sum(1 for s in state.skipped if s.reason == "http_error"),
            skipped=tuple(state.skipped),
            disallowed_paths=site_wide.disallowed_paths,
            robots_disallow_all=site_wide.robots_disallow_all,
            platform=state.platform,
            degraded_pages=state.degraded_pages,
            timed_out=state.timed_out,
            duration=round(time.monotonic() - state.started, 2),
        )
        logger.info(
            "Crawl complete: %d pages, %d skipped in %.1fs",
            diagnostics.pages_crawled,
            diagnostics.pages_skipped,
            diagnostics.duration,
        )
        return CrawlOutcome(pages=tuple(state.pages), diagnostics=diagnostics, site_wide=site_wide)

    # ------------------------------------------------------------------
    # Coordinating loop
    # ------------------------------------------------------------------

    async def _run_loop(
        self,
        state: CrawlState,
        extractor: PageSignalExtractor,
        target: CrawlTarget,
        root: str,
        max_pages: int,
        deadline: float,
    ) -> None:
        while state.frontier or state.in_flight:
            while (
                len(state.in_flight) < self.concurrency
                and len(state.pages) + len(state.in_flight) < max_pages
                and len(state.pages) + len(state.skipped) + len(state.in_flight) < max_pages * _ATTEMPT_FACTOR
            ):
                nxt = state.next_url()
                if nxt is None:
                    break
                url, depth = nxt
                state.visited.add(url)
                task = asyncio.create_task(self._fetcher.retrieve(url))
                state.in_flight[task] = (url, depth)

            if not state.in_flight:
                break

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                state.timed_out = True
                break
            done, _ = await asyncio.wait(
                set(state.in_flight), timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            if not done:
                logger.warning("Audit timeout reached after %d pages; keeping partial results", len(state.pages))
                state.timed_out = True
                break
            for task in done:
                url, depth = state.in_flight.pop(task)
                self._handle_result(state, extractor, target, task, url, depth, is_root=(url == root))

    def _handle_result(
        self,
        state: CrawlState,
        extractor: PageSignalExtractor,
        target: CrawlTarget,
        task: asyncio.Task,
        url: str,
        depth: int,
        is_root: bool,
    ) -> None:
        try:
            outcome: FetchOutcome = task.result()
        except PageTimeoutError as exc:
            if is_root:
                raise RootUnreachableError(url, exc.reason) from exc
            logger.warning("Page timed out: %s", url)
            state.skip(url, "page_timeout")
            return
        except RedirectLoopError as exc:
            if is_root:
                raise RootUnreachableError(url, exc.reason) from exc
            logger.info("Dropping %s: %s", url, exc.reason)
            state.skip(url, "redirect_loop")
            return
        except FetchError as exc:
            if is_root:
                raise RootUnreachableError(url, exc.reason) from exc
            logger.warning("Fetch failed for %s: %s", url, exc.reason)
            state.skip(url, "fetch_error")
            return

        if outcome.status_code >= 400:
            if is_root:
                raise RootUnreachableError(url, f"HTTP {outcome.status_code}")
            logger.info("Skipping error page %s (HTTP %d)", url, outcome.status_code)
            state.skip(url, "http_error", outcome.status_code)
            return
        if not outcome.raw.is_html:
            if is_root:
                raise RootUnreachableError(url, f"non-HTML response ({outcome.raw.content_type})")
            state.skip(url, "non_html", outcome.status_code)
            return

        final = self._canon.normalize(outcome.final_url, target)
        if not self._canon.is_internal(final, target.root_domain):
            if is_root:
                raise RootUnreachableError(url, f"redirected off-site to {final}")
            logger.info("Dropping %s: redirects off-site to %s", url, final)
            state.skip(url, "external_redirect", outcome.status_code)
            return
        if final != url:
            if final in state.visited or any(p.url == final for p in state.pages):
                state.skip(url, "duplicate_redirect", outcome.status_code)
                return
            state.visited.add(final)

        if is_root:
            state.platform = detect_platform(outcome.raw.html, outcome.raw.headers)
            state.transport = inspect_transport(outcome.raw, target)
        if outcome.rendering_degraded:
            state.degraded_pages += 1

        signals = extractor.extract(outcome)
        state.pages.append(signals)

        if depth >= self.max_depth:
            return
        for link in signals.links.internal:
            state.enqueue(link, depth + 1)

    @staticmethod
    async def _cancel_in_flight(state: CrawlState) -> None:
        if not state.in_flight:
            return
        tasks = list(state.in_flight)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for task in tasks:
            url, _ = state.in_flight.pop(task)
            state.skip(url, "audit_timeout" if state.timed_out else "cancelled")

    # ------------------------------------------------------------------
    # robots.txt and sitemap
    # ------------------------------------------------------------------

    async def check_site_files(self, target: CrawlTarget) -> SiteWideSignals:
        robots = await self.check_robots_txt(target)
        sitemap = await self.check_sitemap(target, robots.get("sitemaps", []))
        return SiteWideSignals(
            files_checked=True,
            robots_txt_exists=robots["exists"],
            sitemap_exists=sitemap["found"],
            sitemap_url_count=sitemap["total_urls"],
            disallowed_paths=tuple(robots["disallowed_paths"]),
            robots_disallow_all=robots["disallow_all"],
        )

    async def _get_text(self, url: str) -> Optional[str]:
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(url, headers={"User-Agent": self._user_agent}, ssl=False) as resp:
                    if resp.status != 200:
                        logger.debug("%s returned %d", url, resp.status)
                        return None
                    return await resp.text(errors="replace")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Error fetching %s: %s", url, exc)
            return None

    async def check_robots_txt(self, target: CrawlTarget) -> dict[str, Any]:
        """Fetch and parse robots.txt for the target host."""
        url = urljoin(target.root_url, "/robots.txt")
        text = await self._get_text(url)
        if text is None:
            return {"exists": False, "disallowed_paths": [], "sitemaps": [], "disallow_all": False}
        result = parse_robots_txt(text, self._user_agent)
        result["exists"] = True
        logger.info(
            "robots.txt: %d disallowed, %d sitemaps",
            len(result["disallowed_paths"]),
            len(result["sitemaps"]),
        )
        return result

    async def check_sitemap(self, target: CrawlTarget, declared: Optional[list[str]] = None) -> dict[str, Any]:
        """Locate XML sitemaps and count the URLs they list."""
        result: dict[str, Any] = {"found": False, "total_urls": 0, "sitemaps": [], "errors": []}
        candidates = list(declared or []) + [urljoin(target.root_url, p) for p in _SITEMAP_CANDIDATES]
        for sm_url in dict.fromkeys(candidates):
            await self._parse_sitemap(sm_url, result)
            if result["total_urls"]:
                break
        result["found"] = bool(result["sitemaps"])
        logger.info("Sitemap: %d URLs across %d sitemaps", result["total_urls"], len(result["sitemaps"]))
        return result

    async def _parse_sitemap(self, url: str, result: dict[str, Any], depth: int = 0) -> None:
        if depth > _SITEMAP_MAX_DEPTH or url in result["sitemaps"]:
            return
        xml_text = await self._get_text(url)
        if xml_text is None:
            return
        try:
            root = ET.fromstring(xml_text.encode("utf-8"))
        except ET.ParseError as exc:
            result["errors"].append(f"XML parse error for {url}: {exc}")
            return

        result["sitemaps"].append(url)
        tag = root.tag.split("}")[-1]
        locs = [
            (el.text or "").strip()
            for el in root.iter()
            if el.tag.split("}")[-1] == "loc" and el.text
        ]
        if tag == "sitemapindex":
            for child in locs:
                await self._parse_sitemap(child, result, depth + 1)
        else:
            result["total_urls"] += len(locs)
