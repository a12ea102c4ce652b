"""Tests for crawl orchestration, robots.txt parsing and platform detection."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from site_auditor.errors import FetchError, PageTimeoutError, RootUnreachableError
from site_auditor.models.audit import SiteWideSignals
from site_auditor.modules.technical_audit.crawler import (
    CrawlState,
    SiteCrawler,
    detect_platform,
    parse_robots_txt,
)
from site_auditor.modules.technical_audit.fetcher import PageFetcher, RawFetchResult, RenderPool

from conftest import FakeFetcher, html_page

ROOT = "https://example.com/"


def _links(*hrefs):
    return "".join(f'<a href="{h}">link {i}</a>' for i, h in enumerate(hrefs))


def _crawler(fetcher, canonicalizer, **kwargs):
    kwargs.setdefault("check_site_files", False)
    return SiteCrawler(fetcher, canonicalizer, **kwargs)


class SlowFetcher(FakeFetcher):
    """Never answers for URLs ending in /slow."""

    async def retrieve(self, url):
        if url.endswith("/slow"):
            await asyncio.sleep(30)
        return await super().retrieve(url)


class StalledRenderPool(RenderPool):
    """Render pool whose browser never becomes free."""

    async def acquire(self):
        await asyncio.sleep(10)

    async def release(self, session):
        return None

    async def health_check(self):
        return True


class TestCrawlState:
    """Frontier bookkeeping."""

    def test_enqueue_dedupes(self):
        state = CrawlState()
        assert state.enqueue("https://example.com/a", 1)
        assert not state.enqueue("https://example.com/a", 2)
        assert state.next_url() == ("https://example.com/a", 1)
        assert state.next_url() is None

    def test_visited_not_requeued(self):
        state = CrawlState()
        state.visited.add("https://example.com/a")
        assert not state.enqueue("https://example.com/a", 1)


class TestSiteCrawler:
    """Crawl behaviour against an in-memory site."""

    @pytest.mark.asyncio
    async def test_crawls_internal_links_once(self, canonicalizer, target):
        fetcher = FakeFetcher({
            ROOT: html_page(body=_links("/about", "/blog?b=1&a=2", "/blog?a=2&b=1", "https://other.org/")),
            "https://example.com/about": html_page(body=_links("/")),
            "https://example.com/blog?a=2&b=1": html_page(),
        })
        outcome = await _crawler(fetcher, canonicalizer).crawl(target)
        urls = {p.url for p in outcome.pages}
        assert urls == {ROOT, "https://example.com/about", "https://example.com/blog?a=2&b=1"}
        assert len(fetcher.requested) == len(set(fetcher.requested)) == 3
        assert outcome.diagnostics.status == "success"

    @pytest.mark.asyncio
    async def test_error_pages_skipped(self, canonicalizer, target):
        fetcher = FakeFetcher({
            ROOT: html_page(body=_links("/missing", "/ok", "/broken")),
            "https://example.com/missing": (404, "<html>Not found</html>"),
            "https://example.com/ok": html_page(),
        })
        outcome = await _crawler(fetcher, canonicalizer).crawl(target)
        reasons = {s.url: (s.reason, s.status_code) for s in outcome.diagnostics.skipped}
        assert reasons["https://example.com/missing"] == ("http_error", 404)
        assert reasons["https://example.com/broken"] == ("fetch_error", None)
        assert outcome.diagnostics.error_pages == 1
        assert outcome.diagnostics.status == "partial"
        assert {p.url for p in outcome.pages} == {ROOT, "https://example.com/ok"}

    @pytest.mark.asyncio
    async def test_page_timeout_skipped(self, canonicalizer, target):
        fetcher = FakeFetcher({
            ROOT: html_page(body=_links("/slow")),
            "https://example.com/slow": PageTimeoutError("https://example.com/slow", 45.0),
        })
        outcome = await _crawler(fetcher, canonicalizer).crawl(target)
        assert outcome.diagnostics.skipped[0].reason == "page_timeout"

    @pytest.mark.asyncio
    async def test_non_html_skipped(self, canonicalizer, target):
        fetcher = FakeFetcher({
            ROOT: html_page(body=_links("/file.pdf")),
            "https://example.com/file.pdf": (200, "%PDF-1.4", "application/pdf"),
        })
        outcome = await _crawler(fetcher, canonicalizer).crawl(target)
        assert outcome.diagnostics.skipped[0].reason == "non_html"
        assert len(outcome.pages) == 1

    @pytest.mark.asyncio
    async def test_redirect_to_crawled_page_skipped(self, canonicalizer, target):
        fetcher = FakeFetcher(
            {
                ROOT: html_page(body=_links("/old")),
                "https://example.com/old": html_page(),
            },
            redirects={"https://example.com/old": "https://example.com/"},
        )
        outcome = await _crawler(fetcher, canonicalizer).crawl(target)
        assert [p.url for p in outcome.pages] == [ROOT]
        assert outcome.diagnostics.skipped[0].reason == "duplicate_redirect"

    @pytest.mark.asyncio
    async def test_redirect_off_site_skipped(self, canonicalizer, target):
        fetcher = FakeFetcher(
            {
                ROOT: html_page(body=_links("/go", "/about")),
                "https://example.com/go": html_page(title="Landing page elsewhere"),
                "https://example.com/about": html_page(),
            },
            redirects={"https://example.com/go": "https://other-site.org/landing"},
        )
        outcome = await _crawler(fetcher, canonicalizer).crawl(target)
        assert {p.url for p in outcome.pages} == {ROOT, "https://example.com/about"}
        skipped = {s.url: s.reason for s in outcome.diagnostics.skipped}
        assert skipped == {"https://example.com/go": "external_redirect"}

    @pytest.mark.asyncio
    async def test_root_redirecting_off_site(self, canonicalizer, target):
        fetcher = FakeFetcher({ROOT: html_page()}, redirects={ROOT: "https://other-site.org/"})
        with pytest.raises(RootUnreachableError):
            await _crawler(fetcher, canonicalizer).crawl(target)

    @pytest.mark.asyncio
    async def test_page_budget(self, canonicalizer, target):
        pages = {ROOT: html_page(body=_links(*[f"/p{i}" for i in range(10)]))}
        pages.update({f"https://example.com/p{i}": html_page() for i in range(10)})
        outcome = await _crawler(FakeFetcher(pages), canonicalizer, max_pages=3).crawl(target)
        assert len(outcome.pages) == 3

    @pytest.mark.asyncio
    async def test_attempts_capped(self, canonicalizer, target):
        fetcher = FakeFetcher({ROOT: html_page(body=_links(*[f"/gone{i}" for i in range(10)]))})
        outcome = await _crawler(fetcher, canonicalizer, max_pages=2).crawl(target)
        assert len(outcome.pages) == 1
        assert len(fetcher.requested) == 6

    @pytest.mark.asyncio
    async def test_depth_limit(self, canonicalizer, target):
        fetcher = FakeFetcher({
            ROOT: html_page(body=_links("/a")),
            "https://example.com/a": html_page(body=_links("/a/b")),
            "https://example.com/a/b": html_page(),
        })
        outcome = await _crawler(fetcher, canonicalizer, max_depth=1).crawl(target)
        assert {p.url for p in outcome.pages} == {ROOT, "https://example.com/a"}

    @pytest.mark.asyncio
    async def test_root_fetch_failure(self, canonicalizer, target):
        fetcher = FakeFetcher({ROOT: FetchError(ROOT, "dns failure")})
        with pytest.raises(RootUnreachableError):
            await _crawler(fetcher, canonicalizer).crawl(target)

    @pytest.mark.asyncio
    async def test_root_error_status(self, canonicalizer, target):
        fetcher = FakeFetcher({ROOT: (503, "<html>down</html>")})
        with pytest.raises(RootUnreachableError):
            await _crawler(fetcher, canonicalizer).crawl(target)

    @pytest.mark.asyncio
    async def test_slow_root_render_falls_back_to_raw_html(self, canonicalizer, target):
        fetcher = PageFetcher(render_pool=StalledRenderPool(), page_timeout=0.3)
        fetcher.fetch = AsyncMock(return_value=RawFetchResult(
            url=ROOT,
            final_url=ROOT,
            status_code=200,
            html=html_page(title="Raw title of the home page"),
            content_type="text/html",
        ))
        outcome = await _crawler(fetcher, canonicalizer).crawl(target)
        assert [p.url for p in outcome.pages] == [ROOT]
        assert outcome.pages[0].title.text == "Raw title of the home page"
        assert outcome.diagnostics.degraded_pages == 1

    @pytest.mark.asyncio
    async def test_audit_timeout_keeps_partial_results(self, canonicalizer, target):
        fetcher = SlowFetcher({
            ROOT: html_page(body=_links("/fast", "/slow")),
            "https://example.com/fast": html_page(),
            "https://example.com/slow": html_page(),
        })
        outcome = await _crawler(fetcher, canonicalizer, audit_timeout=0.5).crawl(target)
        assert {p.url for p in outcome.pages} == {ROOT, "https://example.com/fast"}
        assert outcome.diagnostics.timed_out
        assert outcome.diagnostics.skipped[0].reason == "audit_timeout"
        assert outcome.diagnostics.status == "partial"

    @pytest.mark.asyncio
    async def test_platform_detected_from_root(self, canonicalizer, target):
        head = '<link rel="stylesheet" href="/wp-content/themes/x/style.css">'
        fetcher = FakeFetcher({ROOT: html_page(head=head)})
        outcome = await _crawler(fetcher, canonicalizer).crawl(target)
        assert outcome.diagnostics.platform == "wordpress"

    @pytest.mark.asyncio
    async def test_transport_signals_from_root(self, canonicalizer):
        target = canonicalizer.build_target("example.com", ROOT, ("http://example.com/", "http://www.example.com/"))
        fetcher = FakeFetcher(
            {ROOT: html_page(body=_links("/a")), "https://example.com/a": html_page()},
            headers={"Strict-Transport-Security": "max-age=600", "Content-Encoding": "gzip"},
        )
        outcome = await _crawler(fetcher, canonicalizer).crawl(target)
        transport = outcome.site_wide.transport
        assert transport.final_url == ROOT
        assert transport.https and transport.hsts and transport.compressed
        assert not transport.cache_control
        assert len(transport.redirect_chain) == 2

    @pytest.mark.asyncio
    async def test_robots_disallow_all_audits_root_only(self, canonicalizer, target):
        fetcher = FakeFetcher({
            ROOT: html_page(body=_links("/a")),
            "https://example.com/a": html_page(),
        })
        crawler = SiteCrawler(fetcher, canonicalizer, check_site_files=True)
        crawler.check_site_files = AsyncMock(return_value=SiteWideSignals(
            files_checked=True, robots_txt_exists=True, disallowed_paths=("/",), robots_disallow_all=True,
        ))
        outcome = await crawler.crawl(target)
        assert [p.url for p in outcome.pages] == [ROOT]
        assert outcome.diagnostics.robots_disallow_all
        assert outcome.site_wide.robots_txt_exists

    def test_concurrency_clamped(self, canonicalizer):
        assert SiteCrawler(FakeFetcher({}), canonicalizer, concurrency=50).concurrency == 5
        assert SiteCrawler(FakeFetcher({}), canonicalizer, concurrency=0).concurrency == 1


class TestRobotsTxt:
    """robots.txt parsing."""

    def test_disallow_all(self):
        parsed = parse_robots_txt("User-agent: *\nDisallow: /\n")
        assert parsed["disallow_all"]

    def test_specific_paths_and_sitemaps(self):
        text = (
            "# comment\n"
            "User-agent: *\n"
            "Disallow: /admin\n"
            "Allow: /admin/public\n"
            "Crawl-delay: 2\n"
            "\n"
            "User-agent: BadBot\n"
            "Disallow: /\n"
            "Sitemap: https://example.com/sitemap.xml\n"
        )
        parsed = parse_robots_txt(text, user_agent="SiteAuditorBot/1.0")
        assert parsed["disallowed_paths"] == ["/admin"]
        assert parsed["allowed_paths"] == ["/admin/public"]
        assert parsed["crawl_delay"] == 2.0
        assert parsed["sitemaps"] == ["https://example.com/sitemap.xml"]
        assert not parsed["disallow_all"]

    def test_empty_disallow_allows_everything(self):
        parsed = parse_robots_txt("User-agent: *\nDisallow:\n")
        assert parsed["disallowed_paths"] == []
        assert not parsed["disallow_all"]


class TestPlatformDetection:
    """CMS fingerprints."""

    @pytest.mark.parametrize(
        "html, expected",
        [
            ('<script src="https://cdn.shopify.com/s/x.js"></script>', "shopify"),
            ('<img src="https://static.wixstatic.com/media/a.png">', "wix"),
            ('<meta name="generator" content="WordPress 6.4">', "wordpress"),
            ("<html><body>hand made</body></html>", "custom"),
        ],
    )
    def test_fingerprints(self, html, expected):
        assert detect_platform(html) == expected

    def test_header_fingerprint(self):
        assert detect_platform("<html></html>", {"X-ShopId": "123"}) == "shopify"
