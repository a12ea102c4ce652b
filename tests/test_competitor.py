"""Tests for competitor suggestions and keyword gap analysis."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from site_auditor.errors import CompetitorCrawlFailure, RenderSubsystemUnavailable
from site_auditor.models.competitor import CompetitorCrawl
from site_auditor.modules.competitor_analysis import CompetitorAnalyzer, SuggestionChain
from site_auditor.modules.competitor_analysis.analyzer import aggregate_keywords
from site_auditor.modules.competitor_analysis.suggestions import (
    GeminiProvider,
    IndustryTaxonomyProvider,
    OpenAIProvider,
    PatternGuessProvider,
    pattern_keywords,
)

from conftest import FakeFetcher, html_page


def _crawl(url, keywords):
    return CompetitorCrawl(url=url, ok=True, pages_crawled=2, keywords=tuple(keywords))


@pytest.fixture()
def analyzer(no_redirect_canonicalizer):
    return CompetitorAnalyzer(FakeFetcher({}), no_redirect_canonicalizer)


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------

class TestPatternKeywords:
    def test_topics_times_patterns(self):
        result = pattern_keywords(["seo audit tool", "crawler"])
        assert result[:3] == ["seo audit best practices", "seo audit how to guide", "seo audit getting started"]
        assert "crawler best practices" in result
        assert len(result) == 6

    def test_limit_and_empty(self):
        assert len(pattern_keywords(["a b", "c d", "e f", "g h"], limit=4)) == 4
        assert pattern_keywords([]) == []


class TestProviders:
    """Each provider in isolation."""

    @pytest.mark.asyncio
    async def test_llm_provider(self, mock_llm_client):
        result = await OpenAIProvider(mock_llm_client).suggest(["seo audit"], "example.com")
        assert result.ok
        assert result.provider == "openai"
        assert result.competitors == ("https://rival-one.com", "https://rival-two.com")
        assert result.keywords == ("seo audit tool", "site health check")

    @pytest.mark.asyncio
    async def test_llm_provider_not_configured(self, mock_llm_client):
        mock_llm_client.is_available.return_value = False
        result = await GeminiProvider(mock_llm_client).suggest(["seo"], "example.com")
        assert not result.ok
        mock_llm_client.generate_json.assert_not_called()

    @pytest.mark.asyncio
    async def test_llm_provider_error(self, mock_llm_client):
        mock_llm_client.generate_json.side_effect = RuntimeError("quota exceeded")
        result = await OpenAIProvider(mock_llm_client).suggest(["seo"], "example.com")
        assert not result.ok
        assert "quota" in result.error

    @pytest.mark.asyncio
    async def test_llm_provider_filters_own_domain(self, mock_llm_client):
        mock_llm_client.generate_json.return_value = {
            "competitors": ["https://example.com/blog", "rival.com", 42],
            "keywords": [],
        }
        result = await OpenAIProvider(mock_llm_client).suggest(["seo"], "example.com")
        assert not result.ok

    def test_taxonomy_classify(self):
        industry, hits = IndustryTaxonomyProvider().classify(["seo audit", "search engine ranking"])
        assert industry == "SEO & Marketing Agency"
        assert hits == 4

    @pytest.mark.asyncio
    async def test_taxonomy_excludes_own_site(self):
        result = await IndustryTaxonomyProvider().suggest(["seo audit", "ranking checker"], "moz.com")
        assert result.ok
        assert "https://moz.com" not in result.competitors
        assert "https://ahrefs.com" in result.competitors

    @pytest.mark.asyncio
    async def test_taxonomy_needs_enough_hits(self):
        result = await IndustryTaxonomyProvider().suggest(["quantum widgets"], "example.com")
        assert not result.ok

    @pytest.mark.asyncio
    async def test_pattern_always_ok(self):
        result = await PatternGuessProvider().suggest(["garden tools"], "example.com")
        assert result.ok
        assert result.competitors == ()
        assert result.keywords[0] == "garden tools best practices"


class TestSuggestionChain:
    """The first successful provider wins."""

    @pytest.mark.asyncio
    async def test_llm_first(self, mock_llm_client):
        result = await SuggestionChain.default(mock_llm_client).suggest(["seo audit"], "example.com")
        assert result.provider == "openai"

    @pytest.mark.asyncio
    async def test_falls_back_to_gemini(self, mock_llm_client):
        mock_llm_client.is_available.side_effect = lambda provider: provider == "gemini"
        result = await SuggestionChain.default(mock_llm_client).suggest(["seo audit"], "example.com")
        assert result.provider == "gemini"

    @pytest.mark.asyncio
    async def test_offline_taxonomy(self):
        result = await SuggestionChain.default(None).suggest(["fitness workout", "nutrition"], "example.com")
        assert result.provider == "taxonomy"
        assert "https://healthline.com" in result.competitors

    @pytest.mark.asyncio
    async def test_offline_pattern(self):
        result = await SuggestionChain.default(None).suggest(["zebra knitting"], "example.com")
        assert result.provider == "pattern"
        assert result.competitors == ()

    def test_empty_chain_rejected(self):
        with pytest.raises(ValueError):
            SuggestionChain([])


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

class TestAggregateKeywords:
    def test_counts_pages_not_occurrences(self, make_page):
        pages = [
            make_page("https://example.com/", keywords=("audit", "seo", "seo")),
            make_page("https://example.com/a", keywords=("seo", "crawler")),
        ]
        assert aggregate_keywords(pages, 2) == ["seo", "audit"]


class TestCompetitorAnalyzer:
    """Confidence, gap rules and the fallback path."""

    @pytest.mark.asyncio
    async def test_shared_and_gap_keywords(self, analyzer):
        crawls = {
            "https://a.com": _crawl("https://a.com", ["seo", "backlinks", "rank tracker"]),
            "https://b.com": _crawl("https://b.com", ["seo", "backlinks", "local seo"]),
            "https://c.com": _crawl("https://c.com", ["rank tracker", "backlinks"]),
        }
        analyzer.crawl_competitor = AsyncMock(side_effect=lambda url: crawls[url])
        report = await analyzer.analyze(["SEO", "audit"], list(crawls))
        assert report.shared_keywords == ("seo",)
        assert report.gap_keywords == ("backlinks", "rank tracker")
        assert report.confidence == 1.0
        assert not report.degraded
        assert report.fallback_source is None

    @pytest.mark.asyncio
    async def test_single_competitor_gap_needs_one(self, analyzer):
        analyzer.crawl_competitor = AsyncMock(return_value=_crawl("https://a.com", ["pricing", "seo"]))
        report = await analyzer.analyze(["seo"], ["https://a.com"])
        assert report.gap_keywords == ("pricing",)

    @pytest.mark.asyncio
    async def test_partial_failure_degrades(self, analyzer):
        async def crawl(url):
            if url == "https://ok.com":
                return _crawl(url, ["seo"])
            raise CompetitorCrawlFailure(url, "timeout")

        analyzer.crawl_competitor = crawl
        report = await analyzer.analyze(["seo"], ["https://ok.com", "https://down1.com", "https://down2.com"])
        assert report.confidence == 0.33
        assert report.degraded
        failed = [c for c in report.competitor_crawls if not c.ok]
        assert {c.error for c in failed} == {"timeout"}

    @pytest.mark.asyncio
    async def test_all_failed_uses_labelled_fallback(self, analyzer):
        analyzer.crawl_competitor = AsyncMock(side_effect=CompetitorCrawlFailure("x", "dns"))
        report = await analyzer.analyze(["garden tools"], ["https://a.com", "https://b.com"])
        assert report.confidence == 0.0
        assert report.degraded
        assert report.gap_keywords == ()
        assert report.fallback_source == "pattern"
        assert report.fallback_keywords[0] == "garden tools best practices"

    @pytest.mark.asyncio
    async def test_duplicate_urls_crawled_once(self, analyzer):
        analyzer.crawl_competitor = AsyncMock(return_value=_crawl("https://a.com", []))
        await analyzer.analyze([], ["https://a.com", " https://a.com ", ""])
        assert analyzer.crawl_competitor.await_count == 1

    @pytest.mark.asyncio
    async def test_suggest_delegates_to_chain(self, no_redirect_canonicalizer):
        chain = MagicMock()
        chain.suggest = AsyncMock(return_value="sentinel")
        analyzer = CompetitorAnalyzer(FakeFetcher({}), no_redirect_canonicalizer, suggestion_chain=chain)
        assert await analyzer.suggest_competitors(["seo"], "example.com") == "sentinel"


class TestCrawlCompetitor:
    """Small real crawl through the shared crawler."""

    @pytest.mark.asyncio
    async def test_crawls_few_pages(self, no_redirect_canonicalizer):
        fetcher = FakeFetcher({
            "https://rival.com/": html_page(title="Rival home page", body='<a href="/p1">p1</a><a href="/p2">p2</a>'),
            "https://rival.com/p1": html_page(title="Rival page one", body='<a href="/deep">deep</a>'),
            "https://rival.com/p2": html_page(title="Rival page two"),
            "https://rival.com/deep": html_page(title="Too deep"),
        })
        analyzer = CompetitorAnalyzer(fetcher, no_redirect_canonicalizer)
        crawl = await analyzer.crawl_competitor("rival.com")
        assert crawl.ok
        assert crawl.pages_crawled == 3
        assert "Too deep" not in crawl.titles
        assert "https://rival.com/deep" not in fetcher.requested

    @pytest.mark.asyncio
    async def test_unreachable_competitor(self, no_redirect_canonicalizer):
        analyzer = CompetitorAnalyzer(FakeFetcher({}), no_redirect_canonicalizer)
        with pytest.raises(CompetitorCrawlFailure):
            await analyzer.crawl_competitor("https://gone.example")

    @pytest.mark.asyncio
    async def test_render_subsystem_failure_is_a_failed_crawl(self, no_redirect_canonicalizer):
        fetcher = FakeFetcher({
            "https://rival.com/": html_page(title="Rival home page"),
            "https://spa.example/": RenderSubsystemUnavailable("browser could not be launched"),
        })
        analyzer = CompetitorAnalyzer(fetcher, no_redirect_canonicalizer)
        report = await analyzer.analyze(["seo"], ["https://rival.com", "https://spa.example"])
        crawls = {c.url: c for c in report.competitor_crawls}
        assert crawls["https://rival.com"].ok
        assert not crawls["https://spa.example"].ok
        assert "browser could not be launched" in crawls["https://spa.example"].error
        assert report.confidence == 0.5
        assert report.degraded
