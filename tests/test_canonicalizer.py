"""Tests for URL canonicalization, classification and redirect resolution."""

from unittest.mock import AsyncMock

import aiohttp
import pytest

from site_auditor.errors import FetchError, RedirectLoopError
from site_auditor.modules.technical_audit.canonicalizer import MAX_REDIRECTS, UrlCanonicalizer


class TestNormalize:
    """Raw URL variants collapse onto one canonical key."""

    @pytest.mark.parametrize(
        "a, b",
        [
            ("http://example.com/page", "https://example.com/page"),
            ("https://www.example.com/page", "https://example.com/page"),
            ("https://example.com/page/", "https://example.com/page"),
            ("https://EXAMPLE.com/page", "https://example.com/page"),
            ("https://example.com/page?b=2&a=1", "https://example.com/page?a=1&b=2"),
            ("https://example.com/page?utm_source=x&gclid=1", "https://example.com/page"),
            ("https://example.com:443/page#section", "https://example.com/page"),
        ],
    )
    def test_equivalent_variants(self, canonicalizer, a, b):
        assert canonicalizer.normalize(a) == canonicalizer.normalize(b)

    def test_full_cleanup(self, canonicalizer):
        url = "http://www.Example.com/Page/?b=2&a=1&utm_source=news"
        assert canonicalizer.normalize(url) == "https://example.com/Page?a=1&b=2"

    def test_path_case_preserved_by_default(self, canonicalizer):
        assert canonicalizer.normalize("https://example.com/About") != canonicalizer.normalize(
            "https://example.com/about"
        )

    def test_case_fold_path_option(self):
        canon = UrlCanonicalizer(case_fold_path=True)
        assert canon.normalize("https://example.com/About") == "https://example.com/about"

    def test_meaningful_query_kept(self, canonicalizer):
        assert canonicalizer.normalize("https://example.com/list?page=2") == "https://example.com/list?page=2"

    def test_idempotent(self, canonicalizer, target):
        url = "http://www.example.com/a/b/?z=1&y=2&fbclid=abc"
        once = canonicalizer.normalize(url, target)
        assert canonicalizer.normalize(once, target) == once

    def test_bare_host_gets_https(self, canonicalizer):
        assert canonicalizer.normalize("example.com/x") == "https://example.com/x"

    def test_root_keeps_slash(self, canonicalizer):
        assert canonicalizer.normalize("https://example.com") == "https://example.com/"


class TestPreferredHost:
    """The redirect-resolved host and protocol win for same-site URLs."""

    def test_www_preferred_site(self, canonicalizer):
        target = canonicalizer.build_target("example.com", "https://www.example.com/")
        assert target.preferred_hostname == "www.example.com"
        assert canonicalizer.normalize("http://example.com/x", target) == "https://www.example.com/x"
        assert canonicalizer.normalize("https://www.example.com/x/", target) == "https://www.example.com/x"

    def test_http_only_site(self, canonicalizer):
        target = canonicalizer.build_target("http://legacy.org", "http://legacy.org/")
        assert canonicalizer.normalize("https://www.legacy.org/a", target) == "http://legacy.org/a"

    def test_external_url_uses_https(self, canonicalizer, target):
        assert canonicalizer.normalize("http://other.org/a", target) == "https://other.org/a"

    def test_non_default_port(self, canonicalizer):
        target = canonicalizer.build_target("http://localhost:8000", "http://localhost:8000/")
        assert target.preferred_hostname == "localhost:8000"
        assert canonicalizer.normalize("http://localhost:8000/a/", target) == "http://localhost:8000/a"


class TestResolveAndClassify:
    """Relative links resolve and are classified against the root domain."""

    def test_relative_link(self, canonicalizer, target):
        assert canonicalizer.resolve("../b", "https://example.com/a/c", target) == "https://example.com/b"

    @pytest.mark.parametrize("href", ["", "#top", "mailto:a@b.com", "tel:123", "javascript:void(0)"])
    def test_non_crawlable_links(self, canonicalizer, target, href):
        assert canonicalizer.resolve(href, "https://example.com/", target) is None

    def test_subdomains_internal(self, canonicalizer):
        assert canonicalizer.is_internal("https://blog.example.com/post", "example.com")
        assert not canonicalizer.is_internal("https://example.org/", "example.com")

    def test_subdomains_external_when_disabled(self):
        canon = UrlCanonicalizer(subdomains_internal=False)
        assert not canon.is_internal("https://blog.example.com/post", "example.com")
        assert canon.is_internal("https://www.example.com/post", "example.com")

    def test_root_domain_multi_part_suffix(self):
        assert UrlCanonicalizer.root_domain("https://shop.example.co.uk/a") == "example.co.uk"

    def test_root_domain_for_ip(self):
        assert UrlCanonicalizer.root_domain("http://127.0.0.1:8000/") == "127.0.0.1"


class TestFollowRedirects:
    """Redirect resolution with the HTTP probe mocked out."""

    @pytest.mark.asyncio
    async def test_no_redirect(self, canonicalizer):
        canonicalizer._probe = AsyncMock(return_value=(200, ""))
        result = await canonicalizer.follow_redirects("https://example.com/")
        assert result.final_url == "https://example.com/"
        assert not result.redirected

    @pytest.mark.asyncio
    async def test_follows_chain(self, canonicalizer):
        canonicalizer._probe = AsyncMock(side_effect=[
            (301, "https://www.example.com/"),
            (302, "/home"),
            (200, ""),
        ])
        result = await canonicalizer.follow_redirects("http://example.com/")
        assert result.final_url == "https://www.example.com/home"
        assert result.chain == ("http://example.com/", "https://www.example.com/")

    @pytest.mark.asyncio
    async def test_loop_detected(self, canonicalizer):
        canonicalizer._probe = AsyncMock(side_effect=[
            (301, "https://example.com/b"),
            (301, "https://example.com/a"),
        ])
        with pytest.raises(RedirectLoopError):
            await canonicalizer.follow_redirects("https://example.com/a")

    @pytest.mark.asyncio
    async def test_too_many_redirects(self, canonicalizer):
        hops = [(301, f"https://example.com/{i}") for i in range(1, MAX_REDIRECTS + 3)]
        canonicalizer._probe = AsyncMock(side_effect=hops)
        with pytest.raises(RedirectLoopError):
            await canonicalizer.follow_redirects("https://example.com/0")

    @pytest.mark.asyncio
    async def test_network_error_becomes_fetch_error(self, canonicalizer):
        canonicalizer._probe = AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))
        with pytest.raises(FetchError):
            await canonicalizer.follow_redirects("https://unreachable.invalid/")
