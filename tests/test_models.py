"""Tests for audit requests, tier limits and result records."""

import pytest

from site_auditor.errors import InvalidAuditRequest
from site_auditor.models.audit import (
    TIER_LIMITS,
    AddOns,
    AuditRequest,
    CrawlDiagnostics,
    SkippedPage,
    Tier,
)


class TestAuditRequest:
    """Validation and normalisation of incoming requests."""

    def test_bare_domain_gets_https(self):
        assert AuditRequest("example.com").url == "https://example.com"

    def test_tier_from_string(self):
        assert AuditRequest("example.com", tier="agency").tier is Tier.AGENCY

    @pytest.mark.parametrize("url", ["", "   ", "ftp://example.com", "https://"])
    def test_invalid_url(self, url):
        with pytest.raises(InvalidAuditRequest):
            AuditRequest(url)

    def test_unknown_tier(self):
        with pytest.raises(InvalidAuditRequest):
            AuditRequest("example.com", tier="platinum")

    def test_invalid_request_is_value_error(self):
        with pytest.raises(ValueError):
            AuditRequest("")

    def test_competitor_urls_frozen(self):
        request = AuditRequest("example.com", competitor_urls=["https://a.com"])
        assert request.competitor_urls == ("https://a.com",)


class TestTierLimits:
    def test_tiers_grow(self):
        pages = [TIER_LIMITS[t].max_pages for t in (Tier.STARTER, Tier.STANDARD, Tier.ADVANCED, Tier.AGENCY)]
        assert pages == sorted(pages)
        assert TIER_LIMITS[Tier.AGENCY].link_graph
        assert not TIER_LIMITS[Tier.ADVANCED].link_graph

    def test_add_ons_extend_limits(self):
        request = AuditRequest(
            "example.com",
            add_ons=AddOns(
                competitor_analysis=True,
                schema_markup=True,
                additional_pages=10,
                additional_keywords=5,
            ),
        )
        limits = request.limits()
        assert limits.max_pages == 13
        assert limits.keyword_count == 10
        assert limits.max_competitors == 1
        assert limits.schema_analysis

    def test_negative_add_ons_ignored(self):
        limits = AuditRequest("example.com", add_ons=AddOns(additional_pages=-5)).limits()
        assert limits.max_pages == 3

    def test_competitor_add_on_keeps_agency_count(self):
        request = AuditRequest("example.com", tier=Tier.AGENCY, add_ons=AddOns(competitor_analysis=True))
        assert request.limits().max_competitors == 3


class TestCrawlDiagnostics:
    def test_status(self):
        assert CrawlDiagnostics(pages_crawled=3).status == "success"
        assert CrawlDiagnostics(timed_out=True).status == "partial"
        assert CrawlDiagnostics(pages_skipped=1, skipped=(SkippedPage("u", "http_error", 404),)).status == "partial"
        assert CrawlDiagnostics(degraded_pages=2).status == "partial"
