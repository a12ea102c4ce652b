"""Technical SEO audit building blocks.

Import ``TechnicalAuditor`` from ``site_auditor.modules.technical_audit.auditor``.
"""

from site_auditor.modules.technical_audit.canonicalizer import UrlCanonicalizer
from site_auditor.modules.technical_audit.crawler import SiteCrawler
from site_auditor.modules.technical_audit.fetcher import (
    HttpOnlyRenderPool,
    PageFetcher,
    PlaywrightRenderPool,
)
from site_auditor.modules.technical_audit.scoring import ScoringEngine

__all__ = [
    "HttpOnlyRenderPool",
    "PageFetcher",
    "PlaywrightRenderPool",
    "ScoringEngine",
    "SiteCrawler",
    "UrlCanonicalizer",
]
