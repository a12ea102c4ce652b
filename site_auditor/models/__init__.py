"""Dataclass models shared across the audit pipeline."""

from site_auditor.models.page import (
    SIGNALS_VERSION,
    PageSignals,
    TitleSignals,
    MetaDescription,
    HeadingSignals,
    ReadabilitySignals,
    SchemaSignals,
    SocialSignals,
    LinkSignals,
    ImageSignals,
    PerformanceSignals,
    RenderingDelta,
)
from site_auditor.models.competitor import (
    CompetitorCrawl,
    CompetitorReport,
    SuggestionResult,
)
from site_auditor.models.audit import (
    TIER_LIMITS,
    AddOns,
    AuditRequest,
    AuditResult,
    AuditState,
    Category,
    CategoryScores,
    CrawlDiagnostics,
    CrawlTarget,
    ImageAltFinding,
    Issue,
    LinkGraphNode,
    NodeRole,
    Severity,
    SiteWideSignals,
    SkippedPage,
    Tier,
    TierLimits,
)

__all__ = [
    "SIGNALS_VERSION",
    "PageSignals",
    "TitleSignals",
    "MetaDescription",
    "HeadingSignals",
    "ReadabilitySignals",
    "SchemaSignals",
    "SocialSignals",
    "LinkSignals",
    "ImageSignals",
    "PerformanceSignals",
    "RenderingDelta",
    "CompetitorCrawl",
    "CompetitorReport",
    "SuggestionResult",
    "TIER_LIMITS",
    "AddOns",
    "AuditRequest",
    "AuditResult",
    "AuditState",
    "Category",
    "CategoryScores",
    "CrawlDiagnostics",
    "CrawlTarget",
    "ImageAltFinding",
    "Issue",
    "LinkGraphNode",
    "NodeRole",
    "Severity",
    "SiteWideSignals",
    "SkippedPage",
    "Tier",
    "TierLimits",
]
