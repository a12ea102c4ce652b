"""Audit-level records: request, tier limits, issues, link graph, result."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlsplit

from site_auditor.errors import InvalidAuditRequest
from site_auditor.models.competitor import CompetitorReport
from site_auditor.models.page import PageSignals


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Category(str, Enum):
    TECHNICAL = "technical"
    ON_PAGE = "on_page"
    CONTENT = "content"
    ACCESSIBILITY = "accessibility"
    PERFORMANCE = "performance"


class Severity(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class NodeRole(str, Enum):
    ORPHAN = "orphan"
    HUB = "hub"
    AUTHORITY = "authority"
    ISOLATED = "isolated"
    NORMAL = "normal"


class AuditState(str, Enum):
    PENDING = "pending"
    CRAWLING = "crawling"
    AGGREGATING = "aggregating"
    SCORED = "scored"
    DONE = "done"
    FAILED = "failed"


class Tier(str, Enum):
    STARTER = "starter"
    STANDARD = "standard"
    ADVANCED = "advanced"
    AGENCY = "agency"


# ---------------------------------------------------------------------------
# Request and tier limits
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AddOns:
    competitor_analysis: bool = False
    image_alt_tags: bool = False
    schema_markup: bool = False
    additional_pages: int = 0
    additional_keywords: int = 0


@dataclass(frozen=True)
class TierLimits:
    max_pages: int
    max_depth: int
    keyword_count: int
    max_competitors: int
    link_graph: bool
    audit_timeout: float
    schema_analysis: bool


TIER_LIMITS: dict[Tier, TierLimits] = {
    Tier.STARTER: TierLimits(3, 2, 5, 0, False, 120.0, False),
    Tier.STANDARD: TierLimits(20, 3, 10, 0, False, 300.0, True),
    Tier.ADVANCED: TierLimits(50, 5, 20, 1, False, 600.0, True),
    Tier.AGENCY: TierLimits(100, 5, 30, 3, True, 900.0, True),
}


@dataclass(frozen=True)
class AuditRequest:
    url: str
    tier: Tier = Tier.STARTER
    add_ons: AddOns = field(default_factory=AddOns)
    competitor_urls: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        url = (self.url or "").strip()
        if not url:
            raise InvalidAuditRequest("An audit URL is required")
        if "://" not in url:
            url = "https://" + url
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise InvalidAuditRequest(f"Not an auditable URL: {self.url!r}")
        try:
            tier = Tier(self.tier)
        except ValueError as exc:
            raise InvalidAuditRequest(f"Unknown tier: {self.tier!r}") from exc
        # frozen dataclass: normalised values are written through object.__setattr__
        object.__setattr__(self, "url", url)
        object.__setattr__(self, "tier", tier)
        object.__setattr__(self, "competitor_urls", tuple(self.competitor_urls))

    def limits(self) -> TierLimits:
        """Tier limits with add-ons applied."""
        base = TIER_LIMITS[self.tier]
        competitors = base.max_competitors
        if self.add_ons.competitor_analysis:
            competitors = max(competitors, 1)
        return TierLimits(
            max_pages=base.max_pages + max(self.add_ons.additional_pages, 0),
            max_depth=base.max_depth,
            keyword_count=base.keyword_count + max(self.add_ons.additional_keywords, 0),
            max_competitors=competitors,
            link_graph=base.link_graph,
            audit_timeout=base.audit_timeout,
            schema_analysis=base.schema_analysis or self.add_ons.schema_markup,
        )


# ---------------------------------------------------------------------------
# Crawl target, issues, graph
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CrawlTarget:
    raw_url: str
    final_url: str
    root_domain: str
    preferred_hostname: str
    preferred_protocol: str
    redirect_chain: tuple[str, ...] = ()

    @property
    def root_url(self) -> str:
        return f"{self.preferred_protocol}://{self.preferred_hostname}/"


@dataclass(frozen=True)
class Issue:
    category: Category
    severity: Severity
    title: str
    description: str
    affected_urls: tuple[str, ...] = ()
    fix_instructions: str = ""


@dataclass(frozen=True)
class LinkGraphNode:
    url: str
    inbound_count: int
    outbound_count: int
    role: NodeRole = NodeRole.NORMAL


@dataclass(frozen=True)
class ImageAltFinding:
    page_url: str
    image_src: str
    recommendation: str


# ---------------------------------------------------------------------------
# Diagnostics and result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SkippedPage:
    url: str
    reason: str
    status_code: Optional[int] = None


@dataclass(frozen=True)
class TransportSignals:
    """Protocol, header and redirect facts about the home page response."""

    final_url: str
    https: bool = True
    hsts: bool = False
    content_security_policy: bool = False
    x_frame_options: bool = False
    x_content_type_options: bool = False
    referrer_policy: bool = False
    content_encoding: str = ""
    cache_control: bool = False
    redirect_chain: tuple[str, ...] = ()
    mixed_content: tuple[str, ...] = ()

    @property
    def compressed(self) -> bool:
        return any(enc in self.content_encoding for enc in ("gzip", "deflate", "br"))


@dataclass(frozen=True)
class SiteWideSignals:
    files_checked: bool = False
    robots_txt_exists: bool = False
    sitemap_exists: bool = False
    sitemap_url_count: int = 0
    disallowed_paths: tuple[str, ...] = ()
    robots_disallow_all: bool = False
    transport: Optional[TransportSignals] = None


@dataclass(frozen=True)
class CrawlDiagnostics:
    pages_crawled: int = 0
    pages_skipped: int = 0
    error_pages: int = 0
    skipped: tuple[SkippedPage, ...] = ()
    disallowed_paths: tuple[str, ...] = ()
    robots_disallow_all: bool = False
    platform: str = "custom"
    degraded_pages: int = 0
    timed_out: bool = False
    duration: float = 0.0
    validation_warnings: tuple[str, ...] = ()

    @property
    def status(self) -> str:
        if self.timed_out or self.pages_skipped or self.degraded_pages:
            return "partial"
        return "success"


@dataclass(frozen=True)
class CategoryScores:
    technical: float
    on_page: float
    content: float
    accessibility: float
    performance: Optional[float]
    overall: float

    def as_dict(self) -> dict[str, Optional[float]]:
        return asdict(self)


@dataclass(frozen=True)
class AuditResult:
    audit_id: str
    request: AuditRequest
    target: CrawlTarget
    pages: tuple[PageSignals, ...]
    issues: tuple[Issue, ...]
    scores: CategoryScores
    diagnostics: CrawlDiagnostics
    site_wide: SiteWideSignals = field(default_factory=SiteWideSignals)
    link_graph: Optional[tuple[LinkGraphNode, ...]] = None
    competitor_report: Optional[CompetitorReport] = None
    site_keywords: tuple[str, ...] = ()
    image_alt_findings: tuple[ImageAltFinding, ...] = ()
    state: AuditState = AuditState.DONE
    llm_usage: Optional[dict[str, Any]] = None

    def issues_by_severity(self) -> dict[str, list[Issue]]:
        grouped: dict[str, list[Issue]] = {s.value: [] for s in Severity}
        for issue in self.issues:
            grouped[issue.severity.value].append(issue)
        return grouped

    def summary(self) -> dict[str, Any]:
        """Small subset for notification consumers."""
        counts = {k: len(v) for k, v in self.issues_by_severity().items()}
        return {
            "audit_id": self.audit_id,
            "url": self.target.final_url,
            "overall": self.scores.overall,
            "scores": self.scores.as_dict(),
            "issue_counts": counts,
            "pages_crawled": self.diagnostics.pages_crawled,
            "status": self.diagnostics.status,
        }

    def to_dict(self) -> dict[str, Any]:
        return _make_serialisable(asdict(self))


def _make_serialisable(obj: Any) -> Any:
    """Recursively convert enums, tuples and datetimes to JSON types."""
    if isinstance(obj, dict):
        return {k: _make_serialisable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_make_serialisable(i) for i in obj]
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (str, int, float, bool, type(None))):
        return obj
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    return str(obj)
