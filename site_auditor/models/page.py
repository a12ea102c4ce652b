"""Per-page signal records produced by the extractor.

Every record is frozen.  A correction (for example validated performance
metrics) is expressed with ``dataclasses.replace`` and yields a new record.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

SIGNALS_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TitleSignals:
    text: str = ""
    length: int = 0
    pixel_width: float = 0.0
    source: str = "missing"  # rendered | rendered_dom | raw | missing


@dataclass(frozen=True)
class MetaDescription:
    text: str = ""
    length: int = 0


@dataclass(frozen=True)
class HeadingSignals:
    h1: tuple[str, ...] = ()
    h2: tuple[str, ...] = ()
    h3_count: int = 0

    @property
    def h2_count(self) -> int:
        return len(self.h2)


@dataclass(frozen=True)
class ReadabilitySignals:
    flesch_score: float
    avg_sentence_length: float
    sentence_count: int = 0


@dataclass(frozen=True)
class SchemaSignals:
    types: tuple[str, ...] = ()
    is_identity_schema: bool = False
    identity_type: Optional[str] = None
    missing_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class SocialSignals:
    open_graph: dict[str, str] = field(default_factory=dict)
    twitter_card: dict[str, str] = field(default_factory=dict)
    links: tuple[str, ...] = ()
    pixel_present: bool = False
    favicon: Optional[str] = None
    favicon_declared: bool = False


@dataclass(frozen=True)
class LinkSignals:
    internal: tuple[str, ...] = ()
    external: tuple[str, ...] = ()
    empty_anchor_count: int = 0


@dataclass(frozen=True)
class ImageSignals:
    count: int = 0
    missing_alt: int = 0
    missing_alt_sources: tuple[str, ...] = ()


@dataclass(frozen=True)
class PerformanceSignals:
    """Core Web Vitals in milliseconds (CLS is unitless)."""

    lcp: Optional[float] = None
    fcp: Optional[float] = None
    cls: Optional[float] = None
    fid: Optional[float] = None
    ttfb: Optional[float] = None
    opportunities: tuple[dict[str, Any], ...] = ()
    source: str = "browser"  # browser | pagespeed
    warnings: tuple[str, ...] = ()

    @property
    def is_usable(self) -> bool:
        return self.lcp is not None or self.fcp is not None


@dataclass(frozen=True)
class RenderingDelta:
    initial_length: int
    rendered_length: int
    percentage: float
    is_growth: bool
    is_absurd: bool = False


@dataclass(frozen=True)
class PageSignals:
    """Everything the audit knows about one successfully analysed page."""

    url: str
    status_code: int = 200
    title: TitleSignals = field(default_factory=TitleSignals)
    meta_description: MetaDescription = field(default_factory=MetaDescription)
    canonical_tag: Optional[str] = None
    headings: HeadingSignals = field(default_factory=HeadingSignals)
    word_count: int = 0
    readability: Optional[ReadabilitySignals] = None
    schema: SchemaSignals = field(default_factory=SchemaSignals)
    social: SocialSignals = field(default_factory=SocialSignals)
    links: LinkSignals = field(default_factory=LinkSignals)
    images: ImageSignals = field(default_factory=ImageSignals)
    performance: Optional[PerformanceSignals] = None
    rendering_delta: Optional[RenderingDelta] = None
    rendering_degraded: bool = False
    robots_meta: str = ""
    has_viewport: bool = True
    html_lang: str = ""
    keywords: tuple[str, ...] = ()
    crawled_at: datetime = field(default_factory=_utcnow)
    version: int = SIGNALS_VERSION

    @property
    def is_noindex(self) -> bool:
        return "noindex" in self.robots_meta.lower()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["crawled_at"] = self.crawled_at.isoformat()
        data["headings"]["h2_count"] = self.headings.h2_count
        return data
