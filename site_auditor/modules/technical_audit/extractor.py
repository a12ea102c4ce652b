"""Page signal extraction.

Turns a ``FetchOutcome`` into an immutable ``PageSignals`` record.  The
rendered DOM is preferred for everything it can provide; raw HTML is the
fallback when rendering was degraded.
"""

import json
import logging
import re
from typing import Any, Iterable, Optional
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

from site_auditor.models.audit import CrawlTarget
from site_auditor.models.page import (
    HeadingSignals,
    ImageSignals,
    LinkSignals,
    MetaDescription,
    PageSignals,
    PerformanceSignals,
    ReadabilitySignals,
    RenderingDelta,
    SchemaSignals,
    SocialSignals,
    TitleSignals,
)
from site_auditor.modules.technical_audit.canonicalizer import UrlCanonicalizer
from site_auditor.modules.technical_audit.fetcher import FetchOutcome
from site_auditor.utils.text_processing import (
    calculate_readability,
    count_words,
    extract_keyword_phrases,
    similarity_ratio,
    title_pixel_width,
    visible_text,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ABSURD_GROWTH_PERCENTAGE = 1000.0

IDENTITY_TYPES = ("Organization", "Person")

_PROFILE_PATTERNS: dict[str, re.Pattern] = {
    "facebook": re.compile(
        r"^https?://(?:www\.|m\.)?(?:facebook\.com|fb\.com)/"
        r"(?!sharer|share|dialog|plugins|tr/?$|login)[A-Za-z0-9.\-]+/?$",
        re.I,
    ),
    "twitter": re.compile(
        r"^https?://(?:www\.|mobile\.)?(?:twitter\.com|x\.com)/"
        r"(?!intent|share|home|search|hashtag)[A-Za-z0-9_]{1,15}/?$",
        re.I,
    ),
    "instagram": re.compile(
        r"^https?://(?:www\.)?instagram\.com/(?!p/|explore|reel)[A-Za-z0-9_.]+/?$", re.I
    ),
    "youtube": re.compile(
        r"^https?://(?:www\.|m\.)?youtube\.com/(?:channel/|user/|c/|@)[A-Za-z0-9_.\-]+/?$", re.I
    ),
    "linkedin": re.compile(
        r"^https?://(?:[a-z]{2,3}\.)?linkedin\.com/(?:company|in|school)/[A-Za-z0-9_%\-]+/?$", re.I
    ),
    "tiktok": re.compile(r"^https?://(?:www\.)?tiktok\.com/@[A-Za-z0-9_.]+/?$", re.I),
    "pinterest": re.compile(r"^https?://(?:[a-z]{2}\.|www\.)?pinterest\.[a-z.]+/[A-Za-z0-9_]+/?$", re.I),
}

# Asset-like URLs on social CDNs are never profiles.
_ASSET_HINT = re.compile(
    r"favicon|//cdn\.|/cdn[./\-]|/assets?/|/static/|/icons?/|/logos?/|/img/|/images?/"
    r"|\.(?:png|jpe?g|gif|svg|ico|webp)$",
    re.I,
)

_PIXEL_RE = re.compile(
    r"fbq\(|facebook\.com/tr[/?]|connect\.facebook\.net/[^\"']*/fbevents\.js", re.I
)


# ---------------------------------------------------------------------------
# Rendering delta
# ---------------------------------------------------------------------------

def compute_rendering_delta(initial_length: int, rendered_length: int, similarity: float) -> Optional[RenderingDelta]:
    """Compare server-delivered and rendered HTML sizes.

    Growth (JS added content) is the size ratio in percent, uncapped and
    flagged above ``ABSURD_GROWTH_PERCENTAGE``.  Shrinkage (JS removed or
    replaced content) is the string similarity in percent, clamped to
    ``[0, 100]``.
    """
    if initial_length <= 0:
        return None
    if rendered_length >= initial_length:
        percentage = rendered_length / initial_length * 100
        return RenderingDelta(
            initial_length=initial_length,
            rendered_length=rendered_length,
            percentage=round(percentage, 1),
            is_growth=True,
            is_absurd=percentage > ABSURD_GROWTH_PERCENTAGE,
        )
    percentage = min(max(similarity * 100, 0.0), 100.0)
    return RenderingDelta(
        initial_length=initial_length,
        rendered_length=rendered_length,
        percentage=round(percentage, 1),
        is_growth=False,
    )


def rendering_delta_for(initial_html: str, rendered_html: str) -> Optional[RenderingDelta]:
    initial, rendered = len(initial_html), len(rendered_html)
    # similarity only matters for shrinkage
    similarity = similarity_ratio(initial_html, rendered_html) if rendered < initial else 1.0
    return compute_rendering_delta(initial, rendered, similarity)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _rel_values(tag: Any) -> list[str]:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return [r.lower() for r in rel]


def _meta_content(soup: BeautifulSoup, attr: str, value: str) -> Optional[str]:
    tag = soup.find("meta", attrs={attr: re.compile(rf"^{re.escape(value)}$", re.I)})
    if tag is None:
        return None
    return (tag.get("content") or "").strip()


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _flatten_jsonld(data: Any) -> Iterable[dict[str, Any]]:
    """Yield every typed entity in a JSON-LD document, nested ones included."""
    if isinstance(data, list):
        for item in data:
            yield from _flatten_jsonld(item)
        return
    if not isinstance(data, dict):
        return
    if "@type" in data:
        yield data
    for key, value in data.items():
        if key == "@context":
            continue
        if isinstance(value, (dict, list)):
            yield from _flatten_jsonld(value)


def _type_names(entity: dict[str, Any]) -> list[str]:
    names = []
    for t in _as_list(entity.get("@type")):
        if isinstance(t, str) and t:
            names.append(t.rsplit("/", 1)[-1])
    return names


def _identity_missing(entity: dict[str, Any]) -> list[str]:
    missing = [f for f in ("name", "url") if not entity.get(f)]
    if not entity.get("logo") and not entity.get("sameAs"):
        missing.append("logo|sameAs")
    return missing


# ---------------------------------------------------------------------------
# PageSignalExtractor
# ---------------------------------------------------------------------------

class PageSignalExtractor:
    """Parse a fetched page into ``PageSignals`` for one crawl target."""

    def __init__(self, canonicalizer: UrlCanonicalizer, target: CrawlTarget, keyword_limit: int = 20) -> None:
        self._canon = canonicalizer
        self._target = target
        self._keyword_limit = keyword_limit

    def extract(self, outcome: FetchOutcome) -> PageSignals:
        raw_html = outcome.raw.html
        rendered = outcome.rendered
        dom_html = rendered.dom_snapshot if rendered is not None else raw_html

        page_url = self._canon.normalize(outcome.final_url, self._target)
        soup = BeautifulSoup(dom_html, "html.parser")
        raw_soup = soup if rendered is None else BeautifulSoup(raw_html, "html.parser")
        base_url = self._base_url(soup, outcome.final_url)

        text = visible_text(dom_html)
        readability = calculate_readability(text)
        title = self._extract_title(outcome, soup, raw_soup)
        meta = _meta_content(soup, "name", "description") or ""
        headings = self._extract_headings(soup)

        keywords = extract_keyword_phrases(
            [title.text, meta, *headings.h1, *headings.h2, text],
            limit=self._keyword_limit,
        )

        signals = PageSignals(
            url=page_url,
            status_code=outcome.status_code,
            title=title,
            meta_description=MetaDescription(text=meta, length=len(meta)),
            canonical_tag=self._extract_canonical(soup),
            headings=headings,
            word_count=count_words(text),
            readability=(
                ReadabilitySignals(
                    flesch_score=readability["flesch_reading_ease"],
                    avg_sentence_length=readability["avg_sentence_length"],
                    sentence_count=int(readability["sentence_count"]),
                )
                if readability
                else None
            ),
            schema=self._extract_schema(soup),
            social=self._extract_social(soup, base_url, raw_html + dom_html if rendered else raw_html),
            links=self._extract_links(soup, base_url),
            images=self._extract_images(soup, base_url),
            performance=self._performance(outcome),
            rendering_delta=rendering_delta_for(raw_html, dom_html) if rendered is not None else None,
            rendering_degraded=outcome.rendering_degraded,
            robots_meta=_meta_content(soup, "name", "robots") or "",
            has_viewport=_meta_content(soup, "name", "viewport") is not None,
            html_lang=((soup.html.get("lang") if soup.html else "") or "").strip(),
            keywords=tuple(keywords),
        )
        logger.debug(
            "Extracted %s: %d words, %d internal links, title=%r",
            page_url,
            signals.word_count,
            len(signals.links.internal),
            signals.title.text[:60],
        )
        return signals

    # ------------------------------------------------------------------
    # Title, headings, canonical
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_title(outcome: FetchOutcome, soup: BeautifulSoup, raw_soup: BeautifulSoup) -> TitleSignals:
        text, source = "", "missing"
        if outcome.rendered is not None and outcome.rendered.title.strip():
            text, source = outcome.rendered.title.strip(), "rendered"
        else:
            for candidate, label in ((soup, "rendered_dom"), (raw_soup, "raw")):
                if outcome.rendered is None and label == "rendered_dom":
                    continue
                tag = candidate.find("title")
                if tag is not None and tag.get_text(strip=True):
                    text, source = tag.get_text(strip=True), label
                    break
        text = re.sub(r"\s+", " ", text)
        return TitleSignals(text=text, length=len(text), pixel_width=title_pixel_width(text), source=source)

    @staticmethod
    def _extract_headings(soup: BeautifulSoup) -> HeadingSignals:
        def texts(level: str) -> tuple[str, ...]:
            return tuple(
                re.sub(r"\s+", " ", h.get_text(" ", strip=True)) for h in soup.find_all(level)
            )

        return HeadingSignals(h1=texts("h1"), h2=texts("h2"), h3_count=len(soup.find_all("h3")))

    @staticmethod
    def _extract_canonical(soup: BeautifulSoup) -> Optional[str]:
        for link in soup.find_all("link", href=True):
            if "canonical" in _rel_values(link):
                return link["href"].strip() or None
        return None

    @staticmethod
    def _base_url(soup: BeautifulSoup, page_url: str) -> str:
        base = soup.find("base", href=True)
        if base is not None:
            return urljoin(page_url, base["href"])
        return page_url

    # ------------------------------------------------------------------
    # Structured data
    # ------------------------------------------------------------------

    def _extract_schema(self, soup: BeautifulSoup) -> SchemaSignals:
        entities: list[dict[str, Any]] = []
        for script in soup.find_all("script", attrs={"type": re.compile(r"ld\+json", re.I)}):
            payload = script.string or script.get_text()
            try:
                entities.extend(_flatten_jsonld(json.loads(payload)))
            except (json.JSONDecodeError, TypeError) as exc:
                logger.debug("Skipping invalid JSON-LD block: %s", exc)

        for scope in soup.find_all(attrs={"itemtype": True}):
            entity: dict[str, Any] = {"@type": scope["itemtype"].split()}
            for prop in scope.find_all(attrs={"itemprop": True}):
                value = prop.get("content") or prop.get("href") or prop.get("src") or prop.get_text(strip=True)
                if value:
                    entity.setdefault(prop["itemprop"], value)
            entities.append(entity)

        types: list[str] = []
        best_type: Optional[str] = None
        best_missing: Optional[list[str]] = None
        for entity in entities:
            names = _type_names(entity)
            for name in names:
                if name not in types:
                    types.append(name)
            identity = next((n for n in names if n in IDENTITY_TYPES), None)
            if identity is None:
                continue
            missing = _identity_missing(entity)
            if best_missing is None or len(missing) < len(best_missing):
                best_type, best_missing = identity, missing

        return SchemaSignals(
            types=tuple(types),
            is_identity_schema=best_missing is not None and not best_missing,
            identity_type=best_type,
            missing_fields=tuple(best_missing or ()),
        )

    # ------------------------------------------------------------------
    # Social
    # ------------------------------------------------------------------

    def _extract_social(self, soup: BeautifulSoup, base_url: str, html: str) -> SocialSignals:
        open_graph: dict[str, str] = {}
        twitter: dict[str, str] = {}
        for meta in soup.find_all("meta"):
            key = (meta.get("property") or meta.get("name") or "").strip().lower()
            content = (meta.get("content") or "").strip()
            if not content:
                continue
            if key.startswith("og:"):
                open_graph.setdefault(key[3:], content)
            elif key.startswith("twitter:"):
                twitter.setdefault(key[8:], content)

        profiles: list[str] = []
        for anchor in soup.find_all("a", href=True):
            href = urljoin(base_url, anchor["href"].strip())
            parts = urlsplit(href)
            bare = f"{parts.scheme}://{parts.netloc}{parts.path}"
            if _ASSET_HINT.search(parts.path):
                continue
            if any(p.match(bare) for p in _PROFILE_PATTERNS.values()) and bare not in profiles:
                profiles.append(bare)

        favicon, declared = None, False
        for link in soup.find_all("link", href=True):
            if "icon" in _rel_values(link):
                favicon, declared = urljoin(base_url, link["href"].strip()), True
                break
        if favicon is None:
            favicon = urljoin(self._target.root_url, "/favicon.ico")

        return SocialSignals(
            open_graph=open_graph,
            twitter_card=twitter,
            links=tuple(profiles),
            pixel_present=bool(_PIXEL_RE.search(html)),
            favicon=favicon,
            favicon_declared=declared,
        )

    # ------------------------------------------------------------------
    # Links and images
    # ------------------------------------------------------------------

    def _extract_links(self, soup: BeautifulSoup, base_url: str) -> LinkSignals:
        internal: list[str] = []
        external: list[str] = []
        seen: set[str] = set()
        empty_anchors = 0
        for anchor in soup.find_all("a", href=True):
            if not anchor.get_text(strip=True) and not (
                anchor.get("aria-label") or anchor.get("title") or anchor.find("img", alt=True)
            ):
                empty_anchors += 1
            url = self._canon.resolve(anchor["href"], base_url, self._target)
            if url is None or url in seen:
                continue
            seen.add(url)
            if self._canon.is_internal(url, self._target.root_domain):
                internal.append(url)
            else:
                external.append(url)
        return LinkSignals(internal=tuple(internal), external=tuple(external), empty_anchor_count=empty_anchors)

    @staticmethod
    def _extract_images(soup: BeautifulSoup, base_url: str) -> ImageSignals:
        images = soup.find_all("img")
        # alt="" marks a decorative image and is valid
        missing = [img for img in images if img.get("alt") is None]
        sources = tuple(
            urljoin(base_url, img.get("src") or img.get("data-src") or "") for img in missing
        )
        return ImageSignals(count=len(images), missing_alt=len(missing), missing_alt_sources=sources)

    # ------------------------------------------------------------------
    # Performance
    # ------------------------------------------------------------------

    @staticmethod
    def _performance(outcome: FetchOutcome) -> Optional[PerformanceSignals]:
        if outcome.rendered is None:
            return None
        metrics = outcome.rendered.performance_metrics or {}

        def value(key: str) -> Optional[float]:
            raw = metrics.get(key)
            if raw is None:
                return None
            try:
                return round(float(raw), 3 if key == "cls" else 1)
            except (TypeError, ValueError):
                return None

        perf = PerformanceSignals(
            lcp=value("lcp"), fcp=value("fcp"), cls=value("cls"), fid=value("fid"), ttfb=value("ttfb")
        )
        if all(getattr(perf, k) is None for k in ("lcp", "fcp", "cls", "fid", "ttfb")):
            return None
        return perf
