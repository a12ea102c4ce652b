"""Page-level and site-wide issue detection.

The same check failing on several pages is reported once, listing every
affected URL.
"""

import logging
from collections import defaultdict
from typing import Iterable, Optional

from site_auditor.models.audit import Category, ImageAltFinding, Issue, Severity, SiteWideSignals, TransportSignals
from site_auditor.models.page import PageSignals

logger = logging.getLogger(__name__)

TITLE_MIN_CHARS = 30
TITLE_MAX_CHARS = 60
TITLE_MAX_PIXELS = 580
META_MIN_CHARS = 70
META_MAX_CHARS = 160
THIN_CONTENT_WORDS = 300
JS_DEPENDENT_GROWTH = 200.0
JS_REPLACED_SIMILARITY = 50.0

LCP_POOR_MS = 4_000.0
CLS_POOR = 0.25
TTFB_POOR_MS = 1_800.0


class _IssueCollector:
    """Merge repeated findings into one issue per check."""

    def __init__(self) -> None:
        self._order: list[tuple] = []
        self._urls: dict[tuple, list[str]] = defaultdict(list)
        self._text: dict[tuple, tuple[str, str]] = {}

    def add(
        self,
        category: Category,
        severity: Severity,
        title: str,
        description: str,
        fix: str,
        url: Optional[str] = None,
    ) -> None:
        key = (category, severity, title)
        if key not in self._text:
            self._order.append(key)
            self._text[key] = (description, fix)
        if url and url not in self._urls[key]:
            self._urls[key].append(url)

    def issues(self) -> list[Issue]:
        result = []
        for key in self._order:
            category, severity, title = key
            description, fix = self._text[key]
            urls = tuple(self._urls.get(key, ()))
            if len(urls) > 1:
                description = f"{description} ({len(urls)} pages affected)"
            result.append(
                Issue(
                    category=category,
                    severity=severity,
                    title=title,
                    description=description,
                    affected_urls=urls,
                    fix_instructions=fix,
                )
            )
        return result


# ---------------------------------------------------------------------------
# Per-page checks
# ---------------------------------------------------------------------------

def _check_title_and_meta(page: PageSignals, out: _IssueCollector) -> None:
    title = page.title
    if not title.text:
        out.add(Category.ON_PAGE, Severity.HIGH, "Missing title tag",
                "The page has no title.",
                "Add a unique, descriptive <title> of 30-60 characters.", page.url)
    elif title.pixel_width > TITLE_MAX_PIXELS or title.length > TITLE_MAX_CHARS:
        out.add(Category.ON_PAGE, Severity.MEDIUM, "Title too long",
                f"Titles wider than {TITLE_MAX_PIXELS}px are truncated in search results.",
                "Shorten the title and lead with the primary keyword.", page.url)
    elif title.length < TITLE_MIN_CHARS:
        out.add(Category.ON_PAGE, Severity.LOW, "Title too short",
                f"Titles under {TITLE_MIN_CHARS} characters waste search-result space.",
                "Expand the title with the page's topic and brand.", page.url)

    meta = page.meta_description
    if not meta.text:
        out.add(Category.ON_PAGE, Severity.MEDIUM, "Missing meta description",
                "Search engines will generate their own snippet.",
                "Write a 70-160 character meta description that summarises the page.", page.url)
    elif meta.length > META_MAX_CHARS:
        out.add(Category.ON_PAGE, Severity.LOW, "Meta description too long",
                f"Descriptions over {META_MAX_CHARS} characters are truncated.",
                "Trim the description to 160 characters or fewer.", page.url)
    elif meta.length < META_MIN_CHARS:
        out.add(Category.ON_PAGE, Severity.LOW, "Meta description too short",
                f"Descriptions under {META_MIN_CHARS} characters under-use the snippet.",
                "Expand the description to at least 70 characters.", page.url)


def _check_structure(page: PageSignals, out: _IssueCollector) -> None:
    if not page.headings.h1:
        out.add(Category.ON_PAGE, Severity.HIGH, "Missing H1 heading",
                "The page has no H1 heading.",
                "Add one H1 that states the page's main topic.", page.url)
    elif len(page.headings.h1) > 1:
        out.add(Category.ON_PAGE, Severity.LOW, "Multiple H1 headings",
                "More than one H1 dilutes the page's main topic.",
                "Keep a single H1 and demote the others to H2.", page.url)

    if page.word_count < THIN_CONTENT_WORDS:
        out.add(Category.CONTENT, Severity.MEDIUM, "Thin content",
                f"Pages with fewer than {THIN_CONTENT_WORDS} words rarely rank.",
                "Expand the page with original, useful content.", page.url)

    if page.is_noindex:
        out.add(Category.TECHNICAL, Severity.HIGH, "Page blocked by noindex",
                "A robots meta tag keeps this page out of search results.",
                "Remove 'noindex' unless the page is meant to stay unindexed.", page.url)
    if not page.has_viewport:
        out.add(Category.TECHNICAL, Severity.MEDIUM, "Missing viewport meta tag",
                "Without a viewport tag the page is not mobile friendly.",
                'Add <meta name="viewport" content="width=device-width, initial-scale=1">.', page.url)


def _check_accessibility(page: PageSignals, out: _IssueCollector) -> None:
    images = page.images
    if images.missing_alt:
        severe = images.count and images.missing_alt / images.count > 0.5
        out.add(Category.ACCESSIBILITY, Severity.HIGH if severe else Severity.MEDIUM,
                "Images missing alt text",
                "Screen readers cannot describe images without an alt attribute.",
                "Add descriptive alt text (alt=\"\" for purely decorative images).", page.url)
    if not page.html_lang:
        out.add(Category.ACCESSIBILITY, Severity.LOW, "Missing language attribute",
                "The <html> element declares no lang attribute.",
                'Add lang="en" (or the page language) to the <html> element.', page.url)
    if page.links.empty_anchor_count:
        out.add(Category.ACCESSIBILITY, Severity.LOW, "Links without accessible text",
                "Some links have no text, aria-label or image alt.",
                "Give every link visible text or an aria-label.", page.url)


def _check_social(page: PageSignals, out: _IssueCollector) -> None:
    og = page.social.open_graph
    if not og or not ("title" in og and "image" in og):
        out.add(Category.ON_PAGE, Severity.LOW, "Missing Open Graph tags",
                "Shared links will not show a controlled title and image.",
                "Add og:title, og:description and og:image meta tags.", page.url)
    if not page.social.twitter_card:
        out.add(Category.ON_PAGE, Severity.LOW, "Missing Twitter Card tags",
                "Shared links on X/Twitter will not render a card.",
                'Add <meta name="twitter:card" content="summary_large_image"> and related tags.', page.url)


def _check_rendering(page: PageSignals, out: _IssueCollector) -> None:
    delta = page.rendering_delta
    if delta is None:
        return
    if delta.is_growth and delta.percentage > JS_DEPENDENT_GROWTH:
        out.add(Category.TECHNICAL, Severity.MEDIUM, "Content depends on JavaScript",
                "Most of the page content only exists after JavaScript runs.",
                "Server-render or pre-render the main content so crawlers see it without JavaScript.",
                page.url)
        if delta.is_absurd:
            out.add(Category.TECHNICAL, Severity.LOW, "Unusual rendering growth",
                    "The rendered page is more than ten times larger than the delivered HTML.",
                    "Check for runaway client-side rendering or injected third-party markup.",
                    page.url)
    elif not delta.is_growth and delta.percentage < JS_REPLACED_SIMILARITY:
        out.add(Category.TECHNICAL, Severity.MEDIUM, "JavaScript replaces server content",
                "The rendered page differs substantially from the HTML the server delivered.",
                "Make sure important content and links are present in the initial HTML.", page.url)


def _check_performance(page: PageSignals, out: _IssueCollector) -> None:
    perf = page.performance
    if perf is None:
        return
    if perf.lcp is not None and perf.lcp > LCP_POOR_MS:
        out.add(Category.PERFORMANCE, Severity.HIGH, "Slow Largest Contentful Paint",
                f"LCP above {LCP_POOR_MS / 1000:.1f}s.",
                "Optimise the hero image, preload critical resources and reduce render-blocking CSS/JS.",
                page.url)
    if perf.cls is not None and perf.cls > CLS_POOR:
        out.add(Category.PERFORMANCE, Severity.MEDIUM, "Layout shifts",
                f"Cumulative Layout Shift above {CLS_POOR}.",
                "Reserve space for images, ads and embeds with explicit dimensions.", page.url)
    if perf.ttfb is not None and perf.ttfb > TTFB_POOR_MS:
        out.add(Category.PERFORMANCE, Severity.MEDIUM, "Slow server response",
                f"Time to first byte above {TTFB_POOR_MS / 1000:.1f}s.",
                "Add caching or a CDN and profile slow server-side code.", page.url)


# ---------------------------------------------------------------------------
# Site-wide checks
# ---------------------------------------------------------------------------

def _check_duplicates(pages: list[PageSignals], out: _IssueCollector) -> None:
    titles: dict[str, list[str]] = defaultdict(list)
    metas: dict[str, list[str]] = defaultdict(list)
    for page in pages:
        if page.title.text:
            titles[page.title.text.strip().lower()].append(page.url)
        if page.meta_description.text:
            metas[page.meta_description.text.strip().lower()].append(page.url)
    for urls in titles.values():
        if len(urls) > 1:
            for url in urls:
                out.add(Category.ON_PAGE, Severity.MEDIUM, "Duplicate title tags",
                        "Several pages share the same title.",
                        "Write a unique title for every page.", url)
    for urls in metas.values():
        if len(urls) > 1:
            for url in urls:
                out.add(Category.ON_PAGE, Severity.MEDIUM, "Duplicate meta descriptions",
                        "Several pages share the same meta description.",
                        "Write a unique meta description for every page.", url)


def _check_schema(pages: list[PageSignals], out: _IssueCollector) -> None:
    if not any(p.schema.types for p in pages):
        out.add(Category.TECHNICAL, Severity.MEDIUM, "No structured data",
                "No JSON-LD or microdata was found on any crawled page.",
                "Add schema.org markup, starting with Organization or Person on the homepage.")
        return
    if any(p.schema.is_identity_schema for p in pages):
        return
    incomplete = [p for p in pages if p.schema.identity_type]
    if incomplete:
        missing = sorted({f for p in incomplete for f in p.schema.missing_fields})
        for page in incomplete:
            out.add(Category.TECHNICAL, Severity.MEDIUM, "Incomplete identity schema",
                    f"Organization/Person markup is missing: {', '.join(missing)}.",
                    "Add name, url and a logo or sameAs list to the Organization/Person markup.",
                    page.url)
    else:
        out.add(Category.TECHNICAL, Severity.LOW, "Missing identity schema",
                "No Organization or Person markup identifies the site owner.",
                "Add Organization (or Person) JSON-LD with name, url, logo and sameAs.")


def _check_site_files(pages: list[PageSignals], site_wide: SiteWideSignals, out: _IssueCollector) -> None:
    if site_wide.files_checked:
        if not site_wide.robots_txt_exists:
            out.add(Category.TECHNICAL, Severity.LOW, "Missing robots.txt",
                    "No robots.txt file was found.",
                    "Publish a robots.txt that references your XML sitemap.")
        if not site_wide.sitemap_exists:
            out.add(Category.TECHNICAL, Severity.MEDIUM, "Missing XML sitemap",
                    "No XML sitemap was found in robots.txt or at the usual locations.",
                    "Generate an XML sitemap and submit it in Search Console.")
    if pages and not any(p.social.favicon_declared for p in pages):
        out.add(Category.TECHNICAL, Severity.LOW, "No favicon declared",
                "No <link rel=\"icon\"> tag was found; browsers fall back to /favicon.ico.",
                "Declare a favicon with <link rel=\"icon\" href=\"...\">.")


# (signal field, header name, fix) for headers reported as Low
_SECURITY_HEADER_CHECKS = [
    ("x_frame_options", "X-Frame-Options",
     "Send X-Frame-Options: SAMEORIGIN (or a frame-ancestors CSP directive) to prevent clickjacking."),
    ("x_content_type_options", "X-Content-Type-Options",
     "Send X-Content-Type-Options: nosniff."),
    ("content_security_policy", "Content-Security-Policy",
     "Define a Content-Security-Policy that whitelists the origins your pages load from."),
    ("referrer_policy", "Referrer-Policy",
     "Send Referrer-Policy: strict-origin-when-cross-origin."),
]

REDIRECT_CHAIN_HOPS = 2


def _check_transport(transport: Optional[TransportSignals], out: _IssueCollector) -> None:
    if transport is None:
        return
    if not transport.https:
        out.add(Category.TECHNICAL, Severity.HIGH, "Site not using HTTPS",
                f"The home page is served over plain HTTP ({transport.final_url}).",
                "Install a TLS certificate and 301-redirect every HTTP URL to HTTPS.")
    elif not transport.hsts:
        out.add(Category.TECHNICAL, Severity.MEDIUM, "Missing HSTS header",
                "No Strict-Transport-Security header; browsers may still try HTTP first.",
                "Send Strict-Transport-Security: max-age=31536000; includeSubDomains.")
    for attr, name, fix in _SECURITY_HEADER_CHECKS:
        if not getattr(transport, attr):
            out.add(Category.TECHNICAL, Severity.LOW, f"Missing {name} header",
                    f"The home page response has no {name} header.", fix)
    if not transport.compressed:
        out.add(Category.TECHNICAL, Severity.MEDIUM, "No compression enabled",
                "The home page HTML is sent without gzip, deflate or Brotli compression.",
                "Enable gzip or Brotli compression for text responses on the server or CDN.")
    if not transport.cache_control:
        out.add(Category.TECHNICAL, Severity.MEDIUM, "Missing Cache-Control header",
                "The home page response sets no Cache-Control policy.",
                "Send Cache-Control headers; long max-age for static assets, short or no-cache for HTML.")
    hops = len(transport.redirect_chain)
    if hops >= REDIRECT_CHAIN_HOPS:
        out.add(Category.TECHNICAL, Severity.MEDIUM, "Redirect chain detected",
                f"The start URL passes through {hops} redirects: {' -> '.join(transport.redirect_chain)} -> "
                f"{transport.final_url}.",
                "Point links and the first redirect straight at the final URL.")
    if transport.mixed_content:
        out.add(Category.TECHNICAL, Severity.MEDIUM, "Mixed content detected",
                f"The HTTPS home page loads {len(transport.mixed_content)} resource(s) over HTTP, "
                f"e.g. {transport.mixed_content[0]}.",
                "Serve every image, script, stylesheet and frame over HTTPS.")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def detect_issues(
    pages: Iterable[PageSignals],
    site_wide: Optional[SiteWideSignals] = None,
    schema_analysis: bool = True,
) -> list[Issue]:
    """Run every page-level and site-wide check over the analysed pages."""
    pages = list(pages)
    out = _IssueCollector()
    for page in pages:
        _check_title_and_meta(page, out)
        _check_structure(page, out)
        _check_accessibility(page, out)
        _check_social(page, out)
        _check_rendering(page, out)
        _check_performance(page, out)
    _check_duplicates(pages, out)
    if schema_analysis and pages:
        _check_schema(pages, out)
    _check_site_files(pages, site_wide or SiteWideSignals(), out)
    _check_transport((site_wide or SiteWideSignals()).transport, out)
    issues = out.issues()
    logger.info("Detected %d issues across %d pages", len(issues), len(pages))
    return issues


def image_alt_findings(pages: Iterable[PageSignals]) -> list[ImageAltFinding]:
    """One finding per image without alt text."""
    findings = []
    for page in pages:
        for src in page.images.missing_alt_sources:
            name = src.rsplit("/", 1)[-1].split("?")[0] or "image"
            findings.append(
                ImageAltFinding(
                    page_url=page.url,
                    image_src=src,
                    recommendation=f"Add alt text describing '{name}' in the context of this page.",
                )
            )
    return findings
