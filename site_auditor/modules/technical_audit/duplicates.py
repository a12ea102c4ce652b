"""Duplicate URL variants and canonical-tag conflicts."""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit

from site_auditor.models.audit import Category, CrawlTarget, Issue, Severity
from site_auditor.models.page import PageSignals
from site_auditor.modules.technical_audit.canonicalizer import UrlCanonicalizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DuplicateGroup:
    key: str
    urls: tuple[str, ...]
    recommended: str


@dataclass(frozen=True)
class CanonicalConflict:
    url: str
    declared: str
    resolved: str


@dataclass(frozen=True)
class DuplicateReport:
    duplicate_groups: tuple[DuplicateGroup, ...]
    canonical_conflicts: tuple[CanonicalConflict, ...]
    issues: tuple[Issue, ...]


def variant_key(url: str) -> str:
    """Identity that ignores protocol, ``www.``, trailing slash and path case.

    The query string is part of the identity (parameter order aside), so
    ``/products?id=1`` and ``/products?id=2`` stay distinct pages.
    """
    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    path = (parts.path or "/").rstrip("/").lower() or "/"
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return f"{host}{path}?{query}" if query else f"{host}{path}"


class DuplicateDetector:
    def __init__(self, canonicalizer: UrlCanonicalizer, target: Optional[CrawlTarget] = None) -> None:
        self._canon = canonicalizer
        self._target = target

    def detect(self, pages: Iterable[PageSignals]) -> DuplicateReport:
        pages = list(pages)
        crawled = {p.url for p in pages}

        groups: dict[str, list[str]] = {}
        for page in pages:
            members = groups.setdefault(variant_key(page.url), [])
            if page.url not in members:
                members.append(page.url)

        duplicate_groups: list[DuplicateGroup] = []
        issues: list[Issue] = []
        for key, urls in groups.items():
            if len(urls) < 2:
                continue
            group = DuplicateGroup(key=key, urls=tuple(urls), recommended=self.recommend(urls))
            duplicate_groups.append(group)
            issues.append(
                Issue(
                    category=Category.TECHNICAL,
                    severity=Severity.MEDIUM,
                    title="Duplicate URL variants",
                    description=(
                        f"{len(urls)} URL variants serve the same page: "
                        + ", ".join(urls[:5])
                    ),
                    affected_urls=group.urls,
                    fix_instructions=(
                        f"Choose {group.recommended} as the canonical URL, 301-redirect the other "
                        "variants to it and point every rel=canonical tag at it."
                    ),
                )
            )

        conflicts: list[CanonicalConflict] = []
        for page in pages:
            if not page.canonical_tag:
                continue
            resolved = self._canon.resolve(page.canonical_tag, page.url, self._target)
            if resolved is None or resolved == page.url or resolved in crawled:
                continue
            conflicts.append(CanonicalConflict(url=page.url, declared=page.canonical_tag, resolved=resolved))
            issues.append(
                Issue(
                    category=Category.TECHNICAL,
                    severity=Severity.MEDIUM,
                    title="Canonical tag points to an uncrawled URL",
                    description=(
                        f"{page.url} declares {resolved} as canonical, but that URL was not "
                        "reachable during the crawl."
                    ),
                    affected_urls=(page.url,),
                    fix_instructions=(
                        "Point the canonical tag at a live, indexable URL (usually the page itself) "
                        "or fix the target page."
                    ),
                )
            )

        if duplicate_groups or conflicts:
            logger.info(
                "Duplicates: %d variant groups, %d canonical conflicts",
                len(duplicate_groups),
                len(conflicts),
            )
        return DuplicateReport(
            duplicate_groups=tuple(duplicate_groups),
            canonical_conflicts=tuple(conflicts),
            issues=tuple(issues),
        )

    def recommend(self, urls: Iterable[str]) -> str:
        """Preferred canonical among variants.

        Order: https, then non-www (www when the site prefers it), then the
        fewest query parameters, then lower-case paths, then the shortest.
        """
        prefer_www = bool(self._target and self._target.preferred_hostname.startswith("www."))

        def rank(url: str) -> tuple:
            parts = urlsplit(url)
            host = parts.hostname or ""
            is_www = host.startswith("www.")
            return (
                parts.scheme != "https",
                is_www != prefer_www,
                len(parse_qsl(parts.query, keep_blank_values=True)),
                parts.path != parts.path.lower(),
                len(url),
                url,
            )

        return min(urls, key=rank)
