"""Competitor analysis records."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class CompetitorCrawl:
    url: str
    ok: bool
    pages_crawled: int = 0
    keywords: tuple[str, ...] = ()
    titles: tuple[str, ...] = ()
    avg_word_count: float = 0.0
    error: Optional[str] = None


@dataclass(frozen=True)
class SuggestionResult:
    """Uniform result of one competitor-suggestion provider."""

    ok: bool
    provider: str
    competitors: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()
    error: Optional[str] = None


@dataclass(frozen=True)
class CompetitorReport:
    competitor_crawls: tuple[CompetitorCrawl, ...]
    shared_keywords: tuple[str, ...]
    gap_keywords: tuple[str, ...]
    confidence: float
    degraded: bool
    fallback_keywords: tuple[str, ...] = ()
    fallback_source: Optional[str] = None
    suggestion_provider: Optional[str] = None
