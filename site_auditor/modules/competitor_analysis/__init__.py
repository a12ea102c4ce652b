"""Competitor crawling, keyword gaps and competitor suggestions."""

from site_auditor.modules.competitor_analysis.analyzer import CompetitorAnalyzer
from site_auditor.modules.competitor_analysis.suggestions import SuggestionChain

__all__ = ["CompetitorAnalyzer", "SuggestionChain"]
