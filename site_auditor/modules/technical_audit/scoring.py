"""Category and overall scoring.

Each category starts at 100 and loses points for the issues scoped to it.
Issues are grouped by (category, severity, title); a group costs its
severity penalty scaled by ``0.5 + 0.5 * sqrt(affected / pages)`` so that a
template problem repeated on every page costs one full penalty, not one per
page.  Issues with no affected URLs are site-wide and count as fraction 1.

The engine is pure: the same inputs always produce the same scores.
"""

import logging
import math
from collections import defaultdict
from typing import Iterable, Optional, Sequence

from site_auditor.models.audit import Category, CategoryScores, Issue, Severity, SiteWideSignals
from site_auditor.models.page import PageSignals
from site_auditor.modules.technical_audit.performance import score_metrics, validate_metrics

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Weight configuration
# ---------------------------------------------------------------------------

SEVERITY_PENALTIES: dict[Severity, float] = {
    Severity.HIGH: 15.0,
    Severity.MEDIUM: 8.0,
    Severity.LOW: 3.0,
}

OVERALL_WEIGHTS: dict[Category, float] = {
    Category.TECHNICAL: 0.35,
    Category.ON_PAGE: 0.25,
    Category.CONTENT: 0.25,
    Category.ACCESSIBILITY: 0.15,
}

OVERALL_WEIGHTS_WITH_PERFORMANCE: dict[Category, float] = {
    Category.TECHNICAL: 0.30,
    Category.ON_PAGE: 0.20,
    Category.CONTENT: 0.20,
    Category.ACCESSIBILITY: 0.10,
    Category.PERFORMANCE: 0.20,
}

# Maximum points the readability subscore can take off the content score.
READABILITY_WEIGHT = 45.0
POOR_READABILITY_SUBSCORE = 50.0

# (minimum average Flesch score, subscore), checked top-down
_FLESCH_BANDS = [(60.0, 100.0), (50.0, 85.0), (30.0, 60.0)]
_FLESCH_FLOOR = 30.0
# (average sentence length above which, multiplier), checked top-down
_SENTENCE_LENGTH_FACTORS = [(50.0, 0.4), (30.0, 0.6), (25.0, 0.85)]
_SHORT_SENTENCE_LENGTH, _SHORT_SENTENCE_FACTOR = 8.0, 0.9

ACCESSIBILITY_BASE_CAP = 10.0
ACCESSIBILITY_CAP_STEP = 12.0
ACCESSIBILITY_FREE_GROUPS = 2


def _clamp(score: float) -> float:
    return round(min(max(score, 0.0), 100.0), 1)


def readability_subscore(pages: Sequence[PageSignals]) -> Optional[float]:
    """0-100 readability from averaged Flesch score and sentence length."""
    rated = [p.readability for p in pages if p.readability is not None]
    if not rated:
        return None
    flesch = sum(r.flesch_score for r in rated) / len(rated)
    sentence_length = sum(r.avg_sentence_length for r in rated) / len(rated)

    subscore = _FLESCH_FLOOR
    for minimum, value in _FLESCH_BANDS:
        if flesch >= minimum:
            subscore = value
            break
    for threshold, factor in _SENTENCE_LENGTH_FACTORS:
        if sentence_length > threshold:
            subscore *= factor
            break
    else:
        if sentence_length < _SHORT_SENTENCE_LENGTH:
            subscore *= _SHORT_SENTENCE_FACTOR
    return round(subscore, 1)


# ---------------------------------------------------------------------------
# ScoringEngine
# ---------------------------------------------------------------------------

class ScoringEngine:
    """Turn issues and page signals into category scores."""

    def score(
        self,
        issues: Iterable[Issue],
        pages: Iterable[PageSignals],
        site_wide: Optional[SiteWideSignals] = None,
    ) -> CategoryScores:
        issues = list(issues)
        pages = list(pages)
        penalties, group_counts = self._penalties(issues, len(pages))

        technical = 100.0 - penalties[Category.TECHNICAL]
        on_page = 100.0 - penalties[Category.ON_PAGE]

        content = 100.0 - penalties[Category.CONTENT]
        readability = readability_subscore(pages)
        if readability is not None:
            content -= READABILITY_WEIGHT * (1 - readability / 100)

        cap = ACCESSIBILITY_BASE_CAP + ACCESSIBILITY_CAP_STEP * max(
            0, group_counts[Category.ACCESSIBILITY] - ACCESSIBILITY_FREE_GROUPS
        )
        accessibility = 100.0 - min(penalties[Category.ACCESSIBILITY], cap)

        performance: Optional[float] = None
        page_scores = [
            s for s in (score_metrics(validate_metrics(p.performance)) for p in pages if p.performance)
            if s is not None
        ]
        if page_scores:
            performance = _clamp(sum(page_scores) / len(page_scores) - penalties[Category.PERFORMANCE])

        categories = {
            Category.TECHNICAL: _clamp(technical),
            Category.ON_PAGE: _clamp(on_page),
            Category.CONTENT: _clamp(content),
            Category.ACCESSIBILITY: _clamp(accessibility),
        }
        weights = OVERALL_WEIGHTS
        if performance is not None:
            categories[Category.PERFORMANCE] = performance
            weights = OVERALL_WEIGHTS_WITH_PERFORMANCE
        overall = _clamp(sum(categories[c] * w for c, w in weights.items()))

        scores = CategoryScores(
            technical=categories[Category.TECHNICAL],
            on_page=categories[Category.ON_PAGE],
            content=categories[Category.CONTENT],
            accessibility=categories[Category.ACCESSIBILITY],
            performance=performance,
            overall=overall,
        )
        logger.debug("Scores: %s", scores)
        return scores

    @staticmethod
    def _penalties(issues: list[Issue], total_pages: int) -> tuple[dict[Category, float], dict[Category, int]]:
        groups: dict[tuple, set[str]] = {}
        for issue in issues:
            key = (issue.category, issue.severity, issue.title)
            groups.setdefault(key, set()).update(issue.affected_urls)

        penalties: dict[Category, float] = defaultdict(float)
        counts: dict[Category, int] = defaultdict(int)
        total = max(total_pages, 1)
        for (category, severity, _title), urls in groups.items():
            fraction = 1.0 if not urls else min(len(urls) / total, 1.0)
            penalties[category] += SEVERITY_PENALTIES[severity] * (0.5 + 0.5 * math.sqrt(fraction))
            counts[category] += 1
        return penalties, counts

    # ------------------------------------------------------------------
    # Meta issues
    # ------------------------------------------------------------------

    def meta_issues(self, scores: CategoryScores, pages: Iterable[PageSignals]) -> list[Issue]:
        """Issues about the scoring inputs themselves; reported, not re-scored."""
        pages = list(pages)
        issues: list[Issue] = []

        subscore = readability_subscore(pages)
        if subscore is not None and subscore < POOR_READABILITY_SUBSCORE:
            hard = tuple(
                p.url for p in pages
                if p.readability is not None
                and (p.readability.flesch_score < 30 or p.readability.avg_sentence_length > 30)
            )
            issues.append(
                Issue(
                    category=Category.CONTENT,
                    severity=Severity.MEDIUM,
                    title="Hard-to-read content",
                    description=(
                        f"Site readability subscore is {subscore:.0f}/100 (content score {scores.content:.0f}). "
                        "Sentences are long or words are complex."
                    ),
                    affected_urls=hard,
                    fix_instructions="Break long sentences up, prefer shorter words and add subheadings.",
                )
            )

        corrected = tuple(
            p.url for p in pages if p.performance is not None and validate_metrics(p.performance).warnings
        )
        if corrected:
            issues.append(
                Issue(
                    category=Category.PERFORMANCE,
                    severity=Severity.LOW,
                    title="Inconsistent performance data corrected",
                    description="Some measured metrics were physically inconsistent and were corrected before scoring.",
                    affected_urls=corrected,
                    fix_instructions="Re-run the performance test; unstable measurements often mean a slow or flaky server.",
                )
            )
        return issues
