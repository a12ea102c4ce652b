"""Performance metric validation and per-page performance scoring.

Browser and API metrics are occasionally inconsistent (an LCP that finishes
before first paint, minute-long TTFBs from a stalled tab).  ``validate_metrics``
caps implausible values and enforces ``ttfb <= fcp <= lcp``; every correction
is logged and kept on the returned record.
"""

import logging
from dataclasses import replace
from typing import Optional

from site_auditor.models.page import PerformanceSignals

logger = logging.getLogger(__name__)

# Caps in milliseconds
TTFB_MAX, TTFB_CAPPED = 10_000.0, 5_000.0
FCP_MAX, FCP_CAPPED = 15_000.0, 10_000.0
LCP_SUSPECT, LCP_SUSPECT_FCP, LCP_SUSPECT_CAPPED = 30_000.0, 5_000.0, 10_000.0
LCP_MAX, LCP_CAPPED = 60_000.0, 15_000.0
CLS_MAX, CLS_CAPPED = 5.0, 2.0

# (good, poor) thresholds and weight of each metric in a page score
_METRIC_THRESHOLDS: dict[str, tuple[float, float, float]] = {
    "lcp": (2_500.0, 4_000.0, 40.0),
    "fcp": (1_800.0, 3_000.0, 30.0),
    "cls": (0.1, 0.25, 20.0),
    "ttfb": (800.0, 1_800.0, 10.0),
}


def validate_metrics(metrics: PerformanceSignals) -> PerformanceSignals:
    """Return a corrected copy of *metrics* with ``warnings`` filled in."""
    ttfb, fcp, lcp, cls = metrics.ttfb, metrics.fcp, metrics.lcp, metrics.cls
    warnings: list[str] = []

    if ttfb is not None and ttfb > TTFB_MAX:
        warnings.append(f"TTFB {ttfb:.0f}ms exceeds {TTFB_MAX:.0f}ms; capped to {TTFB_CAPPED:.0f}ms")
        ttfb = TTFB_CAPPED
    if fcp is not None and fcp > FCP_MAX:
        warnings.append(f"FCP {fcp:.0f}ms exceeds {FCP_MAX:.0f}ms; capped to {FCP_CAPPED:.0f}ms")
        fcp = FCP_CAPPED
    if fcp is not None and ttfb is not None and fcp < ttfb:
        warnings.append(f"FCP {fcp:.0f}ms earlier than TTFB {ttfb:.0f}ms; raised to TTFB")
        fcp = ttfb

    if lcp is not None:
        floor = fcp if fcp is not None else ttfb
        if floor is not None and lcp < floor:
            warnings.append(f"LCP {lcp:.0f}ms earlier than {floor:.0f}ms; raised to match")
            lcp = floor
        if lcp > LCP_SUSPECT and fcp is not None and fcp < LCP_SUSPECT_FCP:
            warnings.append(
                f"LCP {lcp:.0f}ms implausible with FCP {fcp:.0f}ms; capped to {LCP_SUSPECT_CAPPED:.0f}ms"
            )
            lcp = LCP_SUSPECT_CAPPED
        if lcp > LCP_MAX:
            warnings.append(f"LCP {lcp:.0f}ms exceeds {LCP_MAX:.0f}ms; capped to {LCP_CAPPED:.0f}ms")
            lcp = LCP_CAPPED
        # caps above never undercut FCP, which is at most FCP_CAPPED here
        if fcp is not None and lcp < fcp:
            lcp = fcp

    if cls is not None and cls < 0:
        warnings.append(f"Negative CLS {cls}; set to 0")
        cls = 0.0
    elif cls is not None and cls > CLS_MAX:
        warnings.append(f"CLS {cls} exceeds {CLS_MAX}; capped to {CLS_CAPPED}")
        cls = CLS_CAPPED

    for message in warnings:
        logger.warning("Performance metrics corrected: %s", message)

    if not warnings:
        return metrics
    return replace(
        metrics,
        ttfb=ttfb,
        fcp=fcp,
        lcp=lcp,
        cls=cls,
        warnings=tuple(metrics.warnings) + tuple(warnings),
    )


def _metric_points(value: float, good: float, poor: float, weight: float) -> float:
    if value <= good:
        return weight
    if value >= poor:
        return weight * 0.25
    # linear between good (full) and poor (quarter)
    fraction = (value - good) / (poor - good)
    return weight * (1 - 0.75 * fraction)


def score_metrics(metrics: Optional[PerformanceSignals]) -> Optional[float]:
    """0-100 score from validated metrics; ``None`` when unusable.

    Missing metrics are left out and the remaining weights rescaled.
    """
    if metrics is None or not metrics.is_usable:
        return None
    earned = total = 0.0
    for key, (good, poor, weight) in _METRIC_THRESHOLDS.items():
        value = getattr(metrics, key)
        if value is None:
            continue
        earned += _metric_points(value, good, poor, weight)
        total += weight
    if total == 0:
        return None
    return round(earned / total * 100, 1)
