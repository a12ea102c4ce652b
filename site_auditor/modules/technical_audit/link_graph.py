"""Internal link graph over the analysed pages.

Thresholds:

* ``hub``       outbound >= max(HUB_MIN_OUTBOUND, P90 of outbound counts)
* ``authority`` inbound  >= max(AUTHORITY_MIN_INBOUND, P90 of inbound counts)
* ``isolated``  inbound == 0 and outbound == 0
* ``orphan``    inbound == 0, never the homepage

Percentiles use the nearest-rank method.  When a node qualifies for several
roles the first of isolated, orphan, authority, hub wins.
"""

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from site_auditor.models.audit import Category, Issue, LinkGraphNode, NodeRole, Severity
from site_auditor.models.page import PageSignals

logger = logging.getLogger(__name__)

HUB_PERCENTILE = 90
AUTHORITY_PERCENTILE = 90
HUB_MIN_OUTBOUND = 5
AUTHORITY_MIN_INBOUND = 3


def percentile(values: Sequence[int], pct: float) -> int:
    """Nearest-rank percentile of *values* (0 for an empty sequence)."""
    if not values:
        return 0
    ordered = sorted(values)
    rank = max(math.ceil(pct / 100 * len(ordered)), 1)
    return ordered[rank - 1]


@dataclass(frozen=True)
class LinkGraph:
    nodes: tuple[LinkGraphNode, ...]
    issues: tuple[Issue, ...]
    hub_threshold: int
    authority_threshold: int

    def by_role(self, role: NodeRole) -> list[LinkGraphNode]:
        return [n for n in self.nodes if n.role == role]

    def node(self, url: str) -> Optional[LinkGraphNode]:
        return next((n for n in self.nodes if n.url == url), None)


class LinkGraphBuilder:
    """Build the graph from scratch for every crawl."""

    def build(self, pages: Iterable[PageSignals], homepage: Optional[str] = None) -> LinkGraph:
        pages = list(pages)
        urls = list(dict.fromkeys(p.url for p in pages))
        if homepage is None and urls:
            homepage = urls[0]
        known = set(urls)

        outbound: dict[str, set[str]] = {u: set() for u in urls}
        inbound: dict[str, int] = {u: 0 for u in urls}
        for page in pages:
            targets = {t for t in page.links.internal if t in known and t != page.url}
            outbound[page.url] |= targets
        for source, targets in outbound.items():
            for t in targets:
                inbound[t] += 1

        out_counts = [len(outbound[u]) for u in urls]
        in_counts = [inbound[u] for u in urls]
        hub_threshold = max(HUB_MIN_OUTBOUND, percentile(out_counts, HUB_PERCENTILE))
        authority_threshold = max(AUTHORITY_MIN_INBOUND, percentile(in_counts, AUTHORITY_PERCENTILE))

        nodes: list[LinkGraphNode] = []
        issues: list[Issue] = []
        for url in urls:
            n_in, n_out = inbound[url], len(outbound[url])
            role = self._classify(url, n_in, n_out, homepage, hub_threshold, authority_threshold)
            nodes.append(LinkGraphNode(url=url, inbound_count=n_in, outbound_count=n_out, role=role))
            if role in (NodeRole.ORPHAN, NodeRole.ISOLATED) and url != homepage:
                issues.append(self._orphan_issue(url))

        logger.info(
            "Link graph: %d nodes, %d orphans, hub>=%d, authority>=%d",
            len(nodes),
            len(issues),
            hub_threshold,
            authority_threshold,
        )
        return LinkGraph(
            nodes=tuple(nodes),
            issues=tuple(issues),
            hub_threshold=hub_threshold,
            authority_threshold=authority_threshold,
        )

    @staticmethod
    def _classify(
        url: str,
        n_in: int,
        n_out: int,
        homepage: Optional[str],
        hub_threshold: int,
        authority_threshold: int,
    ) -> NodeRole:
        if n_in == 0 and n_out == 0:
            return NodeRole.ISOLATED
        if n_in == 0 and url != homepage:
            return NodeRole.ORPHAN
        if n_in >= authority_threshold:
            return NodeRole.AUTHORITY
        if n_out >= hub_threshold:
            return NodeRole.HUB
        return NodeRole.NORMAL

    @staticmethod
    def _orphan_issue(url: str) -> Issue:
        return Issue(
            category=Category.TECHNICAL,
            severity=Severity.MEDIUM,
            title="Orphan page",
            description=f"No other crawled page links to {url}.",
            affected_urls=(url,),
            fix_instructions=(
                "Add contextual internal links to this page from related pages "
                "or navigation so users and crawlers can reach it."
            ),
        )
