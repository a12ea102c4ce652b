"""HTTPS, security header, compression and caching facts for the home page.

Works on the raw response the crawler already fetched, so no extra request
is made.
"""

import logging
from typing import Mapping

from bs4 import BeautifulSoup

from site_auditor.models.audit import CrawlTarget, TransportSignals
from site_auditor.modules.technical_audit.fetcher import RawFetchResult

logger = logging.getLogger(__name__)

SECURITY_HEADERS: dict[str, str] = {
    "strict-transport-security": "hsts",
    "content-security-policy": "content_security_policy",
    "x-frame-options": "x_frame_options",
    "x-content-type-options": "x_content_type_options",
    "referrer-policy": "referrer_policy",
}

# (tag, attribute) pairs that load a subresource
_RESOURCE_ATTRS = [
    ("img", "src"),
    ("script", "src"),
    ("iframe", "src"),
    ("source", "src"),
    ("video", "src"),
    ("audio", "src"),
]
_LOADED_LINK_RELS = {"stylesheet", "icon", "preload", "shortcut"}


def _lower_keys(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(k).lower(): str(v) for k, v in (headers or {}).items()}


def find_mixed_content(html: str, limit: int = 20) -> tuple[str, ...]:
    """``http://`` subresources referenced by a page."""
    soup = BeautifulSoup(html or "", "html.parser")
    found: list[str] = []
    for tag_name, attr in _RESOURCE_ATTRS:
        for el in soup.find_all(tag_name):
            val = (el.get(attr) or "").strip()
            if val.lower().startswith("http://") and val not in found:
                found.append(val)
    for el in soup.find_all("link"):
        rels = {r.lower() for r in (el.get("rel") or [])}
        val = (el.get("href") or "").strip()
        if rels & _LOADED_LINK_RELS and val.lower().startswith("http://") and val not in found:
            found.append(val)
    return tuple(found[:limit])


def inspect_transport(raw: RawFetchResult, target: CrawlTarget) -> TransportSignals:
    """Collect transport-level signals from the home page response."""
    headers = _lower_keys(raw.headers)
    https = raw.final_url.lower().startswith("https://")
    present = {field: name in headers for name, field in SECURITY_HEADERS.items()}
    signals = TransportSignals(
        final_url=raw.final_url,
        https=https,
        content_encoding=headers.get("content-encoding", "").lower(),
        cache_control="cache-control" in headers,
        redirect_chain=target.redirect_chain,
        mixed_content=find_mixed_content(raw.html) if https else (),
        **present,
    )
    logger.debug("Transport signals for %s: %s", raw.final_url, signals)
    return signals
