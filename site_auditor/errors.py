"""Exception taxonomy for the audit pipeline.

Per-page failures (``FetchError`` and its subclasses, render failures) are
recovered by the crawler and recorded in the crawl diagnostics.  Only
``RootUnreachableError`` and ``RenderSubsystemUnavailable`` end an audit.
"""

from typing import Optional


class AuditError(Exception):
    """Base class for every error raised by site_auditor."""


class InvalidAuditRequest(AuditError, ValueError):
    """The audit request is malformed (bad URL, unknown tier, ...)."""


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------

class FetchError(AuditError):
    """Network or DNS failure while retrieving a URL."""

    def __init__(self, url: str, reason: str, status_code: Optional[int] = None) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason
        self.status_code = status_code


class PageTimeoutError(FetchError):
    """A single page exceeded its retrieval timeout."""

    def __init__(self, url: str, timeout: float) -> None:
        super().__init__(url, f"page timed out after {timeout:.1f}s")
        self.timeout = timeout


class RedirectLoopError(FetchError):
    """Too many redirects, or a redirect chain that revisits a URL."""

    def __init__(self, url: str, chain: list[str]) -> None:
        super().__init__(url, f"redirect loop after {len(chain)} hops")
        self.chain = list(chain)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

class RenderUnavailable(AuditError):
    """The render engine could not serve this page; fall back to raw HTML."""


class RenderTimeoutError(RenderUnavailable):
    """The browser did not finish loading the page in time."""


class RenderSubsystemUnavailable(AuditError):
    """Rendering is required but the render engine cannot be started."""


# ---------------------------------------------------------------------------
# Audit level
# ---------------------------------------------------------------------------

class RootUnreachableError(AuditError):
    """The audited root URL cannot be fetched."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Root URL unreachable: {url} ({reason})")
        self.url = url
        self.reason = reason


class CompetitorCrawlFailure(AuditError):
    """A competitor site could not be crawled."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Competitor crawl failed for {url}: {reason}")
        self.url = url
        self.reason = reason
