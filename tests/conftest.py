"""Shared pytest fixtures for the Site Auditor test suite."""

import sys
from pathlib import Path
from typing import Optional, Union
from unittest.mock import AsyncMock, MagicMock

import pytest

# Ensure project root is on sys.path so 'site_auditor' is importable.
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from site_auditor.errors import FetchError  # noqa: E402
from site_auditor.models.page import PageSignals  # noqa: E402
from site_auditor.modules.technical_audit.canonicalizer import RedirectResolution, UrlCanonicalizer  # noqa: E402
from site_auditor.modules.technical_audit.fetcher import FetchOutcome, RawFetchResult  # noqa: E402


def html_page(
    title: str = "Example page title for testing purposes",
    body: str = "<p>Hello world.</p>",
    head: str = "",
    lang: str = "en",
) -> str:
    """Small but complete HTML document."""
    return (
        f'<html lang="{lang}"><head><title>{title}</title>'
        '<meta name="viewport" content="width=device-width, initial-scale=1">'
        f"{head}</head><body>{body}</body></html>"
    )


class FakeFetcher:
    """In-memory stand-in for ``PageFetcher``.

    ``pages`` maps a requested URL to HTML, to ``(status, html)``, to
    ``(status, html, content_type)`` or to an exception instance to raise.
    Unknown URLs raise ``FetchError``.  *headers* are added to every response.
    """

    def __init__(self, pages: dict, redirects: Optional[dict[str, str]] = None, headers: Optional[dict] = None):
        self.pages = pages
        self.redirects = redirects or {}
        self.headers = headers or {}
        self.requested: list[str] = []
        self.closed = False

    async def retrieve(self, url: str) -> FetchOutcome:
        self.requested.append(url)
        final_url = self.redirects.get(url, url)
        entry: Union[str, tuple, Exception, None] = self.pages.get(url)
        if entry is None:
            raise FetchError(url, "connection refused")
        if isinstance(entry, Exception):
            raise entry
        status, content_type = 200, "text/html"
        html = entry
        if isinstance(entry, tuple):
            status, html = entry[0], entry[1]
            if len(entry) > 2:
                content_type = entry[2]
        raw = RawFetchResult(
            url=url,
            final_url=final_url,
            status_code=status,
            headers={"Content-Type": content_type, **self.headers},
            html=html,
            content_type=content_type,
        )
        return FetchOutcome(raw=raw)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def canonicalizer():
    return UrlCanonicalizer()


@pytest.fixture()
def target(canonicalizer):
    return canonicalizer.build_target("https://example.com", "https://example.com/")


@pytest.fixture()
def make_page():
    """Factory building ``PageSignals`` with sensible defaults."""

    def _make(url: str = "https://example.com/", **kwargs) -> PageSignals:
        return PageSignals(url=url, **kwargs)

    return _make


@pytest.fixture()
def fake_fetcher_factory():
    return FakeFetcher


@pytest.fixture()
def no_redirect_canonicalizer():
    """Canonicalizer whose redirect resolution never touches the network."""
    canon = UrlCanonicalizer()
    canon.follow_redirects = AsyncMock(side_effect=lambda url, *a, **kw: RedirectResolution(final_url=url))
    return canon


@pytest.fixture()
def mock_llm_client():
    """Return a mock LLMClient that returns canned responses."""
    client = MagicMock()
    client.is_available = MagicMock(return_value=True)
    client.generate_json = AsyncMock(return_value={
        "competitors": ["https://rival-one.com", "https://rival-two.com"],
        "keywords": ["seo audit tool", "site health check"],
    })
    return client
