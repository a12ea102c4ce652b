"""Page retrieval: raw HTTP fetch plus optional browser rendering.

Rendering goes through a ``RenderPool`` so the crawler never deals with the
browser directly.  Any render failure is translated to ``RenderUnavailable``
and the page falls back to its raw HTML.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import aiohttp
from playwright.async_api import Browser, BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from site_auditor.errors import (
    FetchError,
    PageTimeoutError,
    RedirectLoopError,
    RenderSubsystemUnavailable,
    RenderTimeoutError,
    RenderUnavailable,
)

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; SiteAuditorBot/1.0; +https://example.invalid/bot)"

_HTML_TYPES = ("text/html", "application/xhtml+xml")

# Registered before any page script runs; collects LCP, CLS and FID.
_VITALS_INIT_SCRIPT = """
window.__auditVitals = {lcp: null, cls: 0, fid: null};
try {
  new PerformanceObserver((list) => {
    const entries = list.getEntries();
    const last = entries[entries.length - 1];
    if (last) window.__auditVitals.lcp = last.renderTime || last.loadTime || last.startTime;
  }).observe({type: 'largest-contentful-paint', buffered: true});
  new PerformanceObserver((list) => {
    for (const e of list.getEntries()) {
      if (!e.hadRecentInput) window.__auditVitals.cls += e.value;
    }
  }).observe({type: 'layout-shift', buffered: true});
  new PerformanceObserver((list) => {
    const e = list.getEntries()[0];
    if (e && window.__auditVitals.fid === null) window.__auditVitals.fid = e.processingStart - e.startTime;
  }).observe({type: 'first-input', buffered: true});
} catch (e) {}
"""

_VITALS_COLLECT_SCRIPT = """
() => {
  const nav = performance.getEntriesByType('navigation')[0];
  const paint = performance.getEntriesByName('first-contentful-paint')[0];
  const v = window.__auditVitals || {};
  return {
    ttfb: nav ? nav.responseStart : null,
    fcp: paint ? paint.startTime : null,
    lcp: v.lcp === undefined ? null : v.lcp,
    cls: v.cls === undefined ? null : v.cls,
    fid: v.fid === undefined ? null : v.fid,
  };
}
"""


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RawFetchResult:
    url: str
    final_url: str
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    html: str = ""
    content_type: str = "text/html"
    elapsed: float = 0.0

    @property
    def is_html(self) -> bool:
        if self.content_type:
            return self.content_type.lower() in _HTML_TYPES
        return "<html" in self.html[:2048].lower()


@dataclass(frozen=True)
class RenderedResult:
    url: str
    status_code: int
    html: str
    dom_snapshot: str
    title: str = ""
    performance_metrics: dict[str, Optional[float]] = field(default_factory=dict)


@dataclass(frozen=True)
class FetchOutcome:
    raw: RawFetchResult
    rendered: Optional[RenderedResult] = None
    rendering_degraded: bool = False
    degradation_reason: str = ""

    @property
    def url(self) -> str:
        return self.raw.url

    @property
    def final_url(self) -> str:
        return self.raw.final_url

    @property
    def status_code(self) -> int:
        return self.raw.status_code


@dataclass
class RenderSession:
    context: BrowserContext
    page: Page


# ---------------------------------------------------------------------------
# Render pools
# ---------------------------------------------------------------------------

class RenderPool:
    """Capability interface over a pooled render engine."""

    renders = True

    async def acquire(self) -> RenderSession:
        raise NotImplementedError

    async def release(self, session: RenderSession) -> None:
        raise NotImplementedError

    async def health_check(self) -> bool:
        raise NotImplementedError

    @property
    def available(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class HttpOnlyRenderPool(RenderPool):
    """Lightweight mode: nothing is rendered, pages are analysed from raw HTML."""

    renders = False

    async def acquire(self) -> RenderSession:
        raise RenderUnavailable("rendering disabled (HTTP-only mode)")

    async def release(self, session: RenderSession) -> None:
        return None

    async def health_check(self) -> bool:
        return False

    @property
    def available(self) -> bool:
        return False


class PlaywrightRenderPool(RenderPool):
    """One shared Chromium instance with a bounded number of live pages.

    Each ``acquire`` probes the browser first.  A disconnected or crashed
    browser is discarded and relaunched once; if that also fails the caller
    receives ``RenderUnavailable`` and the pool is marked exhausted so later
    pages skip straight to raw fetching.
    """

    def __init__(
        self,
        max_concurrent: int = 3,
        headless: bool = True,
        user_agent: str = DEFAULT_USER_AGENT,
        navigation_timeout: float = 30.0,
    ) -> None:
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._lock = asyncio.Lock()
        self._headless = headless
        self._user_agent = user_agent
        self._navigation_timeout_ms = int(navigation_timeout * 1000)
        self._playwright: Any = None
        self._browser: Optional[Browser] = None
        self._exhausted = False
        self.restarts = 0

    @property
    def available(self) -> bool:
        return not self._exhausted

    async def health_check(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def _launch(self) -> Browser:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self._headless)
        return self._browser

    async def _discard_browser(self) -> None:
        browser, self._browser = self._browser, None
        if browser is None:
            return
        try:
            await browser.close()
        except PlaywrightError as exc:
            logger.debug("Ignoring error while closing dead browser: %s", exc)

    async def _ensure_browser(self) -> Browser:
        async with self._lock:
            if await self.health_check():
                return self._browser  # type: ignore[return-value]
            if self._browser is not None:
                logger.warning("Render engine disconnected, recreating it")
                self.restarts += 1
            await self._discard_browser()
            return await self._launch()

    async def acquire(self) -> RenderSession:
        if self._exhausted:
            raise RenderUnavailable("render engine unavailable")
        await self._semaphore.acquire()
        try:
            last_error: Optional[BaseException] = None
            for attempt in range(2):
                try:
                    browser = await self._ensure_browser()
                    context = await browser.new_context(
                        user_agent=self._user_agent,
                        viewport={"width": 1366, "height": 900},
                        locale="en-US",
                    )
                    page = await context.new_page()
                    page.set_default_timeout(self._navigation_timeout_ms)
                    await page.add_init_script(_VITALS_INIT_SCRIPT)
                    return RenderSession(context=context, page=page)
                except PlaywrightError as exc:
                    last_error = exc
                    logger.warning("Render session attempt %d failed: %s", attempt + 1, exc)
                    async with self._lock:
                        await self._discard_browser()
            self._exhausted = True
            raise RenderUnavailable(f"render engine unavailable: {last_error}")
        except BaseException:
            self._semaphore.release()
            raise

    async def release(self, session: RenderSession) -> None:
        try:
            await session.context.close()
        except PlaywrightError as exc:
            logger.debug("Render context already closed: %s", exc)
        finally:
            self._semaphore.release()

    async def close(self) -> None:
        await self._discard_browser()
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


# ---------------------------------------------------------------------------
# PageFetcher
# ---------------------------------------------------------------------------

class PageFetcher:
    """Fetch raw HTML and, where possible, a rendered DOM for a URL."""

    def __init__(
        self,
        render_pool: Optional[RenderPool] = None,
        request_timeout: int = 20,
        page_timeout: float = 45.0,
        user_agent: str = DEFAULT_USER_AGENT,
        title_poll_attempts: int = 5,
        title_poll_interval: float = 0.5,
        settle_delay: float = 1.0,
        render_required: bool = False,
    ) -> None:
        self._pool = render_pool or HttpOnlyRenderPool()
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)
        self.page_timeout = page_timeout
        self._user_agent = user_agent
        self._title_attempts = max(title_poll_attempts, 1)
        self._title_interval = title_poll_interval
        self._settle_delay = settle_delay
        self._render_required = render_required

    @property
    def render_pool(self) -> RenderPool:
        return self._pool

    # ------------------------------------------------------------------
    # Raw fetch
    # ------------------------------------------------------------------

    async def fetch(self, url: str) -> RawFetchResult:
        """GET *url* without executing JavaScript."""
        start = time.monotonic()
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(
                    url,
                    headers={"User-Agent": self._user_agent, "Accept": "text/html,application/xhtml+xml"},
                    ssl=False,
                    allow_redirects=True,
                    max_redirects=5,
                ) as resp:
                    content_type = resp.content_type or ""
                    html = ""
                    if not content_type or content_type.lower() in _HTML_TYPES:
                        html = await resp.text(errors="replace")
                    return RawFetchResult(
                        url=url,
                        final_url=str(resp.url),
                        status_code=resp.status,
                        headers={k: v for k, v in resp.headers.items()},
                        html=html,
                        content_type=content_type,
                        elapsed=round(time.monotonic() - start, 3),
                    )
        except aiohttp.TooManyRedirects as exc:
            chain = [str(r.url) for r in exc.history]
            raise RedirectLoopError(url, chain) from exc
        except aiohttp.ClientError as exc:
            raise FetchError(url, str(exc) or exc.__class__.__name__) from exc
        except asyncio.TimeoutError as exc:
            raise FetchError(url, "request timed out") from exc

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    async def render(self, url: str) -> RenderedResult:
        """Render *url* in the browser pool.

        Raises:
            RenderTimeoutError: navigation timed out.
            RenderUnavailable: the render engine failed for this page.
        """
        session = await self._pool.acquire()
        try:
            page = session.page
            response = await page.goto(url, wait_until="load")
            status = response.status if response is not None else 200
            html = await page.content()
            title = await self._poll_title(page)
            if self._settle_delay > 0:
                await asyncio.sleep(self._settle_delay)
            dom_snapshot = await page.content()
            metrics = await page.evaluate(_VITALS_COLLECT_SCRIPT)
        except PlaywrightTimeoutError as exc:
            raise RenderTimeoutError(f"render timed out for {url}") from exc
        except PlaywrightError as exc:
            raise RenderUnavailable(f"render failed for {url}: {exc}") from exc
        finally:
            await self._pool.release(session)

        return RenderedResult(
            url=url,
            status_code=status,
            html=html,
            dom_snapshot=dom_snapshot,
            title=title,
            performance_metrics=metrics or {},
        )

    async def _poll_title(self, page: Page) -> str:
        """Give client-side frameworks a bounded window to set the title."""
        title = ""
        for attempt in range(self._title_attempts):
            title = (await page.title()).strip()
            if title:
                break
            if attempt < self._title_attempts - 1:
                await asyncio.sleep(self._title_interval)
        return title

    # ------------------------------------------------------------------
    # Combined retrieval
    # ------------------------------------------------------------------

    async def retrieve(self, url: str) -> FetchOutcome:
        """Raw fetch followed by a render attempt, both within the page timeout.

        Only the raw fetch can time the page out.  A render that overruns the
        remaining budget degrades the page to its raw HTML.

        Raises:
            PageTimeoutError: the raw fetch did not finish in time.
            RenderSubsystemUnavailable: rendering is required and the pool is down.
        """
        deadline = time.monotonic() + self.page_timeout
        try:
            raw = await asyncio.wait_for(self.fetch(url), timeout=self.page_timeout)
        except asyncio.TimeoutError as exc:
            raise PageTimeoutError(url, self.page_timeout) from exc
        if raw.status_code >= 400 or not raw.is_html or not self._pool.renders:
            return FetchOutcome(raw=raw)

        try:
            rendered = await self._render_within(raw.final_url, deadline - time.monotonic())
        except RenderUnavailable as exc:
            if self._render_required and not self._pool.available:
                raise RenderSubsystemUnavailable(str(exc)) from exc
            reason = str(exc) or exc.__class__.__name__
            logger.info("Rendering degraded for %s: %s", url, reason)
            return FetchOutcome(raw=raw, rendering_degraded=True, degradation_reason=reason)
        return FetchOutcome(raw=raw, rendered=rendered)

    async def _render_within(self, url: str, budget: float) -> RenderedResult:
        if budget <= 0:
            raise RenderTimeoutError(f"no time left to render {url}")
        try:
            return await asyncio.wait_for(self.render(url), timeout=budget)
        except asyncio.TimeoutError as exc:
            raise RenderTimeoutError(f"render of {url} exceeded the page timeout") from exc

    async def close(self) -> None:
        await self._pool.close()
