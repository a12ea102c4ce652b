"""URL canonicalization, internal/external classification and redirect resolution.

A canonical URL is the deduplication identity of a page: two raw URLs that
differ only in protocol, ``www.`` prefix, trailing slash, query-parameter
order, tracking parameters or host case map to the same string.
"""

import asyncio
import fnmatch
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

import aiohttp
import tldextract

from site_auditor.errors import FetchError, RedirectLoopError
from site_auditor.models.audit import CrawlTarget

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_TRACKING_PARAMS: tuple[str, ...] = (
    "utm_*",
    "fbclid",
    "gclid",
    "dclid",
    "msclkid",
    "mc_cid",
    "mc_eid",
    "_ga",
    "_gl",
    "yclid",
)

MAX_REDIRECTS = 5

_DEFAULT_PORTS = {"http": 80, "https": 443}
_REDIRECT_STATUSES = (301, 302, 303, 307, 308)

# Offline public-suffix snapshot: no network fetch of the suffix list.
_EXTRACT = tldextract.TLDExtract(suffix_list_urls=())


@dataclass(frozen=True)
class RedirectResolution:
    final_url: str
    chain: tuple[str, ...] = ()

    @property
    def redirected(self) -> bool:
        return bool(self.chain)


def _strip_www(host: str) -> str:
    return host[4:] if host.startswith("www.") else host


# ---------------------------------------------------------------------------
# UrlCanonicalizer
# ---------------------------------------------------------------------------

class UrlCanonicalizer:
    """Normalise URLs into canonical keys and classify them against a site."""

    def __init__(
        self,
        tracking_params: Optional[tuple[str, ...]] = None,
        case_fold_path: bool = False,
        subdomains_internal: bool = True,
        request_timeout: int = 15,
        user_agent: str = "SiteAuditorBot/1.0",
    ) -> None:
        patterns = tracking_params if tracking_params is not None else DEFAULT_TRACKING_PARAMS
        self._tracking = tuple(p.lower() for p in patterns)
        self.case_fold_path = case_fold_path
        self.subdomains_internal = subdomains_internal
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._user_agent = user_agent

    # ------------------------------------------------------------------
    # Domains
    # ------------------------------------------------------------------

    @staticmethod
    def root_domain(url_or_host: str) -> str:
        """Registered domain (eTLD+1) of a URL or bare host."""
        host = url_or_host
        if "://" in url_or_host:
            host = urlsplit(url_or_host).hostname or ""
        host = host.lower().rstrip(".")
        ext = _EXTRACT(host)
        if ext.domain and ext.suffix:
            return f"{ext.domain}.{ext.suffix}"
        # IPs, localhost and unknown suffixes
        return _strip_www(host)

    def _www_is_cosmetic(self, host: str) -> bool:
        """True when dropping ``www.`` keeps the same registered domain."""
        if not host.startswith("www."):
            return False
        bare = host[4:]
        return "." in bare and self.root_domain(bare) == self.root_domain(host)

    def is_internal(self, url: str, root_domain: str) -> bool:
        host = (urlsplit(url).hostname or "").lower().rstrip(".")
        if not host:
            return False
        root = root_domain.lower()
        if self.subdomains_internal:
            return self.root_domain(host) == root
        return _strip_www(host) == _strip_www(root)

    # ------------------------------------------------------------------
    # Normalisation
    # ------------------------------------------------------------------

    def normalize(self, url: str, context: Optional[CrawlTarget] = None) -> str:
        """Return the canonical key for *url*."""
        raw = url.strip()
        if "://" not in raw:
            raw = "https://" + raw.lstrip("/")
        parts = urlsplit(raw)
        scheme = parts.scheme.lower()
        host = (parts.hostname or "").lower().rstrip(".")
        try:
            port = parts.port
        except ValueError:
            port = None

        if port is not None and _DEFAULT_PORTS.get(scheme) == port:
            port = None

        if self._www_is_cosmetic(host):
            host = host[4:]
        netloc = host if port is None else f"{host}:{port}"
        same_site = False
        if context is not None:
            preferred = context.preferred_hostname.lower()
            if netloc == _strip_www(preferred):
                netloc = preferred
                same_site = True
            else:
                same_site = self.root_domain(host) == context.root_domain

        if scheme in _DEFAULT_PORTS:
            scheme = context.preferred_protocol if same_site and context else "https"

        path = parts.path or "/"
        if path != "/":
            path = path.rstrip("/") or "/"
        if self.case_fold_path:
            path = path.lower()

        query = self._clean_query(parts.query)
        return urlunsplit((scheme, netloc, path, query, ""))

    def _clean_query(self, query: str) -> str:
        if not query:
            return ""
        params = [
            (k, v)
            for k, v in parse_qsl(query, keep_blank_values=True)
            if not self._is_tracking(k)
        ]
        params.sort()
        return urlencode(params)

    def _is_tracking(self, key: str) -> bool:
        key = key.lower()
        return any(fnmatch.fnmatchcase(key, pattern) for pattern in self._tracking)

    def resolve(self, href: str, base_url: str, context: Optional[CrawlTarget] = None) -> Optional[str]:
        """Resolve *href* against *base_url* and canonicalize it.

        Returns ``None`` for links that are not crawlable web URLs.
        """
        href = (href or "").strip()
        if not href or href.startswith("#"):
            return None
        lowered = href.lower()
        if lowered.startswith(("mailto:", "tel:", "javascript:", "data:", "sms:", "ftp:")):
            return None
        absolute = urljoin(base_url, href)
        if urlsplit(absolute).scheme not in _DEFAULT_PORTS:
            return None
        return self.normalize(absolute, context)

    # ------------------------------------------------------------------
    # Redirects and target
    # ------------------------------------------------------------------

    async def follow_redirects(self, url: str, max_redirects: int = MAX_REDIRECTS) -> RedirectResolution:
        """Follow redirects from *url* with lightweight requests.

        Raises:
            RedirectLoopError: more than *max_redirects* hops, or a loop.
            FetchError: the host could not be reached.
        """
        chain: list[str] = []
        seen: set[str] = set()
        current = url
        headers = {"User-Agent": self._user_agent}
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                while True:
                    if current in seen:
                        raise RedirectLoopError(url, chain)
                    seen.add(current)
                    status, location = await self._probe(session, current, headers)
                    if status not in _REDIRECT_STATUSES or not location:
                        break
                    if len(chain) >= max_redirects:
                        raise RedirectLoopError(url, chain + [current])
                    chain.append(current)
                    current = urljoin(current, location)
        except aiohttp.ClientError as exc:
            raise FetchError(current, str(exc) or exc.__class__.__name__) from exc
        except asyncio.TimeoutError as exc:
            raise FetchError(current, "timed out") from exc

        if chain:
            logger.info("Resolved %s -> %s (%d redirects)", url, current, len(chain))
        return RedirectResolution(final_url=current, chain=tuple(chain))

    @staticmethod
    async def _probe(session: aiohttp.ClientSession, url: str, headers: dict[str, str]) -> tuple[int, str]:
        async with session.head(url, headers=headers, allow_redirects=False, ssl=False) as resp:
            if resp.status not in (405, 501):
                return resp.status, resp.headers.get("Location", "")
        async with session.get(url, headers=headers, allow_redirects=False, ssl=False) as resp:
            return resp.status, resp.headers.get("Location", "")

    def build_target(self, raw_url: str, final_url: str, redirect_chain: tuple[str, ...] = ()) -> CrawlTarget:
        """Crawl target whose preferred host and protocol come from *final_url*.

        *redirect_chain* lists the URLs that redirected on the way to
        *final_url*, as returned by :meth:`follow_redirects`.
        """
        parts = urlsplit(final_url if "://" in final_url else "https://" + final_url)
        host = (parts.hostname or "").lower().rstrip(".")
        protocol = parts.scheme.lower() if parts.scheme in _DEFAULT_PORTS else "https"
        try:
            port = parts.port
        except ValueError:
            port = None
        if port is not None and _DEFAULT_PORTS.get(protocol) != port:
            host = f"{host}:{port}"
        target = CrawlTarget(
            raw_url=raw_url,
            final_url=final_url,
            root_domain=self.root_domain(host.split(":")[0]),
            preferred_hostname=host,
            preferred_protocol=protocol,
            redirect_chain=tuple(redirect_chain),
        )
        logger.debug("Crawl target: %s", target)
        return target
