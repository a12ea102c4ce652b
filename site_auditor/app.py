"""Application entry point: configuration, logging and audit wiring."""

import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml
from dotenv import load_dotenv

from site_auditor.integrations.google_pagespeed import PageSpeedInsights
from site_auditor.integrations.llm_client import LLMClient
from site_auditor.models.audit import AddOns, AuditRequest, AuditResult
from site_auditor.modules.competitor_analysis.analyzer import CompetitorAnalyzer
from site_auditor.modules.technical_audit.auditor import TechnicalAuditor
from site_auditor.modules.technical_audit.canonicalizer import UrlCanonicalizer
from site_auditor.modules.technical_audit.fetcher import (
    DEFAULT_USER_AGENT,
    HttpOnlyRenderPool,
    PageFetcher,
    PlaywrightRenderPool,
    RenderPool,
)

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging level and format."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def usage_delta(before: dict[str, Any], after: dict[str, Any]) -> dict[str, Any]:
    """Counters spent between two usage summaries."""
    delta: dict[str, Any] = {}
    for key, value in after.items():
        spent = value - before.get(key, 0)
        delta[key] = round(spent, 6) if isinstance(spent, float) else spent
    return delta


class SiteAuditApp:
    """Wires configuration into the audit pipeline.

    Usage::

        app = SiteAuditApp()
        app.initialize()
        result = app.run_audit("example.com", tier="standard")
        print(result.summary())
    """

    def __init__(
        self,
        config_path: str = "config/settings.yaml",
        env_path: str = ".env",
    ):
        self._config_path = config_path
        self._env_path = env_path
        self.config: dict[str, Any] = {}
        self._initialized = False
        self._llm_client: Optional[LLMClient] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Load environment and configuration, then configure logging."""
        if self._initialized:
            return

        env_file = Path(self._env_path)
        if env_file.exists():
            load_dotenv(env_file)

        self.config = self._load_config()
        setup_logging(self.config.get("app", {}).get("log_level", "INFO"))
        self._initialized = True
        logger.info("SiteAuditApp initialised.")

    def _load_config(self) -> dict[str, Any]:
        config_file = Path(self._config_path)
        if not config_file.exists():
            logger.warning("Config file not found: %s. Using defaults.", self._config_path)
            return {}
        with open(config_file, "r", encoding="utf-8") as fh:
            config = yaml.safe_load(fh) or {}
        logger.info("Configuration loaded from %s", self._config_path)
        return config

    def _section(self, name: str) -> dict[str, Any]:
        return self.config.get(name) or {}

    # ------------------------------------------------------------------
    # Component factories
    # ------------------------------------------------------------------

    def _get_llm_client(self) -> LLMClient:
        """Lazy-initialise and return the LLM client."""
        if self._llm_client is None:
            llm_cfg = self._section("llm")
            self._llm_client = LLMClient(
                openai_model=llm_cfg.get("openai_model", "gpt-4o-mini"),
                gemini_model=llm_cfg.get("gemini_model", "gemini-2.0-flash"),
                max_tokens=llm_cfg.get("max_tokens", 1024),
                temperature=llm_cfg.get("temperature", 0.3),
                timeout=llm_cfg.get("timeout", 60),
                openai_rpm=llm_cfg.get("openai_rpm", 60),
                gemini_rpm=llm_cfg.get("gemini_rpm", 15),
                cache_enabled=llm_cfg.get("cache_enabled", True),
            )
        return self._llm_client

    def build_canonicalizer(self) -> UrlCanonicalizer:
        cfg = self._section("canonicalizer")
        tracking = cfg.get("tracking_params")
        return UrlCanonicalizer(
            tracking_params=tuple(tracking) if tracking else None,
            case_fold_path=cfg.get("case_fold_path", False),
            subdomains_internal=cfg.get("subdomains_internal", True),
            request_timeout=self._section("crawler").get("request_timeout", 15),
            user_agent=self._section("crawler").get("user_agent", DEFAULT_USER_AGENT),
        )

    def build_render_pool(self) -> RenderPool:
        cfg = self._section("render")
        if not cfg.get("enabled", True):
            logger.info("Rendering disabled in configuration; using raw HTML only")
            return HttpOnlyRenderPool()
        return PlaywrightRenderPool(
            max_concurrent=cfg.get("max_concurrent", 3),
            headless=cfg.get("headless", True),
            user_agent=self._section("crawler").get("user_agent", DEFAULT_USER_AGENT),
            navigation_timeout=cfg.get("navigation_timeout", 30.0),
        )

    def build_fetcher(self) -> PageFetcher:
        crawler_cfg = self._section("crawler")
        render_cfg = self._section("render")
        return PageFetcher(
            render_pool=self.build_render_pool(),
            request_timeout=crawler_cfg.get("request_timeout", 20),
            page_timeout=crawler_cfg.get("page_timeout", 45.0),
            user_agent=crawler_cfg.get("user_agent", DEFAULT_USER_AGENT),
            title_poll_attempts=render_cfg.get("title_poll_attempts", 5),
            title_poll_interval=render_cfg.get("title_poll_interval", 0.5),
            settle_delay=render_cfg.get("settle_delay", 1.0),
            render_required=render_cfg.get("required", False),
        )

    def build_pagespeed_client(self) -> Optional[PageSpeedInsights]:
        cfg = self._section("pagespeed")
        if not cfg.get("enabled", True):
            return None
        return PageSpeedInsights(
            requests_per_minute=cfg.get("requests_per_minute"),
            timeout=cfg.get("timeout", 120),
            max_retries=cfg.get("max_retries", 3),
        )

    def build_auditor(self) -> TechnicalAuditor:
        crawler_cfg = self._section("crawler")
        competitor_cfg = self._section("competitor")
        canonicalizer = self.build_canonicalizer()
        fetcher = self.build_fetcher()
        analyzer = CompetitorAnalyzer(
            fetcher,
            canonicalizer,
            llm_client=self._get_llm_client(),
            page_limit=competitor_cfg.get("page_limit", 4),
            crawl_timeout=competitor_cfg.get("crawl_timeout", 60.0),
            min_confidence=competitor_cfg.get("min_confidence", 0.6),
        )
        return TechnicalAuditor(
            fetcher,
            canonicalizer=canonicalizer,
            pagespeed_client=self.build_pagespeed_client(),
            competitor_analyzer=analyzer,
            concurrency=crawler_cfg.get("concurrency", 3),
            check_site_files=crawler_cfg.get("check_site_files", True),
        )

    # ------------------------------------------------------------------
    # Audits
    # ------------------------------------------------------------------

    async def audit(self, request: AuditRequest) -> AuditResult:
        """Run one audit; browser resources are released afterwards.

        The result carries the LLM tokens and cost spent by this audit.
        """
        self._ensure_initialized()
        auditor = self.build_auditor()
        before = self._get_llm_client().get_usage_summary()
        try:
            result = await auditor.run_audit(request)
        finally:
            await auditor.close()
        return replace(result, llm_usage=usage_delta(before, self._get_llm_client().get_usage_summary()))

    def run_audit(
        self,
        url: str,
        tier: str = "starter",
        add_ons: Optional[AddOns] = None,
        competitor_urls: Iterable[str] = (),
    ) -> AuditResult:
        """Synchronous wrapper around ``audit``."""
        request = AuditRequest(
            url=url,
            tier=tier,
            add_ons=add_ons or AddOns(),
            competitor_urls=tuple(competitor_urls),
        )
        return asyncio.run(self.audit(request))

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            self.initialize()
