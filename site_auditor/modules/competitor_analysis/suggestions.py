"""Competitor and keyword suggestion providers.

Each provider returns a ``SuggestionResult``; ``SuggestionChain`` asks them
in order and the first ``ok`` result wins.  The AI providers need an LLM key,
the taxonomy and pattern providers always work offline.
"""

import logging
import re
from typing import Optional, Sequence

from site_auditor.integrations.llm_client import LLMClient
from site_auditor.models.competitor import SuggestionResult

logger = logging.getLogger(__name__)

MAX_SUGGESTED_COMPETITORS = 5
MAX_SUGGESTED_KEYWORDS = 10

# Pattern suffixes combined with the site's core topics
FALLBACK_PATTERNS = ("best practices", "how to guide", "getting started", "complete guide", "tips")

# industry -> (match terms, known competitor sites)
INDUSTRY_TAXONOMY: dict[str, tuple[tuple[str, ...], tuple[str, ...]]] = {
    "Marketing SaaS": (
        ("marketing", "automation", "email", "crm", "campaign", "newsletter", "analytics", "growth"),
        ("https://hubspot.com", "https://mailchimp.com", "https://activecampaign.com", "https://convertkit.com"),
    ),
    "Developer Tools": (
        ("api", "sdk", "documentation", "deployment", "cloud", "serverless", "database", "hosting"),
        ("https://vercel.com", "https://netlify.com", "https://heroku.com", "https://digitalocean.com"),
    ),
    "Productivity Software": (
        ("project management", "task", "collaboration", "team", "workflow", "kanban", "remote work"),
        ("https://asana.com", "https://trello.com", "https://monday.com", "https://notion.so"),
    ),
    "Fashion & Apparel": (
        ("clothing", "apparel", "fashion", "style", "shop", "mens", "womens", "accessories"),
        ("https://asos.com", "https://zara.com", "https://hm.com", "https://uniqlo.com"),
    ),
    "Consumer Electronics": (
        ("electronics", "gadgets", "phone", "laptop", "computer", "device", "audio", "camera"),
        ("https://bestbuy.com", "https://newegg.com", "https://bhphotovideo.com", "https://crutchfield.com"),
    ),
    "Home & Garden": (
        ("furniture", "decor", "home", "garden", "kitchen", "interior"),
        ("https://wayfair.com", "https://ikea.com", "https://westelm.com", "https://crateandbarrel.com"),
    ),
    "SEO & Marketing Agency": (
        ("seo", "search engine", "ranking", "audit", "digital marketing", "agency", "consulting"),
        ("https://moz.com", "https://ahrefs.com", "https://semrush.com", "https://searchengineland.com"),
    ),
    "Finance & Fintech": (
        ("finance", "banking", "investing", "money", "credit", "loan", "crypto", "trading"),
        ("https://nerdwallet.com", "https://investopedia.com", "https://robinhood.com", "https://coinbase.com"),
    ),
    "Health & Wellness": (
        ("health", "wellness", "medical", "fitness", "diet", "nutrition", "workout"),
        ("https://healthline.com", "https://webmd.com", "https://mayoclinic.org", "https://menshealth.com"),
    ),
    "Travel & Tourism": (
        ("travel", "trip", "vacation", "hotel", "flight", "booking", "destination", "tourism"),
        ("https://tripadvisor.com", "https://expedia.com", "https://lonelyplanet.com", "https://booking.com"),
    ),
    "Education & Learning": (
        ("course", "learn", "tutorial", "education", "university", "school", "training", "certification"),
        ("https://coursera.org", "https://udemy.com", "https://edx.org", "https://khanacademy.org"),
    ),
    "News & Media": (
        ("news", "magazine", "blog", "article", "journalism", "daily"),
        ("https://nytimes.com", "https://cnn.com", "https://bbc.com", "https://theverge.com"),
    ),
}

# Minimum term hits before a taxonomy match is trusted
MIN_TAXONOMY_HITS = 2

_SUGGESTION_PROMPT = (
    "A website at {domain} ranks for these keywords: {keywords}.\n"
    "Name up to {max_competitors} real competitor websites in the same niche and up to "
    "{max_keywords} keywords those competitors target that this site is missing.\n"
    'Return JSON: {{"competitors": ["https://..."], "keywords": ["..."]}}'
)


def pattern_keywords(site_keywords: Sequence[str], limit: int = MAX_SUGGESTED_KEYWORDS) -> list[str]:
    """Guess keywords by combining the site's core topics with common patterns."""
    topics: list[str] = []
    for keyword in site_keywords:
        words = keyword.lower().split()
        topic = " ".join(words[:2]) if len(words) >= 2 else (words[0] if words else "")
        if topic and topic not in topics:
            topics.append(topic)
    suggestions = [f"{topic} {pattern}" for topic in topics[:3] for pattern in FALLBACK_PATTERNS[:3]]
    return suggestions[:limit]


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class SuggestionProvider:
    name = "base"

    async def suggest(self, site_keywords: Sequence[str], domain: str) -> SuggestionResult:
        raise NotImplementedError


class _LLMProvider(SuggestionProvider):
    """Ask one LLM provider for competitors and gap keywords."""

    def __init__(self, llm: Optional[LLMClient]):
        self._llm = llm

    async def suggest(self, site_keywords: Sequence[str], domain: str) -> SuggestionResult:
        if self._llm is None or not self._llm.is_available(self.name):
            return SuggestionResult(ok=False, provider=self.name, error="not configured")

        prompt = _SUGGESTION_PROMPT.format(
            domain=domain,
            keywords=", ".join(site_keywords[:20]) or "(none found)",
            max_competitors=MAX_SUGGESTED_COMPETITORS,
            max_keywords=MAX_SUGGESTED_KEYWORDS,
        )
        try:
            data = await self._llm.generate_json(prompt, provider=self.name)
        except Exception as exc:
            logger.warning("%s competitor suggestion failed: %s", self.name, exc)
            return SuggestionResult(ok=False, provider=self.name, error=str(exc))

        if not isinstance(data, dict):
            return SuggestionResult(ok=False, provider=self.name, error="unexpected response shape")
        competitors = tuple(
            url for url in data.get("competitors", [])
            if isinstance(url, str) and url.startswith(("http://", "https://")) and domain not in url
        )[:MAX_SUGGESTED_COMPETITORS]
        keywords = tuple(
            kw.strip().lower() for kw in data.get("keywords", []) if isinstance(kw, str) and kw.strip()
        )[:MAX_SUGGESTED_KEYWORDS]
        if not competitors:
            return SuggestionResult(ok=False, provider=self.name, error="no competitors returned")
        return SuggestionResult(ok=True, provider=self.name, competitors=competitors, keywords=keywords)


class OpenAIProvider(_LLMProvider):
    name = "openai"


class GeminiProvider(_LLMProvider):
    name = "gemini"


class IndustryTaxonomyProvider(SuggestionProvider):
    """Match the site's keywords against a static industry table."""

    name = "taxonomy"

    def __init__(self, taxonomy: Optional[dict] = None):
        self._taxonomy = taxonomy or INDUSTRY_TAXONOMY

    def classify(self, site_keywords: Sequence[str]) -> tuple[Optional[str], int]:
        text = " ".join(site_keywords).lower()
        best, best_hits = None, 0
        for industry, (terms, _competitors) in self._taxonomy.items():
            hits = sum(len(re.findall(rf"\b{re.escape(term)}\b", text)) for term in terms)
            if hits > best_hits:
                best, best_hits = industry, hits
        return best, best_hits

    async def suggest(self, site_keywords: Sequence[str], domain: str) -> SuggestionResult:
        industry, hits = self.classify(site_keywords)
        if industry is None or hits < MIN_TAXONOMY_HITS:
            return SuggestionResult(ok=False, provider=self.name, error="no industry match")
        competitors = tuple(url for url in self._taxonomy[industry][1] if domain not in url)
        logger.info("Classified %s as %s (%d term hits)", domain, industry, hits)
        return SuggestionResult(
            ok=True,
            provider=self.name,
            competitors=competitors[:MAX_SUGGESTED_COMPETITORS],
            keywords=tuple(pattern_keywords(site_keywords)),
        )


class PatternGuessProvider(SuggestionProvider):
    """Last resort: no competitors, only pattern-guessed keywords."""

    name = "pattern"

    async def suggest(self, site_keywords: Sequence[str], domain: str) -> SuggestionResult:
        return SuggestionResult(ok=True, provider=self.name, keywords=tuple(pattern_keywords(site_keywords)))


class SuggestionChain:
    """Try providers in order; the first ``ok`` result wins."""

    def __init__(self, providers: Sequence[SuggestionProvider]):
        if not providers:
            raise ValueError("SuggestionChain needs at least one provider")
        self._providers = list(providers)

    @classmethod
    def default(cls, llm: Optional[LLMClient] = None) -> "SuggestionChain":
        return cls([OpenAIProvider(llm), GeminiProvider(llm), IndustryTaxonomyProvider(), PatternGuessProvider()])

    async def suggest(self, site_keywords: Sequence[str], domain: str) -> SuggestionResult:
        result = SuggestionResult(ok=False, provider="none", error="no providers")
        for provider in self._providers:
            result = await provider.suggest(list(site_keywords), domain)
            if result.ok:
                logger.info("Competitor suggestions from %s: %d sites", result.provider, len(result.competitors))
                return result
            logger.debug("Suggestion provider %s declined: %s", provider.name, result.error)
        return result
