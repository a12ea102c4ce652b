"""OpenAI and Google Gemini access for competitor suggestions.

Each provider is addressed individually; deciding which one to try next is
the job of the suggestion chain, which also owns the offline fallbacks.
"""

import asyncio
import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Optional

import openai
import google.generativeai as genai

from site_auditor.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

PROVIDERS = ("openai", "gemini")

# USD per 1,000 tokens for the default OpenAI model
PRICE_PER_1K_PROMPT = 0.00015
PRICE_PER_1K_COMPLETION = 0.0006

DEFAULT_SYSTEM_PROMPT = "You analyse websites for an SEO audit tool."
JSON_SYSTEM_PROMPT = (
    "You analyse websites for an SEO audit tool. "
    "Reply with a single JSON document and nothing else."
)


@dataclass
class UsageStats:
    """Running token counters for OpenAI calls made by one client."""
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_requests: int = 0
    total_cost_usd: float = 0.0

    def add_usage(
        self,
        input_tokens: int,
        output_tokens: int,
        prompt_price: float = PRICE_PER_1K_PROMPT,
        completion_price: float = PRICE_PER_1K_COMPLETION,
    ) -> float:
        """Count one request and return what it cost."""
        spent = (input_tokens * prompt_price + output_tokens * completion_price) / 1000
        self.total_requests += 1
        self.total_input_tokens += input_tokens
        self.total_output_tokens += output_tokens
        self.total_cost_usd += spent
        return spent

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "total_cost_usd": round(self.total_cost_usd, 6),
        }


class ResponseCache:
    """Bounded in-memory store of model replies with an expiry time."""

    def __init__(self, max_size: int = 1000, ttl_hours: int = 24):
        self._entries: dict[str, tuple[float, str]] = {}
        self._max_size = max_size
        self._ttl = ttl_hours * 3600

    @staticmethod
    def _digest(provider: str, prompt: str, system_prompt: str) -> str:
        material = "\x1f".join((provider, system_prompt, prompt))
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    def get(self, provider: str, prompt: str, system_prompt: str) -> Optional[str]:
        digest = self._digest(provider, prompt, system_prompt)
        entry = self._entries.get(digest)
        if entry is None:
            return None
        stored_at, reply = entry
        if time.time() - stored_at >= self._ttl:
            self._entries.pop(digest, None)
            return None
        return reply

    def set(self, provider: str, prompt: str, system_prompt: str, value: str) -> None:
        while self._entries and len(self._entries) >= self._max_size:
            stalest = min(self._entries.items(), key=lambda item: item[1][0])[0]
            self._entries.pop(stalest)
        self._entries[self._digest(provider, prompt, system_prompt)] = (time.time(), value)

    def __len__(self) -> int:
        return len(self._entries)


def parse_json_response(raw: str) -> Any:
    """Decode a model reply, accepting a ```json fenced block.

    Raises:
        ValueError: the reply does not contain valid JSON.
    """
    body = raw.strip()
    if body.startswith("```"):
        # drop the opening fence line and a closing fence if present
        body = body.split("\n", 1)[1] if "\n" in body else ""
        if body.rstrip().endswith("```"):
            body = body.rstrip()[:-3]
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        logger.debug("Unparseable model reply: %.300s", raw)
        raise ValueError(f"model reply is not JSON: {exc.msg}") from exc


class LLMClient:
    """Rate-limited, cached text generation against OpenAI or Gemini.

    Usage::

        client = LLMClient()
        if client.is_available("gemini"):
            data = await client.generate_json(prompt, provider="gemini")
    """

    def __init__(
        self,
        openai_api_key: Optional[str] = None,
        gemini_api_key: Optional[str] = None,
        openai_model: str = "gpt-4o-mini",
        gemini_model: str = "gemini-2.0-flash",
        max_tokens: int = 1024,
        temperature: float = 0.3,
        timeout: int = 60,
        openai_rpm: int = 60,
        gemini_rpm: int = 15,
        cache_enabled: bool = True,
        cache_ttl_hours: int = 24,
    ):
        openai_key = openai_api_key or os.getenv("OPENAI_API_KEY", "")
        gemini_key = gemini_api_key or os.getenv("GEMINI_API_KEY", "")

        self._models = {"openai": openai_model, "gemini": gemini_model}
        self._max_tokens = max_tokens
        self._temperature = temperature

        self._openai: Optional[openai.AsyncOpenAI] = (
            openai.AsyncOpenAI(api_key=openai_key, timeout=timeout) if openai_key else None
        )
        self._gemini_ready = bool(gemini_key)
        if self._gemini_ready:
            genai.configure(api_key=gemini_key)

        self._limiters = {
            "openai": RateLimiter(openai_rpm, name="openai"),
            "gemini": RateLimiter(gemini_rpm, name="gemini"),
        }
        self._cache: Optional[ResponseCache] = (
            ResponseCache(ttl_hours=cache_ttl_hours) if cache_enabled else None
        )
        self.usage = UsageStats()

    def is_available(self, provider: str) -> bool:
        if provider == "openai":
            return self._openai is not None
        return provider == "gemini" and self._gemini_ready

    async def generate_text(
        self,
        prompt: str,
        provider: str = "openai",
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> str:
        """Return the reply of one provider to ``prompt``.

        Raises:
            ValueError: ``provider`` is not a known provider name.
            RuntimeError: the provider has no API key.
        """
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown LLM provider: {provider}")
        if not self.is_available(provider):
            raise RuntimeError(f"LLM provider {provider!r} is not configured")

        if self._cache is not None:
            hit = self._cache.get(provider, prompt, system_prompt)
            if hit is not None:
                logger.debug("%s reply served from cache", provider)
                return hit

        call = self._call_openai if provider == "openai" else self._call_gemini
        async with self._limiters[provider]:
            reply = await call(prompt, system_prompt)

        if self._cache is not None:
            self._cache.set(provider, prompt, system_prompt, reply)
        return reply

    async def generate_json(
        self,
        prompt: str,
        provider: str = "openai",
        system_prompt: str = JSON_SYSTEM_PROMPT,
    ) -> Any:
        reply = await self.generate_text(prompt, provider=provider, system_prompt=system_prompt)
        return parse_json_response(reply)

    def get_usage_summary(self) -> dict[str, Any]:
        return self.usage.as_dict()

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _call_openai(self, prompt: str, system_prompt: str) -> str:
        completion = await self._openai.chat.completions.create(
            model=self._models["openai"],
            max_tokens=self._max_tokens,
            temperature=self._temperature,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
        )
        if completion.usage is not None:
            spent = self.usage.add_usage(
                completion.usage.prompt_tokens, completion.usage.completion_tokens
            )
            logger.info(
                "OpenAI %s: %d prompt + %d completion tokens ($%.5f)",
                self._models["openai"],
                completion.usage.prompt_tokens,
                completion.usage.completion_tokens,
                spent,
            )
        return (completion.choices[0].message.content or "").strip()

    async def _call_gemini(self, prompt: str, system_prompt: str) -> str:
        model = genai.GenerativeModel(
            self._models["gemini"],
            system_instruction=system_prompt,
            generation_config={
                "max_output_tokens": self._max_tokens,
                "temperature": self._temperature,
            },
        )
        # generate_content blocks
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, model.generate_content, prompt)
        reply = (response.text or "").strip()
        logger.info("Gemini %s replied with %d chars", self._models["gemini"], len(reply))
        return reply
