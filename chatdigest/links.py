"""Link resolution: fetch pages referenced by messages and extract their text."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import httpx
import trafilatura

from chatdigest.models import ResolvedLink
from chatdigest.process.text import detect_language, extract_domain, extract_urls
from chatdigest.retry import retry_async

logger = logging.getLogger(__name__)

TRACKING_PARAM_PREFIXES = ("utm_", "fbclid", "gclid", "yclid", "ref")
MAX_CONTENT_CHARS = 8000


def canonicalize_url(url: str) -> str:
    """Stable form of a URL: lowercase host without www, no fragment or tracking params."""
    if not url:
        return ""
    if "://" not in url:
        url = "https://" + url
    parts = urlparse(url)
    host = (parts.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    query = urlencode([
        (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if not k.lower().startswith(TRACKING_PARAM_PREFIXES)
    ])
    path = parts.path.rstrip("/") or ""
    return urlunparse(("https", host, path, "", query, ""))


def is_telegram_url(url: str) -> bool:
    return extract_domain(url) in ("t.me", "telegram.me")


def dedupe_urls(urls: list[str]) -> list[str]:
    seen = set()
    unique = []
    for url in urls:
        key = canonicalize_url(url)
        if key and key not in seen:
            seen.add(key)
            unique.append(url)
    return unique


class BaseLinkResolver(ABC):
    """Turns URLs mentioned in a message into ResolvedLinks."""

    @abstractmethod
    async def resolve_links(
        self,
        text: str,
        max_links: int,
        web_ttl: timedelta,
        tg_ttl: timedelta,
        extra_urls: list[str] | None = None,
    ) -> list[ResolvedLink]:
        """Resolve up to ``max_links`` URLs; may return fewer."""
        ...


class BaseLinkSeeder(ABC):
    """Receives newly seen URLs for background crawling."""

    @abstractmethod
    async def seed(self, raw_message_id: str, urls: list[str]) -> None: ...


class WebLinkResolver(BaseLinkResolver):
    """Fetches pages with httpx and extracts the main text with trafilatura."""

    def __init__(self, timeout: float = 15, user_agent: str = "chatdigest/0.1"):
        self.timeout = timeout
        self.user_agent = user_agent
        # canonical url -> (expires_at monotonic, link or None for failures)
        self._cache: dict[str, tuple[float, ResolvedLink | None]] = {}

    async def resolve_links(self, text, max_links, web_ttl, tg_ttl, extra_urls=None):
        if max_links <= 0:
            return []
        urls = dedupe_urls(extract_urls(text) + list(extra_urls or []))[:max_links]
        links = []
        for url in urls:
            ttl = tg_ttl if is_telegram_url(url) else web_ttl
            link = await self._resolve_cached(url, ttl)
            if link is not None:
                links.append(link)
        return links

    async def _resolve_cached(self, url: str, ttl: timedelta) -> ResolvedLink | None:
        key = canonicalize_url(url)
        now = time.monotonic()
        cached = self._cache.get(key)
        if cached and cached[0] > now:
            return cached[1]
        link = await self._resolve(url)
        self._cache[key] = (now + ttl.total_seconds(), link)
        return link

    async def _resolve(self, url: str) -> ResolvedLink | None:
        fetch_url = url if "://" in url else "https://" + url
        try:
            html = await retry_async(self._fetch_html, fetch_url, max_retries=2, base_delay=0.5)
        except (httpx.HTTPError, OSError) as exc:
            logger.debug("Link fetch failed for %s: %s", url, exc)
            return None
        if not html:
            return None

        content = trafilatura.extract(html, include_comments=False, include_tables=False) or ""
        metadata = trafilatura.extract_metadata(html)
        title = (metadata.title if metadata and metadata.title else "") or ""
        if not content and not title:
            return None
        content = content[:MAX_CONTENT_CHARS]
        return ResolvedLink(
            url=url,
            domain=extract_domain(url),
            title=title,
            content=content,
            language=detect_language(content or title),
            word_count=len(content.split()),
            canonical_url=canonicalize_url(url),
            link_type="telegram" if is_telegram_url(url) else "web",
        )

    async def _fetch_html(self, url: str) -> str | None:
        headers = {"User-Agent": self.user_agent}
        async with httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=True, headers=headers,
        ) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            if "html" not in resp.headers.get("content-type", "html"):
                return None
            return resp.text


def get_link_resolver(config: dict) -> BaseLinkResolver | None:
    cfg = config.get("links", {})
    if not cfg.get("enabled", True):
        return None
    return WebLinkResolver(
        timeout=cfg.get("timeout", 15),
        user_agent=cfg.get("user_agent", "chatdigest/0.1"),
    )


def augment_text_with_links(text: str, links: list[ResolvedLink], max_chars: int = 600) -> str:
    """Append a short title and snippet of each resolved link to ``text``."""
    parts = [text.strip()] if text.strip() else []
    for link in links:
        snippet = link.content.strip()[:max_chars]
        header = link.title or link.domain or link.url
        parts.append(f"{header}\n{snippet}".strip())
    return "\n\n".join(parts)
