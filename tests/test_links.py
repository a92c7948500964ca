"""Tests for link resolution."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from chatdigest.links import (
    WebLinkResolver,
    augment_text_with_links,
    canonicalize_url,
    dedupe_urls,
    get_link_resolver,
    is_telegram_url,
)
from chatdigest.models import ResolvedLink

PAGE = "<html><head><title>Tram budget</title></head><body><p>The council approved it.</p></body></html>"
DAY = timedelta(hours=24)
HOUR = timedelta(hours=1)


def test_canonicalize_url():
    assert canonicalize_url("http://www.Example.com/news/?utm_source=x&id=5#top") == "https://example.com/news?id=5"
    assert canonicalize_url("example.com/a?fbclid=1") == "https://example.com/a"
    assert canonicalize_url("") == ""


def test_is_telegram_url():
    assert is_telegram_url("https://t.me/kyivnews/12")
    assert is_telegram_url("t.me/kyivnews")
    assert not is_telegram_url("https://example.com/t.me")


def test_dedupe_urls_keeps_first_spelling():
    urls = ["https://www.example.com/a?utm_medium=tg", "http://example.com/a/", "https://example.com/b"]
    assert dedupe_urls(urls) == ["https://www.example.com/a?utm_medium=tg", "https://example.com/b"]


def test_get_link_resolver():
    assert get_link_resolver({"links": {"enabled": False}}) is None
    resolver = get_link_resolver({"links": {"timeout": 5}})
    assert isinstance(resolver, WebLinkResolver)
    assert resolver.timeout == 5


@pytest.fixture
def extract_mocks():
    with patch("chatdigest.links.trafilatura.extract", return_value="The council approved the tram budget.") as extract, \
            patch("chatdigest.links.trafilatura.extract_metadata", return_value=MagicMock(title="Tram budget")) as meta:
        yield extract, meta


@pytest.mark.asyncio
async def test_resolve_web_link(extract_mocks):
    resolver = WebLinkResolver()
    with patch.object(resolver, "_fetch_html", AsyncMock(return_value=PAGE)):
        links = await resolver.resolve_links("See https://www.example.com/news?utm_source=tg", 3, DAY, HOUR)

    assert len(links) == 1
    link = links[0]
    assert link.title == "Tram budget"
    assert link.domain == "example.com"
    assert link.canonical_url == "https://example.com/news"
    assert link.language == "en"
    assert link.word_count == 6
    assert link.link_type == "web"


@pytest.mark.asyncio
async def test_telegram_links_and_extra_urls(extract_mocks):
    resolver = WebLinkResolver()
    fetch = AsyncMock(return_value=PAGE)
    with patch.object(resolver, "_fetch_html", fetch):
        links = await resolver.resolve_links("Source: t.me/kyivnews/123", 3, DAY, HOUR, extra_urls=["https://example.com/x"])

    assert [link.link_type for link in links] == ["telegram", "web"]
    assert fetch.await_args_list[0].args == ("https://t.me/kyivnews/123",)


@pytest.mark.asyncio
async def test_max_links(extract_mocks):
    resolver = WebLinkResolver()
    fetch = AsyncMock(return_value=PAGE)
    text = "https://a.com/1 https://b.com/2 https://c.com/3"
    with patch.object(resolver, "_fetch_html", fetch):
        assert len(await resolver.resolve_links(text, 2, DAY, HOUR)) == 2
        assert await resolver.resolve_links(text, 0, DAY, HOUR) == []
    assert fetch.await_count == 2


@pytest.mark.asyncio
async def test_results_are_cached(extract_mocks):
    resolver = WebLinkResolver()
    fetch = AsyncMock(return_value=PAGE)
    with patch.object(resolver, "_fetch_html", fetch):
        await resolver.resolve_links("https://example.com/a", 1, DAY, HOUR)
        await resolver.resolve_links("https://www.example.com/a/", 1, DAY, HOUR)
        assert fetch.await_count == 1

        # A zero TTL expires immediately
        await resolver.resolve_links("https://example.com/b", 1, timedelta(0), HOUR)
        await resolver.resolve_links("https://example.com/b", 1, timedelta(0), HOUR)
        assert fetch.await_count == 3


@pytest.mark.asyncio
async def test_failed_fetch_is_cached_as_missing(extract_mocks):
    request = httpx.Request("GET", "https://example.com/gone")
    error = httpx.HTTPStatusError("not found", request=request, response=httpx.Response(404, request=request))
    resolver = WebLinkResolver()
    fetch = AsyncMock(side_effect=error)
    with patch.object(resolver, "_fetch_html", fetch):
        assert await resolver.resolve_links("https://example.com/gone", 1, DAY, HOUR) == []
        assert await resolver.resolve_links("https://example.com/gone", 1, DAY, HOUR) == []
    assert fetch.await_count == 1


@pytest.mark.asyncio
async def test_page_without_content_is_skipped():
    resolver = WebLinkResolver()
    with patch.object(resolver, "_fetch_html", AsyncMock(return_value="<html></html>")), \
            patch("chatdigest.links.trafilatura.extract", return_value=None), \
            patch("chatdigest.links.trafilatura.extract_metadata", return_value=None):
        assert await resolver.resolve_links("https://example.com/empty", 1, DAY, HOUR) == []


def test_augment_text_with_links():
    links = [
        ResolvedLink(url="https://example.com/a", title="Tram budget", content="The council approved it."),
        ResolvedLink(url="https://example.com/b", domain="example.com", content="x" * 50),
    ]
    text = augment_text_with_links("Post text", links, max_chars=10)
    assert text == "Post text\n\nTram budget\nThe counci\n\nexample.com\nxxxxxxxxxx"
    assert augment_text_with_links("", links[:1]) == "Tram budget\nThe council approved it."
