from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import cast
from urllib.parse import urlparse
from urllib.robotparser import RobotFileParser

import httpx
import trafilatura

from deepsearch.core.config import settings
from deepsearch.core.errors import StoreError
from deepsearch.metrics.prometheus import record_scrape_cache
from deepsearch.services.redis_store import RedisStore


logger = logging.getLogger(__name__)

_RETRY_BASE_DELAY_S = 0.5
_RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class CrawlResult:
    url: str
    success: bool
    data: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {"url": self.url, "success": self.success}
        if self.success:
            out["data"] = self.data or ""
        else:
            out["error"] = self.error or "unknown error"
        return out


@dataclass(frozen=True)
class CrawlResponse:
    results: list[CrawlResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)

    def to_dict(self) -> dict[str, object]:
        return {"success": self.success, "results": [r.to_dict() for r in self.results]}

    @classmethod
    def from_dict(cls, raw: object) -> "CrawlResponse":
        if not isinstance(raw, dict):
            raise ValueError("crawl response must be an object")
        items = cast(dict[str, object], raw).get("results")
        if not isinstance(items, list):
            raise ValueError("crawl response 'results' must be a list")
        results: list[CrawlResult] = []
        for item_obj in cast(list[object], items):
            if not isinstance(item_obj, dict):
                raise ValueError("crawl result must be an object")
            item = cast(dict[str, object], item_obj)
            data = item.get("data")
            error = item.get("error")
            results.append(
                CrawlResult(
                    url=str(item.get("url", "")),
                    success=bool(item.get("success")),
                    data=data if isinstance(data, str) else None,
                    error=error if isinstance(error, str) else None,
                )
            )
        return cls(results=results)


CrawlFn = Callable[[Sequence[str]], Awaitable[CrawlResponse]]


def extract_main_text(html: str, *, url: str | None = None) -> str | None:
    text = trafilatura.extract(
        html,
        url=url,
        output_format="markdown",
        include_comments=False,
        include_tables=True,
        include_images=False,
        favor_precision=True,
    )
    if not text or not text.strip():
        # No article body found; keep whatever visible text the page has.
        text = trafilatura.html2txt(html)
    if not text or not text.strip():
        return None
    return text.strip()


def _robots_url(url: str) -> str | None:
    p = urlparse(url)
    if p.scheme not in ("http", "https") or not p.netloc:
        return None
    return f"{p.scheme}://{p.netloc}/robots.txt"


async def _is_allowed_by_robots(
    client: httpx.AsyncClient, url: str, cache: dict[str, RobotFileParser | None]
) -> bool:
    robots_url = _robots_url(url)
    if robots_url is None:
        return False
    if robots_url not in cache:
        parser: RobotFileParser | None = None
        try:
            resp = await client.get(robots_url)
            if resp.status_code == 200:
                parser = RobotFileParser()
                parser.parse(resp.text.splitlines())
        except httpx.HTTPError:
            # Unreachable robots.txt is treated as "no rules".
            parser = None
        cache[robots_url] = parser
    parser = cache[robots_url]
    if parser is None:
        return True
    return parser.can_fetch(settings.scrape_user_agent, url)


async def _fetch_html(client: httpx.AsyncClient, url: str) -> str:
    retries = max(0, int(settings.scrape_max_retries))
    last_error: str = "fetch failed"
    for attempt in range(retries + 1):
        try:
            resp = await client.get(url)
            if resp.status_code in _RETRYABLE_STATUS:
                last_error = f"HTTP {resp.status_code}"
            else:
                _ = resp.raise_for_status()
                return resp.text
        except httpx.HTTPStatusError as e:
            raise RuntimeError(f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            last_error = type(e).__name__
        if attempt < retries:
            await asyncio.sleep(_RETRY_BASE_DELAY_S * (2**attempt))
    raise RuntimeError(f"{last_error} after {retries + 1} attempts")


async def _crawl_one(
    client: httpx.AsyncClient, url: str, robots_cache: dict[str, RobotFileParser | None]
) -> CrawlResult:
    if _robots_url(url) is None:
        return CrawlResult(url=url, success=False, error="unsupported URL")
    try:
        if not await _is_allowed_by_robots(client, url, robots_cache):
            return CrawlResult(url=url, success=False, error="disallowed by robots.txt")
        html = await _fetch_html(client, url)
        text = await asyncio.to_thread(extract_main_text, html, url=url)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.info("scrape failed for %s: %s", url, e)
        return CrawlResult(url=url, success=False, error=str(e) or type(e).__name__)

    if text is None:
        return CrawlResult(url=url, success=False, error="no content extracted")
    limit = int(settings.scrape_max_chars)
    if limit > 0 and len(text) > limit:
        text = text[:limit]
    return CrawlResult(url=url, success=True, data=text)


async def bulk_crawl_websites(
    urls: Sequence[str], *, client: httpx.AsyncClient | None = None
) -> CrawlResponse:
    """Fetch every URL concurrently; one failure never fails the batch."""
    if not urls:
        return CrawlResponse(results=[])

    robots_cache: dict[str, RobotFileParser | None] = {}

    async def _run(c: httpx.AsyncClient) -> CrawlResponse:
        results = await asyncio.gather(*(_crawl_one(c, u, robots_cache) for u in urls))
        return CrawlResponse(results=list(results))

    if client is not None:
        return await _run(client)

    timeout = httpx.Timeout(settings.scrape_timeout_seconds, connect=min(10.0, settings.scrape_timeout_seconds))
    headers = {"User-Agent": settings.scrape_user_agent}
    async with httpx.AsyncClient(timeout=timeout, headers=headers, follow_redirects=True) as c:
        return await _run(c)


def scrape_cache_key(urls: Sequence[str]) -> str:
    # Exact list, order-sensitive.
    raw = json.dumps(list(urls), separators=(",", ":"), ensure_ascii=False)
    return "scrape:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()


async def cached_bulk_crawl(
    store: RedisStore | None,
    urls: Sequence[str],
    *,
    crawl: CrawlFn = bulk_crawl_websites,
    ttl_seconds: int | None = None,
) -> CrawlResponse:
    """Cache-aside around ``crawl``; a broken cache backend degrades to a direct fetch."""
    ttl = int(ttl_seconds if ttl_seconds is not None else settings.scrape_cache_ttl_seconds)
    key = scrape_cache_key(urls)

    if store is not None:
        try:
            cached = await store.get_json(key)
        except StoreError as e:
            logger.warning("scrape cache read failed: %s", e)
            cached = None
        if cached is not None:
            try:
                hit = CrawlResponse.from_dict(cached)
            except ValueError:
                logger.warning("ignoring malformed scrape cache entry %s", key)
            else:
                record_scrape_cache(hit=True)
                return hit

    record_scrape_cache(hit=False)
    response = await crawl(urls)

    if store is not None and ttl > 0:
        try:
            await store.set_json(key, response.to_dict(), ttl_seconds=ttl)
        except StoreError as e:
            logger.warning("scrape cache write failed: %s", e)
    return response
