from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import cast

import httpx

from deepsearch.core.config import settings
from deepsearch.core.errors import SearchError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchResult:
    title: str
    link: str
    snippet: str
    date: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return asdict(self)


def _str_or_none(v: object) -> str | None:
    return v if isinstance(v, str) and v.strip() != "" else None


def parse_serper_response(body: object) -> list[SearchResult]:
    """Map Serper ``organic`` hits to SearchResult, keeping the provider's ranking."""
    if not isinstance(body, dict):
        raise SearchError("search response is not an object")
    organic = cast(dict[str, object], body).get("organic")
    if organic is None:
        return []
    if not isinstance(organic, list):
        raise SearchError("search response 'organic' is not a list")

    out: list[SearchResult] = []
    for item_obj in cast(list[object], organic):
        if not isinstance(item_obj, dict):
            continue
        item = cast(dict[str, object], item_obj)
        link = _str_or_none(item.get("link"))
        if link is None:
            continue
        out.append(
            SearchResult(
                title=_str_or_none(item.get("title")) or link,
                link=link,
                snippet=_str_or_none(item.get("snippet")) or "",
                date=_str_or_none(item.get("date")),
            )
        )
    return out


async def search_web(
    query: str,
    *,
    num: int | None = None,
    client: httpx.AsyncClient | None = None,
) -> list[SearchResult]:
    q = query.strip()
    if q == "":
        raise SearchError("query must be non-empty")
    api_key = settings.serper_api_key
    if not api_key:
        raise SearchError("SERPER_API_KEY is not configured")

    payload = {"q": q, "num": int(num or settings.search_num_results)}
    headers = {"X-API-KEY": api_key, "Content-Type": "application/json"}

    async def _post(c: httpx.AsyncClient) -> httpx.Response:
        return await c.post("/search", headers=headers, json=payload)

    try:
        if client is not None:
            resp = await _post(client)
        else:
            timeout = httpx.Timeout(settings.search_timeout_seconds)
            async with httpx.AsyncClient(
                base_url=settings.serper_base_url.rstrip("/"), timeout=timeout
            ) as c:
                resp = await _post(c)
        _ = resp.raise_for_status()
        body = cast(object, resp.json())
    except httpx.HTTPError as e:
        raise SearchError(f"search request failed: {type(e).__name__}") from e
    except ValueError as e:
        raise SearchError("search response is not JSON") from e

    results = parse_serper_response(body)
    logger.info("search returned %d results", len(results))
    return results
