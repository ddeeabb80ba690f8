"""
Web search collaborator: Tavily over httpx when TAVILY_API_KEY is set, DuckDuckGo (ddgs) otherwise.

Results are normalized to {title, url, content, score}.
"""

import asyncio
import logging
from typing import Any

import httpx
from ddgs import DDGS

from citerag.core.config import TAVILY_API_KEY, TAVILY_SEARCH_URL, WEB_API_TIMEOUT
from citerag.schemas.evidence import EvidenceItem, SourceKind

logger = logging.getLogger(__name__)


class TavilySearcher:
    def __init__(self, api_key: str = TAVILY_API_KEY, timeout: float = WEB_API_TIMEOUT) -> None:
        self._api_key = api_key
        self._timeout = timeout

    async def search_web(self, query: str, max_results: int) -> list[dict[str, Any]]:
        logger.info("[web_search:tavily] IN  query=%r max_results=%d", query[:120], max_results)
        payload = {
            "api_key": self._api_key,
            "query": query,
            "max_results": max_results,
            "search_depth": "basic",
            "include_answer": False,
            "include_raw_content": False,
        }
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(TAVILY_SEARCH_URL, json=payload)
        response.raise_for_status()
        results = [
            {
                "title": (r.get("title") or "").strip(),
                "url": (r.get("url") or "").strip(),
                "content": (r.get("content") or "").strip(),
                "score": float(r.get("score") or 0.0),
            }
            for r in (response.json().get("results") or [])[:max_results]
        ]
        logger.info("[web_search:tavily] OUT results=%d", len(results))
        return results


class DuckDuckGoSearcher:
    """Keyless fallback. ddgs is synchronous, so it runs in a worker thread; rank stands in for score."""

    async def search_web(self, query: str, max_results: int) -> list[dict[str, Any]]:
        logger.info("[web_search:ddgs] IN  query=%r max_results=%d", query[:120], max_results)
        raw = await asyncio.to_thread(self._search, query, max_results)
        results = []
        for rank, r in enumerate(raw[:max_results]):
            results.append({
                "title": (r.get("title") or "").strip(),
                "url": (r.get("href") or "").strip(),
                "content": (r.get("body") or "").strip(),
                "score": round(1.0 - rank / max(max_results, 1), 4),
            })
        logger.info("[web_search:ddgs] OUT results=%d", len(results))
        return results

    @staticmethod
    def _search(query: str, max_results: int) -> list[dict[str, Any]]:
        with DDGS() as ddgs:
            return list(ddgs.text(query, max_results=max_results))


def build_web_searcher():
    if TAVILY_API_KEY:
        return TavilySearcher()
    return DuckDuckGoSearcher()


def web_results_to_evidence(results: list[dict[str, Any]]) -> list[EvidenceItem]:
    """Web results as web-kind evidence, numbered 1..N in their own namespace."""
    items = []
    for i, r in enumerate(results, start=1):
        url = r.get("url") or ""
        items.append(EvidenceItem(
            id=url or f"web:{i}",
            content=r.get("content") or "",
            similarity=r.get("score") or 0.0,
            source_label=r.get("title") or url,
            ordinal=i,
            kind=SourceKind.WEB,
            url=url or None,
        ))
    return items
