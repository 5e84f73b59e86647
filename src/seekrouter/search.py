"""Web-search providers used for grounding and the ``/api/search`` route.

Every provider returns an empty list on any failure; :class:`SearchChain`
tries providers in configured order until one returns results.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Sequence

import httpx
from pydantic import ValidationError

from .router import ProviderDef
from .types import SearchResult

logger = logging.getLogger(__name__)

SERPAPI_URL = "https://serpapi.com/search"
GOOGLE_CSE_URL = "https://www.googleapis.com/customsearch/v1"


class SearchProvider:
    def __init__(self, defn: ProviderDef):
        self.defn = defn
        self.name = defn.name

    def _env(self, name: str | None) -> str | None:
        if not name:
            return None
        return os.environ.get(name) or None

    @property
    def available(self) -> bool:
        return True

    async def search(self, query: str, start: int = 1) -> List[SearchResult]:
        raise NotImplementedError

    async def _get_json(self, url: str, params: Dict[str, Any]) -> Dict[str, Any] | None:
        try:
            async with httpx.AsyncClient(timeout=self.defn.timeout_s) as client:
                r = await client.get(url, params=params)
                r.raise_for_status()
                data = r.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "search.error provider=%s status=%s", self.name, exc.response.status_code
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("search.error provider=%s detail=%s", self.name, str(exc) or exc.__class__.__name__)
            return None
        return data if isinstance(data, dict) else None

    def _to_results(self, items: Any, source_keys: Sequence[str]) -> List[SearchResult]:
        if not isinstance(items, list):
            return []
        results: List[SearchResult] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            source = next((item[key] for key in source_keys if isinstance(item.get(key), str)), "")
            try:
                results.append(
                    SearchResult(
                        title=item.get("title"),
                        link=item.get("link"),
                        snippet=self._snippet(item),
                        source=source,
                    )
                )
            except ValidationError:
                continue
        return results

    def _snippet(self, item: Dict[str, Any]) -> str:
        snippet = item.get("snippet")
        return snippet if isinstance(snippet, str) else ""


class SerpApiSearch(SearchProvider):
    @property
    def available(self) -> bool:
        return self._env(self.defn.auth_env) is not None

    def _snippet(self, item: Dict[str, Any]) -> str:
        snippet = super()._snippet(item)
        if snippet:
            return snippet
        about = item.get("about_this_result")
        if isinstance(about, dict):
            source = about.get("source")
            if isinstance(source, dict) and isinstance(source.get("description"), str):
                return source["description"]
        return ""

    async def search(self, query: str, start: int = 1) -> List[SearchResult]:
        api_key = self._env(self.defn.auth_env)
        if api_key is None:
            logger.warning("search.disabled provider=%s detail=missing %s", self.name, self.defn.auth_env)
            return []
        params: Dict[str, Any] = {"q": query, "api_key": api_key, "engine": "google", "num": 8}
        if start > 1:
            params["start"] = start - 1
        data = await self._get_json(self.defn.base_url or SERPAPI_URL, params)
        if data is None:
            return []
        return self._to_results(data.get("organic_results"), ("source", "display_link", "displayed_link"))


class GoogleCustomSearch(SearchProvider):
    @property
    def available(self) -> bool:
        return self._env(self.defn.auth_env) is not None and self._env(self.defn.extra_env) is not None

    async def search(self, query: str, start: int = 1) -> List[SearchResult]:
        api_key = self._env(self.defn.auth_env)
        cx = self._env(self.defn.extra_env)
        if api_key is None or cx is None:
            logger.warning("search.disabled provider=%s detail=missing key or cx", self.name)
            return []
        params = {"q": query, "key": api_key, "cx": cx, "start": start, "num": 10}
        data = await self._get_json(self.defn.base_url or GOOGLE_CSE_URL, params)
        if data is None:
            return []
        return self._to_results(data.get("items"), ("displayLink",))


class DummySearch(SearchProvider):
    async def search(self, query: str, start: int = 1) -> List[SearchResult]:
        slug = "-".join(query.lower().split())
        return [
            SearchResult(
                title=f"{query} result {start + offset}",
                link=f"https://example.org/{slug}/{start + offset}",
                snippet=f"Offline search result {start + offset} about {query}.",
                source="example.org",
            )
            for offset in range(3)
        ]


_SEARCH_FACTORIES: dict[str, type[SearchProvider]] = {
    "serpapi": SerpApiSearch,
    "google_cse": GoogleCustomSearch,
    "dummy_search": DummySearch,
}


class SearchChain:
    def __init__(self, providers: Sequence[SearchProvider]):
        self.providers = list(providers)

    @classmethod
    def from_defs(cls, defs: Dict[str, ProviderDef]) -> "SearchChain":
        providers: list[SearchProvider] = []
        for name, d in defs.items():
            factory = _SEARCH_FACTORIES.get(d.type)
            if factory is None:
                raise ValueError(f"Unknown search provider type '{d.type}' for provider '{name}'")
            providers.append(factory(d))
        return cls(providers)

    async def search(self, query: str, start: int = 1) -> List[SearchResult]:
        for provider in self.providers:
            results = await provider.search(query, start)
            if results:
                logger.info("search.ok provider=%s results=%d", provider.name, len(results))
                return results
            logger.info("search.empty provider=%s; trying next provider", provider.name)
        return []
