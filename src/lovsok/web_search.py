"""Site-restricted web search through the Serper API."""

from __future__ import annotations

import logging
import re
from typing import Any, Optional, Sequence

import httpx

from .config import Settings
from .types import ConfigurationError, WebResult

logger = logging.getLogger(__name__)

# URL paths for court decisions, gazette notices and similar practice sources.
LEGAL_PRACTICE_PATTERNS = (
    "/avgjørelser/",
    "/lovtidend/",
    "/husleietvistutvalget/",
    "/trygderetten/",
    "/sph2025/",
)

_DOCUMENT_LINK_PATTERNS = [
    re.compile(pattern)
    for pattern in (
        r"/dokument/",
        r"/lov/",
        r"/forskrift/",
        r"/rundskriv/",
        r"/vedtak/",
        r"/lovsamling/",
        r"/historikk/",
        r"/avgjørelser/",
        r"/lokaleForskrifte/",
        r"/lovtidend/",
        r"/eosavtalen/",
        r"/traktater/",
        r"/trygderetten/",
        r"/tariffavtaler/",
        r"/husleietvistutvalget/",
        r"/sph2025/",
    )
]


def is_document_link(url: Optional[str]) -> bool:
    """True for links that point at a concrete document page on the legal site."""
    if not url:
        return False
    return any(pattern.search(url) for pattern in _DOCUMENT_LINK_PATTERNS)


def build_site_query(query: str, site: Optional[str], restricted_patterns: Sequence[str] = ()) -> str:
    """Prefix the query with ``site:`` and optional ``inurl:`` alternatives."""
    if not site:
        return query.strip()
    normalized_site = re.sub(r"^https?://", "", site).rstrip("/")
    if restricted_patterns:
        alternatives = " OR ".join(f"inurl:{pattern}" for pattern in restricted_patterns)
        return f"site:{normalized_site} ({alternatives}) {query}".strip()
    return f"site:{normalized_site} {query}".strip()


class SerperClient:
    """Minimal async client for Serper's Google search endpoint."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.api_key = settings.serper_api_key
        self.base_url = settings.serper_base_url
        self._client = client or httpx.AsyncClient(timeout=settings.serper_timeout_seconds)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def close(self) -> None:
        await self._client.aclose()

    async def search(
        self,
        query: str,
        num: int = 10,
        site: str | None = None,
        restricted_patterns: Sequence[str] = (),
        gl: str = "no",
        hl: str = "no",
    ) -> list[WebResult]:
        """
        Run one web search.

        Args:
            query: Search terms
            num: Number of results requested
            site: Restrict results to this site (e.g. lovdata.no)
            restricted_patterns: URL path fragments to restrict to within the site

        Returns:
            Organic results in provider order

        Raises:
            ConfigurationError: If no API key is configured
            httpx.HTTPError: On transport errors, timeouts and non-2xx responses
        """
        if not self.api_key:
            raise ConfigurationError("SERPER_API_KEY is required to use web search.")

        payload = {
            "q": build_site_query(query, site, restricted_patterns),
            "num": num,
            "gl": gl,
            "hl": hl,
        }
        logger.debug("Serper search: %s", payload["q"][:200])
        response = await self._client.post(
            self.base_url,
            json=payload,
            headers={"X-API-KEY": self.api_key, "Content-Type": "application/json"},
            timeout=self.settings.serper_timeout_seconds,
        )
        response.raise_for_status()
        data: dict[str, Any] = response.json()
        return [
            WebResult(
                title=item.get("title"),
                link=item.get("link"),
                snippet=item.get("snippet"),
                date=item.get("date"),
            )
            for item in data.get("organic") or []
        ]
