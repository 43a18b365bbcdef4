"""Hybrid lexical + vector search with reciprocal rank fusion."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Callable, Optional, Sequence, TypeVar
from urllib.parse import urlencode

from .config import Settings
from .embeddings import EmbeddingService
from .query import (
    LAW_NAME_TO_OFFICIAL_TITLE,
    expand_legal_terms,
    extract_query_tokens,
    generate_snippet,
    law_names_in_query,
    lexical_query_tokens,
)
from .reranking import RerankCandidate, Reranker
from .store import ArchiveStore
from .timing import Timer
from .types import SearchCandidate, SearchFilters, SearchHit, SearchResult, StoredChunk

logger = logging.getLogger(__name__)

T = TypeVar("T")

RERANK_TEXT_CHARS = 2000
_AMENDMENT_RE = re.compile(
    r"\b(endring|endringer|endr\.|ikraftsetting|ikrafttredelse|opphevelse|overgangsregler)",
    re.IGNORECASE,
)


def reciprocal_rank_fusion(
    lexical: Sequence[StoredChunk],
    vector: Sequence[StoredChunk],
    k: int = 40,
    limit: int | None = None,
) -> list[SearchCandidate]:
    """
    Fuse two ranked chunk lists into ranked document candidates.

    Each list is first collapsed to documents (first chunk per document
    wins). A candidate scores ``1/(k + rank)`` for every list it appears
    in, with 1-based ranks. Ties keep first-seen order, lexical list first.

    Args:
        lexical: Chunks in lexical relevance order
        vector: Chunks in similarity order
        k: Fusion constant
        limit: Maximum number of candidates returned

    Returns:
        Candidates sorted by descending fused score
    """
    candidates: dict[tuple[str, str], SearchCandidate] = {}

    def add(rows: Sequence[StoredChunk], attribute: str) -> None:
        rank = 0
        seen: set[tuple[str, str]] = set()
        for row in rows:
            if row.key in seen:
                continue
            seen.add(row.key)
            rank += 1
            candidate = candidates.get(row.key)
            if candidate is None:
                candidate = SearchCandidate(key=row.key, chunk=row)
                candidates[row.key] = candidate
            setattr(candidate, attribute, rank)
            candidate.score += 1.0 / (k + rank)

    add(lexical, "lexical_rank")
    add(vector, "vector_rank")

    fused = sorted(candidates.values(), key=lambda candidate: candidate.score, reverse=True)
    if limit is not None:
        fused = fused[:limit]
    return fused


def is_amendment_law(title: Optional[str]) -> bool:
    """Amendment, commencement and repeal acts, which should rank below base laws."""
    return bool(title) and bool(_AMENDMENT_RE.search(title))


def order_base_laws(items: Sequence[T], query: str, title_of: Callable[[T], Optional[str]]) -> list[T]:
    """
    Stable three-tier ordering: base laws named in the query, other
    documents, then amendment acts.
    """
    fragments = [
        fragment
        for name in law_names_in_query(query)
        for fragment in [name, *LAW_NAME_TO_OFFICIAL_TITLE[name]]
    ]
    named: list[T] = []
    other: list[T] = []
    amendments: list[T] = []
    for item in items:
        title = title_of(item)
        if is_amendment_law(title):
            amendments.append(item)
        elif title and fragments and any(fragment in title.casefold() for fragment in fragments):
            named.append(item)
        else:
            other.append(item)
    return named + other + amendments


def build_viewer_url(base_url: str, filename: str, member: str) -> Optional[str]:
    """Link to the document viewer; XML members are served as HTML."""
    if not filename or not member:
        return None
    if member.lower().endswith(".xml"):
        member = member[: -len(".xml")] + ".html"
    return f"{base_url.rstrip('/')}/api/documents/xml?{urlencode({'filename': filename, 'member': member})}"


class HybridSearchEngine:
    """Lexical and vector retrieval over chunks, fused with RRF and optionally reranked."""

    def __init__(
        self,
        store: ArchiveStore,
        embeddings: EmbeddingService,
        settings: Settings,
        reranker: Reranker | None = None,
    ):
        self.store = store
        self.embeddings = embeddings
        self.settings = settings
        self.reranker = reranker

    def _clamp_page(self, page: int | None, page_size: int | None) -> tuple[int, int]:
        page = max(1, int(page or 1))
        if not page_size or page_size < 1:
            page_size = self.settings.search_default_page_size
        return page, min(int(page_size), self.settings.search_max_page_size)

    async def _lexical(
        self, tokens: list[str], expansions: list[str], filters: Optional[SearchFilters]
    ) -> list[StoredChunk]:
        try:
            result = await asyncio.wait_for(
                self.store.lexical_search(
                    tokens,
                    limit=self.settings.search_candidate_limit,
                    offset=0,
                    filters=filters,
                    expansions=expansions,
                ),
                timeout=self.settings.search_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Lexical search timed out after %ss, continuing without it",
                self.settings.search_timeout_seconds,
            )
            return []
        except Exception as exc:
            logger.warning("Lexical search failed, continuing without it: %s", exc)
            return []
        return result.rows

    async def _vector(self, query: str, filters: Optional[SearchFilters]) -> list[StoredChunk]:
        async def run() -> list[StoredChunk]:
            embedding = await self.embeddings.embed(query)
            return await self.store.vector_search(
                embedding, limit=self.settings.search_candidate_limit, filters=filters
            )

        try:
            return await asyncio.wait_for(run(), timeout=self.settings.search_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Vector search timed out after %ss, continuing without it",
                self.settings.search_timeout_seconds,
            )
            return []
        except Exception as exc:
            logger.warning("Vector search failed, continuing without it: %s", exc)
            return []

    async def _rerank_page(self, query: str, page: list[SearchCandidate]) -> list[SearchCandidate]:
        by_id = {f"{c.key[0]}::{c.key[1]}": c for c in page}
        rerank_input = [
            RerankCandidate(
                id=candidate_id,
                text=f"{candidate.chunk.title or ''}\n\n{candidate.chunk.content[:RERANK_TEXT_CHARS]}".strip(),
                metadata={"filename": candidate.key[0], "member": candidate.key[1]},
            )
            for candidate_id, candidate in by_id.items()
        ]
        reranked = await self.reranker.rerank(query, rerank_input, top_n=len(rerank_input))
        ordered = []
        for item in reranked:
            candidate = by_id[item.id]
            candidate.rerank_score = item.score
            ordered.append(candidate)
        return ordered

    def _to_hit(self, candidate: SearchCandidate, tokens: list[str]) -> SearchHit:
        chunk = candidate.chunk
        filename, member = candidate.key
        return SearchHit(
            filename=filename,
            member=member,
            title=chunk.title,
            date=chunk.date,
            snippet=generate_snippet(chunk.content, tokens),
            url=build_viewer_url(self.settings.public_api_base_url, filename, member),
            law_type=chunk.law_type,
            year=chunk.year,
            ministry=chunk.ministry,
            score=candidate.score,
            rerank_score=candidate.rerank_score,
        )

    async def search(
        self,
        query: str,
        page: int = 1,
        page_size: int | None = None,
        filters: SearchFilters | None = None,
    ) -> SearchResult:
        """
        Search documents with lexical and vector signals fused by RRF.

        Pagination is applied after fusion. Only page 1 is reranked; later
        pages slice the fused order. Store failures and timeouts degrade to
        empty signals, never to an exception.

        Args:
            query: Natural-language query
            page: 1-based page number
            page_size: Hits per page (clamped to search_max_page_size)
            filters: Optional metadata filters

        Returns:
            SearchResult for the requested page
        """
        page, page_size = self._clamp_page(page, page_size)
        tokens = extract_query_tokens(query)
        if not tokens:
            logger.info("Query has no searchable tokens, returning empty result")
            return SearchResult.empty(query, page, page_size)

        tokens = lexical_query_tokens(tokens)
        expansions = expand_legal_terms(query)
        timer = Timer("hybrid_search", logger, {"query": query[:100], "page": page})

        lexical, vector = await asyncio.gather(
            self._lexical(tokens, expansions, filters),
            self._vector(query, filters),
        )
        timer.checkpoint("retrieved")

        candidates = reciprocal_rank_fusion(
            lexical, vector, k=self.settings.rrf_k, limit=self.settings.search_candidate_limit
        )
        if self.settings.base_law_ordering_enabled:
            candidates = order_base_laws(candidates, query, lambda c: c.chunk.title)

        offset = (page - 1) * page_size
        page_candidates = candidates[offset : offset + page_size]

        reranked = False
        if page == 1 and self.reranker is not None and page_candidates:
            page_candidates = await self._rerank_page(query, page_candidates)
            reranked = any(c.rerank_score is not None for c in page_candidates)
            if reranked and self.settings.base_law_ordering_enabled:
                page_candidates = order_base_laws(page_candidates, query, lambda c: c.chunk.title)

        hits = [self._to_hit(candidate, tokens) for candidate in page_candidates]
        searched_files = list(dict.fromkeys(hit.filename for hit in hits))
        timer.end(
            lexical=len(lexical),
            vector=len(vector),
            fused=len(candidates),
            returned=len(hits),
            reranked=reranked,
        )
        return SearchResult(
            query=query,
            hits=hits,
            total_hits=len(candidates),
            page=page,
            page_size=page_size,
            searched_files=searched_files,
            reranked=reranked,
        )
