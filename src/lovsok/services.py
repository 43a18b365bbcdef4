"""Process-wide services, built once at startup and passed to request handlers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .agent import ReasoningModel
from .config import Settings
from .embeddings import EmbeddingService
from .reranking import Reranker
from .search import HybridSearchEngine
from .store import ArchiveStore
from .web_search import SerperClient

logger = logging.getLogger(__name__)


@dataclass
class ServiceRegistry:
    """Collaborators shared by all requests of one process."""

    settings: Settings
    store: ArchiveStore
    embeddings: EmbeddingService
    search: HybridSearchEngine
    reranker: Optional[Reranker] = None
    web_search: Optional[SerperClient] = None
    reasoning_model: Optional[ReasoningModel] = None

    async def close(self) -> None:
        if self.web_search is not None:
            await self.web_search.close()
        await self.store.close()


async def build_services(settings: Settings) -> ServiceRegistry:
    """
    Build and connect all services.

    Optional collaborators (reranker, web search, reasoning model) are left
    out when not configured; the request path degrades without them.

    Raises:
        ConnectionError: If Qdrant cannot be reached
        ValueError: If the embedding model cannot be loaded
    """
    store = ArchiveStore(settings)
    await store.ensure_collections()

    embeddings = EmbeddingService(settings)

    reranker = None
    if settings.reranker_enabled:
        try:
            reranker = Reranker(settings)
        except ValueError as e:
            logger.warning(f"Failed to load reranker: {e}. Continuing without reranking.")

    web_search = None
    if settings.serper_api_key:
        web_search = SerperClient(settings)
    else:
        logger.info("SERPER_API_KEY not set, web search disabled")

    reasoning_model = None
    if settings.agent_enabled and settings.openai_api_key:
        reasoning_model = ReasoningModel(settings)
    else:
        logger.info("Reasoning model not configured, answers use the fallback summary")

    search = HybridSearchEngine(store, embeddings, settings, reranker=reranker)
    return ServiceRegistry(
        settings=settings,
        store=store,
        embeddings=embeddings,
        search=search,
        reranker=reranker,
        web_search=web_search,
        reasoning_model=reasoning_model,
    )
