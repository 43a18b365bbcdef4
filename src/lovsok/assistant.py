"""Request entry point: prefetch search, agent loop or fallback, evidence hydration."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Sequence

from .agent import AgentLoop
from .evidence import build_fallback_answer, hits_to_evidence, normalise_citations, truncate_content
from .store import ArchiveStore
from .timing import Timer
from .types import AgentError, AgentState, Citation, Evidence, EvidenceSource

if TYPE_CHECKING:
    from .services import ServiceRegistry

logger = logging.getLogger(__name__)

MAX_QUESTION_LENGTH = 5000


def validate_question(question: str) -> str:
    """Validate and normalize question input."""
    if not question or not question.strip():
        raise ValueError("Vennligst skriv inn et spørsmål.")
    question = question.strip()
    if len(question) > MAX_QUESTION_LENGTH:
        logger.warning("Question exceeds %s characters, truncating", MAX_QUESTION_LENGTH)
        question = question[:MAX_QUESTION_LENGTH]
    return question


@dataclass
class AssistantResponse:
    answer: str
    evidence: list[Evidence]
    citations: list[Citation]
    page: int
    page_size: int
    total_hits: int
    total_pages: int
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for item in data["evidence"]:
            item["source"] = item["source"].value if isinstance(item["source"], EvidenceSource) else item["source"]
        return data


async def hydrate_evidence(
    evidence: Sequence[Evidence],
    store: ArchiveStore,
    timeout: float,
    max_chars: int,
) -> None:
    """
    Load full document content into legal-archive evidence, in place.

    All lookups share one ``timeout``; items still pending when it runs out
    keep empty content.
    """

    async def hydrate(item: Evidence) -> None:
        content = await store.get_document_content(item.metadata["filename"], item.metadata["member"])
        item.content = truncate_content(content, max_chars)

    targets = [
        item
        for item in evidence
        if item.source == EvidenceSource.LEGAL_ARCHIVE
        and item.content is None
        and item.metadata.get("filename")
        and item.metadata.get("member")
    ]
    if not targets:
        return

    tasks = [asyncio.create_task(hydrate(item)) for item in targets]
    done, pending = await asyncio.wait(tasks, timeout=timeout)
    for task in pending:
        task.cancel()
    for task in done:
        if task.exception() is not None:
            logger.warning("Failed to hydrate evidence content: %s", task.exception())
    if pending:
        logger.warning("Evidence hydration timed out after %ss, %s item(s) left empty", timeout, len(pending))


async def run_assistant(
    question: str,
    services: "ServiceRegistry",
    page: int = 1,
    page_size: int | None = None,
) -> AssistantResponse:
    """
    Answer a legal question.

    Runs a direct hybrid search first. With a reasoning model configured the
    agent loop continues from that evidence; otherwise (or when the agent
    fails) the answer is a summary of the evidence.

    Args:
        question: User's legal question in Norwegian
        services: Registry of process-wide services
        page: Result page of the prefetch search
        page_size: Hits per page (defaults to agent_default_page_size)

    Returns:
        AssistantResponse with answer, evidence, citations and pagination

    Raises:
        ValueError: If the question is empty
    """
    settings = services.settings
    question = validate_question(question)
    page = max(1, page or 1)
    page_size = min(page_size or settings.agent_default_page_size, settings.agent_max_page_size)
    timer = Timer("run_assistant", logger, {"question": question[:100]})

    prefetch = await services.search.search(question, page=page, page_size=page_size)
    evidence = hits_to_evidence(prefetch.hits)
    timer.checkpoint("prefetch")

    await hydrate_evidence(
        evidence[: settings.agent_max_evidence_items],
        services.store,
        timeout=settings.hydration_timeout_seconds,
        max_chars=settings.agent_max_content_chars,
    )
    timer.checkpoint("hydrated")

    metadata: dict[str, Any] = {
        "used_agent": False,
        "model": None,
        "agent_state": None,
        "iterations": 0,
        "best_effort": False,
        "reranked": prefetch.reranked,
    }
    citations: list[Citation] = []

    if services.reasoning_model is not None and settings.agent_enabled:
        loop = AgentLoop(services.reasoning_model, services.search, settings, web_search=services.web_search)
        try:
            result = await loop.run(question, evidence)
        except AgentError as e:
            logger.error(f"Agent failed, using fallback answer: {e}")
            answer = build_fallback_answer(evidence)
            metadata["error"] = str(e)
        else:
            evidence = result.evidence
            answer = result.answer
            citations = result.citations
            metadata.update(
                used_agent=True,
                model=services.reasoning_model.model_name,
                agent_state=result.state.value,
                iterations=result.iterations,
                best_effort=result.best_effort,
            )
            if result.error:
                metadata["error"] = result.error
            if result.state != AgentState.DONE:
                citations = []
    else:
        answer = build_fallback_answer(evidence)

    await hydrate_evidence(
        evidence,
        services.store,
        timeout=settings.hydration_timeout_seconds,
        max_chars=settings.agent_max_content_chars,
    )

    citations = normalise_citations(citations, evidence, page=page, page_size=page_size) if evidence else []
    metadata["processing_time_ms"] = round(timer.elapsed_ms(), 1)
    timer.end(evidence=len(evidence), used_agent=metadata["used_agent"])

    return AssistantResponse(
        answer=answer,
        evidence=evidence,
        citations=citations,
        page=prefetch.page,
        page_size=prefetch.page_size,
        total_hits=prefetch.total_hits,
        total_pages=prefetch.total_pages,
        metadata=metadata,
    )
