"""Evidence items: conversion from search results, deduplication and citations."""

from __future__ import annotations

import json
import logging
from collections import Counter
from typing import Any, Iterable, Optional, Sequence

from .types import Citation, Evidence, EvidenceSource, SearchHit, WebResult
from .web_search import is_document_link

logger = logging.getLogger(__name__)

UNTITLED = "Uten tittel"
NO_EVIDENCE_ANSWER = (
    "Jeg fant ingen relevante dokumenter. Vurder å formulere spørsmålet på en annen måte "
    "eller begrense søket."
)
EMPTY_ANSWER = "Jeg klarte ikke å formulere et svar basert på kildene."
CONTENT_TAIL_CHARS = 1000


def evidence_key(item: Evidence) -> Optional[str]:
    """
    Deduplication key for an evidence item.

    Legal-archive items are keyed by (archive, member), web items by link.
    Items without a usable key return None and are never deduplicated.
    """
    if item.source == EvidenceSource.LEGAL_ARCHIVE:
        filename = item.metadata.get("filename")
        member = item.metadata.get("member")
        if filename and member:
            return f"lovdata::{filename}::{member}"
        return None
    if item.link:
        return f"link::{item.link}"
    return None


class EvidenceAccumulator:
    """
    Request-scoped evidence list with key-based deduplication.

    Accepted items are renumbered so ids stay unique across tool calls
    (``lovdata-1``, ``lovdata-2``, ``web-1``, ...).
    """

    def __init__(self) -> None:
        self.items: list[Evidence] = []
        self._ids_by_key: dict[str, str] = {}
        self._counters: Counter[str] = Counter()

    def __len__(self) -> int:
        return len(self.items)

    def merge(self, items: Iterable[Evidence]) -> list[Evidence]:
        """Append items whose key is not yet present; returns the items actually added."""
        added = []
        for item in items:
            key = evidence_key(item)
            if key is not None and key in self._ids_by_key:
                continue
            prefix = item.source.value
            self._counters[prefix] += 1
            item.id = f"{prefix}-{self._counters[prefix]}"
            if key is not None:
                self._ids_by_key[key] = item.id
            self.items.append(item)
            added.append(item)
        return added

    def id_for(self, item: Evidence) -> str:
        """Id under which ``item`` (or its earlier duplicate) is stored."""
        key = evidence_key(item)
        if key is not None and key in self._ids_by_key:
            return self._ids_by_key[key]
        return item.id


def hits_to_evidence(hits: Sequence[SearchHit]) -> list[Evidence]:
    return [
        Evidence(
            id=f"lovdata-{position}",
            source=EvidenceSource.LEGAL_ARCHIVE,
            title=hit.title or hit.filename or UNTITLED,
            snippet=hit.snippet,
            date=hit.date,
            link=hit.url,
            metadata={
                "filename": hit.filename,
                "member": hit.member,
                "law_type": hit.law_type,
                "year": hit.year,
                "ministry": hit.ministry,
            },
        )
        for position, hit in enumerate(hits, start=1)
    ]


def web_results_to_evidence(results: Sequence[WebResult], documents_only: bool = True) -> list[Evidence]:
    """
    Convert web results to evidence.

    With ``documents_only`` (the default) results whose link does not point
    at a document page are left out.
    """
    evidence = []
    for result in results:
        if documents_only and not is_document_link(result.link):
            continue
        evidence.append(
            Evidence(
                id=f"web-{len(evidence) + 1}",
                source=EvidenceSource.WEB,
                title=result.title or UNTITLED,
                snippet=result.snippet,
                date=result.date,
                link=result.link,
            )
        )
    return evidence


def truncate_content(text: Optional[str], max_chars: int, tail_chars: int = CONTENT_TAIL_CHARS) -> Optional[str]:
    """Keep the head and the last ``tail_chars`` of text longer than ``max_chars``."""
    if not text:
        return None
    if len(text) <= max_chars:
        return text
    tail_chars = min(tail_chars, max_chars)
    head_limit = max(max_chars - tail_chars, 0)
    head = text[:head_limit].rstrip() if head_limit > 0 else ""
    tail = text[-tail_chars:].lstrip()
    if not head:
        return tail
    return f"{head}\n...\n{tail}"


def _citation_from_entry(entry: Any) -> Optional[Citation]:
    if not isinstance(entry, dict):
        return None
    evidence_id = entry.get("evidenceId")
    if not isinstance(evidence_id, str):
        return None
    quote = entry.get("quote")
    return Citation(
        evidence_id=evidence_id,
        label=f"[{evidence_id}]",
        quote=quote if isinstance(quote, str) else None,
    )


def parse_agent_answer(raw: Optional[str]) -> tuple[str, list[Citation]]:
    """
    Parse the model's final answer.

    The answer is expected as ``{"answer": ..., "citations": [...]}``, taken
    from the first ``{`` to the last ``}``. Anything else is used as plain
    answer text without citations.
    """
    text = (raw or "").strip()
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        return text or EMPTY_ANSWER, []
    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        logger.warning("Failed to parse agent JSON response: %s", exc)
        return text, []
    if not isinstance(parsed, dict):
        return text, []

    answer = parsed.get("answer")
    if not isinstance(answer, str) or not answer.strip():
        logger.warning("Agent returned empty answer; falling back to raw text")
        return text or EMPTY_ANSWER, []

    entries = parsed.get("citations")
    citations = []
    if isinstance(entries, list):
        citations = [c for c in (_citation_from_entry(entry) for entry in entries) if c is not None]
    return answer.strip(), citations


def normalise_citations(
    citations: Sequence[Citation],
    evidence: Sequence[Evidence],
    page: int = 1,
    page_size: int = 5,
) -> list[Citation]:
    """
    Validate citations against the evidence list and relabel them.

    Labels are ``[offset + position]`` where ``offset = (page - 1) * page_size``
    and position is the 1-based index in ``evidence``. Citations to unknown
    ids are dropped. Without citations every evidence item is cited.
    """
    offset = (max(page, 1) - 1) * page_size
    positions = {item.id: offset + index for index, item in enumerate(evidence, start=1)}

    if not citations:
        return [Citation(evidence_id=item.id, label=f"[{positions[item.id]}]") for item in evidence]

    return [
        Citation(evidence_id=c.evidence_id, label=f"[{positions[c.evidence_id]}]", quote=c.quote)
        for c in citations
        if c.evidence_id in positions
    ]


def build_fallback_answer(evidence: Sequence[Evidence]) -> str:
    """Summary answer used when no model answer is available."""
    if not evidence:
        return NO_EVIDENCE_ANSWER
    bullets = [
        f"- {item.title or UNTITLED}{' (Lovdata)' if item.source == EvidenceSource.LEGAL_ARCHIVE else ''}"
        for item in evidence[:5]
    ]
    return "Her er en oppsummering basert på tilgjengelige dokumenter:\n" + "\n".join(bullets)
