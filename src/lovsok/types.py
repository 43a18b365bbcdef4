"""Shared dataclasses used across ingestion, search, and agent modules.

No imports from other lovsok modules, so any module can import this one
without risk of circular dependencies.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class LovsokError(Exception):
    """Base class for errors raised by lovsok."""


class ConfigurationError(LovsokError):
    """A required collaborator is used without being configured."""


class IngestionError(LovsokError, RuntimeError):
    """Writing an archive to the store failed."""


class AgentError(LovsokError):
    """The reasoning model call failed irrecoverably."""


@dataclass(frozen=True)
class Document:
    """One archive member, the unit that is ingested and replaced per archive."""

    archive_filename: str
    member: str
    content: str
    title: Optional[str] = None
    date: Optional[str] = None
    law_type: Optional[str] = None
    year: Optional[int] = None
    ministry: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.archive_filename, self.member)


@dataclass
class Chunk:
    """A fragment of a document. Offsets are half-open: ``[start_char, end_char)``."""

    index: int
    start_char: int
    end_char: int
    content: str
    section_title: Optional[str] = None
    section_number: Optional[str] = None
    archive_filename: str = ""
    member: str = ""
    law_type: Optional[str] = None
    year: Optional[int] = None
    ministry: Optional[str] = None
    embedding: Optional[list[float]] = None


@dataclass
class StoredChunk:
    """A chunk row as returned by the store, with its document's display fields."""

    archive_filename: str
    member: str
    chunk_index: int
    content: str
    title: Optional[str] = None
    date: Optional[str] = None
    law_type: Optional[str] = None
    year: Optional[int] = None
    ministry: Optional[str] = None
    section_title: Optional[str] = None
    section_number: Optional[str] = None
    score: Optional[float] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.archive_filename, self.member)


@dataclass
class LexicalSearchResult:
    """Rows from a lexical query plus the store's count of matching chunks."""

    rows: list[StoredChunk]
    total: int


@dataclass(frozen=True)
class SearchFilters:
    """Optional metadata constraints for a search."""

    law_type: Optional[str] = None
    year: Optional[int] = None
    min_year: Optional[int] = None
    ministry: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.law_type or self.year or self.min_year or self.ministry)


@dataclass
class SearchCandidate:
    """A document reference with its rank in each signal and the fused score."""

    key: tuple[str, str]
    chunk: StoredChunk
    lexical_rank: Optional[int] = None
    """1-based position in the lexical list, or None if absent."""

    vector_rank: Optional[int] = None
    """1-based position in the vector list, or None if absent."""

    score: float = 0.0
    rerank_score: Optional[float] = None


@dataclass
class SearchHit:
    """One ranked, display-ready search result."""

    filename: str
    member: str
    title: Optional[str]
    date: Optional[str]
    snippet: str
    url: Optional[str] = None
    law_type: Optional[str] = None
    year: Optional[int] = None
    ministry: Optional[str] = None
    score: float = 0.0
    rerank_score: Optional[float] = None


@dataclass
class SearchResult:
    """One page of hybrid search results."""

    query: str
    hits: list[SearchHit]
    total_hits: int
    page: int
    page_size: int
    searched_files: list[str] = field(default_factory=list)
    reranked: bool = False

    @property
    def total_pages(self) -> int:
        if self.total_hits == 0:
            return 1
        return max(1, math.ceil(self.total_hits / self.page_size))

    @classmethod
    def empty(cls, query: str, page: int, page_size: int) -> "SearchResult":
        return cls(query=query, hits=[], total_hits=0, page=page, page_size=page_size)


@dataclass
class WebResult:
    """One organic result from the web-search provider."""

    title: Optional[str]
    link: Optional[str]
    snippet: Optional[str]
    date: Optional[str] = None


class EvidenceSource(str, Enum):
    LEGAL_ARCHIVE = "lovdata"
    WEB = "web"


@dataclass
class Evidence:
    """A retrieved fragment with enough provenance to be cited."""

    id: str
    source: EvidenceSource
    title: str
    snippet: Optional[str]
    content: Optional[str] = None
    link: Optional[str] = None
    date: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Citation:
    evidence_id: str
    label: str
    quote: Optional[str] = None


class AgentState(str, Enum):
    AWAITING_MODEL_RESPONSE = "awaiting_model_response"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    FAILED = "failed"
