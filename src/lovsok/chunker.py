"""Split long legal documents into overlapping, boundary-aware chunks."""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass
from typing import Optional

from .types import Chunk

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 12800
DEFAULT_OVERLAP_RATIO = 0.2
BOUNDARY_WINDOW_RATIO = 0.1
METADATA_SCAN_CHARS = 2000
MAX_SECTION_TITLE_LENGTH = 200

_SECTION_NUMBER_PATTERNS = [
    re.compile(r"§\s*(\d+[a-z]?)", re.IGNORECASE),
    re.compile(r"paragraf\s+(\d+[a-z]?)", re.IGNORECASE),
    re.compile(r"kapittel\s+(\d+[a-z]?)", re.IGNORECASE),
    re.compile(r"<paragraf[^>]*>([^<]+)", re.IGNORECASE),
    re.compile(r"<kapittel[^>]*>([^<]+)", re.IGNORECASE),
]

_SECTION_TITLE_PATTERNS = [
    re.compile(r"<overskrift[^>]*>([^<]{1,200})", re.IGNORECASE),
    re.compile(r"<tittel[^>]*>([^<]{1,200})", re.IGNORECASE),
    re.compile(r"<heading[^>]*>([^<]{1,200})", re.IGNORECASE),
    re.compile(r"^#+\s+(.+)$", re.MULTILINE),
    re.compile(r"^(.+)\n={3,}$", re.MULTILINE),
]


@dataclass(frozen=True)
class ChunkOptions:
    """Chunking parameters.

    ``overlap`` defaults to 20% of ``chunk_size`` when not given.
    """

    chunk_size: int = DEFAULT_CHUNK_SIZE
    overlap: Optional[int] = None
    preserve_paragraphs: bool = True
    extract_metadata: bool = True

    @property
    def overlap_size(self) -> int:
        if self.overlap is None:
            return int(self.chunk_size * DEFAULT_OVERLAP_RATIO)
        return self.overlap

    def validate(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.overlap_size < 0:
            raise ValueError(f"overlap must be non-negative, got {self.overlap_size}")
        if self.overlap_size >= self.chunk_size:
            raise ValueError(
                f"overlap ({self.overlap_size}) must be smaller than chunk_size ({self.chunk_size})"
            )


def find_paragraph_boundary(text: str, target: int, window: int) -> int:
    """
    Find a natural cut position near ``target``.

    Preference order: a blank line after the target, a blank line before it,
    a single newline after, a single newline before. Each candidate must lie
    within ``window`` characters of the target. The returned position is just
    past the newline(s), so the next chunk starts on a fresh line.

    Args:
        text: Full document text
        target: Naive cut position
        window: Maximum distance from target

    Returns:
        Cut position, or ``target`` when no boundary is close enough
    """
    forward = text.find("\n\n", target)
    if forward != -1 and forward <= target + window:
        return forward + 2

    backward = text.rfind("\n\n", 0, target + 2)
    if backward != -1 and backward > target - window:
        return backward + 2

    forward = text.find("\n", target)
    if forward != -1 and forward <= target + window:
        return forward + 1

    backward = text.rfind("\n", 0, target + 1)
    if backward != -1 and backward > target - window:
        return backward + 1

    return target


def _decode_entities(value: str) -> str:
    return html.unescape(value).replace("\xa0", " ")


def extract_section_metadata(text: str) -> tuple[Optional[str], Optional[str]]:
    """
    Extract ``(section_number, section_title)`` from the start of a chunk.

    Only the first 2000 characters are scanned. The first pattern that
    matches wins for each kind.
    """
    head = text[:METADATA_SCAN_CHARS]

    section_number = None
    for pattern in _SECTION_NUMBER_PATTERNS:
        match = pattern.search(head)
        if match:
            value = match.group(1).strip()
            if value:
                section_number = value
                break

    section_title = None
    for pattern in _SECTION_TITLE_PATTERNS:
        match = pattern.search(head)
        if match:
            value = _decode_entities(match.group(1)).strip()
            if 0 < len(value) < MAX_SECTION_TITLE_LENGTH:
                section_title = value
                break

    return section_number, section_title


def _make_chunk(text: str, index: int, start: int, end: int, options: ChunkOptions) -> Chunk:
    content = text[start:end]
    section_number = section_title = None
    if options.extract_metadata:
        section_number, section_title = extract_section_metadata(content)
    return Chunk(
        index=index,
        start_char=start,
        end_char=end,
        content=content,
        section_title=section_title,
        section_number=section_number,
    )


def chunk_document(text: str, options: ChunkOptions | None = None) -> list[Chunk]:
    """
    Split ``text`` into overlapping chunks.

    A text no longer than ``chunk_size`` yields exactly one chunk spanning
    it. Longer texts are cut near ``chunk_size`` intervals, preferring
    paragraph boundaries, and each chunk starts ``overlap`` characters
    before the previous chunk's end. Chunk starts are strictly increasing.

    Args:
        text: Document text
        options: Chunking options (defaults to ChunkOptions())

    Returns:
        Ordered list of chunks with contiguous 0-based indexes

    Raises:
        ValueError: If overlap is not smaller than chunk_size
    """
    options = options or ChunkOptions()
    options.validate()

    if not text:
        return []

    length = len(text)
    if length <= options.chunk_size:
        return [_make_chunk(text, 0, 0, length, options)]

    overlap = options.overlap_size
    window = int(options.chunk_size * BOUNDARY_WINDOW_RATIO)
    chunks: list[Chunk] = []
    start = 0

    while start < length:
        naive_end = min(start + options.chunk_size, length)
        end = naive_end
        if naive_end < length and options.preserve_paragraphs:
            boundary = find_paragraph_boundary(text, naive_end, window)
            if boundary > start:
                end = min(boundary, length)

        chunks.append(_make_chunk(text, len(chunks), start, end, options))
        if end >= length:
            break

        next_start = end - overlap
        if next_start <= start:
            # Overlap would stall progress; continue without overlap.
            next_start = end
        start = next_start

    logger.debug("Split %s chars into %s chunks", length, len(chunks))
    return chunks
