"""Archive ingestion: members → documents → embedded chunks → store."""

from __future__ import annotations

import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Union

from .chunker import ChunkOptions, chunk_document
from .config import Settings
from .embeddings import EmbeddingService
from .metadata import build_document, is_searchable_entry
from .store import ArchiveStore, validate_filename
from .timing import Timer
from .types import Chunk, Document, IngestionError

logger = logging.getLogger(__name__)

RawContent = Union[str, bytes]


@dataclass
class IngestResult:
    """Outcome of replacing one archive."""

    archive_filename: str
    documents: int
    chunks: int
    skipped_members: list[str] = field(default_factory=list)


def iter_archive_entries(path: Path) -> Iterator[tuple[str, bytes]]:
    """
    Yield ``(member, raw_bytes)`` pairs from a zip archive or a directory.

    Directory members are paths relative to the directory.
    """
    if path.is_dir():
        for file_path in sorted(p for p in path.rglob("*") if p.is_file()):
            yield file_path.relative_to(path).as_posix(), file_path.read_bytes()
        return
    with zipfile.ZipFile(path) as archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            yield info.filename, archive.read(info)


def _decode(raw: RawContent) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw


class ArchiveIngestor:
    """Builds documents and chunks for an archive and replaces it in the store."""

    def __init__(self, store: ArchiveStore, embeddings: EmbeddingService, settings: Settings):
        self.store = store
        self.embeddings = embeddings
        self.settings = settings
        self.chunk_options = ChunkOptions(
            chunk_size=settings.chunk_size,
            overlap=settings.chunk_overlap,
            preserve_paragraphs=settings.chunk_preserve_paragraphs,
            extract_metadata=settings.chunk_extract_metadata,
        )

    def build_documents(
        self, filename: str, entries: Iterable[tuple[str, RawContent]]
    ) -> tuple[list[Document], list[str]]:
        """Parse searchable members; returns documents and skipped member names."""
        documents: list[Document] = []
        skipped: list[str] = []
        seen: set[str] = set()
        for member, raw in entries:
            if not is_searchable_entry(member):
                skipped.append(member)
                continue
            if member in seen:
                logger.warning(f"Duplicate member {member} in {filename}, skipping")
                skipped.append(member)
                continue
            seen.add(member)
            document = build_document(filename, member, _decode(raw))
            if not document.content:
                logger.debug("Member %s has no text content, skipping", member)
                skipped.append(member)
                continue
            documents.append(document)
        return documents, skipped

    def build_chunks(self, document: Document) -> list[Chunk]:
        chunks = chunk_document(document.content, self.chunk_options)
        for chunk in chunks:
            chunk.archive_filename = document.archive_filename
            chunk.member = document.member
            chunk.law_type = document.law_type
            chunk.year = document.year
            chunk.ministry = document.ministry
        return chunks

    async def ingest(self, filename: str, entries: Iterable[tuple[str, RawContent]]) -> IngestResult:
        """
        Replace an archive's documents and chunks in the store.

        The archive record and the replace are both awaited; any failure is
        raised to the caller.

        Args:
            filename: Archive name (no path components)
            entries: ``(member, raw)`` pairs

        Returns:
            IngestResult with document and chunk counts

        Raises:
            ValueError: If the archive filename is invalid
            IngestionError: If embedding or writing fails
        """
        validate_filename(filename)
        timer = Timer("ingest_archive", logger, {"archive": filename})

        documents, skipped = self.build_documents(filename, entries)
        chunks = [chunk for document in documents for chunk in self.build_chunks(document)]
        timer.checkpoint("chunked")

        try:
            embeddings = await self.embeddings.embed_many([chunk.content for chunk in chunks])
            for chunk, embedding in zip(chunks, embeddings):
                chunk.embedding = embedding
            timer.checkpoint("embedded")

            await self.store.upsert_archive(filename, len(documents))
            document_count, chunk_count = await self.store.replace_documents(filename, documents, chunks)
        except Exception as e:
            logger.error(f"Error ingesting archive {filename}: {e}")
            raise IngestionError(f"Ingestion of {filename} failed: {e}") from e

        timer.end(documents=document_count, chunks=chunk_count, skipped=len(skipped))
        return IngestResult(
            archive_filename=filename,
            documents=document_count,
            chunks=chunk_count,
            skipped_members=skipped,
        )
