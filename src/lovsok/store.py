"""Archive, document and chunk storage on Qdrant.

Three collections share a prefix:

- ``<prefix>_archives``: one record per ingested archive
- ``<prefix>_documents``: full document text keyed by (archive, member)
- ``<prefix>_chunks``: chunk text with a dense embedding and a sparse
  lexical vector, plus a prefix-tokenised full-text index for AND matching
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence

from qdrant_client import AsyncQdrantClient
from qdrant_client import models

from .config import Settings
from .query import document_lexical_vector, extract_query_tokens, query_lexical_vector
from .types import Chunk, Document, LexicalSearchResult, SearchFilters, StoredChunk

logger = logging.getLogger(__name__)

DENSE_VECTOR = "dense"
LEXICAL_VECTOR = "lexical"
MAX_FILENAME_LENGTH = 255
MAX_MEMBER_LENGTH = 1000


def validate_filename(filename: str) -> str:
    """Reject empty, overlong, or path-like archive names."""
    if not filename or not filename.strip():
        raise ValueError("Archive filename must not be empty")
    if len(filename) > MAX_FILENAME_LENGTH:
        raise ValueError(f"Archive filename exceeds {MAX_FILENAME_LENGTH} characters")
    if ".." in filename or "/" in filename or "\\" in filename:
        raise ValueError(f"Archive filename contains path characters: {filename!r}")
    return filename


def validate_member(member: str) -> str:
    if not member or not member.strip():
        raise ValueError("Member name must not be empty")
    if len(member) > MAX_MEMBER_LENGTH:
        raise ValueError(f"Member name exceeds {MAX_MEMBER_LENGTH} characters")
    return member


def _generate_deterministic_id(point_key: str) -> int:
    """
    Generate a deterministic int64 ID from a point key.

    Uses SHA-256 hash to avoid collisions while ensuring determinism.
    """
    hash_bytes = hashlib.sha256(point_key.encode("utf-8")).digest()
    return int.from_bytes(hash_bytes[:8], byteorder="big", signed=False) % (2**63)


def document_point_id(archive_filename: str, member: str) -> int:
    return _generate_deterministic_id(f"doc::{archive_filename}::{member}")


def chunk_point_id(archive_filename: str, member: str, index: int) -> int:
    return _generate_deterministic_id(f"chunk::{archive_filename}::{member}::{index}")


def _archive_condition(filename: str) -> models.Filter:
    return models.Filter(
        must=[
            models.FieldCondition(
                key="archive_filename", match=models.MatchValue(value=filename)
            )
        ]
    )


def build_metadata_conditions(filters: Optional[SearchFilters]) -> list[models.Condition]:
    """Translate SearchFilters into Qdrant payload conditions."""
    if filters is None:
        return []
    conditions: list[models.Condition] = []
    if filters.law_type:
        conditions.append(
            models.FieldCondition(key="law_type", match=models.MatchValue(value=filters.law_type))
        )
    if filters.year is not None:
        conditions.append(
            models.FieldCondition(key="year", match=models.MatchValue(value=filters.year))
        )
    elif filters.min_year is not None:
        conditions.append(
            models.FieldCondition(key="year", range=models.Range(gte=filters.min_year))
        )
    if filters.ministry:
        conditions.append(
            models.FieldCondition(key="ministry", match=models.MatchText(text=filters.ministry))
        )
    return conditions


def build_lexical_filter(
    tokens: Sequence[str],
    expansions: Iterable[str] = (),
    filters: Optional[SearchFilters] = None,
) -> models.Filter:
    """
    All query tokens must match (prefix semantics). Each expansion phrase is
    an alternative conjunction of its own tokens.
    """
    def conjunction(terms: Sequence[str]) -> models.Filter:
        return models.Filter(
            must=[
                models.FieldCondition(key="search_text", match=models.MatchText(text=term))
                for term in terms
            ]
        )

    alternatives = [conjunction(tokens)]
    for phrase in expansions:
        phrase_tokens = extract_query_tokens(phrase)
        if phrase_tokens:
            alternatives.append(conjunction(phrase_tokens))

    text_filter = models.Filter(should=alternatives) if len(alternatives) > 1 else alternatives[0]
    return models.Filter(must=[text_filter, *build_metadata_conditions(filters)])


def _row_from_payload(payload: dict[str, Any], score: Optional[float] = None) -> StoredChunk:
    return StoredChunk(
        archive_filename=payload.get("archive_filename", ""),
        member=payload.get("member", ""),
        chunk_index=int(payload.get("chunk_index", 0)),
        content=payload.get("text", ""),
        title=payload.get("title"),
        date=payload.get("date"),
        law_type=payload.get("law_type"),
        year=payload.get("year"),
        ministry=payload.get("ministry"),
        section_title=payload.get("section_title"),
        section_number=payload.get("section_number"),
        score=score,
    )


class ArchiveStore:
    """Async chunk/document store backed by Qdrant."""

    def __init__(self, settings: Settings, client: AsyncQdrantClient | None = None):
        """
        Create the store and its Qdrant client.

        Args:
            settings: Application settings
            client: Existing client to use instead of building one from settings
        """
        self.settings = settings
        prefix = settings.qdrant_collection_prefix
        self.archives_collection = f"{prefix}_archives"
        self.documents_collection = f"{prefix}_documents"
        self.chunks_collection = f"{prefix}_chunks"

        if client is not None:
            self.client = client
        elif settings.qdrant_in_memory:
            if settings.qdrant_persist_path:
                self.client = AsyncQdrantClient(path=settings.qdrant_persist_path)
                logger.info(f"Using Qdrant with persistence at {settings.qdrant_persist_path}")
            else:
                self.client = AsyncQdrantClient(location=":memory:")
                logger.info("Using in-memory Qdrant (data will not persist)")
        else:
            self.client = AsyncQdrantClient(url=settings.qdrant_url, api_key=settings.qdrant_api_key)
            logger.info(f"Connecting to Qdrant at {settings.qdrant_url}")

    async def close(self) -> None:
        await self.client.close()

    async def ensure_collections(self) -> None:
        """
        Create missing collections and payload indexes.

        Safe to run repeatedly.

        Raises:
            ConnectionError: If Qdrant cannot be reached
        """
        try:
            await self.client.get_collections()
        except Exception as e:
            logger.error(f"Failed to connect to Qdrant: {e}")
            raise ConnectionError(f"Cannot connect to Qdrant: {e}") from e

        for name in (self.archives_collection, self.documents_collection):
            if not await self.client.collection_exists(collection_name=name):
                logger.info(f"Creating collection: {name}")
                await self.client.create_collection(collection_name=name, vectors_config={})

        if not await self.client.collection_exists(collection_name=self.chunks_collection):
            logger.info(f"Creating collection: {self.chunks_collection}")
            await self.client.create_collection(
                collection_name=self.chunks_collection,
                vectors_config={
                    DENSE_VECTOR: models.VectorParams(
                        size=self.settings.embedding_dimension,
                        distance=models.Distance.COSINE,
                    )
                },
                sparse_vectors_config={
                    LEXICAL_VECTOR: models.SparseVectorParams(modifier=models.Modifier.IDF)
                },
                on_disk_payload=True,
            )
        await self._ensure_payload_indexes()

    async def _ensure_payload_indexes(self) -> None:
        schemas: dict[str, Any] = {
            "archive_filename": models.PayloadSchemaType.KEYWORD,
            "member": models.PayloadSchemaType.KEYWORD,
            "law_type": models.PayloadSchemaType.KEYWORD,
            "year": models.PayloadSchemaType.INTEGER,
            "ministry": models.TextIndexParams(
                type=models.TextIndexType.TEXT,
                tokenizer=models.TokenizerType.WORD,
                lowercase=True,
            ),
            "search_text": models.TextIndexParams(
                type=models.TextIndexType.TEXT,
                tokenizer=models.TokenizerType.PREFIX,
                min_token_len=3,
                max_token_len=24,
                lowercase=True,
                stopwords=models.Language.NORWEGIAN,
                stemmer=models.SnowballParams(
                    type=models.Snowball.SNOWBALL,
                    language=models.SnowballLanguage.NORWEGIAN,
                ),
            ),
        }
        for field_name, schema in schemas.items():
            try:
                await self.client.create_payload_index(
                    collection_name=self.chunks_collection,
                    field_name=field_name,
                    field_schema=schema,
                    wait=True,
                )
                logger.debug("Ensured payload index: %s", field_name)
            except Exception as exc:
                # Keep this idempotent; if index already exists or API differs, continue.
                logger.warning("Failed ensuring payload index %s: %s", field_name, exc)

    async def upsert_archive(self, filename: str, document_count: int) -> None:
        """Record that an archive was (re)ingested with ``document_count`` documents."""
        validate_filename(filename)
        await self.client.upsert(
            collection_name=self.archives_collection,
            points=[
                models.PointStruct(
                    id=_generate_deterministic_id(f"archive::{filename}"),
                    vector={},
                    payload={
                        "filename": filename,
                        "document_count": document_count,
                        "updated_at": datetime.now(timezone.utc).isoformat(),
                    },
                )
            ],
            wait=True,
        )

    async def replace_documents(
        self,
        filename: str,
        documents: Sequence[Document],
        chunks: Sequence[Chunk] = (),
    ) -> tuple[int, int]:
        """
        Replace every document and chunk of an archive.

        Existing rows for the archive are deleted, then the new rows are
        written in batches. Readers may briefly see a partial archive.

        Args:
            filename: Archive being replaced
            documents: All documents of the archive
            chunks: Embedded chunks of those documents

        Returns:
            ``(documents_written, chunks_written)``

        Raises:
            ValueError: If a document or chunk belongs to another archive
        """
        validate_filename(filename)
        for document in documents:
            validate_member(document.member)
            if document.archive_filename != filename:
                raise ValueError(
                    f"Document {document.member!r} belongs to {document.archive_filename!r}, not {filename!r}"
                )
        for chunk in chunks:
            if chunk.archive_filename != filename:
                raise ValueError(
                    f"Chunk of {chunk.member!r} belongs to {chunk.archive_filename!r}, not {filename!r}"
                )
            if chunk.embedding is None:
                raise ValueError(f"Chunk {chunk.index} of {chunk.member!r} has no embedding")

        selector = models.FilterSelector(filter=_archive_condition(filename))
        await self.client.delete(collection_name=self.chunks_collection, points_selector=selector, wait=True)
        await self.client.delete(collection_name=self.documents_collection, points_selector=selector, wait=True)
        logger.info("Deleted existing rows for archive %s", filename)

        by_member = {document.member: document for document in documents}
        batch_size = self.settings.index_batch_size

        for start in range(0, len(documents), batch_size):
            batch = documents[start : start + batch_size]
            await self.client.upsert(
                collection_name=self.documents_collection,
                points=[self._document_point(document) for document in batch],
                wait=True,
            )
        for start in range(0, len(chunks), batch_size):
            batch = chunks[start : start + batch_size]
            await self.client.upsert(
                collection_name=self.chunks_collection,
                points=[self._chunk_point(chunk, by_member.get(chunk.member)) for chunk in batch],
                wait=True,
            )
            logger.debug("Wrote chunk batch %s-%s for %s", start, start + len(batch), filename)

        return len(documents), len(chunks)

    @staticmethod
    def _document_point(document: Document) -> models.PointStruct:
        return models.PointStruct(
            id=document_point_id(document.archive_filename, document.member),
            vector={},
            payload={
                "archive_filename": document.archive_filename,
                "member": document.member,
                "title": document.title,
                "date": document.date,
                "content": document.content,
                "law_type": document.law_type,
                "year": document.year,
                "ministry": document.ministry,
            },
        )

    @staticmethod
    def _chunk_point(chunk: Chunk, document: Optional[Document]) -> models.PointStruct:
        indices, values = document_lexical_vector(chunk.content)
        return models.PointStruct(
            id=chunk_point_id(chunk.archive_filename, chunk.member, chunk.index),
            vector={
                DENSE_VECTOR: chunk.embedding,
                LEXICAL_VECTOR: models.SparseVector(indices=indices, values=values),
            },
            payload={
                "archive_filename": chunk.archive_filename,
                "member": chunk.member,
                "chunk_index": chunk.index,
                "start_char": chunk.start_char,
                "end_char": chunk.end_char,
                "text": chunk.content,
                "search_text": chunk.content.casefold(),
                "title": document.title if document else None,
                "date": document.date if document else None,
                "law_type": chunk.law_type,
                "year": chunk.year,
                "ministry": chunk.ministry,
                "section_title": chunk.section_title,
                "section_number": chunk.section_number,
            },
        )

    async def lexical_search(
        self,
        tokens: Sequence[str],
        limit: int,
        offset: int = 0,
        filters: Optional[SearchFilters] = None,
        expansions: Iterable[str] = (),
    ) -> LexicalSearchResult:
        """
        Full-text search over chunks.

        Chunks must contain every token as a word prefix (or every token of
        one expansion phrase). Rows are ordered by IDF-weighted overlap of
        the sparse lexical vectors.
        """
        if not tokens:
            return LexicalSearchResult(rows=[], total=0)
        expansions = list(expansions)
        query_filter = build_lexical_filter(tokens, expansions, filters)
        indices, values = query_lexical_vector(tokens, expansions)

        response, count = await asyncio.gather(
            self.client.query_points(
                collection_name=self.chunks_collection,
                query=models.SparseVector(indices=indices, values=values),
                using=LEXICAL_VECTOR,
                query_filter=query_filter,
                limit=limit,
                offset=offset,
                with_payload=True,
            ),
            self.client.count(
                collection_name=self.chunks_collection,
                count_filter=query_filter,
                exact=True,
            ),
        )
        rows = [_row_from_payload(point.payload or {}, point.score) for point in response.points]
        return LexicalSearchResult(rows=rows, total=count.count)

    async def vector_search(
        self,
        embedding: Sequence[float],
        limit: int,
        filters: Optional[SearchFilters] = None,
    ) -> list[StoredChunk]:
        """Nearest-neighbour search over chunk embeddings (cosine)."""
        conditions = build_metadata_conditions(filters)
        response = await self.client.query_points(
            collection_name=self.chunks_collection,
            query=list(embedding),
            using=DENSE_VECTOR,
            query_filter=models.Filter(must=conditions) if conditions else None,
            limit=limit,
            with_payload=True,
        )
        return [_row_from_payload(point.payload or {}, point.score) for point in response.points]

    async def get_by_key(self, archive_filename: str, member: str) -> Optional[Document]:
        """Fetch one document by its composite key, or None."""
        points = await self.client.retrieve(
            collection_name=self.documents_collection,
            ids=[document_point_id(archive_filename, member)],
            with_payload=True,
            with_vectors=False,
        )
        if not points:
            return None
        payload = points[0].payload or {}
        return Document(
            archive_filename=payload.get("archive_filename", archive_filename),
            member=payload.get("member", member),
            content=payload.get("content", ""),
            title=payload.get("title"),
            date=payload.get("date"),
            law_type=payload.get("law_type"),
            year=payload.get("year"),
            ministry=payload.get("ministry"),
        )

    async def get_document_content(self, archive_filename: str, member: str) -> Optional[str]:
        """Full text of a document, or None if missing or the lookup times out."""
        try:
            document = await asyncio.wait_for(
                self.get_by_key(archive_filename, member),
                timeout=self.settings.document_fetch_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Timed out fetching content for %s/%s", archive_filename, member)
            return None
        return document.content if document else None

    async def get_archive(self, filename: str) -> Optional[dict[str, Any]]:
        points = await self.client.retrieve(
            collection_name=self.archives_collection,
            ids=[_generate_deterministic_id(f"archive::{filename}")],
            with_payload=True,
        )
        return dict(points[0].payload or {}) if points else None
