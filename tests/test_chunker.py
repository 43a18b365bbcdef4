"""Tests for document chunking."""

import pytest

from lovsok.chunker import (
    ChunkOptions,
    chunk_document,
    extract_section_metadata,
    find_paragraph_boundary,
)


def _paragraph_text(count: int) -> str:
    return "\n\n".join(f"§ {i} Avsnitt {i}. " + "ord " * 20 for i in range(count))


def test_empty_text_yields_no_chunks():
    assert chunk_document("") == []


def test_short_text_is_one_chunk():
    """Text no longer than chunk_size becomes exactly one chunk spanning it."""
    text = "Lov om husleieavtaler.\n\n§ 1 Virkeområde"
    chunks = chunk_document(text, ChunkOptions(chunk_size=100))
    assert len(chunks) == 1
    assert chunks[0].start_char == 0
    assert chunks[0].end_char == len(text)
    assert chunks[0].content == text


def test_text_exactly_chunk_size_is_one_chunk():
    text = "a" * 100
    chunks = chunk_document(text, ChunkOptions(chunk_size=100))
    assert len(chunks) == 1


def test_long_text_covers_whole_document():
    """Chunk spans cover [0, length) without gaps, with bounded overlap."""
    text = _paragraph_text(60)
    options = ChunkOptions(chunk_size=1000, overlap=200)
    chunks = chunk_document(text, options)

    assert len(chunks) > 1
    assert chunks[0].start_char == 0
    assert chunks[-1].end_char == len(text)
    for previous, current in zip(chunks, chunks[1:]):
        assert current.start_char > previous.start_char
        assert current.start_char <= previous.end_char
        assert previous.end_char - current.start_char <= 200
    for index, chunk in enumerate(chunks):
        assert chunk.index == index
        assert chunk.content == text[chunk.start_char:chunk.end_char]


def test_chunks_end_on_paragraph_boundaries():
    text = _paragraph_text(60)
    chunks = chunk_document(text, ChunkOptions(chunk_size=1000, overlap=200))
    for chunk in chunks[:-1]:
        assert text[chunk.end_char - 2:chunk.end_char] == "\n\n"


def test_without_paragraph_preservation_cuts_at_chunk_size():
    text = "x" * 2500
    chunks = chunk_document(text, ChunkOptions(chunk_size=1000, overlap=100, preserve_paragraphs=False))
    assert [(c.start_char, c.end_char) for c in chunks] == [(0, 1000), (900, 1900), (1800, 2500)]


def test_default_overlap_is_twenty_percent():
    assert ChunkOptions(chunk_size=1000).overlap_size == 200


def test_overlap_not_smaller_than_chunk_size_is_rejected():
    with pytest.raises(ValueError):
        chunk_document("text", ChunkOptions(chunk_size=100, overlap=100))


def test_find_paragraph_boundary_prefers_blank_line():
    text = "a" * 50 + "\n\n" + "b" * 50
    assert find_paragraph_boundary(text, 45, 10) == 52


def test_find_paragraph_boundary_looks_backwards():
    text = "a" * 40 + "\n\n" + "b" * 60
    assert find_paragraph_boundary(text, 48, 10) == 42


def test_find_paragraph_boundary_falls_back_to_newline():
    text = "a" * 50 + "\n" + "b" * 50
    assert find_paragraph_boundary(text, 45, 10) == 51


def test_find_paragraph_boundary_without_breaks_returns_target():
    assert find_paragraph_boundary("x" * 100, 50, 10) == 50


def test_extract_section_metadata_from_text():
    number, title = extract_section_metadata("§ 3 Oppsigelse\n# Oppsigelse av arbeidsavtale\ntekst")
    assert number == "3"
    assert title == "Oppsigelse av arbeidsavtale"


def test_extract_section_metadata_from_markup():
    number, title = extract_section_metadata(
        "<kapittel>2</kapittel><overskrift>Lov om husleie &amp; leie</overskrift>"
    )
    assert number == "2"
    assert title == "Lov om husleie & leie"


def test_extract_section_metadata_without_matches():
    assert extract_section_metadata("vanlig tekst uten overskrift") == (None, None)


def test_metadata_extraction_can_be_disabled():
    chunks = chunk_document("§ 1 Virkeområde", ChunkOptions(extract_metadata=False))
    assert chunks[0].section_number is None
    assert chunks[0].section_title is None
