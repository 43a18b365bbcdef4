"""Tests for query tokenisation, expansion, lexical vectors and snippets."""

from lovsok.query import (
    EXPANSION_WEIGHT,
    document_lexical_vector,
    expand_legal_terms,
    extract_query_tokens,
    generate_snippet,
    law_names_in_query,
    lexical_query_tokens,
    query_lexical_vector,
)


def test_extract_query_tokens():
    """Tokens are case-folded, at least three characters and deduplicated."""
    tokens = extract_query_tokens("Oppsigelse i arbeidsmiljøloven, oppsigelse!")
    assert tokens == ["oppsigelse", "arbeidsmiljøloven"]


def test_extract_query_tokens_without_usable_terms():
    assert extract_query_tokens("a b c ?") == []
    assert extract_query_tokens("") == []


def test_lexical_query_tokens_drop_question_words():
    tokens = extract_query_tokens("Hva sier loven om depositum ved husleie?")
    assert lexical_query_tokens(tokens) == ["depositum", "husleie"]


def test_lexical_query_tokens_keep_all_stop_words_query():
    tokens = extract_query_tokens("Hva er det?")
    assert lexical_query_tokens(tokens) == ["hva", "det"]


def test_expand_legal_terms():
    expansions = expand_legal_terms("oppsigelse arbeidsmiljøloven")
    assert expansions == ["oppsigelsesrett", "lov om arbeidsmiljø", "arbeidsmiljølov"]


def test_expand_legal_terms_without_legal_vocabulary():
    assert expand_legal_terms("været i morgen") == []


def test_law_names_in_query():
    assert law_names_in_query("Depositum etter husleieloven") == ["husleieloven"]


def test_query_token_matches_word_prefix():
    doc_indices, _ = document_lexical_vector("Arbeidsmiljøloven gjelder")
    query_indices, query_values = query_lexical_vector(["arbeid"])
    assert set(query_indices) <= set(doc_indices)
    assert query_values == [1.0]


def test_document_vector_weights_repeated_terms_higher():
    once_indices, once_values = document_lexical_vector("husleie")
    twice_indices, twice_values = document_lexical_vector("husleie husleie")
    assert once_indices == twice_indices
    assert all(twice > once for once, twice in zip(once_values, twice_values))


def test_expansion_terms_carry_lower_weight():
    indices, values = query_lexical_vector(["husleie"], ["leieforhold"])
    assert sorted(values) == [EXPANSION_WEIGHT, 1.0]
    assert len(indices) == 2


def test_generate_snippet_centres_on_tokens():
    content = "x " * 200 + "husleie depositum " + "y " * 200
    snippet = generate_snippet(content, ["depositum"])
    assert "depositum" in snippet
    assert snippet.startswith("…")
    assert snippet.endswith("…")


def test_generate_snippet_short_content():
    assert generate_snippet("Kort tekst", []) == "Kort tekst"
    assert generate_snippet("", ["ord"]) == ""
