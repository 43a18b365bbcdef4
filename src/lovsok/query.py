"""Query tokenisation, legal query expansion, and snippet generation."""

from __future__ import annotations

import math
import re
import zlib
from collections import Counter
from typing import Iterable

MIN_TOKEN_LENGTH = 3
MAX_PREFIX_LENGTH = 24
EXPANSION_WEIGHT = 0.5

SNIPPET_WINDOW = 150
SNIPPET_STEP = 100
SNIPPET_SCAN_CHARS = 10000

# Letters and digits in any script; underscore is excluded.
_TOKEN_RE = re.compile(r"[^\W_]{3,}")

# Norwegian function words (bokmål and nynorsk) plus question filler common in
# legal questions. Only words of MIN_TOKEN_LENGTH or more are listed.
NORWEGIAN_STOP_WORDS = frozenset(
    """
    alle at av bare begge ble blei bli blir blitt både båe da dei deim deira deires dem den denne
    der dere deres det dette din disse ditt du dykk dykkar då eg ein eit eitt eller elles enn er
    etter for fordi fra før har hadde han hans her hjå hoe honom hoss hossen hun hva hvem hver hvilke
    hvilken hvis hvor hvordan hvorfor ikke ikkje ingen ingi inkje inn inni jeg kan kom korleis korso
    kun kunne kva kvar kvarhelst kven kvi kvifor man mange med medan meg meget mellom men mine mitt
    mot mykje ned noe noen noka noko nokon nokor nokre når også opp oss over samme selv seg sia sidan
    siden sin sine sitt sjøl skal skulle slik som somme somt så sånn til upp uten var vart varte ved
    vere verte vil ville vore vors vort vår vært
    gjelder loven lovene regler reglene sier står
    """.split()
)

LEGAL_TERM_EXPANSIONS: dict[str, list[str]] = {
    "ekteskap": ["ekteskapsloven", "ekteskapsrett", "ekteskapsbrudd"],
    "skjevdeling": ["ekteskapsloven", "ekteskapsbrudd", "ekteskapsløsning", "ekteskapsrett"],
    "ekteskapsløsning": ["ekteskapsloven", "skjevdeling", "ekteskapsbrudd"],
    "ekteskapsbrudd": ["ekteskapsloven", "skjevdeling", "ekteskapsløsning"],
    "barnebidrag": ["barnebidragsloven", "underholdsbidrag", "bidrag"],
    "arverett": ["arveloven", "arv", "arving"],
    "arbeidsrett": ["arbeidsmiljøloven", "arbeidsmiljø", "arbeidsforhold"],
    "personvern": ["personvernloven", "gdpr", "personopplysninger"],
    "kjøpsloven": ["kjøp", "kjøpsrett"],
    "forbrukerkjøp": ["forbrukerkjøpsloven", "forbrukerrett", "kjøpsloven"],
    "leie": ["husleieloven", "leieforhold", "leierett"],
    "husleie": ["husleieloven", "leie", "leieforhold"],
    "ansettelse": ["arbeidsmiljøloven", "ansettelsesforhold", "arbeidsforhold"],
    "oppsigelse": ["arbeidsmiljøloven", "oppsigelsesrett"],
    "sykefravær": ["arbeidsmiljøloven", "sykepenger"],
    "mobbing": ["arbeidsmiljøloven", "diskriminering", "trakassering"],
    "diskriminering": ["diskrimineringsloven", "likestillingsloven"],
    "likestilling": ["likestillingsloven", "diskrimineringsloven"],
}

# Common law names mapped to fragments of their official titles.
LAW_NAME_TO_OFFICIAL_TITLE: dict[str, list[str]] = {
    "ekteskapsloven": ["lov om ekteskap", "1991 nr 47"],
    "ekteskapslova": ["lov om ekteskap", "1991 nr 47"],
    "arveloven": ["lov om arv", "arvelov"],
    "arbeidsmiljøloven": ["lov om arbeidsmiljø", "arbeidsmiljølov"],
    "barnebidragsloven": ["lov om barnebidrag", "barnebidragslov"],
    "personvernloven": ["lov om personvern", "personvernlov"],
    "kjøpsloven": ["lov om kjøp", "kjøpslov"],
    "forbrukerkjøpsloven": ["lov om forbrukerkjøp", "forbrukerkjøpslov"],
    "husleieloven": ["lov om husleie", "husleielov"],
    "diskrimineringsloven": ["lov om diskriminering", "diskrimineringslov"],
    "likestillingsloven": ["lov om likestilling", "likestillingslov"],
}


def extract_query_tokens(text: str) -> list[str]:
    """
    Extract case-folded alphanumeric runs of at least three characters.

    Duplicates are dropped, first occurrence order is kept.
    """
    tokens = _TOKEN_RE.findall((text or "").casefold())
    return list(dict.fromkeys(tokens))


def lexical_query_tokens(tokens: list[str]) -> list[str]:
    """
    Drop stop words from query tokens before they are used as lexical terms.

    Every lexical term must match, so a question like "Hva gjelder for
    depositum?" would otherwise require "hva" in the document. If every
    token is a stop word the tokens are returned unchanged.
    """
    content = [token for token in tokens if token not in NORWEGIAN_STOP_WORDS]
    return content or list(tokens)


def expand_legal_terms(query: str) -> list[str]:
    """
    Return expansion phrases for legal vocabulary found in the query.

    Related terms come first, then official-title fragments for recognised
    law names. Phrases already present as query tokens are left out.
    """
    tokens = extract_query_tokens(query)
    present = set(tokens)
    related: list[str] = []
    official: list[str] = []
    for token in tokens:
        related.extend(LEGAL_TERM_EXPANSIONS.get(token, []))
        official.extend(LAW_NAME_TO_OFFICIAL_TITLE.get(token, []))
    expansions = [phrase for phrase in dict.fromkeys(related + official) if phrase not in present]
    return expansions


def law_names_in_query(query: str) -> list[str]:
    """Recognised common law names mentioned in the query."""
    return [token for token in extract_query_tokens(query) if token in LAW_NAME_TO_OFFICIAL_TITLE]


def _feature_id(term: str) -> int:
    return zlib.crc32(term.encode("utf-8"))


def document_lexical_vector(text: str) -> tuple[list[int], list[float]]:
    """
    Build the sparse lexical vector stored with a chunk.

    Every word contributes one feature per prefix of length 3 and up, so a
    query token matches any word it is a prefix of. Weights are sublinear
    term frequencies; the store applies IDF at query time.
    """
    counts: Counter[int] = Counter()
    for word in _TOKEN_RE.findall(text.casefold()):
        for length in range(MIN_TOKEN_LENGTH, min(len(word), MAX_PREFIX_LENGTH) + 1):
            counts[_feature_id(word[:length])] += 1
    indices = sorted(counts)
    values = [1.0 + math.log(counts[index]) for index in indices]
    return indices, values


def query_lexical_vector(
    tokens: Iterable[str], expansions: Iterable[str] = ()
) -> tuple[list[int], list[float]]:
    """Build the sparse query vector; expansion terms carry a lower weight."""
    weights: dict[int, float] = {}
    for token in tokens:
        weights[_feature_id(token[:MAX_PREFIX_LENGTH])] = 1.0
    for phrase in expansions:
        for token in extract_query_tokens(phrase):
            weights.setdefault(_feature_id(token[:MAX_PREFIX_LENGTH]), EXPANSION_WEIGHT)
    indices = sorted(weights)
    return indices, [weights[index] for index in indices]


def generate_snippet(content: str, tokens: list[str]) -> str:
    """
    Pick the 150-character window with the most query-token occurrences.

    Windows start every 100 characters within the first 10000 characters.
    An ellipsis marks each side that was cut.
    """
    if not content:
        return ""
    scan = content[:SNIPPET_SCAN_CHARS]
    lowered = scan.casefold()

    best_start = 0
    best_score = 0
    if tokens:
        last_start = max(len(scan) - SNIPPET_WINDOW, 0)
        for start in range(0, last_start + 1, SNIPPET_STEP):
            window = lowered[start : start + SNIPPET_WINDOW]
            score = sum(window.count(token) for token in tokens)
            if score > best_score:
                best_score = score
                best_start = start

    end = min(best_start + SNIPPET_WINDOW, len(content))
    snippet = re.sub(r"\s+", " ", content[best_start:end]).strip()
    if best_start > 0:
        snippet = f"…{snippet}"
    if end < len(content):
        snippet = f"{snippet}…"
    return snippet
