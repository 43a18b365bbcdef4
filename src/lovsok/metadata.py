"""Text normalisation and metadata extraction for archive documents.

Archive members are Lovdata XML/HTML files. The helpers here turn a raw
member into plain text and derive the filterable metadata (law type,
year, ministry) stored on every chunk.
"""

from __future__ import annotations

import html
import logging
import re
from typing import Optional

from bs4 import BeautifulSoup

from .types import Document

logger = logging.getLogger(__name__)

SEARCHABLE_SUFFIXES = (".xml", ".html", ".htm")
METADATA_SCAN_CHARS = 2000
MIN_YEAR = 1900
MAX_YEAR = 2100

_TITLE_PATTERNS = [
    re.compile(r"<tittel[^>]*>([^<]{1,200})", re.IGNORECASE),
    re.compile(r"<tittel1[^>]*>([^<]{1,200})", re.IGNORECASE),
    re.compile(r"<title[^>]*>([^<]{1,200})", re.IGNORECASE),
    re.compile(r"<overskrift[^>]*>([^<]{1,200})", re.IGNORECASE),
]

_DATE_PATTERNS = [
    re.compile(r"<dato[^>]*>([^<]{1,50})", re.IGNORECASE),
    re.compile(r"<ikrafttredelse[^>]*>([^<]{1,50})", re.IGNORECASE),
    re.compile(r"<kunngjort[^>]*>([^<]{1,50})", re.IGNORECASE),
    re.compile(r"<published[^>]*>([^<]{1,50})", re.IGNORECASE),
]

_YEAR_RE = re.compile(r"\b(?:19|20)\d{2}\b")
_YEAR_LABELLED_PATTERNS = [
    re.compile(r"år[:\s]+(\d{4})", re.IGNORECASE),
    re.compile(r"(\d{4})\s*år", re.IGNORECASE),
]

# Order matters: the first matching type wins.
LAW_TYPE_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"\b(lov|act)\b", re.IGNORECASE), "Lov"),
    (re.compile(r"\b(forskrift|regulation)\b", re.IGNORECASE), "Forskrift"),
    (re.compile(r"\b(vedtak|decision)\b", re.IGNORECASE), "Vedtak"),
    (re.compile(r"\b(cirkulær|circular)\b", re.IGNORECASE), "Cirkulær"),
    (re.compile(r"\b(rundskriv|circular letter)\b", re.IGNORECASE), "Rundskriv"),
    (re.compile(r"\b(instruks|instruction)\b", re.IGNORECASE), "Instruks"),
    (re.compile(r"\b(reglement|regulations)\b", re.IGNORECASE), "Reglement"),
    (re.compile(r"\b(vedlegg|annex|appendix)\b", re.IGNORECASE), "Vedlegg"),
]
LAW_TYPES = tuple(law_type for _, law_type in LAW_TYPE_PATTERNS)
_LAW_NAME_RE = re.compile(r"\b[A-ZÆØÅ][a-zæøå]+loven?\b")

MINISTRIES: list[tuple[re.Pattern, str]] = [
    (re.compile(r"arbeids-?\s*og\s*sosialdepartementet|arbeidsdepartementet", re.IGNORECASE), "Arbeids- og sosialdepartementet"),
    (re.compile(r"barne-?\s*og\s*familiedepartementet", re.IGNORECASE), "Barne- og familiedepartementet"),
    (re.compile(r"digitaliserings-?\s*og\s*forvaltningsdepartementet", re.IGNORECASE), "Digitaliserings- og forvaltningsdepartementet"),
    (re.compile(r"finansdepartementet", re.IGNORECASE), "Finansdepartementet"),
    (re.compile(r"forsvarsdepartementet", re.IGNORECASE), "Forsvarsdepartementet"),
    (re.compile(r"helse-?\s*og\s*omsorgsdepartementet", re.IGNORECASE), "Helse- og omsorgsdepartementet"),
    (re.compile(r"justis-?\s*og\s*beredskapsdepartementet", re.IGNORECASE), "Justis- og beredskapsdepartementet"),
    (re.compile(r"klima-?\s*og\s*miljødepartementet", re.IGNORECASE), "Klima- og miljødepartementet"),
    (re.compile(r"kommunal-?\s*og\s*distriktsdepartementet", re.IGNORECASE), "Kommunal- og distriktsdepartementet"),
    (re.compile(r"kultur-?\s*og\s*likestillingsdepartementet", re.IGNORECASE), "Kultur- og likestillingsdepartementet"),
    (re.compile(r"nærings-?\s*og\s*fiskeridepartementet", re.IGNORECASE), "Nærings- og fiskeridepartementet"),
    (re.compile(r"olje-?\s*og\s*energidepartementet|energidepartementet", re.IGNORECASE), "Energidepartementet"),
    (re.compile(r"samferdselsdepartementet", re.IGNORECASE), "Samferdselsdepartementet"),
    (re.compile(r"utdannings-?\s*og\s*forskningsdepartementet|kunnskapsdepartementet", re.IGNORECASE), "Kunnskapsdepartementet"),
    (re.compile(r"utenriksdepartementet", re.IGNORECASE), "Utenriksdepartementet"),
]
_GENERIC_MINISTRY_RE = re.compile(
    r"\b([A-ZÆØÅa-zæøå][a-zæøå]+(?:-?\s*og\s*[a-zæøå]+)?departementet)\b"
)


def is_searchable_entry(name: str) -> bool:
    """Only XML and HTML members are indexed."""
    return name.lower().endswith(SEARCHABLE_SUFFIXES)


def normalize_document_text(text: str) -> str:
    """Normalise line endings and whitespace without touching paragraph breaks."""
    text = re.sub(r"\r\n?", "\n", text)
    text = text.replace("\xa0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def html_to_text(raw: str) -> str:
    """Convert XML/HTML markup to plain text, keeping block structure as newlines."""
    if "<" not in raw:
        return raw
    soup = BeautifulSoup(raw, "html.parser")
    for element in soup(["script", "style"]):
        element.decompose()
    return soup.get_text("\n")


def _first_group(patterns: list[re.Pattern], text: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if match and match.group(1).strip():
            return html.unescape(match.group(1).strip())
    return None


def extract_title(raw: str) -> Optional[str]:
    return _first_group(_TITLE_PATTERNS, raw)


def extract_date(raw: str) -> Optional[str]:
    return _first_group(_DATE_PATTERNS, raw)


def extract_year(text: str, date: Optional[str] = None) -> Optional[int]:
    """
    Extract a publication year in 1900–2100.

    The date string is preferred; otherwise the first plausible year in the
    head of the document text is used.
    """
    candidates: list[str] = []
    if date:
        match = _YEAR_RE.search(date)
        if match:
            candidates.append(match.group(0))

    head = text[:METADATA_SCAN_CHARS]
    match = _YEAR_RE.search(head)
    if match:
        candidates.append(match.group(0))
    for pattern in _YEAR_LABELLED_PATTERNS:
        match = pattern.search(head)
        if match:
            candidates.append(match.group(1))

    for value in candidates:
        year = int(value)
        if MIN_YEAR <= year <= MAX_YEAR:
            return year
    return None


def extract_law_type(text: str, title: Optional[str] = None) -> Optional[str]:
    """
    Classify a document as Lov, Forskrift, Vedtak, etc.

    The title is checked first since it is the most reliable signal, then
    the head of the text. A capitalised "...loven" name is a last-resort
    signal for Lov.
    """
    if title:
        for pattern, law_type in LAW_TYPE_PATTERNS:
            if pattern.search(title):
                return law_type

    head = text[:METADATA_SCAN_CHARS]
    for pattern, law_type in LAW_TYPE_PATTERNS:
        if pattern.search(head):
            return law_type

    if _LAW_NAME_RE.search(f"{title or ''} {head}"):
        return "Lov"
    return None


def extract_ministry(text: str, title: Optional[str] = None) -> Optional[str]:
    search_text = f"{title or ''} {text[:METADATA_SCAN_CHARS]}"
    for pattern, name in MINISTRIES:
        if pattern.search(search_text):
            return name
    match = _GENERIC_MINISTRY_RE.search(search_text)
    if match:
        value = match.group(1)
        return value[0].upper() + value[1:]
    return None


def build_document(archive_filename: str, member: str, raw: str) -> Document:
    """
    Build a Document from a raw archive member.

    Args:
        archive_filename: Archive the member belongs to
        member: Member path inside the archive
        raw: Raw XML/HTML (or plain text) content

    Returns:
        Document with normalised content and extracted metadata
    """
    title = extract_title(raw)
    date = extract_date(raw)
    content = normalize_document_text(html_to_text(raw))
    return Document(
        archive_filename=archive_filename,
        member=member,
        content=content,
        title=title,
        date=date,
        law_type=extract_law_type(content, title),
        year=extract_year(content, date),
        ministry=extract_ministry(content, title),
    )
