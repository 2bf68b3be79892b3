"""Shared text utilities for the link planning engine."""

from __future__ import annotations

import hashlib
import re
from typing import Iterable, List
from urllib.parse import urlparse

from bs4 import BeautifulSoup  # type: ignore

_TOKEN_RE = re.compile(r"[\w']+")
_WHITESPACE_RE = re.compile(r"\s+")
_TRAILING_PUNCT_RE = re.compile(r"[^\w\s]+$")

STOPWORDS = frozenset(
    {
        "the",
        "and",
        "or",
        "to",
        "of",
        "a",
        "in",
        "for",
        "on",
        "with",
        "at",
        "by",
        "an",
        "be",
        "is",
        "are",
        "was",
        "were",
        "it",
        "this",
        "that",
        "from",
        "as",
    }
)


def tokenize(text: str) -> List[str]:
    """Return lower-cased word tokens from the provided text."""

    return [token.lower() for token in _TOKEN_RE.findall(text)]


def strip_markup(text: str) -> str:
    """Return the visible text of an HTML fragment."""

    if "<" not in text:
        return text
    try:
        soup = BeautifulSoup(text, "lxml")
    except Exception:
        soup = BeautifulSoup(text, "html.parser")
    return soup.get_text(" ")


def normalize_text(text: str) -> str:
    """Normalise text so formatting differences share one cache entry.

    Markup is stripped, whitespace collapsed, the result lower-cased and
    any trailing punctuation removed.
    """

    cleaned = strip_markup(text or "")
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip().lower()
    return _TRAILING_PUNCT_RE.sub("", cleaned).rstrip()


def text_hash(text: str) -> str:
    """SHA-256 hex digest of the normalised text."""

    return hashlib.sha256(normalize_text(text).encode("utf-8")).hexdigest()


def jaccard(set_a: Iterable[str], set_b: Iterable[str]) -> float:
    """Return Jaccard similarity for two iterables."""

    set_a = set(set_a)
    set_b = set(set_b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def significant_terms(text: str) -> set[str]:
    return {token for token in tokenize(text) if token not in STOPWORDS and len(token) > 2}


def content_overlap(text_a: str, text_b: str) -> float:
    """Share of significant vocabulary two texts have in common."""

    return jaccard(significant_terms(text_a), significant_terms(text_b))


def url_section(url: str) -> str:
    """Return the first path segment of ``url`` ('' for the root)."""

    path = urlparse(url).path.strip("/")
    return path.split("/")[0].lower() if path else ""
