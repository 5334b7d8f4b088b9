"""Deterministic topic identity normalization helpers.

Every raw label an upstream extractor emits is reduced to a canonical key
(``jane_doe_healthcare_bill``) that baselines, phrase clusters and trend
events are keyed on. The mapping is pure: same input, same key.
"""

from __future__ import annotations

import hashlib
import re
import unicodedata
from typing import Iterable


KEY_REGEX = re.compile(r"^[a-z0-9]+(?:_[a-z0-9]+)*$")
MAX_KEY_LENGTH = 96
TRUNCATE_PREFIX_LENGTH = 80
TRUNCATE_HASH_LENGTH = 8
UNKNOWN_TOPIC_KEY = "unknown_topic"

_STOPWORDS = {
    "a",
    "an",
    "the",
    "of",
    "for",
    "to",
    "in",
    "on",
    "at",
    "by",
    "from",
}

_PLURAL_EXCEPTIONS = {"us", "as", "is", "news", "congress", "process", "access", "bus", "gas", "isis", "dhs", "irs"}

_TOKEN_MAP = {
    "usa": "us",
    "gop": "gop",
    "potus": "potus",
    "scotus": "scotus",
    "dems": "democrat",
    "dem": "democrat",
}

_DISPLAY_TOKEN_MAP = {
    "us": "US",
    "gop": "GOP",
    "potus": "POTUS",
    "scotus": "SCOTUS",
    "fbi": "FBI",
    "doj": "DOJ",
    "dhs": "DHS",
    "epa": "EPA",
    "fda": "FDA",
    "cdc": "CDC",
    "irs": "IRS",
    "nato": "NATO",
    "ice": "ICE",
}

# Terms that never form a trend on their own
TOPIC_BLOCKLIST = frozenset({
    "politics", "political", "government", "news", "breaking", "update", "report",
    "latest", "today", "new", "says", "said", "people", "time", "year", "week",
    "thread", "post", "tweet", "video", "photo", "live", "opinion", "editorial",
    "us", "uk", "eu", "un",
})


def canonical_topic_key(raw_label: str) -> str:
    """Return deterministic canonical key for a raw topic/entity label."""
    text = _normalize_text(raw_label)
    text = _replace_separators(text)
    tokens = _tokenize(text)
    tokens = [_normalize_token(token) for token in tokens]
    tokens = [token for token in tokens if token and token not in _STOPWORDS]

    if not tokens:
        return UNKNOWN_TOPIC_KEY

    key = "_".join(tokens)
    key = _truncate_key_if_needed(key)
    if not KEY_REGEX.fullmatch(key):
        return UNKNOWN_TOPIC_KEY
    return key


def display_topic_label(raw_label: str) -> str:
    """Title-cased label derived from the canonical key."""
    key = canonical_topic_key(raw_label)
    if key == UNKNOWN_TOPIC_KEY:
        return "Unknown Topic"
    return " ".join(_DISPLAY_TOKEN_MAP.get(token, token.capitalize()) for token in key.split("_"))


def is_blocklisted(raw_label: str) -> bool:
    """True when the label, or every word of it, is a blocklisted generic term."""
    key = canonical_topic_key(raw_label)
    if key == UNKNOWN_TOPIC_KEY:
        return True
    words = key.split("_")
    return all(word in TOPIC_BLOCKLIST or word in _BLOCKLIST_TOKENS for word in words)


def label_words(label: str) -> list[str]:
    """Lower-cased words of a label with punctuation stripped (stopwords kept)."""
    text = _replace_separators(_normalize_text(label))
    return _tokenize(text)


def _normalize_text(raw: str) -> str:
    text = (raw or "").strip()
    if not text:
        return ""
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = text.lower()
    text = re.sub(r"['’]s\b", "", text)
    return re.sub(r"\bu\.s\.?(?=\s|$)", "us", text)


def _replace_separators(text: str) -> str:
    if not text:
        return text
    text = text.replace("&", " and ")
    text = re.sub(r"[\/\\|\-_\.,:;!\?\(\)\[\]\{\}'\"#@’“”]", " ", text)
    text = re.sub(r"\s+", " ", text).strip()
    return text


def _tokenize(text: str) -> list[str]:
    if not text:
        return []
    return [token for token in text.split(" ") if token]


def _normalize_token(token: str) -> str:
    token = _TOKEN_MAP.get(token, token)
    if token in _PLURAL_EXCEPTIONS:
        return token
    if token.endswith("ies") and len(token) > 4:
        return token[:-3] + "y"
    if token.endswith("s") and not token.endswith("ss") and len(token) > 3:
        return token[:-1]
    return token


def _truncate_key_if_needed(key: str) -> str:
    if len(key) <= MAX_KEY_LENGTH:
        return key
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:TRUNCATE_HASH_LENGTH]
    return f"{key[:TRUNCATE_PREFIX_LENGTH].rstrip('_')}_{digest}"


def dedupe_preserving_order(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


# Blocklist terms as they appear after token normalization ("politics" -> "politic")
_BLOCKLIST_TOKENS = frozenset(_normalize_token(term) for term in TOPIC_BLOCKLIST)
