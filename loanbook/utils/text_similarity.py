"""
Text similarity primitives for bank descriptions and counterparty names.

All functions are pure: lowercase tokenisation, keyword overlap, edit
distance via rapidfuzz and graded name containment.
"""

import re
from typing import Iterable, List, Optional

from rapidfuzz.distance import Levenshtein

KEYWORD_STOPWORDS = frozenset({
    "from", "to", "the", "and", "for", "with", "payment", "transfer",
    "in", "out", "ltd", "limited",
})

VENDOR_STOPWORDS = KEYWORD_STOPWORDS | frozenset({
    "plc", "inc", "corp", "llc",
    "card", "visa", "mastercard", "debit", "credit", "pos", "atm",
    "ref", "reference", "direct", "faster", "bacs", "chaps", "fps",
    "gbp", "usd", "eur", "aud", "purchase", "sale", "fee", "charge",
})

COUNTRY_CODES = frozenset({"gb", "uk", "au", "us", "de", "fr", "es", "it", "nl", "ie", "ca", "nz"})

FINGERPRINT_SIZE = 5

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")
_URL = re.compile(r"https?://\S+")
_DOMAIN_SUFFIX = re.compile(r"\.(com|co\.uk|org|net|io|app|co|uk|au|de|fr|es|it|nl|ie|ca|nz)")
_PHONE_INTL = re.compile(r"\+?\d{1,4}[\s\-]?\d{6,14}")
_PHONE_LOCAL = re.compile(r"\d{3}[\s\-]?\d{3}[\s\-]?\d{4}")
_TWO_LETTER_WORD = re.compile(r"\b[a-z]{2}\b")
_LONG_NUMBER = re.compile(r"\b\d{5,}\b")
_PREFIXED_REFERENCE = re.compile(r"\b[a-z]{1,2}\d{5,}\b")
_LEGAL_SUFFIX = re.compile(r"\b(ltd|limited|plc|inc|llc|llp|co|company)\b")


def _words(text: str) -> List[str]:
    return [w for w in _WHITESPACE.split(_NON_ALNUM.sub(" ", text.lower())) if w]


def extract_keywords(text: Optional[str]) -> List[str]:
    """Meaningful words of a free-text description."""
    if not text:
        return []
    return [w for w in _words(text) if len(w) > 2 and w not in KEYWORD_STOPWORDS]


def extract_vendor_keywords(text: Optional[str]) -> List[str]:
    """
    Up to five vendor tokens from a messy bank description.

    URLs, domain suffixes, phone numbers, country codes and long reference
    numbers are stripped before payment jargon is dropped.
    """
    if not text:
        return []

    cleaned = text.lower()
    cleaned = cleaned.replace("www.", " ")
    cleaned = _URL.sub(" ", cleaned)
    cleaned = _DOMAIN_SUFFIX.sub(" ", cleaned)
    cleaned = _PHONE_INTL.sub(" ", cleaned)
    cleaned = _PHONE_LOCAL.sub(" ", cleaned)
    cleaned = _TWO_LETTER_WORD.sub(
        lambda m: " " if m.group(0) in COUNTRY_CODES else m.group(0), cleaned
    )
    cleaned = _LONG_NUMBER.sub(" ", cleaned)
    cleaned = _PREFIXED_REFERENCE.sub(" ", cleaned)

    words = [w for w in _words(cleaned) if len(w) > 2 and w not in VENDOR_STOPWORDS]
    return words[:FINGERPRINT_SIZE]


def keyword_similarity(text1: Optional[str], text2: Optional[str]) -> float:
    """
    Keyword-overlap similarity in [0, 1].

    Equal strings score 1.0 and containment either way 0.8; otherwise the
    share of keywords that contain (or are contained in) a keyword of the
    other side.
    """
    if not text1 or not text2:
        return 0.0
    s1 = text1.lower()
    s2 = text2.lower()
    if s1 == s2:
        return 1.0
    if s1 in s2 or s2 in s1:
        return 0.8

    words1 = extract_keywords(s1)
    words2 = extract_keywords(s2)
    if not words1 or not words2:
        return 0.0

    matches = sum(1 for w1 in words1 if any(w1 in w2 or w2 in w1 for w2 in words2))
    return matches / max(len(words1), len(words2))


def levenshtein_similarity(s1: Optional[str], s2: Optional[str]) -> float:
    """Edit-distance similarity; strings differing in length by over half score 0."""
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0
    max_len = max(len(s1), len(s2))
    if abs(len(s1) - len(s2)) / max_len > 0.5:
        return 0.0
    return 1.0 - Levenshtein.distance(s1, s2) / max_len


def normalize_name(name: Optional[str]) -> str:
    """Lowercase a name and strip legal suffixes and punctuation."""
    if not name:
        return ""
    normalized = _LEGAL_SUFFIX.sub("", name.lower())
    normalized = _NON_ALNUM.sub(" ", normalized)
    return _WHITESPACE.sub(" ", normalized).strip()


def _word_hit(words: Iterable[str], desc_norm: str, desc_words: List[str]) -> Optional[int]:
    # 3-letter words must match a whole word; longer ones may be substrings
    for word in words:
        if len(word) >= 4 and word in desc_norm:
            return 4
        if len(word) == 3 and word in desc_words:
            return 3
    return None


def description_contains_name(
    description: Optional[str],
    name: Optional[str],
    business_name: Optional[str] = None,
) -> float:
    """
    Grade how strongly a bank description names a counterparty.

    Returns 1.0 for the full business name, 0.9 for the full personal name,
    0.85/0.8 for a short/long business-name word and 0.75/0.7 for a
    short/long personal-name word, else 0.
    """
    if not description:
        return 0.0

    name_norm = normalize_name(name)
    biz_norm = normalize_name(business_name)
    desc_norm = normalize_name(description)
    desc_words = desc_norm.split(" ")

    if len(biz_norm) >= 3 and biz_norm in desc_norm:
        return 1.0
    if len(name_norm) >= 3 and name_norm in desc_norm:
        return 0.9

    if biz_norm:
        hit = _word_hit([w for w in biz_norm.split(" ") if len(w) >= 3], desc_norm, desc_words)
        if hit == 4:
            return 0.8
        if hit == 3:
            return 0.85

    if name_norm:
        hit = _word_hit([w for w in name_norm.split(" ") if len(w) >= 3], desc_norm, desc_words)
        if hit == 4:
            return 0.7
        if hit == 3:
            return 0.75

    return 0.0


def descriptions_are_related(desc1: Optional[str], desc2: Optional[str]) -> bool:
    """Two descriptions share at least half of the smaller set of 3+ letter words."""
    if not desc1 or not desc2:
        return False
    words1 = [w for w in _words(desc1) if len(w) >= 3]
    words2 = [w for w in _words(desc2) if len(w) >= 3]
    if not words1 or not words2:
        return False
    matches = sum(1 for w in words1 if w in words2)
    return matches / min(len(words1), len(words2)) >= 0.5


def group_has_related_descriptions(descriptions: List[str]) -> bool:
    """Every description is related to the first one."""
    if len(descriptions) < 2:
        return True
    first = descriptions[0]
    return all(descriptions_are_related(first, other) for other in descriptions[1:])
