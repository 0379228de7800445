"""Text similarity helpers for theme consolidation.

All functions are pure and operate on plain strings so they can be
reused by the consolidation engine, the completion coordinator's
provenance filter, and tests.
"""

import re
from typing import Iterable, Optional

_PUNCTUATION_RE = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE_RE = re.compile(r"\s+")

# Minimum word length counted for word-overlap similarity
MIN_WORD_LENGTH = 3

# Topic buckets: two titles that both hit the same bucket are related
SEMANTIC_BUCKETS: dict[str, tuple[str, ...]] = {
    "performance": ("slow", "speed", "lag", "laggy", "performance", "loading", "freez", "battery", "fast"),
    "ui_ux": ("interface", "design", "layout", "navigation", "ui", "ux", "usability", "dark mode", "font size"),
    "bugs": ("bug", "crash", "glitch", "broken", "error", "not working", "doesn't work", "fails"),
    "feature_request": ("feature request", "wish", "missing feature", "would like", "please add", "option to"),
    "pricing": ("price", "pricing", "subscription", "expensive", "cost", "paywall", "premium", "refund"),
    "support": (
        "customer support", "customer service", "support team", "tech support",
        "help desk", "response time", "unresponsive",
    ),
    "security_privacy": ("privacy", "security", "data collection", "tracking", "permission", "hack"),
    "integration": ("integration", "sync", "import", "export", "third-party", "api", "connect"),
}


def normalize_text(text: Optional[str]) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    if not text:
        return ""
    lowered = _PUNCTUATION_RE.sub(" ", text.lower())
    return _WHITESPACE_RE.sub(" ", lowered).strip()


def significant_words(text: Optional[str]) -> frozenset[str]:
    """Words longer than two characters from the normalized text."""
    return frozenset(w for w in normalize_text(text).split() if len(w) >= MIN_WORD_LENGTH)


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    """Jaccard overlap of two collections, 0.0 when both are empty."""
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def containment_similarity(a: str, b: str) -> float:
    """Similarity for one normalized phrase contained in the other.

    Containment only counts on word boundaries. The score is penalized
    by the length ratio so that a single word inside a long title does
    not count as a near-duplicate.
    """
    if not a or not b:
        return 0.0
    shorter, longer = (a, b) if len(a) <= len(b) else (b, a)
    if f" {shorter} " not in f" {longer} ":
        return 0.0
    return 0.5 + 0.5 * (len(shorter) / len(longer))


def title_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Similarity of two theme titles in [0, 1].

    The maximum of exact match, containment and word-level Jaccard.
    """
    norm_a, norm_b = normalize_text(a), normalize_text(b)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0
    return max(
        containment_similarity(norm_a, norm_b),
        jaccard(significant_words(norm_a), significant_words(norm_b)),
    )


def content_similarity(
    description_a: Optional[str],
    description_b: Optional[str],
    quotes_a: Iterable[str],
    quotes_b: Iterable[str],
    description_weight: float = 0.6,
) -> float:
    """Blend of description word overlap and quote-set overlap.

    When neither side has quotes the description similarity is used
    alone.
    """
    desc_sim = jaccard(significant_words(description_a), significant_words(description_b))
    norm_quotes_a = {q for q in (normalize_text(x) for x in quotes_a) if q}
    norm_quotes_b = {q for q in (normalize_text(x) for x in quotes_b) if q}
    if not norm_quotes_a and not norm_quotes_b:
        return desc_sim
    quote_sim = jaccard(norm_quotes_a, norm_quotes_b)
    return description_weight * desc_sim + (1 - description_weight) * quote_sim


def semantic_buckets(title: Optional[str]) -> frozenset[str]:
    """Names of the semantic buckets a title falls into."""
    normalized = normalize_text(title)
    if not normalized:
        return frozenset()
    padded = f" {normalized} "
    words = normalized.split()
    hits = set()
    for bucket, keywords in SEMANTIC_BUCKETS.items():
        for keyword in keywords:
            norm_kw = normalize_text(keyword)
            if " " in norm_kw:
                matched = f" {norm_kw} " in padded
            elif len(norm_kw) <= 3:
                matched = norm_kw in words
            else:
                matched = any(w.startswith(norm_kw) for w in words)
            if matched:
                hits.add(bucket)
                break
    return frozenset(hits)
