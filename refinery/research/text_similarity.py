#!/usr/bin/env python3
# CUI // SP-CTI
"""Lexical similarity between finding texts.

Two signals, combined by taking the maximum:
    keyword Jaccard  unigrams longer than two characters, stop words removed
    bigram Jaccard   adjacent token pairs (a one-token text is its own phrase)

Keyword overlap alone misses short claims; phrase overlap alone misses a
shared single keyword. Both tokenize lower-cased text on non-alphanumerics.
"""

import re
from typing import FrozenSet, List

_SPLIT_RE = re.compile(r"[^a-z0-9]+")

STOP_WORDS = frozenset((
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "can", "shall", "to", "of", "in", "for",
    "on", "with", "at", "by", "from", "as", "into", "through", "during",
    "before", "after", "and", "but", "or", "not", "no", "so", "yet",
    "both", "each", "all", "any", "more", "most", "other", "some", "such",
    "only", "own", "same", "than", "too", "very", "that", "this", "these",
    "those", "it", "its", "also", "use", "using", "used", "needs", "need",
    "must", "ensure", "implement", "add", "create", "update", "server",
))


def tokenize(text: str) -> List[str]:
    return [t for t in _SPLIT_RE.split(text.lower()) if t]


def keyword_set(text: str) -> FrozenSet[str]:
    return frozenset(t for t in tokenize(text) if len(t) > 2 and t not in STOP_WORDS)


def bigram_set(text: str) -> FrozenSet[str]:
    tokens = tokenize(text)
    if len(tokens) < 2:
        return frozenset([" ".join(tokens)]) if tokens else frozenset()
    return frozenset(f"{a} {b}" for a, b in zip(tokens, tokens[1:]))


def jaccard(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    """|a & b| / |a | b|; 0.0 when either set is empty."""
    if not a or not b:
        return 0.0
    inter = len(a & b)
    return inter / (len(a) + len(b) - inter)


def keyword_jaccard(a: str, b: str) -> float:
    return jaccard(keyword_set(a), keyword_set(b))


def bigram_jaccard(a: str, b: str) -> float:
    return jaccard(bigram_set(a), bigram_set(b))


def combined_similarity(a: str, b: str) -> float:
    return max(keyword_jaccard(a, b), bigram_jaccard(a, b))
