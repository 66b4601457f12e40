"""Pluggable text-similarity strategies for free-text answers and extracted facts."""

import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Protocol

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_NUMBER = re.compile(r"\d+(?:[.,]\d+)?")

STOP_WORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "has",
    "have", "in", "is", "it", "its", "of", "on", "or", "that", "the", "this",
    "to", "was", "were", "which", "with",
})


class SimilarityStrategy(Protocol):
    def matches(self, a: str, b: str) -> bool:
        """Return True when ``a`` and ``b`` express the same thing."""
        ...


def normalize_text(text: str) -> str:
    """Lowercase, drop punctuation, collapse whitespace."""
    text = _NON_WORD.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", text).strip()


def sequence_ratio(a: str, b: str) -> float:
    na, nb = normalize_text(a), normalize_text(b)
    if na == nb:
        return 1.0
    if not na or not nb:
        return 0.0
    return SequenceMatcher(None, na, nb).ratio()


def _content_words(text: str) -> set[str]:
    return {w for w in normalize_text(text).split() if w not in STOP_WORDS}


def _numbers(text: str) -> set[str]:
    return {n.replace(",", ".") for n in _NUMBER.findall(text)}


@dataclass(frozen=True)
class SequenceSimilarity:
    """Normalized edit similarity via difflib; two answers match at ratio >= threshold."""

    threshold: float = 0.85

    def matches(self, a: str, b: str) -> bool:
        return sequence_ratio(a, b) >= self.threshold


@dataclass(frozen=True)
class FactOverlapSimilarity:
    """Paraphrase matcher for extracted facts.

    Facts that mention different numbers never match. Otherwise the better of
    content-word Jaccard overlap and sequence ratio must reach the threshold.
    """

    threshold: float = 0.6

    def matches(self, a: str, b: str) -> bool:
        if _numbers(a) != _numbers(b):
            return False
        words_a, words_b = _content_words(a), _content_words(b)
        union = words_a | words_b
        jaccard = len(words_a & words_b) / len(union) if union else 1.0
        return max(jaccard, sequence_ratio(a, b)) >= self.threshold
