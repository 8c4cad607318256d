"""Lexical helpers shared by the mock stages, the verifier and deduplication."""

from __future__ import annotations

import re

STOPWORDS = frozenset(
    """
    a about above after again against all also although among an and any are as at be
    because been before being below between both but by can could did does doing down
    during each either every few for from further had has have having here hers herself
    him himself his how however into is it its itself just more most much must neither
    nor not now of off once only other ought our ours ourselves out over own same shall
    should some such than that their theirs them themselves then there these they this
    those through thus too under until upon very was were what when where whether which
    while who whom whose why will with within without would your yours yourself
    """.split()
)

_WORD_PATTERN = re.compile(r"[a-z0-9]+(?:['\-][a-z0-9]+)*")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_NUMBER_PATTERN = re.compile(r"\d+(?:\.\d+)?%?")
_WHITESPACE = re.compile(r"\s+")


def tokenize(text: str) -> list[str]:
    return _WORD_PATTERN.findall(text.lower())


def content_words(text: str, min_length: int = 4) -> set[str]:
    """Lower-cased words of at least `min_length` characters, minus stopwords."""
    return {w for w in tokenize(text) if len(w) >= min_length and w not in STOPWORDS}


def jaccard(a: set[str], b: set[str]) -> float:
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_SPLIT.split(text.strip()) if s.strip()]


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def extract_numbers(text: str) -> list[str]:
    return _NUMBER_PATTERN.findall(text)


def truncate_words(text: str, max_words: int = 40) -> str:
    words = text.split()
    if len(words) <= max_words:
        return text.strip()
    return " ".join(words[:max_words]).rstrip(",;:") + "..."
