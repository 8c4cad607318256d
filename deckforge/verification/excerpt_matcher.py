"""
Excerpt reconciliation.

LLMs paraphrase when asked to quote. Before verification, each cited excerpt
is matched back to its chunk and replaced with the verbatim source text:

1. exact substring
2. whitespace-normalized
3. case-insensitive
4. closest sentence by word Jaccard (>= 0.75)
5. difflib fuzzy window (ratio >= 0.8)

Excerpts that match nothing are reported as missing and dropped by
apply_corrections, so the card is judged only on real evidence.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from enum import Enum
from typing import Any, Optional

from deckforge.generation.models import CandidateCard, Chunk, Evidence
from deckforge.generation.text_utils import jaccard, split_sentences, tokenize

SENTENCE_MATCH_THRESHOLD = 0.75
FUZZY_MATCH_THRESHOLD = 0.8


class CorrectionStatus(str, Enum):
    OK = "ok"
    CORRECTED = "corrected"
    MISSING = "missing"


@dataclass
class EvidenceCorrection:
    evidence_index: int
    status: CorrectionStatus
    corrected_excerpt: Optional[str] = None
    reason: str = ""
    similarity: float = 0.0
    chunk_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "evidence_index": self.evidence_index,
            "status": self.status.value,
            "corrected_excerpt": self.corrected_excerpt,
            "reason": self.reason,
            "similarity": round(self.similarity, 3),
            "chunk_id": self.chunk_id,
        }


def _spaced_pattern(excerpt: str, flags: int = 0) -> Optional[re.Pattern[str]]:
    words = excerpt.split()
    if not words:
        return None
    return re.compile(r"\s+".join(re.escape(w) for w in words), flags)


def _fuzzy_window(excerpt: str, text: str) -> tuple[Optional[str], float]:
    """Best-matching run of words in `text` with the excerpt's word count."""
    target = excerpt.lower()
    words = text.split()
    size = len(excerpt.split())
    if not words or size == 0:
        return None, 0.0

    best_text: Optional[str] = None
    best_ratio = 0.0
    for start in range(max(1, len(words) - size + 1)):
        window = " ".join(words[start : start + size])
        matcher = SequenceMatcher(None, target, window.lower())
        if matcher.real_quick_ratio() < best_ratio or matcher.quick_ratio() < best_ratio:
            continue
        ratio = matcher.ratio()
        if ratio > best_ratio:
            best_ratio = ratio
            best_text = window
    return best_text, best_ratio


def match_excerpt(excerpt: str, chunk_text: str) -> tuple[CorrectionStatus, Optional[str], str, float]:
    """
    Locate an excerpt inside one chunk.

    Returns:
        (status, corrected_excerpt, reason, similarity)
    """
    excerpt = excerpt.strip()
    if not excerpt:
        return CorrectionStatus.MISSING, None, "empty excerpt", 0.0

    if excerpt in chunk_text:
        return CorrectionStatus.OK, None, "exact match", 1.0

    for flags, reason in ((0, "whitespace normalized"), (re.IGNORECASE, "case-insensitive match")):
        pattern = _spaced_pattern(excerpt, flags)
        match = pattern.search(chunk_text) if pattern else None
        if match:
            return CorrectionStatus.CORRECTED, match.group(0), reason, 1.0

    excerpt_words = set(tokenize(excerpt))
    best_sentence: Optional[str] = None
    best_similarity = 0.0
    for sentence in split_sentences(chunk_text):
        similarity = jaccard(excerpt_words, set(tokenize(sentence)))
        if similarity > best_similarity:
            best_sentence, best_similarity = sentence, similarity
    if best_sentence is not None and best_similarity >= SENTENCE_MATCH_THRESHOLD:
        return (
            CorrectionStatus.CORRECTED,
            best_sentence,
            f"replaced with closest sentence (jaccard {best_similarity:.2f})",
            best_similarity,
        )

    window, ratio = _fuzzy_window(excerpt, chunk_text)
    if window is not None and ratio >= FUZZY_MATCH_THRESHOLD:
        return CorrectionStatus.CORRECTED, window, f"fuzzy match (ratio {ratio:.2f})", ratio

    return (
        CorrectionStatus.MISSING,
        None,
        "excerpt not found in source",
        max(best_similarity, ratio),
    )


def reconcile_card_evidence(card: CandidateCard, chunks: list[Chunk]) -> list[EvidenceCorrection]:
    """Check every evidence item of a card against its cited chunk, then the others."""
    chunk_map = {c.chunk_id: c for c in chunks}
    corrections: list[EvidenceCorrection] = []

    for index, evidence in enumerate(card.evidence):
        cited = chunk_map.get(evidence.chunk_id)
        candidates = ([cited] if cited else []) + [c for c in chunks if c is not cited]

        best = EvidenceCorrection(
            evidence_index=index,
            status=CorrectionStatus.MISSING,
            reason="excerpt not found in source" if candidates else "no chunks available",
        )
        for chunk in candidates:
            status, corrected, reason, similarity = match_excerpt(evidence.excerpt, chunk.text)
            if status == CorrectionStatus.MISSING:
                best.similarity = max(best.similarity, similarity)
                if reason == "empty excerpt":
                    best.reason = reason
                    break
                continue

            moved = chunk.chunk_id != evidence.chunk_id
            if moved:
                status = CorrectionStatus.CORRECTED
                corrected = corrected or evidence.excerpt.strip()
                reason = f"{reason}; found in chunk {chunk.chunk_id}"
            best = EvidenceCorrection(
                evidence_index=index,
                status=status,
                corrected_excerpt=corrected,
                reason=reason,
                similarity=similarity,
                chunk_id=chunk.chunk_id,
            )
            break

        corrections.append(best)
    return corrections


def apply_corrections(
    card: CandidateCard,
    corrections: list[EvidenceCorrection],
    chunks: Optional[list[Chunk]] = None,
) -> CandidateCard:
    """Return a copy of the card with corrected excerpts and missing ones removed."""
    chunk_map = {c.chunk_id: c for c in chunks or []}
    by_index = {c.evidence_index: c for c in corrections}
    evidence: list[Evidence] = []

    for index, item in enumerate(card.evidence):
        correction = by_index.get(index)
        if correction is None or correction.status == CorrectionStatus.OK:
            evidence.append(item)
        elif correction.status == CorrectionStatus.CORRECTED:
            chunk_id = correction.chunk_id or item.chunk_id
            chunk = chunk_map.get(chunk_id)
            evidence.append(
                Evidence(
                    chunk_id=chunk_id,
                    excerpt=correction.corrected_excerpt or item.excerpt,
                    source_file=(chunk.source_file or None) if chunk else item.source_file,
                    loc=chunk.slide_or_page if chunk else item.loc,
                )
            )

    return card.with_changes(evidence=evidence)
