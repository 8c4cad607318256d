"""Evidence verification and excerpt reconciliation."""

from deckforge.verification.evidence_verifier import (
    BatchVerificationResult,
    EvidenceVerifier,
    HallucinationRisk,
    VerificationMode,
    VerificationResult,
    ungrounded_numbers,
)
from deckforge.verification.excerpt_matcher import (
    CorrectionStatus,
    EvidenceCorrection,
    apply_corrections,
    match_excerpt,
    reconcile_card_evidence,
)

__all__ = [
    "BatchVerificationResult",
    "EvidenceVerifier",
    "HallucinationRisk",
    "VerificationMode",
    "VerificationResult",
    "ungrounded_numbers",
    "CorrectionStatus",
    "EvidenceCorrection",
    "apply_corrections",
    "match_excerpt",
    "reconcile_card_evidence",
]
