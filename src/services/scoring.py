"""Rule-based confidence scoring for parsed identity documents.

Score is 0-100. A document with a critical field missing (identity number or
name) can never be auto-approved; it is auto-rejected only when the score also
falls below the reject threshold. Everything else goes to manual review.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, Mapping

from src.models.documents import DocumentType, ScoringDecision, ScoringResult

LOG = logging.getLogger(__name__)

DEFAULT_AUTO_APPROVE = 85
DEFAULT_AUTO_REJECT = 35

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9\s]")


def validate_nik(nik: str) -> str | None:
    """Return a failure reason, or None when the NIK is valid."""
    if not nik:
        return "NIK is missing"
    if len(nik) != 16:
        return "NIK must be 16 digits"
    if not nik.isdigit():
        return "NIK must contain only digits"
    return None


def validate_npwp(npwp: str) -> str | None:
    if not npwp:
        return "NPWP is missing"
    cleaned = npwp.replace(".", "").replace("-", "")
    if len(cleaned) != 15:
        return "NPWP must be 15 digits"
    if not cleaned.isdigit():
        return "NPWP must contain only digits"
    return None


def ocr_confidence(text: str) -> int:
    """Heuristic readability of the OCR text, 20-100."""
    if not text or len(text) < 50:
        return 20
    clean_ratio = len(_NON_ALNUM.sub("", text)) / len(text)
    structured_lines = [line for line in text.split("\n") if len(line.strip()) > 5]
    confidence = 50 + clean_ratio * 30
    if len(structured_lines) >= 3:
        confidence += 15
    if len(text) > 200:
        confidence += 5
    return min(100, round(confidence))


class RuleBasedScorer:
    def __init__(
        self,
        *,
        auto_approve_threshold: int = DEFAULT_AUTO_APPROVE,
        auto_reject_threshold: int = DEFAULT_AUTO_REJECT,
    ) -> None:
        self.auto_approve_threshold = auto_approve_threshold
        self.auto_reject_threshold = auto_reject_threshold
        self._by_type: Dict[DocumentType, Callable[[Mapping[str, Any], str], ScoringResult]] = {
            DocumentType.KTP: self._score_ktp,
            DocumentType.NPWP: self._score_npwp,
        }

    def __call__(
        self, document_type: DocumentType, fields: Mapping[str, Any], text: str
    ) -> ScoringResult:
        result = self._by_type[document_type](fields, text or "")
        LOG.info(
            "document_scored",
            extra={
                "document_type": document_type.value,
                "score": result.score,
                "decision": result.decision.value,
                "reasons_count": len(result.reasons),
            },
        )
        return result

    def _decide(self, score: int, critical_missing: bool, reasons: list[str]) -> ScoringDecision:
        if critical_missing and score < self.auto_reject_threshold:
            reasons.append(f"Score {score} below rejection threshold {self.auto_reject_threshold}")
            return ScoringDecision.AUTO_REJECT
        if not critical_missing and score >= self.auto_approve_threshold:
            reasons.append(f"Score {score} meets auto-approval threshold {self.auto_approve_threshold}")
            return ScoringDecision.AUTO_APPROVE
        reasons.append(f"Score {score} requires manual review")
        return ScoringDecision.NEEDS_REVIEW

    def _score_ktp(self, fields: Mapping[str, Any], text: str) -> ScoringResult:
        reasons: list[str] = []
        score = 0
        critical_missing = False

        nik_problem = validate_nik(str(fields.get("nik") or ""))
        if nik_problem is None:
            score += 30
            reasons.append("NIK is valid (16 digits)")
        else:
            reasons.append(nik_problem)
            critical_missing = True

        name = str(fields.get("name") or "")
        if len(name) >= 3:
            score += 20
            reasons.append("Name is present")
        else:
            reasons.append("Name is missing or too short")
            critical_missing = True

        if fields.get("birth_date"):
            score += 15
            reasons.append("Birth date is present")
        else:
            reasons.append("Birth date is missing")

        if len(str(fields.get("address") or "")) >= 10:
            score += 15
            reasons.append("Address is present")
        else:
            reasons.append("Address is missing or incomplete")

        confidence = ocr_confidence(text)
        score += round(confidence * 0.2)
        reasons.append(f"OCR confidence: {confidence}%")

        score = max(0, min(100, score))
        decision = self._decide(score, critical_missing, reasons)
        return ScoringResult(score=score, decision=decision, reasons=reasons)

    def _score_npwp(self, fields: Mapping[str, Any], text: str) -> ScoringResult:
        reasons: list[str] = []
        score = 0
        critical_missing = False

        npwp_problem = validate_npwp(str(fields.get("npwp_number") or ""))
        if npwp_problem is None:
            score += 40
            reasons.append("NPWP number is valid (15 digits)")
        else:
            reasons.append(npwp_problem)
            critical_missing = True

        if len(str(fields.get("name") or "")) >= 3:
            score += 30
            reasons.append("Name is present")
        else:
            reasons.append("Name is missing or too short")
            critical_missing = True

        confidence = ocr_confidence(text)
        score += round(confidence * 0.3)
        reasons.append(f"OCR confidence: {confidence}%")

        score = max(0, min(100, score))
        decision = self._decide(score, critical_missing, reasons)
        return ScoringResult(score=score, decision=decision, reasons=reasons)


__all__ = ["RuleBasedScorer", "ocr_confidence", "validate_nik", "validate_npwp"]
