"""
Synthesis Service - Confidence Gate

Decides which differentials are promoted to persisted diagnoses.
Every differential is still returned to the caller.
"""

from __future__ import annotations

from decimal import Decimal
from typing import List

from models import MODEL_SOURCE_TAG, DiagnosisRecord, DifferentialDiagnosis

CONFIDENCE_THRESHOLD = Decimal("0.5")


class ConfidenceGate:
    def __init__(self, threshold: Decimal = CONFIDENCE_THRESHOLD, source_tag: str = MODEL_SOURCE_TAG) -> None:
        self.threshold = Decimal(threshold)
        self.source_tag = source_tag

    def qualifies(self, differential: DifferentialDiagnosis) -> bool:
        # Strictly greater: a differential at exactly the threshold is not persisted.
        return differential.confidence > self.threshold

    def select(self, differentials: List[DifferentialDiagnosis]) -> List[DifferentialDiagnosis]:
        return [d for d in differentials if self.qualifies(d)]

    def to_diagnosis_records(
        self,
        consultation_id: int,
        differentials: List[DifferentialDiagnosis],
    ) -> List[DiagnosisRecord]:
        return [
            DiagnosisRecord(
                consultation_id=consultation_id,
                condition_name=d.condition,
                confidence_score=d.confidence,
                reasoning=d.reasoning,
                source=self.source_tag,
            )
            for d in self.select(differentials)
        ]
