"""
Synthesis Service - Clinical Context Assembly

Builds the request-scoped ClinicalContext that the diagnostic prompt is rendered from.
"""

from __future__ import annotations

from datetime import date
from typing import Callable, List, Optional

from models import ClinicalContext, ConsultationRecord, DiagnosticRequest, PatientRecord

DEFAULT_EQUIPMENT = "Standard primary care equipment"
DEFAULT_FORMULARY = "WHO Essential Medicines List"
NOT_SPECIFIED = "Not specified"
NONE_REPORTED = "None reported"
NOT_RECORDED = "Not recorded"
NO_LAB_RESULTS = "No lab results available"


def age_in_years(date_of_birth: date, today: date) -> int:
    years = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        years -= 1
    return years


def _text_or(value: Optional[str], default: str) -> str:
    if value is None or not value.strip():
        return default
    return value


def _join_or(values: Optional[List[str]], default: str) -> str:
    cleaned = [v for v in (values or []) if v and v.strip()]
    if not cleaned:
        return default
    return ", ".join(cleaned)


class ContextAssembler:
    def __init__(self, clock: Callable[[], date] = date.today) -> None:
        self._clock = clock

    def today(self) -> date:
        return self._clock()

    def patient_summary(self, patient: PatientRecord) -> str:
        age = age_in_years(patient.date_of_birth, self.today())
        return (
            f"Age: {age} years, "
            f"Gender: {_text_or(patient.gender, NOT_SPECIFIED)}, "
            f"Blood Group: {_text_or(patient.blood_group, NOT_SPECIFIED)}, "
            f"Allergies: {_text_or(patient.allergies, NONE_REPORTED)}"
        )

    def build(
        self,
        consultation: ConsultationRecord,
        patient: PatientRecord,
        request: DiagnosticRequest,
    ) -> ClinicalContext:
        lab_results = _text_or(consultation.notes, NO_LAB_RESULTS)
        if request.additional_notes and request.additional_notes.strip():
            lab_results += f"\nAdditional notes: {request.additional_notes}"

        return ClinicalContext(
            patient_summary=self.patient_summary(patient),
            chief_complaint=consultation.chief_complaint,
            vitals=_text_or(consultation.vitals, NOT_RECORDED),
            available_equipment=_join_or(request.available_equipment, DEFAULT_EQUIPMENT),
            local_formulary=_join_or(request.local_formulary, DEFAULT_FORMULARY),
            lab_results=lab_results,
        )
