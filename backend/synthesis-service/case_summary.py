"""
Synthesis Service - Specialist Referral Case Summary

Plain-text summary with fixed section order. Output is byte-stable for identical
inputs, so it is safe to diff and archive.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional

from context_assembler import NONE_REPORTED, NOT_RECORDED, NOT_SPECIFIED, age_in_years
from models import (
    ConsultationRecord,
    DiagnosisRecord,
    EscalationRequest,
    PatientRecord,
    ProviderRecord,
    TreatmentRecord,
)

HEADER = "=== SPECIALIST REFERRAL CASE SUMMARY ==="

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def format_for_display(value: datetime) -> str:
    # strftime("%b") follows the process locale.
    return f"{value.day:02d} {_MONTHS[value.month - 1]} {value.year:04d} {value.hour:02d}:{value.minute:02d}"


def confidence_percent(confidence: Decimal) -> int:
    return int((Decimal(confidence) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _or(value: Optional[str], default: str) -> str:
    if value is None or not value.strip():
        return default
    return value


class CaseSummarySynthesizer:
    def synthesize(
        self,
        *,
        consultation: ConsultationRecord,
        patient: PatientRecord,
        provider: Optional[ProviderRecord],
        diagnoses: List[DiagnosisRecord],
        treatments_by_diagnosis: Dict[int, List[TreatmentRecord]],
        request: EscalationRequest,
        today: date,
    ) -> str:
        lines: List[str] = [HEADER, ""]

        lines.append("PATIENT INFORMATION:")
        lines.append(f"- Name: {patient.first_name} {patient.last_name}")
        lines.append(f"- Age: {age_in_years(patient.date_of_birth, today)} years")
        lines.append(f"- Gender: {_or(patient.gender, NOT_SPECIFIED)}")
        lines.append(f"- Blood Group: {_or(patient.blood_group, NOT_SPECIFIED)}")
        lines.append(f"- Allergies: {_or(patient.allergies, NONE_REPORTED)}")
        lines.append(f"- Clinic: {_or(patient.clinic_name, NOT_SPECIFIED)}")
        lines.append("")

        lines.append("CONSULTATION DETAILS:")
        lines.append(f"- Chief Complaint: {consultation.chief_complaint}")
        lines.append(f"- Vital Signs: {_or(consultation.vitals, NOT_RECORDED)}")
        lines.append(f"- Consultation Date: {format_for_display(consultation.opened_at)}")
        lines.append(f"- Provider: {provider.name if provider else NOT_SPECIFIED}")
        lines.append("")

        if consultation.notes and consultation.notes.strip():
            lines.append("CLINICAL NOTES:")
            lines.append(consultation.notes)
            lines.append("")

        if diagnoses:
            lines.append("DIFFERENTIAL DIAGNOSES:")
            for diagnosis in sorted(diagnoses, key=lambda d: d.confidence_score, reverse=True):
                lines.append(
                    f"- {diagnosis.condition_name} (Confidence: {confidence_percent(diagnosis.confidence_score)}%)"
                )
                lines.append(f"  Reasoning: {_or(diagnosis.reasoning, 'Not provided')}")
            lines.append("")

        treated = [d for d in diagnoses if treatments_by_diagnosis.get(d.diagnosis_id or -1)]
        if treated:
            lines.append("CURRENT TREATMENT PLAN:")
            for diagnosis in treated:
                lines.append(f"For {diagnosis.condition_name}:")
                for item in treatments_by_diagnosis[diagnosis.diagnosis_id or -1]:
                    lines.append(
                        f"  - {_or(item.type, 'Treatment')}: {_or(item.drug_name, 'Not specified')}, "
                        f"{_or(item.dosage, 'Dosage not specified')} for "
                        f"{_or(item.duration, 'Duration not specified')}"
                    )
            lines.append("")

        lines.append("REFERRAL INFORMATION:")
        lines.append(f"- Specialist Type: {request.specialist_type}")
        lines.append(f"- Urgency Level: {request.urgency_level.value}")
        if request.referral_notes and request.referral_notes.strip():
            lines.append(f"- Referral Notes: {request.referral_notes}")

        return "\n".join(lines) + "\n"
