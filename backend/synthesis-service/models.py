"""
Synthesis Service - Data Models

Pydantic contracts for:
- Persisted clinical records (patients, consultations, diagnoses, treatments, escalations)
- Pipeline values (clinical context, differentials, citations, treatment items)
- API request/response payloads
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

MODEL_SOURCE_TAG = "AI_GENERATED"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================


class ConsultationStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"


class UrgencyLevel(str, Enum):
    ROUTINE = "ROUTINE"
    URGENT = "URGENT"
    EMERGENCY = "EMERGENCY"


class EscalationStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    COMPLETED = "COMPLETED"


# =============================================================================
# PERSISTED RECORDS
# =============================================================================


class PatientRecord(BaseModel):
    patient_id: Optional[int] = None
    first_name: str
    last_name: str
    date_of_birth: date
    gender: Optional[str] = None
    blood_group: Optional[str] = None
    allergies: Optional[str] = None
    clinic_name: Optional[str] = None
    region: Optional[str] = None


class ProviderRecord(BaseModel):
    provider_id: Optional[int] = None
    name: str
    role: str = "clinician"
    clinic_name: Optional[str] = None


class ConsultationRecord(BaseModel):
    consultation_id: Optional[int] = None
    patient_id: int
    provider_id: int
    status: ConsultationStatus = ConsultationStatus.OPEN
    chief_complaint: str
    vitals: Optional[str] = None
    notes: Optional[str] = None
    opened_at: datetime = Field(default_factory=utc_now)
    closed_at: Optional[datetime] = None


class DiagnosisRecord(BaseModel):
    diagnosis_id: Optional[int] = None
    consultation_id: int
    condition_name: str
    confidence_score: Decimal = Field(ge=0, le=1)
    reasoning: str = ""
    source: str = MODEL_SOURCE_TAG
    created_at: datetime = Field(default_factory=utc_now)


class TreatmentItem(BaseModel):
    type: str = "Medication"
    drug_name: Optional[str] = None
    dosage: Optional[str] = None
    duration: Optional[str] = None
    instructions: Optional[str] = None


class TreatmentRecord(TreatmentItem):
    treatment_id: Optional[int] = None
    diagnosis_id: int
    created_at: datetime = Field(default_factory=utc_now)


class EscalationRecord(BaseModel):
    escalation_id: Optional[int] = None
    referral_id: str
    consultation_id: int
    specialist_type: str
    urgency_level: UrgencyLevel = UrgencyLevel.ROUTINE
    status: EscalationStatus = EscalationStatus.SUBMITTED
    case_summary: str
    referral_notes: Optional[str] = None
    submitted_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# PIPELINE VALUES
# =============================================================================


class ClinicalContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    patient_summary: str
    chief_complaint: str
    vitals: str
    available_equipment: str
    local_formulary: str
    lab_results: str


class DifferentialDiagnosis(BaseModel):
    condition: str = Field(min_length=1)
    confidence: Decimal = Field(ge=0, le=1)
    reasoning: str = ""
    recommended_tests: List[str] = Field(default_factory=list)
    red_flags: List[str] = Field(default_factory=list)
    source: Optional[str] = None
    diagnosis_id: Optional[int] = None


class Citation(BaseModel):
    text: str
    source: str
    relevance_score: float = 0.0


class TreatmentExtraction(BaseModel):
    treatments: List[TreatmentRecord] = Field(default_factory=list)
    follow_up_instructions: str
    patient_education: str


class ImageFindings(BaseModel):
    description: str
    findings: List[str] = Field(default_factory=list)


class TreatmentPlan(BaseModel):
    diagnosis_id: int
    condition_name: str
    treatments: List[TreatmentRecord] = Field(default_factory=list)
    follow_up_instructions: str
    patient_education: str
    generated_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# API PAYLOADS
# =============================================================================


class DiagnosticRequest(BaseModel):
    consultation_id: int
    available_equipment: Optional[List[str]] = None
    local_formulary: Optional[List[str]] = None
    additional_notes: Optional[str] = None
    use_guidelines: bool = True


class DiagnosticResponse(BaseModel):
    consultation_id: int
    differentials: List[DifferentialDiagnosis] = Field(default_factory=list)
    immediate_actions: List[str] = Field(default_factory=list)
    safety_notes: str = ""
    guideline_references: List[str] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utc_now)


class TreatmentRequest(BaseModel):
    diagnosis_id: int
    patient_weight_kg: Optional[float] = Field(default=None, gt=0)
    patient_age_years: Optional[int] = Field(default=None, ge=0)
    renal_function_normal: Optional[bool] = None
    available_medications: Optional[List[str]] = None


class EscalationRequest(BaseModel):
    consultation_id: int
    urgency_level: UrgencyLevel = UrgencyLevel.ROUTINE
    specialist_type: str = Field(min_length=1)
    referral_notes: Optional[str] = None


class EscalationResponse(BaseModel):
    escalation_id: int
    referral_id: str
    consultation_id: int
    status: EscalationStatus
    case_summary: str
    submitted_at: datetime
    urgency_level: UrgencyLevel
    specialist_type: str

    @classmethod
    def from_record(cls, record: EscalationRecord) -> "EscalationResponse":
        return cls(
            escalation_id=record.escalation_id or 0,
            referral_id=record.referral_id,
            consultation_id=record.consultation_id,
            status=record.status,
            case_summary=record.case_summary,
            submitted_at=record.submitted_at,
            urgency_level=record.urgency_level,
            specialist_type=record.specialist_type,
        )


class ImageAnalysisResponse(BaseModel):
    description: str
    findings: List[str] = Field(default_factory=list)
    analyzed_at: datetime = Field(default_factory=utc_now)


class ErrorResponse(BaseModel):
    code: str
    message: str
    http_status: int
    timestamp: datetime = Field(default_factory=utc_now)


class HealthResponse(BaseModel):
    status: str
    service: str
    gateway_mode: str
    retrieval_mode: str
    case_store_backend: str
    timestamp: datetime


class ClinicSeed(BaseModel):
    patients: List[PatientRecord] = Field(default_factory=list)
    providers: List[ProviderRecord] = Field(default_factory=list)
    consultations: List[ConsultationRecord] = Field(default_factory=list)
    diagnoses: List[DiagnosisRecord] = Field(default_factory=list)
    treatments: List[TreatmentRecord] = Field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            "patients": len(self.patients),
            "providers": len(self.providers),
            "consultations": len(self.consultations),
            "diagnoses": len(self.diagnoses),
            "treatments": len(self.treatments),
        }
