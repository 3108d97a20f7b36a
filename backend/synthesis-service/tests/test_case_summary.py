from datetime import date, datetime, timezone
from decimal import Decimal

from case_summary import CaseSummarySynthesizer, confidence_percent, format_for_display
from models import (
    ConsultationRecord,
    DiagnosisRecord,
    EscalationRequest,
    PatientRecord,
    ProviderRecord,
    TreatmentRecord,
    UrgencyLevel,
)


TODAY = date(2026, 10, 19)


def _inputs(notes="Crackles over right lower zone."):
    patient = PatientRecord(
        patient_id=3,
        first_name="Grace",
        last_name="Achieng",
        date_of_birth=date(1954, 7, 21),
        gender="Female",
        blood_group="A-",
        allergies=None,
        clinic_name="Siaya District Clinic",
    )
    consultation = ConsultationRecord(
        consultation_id=3,
        patient_id=3,
        provider_id=2,
        chief_complaint="Productive cough",
        vitals=None,
        notes=notes,
        opened_at=datetime(2026, 10, 14, 11, 45, tzinfo=timezone.utc),
    )
    provider = ProviderRecord(provider_id=2, name="Nurse Mary Wanjiru")
    return patient, consultation, provider


def test_full_summary_layout():
    patient, consultation, provider = _inputs()
    diagnoses = [
        DiagnosisRecord(diagnosis_id=1, consultation_id=3, condition_name="Bronchitis",
                        confidence_score=Decimal("0.55"), reasoning="Cough"),
        DiagnosisRecord(diagnosis_id=2, consultation_id=3, condition_name="Pneumonia",
                        confidence_score=Decimal("0.725"), reasoning="Crackles and fever"),
    ]
    treatments = {
        2: [
            TreatmentRecord(treatment_id=1, diagnosis_id=2, drug_name="Doxycycline",
                            dosage="100 mg twice daily", duration="5 days"),
            TreatmentRecord(treatment_id=2, diagnosis_id=2, type="Supportive"),
        ]
    }
    request = EscalationRequest(
        consultation_id=3,
        specialist_type="Pulmonology",
        urgency_level=UrgencyLevel.URGENT,
        referral_notes="SpO2 91% on room air",
    )

    summary = CaseSummarySynthesizer().synthesize(
        consultation=consultation,
        patient=patient,
        provider=provider,
        diagnoses=diagnoses,
        treatments_by_diagnosis=treatments,
        request=request,
        today=TODAY,
    )

    assert summary == (
        "=== SPECIALIST REFERRAL CASE SUMMARY ===\n"
        "\n"
        "PATIENT INFORMATION:\n"
        "- Name: Grace Achieng\n"
        "- Age: 72 years\n"
        "- Gender: Female\n"
        "- Blood Group: A-\n"
        "- Allergies: None reported\n"
        "- Clinic: Siaya District Clinic\n"
        "\n"
        "CONSULTATION DETAILS:\n"
        "- Chief Complaint: Productive cough\n"
        "- Vital Signs: Not recorded\n"
        "- Consultation Date: 14 Oct 2026 11:45\n"
        "- Provider: Nurse Mary Wanjiru\n"
        "\n"
        "CLINICAL NOTES:\n"
        "Crackles over right lower zone.\n"
        "\n"
        "DIFFERENTIAL DIAGNOSES:\n"
        "- Pneumonia (Confidence: 73%)\n"
        "  Reasoning: Crackles and fever\n"
        "- Bronchitis (Confidence: 55%)\n"
        "  Reasoning: Cough\n"
        "\n"
        "CURRENT TREATMENT PLAN:\n"
        "For Pneumonia:\n"
        "  - Medication: Doxycycline, 100 mg twice daily for 5 days\n"
        "  - Supportive: Not specified, Dosage not specified for Duration not specified\n"
        "\n"
        "REFERRAL INFORMATION:\n"
        "- Specialist Type: Pulmonology\n"
        "- Urgency Level: URGENT\n"
        "- Referral Notes: SpO2 91% on room air\n"
    )


def test_summary_omits_notes_and_treatment_sections():
    patient, consultation, provider = _inputs(notes="")
    diagnoses = [
        DiagnosisRecord(diagnosis_id=5, consultation_id=3, condition_name="Pneumonia",
                        confidence_score=Decimal("0.8"), reasoning="Crackles"),
    ]
    request = EscalationRequest(consultation_id=3, specialist_type="Internal Medicine")

    summary = CaseSummarySynthesizer().synthesize(
        consultation=consultation,
        patient=patient,
        provider=provider,
        diagnoses=diagnoses,
        treatments_by_diagnosis={},
        request=request,
        today=TODAY,
    )

    assert "CLINICAL NOTES:" not in summary
    assert "CURRENT TREATMENT PLAN:" not in summary
    assert "Referral Notes" not in summary
    assert "- Urgency Level: ROUTINE\n" in summary
    sections = [line for line in summary.splitlines() if line.endswith(":") and line.isupper()]
    assert sections == [
        "PATIENT INFORMATION:",
        "CONSULTATION DETAILS:",
        "DIFFERENTIAL DIAGNOSES:",
        "REFERRAL INFORMATION:",
    ]


def test_summary_is_byte_stable():
    patient, consultation, provider = _inputs()
    request = EscalationRequest(consultation_id=3, specialist_type="Pulmonology")
    kwargs = dict(
        consultation=consultation,
        patient=patient,
        provider=provider,
        diagnoses=[],
        treatments_by_diagnosis={},
        request=request,
        today=TODAY,
    )
    synthesizer = CaseSummarySynthesizer()
    assert synthesizer.synthesize(**kwargs).encode("utf-8") == synthesizer.synthesize(**kwargs).encode("utf-8")


def test_confidence_percent_rounds_half_up():
    assert confidence_percent(Decimal("0.725")) == 73
    assert confidence_percent(Decimal("0.724")) == 72
    assert confidence_percent(Decimal("0.005")) == 1


def test_display_date_format():
    assert format_for_display(datetime(2026, 1, 5, 7, 3)) == "05 Jan 2026 07:03"
