from datetime import date
from decimal import Decimal

import pytest

from case_repository import InMemoryClinicalRepository, SqliteClinicalRepository
from config import MOCK_DB_DIR
from errors import NotFoundError, ValidationError
from models import (
    ConsultationRecord,
    ConsultationStatus,
    DiagnosisRecord,
    EscalationRecord,
    PatientRecord,
    TreatmentRecord,
)
from seed_data import normalize_vitals_json, seed_repository


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "memory":
        return InMemoryClinicalRepository()
    return SqliteClinicalRepository(str(tmp_path / "clinical.sqlite3"))


def _seed_consultation(repository):
    patient = repository.save_patient(
        PatientRecord(first_name="Amina", last_name="Okafor", date_of_birth=date(1988, 3, 14))
    )
    return repository.save_consultation(
        ConsultationRecord(patient_id=patient.patient_id, provider_id=1, chief_complaint="Fever")
    )


def test_save_assigns_ids_and_round_trips(repository):
    consultation = _seed_consultation(repository)
    assert consultation.consultation_id is not None

    loaded = repository.get_consultation(consultation.consultation_id)
    assert loaded.chief_complaint == "Fever"
    assert loaded.status == ConsultationStatus.OPEN


@pytest.mark.parametrize("getter", ["get_patient", "get_provider", "get_consultation", "get_diagnosis", "get_escalation"])
def test_missing_records_raise_not_found(repository, getter):
    with pytest.raises(NotFoundError):
        getattr(repository, getter)(999)


def test_record_analysis_updates_status_and_inserts_diagnoses(repository):
    consultation = _seed_consultation(repository)
    updated = consultation.model_copy(update={"status": ConsultationStatus.IN_PROGRESS})
    diagnoses = [
        DiagnosisRecord(consultation_id=consultation.consultation_id, condition_name="Malaria",
                        confidence_score=Decimal("0.85")),
        DiagnosisRecord(consultation_id=consultation.consultation_id, condition_name="Dengue",
                        confidence_score=Decimal("0.6")),
    ]

    _, saved = repository.record_analysis(updated, diagnoses)

    assert [d.diagnosis_id is not None for d in saved] == [True, True]
    assert repository.get_consultation(consultation.consultation_id).status == ConsultationStatus.IN_PROGRESS
    listed = repository.list_diagnoses(consultation.consultation_id)
    assert [d.condition_name for d in listed] == ["Malaria", "Dengue"]
    assert listed[0].confidence_score == Decimal("0.85")
    assert repository.get_diagnosis(saved[1].diagnosis_id).condition_name == "Dengue"


def test_record_analysis_for_unknown_consultation_writes_nothing(repository):
    ghost = ConsultationRecord(consultation_id=42, patient_id=1, provider_id=1, chief_complaint="x")
    diagnosis = DiagnosisRecord(consultation_id=42, condition_name="Malaria", confidence_score=Decimal("0.9"))

    with pytest.raises(NotFoundError):
        repository.record_analysis(ghost, [diagnosis])
    assert repository.list_diagnoses(42) == []


def test_sqlite_record_analysis_rolls_back_on_failure(tmp_path, monkeypatch):
    repository = SqliteClinicalRepository(str(tmp_path / "clinical.sqlite3"))
    consultation = _seed_consultation(repository)
    original_upsert = repository._upsert

    def failing_upsert(conn, table, record, owner_value):
        if table == "consultations":
            raise RuntimeError("disk full")
        return original_upsert(conn, table, record, owner_value)

    monkeypatch.setattr(repository, "_upsert", failing_upsert)
    updated = consultation.model_copy(update={"status": ConsultationStatus.IN_PROGRESS})
    diagnosis = DiagnosisRecord(consultation_id=consultation.consultation_id, condition_name="Malaria",
                                confidence_score=Decimal("0.9"))

    with pytest.raises(RuntimeError):
        repository.record_analysis(updated, [diagnosis])

    monkeypatch.undo()
    assert repository.list_diagnoses(consultation.consultation_id) == []
    assert repository.get_consultation(consultation.consultation_id).status == ConsultationStatus.OPEN


def test_treatments_are_listed_by_diagnosis(repository):
    saved = repository.save_treatments(
        [
            TreatmentRecord(diagnosis_id=1, drug_name="Artemether-lumefantrine"),
            TreatmentRecord(diagnosis_id=1, type="Supportive", instructions="Fluids"),
            TreatmentRecord(diagnosis_id=2, drug_name="Amoxicillin"),
        ]
    )
    assert len({t.treatment_id for t in saved}) == 3
    assert [t.drug_name for t in repository.list_treatments(1)] == ["Artemether-lumefantrine", None]
    assert repository.list_treatments(3) == []


def test_escalations_round_trip(repository):
    saved = repository.save_escalation(
        EscalationRecord(referral_id="ref-1", consultation_id=7, specialist_type="Cardiology", case_summary="text")
    )
    assert repository.get_escalation(saved.escalation_id).referral_id == "ref-1"
    assert [e.escalation_id for e in repository.list_escalations(7)] == [saved.escalation_id]


def test_seed_repository_loads_mock_clinic(repository):
    counts = seed_repository(repository, MOCK_DB_DIR / "clinic_seed.json")

    assert counts["patients"] == repository.count_patients() == 3
    consultation = repository.get_consultation(1)
    assert consultation.vitals == '{"temperature":39.2,"heart_rate":112,"blood_pressure":"118/76","respiratory_rate":22}'
    assert repository.get_consultation(2).vitals is None
    assert [t.drug_name for t in repository.list_treatments(1)] == ["Doxycycline"]


def test_normalize_vitals_json_accepts_nested_string():
    assert normalize_vitals_json('"{\\"pulse\\": 80}"') == '{"pulse":80}'
    assert normalize_vitals_json({"pulse": 80}) == '{"pulse":80}'
    assert normalize_vitals_json("  ") is None
    with pytest.raises(ValidationError, match="Vitals must be valid JSON."):
        normalize_vitals_json("pulse 80")
    with pytest.raises(ValidationError):
        normalize_vitals_json("42")
