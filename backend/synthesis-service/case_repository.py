"""
Synthesis Service - Clinical Record Persistence

Provides repository implementations for clinical records:
- SqliteClinicalRepository (offline/runtime default)
- InMemoryClinicalRepository (test fallback)

Records reference each other by owned id only. record_analysis() applies a
consultation status change and its diagnosis inserts as one unit.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional, Tuple

from errors import NotFoundError
from models import (
    ConsultationRecord,
    DiagnosisRecord,
    EscalationRecord,
    PatientRecord,
    ProviderRecord,
    TreatmentRecord,
)


class ClinicalRepository:
    backend = "abstract"

    def save_patient(self, record: PatientRecord) -> PatientRecord:
        raise NotImplementedError

    def get_patient(self, patient_id: int) -> PatientRecord:
        raise NotImplementedError

    def save_provider(self, record: ProviderRecord) -> ProviderRecord:
        raise NotImplementedError

    def get_provider(self, provider_id: int) -> ProviderRecord:
        raise NotImplementedError

    def save_consultation(self, record: ConsultationRecord) -> ConsultationRecord:
        raise NotImplementedError

    def get_consultation(self, consultation_id: int) -> ConsultationRecord:
        raise NotImplementedError

    def save_diagnosis(self, record: DiagnosisRecord) -> DiagnosisRecord:
        raise NotImplementedError

    def get_diagnosis(self, diagnosis_id: int) -> DiagnosisRecord:
        raise NotImplementedError

    def list_diagnoses(self, consultation_id: int) -> List[DiagnosisRecord]:
        raise NotImplementedError

    def save_treatments(self, records: List[TreatmentRecord]) -> List[TreatmentRecord]:
        raise NotImplementedError

    def list_treatments(self, diagnosis_id: int) -> List[TreatmentRecord]:
        raise NotImplementedError

    def record_analysis(
        self,
        consultation: ConsultationRecord,
        diagnoses: List[DiagnosisRecord],
    ) -> Tuple[ConsultationRecord, List[DiagnosisRecord]]:
        raise NotImplementedError

    def save_escalation(self, record: EscalationRecord) -> EscalationRecord:
        raise NotImplementedError

    def get_escalation(self, escalation_id: int) -> EscalationRecord:
        raise NotImplementedError

    def list_escalations(self, consultation_id: int) -> List[EscalationRecord]:
        raise NotImplementedError

    def count_patients(self) -> int:
        raise NotImplementedError


class InMemoryClinicalRepository(ClinicalRepository):
    backend = "memory"

    def __init__(self) -> None:
        self._patients: Dict[int, PatientRecord] = {}
        self._providers: Dict[int, ProviderRecord] = {}
        self._consultations: Dict[int, ConsultationRecord] = {}
        self._diagnoses: Dict[int, DiagnosisRecord] = {}
        self._treatments: Dict[int, TreatmentRecord] = {}
        self._escalations: Dict[int, EscalationRecord] = {}
        self._lock = Lock()

    @staticmethod
    def _next_id(store: Dict[int, object]) -> int:
        return max(store, default=0) + 1

    def save_patient(self, record: PatientRecord) -> PatientRecord:
        with self._lock:
            saved = record.model_copy(update={"patient_id": record.patient_id or self._next_id(self._patients)})
            self._patients[saved.patient_id] = saved
        return saved

    def get_patient(self, patient_id: int) -> PatientRecord:
        record = self._patients.get(patient_id)
        if record is None:
            raise NotFoundError("Patient", patient_id)
        return record

    def save_provider(self, record: ProviderRecord) -> ProviderRecord:
        with self._lock:
            saved = record.model_copy(update={"provider_id": record.provider_id or self._next_id(self._providers)})
            self._providers[saved.provider_id] = saved
        return saved

    def get_provider(self, provider_id: int) -> ProviderRecord:
        record = self._providers.get(provider_id)
        if record is None:
            raise NotFoundError("Provider", provider_id)
        return record

    def save_consultation(self, record: ConsultationRecord) -> ConsultationRecord:
        with self._lock:
            saved = record.model_copy(
                update={"consultation_id": record.consultation_id or self._next_id(self._consultations)}
            )
            self._consultations[saved.consultation_id] = saved
        return saved

    def get_consultation(self, consultation_id: int) -> ConsultationRecord:
        record = self._consultations.get(consultation_id)
        if record is None:
            raise NotFoundError("Consultation", consultation_id)
        return record

    def save_diagnosis(self, record: DiagnosisRecord) -> DiagnosisRecord:
        with self._lock:
            saved = record.model_copy(update={"diagnosis_id": record.diagnosis_id or self._next_id(self._diagnoses)})
            self._diagnoses[saved.diagnosis_id] = saved
        return saved

    def get_diagnosis(self, diagnosis_id: int) -> DiagnosisRecord:
        record = self._diagnoses.get(diagnosis_id)
        if record is None:
            raise NotFoundError("Diagnosis", diagnosis_id)
        return record

    def list_diagnoses(self, consultation_id: int) -> List[DiagnosisRecord]:
        rows = [d for d in self._diagnoses.values() if d.consultation_id == consultation_id]
        return sorted(rows, key=lambda d: d.diagnosis_id or 0)

    def save_treatments(self, records: List[TreatmentRecord]) -> List[TreatmentRecord]:
        saved: List[TreatmentRecord] = []
        with self._lock:
            next_id = self._next_id(self._treatments)
            for record in records:
                treatment_id = record.treatment_id or next_id
                next_id = max(next_id, treatment_id) + 1
                saved.append(record.model_copy(update={"treatment_id": treatment_id}))
            for record in saved:
                self._treatments[record.treatment_id] = record
        return saved

    def list_treatments(self, diagnosis_id: int) -> List[TreatmentRecord]:
        rows = [t for t in self._treatments.values() if t.diagnosis_id == diagnosis_id]
        return sorted(rows, key=lambda t: t.treatment_id or 0)

    def record_analysis(
        self,
        consultation: ConsultationRecord,
        diagnoses: List[DiagnosisRecord],
    ) -> Tuple[ConsultationRecord, List[DiagnosisRecord]]:
        with self._lock:
            if consultation.consultation_id not in self._consultations:
                raise NotFoundError("Consultation", consultation.consultation_id)
            # Build everything first so a failure leaves the store untouched.
            next_id = self._next_id(self._diagnoses)
            saved = []
            for offset, diagnosis in enumerate(diagnoses):
                saved.append(diagnosis.model_copy(update={"diagnosis_id": next_id + offset}))
            for diagnosis in saved:
                self._diagnoses[diagnosis.diagnosis_id] = diagnosis
            self._consultations[consultation.consultation_id] = consultation
        return consultation, saved

    def save_escalation(self, record: EscalationRecord) -> EscalationRecord:
        with self._lock:
            saved = record.model_copy(
                update={"escalation_id": record.escalation_id or self._next_id(self._escalations)}
            )
            self._escalations[saved.escalation_id] = saved
        return saved

    def get_escalation(self, escalation_id: int) -> EscalationRecord:
        record = self._escalations.get(escalation_id)
        if record is None:
            raise NotFoundError("Escalation", escalation_id)
        return record

    def list_escalations(self, consultation_id: int) -> List[EscalationRecord]:
        rows = [e for e in self._escalations.values() if e.consultation_id == consultation_id]
        return sorted(rows, key=lambda e: e.escalation_id or 0)

    def count_patients(self) -> int:
        return len(self._patients)


class SqliteClinicalRepository(ClinicalRepository):
    backend = "sqlite"

    # table -> (id column, owner column)
    _TABLES = {
        "patients": ("patient_id", None),
        "providers": ("provider_id", None),
        "consultations": ("consultation_id", "patient_id"),
        "diagnoses": ("diagnosis_id", "consultation_id"),
        "treatments": ("treatment_id", "diagnosis_id"),
        "escalations": ("escalation_id", "consultation_id"),
    }

    def __init__(self, db_path: str) -> None:
        if not db_path:
            raise RuntimeError("SQLite repository requires a non-empty db_path.")
        self.db_path = str(Path(db_path).expanduser().resolve())
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            for table, (id_column, owner_column) in self._TABLES.items():
                owner_sql = f"{owner_column} INTEGER NOT NULL," if owner_column else ""
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        {id_column} INTEGER PRIMARY KEY AUTOINCREMENT,
                        {owner_sql}
                        payload_json TEXT NOT NULL
                    )
                    """
                )
                if owner_column:
                    conn.execute(
                        f"CREATE INDEX IF NOT EXISTS idx_{table}_{owner_column} ON {table}({owner_column})"
                    )
            conn.commit()

    # ----- Generic row helpers -----

    def _upsert(self, conn: sqlite3.Connection, table: str, record, owner_value: Optional[int]) -> int:
        id_column, owner_column = self._TABLES[table]
        record_id = getattr(record, id_column)
        payload = record.model_dump_json(exclude={id_column})
        columns = [id_column] + ([owner_column] if owner_column else []) + ["payload_json"]
        values = [record_id] + ([owner_value] if owner_column else []) + [payload]
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns[1:])
        cur = conn.execute(
            f"""
            INSERT INTO {table}({", ".join(columns)})
            VALUES ({placeholders})
            ON CONFLICT({id_column}) DO UPDATE SET {updates}
            """,
            tuple(values),
        )
        return int(record_id if record_id is not None else cur.lastrowid)

    def _get(self, table: str, model_cls, record_id: int, label: str):
        id_column, _ = self._TABLES[table]
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT {id_column}, payload_json FROM {table} WHERE {id_column} = ?",
                (record_id,),
            ).fetchone()
        if row is None:
            raise NotFoundError(label, record_id)
        return model_cls.model_validate_json(row["payload_json"]).model_copy(
            update={id_column: int(row[id_column])}
        )

    def _list_by_owner(self, table: str, model_cls, owner_value: int) -> list:
        id_column, owner_column = self._TABLES[table]
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"SELECT {id_column}, payload_json FROM {table} WHERE {owner_column} = ? ORDER BY {id_column}",
                (owner_value,),
            ).fetchall()
        return [
            model_cls.model_validate_json(row["payload_json"]).model_copy(update={id_column: int(row[id_column])})
            for row in rows
        ]

    def _save(self, table: str, record, owner_value: Optional[int] = None):
        id_column, _ = self._TABLES[table]
        with self._lock, self._connect() as conn:
            record_id = self._upsert(conn, table, record, owner_value)
            conn.commit()
        return record.model_copy(update={id_column: record_id})

    # ----- Public API -----

    def save_patient(self, record: PatientRecord) -> PatientRecord:
        return self._save("patients", record)

    def get_patient(self, patient_id: int) -> PatientRecord:
        return self._get("patients", PatientRecord, patient_id, "Patient")

    def save_provider(self, record: ProviderRecord) -> ProviderRecord:
        return self._save("providers", record)

    def get_provider(self, provider_id: int) -> ProviderRecord:
        return self._get("providers", ProviderRecord, provider_id, "Provider")

    def save_consultation(self, record: ConsultationRecord) -> ConsultationRecord:
        return self._save("consultations", record, record.patient_id)

    def get_consultation(self, consultation_id: int) -> ConsultationRecord:
        return self._get("consultations", ConsultationRecord, consultation_id, "Consultation")

    def save_diagnosis(self, record: DiagnosisRecord) -> DiagnosisRecord:
        return self._save("diagnoses", record, record.consultation_id)

    def get_diagnosis(self, diagnosis_id: int) -> DiagnosisRecord:
        return self._get("diagnoses", DiagnosisRecord, diagnosis_id, "Diagnosis")

    def list_diagnoses(self, consultation_id: int) -> List[DiagnosisRecord]:
        return self._list_by_owner("diagnoses", DiagnosisRecord, consultation_id)

    def save_treatments(self, records: List[TreatmentRecord]) -> List[TreatmentRecord]:
        saved: List[TreatmentRecord] = []
        with self._lock, self._connect() as conn:
            for record in records:
                treatment_id = self._upsert(conn, "treatments", record, record.diagnosis_id)
                saved.append(record.model_copy(update={"treatment_id": treatment_id}))
            conn.commit()
        return saved

    def list_treatments(self, diagnosis_id: int) -> List[TreatmentRecord]:
        return self._list_by_owner("treatments", TreatmentRecord, diagnosis_id)

    def record_analysis(
        self,
        consultation: ConsultationRecord,
        diagnoses: List[DiagnosisRecord],
    ) -> Tuple[ConsultationRecord, List[DiagnosisRecord]]:
        saved: List[DiagnosisRecord] = []
        with self._lock:
            conn = self._connect()
            try:
                # sqlite3's connection context manager commits on success and rolls back on error.
                with conn:
                    exists = conn.execute(
                        "SELECT 1 FROM consultations WHERE consultation_id = ?",
                        (consultation.consultation_id,),
                    ).fetchone()
                    if exists is None:
                        raise NotFoundError("Consultation", consultation.consultation_id)
                    for diagnosis in diagnoses:
                        diagnosis_id = self._upsert(conn, "diagnoses", diagnosis, diagnosis.consultation_id)
                        saved.append(diagnosis.model_copy(update={"diagnosis_id": diagnosis_id}))
                    self._upsert(conn, "consultations", consultation, consultation.patient_id)
            finally:
                conn.close()
        return consultation, saved

    def save_escalation(self, record: EscalationRecord) -> EscalationRecord:
        return self._save("escalations", record, record.consultation_id)

    def get_escalation(self, escalation_id: int) -> EscalationRecord:
        return self._get("escalations", EscalationRecord, escalation_id, "Escalation")

    def list_escalations(self, consultation_id: int) -> List[EscalationRecord]:
        return self._list_by_owner("escalations", EscalationRecord, consultation_id)

    def count_patients(self) -> int:
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM patients").fetchone()
        return int(row["n"])


def build_repository(backend: str, sqlite_db_path: str) -> ClinicalRepository:
    if backend == "memory":
        return InMemoryClinicalRepository()
    if backend == "sqlite":
        return SqliteClinicalRepository(sqlite_db_path)
    raise RuntimeError(f"Unsupported case store backend: {backend}")
