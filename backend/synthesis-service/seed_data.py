"""
Synthesis Service - Clinic Seed Loader

Patients, providers and consultations are registered elsewhere; locally they come
from mock_db/clinic_seed.json.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from case_repository import ClinicalRepository
from errors import ValidationError
from models import ClinicSeed

logger = logging.getLogger(__name__)


def normalize_vitals_json(raw: Optional[Any]) -> Optional[str]:
    """
    Vitals are stored as a compact JSON string. Accepts an object, a JSON string,
    or a JSON string that itself encodes a JSON string.
    """
    if raw is None:
        return None
    if isinstance(raw, (dict, list)):
        return json.dumps(raw, separators=(",", ":"))
    text = str(raw).strip()
    if not text:
        return None
    try:
        value = json.loads(text)
        if isinstance(value, str):
            value = json.loads(value)
    except json.JSONDecodeError as exc:
        raise ValidationError("Vitals must be valid JSON.") from exc
    if not isinstance(value, (dict, list)):
        raise ValidationError("Vitals must be valid JSON.")
    return json.dumps(value, separators=(",", ":"))


def load_clinic_seed(path: Path) -> ClinicSeed:
    if not path.exists():
        raise FileNotFoundError(f"Clinic seed file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        payload: Dict[str, Any] = json.load(f)
    for consultation in payload.get("consultations", []):
        consultation["vitals"] = normalize_vitals_json(consultation.get("vitals"))
    return ClinicSeed.model_validate(payload)


def seed_repository(repository: ClinicalRepository, path: Path) -> Dict[str, int]:
    seed = load_clinic_seed(path)
    for patient in seed.patients:
        repository.save_patient(patient)
    for provider in seed.providers:
        repository.save_provider(provider)
    for consultation in seed.consultations:
        repository.save_consultation(consultation)
    for diagnosis in seed.diagnoses:
        repository.save_diagnosis(diagnosis)
    if seed.treatments:
        repository.save_treatments(seed.treatments)
    counts = seed.counts()
    logger.info("Seeded clinical repository from %s: %s", path, counts)
    return counts
