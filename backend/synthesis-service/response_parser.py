"""
Synthesis Service - Model Response Extraction

Turns loosely formatted model text into typed values.
Diagnostic and treatment extraction raise ParseError; image extraction never raises.
"""

from __future__ import annotations

import json
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError

from errors import ParseError
from models import DifferentialDiagnosis, ImageFindings, TreatmentExtraction, TreatmentRecord

logger = logging.getLogger(__name__)

FENCE = "```"
DEFAULT_FOLLOW_UP = "Follow up in 7-14 days or sooner if symptoms worsen"
DEFAULT_PATIENT_EDUCATION = "Take medications as prescribed and monitor for side effects"
DEFAULT_SAFETY_NOTES = "Monitor patient closely and escalate if necessary"

# A language tag only counts when it is "json" or ends its own line.
_FENCE_TAG_RE = re.compile(r"(?:json(?!\w)|[A-Za-z][\w+-]*(?=[ \t]*\r?\n))", re.IGNORECASE)

_DIFFERENTIAL_KEYS = ("differentials", "differentialDiagnoses", "differential_diagnoses", "diagnoses")
_CONDITION_KEYS = ("condition", "conditionName", "condition_name", "name", "diagnosis")
_CONFIDENCE_KEYS = ("confidence", "confidenceScore", "confidence_score", "probability")
_REASONING_KEYS = ("reasoning", "rationale")
_TESTS_KEYS = ("recommendedTests", "recommended_tests")
_RED_FLAG_KEYS = ("redFlags", "red_flags")


def extract_json(raw_text: Optional[str]) -> str:
    """
    Strip one leading and one trailing markdown fence, then trim.
    """
    cleaned = (raw_text or "").strip()
    if cleaned.startswith(FENCE):
        cleaned = cleaned[len(FENCE):]
        tag = _FENCE_TAG_RE.match(cleaned)
        if tag:
            cleaned = cleaned[tag.end():]
    if cleaned.endswith(FENCE):
        cleaned = cleaned[: -len(FENCE)]
    return cleaned.strip()


def _decode_document(raw_text: Optional[str]) -> Any:
    cleaned = extract_json(raw_text)
    if not cleaned:
        raise ParseError("Model response was empty.", raw_text)
    try:
        document = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start < 0 or end <= start:
            raise ParseError(f"Model response is not valid JSON: {exc.msg}", raw_text) from exc
        try:
            document = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as inner:
            raise ParseError(f"Model response is not valid JSON: {inner.msg}", raw_text) from inner

    # Some models double-encode the object as a JSON string.
    if isinstance(document, str):
        try:
            document = json.loads(extract_json(document))
        except json.JSONDecodeError as exc:
            raise ParseError("Model response is a string, not a JSON object.", raw_text) from exc
    return document


def _first_present(payload: Dict[str, Any], keys: Sequence[str]) -> Tuple[bool, Any]:
    for key in keys:
        if key in payload:
            return True, payload[key]
    return False, None


def _coerce_array(value: Any, field_name: str, raw_text: Optional[str]) -> List[Any]:
    if isinstance(value, str):
        try:
            value = json.loads(extract_json(value))
        except json.JSONDecodeError as exc:
            raise ParseError(f"'{field_name}' is not an array.", raw_text) from exc
    if not isinstance(value, list):
        raise ParseError(f"'{field_name}' is not an array.", raw_text)
    return value


def _coerce_confidence(value: Any, raw_text: Optional[str]) -> Decimal:
    if isinstance(value, bool):
        raise ParseError("Differential confidence must be numeric.", raw_text)
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation as exc:
            raise ParseError(f"Differential confidence must be numeric, got {value!r}.", raw_text) from exc
    raise ParseError("Differential confidence must be numeric.", raw_text)


def _coerce_string_list(value: Any, field_name: str, raw_text: Optional[str]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, list):
        raise ParseError(f"'{field_name}' must be a list of strings.", raw_text)
    return [str(item) for item in value if item is not None]


def _parse_differential(item: Any, raw_text: Optional[str]) -> DifferentialDiagnosis:
    if not isinstance(item, dict):
        raise ParseError("Each differential must be a JSON object.", raw_text)

    _, condition = _first_present(item, _CONDITION_KEYS)
    if not isinstance(condition, str) or not condition.strip():
        raise ParseError("Differential is missing a condition name.", raw_text)

    found, confidence = _first_present(item, _CONFIDENCE_KEYS)
    if not found:
        raise ParseError(f"Differential '{condition}' is missing a confidence.", raw_text)

    _, reasoning = _first_present(item, _REASONING_KEYS)
    _, tests = _first_present(item, _TESTS_KEYS)
    _, red_flags = _first_present(item, _RED_FLAG_KEYS)

    try:
        return DifferentialDiagnosis(
            condition=condition.strip(),
            confidence=_coerce_confidence(confidence, raw_text),
            reasoning="" if reasoning is None else str(reasoning),
            recommended_tests=_coerce_string_list(tests, "recommendedTests", raw_text),
            red_flags=_coerce_string_list(red_flags, "redFlags", raw_text),
        )
    except PydanticValidationError as exc:
        raise ParseError(f"Differential '{condition}' is invalid: {exc.errors()[0]['msg']}", raw_text) from exc


def parse_diagnostic_response(raw_text: str) -> List[DifferentialDiagnosis]:
    document = _decode_document(raw_text)
    if isinstance(document, list):
        items = document
    elif isinstance(document, dict):
        found, value = _first_present(document, _DIFFERENTIAL_KEYS)
        if not found:
            raise ParseError("Model response has no differentials array.", raw_text)
        items = _coerce_array(value, "differentials", raw_text)
    else:
        raise ParseError("Model response is not a JSON object.", raw_text)

    differentials = [_parse_differential(item, raw_text) for item in items]
    logger.info("Extracted %d differentials from model response", len(differentials))
    return differentials


def parse_diagnostic_extras(raw_text: str) -> Tuple[List[str], str]:
    """
    Immediate actions and safety notes. Falls back to defaults on any failure.
    """
    try:
        document = _decode_document(raw_text)
    except ParseError:
        return [], DEFAULT_SAFETY_NOTES
    if not isinstance(document, dict):
        return [], DEFAULT_SAFETY_NOTES

    actions = document.get("immediateActions", document.get("immediate_actions"))
    if isinstance(actions, str):
        actions = [actions]
    if not isinstance(actions, list):
        actions = []
    safety = document.get("safetyNotes", document.get("safety_notes"))
    if not isinstance(safety, str) or not safety.strip():
        safety = DEFAULT_SAFETY_NOTES
    return [str(a) for a in actions if a is not None and str(a).strip()], safety


def _optional_text(payload: Dict[str, Any], *keys: str) -> Optional[str]:
    _, value = _first_present(payload, keys)
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def parse_treatment_response(raw_text: str, diagnosis_id: int) -> TreatmentExtraction:
    document = _decode_document(raw_text)
    if not isinstance(document, dict):
        raise ParseError("Treatment response is not a JSON object.", raw_text)

    treatments: List[TreatmentRecord] = []
    if "treatments" in document and document["treatments"] is not None:
        for item in _coerce_array(document["treatments"], "treatments", raw_text):
            if not isinstance(item, dict):
                raise ParseError("Each treatment must be a JSON object.", raw_text)
            treatments.append(
                TreatmentRecord(
                    diagnosis_id=diagnosis_id,
                    type=_optional_text(item, "type") or "Medication",
                    drug_name=_optional_text(item, "drugName", "drug_name"),
                    dosage=_optional_text(item, "dosage"),
                    duration=_optional_text(item, "duration"),
                    instructions=_optional_text(item, "instructions"),
                )
            )
    else:
        logger.warning("Treatment response for diagnosis %s has no treatments array", diagnosis_id)

    follow_up = _optional_text(document, "followUpInstructions", "follow_up_instructions")
    education = _optional_text(document, "patientEducation", "patient_education")
    return TreatmentExtraction(
        treatments=treatments,
        follow_up_instructions=follow_up if follow_up is not None else DEFAULT_FOLLOW_UP,
        patient_education=education if education is not None else DEFAULT_PATIENT_EDUCATION,
    )


def parse_image_analysis_response(raw_text: str) -> ImageFindings:
    raw = raw_text or ""
    try:
        document = _decode_document(raw)
        if not isinstance(document, dict):
            raise ParseError("Image analysis response is not a JSON object.", raw)
        description = document.get("description")
        findings = document.get("findings")
        return ImageFindings(
            description=description if isinstance(description, str) else raw,
            findings=[
                f if isinstance(f, str) else json.dumps(f)
                for f in (findings if isinstance(findings, list) else [])
                if f is not None
            ],
        )
    except Exception as exc:
        logger.warning("Falling back to raw image analysis text: %s", exc)
        return ImageFindings(description=raw, findings=[])
