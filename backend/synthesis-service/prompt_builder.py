"""
Synthesis Service - Prompt Rendering

Every prompt is a pure function of its structured input and asks the model for a
single JSON object of a fixed shape. Generation parameters never appear in prompt text.
"""

from __future__ import annotations

import re
from typing import List, Optional

from models import ClinicalContext, TreatmentRequest

MAX_PROMPT_FIELD_CHARS = 2000
NOT_PROVIDED = "Not provided"

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_NEWLINE_RUN_RE = re.compile(r"\n{3,}")

DIAGNOSTIC_RESPONSE_SHAPE = """{
  "differentials": [
    {
      "condition": "string",
      "confidence": 0.0,
      "reasoning": "string",
      "recommendedTests": ["string"],
      "redFlags": ["string"]
    }
  ],
  "immediateActions": ["string"],
  "safetyNotes": "string"
}"""

TREATMENT_RESPONSE_SHAPE = """{
  "treatments": [
    {
      "type": "Medication",
      "drugName": "string",
      "dosage": "string",
      "duration": "string",
      "instructions": "string"
    }
  ],
  "followUpInstructions": "string",
  "patientEducation": "string"
}"""

IMAGE_RESPONSE_SHAPE = """{
  "description": "Overall description of the image",
  "findings": ["Finding 1", "Finding 2"]
}"""


def sanitize_for_prompt(text: Optional[str]) -> str:
    """
    Strips control characters, collapses blank-line runs and caps length.
    """
    if not text:
        return ""
    cleaned = _CONTROL_CHARS_RE.sub("", text.replace("\r\n", "\n").replace("\r", "\n"))
    cleaned = _NEWLINE_RUN_RE.sub("\n\n", cleaned).strip()
    return truncate(cleaned, MAX_PROMPT_FIELD_CHARS)


def format_list_for_prompt(items: Optional[List[str]]) -> str:
    cleaned = [item.strip() for item in (items or []) if item and item.strip()]
    if not cleaned:
        return NOT_PROVIDED
    return "\n".join(f"{idx}. {item}" for idx, item in enumerate(cleaned, start=1))


def truncate(text: Optional[str], max_length: int) -> str:
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."


class PromptBuilder:
    @staticmethod
    def build_diagnostic_prompt(context: ClinicalContext, citation_block: str = "") -> str:
        return (
            "You are an experienced clinical decision-support assistant helping primary care "
            "clinicians in resource-limited settings.\n"
            "Analyze the encounter below and produce a ranked differential diagnosis.\n\n"
            f"PATIENT: {context.patient_summary}\n"
            f"CHIEF COMPLAINT: {context.chief_complaint}\n"
            f"VITAL SIGNS: {context.vitals}\n"
            f"LAB RESULTS AND NOTES:\n{context.lab_results}\n"
            f"AVAILABLE EQUIPMENT: {context.available_equipment}\n"
            f"LOCAL FORMULARY: {context.local_formulary}\n"
            f"{citation_block}\n"
            "INSTRUCTIONS:\n"
            "1. List the most likely conditions first, at most five.\n"
            "2. Give each condition a confidence between 0 and 1.\n"
            "3. Recommend only tests that can be performed with the available equipment.\n"
            "4. Flag any findings that need urgent referral as red flags.\n"
            "5. List immediate actions the clinician should take now.\n\n"
            "Respond with a JSON object of exactly this shape:\n"
            f"{DIAGNOSTIC_RESPONSE_SHAPE}\n\n"
            "Return ONLY the JSON object, no additional text."
        )

    @staticmethod
    def build_treatment_prompt(condition_name: str, request: TreatmentRequest) -> str:
        weight = f"{request.patient_weight_kg:g} kg" if request.patient_weight_kg is not None else NOT_PROVIDED
        age = f"{request.patient_age_years} years" if request.patient_age_years is not None else NOT_PROVIDED
        if request.renal_function_normal is None:
            renal = NOT_PROVIDED
        else:
            renal = "Normal" if request.renal_function_normal else "Impaired"

        return (
            "You are a clinical pharmacology assistant supporting primary care clinicians.\n"
            f"Create a treatment plan for a patient diagnosed with: {condition_name}\n\n"
            "PATIENT PARAMETERS:\n"
            f"- Weight: {weight}\n"
            f"- Age: {age}\n"
            f"- Renal function: {renal}\n\n"
            "AVAILABLE MEDICATIONS:\n"
            f"{format_list_for_prompt(request.available_medications)}\n\n"
            "INSTRUCTIONS:\n"
            "1. Prefer medications from the available list when one is given.\n"
            "2. Adjust dosage for weight, age and renal function.\n"
            "3. Include non-drug measures with an appropriate type.\n\n"
            "Respond with a JSON object of exactly this shape:\n"
            f"{TREATMENT_RESPONSE_SHAPE}\n\n"
            "Return ONLY the JSON object, no additional text."
        )

    @staticmethod
    def build_image_analysis_prompt(clinical_context: Optional[str] = None) -> str:
        prompt = (
            "You are an expert radiologist and clinical imaging specialist.\n"
            "Analyze the attached medical image.\n\n"
        )
        context = sanitize_for_prompt(clinical_context)
        if context:
            prompt += f"CLINICAL CONTEXT:\n{context}\n\n"
        prompt += (
            "INSTRUCTIONS:\n"
            "1. Describe the image type and overall quality.\n"
            "2. List notable findings, normal and abnormal.\n"
            "3. Note any findings that require urgent attention.\n"
            "4. Do not give a definitive diagnosis.\n"
            "5. Keep each finding to one sentence.\n\n"
            "Respond with a JSON object of exactly this shape:\n"
            f"{IMAGE_RESPONSE_SHAPE}\n\n"
            "Return ONLY the JSON object, no additional text."
        )
        return prompt
