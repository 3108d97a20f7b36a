"""
Synthesis Clinical AI Service - FastAPI Application

Endpoints:
  POST /api/v1/diagnostic/analyze
  POST /api/v1/diagnostic/treatment
  GET  /api/v1/diagnostic/treatment/{diagnosis_id}
  POST /api/v1/diagnostic/image
  POST /api/v1/escalation/refer
  GET  /api/v1/escalation/{escalation_id}
  GET  /api/v1/escalation/consultation/{consultation_id}
  GET  /health
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, NoReturn, Optional

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from errors import ErrorKind, InvocationFailure, SynthesisError
from model_gateway import MAX_IMAGE_BYTES
from models import (
    DiagnosticRequest,
    DiagnosticResponse,
    ErrorResponse,
    EscalationRequest,
    EscalationResponse,
    HealthResponse,
    ImageAnalysisResponse,
    TreatmentPlan,
    TreatmentRecord,
    TreatmentRequest,
    utc_now,
)
from orchestrator import clinical_orchestrator

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Synthesis Clinical AI Service",
    description="Clinical decision support: differential diagnosis, treatment planning and specialist referral",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVOCATION: 502,
    ErrorKind.PARSE: 502,
}
_STATUS_BY_REASON = {
    InvocationFailure.PAYLOAD_TOO_LARGE: 413,
    InvocationFailure.THROTTLED: 429,
}

ANALYZE_TIMEOUT_SECONDS = clinical_orchestrator.settings.analyze_timeout_seconds


def _error_detail(prefix: str, exc: Exception) -> str:
    if not clinical_orchestrator.settings.expose_errors:
        return prefix
    detail = str(exc).strip() or exc.__class__.__name__
    # Keep payload concise for UI.
    if len(detail) > 500:
        detail = detail[:500] + "..."
    return f"{prefix} {detail}"


def _status_for(exc: SynthesisError) -> int:
    reason = getattr(exc, "reason", None)
    if exc.kind == ErrorKind.INVOCATION and reason in _STATUS_BY_REASON:
        return _STATUS_BY_REASON[reason]
    return _STATUS_BY_KIND[exc.kind]


def _raise_http(exc: SynthesisError) -> NoReturn:
    status = _status_for(exc)
    if exc.kind in {ErrorKind.INVOCATION, ErrorKind.PARSE}:
        message = _error_detail("AI pipeline failed.", exc)
    else:
        message = exc.message
    body = ErrorResponse(code=exc.code, message=message, http_status=status)
    raise HTTPException(status_code=status, detail=body.model_dump(mode="json")) from exc


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        service="synthesis-service",
        gateway_mode=clinical_orchestrator.gateway_mode,
        retrieval_mode=clinical_orchestrator.retrieval_mode,
        case_store_backend=clinical_orchestrator.case_store_backend,
        timestamp=utc_now(),
    )


@app.get("/")
async def root() -> dict:
    return {
        "service": "synthesis-service",
        "status": "ok",
        "health": "/health",
        "docs": "/docs",
    }


@app.post("/api/v1/diagnostic/analyze", response_model=DiagnosticResponse)
async def analyze_consultation(request: DiagnosticRequest) -> DiagnosticResponse:
    try:
        return await asyncio.wait_for(
            clinical_orchestrator.analyze(request),
            timeout=ANALYZE_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError as exc:
        timeout_seconds = max(1, int(round(ANALYZE_TIMEOUT_SECONDS)))
        logger.error(
            "Diagnostic analysis timed out after %.1fs for consultation %s",
            ANALYZE_TIMEOUT_SECONDS,
            request.consultation_id,
        )
        raise HTTPException(
            status_code=504,
            detail=f"Failed to analyze consultation. Timed out after {timeout_seconds}s.",
        ) from exc
    except asyncio.CancelledError:
        logger.info(
            "Analyze request cancelled for consultation %s (shutdown or client disconnect).",
            request.consultation_id,
        )
        raise HTTPException(status_code=499, detail="Analyze request cancelled.")
    except SynthesisError as exc:
        _raise_http(exc)
    except Exception as exc:
        logger.exception("Failed to analyze consultation %s: %s", request.consultation_id, exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to analyze consultation.", exc),
        ) from exc


@app.post("/api/v1/diagnostic/treatment", response_model=TreatmentPlan)
async def generate_treatment(request: TreatmentRequest) -> TreatmentPlan:
    try:
        return await clinical_orchestrator.generate_treatment_plan(request)
    except SynthesisError as exc:
        _raise_http(exc)
    except Exception as exc:
        logger.exception("Failed to generate treatment for diagnosis %s: %s", request.diagnosis_id, exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to generate treatment plan.", exc),
        ) from exc


@app.get("/api/v1/diagnostic/treatment/{diagnosis_id}", response_model=List[TreatmentRecord])
async def get_treatments(diagnosis_id: int) -> List[TreatmentRecord]:
    try:
        return clinical_orchestrator.get_treatments_by_diagnosis(diagnosis_id)
    except SynthesisError as exc:
        _raise_http(exc)


@app.post("/api/v1/diagnostic/image", response_model=ImageAnalysisResponse)
async def analyze_image(
    file: UploadFile = File(...),
    clinical_context: Optional[str] = Form(default=None),
) -> ImageAnalysisResponse:
    try:
        # At most one byte past the limit.
        payload = await file.read(MAX_IMAGE_BYTES + 1)
        content_type = (file.content_type or "application/octet-stream").lower()
        return await clinical_orchestrator.analyze_image(payload, content_type, clinical_context)
    except SynthesisError as exc:
        _raise_http(exc)
    except Exception as exc:
        logger.exception("Failed to analyze image upload: %s", exc)
        raise HTTPException(status_code=500, detail=_error_detail("Failed to analyze image.", exc)) from exc


@app.post("/api/v1/escalation/refer", response_model=EscalationResponse, status_code=201)
async def refer_to_specialist(request: EscalationRequest) -> EscalationResponse:
    try:
        return clinical_orchestrator.escalate(request)
    except SynthesisError as exc:
        _raise_http(exc)
    except Exception as exc:
        logger.exception("Failed to escalate consultation %s: %s", request.consultation_id, exc)
        raise HTTPException(status_code=500, detail=_error_detail("Failed to escalate consultation.", exc)) from exc


@app.get("/api/v1/escalation/consultation/{consultation_id}", response_model=List[EscalationResponse])
async def list_escalations(consultation_id: int) -> List[EscalationResponse]:
    try:
        return clinical_orchestrator.list_escalations_for_consultation(consultation_id)
    except SynthesisError as exc:
        _raise_http(exc)


@app.get("/api/v1/escalation/{escalation_id}", response_model=EscalationResponse)
async def get_escalation(escalation_id: int) -> EscalationResponse:
    try:
        return clinical_orchestrator.get_escalation(escalation_id)
    except SynthesisError as exc:
        _raise_http(exc)
