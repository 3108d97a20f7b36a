"""
Synthesis Service - Clinical Orchestration

Workflows:
1. analyze                  context -> (guidelines) -> prompt -> model -> differentials -> gate
2. generate_treatment_plan  diagnosis -> prompt -> model -> treatment items
3. analyze_image            validate -> prompt -> vision model -> findings (best effort)
4. escalate                 persisted records -> case summary -> referral

Model and retrieval calls run on worker threads. Request timeouts belong to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import AsyncIterator, Callable, Dict, List, Optional

from case_repository import ClinicalRepository, build_repository
from case_summary import CaseSummarySynthesizer
from confidence_gate import ConfidenceGate
from config import ServiceSettings
from context_assembler import ContextAssembler
from env_loader import load_service_env
from errors import NotFoundError, ParseError, PipelineInvocationError, SynthesisError
from knowledge_base import KnowledgeBaseClient, KnowledgeRetriever
from model_gateway import ModelGateway, build_model_gateway, validate_image_payload
from models import (
    Citation,
    ConsultationStatus,
    DiagnosticRequest,
    DiagnosticResponse,
    EscalationRecord,
    EscalationRequest,
    EscalationResponse,
    ImageAnalysisResponse,
    TreatmentPlan,
    TreatmentRecord,
    TreatmentRequest,
)
from prompt_builder import PromptBuilder
from referral import NotificationService, TelemedicineAdapter
from response_parser import (
    parse_diagnostic_extras,
    parse_diagnostic_response,
    parse_image_analysis_response,
    parse_treatment_response,
)
from seed_data import seed_repository

load_service_env()

logger = logging.getLogger(__name__)


@dataclass
class _LockSlot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ClinicalOrchestrator:
    """
    Coordinates the clinical AI pipeline against the configured repository and gateway.
    """

    def __init__(
        self,
        settings: Optional[ServiceSettings] = None,
        *,
        repository: Optional[ClinicalRepository] = None,
        gateway: Optional[ModelGateway] = None,
        knowledge_base_client: Optional[KnowledgeBaseClient] = None,
        telemedicine: Optional[TelemedicineAdapter] = None,
        notifications: Optional[NotificationService] = None,
        clock: Callable[[], date] = date.today,
    ) -> None:
        self.settings = settings or ServiceSettings.from_env()
        self.repository = repository or build_repository(
            self.settings.case_store_backend,
            self.settings.sqlite_db_path,
        )
        self.gateway = gateway or build_model_gateway(self.settings)
        self.retriever = KnowledgeRetriever(
            knowledge_base_client or KnowledgeBaseClient(self.settings),
            default_max_results=self.settings.retrieval_max_results,
        )
        self.telemedicine = telemedicine or TelemedicineAdapter()
        self.notifications = notifications or NotificationService()
        self.clock = clock
        self.context_assembler = ContextAssembler(clock=clock)
        self.prompt_builder = PromptBuilder()
        self.confidence_gate = ConfidenceGate()
        self.summary_synthesizer = CaseSummarySynthesizer()
        self._consultation_locks: Dict[int, _LockSlot] = {}

        if repository is None and self.settings.seed_on_start and self.repository.count_patients() == 0:
            seed_repository(self.repository, self.settings.seed_path)

        logger.info(
            "ClinicalOrchestrator initialized | gateway=%s | model=%s | max_tokens=%d | temperature=%.2f | "
            "retrieval=%s | retrieval_max_results=%d | store=%s",
            self.gateway.mode,
            self.settings.generation.model_id,
            self.settings.generation.max_tokens,
            self.settings.generation.temperature,
            self.retriever.client.mode,
            self.settings.retrieval_max_results,
            self.repository.backend,
        )

    @property
    def gateway_mode(self) -> str:
        return self.gateway.mode

    @property
    def retrieval_mode(self) -> str:
        return self.retriever.client.mode

    @property
    def case_store_backend(self) -> str:
        return self.repository.backend

    # ----- Model calls -----

    async def _invoke(self, prompt: str, failure_message: str) -> str:
        try:
            return await asyncio.to_thread(self.gateway.invoke, prompt, self.settings.generation)
        except PipelineInvocationError as exc:
            logger.error("%s: %s", failure_message, exc)
            raise PipelineInvocationError(f"{failure_message}: {exc.message}", reason=exc.reason) from exc
        except SynthesisError:
            raise
        except Exception as exc:
            logger.exception("%s: %s", failure_message, exc)
            raise PipelineInvocationError(f"{failure_message}: {exc}") from exc

    @asynccontextmanager
    async def _consultation_lock(self, consultation_id: int) -> AsyncIterator[None]:
        # Slots exist only while held or awaited.
        slot = self._consultation_locks.get(consultation_id)
        if slot is None:
            slot = self._consultation_locks[consultation_id] = _LockSlot()
        slot.users += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                self._consultation_locks.pop(consultation_id, None)

    async def _lookup_guidelines(self, query: str) -> List[Citation]:
        if not self.retriever.enabled:
            return []
        return await asyncio.to_thread(self.retriever.query_guidelines, query)

    # ----- Diagnostic analysis -----

    async def analyze(self, request: DiagnosticRequest) -> DiagnosticResponse:
        consultation_id = request.consultation_id
        consultation = self.repository.get_consultation(consultation_id)
        patient = self.repository.get_patient(consultation.patient_id)
        logger.info("Starting diagnostic analysis for consultation %s", consultation_id)

        context = self.context_assembler.build(consultation, patient, request)
        citations: List[Citation] = []
        if request.use_guidelines:
            citations = await self._lookup_guidelines(context.chief_complaint)
        citation_block = self.retriever.format_citations_for_prompt(citations)
        prompt = self.prompt_builder.build_diagnostic_prompt(context, citation_block)
        logger.debug("Diagnostic prompt for consultation %s:\n%s", consultation_id, prompt)

        raw = await self._invoke(
            prompt,
            f"Failed to generate diagnostic analysis for consultation {consultation_id}",
        )
        try:
            differentials = parse_diagnostic_response(raw)
        except ParseError as exc:
            logger.error("Unparseable diagnostic response for consultation %s: %s", consultation_id, exc)
            raise ParseError(
                f"Failed to parse diagnostic response for consultation {consultation_id}: {exc.message}",
                exc.raw_text,
            ) from exc
        immediate_actions, safety_notes = parse_diagnostic_extras(raw)

        async with self._consultation_lock(consultation_id):
            # Re-read under the lock so a concurrent analysis is not overwritten.
            current = self.repository.get_consultation(consultation_id)
            updated = current.model_copy(update={"status": ConsultationStatus.IN_PROGRESS})
            records = self.confidence_gate.to_diagnosis_records(consultation_id, differentials)
            _, saved = self.repository.record_analysis(updated, records)

        persisted = iter(saved)
        for idx, differential in enumerate(differentials):
            if self.confidence_gate.qualifies(differential):
                differentials[idx] = differential.model_copy(
                    update={
                        "diagnosis_id": next(persisted).diagnosis_id,
                        "source": self.confidence_gate.source_tag,
                    }
                )

        logger.info(
            "Diagnostic analysis complete for consultation %s | differentials=%d | persisted=%d | citations=%d",
            consultation_id,
            len(differentials),
            len(saved),
            len(citations),
        )
        return DiagnosticResponse(
            consultation_id=consultation_id,
            differentials=differentials,
            immediate_actions=immediate_actions,
            safety_notes=safety_notes,
            guideline_references=self.retriever.extract_citation_references(raw, citations),
        )

    # ----- Treatment -----

    async def generate_treatment_plan(self, request: TreatmentRequest) -> TreatmentPlan:
        diagnosis = self.repository.get_diagnosis(request.diagnosis_id)
        logger.info("Generating treatment plan for diagnosis %s (%s)", diagnosis.diagnosis_id, diagnosis.condition_name)

        prompt = self.prompt_builder.build_treatment_prompt(diagnosis.condition_name, request)
        raw = await self._invoke(
            prompt,
            f"Failed to generate treatment plan for diagnosis {request.diagnosis_id}",
        )
        try:
            extraction = parse_treatment_response(raw, request.diagnosis_id)
        except ParseError as exc:
            logger.error("Unparseable treatment response for diagnosis %s: %s", request.diagnosis_id, exc)
            raise ParseError(
                f"Failed to parse treatment response for diagnosis {request.diagnosis_id}: {exc.message}",
                exc.raw_text,
            ) from exc

        saved = self.repository.save_treatments(extraction.treatments)
        logger.info("Persisted %d treatments for diagnosis %s", len(saved), request.diagnosis_id)
        return TreatmentPlan(
            diagnosis_id=request.diagnosis_id,
            condition_name=diagnosis.condition_name,
            treatments=saved,
            follow_up_instructions=extraction.follow_up_instructions,
            patient_education=extraction.patient_education,
        )

    def get_treatments_by_diagnosis(self, diagnosis_id: int) -> List[TreatmentRecord]:
        self.repository.get_diagnosis(diagnosis_id)
        return self.repository.list_treatments(diagnosis_id)

    # ----- Image analysis -----

    async def analyze_image(
        self,
        image_bytes: bytes,
        media_type: str,
        clinical_context: Optional[str] = None,
    ) -> ImageAnalysisResponse:
        validate_image_payload(image_bytes, media_type)
        prompt = self.prompt_builder.build_image_analysis_prompt(clinical_context)
        logger.info("Analyzing %s image (%d bytes)", media_type, len(image_bytes))
        try:
            raw = await asyncio.to_thread(
                self.gateway.invoke_vision,
                image_bytes,
                media_type,
                prompt,
                self.settings.generation,
            )
        except SynthesisError:
            raise
        except Exception as exc:
            logger.exception("Vision model call failed: %s", exc)
            raise PipelineInvocationError(f"Failed to analyze image: {exc}") from exc

        findings = parse_image_analysis_response(raw)
        return ImageAnalysisResponse(description=findings.description, findings=findings.findings)

    # ----- Escalation -----

    def build_case_summary(self, request: EscalationRequest) -> str:
        consultation = self.repository.get_consultation(request.consultation_id)
        patient = self.repository.get_patient(consultation.patient_id)
        try:
            provider = self.repository.get_provider(consultation.provider_id)
        except NotFoundError:
            logger.warning(
                "Provider %s missing for consultation %s", consultation.provider_id, consultation.consultation_id
            )
            provider = None
        diagnoses = self.repository.list_diagnoses(request.consultation_id)
        treatments = {
            d.diagnosis_id: self.repository.list_treatments(d.diagnosis_id)
            for d in diagnoses
            if d.diagnosis_id is not None
        }
        return self.summary_synthesizer.synthesize(
            consultation=consultation,
            patient=patient,
            provider=provider,
            diagnoses=diagnoses,
            treatments_by_diagnosis=treatments,
            request=request,
            today=self.clock(),
        )

    def escalate(self, request: EscalationRequest) -> EscalationResponse:
        logger.info(
            "Escalating consultation %s to %s (%s)",
            request.consultation_id,
            request.specialist_type,
            request.urgency_level.value,
        )
        summary = self.build_case_summary(request)
        referral_id = self.telemedicine.send_escalation(summary, request.urgency_level, request.specialist_type)
        self.notifications.notify_escalation(request.consultation_id, referral_id)
        record = self.repository.save_escalation(
            EscalationRecord(
                referral_id=referral_id,
                consultation_id=request.consultation_id,
                specialist_type=request.specialist_type,
                urgency_level=request.urgency_level,
                case_summary=summary,
                referral_notes=request.referral_notes,
            )
        )
        return EscalationResponse.from_record(record)

    def get_escalation(self, escalation_id: int) -> EscalationResponse:
        return EscalationResponse.from_record(self.repository.get_escalation(escalation_id))

    def list_escalations_for_consultation(self, consultation_id: int) -> List[EscalationResponse]:
        self.repository.get_consultation(consultation_id)
        return [EscalationResponse.from_record(r) for r in self.repository.list_escalations(consultation_id)]


# Service-level singleton
clinical_orchestrator = ClinicalOrchestrator()
