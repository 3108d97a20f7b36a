import asyncio
import json
from decimal import Decimal

import pytest

from errors import (
    ErrorKind,
    InvocationFailure,
    NotFoundError,
    ParseError,
    PipelineInvocationError,
    ValidationError,
)
from models import (
    ConsultationStatus,
    DiagnosticRequest,
    EscalationRequest,
    EscalationStatus,
    TreatmentRequest,
    UrgencyLevel,
)


ANALYSIS = json.dumps(
    {
        "differentials": [
            {"condition": "Malaria", "confidence": 0.85, "reasoning": "Fever in endemic area [Guideline 1]"},
            {"condition": "Typhoid fever", "confidence": 0.3, "reasoning": "Headache"},
        ],
        "immediateActions": ["Perform malaria RDT"],
        "safetyNotes": "Refer if unable to drink",
    }
)


class FailingKnowledgeBase:
    mode = "http"

    def retrieve(self, query, max_results):
        raise PipelineInvocationError("knowledge base unavailable")


def test_analyze_returns_all_and_persists_confident_differentials(make_orchestrator, fake_gateway):
    fake_gateway.text = ANALYSIS
    orchestrator = make_orchestrator()

    response = asyncio.run(orchestrator.analyze(DiagnosticRequest(consultation_id=1)))

    assert [d.condition for d in response.differentials] == ["Malaria", "Typhoid fever"]
    assert response.differentials[0].diagnosis_id is not None
    assert response.differentials[0].source == "AI_GENERATED"
    assert response.differentials[1].diagnosis_id is None
    assert response.immediate_actions == ["Perform malaria RDT"]
    assert response.safety_notes == "Refer if unable to drink"

    persisted = orchestrator.repository.list_diagnoses(1)
    assert len(persisted) == 1
    assert persisted[0].condition_name == "Malaria"
    assert persisted[0].confidence_score == Decimal("0.85")
    assert persisted[0].source == "AI_GENERATED"
    assert orchestrator.repository.get_consultation(1).status == ConsultationStatus.IN_PROGRESS


def test_analyze_embeds_guidelines_and_reports_cited_references(make_orchestrator, fake_gateway):
    fake_gateway.text = ANALYSIS
    orchestrator = make_orchestrator()

    response = asyncio.run(orchestrator.analyze(DiagnosticRequest(consultation_id=1)))

    prompt = fake_gateway.prompts[0]
    assert "TRUSTED MEDICAL GUIDELINES" in prompt
    assert "[Guideline 1]" in prompt
    assert len(response.guideline_references) == 1
    assert response.guideline_references[0].split(":")[0].endswith(".pdf")


def test_analyze_without_guidelines_when_disabled(make_orchestrator, fake_gateway):
    fake_gateway.text = ANALYSIS
    orchestrator = make_orchestrator()

    response = asyncio.run(orchestrator.analyze(DiagnosticRequest(consultation_id=1, use_guidelines=False)))

    assert "TRUSTED MEDICAL GUIDELINES" not in fake_gateway.prompts[0]
    assert response.guideline_references == []


def test_retrieval_failure_does_not_fail_analysis(make_orchestrator, fake_gateway):
    fake_gateway.text = ANALYSIS
    orchestrator = make_orchestrator(knowledge_base_client=FailingKnowledgeBase())

    response = asyncio.run(orchestrator.analyze(DiagnosticRequest(consultation_id=1)))

    assert len(response.differentials) == 2
    assert "TRUSTED MEDICAL GUIDELINES" not in fake_gateway.prompts[0]
    assert response.guideline_references == []


def test_prompt_uses_context_placeholders(make_orchestrator, fake_gateway):
    fake_gateway.text = '{"differentials": []}'
    orchestrator = make_orchestrator(retrieval_mode="off")

    asyncio.run(orchestrator.analyze(DiagnosticRequest(consultation_id=2)))

    prompt = fake_gateway.prompts[0]
    assert "PATIENT: Age: 9 years, Gender: Not specified, Blood Group: Not specified, Allergies: None reported" in prompt
    assert "VITAL SIGNS: Not recorded" in prompt
    assert "AVAILABLE EQUIPMENT: Standard primary care equipment" in prompt
    assert "LOCAL FORMULARY: WHO Essential Medicines List" in prompt


def test_analyze_unknown_consultation_raises_not_found(make_orchestrator, fake_gateway):
    orchestrator = make_orchestrator()
    with pytest.raises(NotFoundError):
        asyncio.run(orchestrator.analyze(DiagnosticRequest(consultation_id=404)))
    assert fake_gateway.prompts == []


def test_unparseable_model_output_is_fatal_and_persists_nothing(make_orchestrator, fake_gateway):
    fake_gateway.text = "I think it is probably malaria."
    orchestrator = make_orchestrator()

    with pytest.raises(ParseError) as excinfo:
        asyncio.run(orchestrator.analyze(DiagnosticRequest(consultation_id=1)))

    assert "consultation 1" in excinfo.value.message
    assert orchestrator.repository.list_diagnoses(1) == []
    assert orchestrator.repository.get_consultation(1).status == ConsultationStatus.OPEN


def test_model_failure_is_wrapped_with_consultation_context(make_orchestrator, fake_gateway):
    fake_gateway.error = PipelineInvocationError("throttled upstream", reason=InvocationFailure.THROTTLED)
    orchestrator = make_orchestrator()

    with pytest.raises(PipelineInvocationError) as excinfo:
        asyncio.run(orchestrator.analyze(DiagnosticRequest(consultation_id=1)))

    assert excinfo.value.kind == ErrorKind.INVOCATION
    assert excinfo.value.reason == InvocationFailure.THROTTLED
    assert excinfo.value.message.startswith("Failed to generate diagnostic analysis for consultation 1")


def test_unexpected_gateway_exception_becomes_invocation_error(make_orchestrator, fake_gateway):
    fake_gateway.error = ConnectionError("reset by peer")
    orchestrator = make_orchestrator()
    with pytest.raises(PipelineInvocationError, match="reset by peer"):
        asyncio.run(orchestrator.analyze(DiagnosticRequest(consultation_id=1)))


def test_concurrent_analyses_of_one_consultation_both_persist(make_orchestrator, fake_gateway):
    fake_gateway.text = ANALYSIS
    orchestrator = make_orchestrator(retrieval_mode="off")

    async def _run_both():
        return await asyncio.gather(
            orchestrator.analyze(DiagnosticRequest(consultation_id=1)),
            orchestrator.analyze(DiagnosticRequest(consultation_id=1)),
        )

    first, second = asyncio.run(_run_both())

    ids = {first.differentials[0].diagnosis_id, second.differentials[0].diagnosis_id}
    assert len(ids) == 2
    assert len(orchestrator.repository.list_diagnoses(1)) == 2


def test_generate_treatment_plan_persists_items(make_orchestrator, fake_gateway):
    fake_gateway.text = json.dumps(
        {
            "treatments": [
                {"drugName": "Amoxicillin", "dosage": "1 g three times daily", "duration": "5 days"},
                {"type": "Supportive", "instructions": "Oral fluids"},
            ]
        }
    )
    orchestrator = make_orchestrator()

    plan = asyncio.run(
        orchestrator.generate_treatment_plan(
            TreatmentRequest(diagnosis_id=1, patient_weight_kg=58, available_medications=["Amoxicillin"])
        )
    )

    assert plan.condition_name == "Community-acquired pneumonia"
    assert [t.drug_name for t in plan.treatments] == ["Amoxicillin", None]
    assert all(t.treatment_id is not None for t in plan.treatments)
    assert plan.follow_up_instructions == "Follow up in 7-14 days or sooner if symptoms worsen"
    assert "diagnosed with: Community-acquired pneumonia" in fake_gateway.prompts[0]

    stored = orchestrator.get_treatments_by_diagnosis(1)
    assert [t.drug_name for t in stored] == ["Doxycycline", "Amoxicillin", None]


def test_treatment_parse_failure_raises(make_orchestrator, fake_gateway):
    fake_gateway.text = "Give amoxicillin."
    orchestrator = make_orchestrator()
    with pytest.raises(ParseError):
        asyncio.run(orchestrator.generate_treatment_plan(TreatmentRequest(diagnosis_id=1)))
    assert [t.drug_name for t in orchestrator.get_treatments_by_diagnosis(1)] == ["Doxycycline"]


def test_treatments_for_unknown_diagnosis(make_orchestrator):
    with pytest.raises(NotFoundError):
        make_orchestrator().get_treatments_by_diagnosis(99)


def test_analyze_image_rejects_gif_before_invocation(make_orchestrator, fake_gateway):
    orchestrator = make_orchestrator()
    with pytest.raises(ValidationError):
        asyncio.run(orchestrator.analyze_image(b"GIF89a", "image/gif"))
    assert fake_gateway.vision_calls == []


def test_analyze_image_falls_back_to_raw_text(make_orchestrator, fake_gateway):
    fake_gateway.vision_text = "Normal chest radiograph."
    orchestrator = make_orchestrator()

    result = asyncio.run(orchestrator.analyze_image(b"\xff\xd8\xff", "image/jpeg", "Cough for 2 weeks"))

    assert result.description == "Normal chest radiograph."
    assert result.findings == []
    assert "CLINICAL CONTEXT:\nCough for 2 weeks" in fake_gateway.vision_calls[0][2]


def test_analyze_image_reads_findings(make_orchestrator, fake_gateway):
    fake_gateway.vision_text = '```json\n{"description": "Chest X-ray", "findings": ["Consolidation"]}\n```'
    result = asyncio.run(make_orchestrator().analyze_image(b"\x89PNG", "image/png"))
    assert result.findings == ["Consolidation"]


def test_escalate_builds_summary_and_persists(make_orchestrator):
    orchestrator = make_orchestrator()

    response = orchestrator.escalate(
        EscalationRequest(
            consultation_id=3,
            specialist_type="Pulmonology",
            urgency_level=UrgencyLevel.URGENT,
            referral_notes="Hypoxic on room air",
        )
    )

    assert response.status == EscalationStatus.SUBMITTED
    assert response.referral_id
    assert response.case_summary.startswith("=== SPECIALIST REFERRAL CASE SUMMARY ===\n\n")
    assert "- Community-acquired pneumonia (Confidence: 72%)" in response.case_summary
    assert "  - Medication: Doxycycline, 100 mg orally twice daily for 5 days" in response.case_summary
    assert "- Provider: Nurse Mary Wanjiru" in response.case_summary
    assert "- Age: 72 years" in response.case_summary

    assert orchestrator.get_escalation(response.escalation_id).referral_id == response.referral_id
    listed = orchestrator.list_escalations_for_consultation(3)
    assert [e.escalation_id for e in listed] == [response.escalation_id]


def test_escalate_unknown_consultation(make_orchestrator):
    with pytest.raises(NotFoundError):
        make_orchestrator().escalate(EscalationRequest(consultation_id=77, specialist_type="Cardiology"))


def test_consultation_locks_are_released_after_analysis(make_orchestrator, fake_gateway):
    fake_gateway.text = ANALYSIS
    orchestrator = make_orchestrator(retrieval_mode="off")

    async def _run_many():
        await asyncio.gather(
            *(orchestrator.analyze(DiagnosticRequest(consultation_id=cid)) for cid in (1, 1, 2, 3))
        )

    asyncio.run(_run_many())

    assert orchestrator._consultation_locks == {}


def test_consultation_lock_released_when_persistence_fails(make_orchestrator, fake_gateway, monkeypatch):
    fake_gateway.text = ANALYSIS
    orchestrator = make_orchestrator(retrieval_mode="off")

    def failing_record_analysis(consultation, diagnoses):
        raise RuntimeError("disk full")

    monkeypatch.setattr(orchestrator.repository, "record_analysis", failing_record_analysis)
    with pytest.raises(RuntimeError):
        asyncio.run(orchestrator.analyze(DiagnosticRequest(consultation_id=1)))

    assert orchestrator._consultation_locks == {}
