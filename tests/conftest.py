"""Shared test fixtures for the call_audit test suite.

WHY: Most modules are exercised against the same small sales case: two
recorded calls, a three-step audit config, and the model answers that
go with them. Centralizing them keeps every test on the same ground truth.

HOW: Pytest fixtures provide the recordings (as RecordingTranscript), the
AuditStepDefinition list and AuditConfig, good model answers per step, a
ready-made timeline, and orchestration options with no backoff.

RULES:
- Quotes used in good answers appear verbatim in the recordings, so they
  survive evidence gating
- Step 1 is critical (weight 5), step 2 weight 3, step 3 weight 2 with
  product verification enabled
- Options use zero backoff so retry tests run instantly
"""

from typing import Any, Dict, List

import pytest

from call_audit.analysis.orchestrator import AnalysisOptions
from call_audit.core.ir import (
    AuditConfig,
    AuditStepDefinition,
    RecordingTranscript,
    Timeline,
    TranscriptWord,
)
from call_audit.core.timeline import build_timeline
from factories import QUOTE_CONFIRM, QUOTE_INTRO, QUOTE_ORIAS, cite, point, step_payload, turn


@pytest.fixture
def scenario_a_words():
    """Two words from two speakers (one chunk, two messages)."""
    return [
        TranscriptWord(text="Bonjour", speaker_id="s0", start=0.0, end=0.5, type="word"),
        TranscriptWord(text="Oui", speaker_id="s1", start=0.6, end=0.9, type="word"),
    ]


@pytest.fixture
def case_transcripts() -> List[RecordingTranscript]:
    """Two recordings of the same case, in chronological order."""
    first = RecordingTranscript(
        call_id="call-1",
        recording_url="https://recordings.example/call-1.mp3",
        recording_date="12/03/2025",
        recording_time="10:15",
        from_number="0600000001",
        to_number="0100000002",
        duration_seconds=30.0,
        words=(
            turn("speaker_0", QUOTE_INTRO, 0.0)
            + turn("speaker_1", "Bonjour oui je vous écoute", 4.0)
            + turn("speaker_0", QUOTE_ORIAS, 7.0)
        ),
    )
    second = RecordingTranscript(
        call_id="call-2",
        recording_url="https://recordings.example/call-2.mp3",
        recording_date="13/03/2025",
        recording_time="14:40",
        from_number="0600000001",
        to_number="0100000002",
        duration_seconds=20.0,
        words=(
            turn("speaker_0", QUOTE_CONFIRM, 0.0)
            + turn("speaker_1", "Parfait merci beaucoup", 5.0)
        ),
    )
    return [first, second]


@pytest.fixture
def case_timeline(case_transcripts) -> Timeline:
    return build_timeline(case_transcripts)


@pytest.fixture
def audit_steps() -> List[AuditStepDefinition]:
    return [
        AuditStepDefinition(
            position=1,
            name="Présentation du cabinet",
            description="Le conseiller se présente et présente le cabinet.",
            prompt="Vérifiez la présentation du conseiller et du cabinet.",
            control_points=["Présentation du conseiller", "Mention du numéro ORIAS"],
            keywords=["ORIAS", "Net Courtage"],
            severity_level="HIGH",
            is_critical=True,
            weight=5,
        ),
        AuditStepDefinition(
            position=2,
            name="Confirmation de souscription",
            description="Le client confirme la souscription.",
            prompt="Vérifiez la confirmation explicite du contrat.",
            control_points=["Confirmation explicite du contrat"],
            keywords=["souscription"],
            weight=3,
            chronological_important=True,
        ),
        AuditStepDefinition(
            position=3,
            name="Vérification produit",
            description="Les garanties du produit sont présentées.",
            prompt="Vérifiez la présentation des garanties.",
            control_points=["Garanties présentées"],
            keywords=["garanties"],
            weight=2,
            verify_product_info=True,
        ),
    ]


@pytest.fixture
def audit_config(audit_steps) -> AuditConfig:
    return AuditConfig(
        id="cfg-1",
        name="Audit Santé",
        system_prompt="Vous êtes un auditeur qualité pour un cabinet de courtage.",
        steps=audit_steps,
    )


@pytest.fixture
def good_answers() -> Dict[int, Dict[str, Any]]:
    """Model answers for the three steps, consistent with the transcripts."""
    return {
        1: step_payload(
            score=5,
            conforme="CONFORME",
            niveau="EXCELLENT",
            points=[
                point("Présentation du conseiller", "PRESENT", [cite(QUOTE_INTRO, 0, 0, "00:00", 0.0)]),
                point("Mention du numéro ORIAS", "PRESENT", [cite(QUOTE_ORIAS, 0, 0, "00:07", 7.0)]),
            ],
        ),
        2: step_payload(
            score=3,
            conforme="CONFORME",
            niveau="EXCELLENT",
            points=[
                point("Confirmation explicite du contrat", "PRESENT", [cite(QUOTE_CONFIRM, 1, 0, "00:00", 0.0)]),
            ],
        ),
        3: step_payload(
            score=0,
            conforme="NON_CONFORME",
            niveau="INSUFFISANT",
            points=[point("Garanties présentées", "ABSENT")],
        ),
    }


@pytest.fixture
def fast_options() -> AnalysisOptions:
    return AnalysisOptions(
        max_retries=3,
        concurrency=2,
        call_timeout_s=5.0,
        run_timeout_s=30.0,
        retry_backoff_s=0.0,
    )
