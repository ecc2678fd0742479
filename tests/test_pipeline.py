"""End-to-end tests for run_audit with a scripted analysis client.

WHY: The pipeline glues every stage together. These tests pin the stage
order (timeline → analysis → evidence → score) and the shape of the
result handed to callers.
"""

import asyncio
import time

import jsonschema
import pytest

from call_audit.analysis.client import AnalysisAPIError
from call_audit.analysis.models import (
    AUTO_CHECK_POINT_NOTE,
    ComplianceLevel,
    ControlPointStatus,
    StepAnalysisFailure,
)
from call_audit.analysis.orchestrator import StepAnalysisOrchestrator
from call_audit.events import ProgressSink
from call_audit.pipeline import run_audit, validate_result_document
from factories import QUOTE_INTRO, QUOTE_ORIAS, FakeAnalysisClient, cite, point, step_payload


class PhaseSink(ProgressSink):
    def __init__(self):
        self.phases = []

    async def progress(self, completed, total, failed, phase):
        self.phases.append((phase, completed, total, failed))


class SlowSink(ProgressSink):
    async def progress(self, completed, total, failed, phase):
        await asyncio.sleep(10)


def _run(config, transcripts, client, options, **kwargs):
    orchestrator = StepAnalysisOrchestrator(client, options)
    return asyncio.run(run_audit(config, transcripts, orchestrator, **kwargs))


class TestRunAudit:

    def test_happy_path(self, audit_config, case_transcripts, good_answers, fast_options):
        sink = PhaseSink()
        client = FakeAnalysisClient(responses={k: [v] for k, v in good_answers.items()})
        result = _run(audit_config, case_transcripts, client, fast_options, sink=sink, evidence_gating=True)

        assert result.compliance.score == pytest.approx(80.0)
        assert result.compliance.niveau == ComplianceLevel.BON
        assert result.compliance.points_critiques == "1/1"
        assert result.compliance.poids_obtenu == 8
        assert result.evidence.removed_citations == 0
        assert len(client.prompts) == 3
        assert sink.phases[0] == ("analysis", 0, 3, 0)
        assert sink.phases[-1] == ("scoring", 3, 3, 0)

        citation = result.steps[0].points_controle[0].citations[0]
        assert citation.recording_date == "12/03/2025"
        assert citation.recording_url == "https://recordings.example/call-1.mp3"

    def test_gating_lowers_score_before_scoring(self, audit_config, case_transcripts, good_answers, fast_options):
        invented = step_payload(
            score=5,
            points=[
                point("Présentation du conseiller", "PRESENT", [cite("Nous sommes le premier courtier de France")]),
                point("Mention du numéro ORIAS", "PRESENT", [cite("Notre numéro ORIAS est le 87654321")]),
            ],
        )
        client = FakeAnalysisClient(responses={1: [invented], 2: [good_answers[2]], 3: [good_answers[3]]})
        result = _run(audit_config, case_transcripts, client, fast_options, evidence_gating=True)

        assert result.steps[0].score == 0
        assert result.evidence.downgraded_control_points == 2
        assert result.compliance.poids_obtenu == 3
        assert result.compliance.points_critiques == "0/1"
        assert result.compliance.niveau == ComplianceLevel.REJET

    def test_gating_disabled(self, audit_config, case_transcripts, good_answers, fast_options):
        invented = dict(good_answers[1])
        invented["points_controle"] = [
            point("Présentation du conseiller", "PRESENT", [cite("Nous sommes le premier courtier de France")]),
        ]
        client = FakeAnalysisClient(responses={1: [invented], 2: [good_answers[2]], 3: [good_answers[3]]})
        result = _run(audit_config, case_transcripts, client, fast_options, evidence_gating=False)
        assert result.steps[0].score == 5
        assert result.evidence.enabled is False

    def test_failed_step_kept_and_scored_zero(self, audit_config, case_transcripts, good_answers, fast_options):
        client = FakeAnalysisClient(responses={
            1: [good_answers[1]], 2: [AnalysisAPIError(500, "boom")], 3: [good_answers[3]],
        })
        result = _run(audit_config, case_transcripts, client, fast_options)

        assert isinstance(result.steps[1], StepAnalysisFailure)
        assert result.compliance.poids_obtenu == 5
        assert result.compliance.poids_total == 10
        assert result.compliance.score == pytest.approx(50.0)

        data = result.to_dict()
        assert data["statistics"]["failed_steps"] == 1
        assert data["statistics"]["total_tokens"] == 300
        assert data["steps"][1]["success"] is False
        assert data["compliance"]["niveau"] == "INSUFFISANT"

    def test_present_without_citation_normalized_not_retried(
        self, audit_config, case_transcripts, good_answers, fast_options,
    ):
        uncited = step_payload(
            score=3,
            points=[point("Confirmation explicite du contrat", "PRESENT")],
        )
        client = FakeAnalysisClient(responses={1: [good_answers[1]], 2: [uncited], 3: [good_answers[3]]})
        result = _run(audit_config, case_transcripts, client, fast_options, evidence_gating=True)

        assert result.run.failed == 0
        assert client.calls[2] == 1
        confirmation = result.steps[1].points_controle[0]
        assert confirmation.statut == ControlPointStatus.ABSENT
        assert AUTO_CHECK_POINT_NOTE in confirmation.commentaire
        assert result.steps[1].score == 0

    def test_negative_citation_index_dropped_without_gating(
        self, audit_config, case_transcripts, good_answers, fast_options,
    ):
        answer = step_payload(
            score=5,
            points=[
                point("Présentation du conseiller", "PRESENT", [cite(QUOTE_INTRO)]),
                point("Mention du numéro ORIAS", "PRESENT", [cite(QUOTE_ORIAS, recording_index=-1)]),
            ],
        )
        client = FakeAnalysisClient(responses={1: [answer], 2: [good_answers[2]], 3: [good_answers[3]]})
        result = _run(audit_config, case_transcripts, client, fast_options, evidence_gating=False)

        data = result.to_dict()
        orias = data["steps"][0]["points_controle"][1]
        assert orias["citations"] == []
        assert orias["statut"] == "ABSENT"
        assert result.steps[0].total_citations == 1

    def test_slow_sink_bounded_by_flush_timeout(self, audit_config, case_transcripts, good_answers, fast_options):
        client = FakeAnalysisClient(responses={k: [v] for k, v in good_answers.items()})
        started = time.monotonic()
        result = _run(
            audit_config, case_transcripts, client, fast_options,
            sink=SlowSink(), flush_timeout_s=0.05,
        )

        assert time.monotonic() - started < 2.0
        assert result.run.successful == 3


class TestResultSchema:

    def test_document_validates(self, audit_config, case_transcripts, good_answers, fast_options):
        client = FakeAnalysisClient(responses={k: [v] for k, v in good_answers.items()})
        document = _run(audit_config, case_transcripts, client, fast_options).to_dict()
        validate_result_document(document)

    def test_invalid_document_rejected(self, audit_config, case_transcripts, good_answers, fast_options):
        client = FakeAnalysisClient(responses={k: [v] for k, v in good_answers.items()})
        document = _run(audit_config, case_transcripts, client, fast_options).to_dict()
        document["compliance"]["niveau"] = "MOYEN"
        with pytest.raises(jsonschema.ValidationError):
            validate_result_document(document)

    def test_absent_point_with_citation_rejected(self, audit_config, case_transcripts, good_answers, fast_options):
        client = FakeAnalysisClient(responses={k: [v] for k, v in good_answers.items()})
        document = _run(audit_config, case_transcripts, client, fast_options).to_dict()
        step = document["steps"][0]
        step["points_controle"][0]["statut"] = "ABSENT"
        with pytest.raises(jsonschema.ValidationError):
            validate_result_document(document)
