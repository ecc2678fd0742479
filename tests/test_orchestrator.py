"""Tests for step analysis orchestration.

WHY: The orchestrator is where partial failure, retries, concurrency and
deadlines meet. A regression here either fails whole audits because of one
bad step or silently drops steps.

HOW: FakeAnalysisClient scripts per-step answers (including exceptions and
malformed text). A recording ProgressSink captures emitted events. All
async code runs through asyncio.run() inside plain pytest tests.

RULES:
- Options use zero backoff so retries are instant
- Tokens: every fake call reports 150 total tokens
"""

import asyncio
import dataclasses
import json
import logging

import httpx
import pytest

from call_audit.analysis.client import AnalysisAPIError, AnalysisClientError, OpenAIAnalysisClient
from call_audit.analysis.models import StepAnalysisFailure, StepAnalysisResult, StepVerdict
from call_audit.analysis.orchestrator import (
    AnalysisRun,
    ProductContextProvider,
    StepAnalysisError,
    StepAnalysisOrchestrator,
)
from call_audit.core.ir import AuditConfig, AuditStepDefinition, ProductDocument
from call_audit.events import ProgressEmitter, ProgressSink
from factories import FakeAnalysisClient, step_payload, step_position_of


class RecordingSink(ProgressSink):
    def __init__(self):
        self.events = []

    async def step_completed(self, **kwargs):
        self.events.append(("step_completed", kwargs))

    async def step_failed(self, **kwargs):
        self.events.append(("step_failed", kwargs))

    async def progress(self, **kwargs):
        self.events.append(("progress", kwargs))


class ExplodingSink(ProgressSink):
    async def step_completed(self, **kwargs):
        raise RuntimeError("webhook down")


class StaticProvider(ProductContextProvider):
    def __init__(self, documents=None, error=None):
        self.documents = documents or []
        self.error = error
        self.calls = 0

    async def fetch(self, step):
        self.calls += 1
        if self.error:
            raise self.error
        return self.documents


class ConcurrencyProbeClient(FakeAnalysisClient):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.in_flight = 0
        self.max_in_flight = 0

    async def complete(self, prompt):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            return await super().complete(prompt)
        finally:
            self.in_flight -= 1


@pytest.fixture
def five_step_config(audit_config):
    extra = [
        AuditStepDefinition(position=4, name="Étape 4", description="d", prompt="p", weight=1),
        AuditStepDefinition(position=5, name="Étape 5", description="d", prompt="p", weight=1),
    ]
    return dataclasses.replace(audit_config, steps=list(audit_config.steps) + extra)


def _analyze_all(orchestrator, config, timeline_text, sink=None):
    async def _go():
        async with ProgressEmitter(sink) as emitter:
            return await orchestrator.analyze_all(config, timeline_text, emitter)

    return asyncio.run(_go())


class TestPartialFailure:
    """One step failing does not affect the others."""

    def test_failed_step_is_data(self, five_step_config, good_answers, case_timeline, fast_options):
        client = FakeAnalysisClient(
            responses={
                1: [good_answers[1]],
                2: [good_answers[2]],
                3: [AnalysisAPIError(503, "overloaded")],
            },
            default=step_payload(score=1),
        )
        orchestrator = StepAnalysisOrchestrator(client, fast_options)
        run = _analyze_all(orchestrator, five_step_config, case_timeline.text)

        assert isinstance(run, AnalysisRun)
        assert len(run.steps) == 5
        assert run.successful == 4
        assert run.failed == 1
        assert run.total_tokens == 4 * 150

        failure = run.steps[2]
        assert isinstance(failure, StepAnalysisFailure)
        assert failure.success is False
        assert failure.step_metadata.position == 3
        assert "overloaded" in failure.error
        assert client.calls[3] == fast_options.max_retries

    def test_non_json_http_body_fails_only_that_step(self, audit_config, good_answers, case_timeline, fast_options):
        def handler(request):
            prompt = json.loads(request.content)["messages"][0]["content"]
            position = step_position_of(prompt)
            if position == 3:
                return httpx.Response(200, text="<html>Bad gateway</html>")
            return httpx.Response(200, json={
                "choices": [{"message": {"content": json.dumps(good_answers[position])}}],
                "usage": {"prompt_tokens": 100, "completion_tokens": 50, "total_tokens": 150},
            })

        async def _go():
            async with OpenAIAnalysisClient(
                api_key="k", base_url="https://llm.test/v1", transport=httpx.MockTransport(handler)
            ) as client:
                return await StepAnalysisOrchestrator(client, fast_options).analyze_all(
                    audit_config, case_timeline.text
                )

        run = asyncio.run(_go())
        assert run.successful == 2
        assert run.failed == 1
        assert "Unexpected chat completion body" in run.steps[2].error

    def test_outcomes_ordered_by_position(self, five_step_config, case_timeline, fast_options):
        client = FakeAnalysisClient(default=step_payload(score=1))
        run = _analyze_all(StepAnalysisOrchestrator(client, fast_options), five_step_config, case_timeline.text)
        assert [s.step_metadata.position for s in run.steps] == [1, 2, 3, 4, 5]

    def test_metadata_stamped_from_config(self, audit_config, good_answers, case_timeline, fast_options):
        client = FakeAnalysisClient(responses={k: [v] for k, v in good_answers.items()})
        run = _analyze_all(StepAnalysisOrchestrator(client, fast_options), audit_config, case_timeline.text)
        first = run.steps[0]
        assert isinstance(first, StepAnalysisResult)
        assert first.step_metadata.is_critical is True
        assert first.step_metadata.weight == 5
        assert first.step_metadata.severity == "HIGH"
        assert first.total_citations == 2
        assert first.usage.total_tokens == 150


class TestRetries:

    def test_transient_error_then_success(self, audit_config, good_answers, case_timeline, fast_options):
        client = FakeAnalysisClient(responses={1: [AnalysisClientError("reset"), good_answers[1]]})
        orchestrator = StepAnalysisOrchestrator(client, fast_options)
        result = asyncio.run(orchestrator.analyze_step(audit_config.steps[0], audit_config, case_timeline.text))
        assert result.conforme == StepVerdict.CONFORME
        assert client.calls[1] == 2

    def test_malformed_output_retried(self, audit_config, good_answers, case_timeline, fast_options):
        client = FakeAnalysisClient(responses={1: ["Désolé, je ne peux pas.", good_answers[1]]})
        orchestrator = StepAnalysisOrchestrator(client, fast_options)
        result = asyncio.run(orchestrator.analyze_step(audit_config.steps[0], audit_config, case_timeline.text))
        assert result.score == 5
        assert client.calls[1] == 2

    def test_exhausted_retries_raise(self, audit_config, case_timeline, fast_options):
        client = FakeAnalysisClient(responses={1: [AnalysisAPIError(500, "boom")]})
        orchestrator = StepAnalysisOrchestrator(client, fast_options)
        with pytest.raises(StepAnalysisError) as exc_info:
            asyncio.run(orchestrator.analyze_step(audit_config.steps[0], audit_config, case_timeline.text))
        assert exc_info.value.position == 1
        assert isinstance(exc_info.value.last_error, AnalysisAPIError)
        assert client.calls[1] == 3

    def test_call_timeout_is_retryable(self, audit_config, case_timeline, fast_options):
        options = dataclasses.replace(fast_options, call_timeout_s=0.01, max_retries=2)
        client = FakeAnalysisClient(default=step_payload(), delay_s=0.2)
        orchestrator = StepAnalysisOrchestrator(client, options)
        with pytest.raises(StepAnalysisError):
            asyncio.run(orchestrator.analyze_step(audit_config.steps[1], audit_config, case_timeline.text))

    def test_unexpected_error_not_retried(self, audit_config, case_timeline, fast_options):
        client = FakeAnalysisClient(responses={1: [KeyError("bug")]})
        orchestrator = StepAnalysisOrchestrator(client, fast_options)
        with pytest.raises(KeyError):
            asyncio.run(orchestrator.analyze_step(audit_config.steps[0], audit_config, case_timeline.text))
        assert client.calls[1] == 1

    def test_unexpected_error_isolated_in_fan_out(self, audit_config, good_answers, case_timeline, fast_options):
        client = FakeAnalysisClient(responses={
            1: [good_answers[1]], 2: [RuntimeError("boom")], 3: [good_answers[3]],
        })
        run = _analyze_all(StepAnalysisOrchestrator(client, fast_options), audit_config, case_timeline.text)

        assert run.successful == 2
        assert run.failed == 1
        failure = run.steps[1]
        assert isinstance(failure, StepAnalysisFailure)
        assert failure.error == "RuntimeError: boom"
        assert client.calls[2] == 1


class TestConcurrencyAndDeadline:

    def test_concurrency_bound(self, five_step_config, case_timeline, fast_options):
        client = ConcurrencyProbeClient(default=step_payload(score=1), delay_s=0.02)
        options = dataclasses.replace(fast_options, concurrency=2)
        run = _analyze_all(StepAnalysisOrchestrator(client, options), five_step_config, case_timeline.text)
        assert run.successful == 5
        assert client.max_in_flight <= 2

    def test_run_deadline_fails_remaining_steps(self, five_step_config, case_timeline, fast_options):
        options = dataclasses.replace(fast_options, concurrency=1, run_timeout_s=0.05)
        client = FakeAnalysisClient(default=step_payload(score=1), delay_s=0.2)
        run = _analyze_all(StepAnalysisOrchestrator(client, options), five_step_config, case_timeline.text)

        assert len(run.steps) == 5
        assert run.failed == 5
        assert all("deadline" in s.error for s in run.steps)
        assert len(client.prompts) == 0


class TestProgressEvents:

    def test_events_for_every_step(self, audit_config, good_answers, case_timeline, fast_options):
        sink = RecordingSink()
        client = FakeAnalysisClient(responses={1: [good_answers[1]], 2: [good_answers[2]], 3: [AnalysisClientError("x")]})
        _analyze_all(StepAnalysisOrchestrator(client, fast_options), audit_config, case_timeline.text, sink)

        kinds = [kind for kind, _ in sink.events]
        assert kinds.count("step_completed") == 2
        assert kinds.count("step_failed") == 1

        progress = [kw for kind, kw in sink.events if kind == "progress"]
        assert progress[0] == {"completed": 0, "total": 3, "failed": 0, "phase": "analysis"}
        assert progress[-1] == {"completed": 3, "total": 3, "failed": 1, "phase": "analysis"}

        completed = dict((kw["position"], kw) for kind, kw in sink.events if kind == "step_completed")
        assert completed[1]["compliant"] is True
        assert completed[1]["citation_count"] == 2
        assert completed[1]["tokens"] == 150

    def test_failing_sink_does_not_fail_run(self, audit_config, good_answers, case_timeline, fast_options, caplog):
        client = FakeAnalysisClient(responses={k: [v] for k, v in good_answers.items()})
        orchestrator = StepAnalysisOrchestrator(client, fast_options)

        async def _go():
            async with ProgressEmitter(ExplodingSink()) as emitter:
                run = await orchestrator.analyze_all(audit_config, case_timeline.text, emitter)
            return run, emitter

        with caplog.at_level(logging.WARNING, logger="call_audit.events"):
            run, emitter = asyncio.run(_go())
        assert run.successful == 3
        assert emitter.dropped == 3
        assert any("webhook down" in r.getMessage() for r in caplog.records)


class TestProductContext:

    def test_documents_fetched_for_verification_steps(self, audit_config, good_answers, case_timeline, fast_options):
        provider = StaticProvider([ProductDocument(title="Santé Plus", content="Plafond dentaire 300€.")])
        client = FakeAnalysisClient(responses={k: [v] for k, v in good_answers.items()})
        run = _analyze_all(
            StepAnalysisOrchestrator(client, fast_options, provider), audit_config, case_timeline.text
        )
        assert run.successful == 3
        assert provider.calls == 1
        step3_prompt = next(p for p in client.prompts if "ÉTAPE 3/3" in p)
        assert "Plafond dentaire 300€." in step3_prompt

    def test_provider_failure_degrades(self, audit_config, good_answers, case_timeline, fast_options, caplog):
        provider = StaticProvider(error=ConnectionError("catalog offline"))
        client = FakeAnalysisClient(responses={k: [v] for k, v in good_answers.items()})
        with caplog.at_level(logging.WARNING):
            run = _analyze_all(
                StepAnalysisOrchestrator(client, fast_options, provider), audit_config, case_timeline.text
            )
        assert run.successful == 3
        step3_prompt = next(p for p in client.prompts if "ÉTAPE 3/3" in p)
        assert "DOCUMENTATION PRODUIT" not in step3_prompt
        assert any("catalog offline" in r.getMessage() for r in caplog.records)

    def test_config_without_steps(self, case_timeline, fast_options):
        empty = AuditConfig(id="empty", name="Vide", system_prompt="", steps=[])
        run = _analyze_all(StepAnalysisOrchestrator(FakeAnalysisClient(), fast_options), empty, case_timeline.text)
        assert run.steps == []
        assert run.total_tokens == 0
