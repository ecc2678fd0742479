"""Step analysis orchestration: one model call per step, retried, fanned out.

WHY: An audit is a set of independent step analyses over the same
timeline. Each step must survive flaky model output on its own, a failed
step must never take its siblings down, and the fan-out must stay within
the model provider's concurrent-request budget.

HOW: analyze_step() builds the prompt, calls the AnalysisClient, repairs
and validates the output, and retries with linear backoff up to
max_retries. analyze_all() runs analyze_step() for every step through a
semaphore-bounded pool, converts per-step errors into StepAnalysisFailure
data, enforces a per-run deadline, and reports progress through an
optional ProgressEmitter.

RULES:
- Steps share only the read-only timeline text; no shared mutable state
- "All settled" join: a failed step is data, never an exception to siblings
- total_tokens sums successful steps only
- Product context fetch failures are logged and the step runs without it
- Progress emission is fire-and-forget (see call_audit.events)
"""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

import httpx

from call_audit.analysis.client import (
    AnalysisClient,
    AnalysisClientError,
    AnalysisParseError,
    parse_step_payload,
)
from call_audit.analysis.models import (
    StepAnalysisFailure,
    StepAnalysisResult,
    StepMetadata,
    StepOutcome,
    StepVerdict,
)
from call_audit.analysis.prompts import build_step_prompt
from call_audit.config import (
    ANALYSIS_CALL_TIMEOUT_S,
    ANALYSIS_MAX_RETRIES,
    ANALYSIS_RETRY_BACKOFF_S,
    AUDIT_RUN_TIMEOUT_S,
    AUDIT_STEP_CONCURRENCY,
)
from call_audit.core.ir import AuditConfig, AuditStepDefinition, ProductDocument
from call_audit.events import ProgressEmitter

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE = (AnalysisClientError, AnalysisParseError, httpx.HTTPError, asyncio.TimeoutError)


# ---------------------------------------------------------------------------
# Options, errors, ports
# ---------------------------------------------------------------------------


@dataclass
class AnalysisOptions:
    """Run-level overrides for the orchestration budgets (defaults from config)."""

    max_retries: int = ANALYSIS_MAX_RETRIES
    concurrency: int = AUDIT_STEP_CONCURRENCY
    call_timeout_s: float = ANALYSIS_CALL_TIMEOUT_S
    run_timeout_s: float = AUDIT_RUN_TIMEOUT_S
    retry_backoff_s: float = ANALYSIS_RETRY_BACKOFF_S


class StepAnalysisError(Exception):
    """Raised when one step exhausted its retry budget.

    RULES:
    - Carries the step position, name, and the last underlying error
    - analyze_all() turns it into a StepAnalysisFailure; it never escapes a run
    """

    def __init__(self, position: int, name: str, last_error: Optional[BaseException]) -> None:
        self.position = position
        self.name = name
        self.last_error = last_error
        detail = str(last_error) if last_error is not None else "no attempt made"
        super().__init__(
            "Step {} ({}) failed after retries: {}".format(position, name, detail or type(last_error).__name__)
        )


class ProductContextProvider(abc.ABC):
    """Source of product-verification documents for steps that need them."""

    @abc.abstractmethod
    async def fetch(self, step: AuditStepDefinition) -> List[ProductDocument]:
        """Return zero or more documents relevant to the step."""


@dataclass
class AnalysisRun:
    """Outcome of analyzing every step of a config once.

    RULES:
    - steps are ordered by step position, one outcome per configured step
    - total_tokens counts successful steps only
    """

    steps: List[StepOutcome] = field(default_factory=list)
    total_time_seconds: float = 0.0

    @property
    def successful(self) -> int:
        return sum(1 for s in self.steps if s.success)

    @property
    def failed(self) -> int:
        return sum(1 for s in self.steps if not s.success)

    @property
    def total_tokens(self) -> int:
        return sum(s.usage.total_tokens for s in self.steps if isinstance(s, StepAnalysisResult))


def step_metadata_for(step: AuditStepDefinition) -> StepMetadata:
    return StepMetadata(
        position=step.position,
        name=step.name,
        severity=step.severity_level,
        is_critical=step.is_critical,
        weight=step.weight,
    )


def failure_for(step: AuditStepDefinition, error: str) -> StepAnalysisFailure:
    return StepAnalysisFailure(error=error, step_metadata=step_metadata_for(step))


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class StepAnalysisOrchestrator:
    """Runs step analyses against an AnalysisClient with retry and bounded fan-out.

    RULES:
    - One instance can serve many runs; it holds no per-run state
    - options default to the config values
    - product_provider is optional; without it no documents are fetched
    """

    def __init__(
        self,
        client: AnalysisClient,
        options: Optional[AnalysisOptions] = None,
        product_provider: Optional[ProductContextProvider] = None,
    ) -> None:
        self._client = client
        self.options = options or AnalysisOptions()
        self._product_provider = product_provider

    async def fetch_product_documents(self, step: AuditStepDefinition) -> List[ProductDocument]:
        """Fetch product documents for a step; failures degrade to no documents."""
        if self._product_provider is None:
            return []
        try:
            return list(await self._product_provider.fetch(step))
        except Exception as exc:
            logger.warning(
                "Product context unavailable for step %d (%s): %s",
                step.position, step.name, exc,
            )
            return []

    async def gather_bounded(self, jobs: Sequence[Callable[[], Awaitable[T]]]) -> List[T]:
        """Run job factories concurrently, at most options.concurrency at a time.

        Results keep the order of jobs. Jobs are expected to capture their
        own failures; an exception raised by a job propagates.
        """
        semaphore = asyncio.Semaphore(max(1, int(self.options.concurrency)))

        async def _run(job: Callable[[], Awaitable[T]]) -> T:
            async with semaphore:
                return await job()

        return list(await asyncio.gather(*(_run(job) for job in jobs)))

    async def analyze_step(
        self,
        step: AuditStepDefinition,
        config: AuditConfig,
        timeline_text: str,
        product_documents: Optional[Sequence[ProductDocument]] = None,
    ) -> StepAnalysisResult:
        """Analyze one step, retrying transient and parse failures.

        WHY: Model calls fail in ordinary ways (timeouts, 5xx, malformed
        JSON). Retrying the single step is cheap compared to failing it.

        HOW: Builds the prompt once, then loops: call the client under the
        per-call timeout, repair and validate the output, and return the
        enriched result. Waits retry_backoff_s * attempt between attempts.

        RULES:
        - product_documents=None means "fetch if the step needs them"
        - Raises StepAnalysisError once max_retries attempts have failed
        - Errors outside the retryable set are not retried and propagate
          to the caller (analyze_all() records them as step failures)
        """
        if product_documents is None and step.verify_product_info:
            product_documents = await self.fetch_product_documents(step)

        prompt = build_step_prompt(step, config, timeline_text, product_documents)
        metadata = step_metadata_for(step)
        max_retries = max(1, int(self.options.max_retries))

        logger.info("Analyzing step %d (%s)", step.position, step.name)
        logger.debug("Step %d prompt: %d chars", step.position, len(prompt))

        last_error: Optional[BaseException] = None
        for attempt in range(1, max_retries + 1):
            try:
                response = await asyncio.wait_for(
                    self._client.complete(prompt),
                    timeout=self.options.call_timeout_s,
                )
                payload = parse_step_payload(response.text)
            except _RETRYABLE as exc:
                last_error = exc
                logger.warning(
                    "Step %d (%s) attempt %d/%d failed: %s",
                    step.position, step.name, attempt, max_retries,
                    exc or type(exc).__name__,
                )
                if attempt < max_retries and self.options.retry_backoff_s > 0:
                    await asyncio.sleep(self.options.retry_backoff_s * attempt)
                continue

            result = StepAnalysisResult.from_payload(payload, metadata, response.usage)
            logger.info(
                "Step %d (%s) analyzed: score %d/%d, %s, %d citation(s)",
                step.position, step.name, result.score, step.weight,
                result.conforme.value, result.total_citations,
            )
            return result

        raise StepAnalysisError(step.position, step.name, last_error)

    async def analyze_all(
        self,
        config: AuditConfig,
        timeline_text: str,
        emitter: Optional[ProgressEmitter] = None,
    ) -> AnalysisRun:
        """Analyze every step of the config in parallel and collect all outcomes.

        WHY: Steps are independent; running them concurrently keeps an
        audit within minutes instead of step-count × call latency.

        HOW: One job per step through gather_bounded(). Each job computes
        the time left before the run deadline when it starts, runs
        analyze_step() under that limit, and converts any error it raises
        (exhausted retries, deadline, unexpected client errors) into a
        StepAnalysisFailure. After each step settles the emitter is
        notified.

        RULES:
        - Every configured step yields exactly one outcome
        - Steps that start after the deadline fail without calling the model
        - Progress "completed" counts settled steps (successes and failures)
        """
        started = time.monotonic()
        deadline = started + float(self.options.run_timeout_s)
        total = len(config.steps)
        settled = {"completed": 0, "failed": 0}

        logger.info(
            "Starting analysis of %d step(s) for config %s (concurrency %d)",
            total, config.id or config.name, self.options.concurrency,
        )
        if emitter is not None:
            emitter.progress(completed=0, total=total, failed=0, phase="analysis")

        async def _run_step(step: AuditStepDefinition) -> StepOutcome:
            remaining = deadline - time.monotonic()
            outcome: StepOutcome
            try:
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                outcome = await asyncio.wait_for(
                    self.analyze_step(step, config, timeline_text),
                    timeout=remaining,
                )
            except StepAnalysisError as exc:
                outcome = failure_for(step, str(exc))
            except asyncio.TimeoutError:
                outcome = failure_for(
                    step,
                    "Audit run deadline of {:.0f}s exceeded".format(self.options.run_timeout_s),
                )
                logger.warning("Step %d (%s) hit the run deadline", step.position, step.name)
            except Exception as exc:
                outcome = failure_for(step, "{}: {}".format(type(exc).__name__, exc))
                logger.warning(
                    "Step %d (%s) failed with unexpected error: %r",
                    step.position, step.name, exc,
                )

            settled["completed"] += 1
            if not outcome.success:
                settled["failed"] += 1
            if emitter is not None:
                _notify(emitter, step, outcome)
                emitter.progress(
                    completed=settled["completed"], total=total,
                    failed=settled["failed"], phase="analysis",
                )
            return outcome

        outcomes = await self.gather_bounded(
            [lambda step=step: _run_step(step) for step in config.steps]
        )
        run = AnalysisRun(steps=outcomes, total_time_seconds=round(time.monotonic() - started, 3))

        logger.info(
            "Analysis finished: %d successful, %d failed, %d tokens, %.1fs",
            run.successful, run.failed, run.total_tokens, run.total_time_seconds,
        )
        return run


def _notify(emitter: ProgressEmitter, step: AuditStepDefinition, outcome: StepOutcome) -> None:
    if isinstance(outcome, StepAnalysisResult):
        emitter.step_completed(
            position=step.position,
            name=step.name,
            score=outcome.score,
            weight=step.weight,
            compliant=outcome.conforme == StepVerdict.CONFORME,
            citation_count=outcome.total_citations,
            tokens=outcome.usage.total_tokens,
        )
    else:
        emitter.step_failed(position=step.position, name=step.name, error=outcome.error)
