"""Full audit pipeline: timeline → step analyses → evidence checks → score.

WHY: Callers (CLI, job workers) want one call that turns a case's
recordings and an audit config into a finished, scored audit. Keeping the
glue in one place keeps the stage order identical everywhere.

HOW: run_audit() builds the timeline, hands it to the orchestrator's
fan-out, enriches and gates citations, then scores the outcomes. Progress
goes through an optional ProgressSink wrapped in a ProgressEmitter.

RULES:
- Failed steps stay in the step list as StepAnalysisFailure entries
- The compliance score is always computed from the final (gated) outcomes
- Nothing is persisted here; AuditResult is plain data for the caller
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import jsonschema

from call_audit.analysis.evidence import EvidenceGatingStats, enrich_citations, gate_step_results
from call_audit.analysis.models import ComplianceScore, StepOutcome
from call_audit.analysis.orchestrator import AnalysisRun, StepAnalysisOrchestrator
from call_audit.config import AUDIT_EVIDENCE_GATING, TIMELINE_CHUNK_SIZE
from call_audit.core.ir import AuditConfig, RecordingTranscript, Timeline
from call_audit.core.timeline import build_timeline
from call_audit.events import DEFAULT_FLUSH_TIMEOUT_S, ProgressEmitter, ProgressSink
from call_audit.scoring import compute_compliance

logger = logging.getLogger(__name__)

_SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "audit_result.schema.json"

_CACHED_SCHEMA: Optional[Dict[str, Any]] = None


def _get_schema() -> Dict[str, Any]:
    """Load the audit result JSON schema, cached after the first call."""
    global _CACHED_SCHEMA
    if _CACHED_SCHEMA is None:
        with open(_SCHEMA_PATH, encoding="utf-8") as f:
            _CACHED_SCHEMA = json.load(f)
    return _CACHED_SCHEMA


def validate_result_document(document: Dict[str, Any]) -> None:
    """Check an audit result document against the published schema.

    Raises:
        jsonschema.ValidationError: If the document does not conform.
    """
    jsonschema.validate(instance=document, schema=_get_schema())


@dataclass
class AuditResult:
    """Everything one audit run produced.

    RULES:
    - to_dict() output is validated against audit_result.schema.json
      before it is returned; a mismatch raises
    """

    config: AuditConfig
    timeline: Timeline
    run: AnalysisRun
    steps: List[StepOutcome]
    evidence: EvidenceGatingStats
    compliance: ComplianceScore

    def to_dict(self) -> Dict[str, Any]:
        document = {
            "audit_config_id": self.config.id,
            "audit_config_name": self.config.name,
            "compliance": self.compliance.model_dump(mode="json"),
            "steps": [s.model_dump(mode="json") for s in self.steps],
            "statistics": {
                "recordings": len(self.timeline.recordings),
                "chunks": self.timeline.total_chunks,
                "successful_steps": self.run.successful,
                "failed_steps": self.run.failed,
                "total_tokens": self.run.total_tokens,
                "total_time_seconds": self.run.total_time_seconds,
            },
            "evidence_gating": self.evidence.to_dict(),
        }
        validate_result_document(document)
        return document


async def run_audit(
    config: AuditConfig,
    transcripts: Sequence[RecordingTranscript],
    orchestrator: StepAnalysisOrchestrator,
    sink: Optional[ProgressSink] = None,
    chunk_size: int = TIMELINE_CHUNK_SIZE,
    evidence_gating: Optional[bool] = None,
    flush_timeout_s: float = DEFAULT_FLUSH_TIMEOUT_S,
) -> AuditResult:
    """Run a complete audit of one case.

    RULES:
    - transcripts must already be in chronological order
    - evidence_gating=None uses AUDIT_EVIDENCE_GATING
    - A sink failure never affects the result
    - A slow sink can delay the return by up to flush_timeout_s while
      pending progress events are flushed; undelivered events are dropped
    """
    gating = AUDIT_EVIDENCE_GATING if evidence_gating is None else evidence_gating
    logger.info(
        "Running audit %s (%d step(s)) over %d recording(s)",
        config.name or config.id, len(config.steps), len(transcripts),
    )

    timeline = build_timeline(transcripts, chunk_size)

    async with ProgressEmitter(sink, flush_timeout_s=flush_timeout_s) as emitter:
        run = await orchestrator.analyze_all(config, timeline.text, emitter=emitter)
        steps = enrich_citations(run.steps, timeline)
        steps, evidence = gate_step_results(steps, timeline, enabled=gating)
        compliance = compute_compliance(config.steps, steps)
        emitter.progress(
            completed=len(steps), total=len(config.steps), failed=run.failed, phase="scoring",
        )

    logger.info(
        "Audit %s finished: %.2f%% %s (critical %s), %d failed step(s)",
        config.name or config.id, compliance.score, compliance.niveau.value,
        compliance.points_critiques, run.failed,
    )
    return AuditResult(
        config=config,
        timeline=timeline,
        run=run,
        steps=steps,
        evidence=evidence,
        compliance=compliance,
    )
