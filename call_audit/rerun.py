"""Rerun of a single step or control point against authoritative stored state.

WHY: Supervisors challenge individual verdicts ("the advisor DID mention
ORIAS at 03:12"). Re-running the whole audit is slow and noisy; instead
one step, or one control point inside a step, is re-analyzed, optionally
with operator guidance, and diffed against what was stored.

HOW: Every rerun walks the same stages:
  LOAD_ORIGINAL → REBUILD_TIMELINE → RELINK_PRODUCT → REANALYZE → COMPARE
The timeline is rebuilt from stored transcripts (word-level when present,
synthesized from plain text otherwise). Re-analysis goes through the
orchestrator's single-step path; citations are enriched and gated like in
a full run. The comparison is a read-only snapshot; nothing is written.

RULES:
- Load failures (audit, config, step definition) raise NotFoundError
  before any analysis starts
- Bad control-point indexes raise InvalidRerunRequest before any analysis
- The stored original is never mutated; merge_control_point_rerun()
  builds the replacement explicitly for callers that want to persist it
- Batch control-point reruns are all-settled: per-point failures are data
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from call_audit.analysis.client import AnalysisParseError
from call_audit.analysis.evidence import enrich_citations, gate_step_results
from call_audit.analysis.models import (
    ControlPointComparison,
    ControlPointResult,
    RerunComparison,
    StepAnalysisResult,
)
from call_audit.analysis.orchestrator import StepAnalysisOrchestrator
from call_audit.analysis.prompts import (
    build_control_point_rerun_instructions,
    normalize_for_match,
)
from call_audit.config import AUDIT_EVIDENCE_GATING, TIMELINE_CHUNK_SIZE
from call_audit.core.ir import AuditConfig, AuditStepDefinition, ProductDocument, Timeline
from call_audit.core.timeline import build_timeline
from call_audit.scoring import derive_step_from_control_points
from call_audit.store import AuditRepository, StoredAudit, recordings_to_transcripts

logger = logging.getLogger(__name__)


class NotFoundError(LookupError):
    """Raised when a rerun references an audit, config, step or result that doesn't exist."""


class InvalidRerunRequest(ValueError):
    """Raised when a rerun request is well-formed but cannot apply (e.g. bad index)."""


class RerunStage(str, Enum):
    LOAD_ORIGINAL = "load_original"
    REBUILD_TIMELINE = "rebuild_timeline"
    RELINK_PRODUCT = "relink_product"
    REANALYZE = "reanalyze"
    COMPARE = "compare"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class StepRerunResult:
    audit_id: str
    step_position: int
    original: StepAnalysisResult
    rerun: StepAnalysisResult
    comparison: RerunComparison
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "audit_id": self.audit_id,
            "step_position": self.step_position,
            "original": self.original.model_dump(mode="json"),
            "rerun": self.rerun.model_dump(mode="json"),
            "comparison": self.comparison.model_dump(mode="json", by_alias=True),
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class ControlPointRerunResult:
    audit_id: str
    step_position: int
    control_point_index: int
    control_point: str
    original: Optional[ControlPointResult]
    rerun: ControlPointResult
    comparison: ControlPointComparison
    rerun_step: StepAnalysisResult
    success: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "audit_id": self.audit_id,
            "step_position": self.step_position,
            "control_point_index": self.control_point_index,
            "control_point": self.control_point,
            "original": self.original.model_dump(mode="json") if self.original else None,
            "rerun": self.rerun.model_dump(mode="json"),
            "comparison": self.comparison.model_dump(mode="json", by_alias=True),
            "usage": self.rerun_step.usage.model_dump(mode="json"),
        }


@dataclass
class ControlPointRerunFailure:
    control_point_index: int
    control_point: str
    error: str
    success: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "control_point_index": self.control_point_index,
            "control_point": self.control_point,
            "error": self.error,
        }


ControlPointRerunOutcome = Union[ControlPointRerunResult, ControlPointRerunFailure]


# ---------------------------------------------------------------------------
# Comparison and merge (pure)
# ---------------------------------------------------------------------------


def compare_step_results(original: StepAnalysisResult, new: StepAnalysisResult) -> RerunComparison:
    """Diff two step results by strict inequality of score, verdict and citation count."""
    return RerunComparison(
        score_changed=original.score != new.score,
        conforme_changed=original.conforme != new.conforme,
        citations_changed=original.total_citations != new.total_citations,
        original_score=original.score,
        new_score=new.score,
        original_conforme=original.conforme,
        new_conforme=new.conforme,
    )


def compare_control_points(
    original: Optional[ControlPointResult],
    new: ControlPointResult,
) -> ControlPointComparison:
    """Diff a stored control point against its rerun; no original counts as changed."""
    if original is None:
        return ControlPointComparison(
            statut_changed=True,
            citations_changed=True,
            new_statut=new.statut,
            new_citations=len(new.citations),
        )
    return ControlPointComparison(
        statut_changed=original.statut != new.statut,
        citations_changed=len(original.citations) != len(new.citations),
        original_statut=original.statut,
        new_statut=new.statut,
        original_citations=len(original.citations),
        new_citations=len(new.citations),
    )


def find_original_control_point(
    result: Optional[StepAnalysisResult],
    control_point_index: int,
    control_point_text: str,
) -> Optional[ControlPointResult]:
    """Locate the stored control point: text match first, else the same index."""
    if result is None or not result.points_controle:
        return None
    points = result.points_controle
    by_index = points[control_point_index - 1] if 0 < control_point_index <= len(points) else None

    wanted = normalize_for_match(control_point_text)
    candidates = ([by_index] if by_index is not None else []) + list(points)
    for point in candidates:
        if normalize_for_match(point.point) == wanted:
            return point
    return by_index


def pick_rerun_control_point(result: StepAnalysisResult, control_point_text: str) -> ControlPointResult:
    """Pick the re-analyzed point: the only one, else a text match, else the first."""
    points = result.points_controle
    if not points:
        raise AnalysisParseError("Rerun analysis returned no control points")
    if len(points) == 1:
        return points[0]
    wanted = normalize_for_match(control_point_text)
    for point in points:
        if normalize_for_match(point.point) == wanted:
            return point
    return points[0]


def merge_control_point_rerun(
    original: StepAnalysisResult,
    control_point_index: int,
    new_point: ControlPointResult,
) -> StepAnalysisResult:
    """Build a new step result with one control point replaced and the step re-derived.

    RULES:
    - control_point_index is 1-based into original.points_controle
    - score, conforme, niveau_conformite, minutages and total_citations are
      recomputed from the merged points
    - The original result is left untouched
    """
    points = list(original.points_controle)
    if not 0 < control_point_index <= len(points):
        raise InvalidRerunRequest(
            "Control point {} is out of range (step has {} stored point(s))".format(
                control_point_index, len(points)
            )
        )
    points[control_point_index - 1] = new_point
    derived = derive_step_from_control_points(points, original.step_metadata.weight)
    return original.model_copy(update={
        "points_controle": points,
        "score": derived.score,
        "conforme": derived.conforme,
        "niveau_conformite": derived.niveau_conformite,
        "minutages": derived.minutages,
        "total_citations": derived.total_citations,
    })


def _combine_instructions(*parts: Optional[str]) -> Optional[str]:
    kept = [p.strip() for p in parts if p and p.strip()]
    return "\n\n".join(kept) if kept else None


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class RerunCoordinator:
    """Re-executes one step or control point of a stored audit and diffs the outcome.

    RULES:
    - Holds no per-request state; safe to share across concurrent reruns
    - evidence_gating defaults to AUDIT_EVIDENCE_GATING
    """

    def __init__(
        self,
        repository: AuditRepository,
        orchestrator: StepAnalysisOrchestrator,
        chunk_size: int = TIMELINE_CHUNK_SIZE,
        evidence_gating: Optional[bool] = None,
    ) -> None:
        self._repository = repository
        self._orchestrator = orchestrator
        self._chunk_size = chunk_size
        self._evidence_gating = AUDIT_EVIDENCE_GATING if evidence_gating is None else evidence_gating

    def _stage(self, stage: RerunStage, audit_id: str, step_position: int) -> None:
        logger.info("Rerun audit %s step %d: %s", audit_id, step_position, stage.value)

    # ------------------------------------------------------------------
    # Load / rebuild
    # ------------------------------------------------------------------

    async def _load(
        self, audit_id: str, step_position: int
    ) -> Tuple[StoredAudit, AuditConfig, AuditStepDefinition]:
        self._stage(RerunStage.LOAD_ORIGINAL, audit_id, step_position)
        audit = await self._repository.get_audit(audit_id)
        if audit is None:
            raise NotFoundError("Audit {} not found".format(audit_id))
        config = await self._repository.get_audit_config(audit.audit_config_id)
        if config is None:
            raise NotFoundError(
                "Audit config {} (audit {}) not found".format(audit.audit_config_id, audit_id)
            )
        step = config.get_step(step_position)
        if step is None:
            raise NotFoundError(
                "Step {} not found in audit config {}".format(step_position, config.id)
            )
        return audit, config, step

    async def rebuild_timeline(self, fiche_id: str) -> Timeline:
        """Rebuild a case timeline from stored transcripts only.

        RULES:
        - Word-level transcript preferred; plain text synthesized otherwise
        - Recordings with neither are skipped with a warning
        - recording_index follows the kept recordings, in stored order
        """
        recordings = await self._repository.get_recordings(fiche_id)
        timeline = build_timeline(recordings_to_transcripts(recordings), self._chunk_size)
        logger.info(
            "Timeline rebuilt for case %s: %d of %d recording(s), %d chunk(s)",
            fiche_id, len(timeline.recordings), len(recordings), timeline.total_chunks,
        )
        return timeline

    async def _relink_product(self, step: AuditStepDefinition) -> Optional[List[ProductDocument]]:
        if not step.verify_product_info:
            return None
        return await self._orchestrator.fetch_product_documents(step)

    def _finalize(self, result: StepAnalysisResult, timeline: Timeline) -> StepAnalysisResult:
        outcomes, _ = gate_step_results(
            enrich_citations([result], timeline), timeline, enabled=self._evidence_gating
        )
        return outcomes[0]  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Step rerun
    # ------------------------------------------------------------------

    async def rerun_step(
        self,
        audit_id: str,
        step_position: int,
        custom_instructions: Optional[str] = None,
    ) -> StepRerunResult:
        """Re-analyze one step and compare it with the stored result.

        RULES:
        - Stored result missing → NotFoundError
        - Operator instructions are appended after the step's own
        - Raises StepAnalysisError if the analysis exhausts its retries
        """
        started = time.monotonic()
        audit, config, step = await self._load(audit_id, step_position)
        original = audit.step_results.get(step_position)
        if original is None:
            raise NotFoundError(
                "Audit {} has no stored result for step {}".format(audit_id, step_position)
            )

        self._stage(RerunStage.REBUILD_TIMELINE, audit_id, step_position)
        timeline = await self.rebuild_timeline(audit.fiche_id)

        self._stage(RerunStage.RELINK_PRODUCT, audit_id, step_position)
        documents = await self._relink_product(step)

        self._stage(RerunStage.REANALYZE, audit_id, step_position)
        step_for_analysis = dataclasses.replace(
            step,
            custom_instructions=_combine_instructions(step.custom_instructions, custom_instructions),
        )
        rerun = await self._orchestrator.analyze_step(
            step_for_analysis, config, timeline.text, product_documents=documents or []
        )
        rerun = self._finalize(rerun, timeline)

        self._stage(RerunStage.COMPARE, audit_id, step_position)
        comparison = compare_step_results(original, rerun)
        logger.info(
            "Rerun audit %s step %d: score %d → %d, %s → %s",
            audit_id, step_position, original.score, rerun.score,
            original.conforme.value, rerun.conforme.value,
        )
        return StepRerunResult(
            audit_id=audit_id,
            step_position=step_position,
            original=original,
            rerun=rerun,
            comparison=comparison,
            duration_seconds=round(time.monotonic() - started, 3),
        )

    # ------------------------------------------------------------------
    # Control-point rerun
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_index(step: AuditStepDefinition, control_point_index: int) -> str:
        if not step.control_points:
            raise InvalidRerunRequest(
                "Step {} ({}) has no control points".format(step.position, step.name)
            )
        if not 1 <= control_point_index <= len(step.control_points):
            raise InvalidRerunRequest(
                "Control point index {} out of range 1..{} for step {}".format(
                    control_point_index, len(step.control_points), step.position
                )
            )
        return step.control_points[control_point_index - 1]

    async def _rerun_one_point(
        self,
        audit: StoredAudit,
        config: AuditConfig,
        step: AuditStepDefinition,
        control_point_index: int,
        timeline: Timeline,
        documents: Optional[List[ProductDocument]],
        instructions: Optional[str],
    ) -> ControlPointRerunResult:
        text = step.control_points[control_point_index - 1]
        original_step = audit.step_results.get(step.position)
        previous = find_original_control_point(original_step, control_point_index, text)

        scoped_step = dataclasses.replace(
            step,
            control_points=[text],
            custom_instructions=build_control_point_rerun_instructions(
                step, control_point_index, text, previous, instructions
            ),
        )
        rerun_step = await self._orchestrator.analyze_step(
            scoped_step, config, timeline.text, product_documents=documents or []
        )
        rerun_step = self._finalize(rerun_step, timeline)
        point = pick_rerun_control_point(rerun_step, text)

        return ControlPointRerunResult(
            audit_id=audit.id,
            step_position=step.position,
            control_point_index=control_point_index,
            control_point=text,
            original=previous,
            rerun=point,
            comparison=compare_control_points(previous, point),
            rerun_step=rerun_step,
        )

    async def rerun_control_point(
        self,
        audit_id: str,
        step_position: int,
        control_point_index: int,
        instructions: Optional[str] = None,
    ) -> ControlPointRerunResult:
        """Re-analyze one control point (1-based index) of a stored step."""
        audit, config, step = await self._load(audit_id, step_position)
        self._validate_index(step, control_point_index)

        self._stage(RerunStage.REBUILD_TIMELINE, audit_id, step_position)
        timeline = await self.rebuild_timeline(audit.fiche_id)
        self._stage(RerunStage.RELINK_PRODUCT, audit_id, step_position)
        documents = await self._relink_product(step)

        self._stage(RerunStage.REANALYZE, audit_id, step_position)
        result = await self._rerun_one_point(
            audit, config, step, control_point_index, timeline, documents, instructions
        )
        self._stage(RerunStage.COMPARE, audit_id, step_position)
        return result

    async def rerun_control_points(
        self,
        audit_id: str,
        step_position: int,
        control_point_indexes: Sequence[int],
        instructions: Optional[str] = None,
    ) -> List[ControlPointRerunOutcome]:
        """Re-analyze several control points of one step, all settled.

        HOW: Loads and validates once, rebuilds the timeline once, then runs
        one task per control point through the orchestrator's bounded pool.

        RULES:
        - Any invalid index rejects the whole request before analysis
        - Outcomes follow the order of control_point_indexes
        """
        audit, config, step = await self._load(audit_id, step_position)
        for index in control_point_indexes:
            self._validate_index(step, index)

        self._stage(RerunStage.REBUILD_TIMELINE, audit_id, step_position)
        timeline = await self.rebuild_timeline(audit.fiche_id)
        self._stage(RerunStage.RELINK_PRODUCT, audit_id, step_position)
        documents = await self._relink_product(step)

        self._stage(RerunStage.REANALYZE, audit_id, step_position)

        async def _run(index: int) -> ControlPointRerunOutcome:
            try:
                return await self._rerun_one_point(
                    audit, config, step, index, timeline, documents, instructions
                )
            except Exception as exc:
                logger.warning(
                    "Rerun audit %s step %d control point %d failed: %r",
                    audit_id, step_position, index, exc,
                )
                return ControlPointRerunFailure(
                    control_point_index=index,
                    control_point=step.control_points[index - 1],
                    error=str(exc) or type(exc).__name__,
                )

        outcomes = await self._orchestrator.gather_bounded(
            [lambda index=index: _run(index) for index in control_point_indexes]
        )
        self._stage(RerunStage.COMPARE, audit_id, step_position)
        return outcomes
