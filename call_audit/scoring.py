"""Weighted compliance scoring with critical-step gating.

WHY: The audit verdict a supervisor reads is a single percentage and level,
but it must honour two business rules: a step can never contribute more
than its own weight, and any failed critical step rejects the whole call
regardless of the numbers.

HOW: compute_compliance() folds the configured steps and their outcomes
into a ComplianceScore. derive_step_from_control_points() recomputes a
step's score/verdict from its control points; it is used when evidence
gating removes citations and when a single control point is rerun.

RULES:
- Pure functions: same inputs → same output, no hidden state
- poids_total = sum of ALL configured step weights (failed steps earn 0)
- Each step earns min(max(score, 0), weight)
- score = earned / total × 100, rounded to 2 decimals (0 when total is 0)
- criticalPassed < criticalTotal → REJET, whatever the score
- Otherwise ≥90 EXCELLENT, ≥75 BON, ≥60 ACCEPTABLE, else INSUFFISANT
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence

from call_audit.analysis.models import (
    ComplianceLevel,
    ComplianceScore,
    ControlPointResult,
    ControlPointStatus,
    StepAnalysisResult,
    StepOutcome,
    StepVerdict,
)
from call_audit.config import COMPLIANCE_THRESHOLDS
from call_audit.core.ir import AuditStepDefinition

# Control-point → step verdict cut-offs
CONFORME_RATIO = 0.85
PARTIEL_RATIO = 0.4
EXCELLENT_RATIO = 0.95

_POINT_VALUES = {
    ControlPointStatus.PRESENT: 1.0,
    ControlPointStatus.PARTIEL: 0.5,
    ControlPointStatus.ABSENT: 0.0,
}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def classify_score(score: float) -> ComplianceLevel:
    """Map a 0-100 score onto a compliance level (critical gate not applied)."""
    if score >= COMPLIANCE_THRESHOLDS["EXCELLENT"]:
        return ComplianceLevel.EXCELLENT
    if score >= COMPLIANCE_THRESHOLDS["BON"]:
        return ComplianceLevel.BON
    if score >= COMPLIANCE_THRESHOLDS["ACCEPTABLE"]:
        return ComplianceLevel.ACCEPTABLE
    return ComplianceLevel.INSUFFISANT


def compute_compliance(
    steps: Sequence[AuditStepDefinition],
    outcomes: Iterable[StepOutcome],
) -> ComplianceScore:
    """Aggregate step outcomes into the overall compliance score.

    WHY: This is the number compliance decisions are made on, so it is
    always recomputed from the full outcome list and never patched.

    HOW: Weights and criticality come from the configured steps; scores
    and verdicts come from the successful outcomes, matched by position.

    RULES:
    - Failed outcomes (StepAnalysisFailure) earn 0 and never pass a gate
    - Outcomes for positions not in the config are ignored
    """
    results: Dict[int, StepAnalysisResult] = {
        outcome.step_metadata.position: outcome
        for outcome in outcomes
        if isinstance(outcome, StepAnalysisResult)
    }

    total_weight = sum(step.weight for step in steps)
    earned_weight = 0
    critical_total = 0
    critical_passed = 0

    for step in steps:
        result = results.get(step.position)
        if result is not None:
            earned_weight += min(max(result.score, 0), step.weight)
        if step.is_critical:
            critical_total += 1
            if result is not None and result.conforme == StepVerdict.CONFORME:
                critical_passed += 1

    score = round(earned_weight / total_weight * 100, 2) if total_weight > 0 else 0.0

    if critical_passed < critical_total:
        niveau = ComplianceLevel.REJET
    else:
        niveau = classify_score(score)

    return ComplianceScore(
        score=score,
        niveau=niveau,
        points_critiques="{}/{}".format(critical_passed, critical_total),
        poids_obtenu=earned_weight,
        poids_total=total_weight,
    )


@dataclass(frozen=True)
class DerivedStepScore:
    """A step verdict recomputed from its control points."""

    ratio: float
    score: int
    conforme: StepVerdict
    niveau_conformite: ComplianceLevel
    total_citations: int
    minutages: List[str] = field(default_factory=list)


def derive_step_from_control_points(
    points: Sequence[ControlPointResult],
    weight: int,
) -> DerivedStepScore:
    """Recompute a step's score and verdict from its control points.

    RULES:
    - NON_APPLICABLE points are excluded; no applicable point → ratio 1.0
    - PRESENT = 1, PARTIEL = 0.5, ABSENT = 0; ratio = mean over applicable
    - score = round(ratio × weight) clamped to [0, weight]
    - ratio ≥ 0.85 CONFORME, ≥ 0.4 PARTIEL, else NON_CONFORME
    - EXCELLENT needs CONFORME and ratio ≥ 0.95
    - minutages: distinct citation minutages in first-seen order
    """
    applicable = [p for p in points if p.statut != ControlPointStatus.NON_APPLICABLE]
    if applicable:
        ratio = sum(_POINT_VALUES[p.statut] for p in applicable) / len(applicable)
    else:
        ratio = 1.0
    score = max(0, min(weight, _round_half_up(ratio * weight)))

    if ratio >= CONFORME_RATIO:
        conforme = StepVerdict.CONFORME
        niveau = ComplianceLevel.EXCELLENT if ratio >= EXCELLENT_RATIO else ComplianceLevel.BON
    elif ratio >= PARTIEL_RATIO:
        conforme = StepVerdict.PARTIEL
        niveau = ComplianceLevel.ACCEPTABLE
    else:
        conforme = StepVerdict.NON_CONFORME
        niveau = ComplianceLevel.INSUFFISANT

    minutages: Dict[str, None] = {}
    total_citations = 0
    for point in points:
        total_citations += len(point.citations)
        for citation in point.citations:
            if citation.minutage.strip():
                minutages[citation.minutage.strip()] = None

    return DerivedStepScore(
        ratio=ratio,
        score=score,
        conforme=conforme,
        niveau_conformite=niveau,
        total_citations=total_citations,
        minutages=list(minutages),
    )
