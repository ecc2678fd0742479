"""Deterministic post-analysis checks on citations.

WHY: Models sometimes invent quotes or mislabel where a quote came from.
Citations are the evidence a supervisor clicks through to, so their
recording metadata must match the timeline, and a "PRESENT" verdict must
be backed by a quote that really appears in the cited chunk.

HOW: enrich_citations() overwrites each citation's recording date/time/URL
from the timeline recording it points at. gate_step_results() keeps only
citations whose normalized quote is found in the normalized chunk text,
downgrades unsupported PRESENT/PARTIEL points to ABSENT, and lets the step
score and verdict move down (never up) to what the remaining evidence
supports.

RULES:
- Both functions return new result objects; inputs are never mutated
- StepAnalysisFailure outcomes pass through untouched
- A quote shorter than 12 normalized characters is never valid evidence
- Gating only ever lowers score and only ever makes conforme stricter
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Dict, List, Sequence, Tuple

from call_audit.analysis.models import (
    AUTO_CHECK_POINT_NOTE,
    CITED_STATUSES,
    Citation,
    ControlPointResult,
    ControlPointStatus,
    StepAnalysisResult,
    StepOutcome,
    StepVerdict,
    count_citations,
)
from call_audit.analysis.prompts import normalize_for_match
from call_audit.config import NOT_AVAILABLE
from call_audit.core.ir import Timeline
from call_audit.scoring import derive_step_from_control_points

logger = logging.getLogger(__name__)

MIN_QUOTE_CHARS = 12

AUTO_CHECK_SCORE_NOTE = (
    "[Auto-check] Score ajusté à la baisse faute de preuves/citations "
    "valides suffisantes."
)

_STRICTNESS = {
    StepVerdict.CONFORME: 2,
    StepVerdict.PARTIEL: 1,
    StepVerdict.NON_CONFORME: 0,
}


# ---------------------------------------------------------------------------
# Citation metadata enrichment
# ---------------------------------------------------------------------------


def _enrich_citation(citation: Citation, timeline: Timeline) -> Citation:
    recording = next(
        (r for r in timeline.recordings if r.recording_index == citation.recording_index),
        None,
    )
    if recording is None:
        update = {
            "recording_date": NOT_AVAILABLE,
            "recording_time": NOT_AVAILABLE,
            "recording_url": NOT_AVAILABLE,
        }
    else:
        update = {
            "recording_date": recording.recording_date or NOT_AVAILABLE,
            "recording_time": recording.recording_time or NOT_AVAILABLE,
            "recording_url": recording.recording_url or NOT_AVAILABLE,
        }
    return citation.model_copy(update=update)


def enrich_citations(outcomes: Sequence[StepOutcome], timeline: Timeline) -> List[StepOutcome]:
    """Stamp every citation with the metadata of the recording it cites."""
    enriched: List[StepOutcome] = []
    for outcome in outcomes:
        if not isinstance(outcome, StepAnalysisResult):
            enriched.append(outcome)
            continue
        points = [
            point.model_copy(update={
                "citations": [_enrich_citation(c, timeline) for c in point.citations],
            })
            for point in outcome.points_controle
        ]
        enriched.append(outcome.model_copy(update={"points_controle": points}))
    return enriched


# ---------------------------------------------------------------------------
# Evidence gating
# ---------------------------------------------------------------------------


@dataclass
class EvidenceGatingStats:
    enabled: bool = True
    total_citations: int = 0
    removed_citations: int = 0
    downgraded_control_points: int = 0
    steps_score_reduced: int = 0
    steps_conforme_adjusted: int = 0

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def is_citation_valid(citation: Citation, timeline: Timeline) -> bool:
    """Check that a citation's quote appears in the chunk it points at."""
    chunk = timeline.find_chunk(citation.recording_index, citation.chunk_index)
    if chunk is None:
        return False
    chunk_text = normalize_for_match(chunk.full_text)
    quoted = normalize_for_match(citation.texte)
    if len(quoted) < MIN_QUOTE_CHARS:
        return False
    return quoted in chunk_text


def _append_note(text: str, note: str, separator: str) -> str:
    return "{}{}{}".format(text, separator if text else "", note)


def _distinct_minutages(citations: Sequence[Citation]) -> List[str]:
    return list(dict.fromkeys(c.minutage for c in citations if c.minutage))


def _gate_point(
    point: ControlPointResult,
    timeline: Timeline,
    stats: EvidenceGatingStats,
) -> ControlPointResult:
    stats.total_citations += len(point.citations)
    valid = [c for c in point.citations if is_citation_valid(c, timeline)]
    stats.removed_citations += len(point.citations) - len(valid)

    statut = point.statut
    commentaire = point.commentaire
    citations = valid if statut in CITED_STATUSES else []

    if statut in CITED_STATUSES and not citations:
        statut = ControlPointStatus.ABSENT
        commentaire = _append_note(commentaire, AUTO_CHECK_POINT_NOTE, "\n")
        stats.downgraded_control_points += 1

    # Built through the constructor so the citation invariant is re-checked.
    return ControlPointResult(
        point=point.point,
        statut=statut,
        commentaire=commentaire,
        citations=citations,
        minutages=_distinct_minutages(citations),
        erreur_transcription_notee=point.erreur_transcription_notee,
        variation_phonetique_utilisee=point.variation_phonetique_utilisee,
    )


def _gate_step(
    result: StepAnalysisResult,
    timeline: Timeline,
    stats: EvidenceGatingStats,
) -> StepAnalysisResult:
    points = [_gate_point(p, timeline, stats) for p in result.points_controle]
    weight = result.step_metadata.weight
    derived = derive_step_from_control_points(points, weight)

    update: Dict[str, object] = {
        "points_controle": points,
        "total_citations": count_citations(points),
        "minutages": _distinct_minutages([c for p in points for c in p.citations]),
    }

    capped_original = min(result.score, weight)
    if derived.score < capped_original:
        update["score"] = derived.score
        update["commentaire_global"] = _append_note(
            result.commentaire_global, AUTO_CHECK_SCORE_NOTE, "\n\n"
        )
        stats.steps_score_reduced += 1

    if _STRICTNESS[derived.conforme] < _STRICTNESS[result.conforme]:
        update["conforme"] = derived.conforme
        update["niveau_conformite"] = derived.niveau_conformite
        stats.steps_conforme_adjusted += 1

    return result.model_copy(update=update)


def gate_step_results(
    outcomes: Sequence[StepOutcome],
    timeline: Timeline,
    enabled: bool = True,
) -> Tuple[List[StepOutcome], EvidenceGatingStats]:
    """Validate citations against the timeline and conservatively gate step results.

    WHY: A verdict must not rest on a quote that isn't in the transcript.

    HOW: For each control point, drop invalid citations; empty the
    citations of ABSENT/NON_APPLICABLE points; downgrade PRESENT/PARTIEL
    points left without evidence. Then derive the step verdict from the
    gated points and apply it only where it is lower/stricter.

    RULES:
    - enabled=False returns the outcomes unchanged with enabled=False stats
    - Control-point and step minutages are rebuilt from kept citations
    """
    stats = EvidenceGatingStats(enabled=enabled)
    if not enabled:
        return list(outcomes), stats

    gated: List[StepOutcome] = [
        _gate_step(o, timeline, stats) if isinstance(o, StepAnalysisResult) else o
        for o in outcomes
    ]

    logger.info(
        "Evidence gating: %d/%d citation(s) removed, %d point(s) downgraded, "
        "%d score(s) reduced, %d verdict(s) adjusted",
        stats.removed_citations, stats.total_citations,
        stats.downgraded_control_points, stats.steps_score_reduced,
        stats.steps_conforme_adjusted,
    )
    return gated, stats
