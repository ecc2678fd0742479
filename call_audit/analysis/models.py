"""Pydantic models for the analysis response schema and audit outputs.

WHY: The AI model returns JSON that must be checked before it is trusted:
enum values, required fields, and the citation invariant. Pydantic models
make the schema explicit, reject invalid values at the boundary, and give
the rest of the engine typed, immutable result objects.

HOW: StepAnalysisPayload mirrors exactly what the model must return.
StepAnalysisResult extends it with engine-owned fields (usage, step
metadata, citation count). StepAnalysisFailure is the tagged failure
counterpart; StepOutcome is the union of both, discriminated by `success`.
ComplianceScore and RerunComparison are derived snapshots.

RULES:
- All models are frozen — updates go through model_copy(update=...)
- Enum values are the exact French literals the prompt documents
- Results: ABSENT/NON_APPLICABLE points have no citations; PRESENT has ≥ 1.
  Model payloads may break this; normalize_control_point() repairs them
- Unknown extra keys from the model are ignored, not errors
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from call_audit.core.timeline import format_minutage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ControlPointStatus(str, Enum):
    """Verdict for a single control point."""

    PRESENT = "PRESENT"
    ABSENT = "ABSENT"
    PARTIEL = "PARTIEL"
    NON_APPLICABLE = "NON_APPLICABLE"


class StepVerdict(str, Enum):
    """Compliance verdict for a whole step (the `conforme` field)."""

    CONFORME = "CONFORME"
    NON_CONFORME = "NON_CONFORME"
    PARTIEL = "PARTIEL"


class ComplianceLevel(str, Enum):
    """Classification bucket (the `niveau` / `niveau_conformite` fields)."""

    EXCELLENT = "EXCELLENT"
    BON = "BON"
    ACCEPTABLE = "ACCEPTABLE"
    INSUFFISANT = "INSUFFISANT"
    REJET = "REJET"


# Statuses whose control points may (and must) carry citations.
CITED_STATUSES = frozenset({ControlPointStatus.PRESENT, ControlPointStatus.PARTIEL})

AUTO_CHECK_POINT_NOTE = (
    "[Auto-check] Aucune citation valide trouvée dans la transcription "
    "pour confirmer ce point."
)


# ---------------------------------------------------------------------------
# Model response schema
# ---------------------------------------------------------------------------


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", use_enum_values=False)


class Citation(_Frozen):
    """A transcript excerpt supporting a control-point verdict."""

    texte: str = Field(description="Citation exacte de la conversation")
    minutage: str = Field(description="Format MM:SS")
    minutage_secondes: float = Field(description="Timestamp en secondes")
    speaker: str = Field(description="speaker_0, speaker_1, etc.")
    recording_index: int = Field(description="Index enregistrement (0-based)")
    chunk_index: int = Field(description="Index chunk (0-based)")
    recording_date: str = Field(default="N/A", description="Date DD/MM/YYYY de l'en-tête")
    recording_time: str = Field(default="N/A", description="Heure HH:MM de l'en-tête")
    recording_url: str = Field(default="N/A", description="URL de l'enregistrement")


class ControlPointPayload(_Frozen):
    """One control point exactly as the model returned it.

    The citation invariant is not checked here; normalize_control_point()
    brings the point in line before it becomes part of a result.
    """

    point: str
    statut: ControlPointStatus
    commentaire: str = ""
    citations: List[Citation] = Field(default_factory=list)
    minutages: List[str] = Field(default_factory=list)
    erreur_transcription_notee: bool = False
    variation_phonetique_utilisee: Optional[str] = None


class ControlPointResult(ControlPointPayload):
    """Verdict and evidence for one control point of a step."""

    @model_validator(mode="after")
    def _check_citation_invariant(self) -> ControlPointResult:
        if self.statut not in CITED_STATUSES and self.citations:
            raise ValueError(
                "control point '{}' is {} but carries {} citation(s)".format(
                    self.point, self.statut.value, len(self.citations)
                )
            )
        if self.statut == ControlPointStatus.PRESENT and not self.citations:
            raise ValueError(
                "control point '{}' is PRESENT without any citation".format(self.point)
            )
        return self


class StepAnalysisPayload(_Frozen):
    """The JSON object the model must return for one step."""

    traite: bool = True
    conforme: StepVerdict
    minutages: List[str] = Field(default_factory=list)
    score: int = Field(ge=0, description="Points obtenus (plafonnés au poids lors du scoring)")
    points_controle: List[ControlPointPayload] = Field(default_factory=list)
    mots_cles_trouves: List[str] = Field(default_factory=list)
    commentaire_global: str = ""
    niveau_conformite: ComplianceLevel
    erreurs_transcription_tolerees: int = 0


# ---------------------------------------------------------------------------
# Engine outputs
# ---------------------------------------------------------------------------


class TokenUsage(_Frozen):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class StepMetadata(_Frozen):
    """Scoring metadata stamped onto every step outcome."""

    position: int
    name: str
    severity: str
    is_critical: bool
    weight: int


class StepAnalysisResult(StepAnalysisPayload):
    """A successful step analysis: model payload plus engine-owned fields.

    RULES:
    - Created once per step per run; never edited in place
    - total_citations = sum of citation counts across control points
    - from_payload() normalizes every control point first, so results always
      satisfy the citation invariant
    """

    points_controle: List[ControlPointResult] = Field(default_factory=list)  # type: ignore[assignment]
    success: Literal[True] = True
    usage: TokenUsage = Field(default_factory=TokenUsage)
    step_metadata: StepMetadata
    total_citations: int = 0

    @classmethod
    def from_payload(
        cls,
        payload: StepAnalysisPayload,
        step_metadata: StepMetadata,
        usage: TokenUsage,
    ) -> StepAnalysisResult:
        data = dict(payload)
        points = [normalize_control_point(p) for p in payload.points_controle]
        data["points_controle"] = points
        return cls(
            **data,
            usage=usage,
            step_metadata=step_metadata,
            total_citations=count_citations(points),
        )


class StepAnalysisFailure(_Frozen):
    """A step whose analysis exhausted its retries; carries only metadata and the error."""

    success: Literal[False] = False
    error: str
    step_metadata: StepMetadata


StepOutcome = Union[StepAnalysisResult, StepAnalysisFailure]


class ComplianceScore(_Frozen):
    """Overall audit compliance, recomputed from step outcomes on every run."""

    score: float
    niveau: ComplianceLevel
    points_critiques: str
    poids_obtenu: int
    poids_total: int


class RerunComparison(_Frozen):
    """Diff between a stored step result and its rerun."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    score_changed: bool = Field(alias="scoreChanged")
    conforme_changed: bool = Field(alias="conformeChanged")
    citations_changed: bool = Field(alias="citationsChanged")
    original_score: int = Field(alias="originalScore")
    new_score: int = Field(alias="newScore")
    original_conforme: StepVerdict = Field(alias="originalConforme")
    new_conforme: StepVerdict = Field(alias="newConforme")


class ControlPointComparison(_Frozen):
    """Diff between a stored control point and its rerun."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    statut_changed: bool = Field(alias="statutChanged")
    citations_changed: bool = Field(alias="citationsChanged")
    original_statut: Optional[ControlPointStatus] = Field(default=None, alias="originalStatut")
    new_statut: ControlPointStatus = Field(alias="newStatut")
    original_citations: Optional[int] = Field(default=None, alias="originalCitations")
    new_citations: int = Field(alias="newCitations")


def count_citations(points: Sequence[ControlPointPayload]) -> int:
    return sum(len(p.citations) for p in points)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _has_valid_address(citation: Citation) -> bool:
    return citation.recording_index >= 0 and citation.chunk_index >= 0


def normalize_control_point(point: ControlPointPayload) -> ControlPointResult:
    """Bring a model-returned control point in line with the citation invariant.

    WHY: Models sometimes answer PRESENT with no quote, quote under an
    ABSENT verdict, or cite a negative recording/chunk index. Failing the
    whole step for that would throw away an otherwise usable analysis.

    HOW: ABSENT/NON_APPLICABLE points lose their citations. Citations with
    a negative address are dropped. A PRESENT point left without citations
    becomes ABSENT with the auto-check note. Blank minutages are derived
    from minutage_secondes.

    RULES:
    - Runs on every analysis result, whether or not evidence gating is on
    - Point minutages are rebuilt only when citations were removed
    """
    cited = point.statut in CITED_STATUSES
    kept = [c for c in point.citations if _has_valid_address(c)] if cited else []
    kept = [
        c if c.minutage.strip() else c.model_copy(update={"minutage": format_minutage(c.minutage_secondes)})
        for c in kept
    ]
    removed = len(point.citations) - len(kept)

    statut = point.statut
    commentaire = point.commentaire
    if statut == ControlPointStatus.PRESENT and not kept:
        statut = ControlPointStatus.ABSENT
        commentaire = "{}{}{}".format(commentaire, "\n" if commentaire else "", AUTO_CHECK_POINT_NOTE)

    if removed or statut != point.statut:
        logger.warning(
            "Control point '%s' normalized: %s -> %s, %d citation(s) dropped",
            point.point, point.statut.value, statut.value, removed,
        )

    minutages = point.minutages
    if removed:
        minutages = list(dict.fromkeys(c.minutage for c in kept if c.minutage))

    return ControlPointResult(
        point=point.point,
        statut=statut,
        commentaire=commentaire,
        citations=kept,
        minutages=minutages,
        erreur_transcription_notee=point.erreur_transcription_notee,
        variation_phonetique_utilisee=point.variation_phonetique_utilisee,
    )
