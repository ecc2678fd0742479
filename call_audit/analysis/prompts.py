"""Prompt assembly for step analyses and control-point reruns.

WHY: The model's answer is only as good as its context. Each step prompt
must carry the audit's system prompt, the full case timeline, the step's
own instructions and control points, optional product documentation, and
a fixed rules block that pins down the JSON contract (enum values,
citation structure, where to read metadata from the timeline).

HOW: Pure string builders. build_step_prompt() concatenates the sections
in a fixed order; build_analysis_rules() is the constant rules block;
build_control_point_rerun_instructions() produces the extra instructions
that narrow a rerun to a single control point.

RULES:
- Output is deterministic for identical inputs
- Product documentation is included only when the step asks for product
  verification AND at least one document is available
- Step custom_instructions are always appended when present
- The rules block is the last section before the closing instruction
"""

from __future__ import annotations

import re
import unicodedata
from typing import List, Optional, Sequence

from call_audit.analysis.models import ControlPointResult
from call_audit.core.ir import AuditConfig, AuditStepDefinition, ProductDocument

_BANNER = "═" * 79
_WIDE_BANNER = "═" * 80
_THIN_RULE = "─" * 80
_SECTION_RULE = "─" * 77

_PREVIOUS_COMMENT_MAX_CHARS = 1200

_NON_ALNUM_RE = re.compile(r"[\W_]+")


def normalize_for_match(text: str) -> str:
    """Lower-case, strip accents, and collapse non-alphanumerics to single spaces.

    Used to match control-point labels and transcript quotes regardless of
    casing, accents and punctuation.
    """
    decomposed = unicodedata.normalize("NFD", str(text or "").lower())
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return _NON_ALNUM_RE.sub(" ", stripped).strip()


def build_analysis_rules() -> str:
    """Return the fixed rules block appended to every step prompt."""
    return "\n".join([
        _BANNER,
        "RÈGLES D'ANALYSE",
        _BANNER,
        "",
        "TOLÉRANCE PHONÉTIQUE:",
        "- Oréa/Auréa → ORIAS",
        "- NCA/AC Assurances/NC Assurances → Net Courtage Assurance",
        "- CME/CMU-C → CMU/CSS",
        "- OPAM → OPTAM",
        "- dépassements d'un horaire → dépassements d'honoraires",
        "",
        "STRUCTURE STRICTE:",
        "- Citations DANS chaque point_controle.citations (pas au niveau global)",
        "- Si statut=PRESENT: AU MOINS 1 citation requise",
        "- Si statut=ABSENT/NON_APPLICABLE: citations=[]",
        "- TOUS les champs obligatoires même si vides",
        "",
        "MÉTADONNÉES EXACTES:",
        '- recording_index: depuis "Enregistrement #X" (index = X-1)',
        '- chunk_index: depuis "Chunk Y" (index = Y-1)',
        '- minutage_secondes: depuis "Temps: XX.XXs"',
        "- minutage: convertir en MM:SS",
        '- speaker: depuis "speaker_X:"',
        '- recording_date: depuis "Date:" dans l\'en-tête (format DD/MM/YYYY)',
        '- recording_time: depuis "Heure:" dans l\'en-tête (format HH:MM)',
        "",
        "VALEURS ENUM VALIDES:",
        '- conforme: "CONFORME" | "NON_CONFORME" | "PARTIEL"',
        '- niveau_conformite: "EXCELLENT" | "BON" | "ACCEPTABLE" | "INSUFFISANT" | "REJET"',
        '- statut: "PRESENT" | "ABSENT" | "PARTIEL" | "NON_APPLICABLE"',
        "",
        "⚠️ CHAMPS REQUIS (fournir même si vides):",
        "{",
        '  "minutages": [],',
        '  "mots_cles_trouves": [],',
        '  "erreurs_transcription_tolerees": 0,',
        '  "erreur_transcription_notee": false,',
        '  "variation_phonetique_utilisee": null',
        "}",
    ])


def format_product_documents(documents: Sequence[ProductDocument]) -> str:
    """Render product documentation plus the verification instructions.

    RULES:
    - Empty input → empty string
    - Documents with blank content are skipped
    """
    usable = [doc for doc in documents if doc.content.strip()]
    if not usable:
        return ""

    lines: List[str] = [
        "",
        _WIDE_BANNER,
        "DOCUMENTATION PRODUIT",
        _WIDE_BANNER,
        "",
        "⚠️ VÉRIFICATION OBLIGATOIRE: Les affirmations du conseiller doivent être conformes",
        "à la documentation officielle ci-dessous. Toute divergence doit être signalée.",
        "",
    ]
    for doc in usable:
        lines.extend([
            "",
            _THIN_RULE,
            "Document: {}".format(doc.title or "Documentation produit"),
            _THIN_RULE,
            "",
            "📄 Source: {}".format(doc.source or "Documentation produit"),
            doc.content.strip(),
            "",
        ])
    lines.extend([
        _WIDE_BANNER,
        "",
        "⚠️ VÉRIFICATION PRODUIT OBLIGATOIRE:",
        _SECTION_RULE,
        "Pour cette étape, vous DEVEZ vérifier que toutes les affirmations du conseiller",
        "concernant les garanties, conditions, exclusions, plafonds et remboursements sont",
        "STRICTEMENT CONFORMES à la documentation produit fournie ci-dessus.",
        "",
        "En cas de divergence entre ce que dit le conseiller et la documentation:",
        "- Marquez le point de contrôle comme NON_CONFORME ou PARTIEL",
        "- Expliquez clairement la différence dans le commentaire",
        "- Référencez la source exacte",
        _SECTION_RULE,
        "",
    ])
    return "\n".join(lines)


def build_step_prompt(
    step: AuditStepDefinition,
    config: AuditConfig,
    timeline_text: str,
    product_documents: Optional[Sequence[ProductDocument]] = None,
) -> str:
    """Assemble the full analysis prompt for one audit step.

    WHY: One prompt per step keeps each model call focused and lets steps
    run independently in parallel against the same shared timeline.

    HOW: system prompt → timeline → product documentation (optional) →
    step header and metadata → description → instructions → numbered
    control points → keywords → custom instructions (optional) → rules
    block → closing instruction.

    RULES:
    - Step header reads "ÉTAPE position/total: name"
    - Control points are numbered from 1
    - Product section only when step.verify_product_info and documents exist
    """
    total_steps = len(config.steps) or step.position

    product_section = ""
    if step.verify_product_info and product_documents:
        product_section = format_product_documents(product_documents)

    header: List[str] = [
        _BANNER,
        "ÉTAPE {}/{}: {}".format(step.position, total_steps, step.name),
        _BANNER,
        "",
        "Sévérité: {} | Poids: {}".format(step.severity_level, step.weight),
        "Critique: {}".format("⚠️ OUI" if step.is_critical else "Non"),
    ]
    if step.chronological_important:
        header.append("Chronologie: ⚠️ L'ORDRE DES ÉCHANGES EST IMPORTANT")
    if step.verify_product_info:
        header.append("🔍 VÉRIFICATION PRODUIT: ⚠️ ACTIVÉE")

    body: List[str] = [
        "",
        "DESCRIPTION:",
        step.description,
        "",
        "INSTRUCTIONS:",
        step.prompt,
        "",
        "POINTS DE CONTRÔLE À ANALYSER:",
        "\n".join("{}. {}".format(i, cp) for i, cp in enumerate(step.control_points, start=1)),
        "",
        "MOTS-CLÉS: {}".format(", ".join(step.keywords)),
    ]
    custom = (step.custom_instructions or "").strip()
    if custom:
        body.extend(["", "INSTRUCTIONS COMPLÉMENTAIRES:", custom])

    sections = [
        config.system_prompt,
        "",
        timeline_text,
        product_section,
        "\n".join(header),
        "\n".join(body),
        "",
        build_analysis_rules(),
        "",
        "Analysez maintenant cette étape.",
    ]
    return "\n".join(sections)


def build_control_point_rerun_instructions(
    step: AuditStepDefinition,
    control_point_index: int,
    control_point_text: str,
    previous: Optional[ControlPointResult] = None,
    user_instructions: Optional[str] = None,
) -> str:
    """Build the custom instructions that scope a rerun to one control point.

    RULES:
    - control_point_index is 1-based, shown as index/total
    - The previous result (status, citation count, minutages, comment) is
      given as context when one exists; comments are cut at 1200 chars
    - Operator instructions come last and are marked as taking priority
    - Existing step-level custom_instructions are preserved in front
    """
    lines: List[str] = [
        "🧩 RERUN CIBLÉ: POINT DE CONTRÔLE (SOUS-ÉTAPE)",
        "- Index: {}/{}".format(control_point_index, len(step.control_points)),
        "- Point: {}".format(control_point_text),
    ]

    if previous is not None:
        lines.append("\n📌 CONTEXTE (RÉSULTAT PRÉCÉDENT POUR CE POINT):")
        lines.append("- Statut: {}".format(previous.statut.value))
        lines.append("- Citations: {}".format(len(previous.citations)))
        if previous.minutages:
            lines.append("- Minutages: {}".format(", ".join(previous.minutages)))
        comment = previous.commentaire.strip()
        if comment:
            if len(comment) > _PREVIOUS_COMMENT_MAX_CHARS:
                comment = comment[:_PREVIOUS_COMMENT_MAX_CHARS] + "…"
            lines.append("- Commentaire: {}".format(comment))

    if user_instructions and user_instructions.strip():
        lines.append("\n📝 INSTRUCTIONS SPÉCIFIQUES DE L'UTILISATEUR (À APPLIQUER EN PRIORITÉ):")
        lines.append(user_instructions.strip())

    base = (step.custom_instructions or "").strip()
    extra = "\n".join(lines)
    return "\n\n".join(part for part in (base, extra) if part)
