"""Best-effort repair of malformed model output before parsing.

WHY: Even with a strict prompt, models drift: they write "NON CONFORME"
instead of "NON_CONFORME", wrap JSON in markdown fences, or get cut off
before the closing brace. A narrow, deterministic repair pass recovers
these known cases without guessing at anything else.

HOW: Three passes, applied in order:
  1. Strip a surrounding markdown code fence.
  2. Replace known-bad enum literals with their allowed value — only
     inside the field they belong to ("statut", "conforme",
     "niveau_conformite").
  3. Close unterminated objects/arrays by appending the missing closers
     in stack order.

RULES:
- Only the enumerated substitutions in ENUM_REPAIRS are applied
- A text truncated inside a string literal is NOT repaired — the parse
  fails and the attempt counts as a failure
- Repair never removes content and never reorders it
- The list is known to be incomplete; unknown drift surfaces as a parse error
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import List, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnumRepair:
    """One known-bad → allowed substitution scoped to a JSON field."""

    field: str
    bad: str
    good: str

    def pattern(self) -> "re.Pattern[str]":
        return re.compile(
            r'("{}"\s*:\s*)"{}"'.format(re.escape(self.field), re.escape(self.bad))
        )


ENUM_REPAIRS: Tuple[EnumRepair, ...] = (
    # statut
    EnumRepair("statut", "PRÉSENT", "PRESENT"),
    EnumRepair("statut", "NON_PRESENT", "ABSENT"),
    EnumRepair("statut", "NON PRESENT", "ABSENT"),
    EnumRepair("statut", "PARTIAL", "PARTIEL"),
    EnumRepair("statut", "PARTIELLE", "PARTIEL"),
    EnumRepair("statut", "PARTIELLEMENT_PRESENT", "PARTIEL"),
    EnumRepair("statut", "NOT_APPLICABLE", "NON_APPLICABLE"),
    EnumRepair("statut", "NON APPLICABLE", "NON_APPLICABLE"),
    EnumRepair("statut", "N/A", "NON_APPLICABLE"),
    # conforme
    EnumRepair("conforme", "NON CONFORME", "NON_CONFORME"),
    EnumRepair("conforme", "NON-CONFORME", "NON_CONFORME"),
    EnumRepair("conforme", "PARTIELLEMENT_CONFORME", "PARTIEL"),
    EnumRepair("conforme", "PARTIAL", "PARTIEL"),
    EnumRepair("conforme", "PARTIELLE", "PARTIEL"),
    # niveau_conformite
    EnumRepair("niveau_conformite", "EXCELLENTE", "EXCELLENT"),
    EnumRepair("niveau_conformite", "BONNE", "BON"),
    EnumRepair("niveau_conformite", "INSUFFISANTE", "INSUFFISANT"),
    EnumRepair("niveau_conformite", "REJETE", "REJET"),
    EnumRepair("niveau_conformite", "REJETÉ", "REJET"),
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*\n(.*?)\n?```\s*$", re.DOTALL)

_CLOSERS = {"{": "}", "[": "]"}


def strip_code_fence(text: str) -> str:
    """Remove a markdown ```json fence wrapping the whole payload."""
    match = _FENCE_RE.match(text.strip())
    return match.group(1) if match else text


def apply_enum_repairs(text: str) -> Tuple[str, List[str]]:
    """Apply every known enum substitution; return the text and the fixes applied."""
    applied: List[str] = []
    for repair in ENUM_REPAIRS:
        text, count = repair.pattern().subn(
            lambda m, good=repair.good: '{}"{}"'.format(m.group(1), good), text
        )
        if count:
            applied.append("{}: {} → {} (x{})".format(repair.field, repair.bad, repair.good, count))
    return text, applied


def close_unterminated(text: str) -> str:
    """Append closing braces/brackets for a JSON document cut off mid-structure.

    WHY: Long step analyses occasionally hit the output token limit right
    before the final braces. The content is complete enough to use.

    HOW: Scans the text tracking string literals and escapes, pushing on
    "{"/"[" and popping on "}"/"]". Whatever is left open gets closed in
    reverse order.

    RULES:
    - Text ending inside a string literal is returned unchanged
    - Mismatched closers are left for the parser to reject
    """
    stack: List[str] = []
    in_string = False
    escaped = False

    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif char in ("}", "]"):
            if stack and stack[-1] == char:
                stack.pop()
            else:
                return text

    if in_string or not stack:
        return text
    return text.rstrip() + "".join(reversed(stack))


def repair_analysis_text(text: str) -> str:
    """Run the full repair pass over raw model output."""
    repaired = strip_code_fence(text.strip())
    repaired, applied = apply_enum_repairs(repaired)
    closed = close_unterminated(repaired)
    if closed != repaired:
        applied.append("closed {} unterminated structure(s)".format(len(closed) - len(repaired.rstrip())))
    for fix in applied:
        logger.debug("Repaired model output: %s", fix)
    return closed
