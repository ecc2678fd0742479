"""Call Audit Engine — compliance auditing of recorded sales calls.

WHY: Sales calls must be audited against a configurable list of regulatory
and quality steps. Reviewing hours of audio by hand does not scale, so this
package turns word-level transcripts into an addressable conversation
timeline, asks an AI model to judge every audit step against it, and
aggregates the verdicts into a weighted compliance score.

HOW: Four-stage pipeline — assemble (core timeline), analyze (parallel step
orchestration), gate (evidence checks against the transcript), score
(weighted compliance with critical-step gating). Reruns re-enter at the
timeline stage using authoritative stored transcripts.

RULES:
- chunk_index values are the citation contract — they must stay stable
- Step results are immutable; reruns always produce new objects
- Step failures are data, never exceptions that abort sibling steps
"""

__version__ = "0.1.0"
