"""Intermediate representation dataclasses for transcripts, timelines, and audit configs.

WHY: Upstream storage hands us loosely-typed word arrays and config rows.
The assembler, timeline builder, prompt builder, and rerun coordinator all
need the same explicit shapes. A single, well-typed intermediate form keeps
those stages decoupled and makes the citation addressing contract visible.

HOW: Plain dataclasses form two hierarchies:
  Transcript side:  TranscriptWord → ConversationMessage → ConversationChunk
                    → TimelineRecording → Timeline
  Config side:      AuditStepDefinition → AuditConfig
RecordingTranscript is the builder input (one recording's metadata + words).
ProductDocument carries optional product-verification context.

RULES:
- All times are float seconds from the start of the recording
- TranscriptWord and ConversationChunk are frozen — chunks are citation
  targets and must not be edited after assembly
- chunk_index is 0-based and sequential within one recording
- Config dataclasses accept the camelCase keys used by stored configs
- Step weight must be a positive integer
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class TranscriptWord:
    """A single word (or spacing token) from a speech-to-text transcript.

    RULES:
    - type is "word" or "spacing"; spacing tokens are ignored by the assembler
    - speaker_id is None when diarization was off
    - logprob is carried through but unused by the audit engine
    """

    text: str
    start: float
    end: float
    type: str = "word"
    speaker_id: Optional[str] = None
    logprob: Optional[float] = None


@dataclass
class ConversationMessage:
    """Contiguous words from one speaker, merged into a single turn."""

    speaker: str
    text: str
    start: float
    end: float


@dataclass(frozen=True)
class ConversationChunk:
    """A fixed-size group of consecutive speaker turns within one recording.

    WHY: Chunks are the addressable unit that citations point at. The model
    is told "Chunk Y" in the rendered timeline and must answer with
    chunk_index = Y - 1.

    RULES:
    - chunk_index: 0-based, sequential, reproducible for identical input
    - start_timestamp / end_timestamp: first message start, last message end
    - speakers: deduplicated in order of first appearance
    - full_text: one "speaker: text" line per message
    """

    chunk_index: int
    start_timestamp: float
    end_timestamp: float
    message_count: int
    speakers: List[str]
    full_text: str


@dataclass
class RecordingTranscript:
    """One recording's metadata and word-level transcript, as fed to the timeline builder.

    RULES:
    - Empty strings mean "unknown"; the builder warns and renders "N/A"
    - words are in transcript order (not re-sorted by the builder)
    """

    call_id: str = ""
    recording_url: str = ""
    recording_date: str = ""
    recording_time: str = ""
    from_number: str = ""
    to_number: str = ""
    start_time: str = ""
    duration_seconds: float = 0.0
    words: List[TranscriptWord] = field(default_factory=list)


@dataclass
class TimelineRecording:
    """One recording's position in the case timeline with its chunks."""

    recording_index: int
    call_id: str
    recording_url: str
    recording_date: str
    recording_time: str
    duration_seconds: float
    total_chunks: int
    chunks: List[ConversationChunk] = field(default_factory=list)
    from_number: str = ""
    to_number: str = ""
    start_time: str = ""


@dataclass
class Timeline:
    """The assembled timeline across all recordings of a case plus its prompt text.

    RULES:
    - recordings are in input order (normally chronological)
    - text is a pure rendering of recordings — rebuild it, never edit it
    """

    recordings: List[TimelineRecording]
    text: str

    @property
    def total_chunks(self) -> int:
        return sum(r.total_chunks for r in self.recordings)

    def find_chunk(self, recording_index: int, chunk_index: int) -> Optional[ConversationChunk]:
        """Look up a chunk by its citation address, or None if it doesn't exist."""
        for recording in self.recordings:
            if recording.recording_index != recording_index:
                continue
            for chunk in recording.chunks:
                if chunk.chunk_index == chunk_index:
                    return chunk
        return None


@dataclass
class ProductDocument:
    """A product-verification document attached to steps that check product info."""

    title: str
    content: str
    source: str = ""


def _as_str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if isinstance(v, str)]


@dataclass(frozen=True)
class AuditStepDefinition:
    """A configured audit step: what to check, how much it weighs, whether it gates.

    WHY: Steps are the unit of analysis — one model call per step. The
    definition supplies the prompt material and the scoring metadata that
    is stamped onto every result.

    RULES:
    - position is 1-based and unique within a config
    - weight is a positive integer (maximum points for the step)
    - is_critical steps force REJET when not CONFORME
    - custom_instructions are appended to the step prompt when present
    """

    position: int
    name: str
    description: str
    prompt: str
    control_points: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    severity_level: str = "MEDIUM"
    is_critical: bool = False
    weight: int = 1
    chronological_important: bool = False
    verify_product_info: bool = False
    custom_instructions: Optional[str] = None

    def __post_init__(self) -> None:
        if int(self.weight) <= 0:
            raise ValueError(
                "Audit step {} ({}) must have a positive weight, got {}".format(
                    self.position, self.name, self.weight
                )
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AuditStepDefinition:
        """Parse a step from a stored config row (camelCase or snake_case keys)."""

        def pick(camel: str, snake: str, default: Any = None) -> Any:
            if camel in data:
                return data[camel]
            return data.get(snake, default)

        return cls(
            position=int(data["position"]),
            name=str(data["name"]),
            description=str(data.get("description", "")),
            prompt=str(data.get("prompt", "")),
            control_points=_as_str_list(pick("controlPoints", "control_points", [])),
            keywords=_as_str_list(data.get("keywords", [])),
            severity_level=str(pick("severityLevel", "severity_level", "MEDIUM")),
            is_critical=bool(pick("isCritical", "is_critical", False)),
            weight=int(data.get("weight", 1)),
            chronological_important=bool(
                pick("chronologicalImportant", "chronological_important", False)
            ),
            verify_product_info=bool(pick("verifyProductInfo", "verify_product_info", False)),
            custom_instructions=pick("customInstructions", "custom_instructions"),
        )


@dataclass
class AuditConfig:
    """An audit configuration: system prompt plus its ordered steps."""

    id: str
    name: str
    system_prompt: str
    steps: List[AuditStepDefinition]
    description: str = ""

    @property
    def total_weight(self) -> int:
        return sum(step.weight for step in self.steps)

    def get_step(self, position: int) -> Optional[AuditStepDefinition]:
        for step in self.steps:
            if step.position == position:
                return step
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AuditConfig:
        raw_steps = data.get("auditSteps", data.get("steps", []))
        steps = sorted(
            (AuditStepDefinition.from_dict(s) for s in raw_steps),
            key=lambda s: s.position,
        )
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            system_prompt=str(data.get("systemPrompt", data.get("system_prompt", ""))),
            steps=steps,
            description=str(data.get("description", "") or ""),
        )
