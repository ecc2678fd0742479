"""Case timeline assembly and prompt rendering.

WHY: A sales case usually spans several recorded calls. The model must see
them in order, each with its date/time header, so it can judge chronology
and cite the right recording. Citation fields (recording_index,
chunk_index, minutage, date, time) are read back from this rendering, so
its markers are part of the citation contract.

HOW: build_timeline() assembles each RecordingTranscript into chunks,
numbers recordings in input order, and renders the text form with
render_timeline_text(). Missing metadata is logged and rendered as "N/A".

RULES:
- recording_index = position in the input list (0-based)
- Header markers: "Enregistrement #X" (X = index + 1), "Date:", "Heure:"
- Chunk markers: "Chunk Y" (Y = chunk_index + 1), "Temps: Ss - Es"
- Missing URL/date/time → warning + "N/A", never an exception
- The rendered text is output only; it is never used as a source of truth
"""

from __future__ import annotations

import logging
from typing import List, Sequence

from call_audit.config import NOT_AVAILABLE, TIMELINE_CHUNK_SIZE
from call_audit.core.assembler import assemble_chunks
from call_audit.core.ir import RecordingTranscript, Timeline, TimelineRecording

logger = logging.getLogger(__name__)

_BANNER = "═" * 79
_RULE = "=" * 80


def format_seconds(value: float) -> str:
    """Render a timestamp compactly: 12.0 → "12", 3.25 → "3.25"."""
    text = "{:.3f}".format(float(value)).rstrip("0").rstrip(".")
    return text or "0"


def format_minutage(seconds: float) -> str:
    """Convert seconds into the MM:SS form used by citations."""
    total = max(0, int(seconds))
    return "{:02d}:{:02d}".format(total // 60, total % 60)


def _or_na(value: str) -> str:
    return value if value else NOT_AVAILABLE


def build_recording(
    index: int,
    transcript: RecordingTranscript,
    chunk_size: int = TIMELINE_CHUNK_SIZE,
) -> TimelineRecording:
    """Assemble one recording into its timeline entry, warning on missing metadata."""
    if not transcript.recording_url:
        logger.warning(
            "Recording %d (call_id: %s) has no recording URL",
            index, transcript.call_id or NOT_AVAILABLE,
        )
    if not transcript.recording_date or not transcript.recording_time:
        logger.warning(
            "Recording %d has incomplete metadata (date: %s, time: %s)",
            index,
            _or_na(transcript.recording_date),
            _or_na(transcript.recording_time),
        )

    chunks = assemble_chunks(transcript.words, chunk_size)
    return TimelineRecording(
        recording_index=index,
        call_id=transcript.call_id,
        recording_url=transcript.recording_url,
        recording_date=transcript.recording_date,
        recording_time=transcript.recording_time,
        duration_seconds=transcript.duration_seconds,
        total_chunks=len(chunks),
        chunks=chunks,
        from_number=transcript.from_number,
        to_number=transcript.to_number,
        start_time=transcript.start_time,
    )


def build_timeline(
    transcripts: Sequence[RecordingTranscript],
    chunk_size: int = TIMELINE_CHUNK_SIZE,
) -> Timeline:
    """Build the ordered, rendered timeline for all recordings of a case.

    WHY: Every step analysis reads the same conversation context. Building
    it once and sharing the immutable text keeps step tasks independent.

    HOW: Assembles each recording in input order, then renders the text.

    RULES:
    - Input order is preserved (callers sort chronologically beforehand)
    - A recording with no words still appears, with zero chunks
    """
    recordings: List[TimelineRecording] = [
        build_recording(index, transcript, chunk_size)
        for index, transcript in enumerate(transcripts)
    ]
    timeline = Timeline(recordings=recordings, text=render_timeline_text(recordings))

    logger.info(
        "Timeline built: %d recordings, %d chunks",
        len(recordings), timeline.total_chunks,
    )
    return timeline


def render_timeline_text(recordings: Sequence[TimelineRecording]) -> str:
    """Render recordings into the timeline text embedded in every step prompt.

    RULES:
    - Banner, then per recording a header block and every chunk
    - Unknown metadata renders as "N/A"
    - Output is deterministic for identical recordings
    """
    lines: List[str] = [
        _BANNER,
        "CHRONOLOGIE COMPLÈTE DE LA CONVERSATION",
        _BANNER,
        "",
    ]

    for recording in recordings:
        lines.extend([
            "",
            _RULE,
            "Enregistrement #{}".format(recording.recording_index + 1),
            "Date: {}".format(_or_na(recording.recording_date)),
            "Heure: {}".format(_or_na(recording.recording_time)),
            "Call ID: {}".format(_or_na(recording.call_id)),
            "De: {} → Vers: {}".format(_or_na(recording.from_number), _or_na(recording.to_number)),
            "Durée: {}s".format(format_seconds(recording.duration_seconds)),
            "Total Chunks: {}".format(recording.total_chunks),
            _RULE,
            "",
        ])
        for chunk in recording.chunks:
            lines.extend([
                "",
                "─── Chunk {} ───".format(chunk.chunk_index + 1),
                "Temps: {}s - {}s".format(
                    format_seconds(chunk.start_timestamp),
                    format_seconds(chunk.end_timestamp),
                ),
                "Speakers: {}".format(", ".join(chunk.speakers)),
                "",
                "Conversation:",
                chunk.full_text,
            ])

    lines.extend(["", _RULE, "FIN DE LA CHRONOLOGIE", _RULE, "", ""])
    return "\n".join(lines)
