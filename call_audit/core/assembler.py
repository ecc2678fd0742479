"""Word-level transcript assembly into speaker turns and stable conversation chunks.

WHY: Speech-to-text returns a flat word array with per-word timing and a
speaker label. The model needs readable speaker turns, and citations need
an address that survives re-computation. This module is the bridge between
the flat word array and the chunked form the timeline renders.

HOW: First pass merges consecutive words with the same speaker into one
ConversationMessage (spacing tokens skipped, text joined with single
spaces). Second pass slices the messages into fixed-size groups and numbers
them sequentially. Both passes are pure functions of their input.

RULES:
- Spacing tokens (type="spacing") are skipped
- Missing speaker_id → "unknown"
- Message bounds: first word's start, last merged word's end
- Chunk bounds: first message's start, last message's end
- chunk_index = position of the chunk in the output (0-based)
- Same words + same chunk size → identical chunks (citation stability)
- Empty word list → empty chunk list, no error
"""

from __future__ import annotations

import logging
import math
from typing import Any, Iterable, List, Optional, Sequence

from call_audit.config import TIMELINE_CHUNK_SIZE
from call_audit.core.ir import ConversationChunk, ConversationMessage, TranscriptWord

logger = logging.getLogger(__name__)

UNKNOWN_SPEAKER = "unknown"

# Text-only fallback: speaker labels alternate every N synthesized words.
_FALLBACK_SPEAKERS = ("speaker_0", "speaker_1")
_FALLBACK_TURN_WORDS = 10
_FALLBACK_MIN_WORD_S = 0.05
_FALLBACK_SECONDS_PER_WORD = 0.5


def build_messages(words: Iterable[TranscriptWord]) -> List[ConversationMessage]:
    """Merge consecutive same-speaker words into speaker turns.

    WHY: Word-per-line transcripts are unreadable for the model and waste
    prompt tokens. Turns are the natural unit of a conversation.

    HOW: Walk the words once, accumulating text while the speaker stays the
    same and flushing a message whenever it changes.

    RULES:
    - Spacing tokens are skipped entirely (they never break a turn)
    - speaker_id None → "unknown"
    - Text is joined with a single space
    """
    messages: List[ConversationMessage] = []

    current_speaker: Optional[str] = None
    current_text: List[str] = []
    current_start = 0.0
    current_end = 0.0

    def _flush() -> None:
        if current_text and current_speaker is not None:
            messages.append(ConversationMessage(
                speaker=current_speaker,
                text=" ".join(current_text),
                start=current_start,
                end=current_end,
            ))

    for word in words:
        if word.type == "spacing":
            continue

        speaker = word.speaker_id or UNKNOWN_SPEAKER
        if speaker != current_speaker:
            _flush()
            current_speaker = speaker
            current_text = [word.text]
            current_start = word.start
            current_end = word.end
        else:
            current_text.append(word.text)
            current_end = word.end

    _flush()
    return messages


def build_chunks(
    messages: Sequence[ConversationMessage],
    chunk_size: int = TIMELINE_CHUNK_SIZE,
) -> List[ConversationChunk]:
    """Partition speaker turns into fixed-size, sequentially indexed chunks.

    RULES:
    - chunk_size below 1 is treated as 1
    - The last chunk may hold fewer than chunk_size messages
    - speakers keeps first-appearance order without duplicates
    """
    size = max(1, int(chunk_size))
    chunks: List[ConversationChunk] = []

    for offset in range(0, len(messages), size):
        group = messages[offset:offset + size]
        if not group:
            continue
        chunks.append(ConversationChunk(
            chunk_index=len(chunks),
            start_timestamp=group[0].start,
            end_timestamp=group[-1].end,
            message_count=len(group),
            speakers=list(dict.fromkeys(m.speaker for m in group)),
            full_text="\n".join("{}: {}".format(m.speaker, m.text) for m in group),
        ))

    return chunks


def assemble_chunks(
    words: Iterable[TranscriptWord],
    chunk_size: int = TIMELINE_CHUNK_SIZE,
) -> List[ConversationChunk]:
    """Assemble one recording's words straight into conversation chunks."""
    return build_chunks(build_messages(words), chunk_size)


def words_from_payload(raw_words: Any) -> List[TranscriptWord]:
    """Parse stored word dicts into TranscriptWord objects.

    WHY: Stored transcript payloads are untyped JSON. Entries written by
    older pipelines occasionally miss timing fields; one bad entry must not
    throw away a whole recording.

    HOW: Keeps entries that have a string text and numeric start/end.
    Drops everything else and logs how many were dropped.

    RULES:
    - Non-list input → empty list
    - type defaults to "word"
    - Optional speaker_id / logprob kept only when correctly typed
    """
    if not isinstance(raw_words, list):
        return []

    words: List[TranscriptWord] = []
    dropped = 0
    for entry in raw_words:
        if not isinstance(entry, dict):
            dropped += 1
            continue
        text = entry.get("text")
        start = entry.get("start")
        end = entry.get("end")
        if (
            not isinstance(text, str)
            or isinstance(start, bool) or not isinstance(start, (int, float))
            or isinstance(end, bool) or not isinstance(end, (int, float))
        ):
            dropped += 1
            continue
        speaker_id = entry.get("speaker_id")
        logprob = entry.get("logprob")
        words.append(TranscriptWord(
            text=text,
            start=float(start),
            end=float(end),
            type=entry.get("type") if isinstance(entry.get("type"), str) else "word",
            speaker_id=speaker_id if isinstance(speaker_id, str) else None,
            logprob=float(logprob) if isinstance(logprob, (int, float)) else None,
        ))

    if dropped:
        logger.warning("Dropped %d malformed word entries from transcript payload", dropped)
    return words


def synthesize_words(text: str, duration_seconds: float = 0.0) -> List[TranscriptWord]:
    """Approximate word timing for a transcript stored as plain text only.

    WHY: Some recordings only have their transcript text persisted. A rerun
    must still rebuild a timeline from authoritative storage, so we derive
    approximate per-word timing instead of skipping the recording.

    HOW: Splits on whitespace and divides the recording duration evenly
    across the tokens. Without diarization, speakers alternate between two
    default labels every ten words.

    RULES:
    - Unknown/zero duration → 0.5s per word (at least 1s total)
    - Each synthesized word lasts at least 0.05s
    - Blank text → empty list
    """
    tokens = text.split()
    if not tokens:
        return []

    duration = duration_seconds if duration_seconds and duration_seconds > 0 else max(
        1.0, float(round(len(tokens) * _FALLBACK_SECONDS_PER_WORD))
    )
    word_duration = max(_FALLBACK_MIN_WORD_S, duration / len(tokens))

    words: List[TranscriptWord] = []
    for idx, token in enumerate(tokens):
        turn = math.floor(idx / _FALLBACK_TURN_WORDS) % len(_FALLBACK_SPEAKERS)
        words.append(TranscriptWord(
            text=token,
            start=idx * word_duration,
            end=(idx + 1) * word_duration,
            type="word",
            speaker_id=_FALLBACK_SPEAKERS[turn],
        ))
    return words
