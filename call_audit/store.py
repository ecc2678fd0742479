"""Persistence boundary: stored audit state and an in-memory implementation.

WHY: Reruns must start from authoritative stored state (the persisted
audit, its config, and the recordings' transcripts), never from a cached
timeline. The engine itself stores nothing, so it only needs a narrow
read port that real storage backends can implement.

HOW: Three pieces:
  StoredRecording / StoredAudit — typed views of what storage holds
  AuditRepository               — async read port used by the rerun coordinator
  InMemoryAuditRepository       — thread-safe dict-backed implementation,
                                  loadable from a JSON document (CLI, tests)
StaticProductContextProvider serves a fixed document list to steps that
ask for product verification.

RULES:
- Repository lookups return None (or []) for unknown ids; the caller
  decides whether that is a NotFound
- All InMemoryAuditRepository mutations acquire self._lock
- Stored step results are StepAnalysisResult models, validated on load
"""

from __future__ import annotations

import abc
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from call_audit.analysis.models import StepAnalysisResult
from call_audit.analysis.orchestrator import ProductContextProvider
from call_audit.core.assembler import synthesize_words, words_from_payload
from call_audit.core.ir import (
    AuditConfig,
    AuditStepDefinition,
    ProductDocument,
    RecordingTranscript,
    TranscriptWord,
)

logger = logging.getLogger(__name__)


def _pick(data: Dict[str, Any], camel: str, snake: str, default: Any = None) -> Any:
    if camel in data:
        return data[camel]
    return data.get(snake, default)


@dataclass
class StoredRecording:
    """One persisted recording with whatever transcript form storage holds.

    RULES:
    - words is None when no word-level transcript was stored
    - transcript_text is the plain-text fallback (may be empty)
    """

    call_id: str = ""
    recording_url: str = ""
    recording_date: str = ""
    recording_time: str = ""
    from_number: str = ""
    to_number: str = ""
    start_time: str = ""
    duration_seconds: float = 0.0
    words: Optional[List[TranscriptWord]] = None
    transcript_text: str = ""

    def to_transcript(self, words: List[TranscriptWord]) -> RecordingTranscript:
        return RecordingTranscript(
            call_id=self.call_id,
            recording_url=self.recording_url,
            recording_date=self.recording_date,
            recording_time=self.recording_time,
            from_number=self.from_number,
            to_number=self.to_number,
            start_time=self.start_time,
            duration_seconds=self.duration_seconds,
            words=words,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> StoredRecording:
        raw_words = data.get("words")
        duration = _pick(data, "durationSeconds", "duration_seconds", 0) or 0
        return cls(
            call_id=str(_pick(data, "callId", "call_id", "") or ""),
            recording_url=str(_pick(data, "recordingUrl", "recording_url", "") or ""),
            recording_date=str(_pick(data, "recordingDate", "recording_date", "") or ""),
            recording_time=str(_pick(data, "recordingTime", "recording_time", "") or ""),
            from_number=str(_pick(data, "fromNumber", "from_number", "") or ""),
            to_number=str(_pick(data, "toNumber", "to_number", "") or ""),
            start_time=str(_pick(data, "startTime", "start_time", "") or ""),
            duration_seconds=float(duration),
            words=words_from_payload(raw_words) if raw_words is not None else None,
            transcript_text=str(_pick(data, "transcriptText", "transcript_text", "") or ""),
        )


def recordings_to_transcripts(recordings: List[StoredRecording]) -> List[RecordingTranscript]:
    """Resolve stored recordings into timeline input, best transcript form first.

    RULES:
    - Word-level transcript preferred; plain text synthesized otherwise
    - Recordings with neither are skipped with a warning
    - Stored order is kept
    """
    transcripts: List[RecordingTranscript] = []
    for recording in recordings:
        if recording.words:
            words = recording.words
        elif recording.transcript_text.strip():
            logger.warning(
                "Recording %s has no word-level transcript; synthesizing timing from text",
                recording.call_id or "N/A",
            )
            words = synthesize_words(recording.transcript_text, recording.duration_seconds)
        else:
            logger.warning(
                "Recording %s has no transcript; skipped from timeline",
                recording.call_id or "N/A",
            )
            continue
        transcripts.append(recording.to_transcript(words))
    return transcripts


@dataclass
class StoredAudit:
    """A persisted audit: which case and config it ran, and its step results."""

    id: str
    fiche_id: str
    audit_config_id: str
    step_results: Dict[int, StepAnalysisResult] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> StoredAudit:
        raw_results = _pick(data, "stepResults", "step_results", []) or []
        results: Dict[int, StepAnalysisResult] = {}
        for raw in raw_results:
            result = StepAnalysisResult.model_validate(raw)
            results[result.step_metadata.position] = result
        return cls(
            id=str(data["id"]),
            fiche_id=str(_pick(data, "ficheId", "fiche_id", "")),
            audit_config_id=str(_pick(data, "auditConfigId", "audit_config_id", "")),
            step_results=results,
        )


class AuditRepository(abc.ABC):
    """Read-only access to persisted audits, configs and recordings."""

    @abc.abstractmethod
    async def get_audit(self, audit_id: str) -> Optional[StoredAudit]:
        ...

    @abc.abstractmethod
    async def get_audit_config(self, config_id: str) -> Optional[AuditConfig]:
        ...

    @abc.abstractmethod
    async def get_recordings(self, fiche_id: str) -> List[StoredRecording]:
        """Recordings of a case, in chronological order."""


class InMemoryAuditRepository(AuditRepository):
    """Thread-safe in-memory repository.

    HOW: Plain dicts keyed by id, guarded by a threading.Lock. Recording
    lists are copied on read so callers cannot alter stored state.
    """

    def __init__(self) -> None:
        self._audits: Dict[str, StoredAudit] = {}
        self._configs: Dict[str, AuditConfig] = {}
        self._recordings: Dict[str, List[StoredRecording]] = {}
        self._lock = threading.Lock()

    def add_audit(self, audit: StoredAudit) -> None:
        with self._lock:
            self._audits[audit.id] = audit

    def add_config(self, config: AuditConfig) -> None:
        with self._lock:
            self._configs[config.id] = config

    def set_recordings(self, fiche_id: str, recordings: List[StoredRecording]) -> None:
        with self._lock:
            self._recordings[fiche_id] = list(recordings)

    async def get_audit(self, audit_id: str) -> Optional[StoredAudit]:
        with self._lock:
            return self._audits.get(audit_id)

    async def get_audit_config(self, config_id: str) -> Optional[AuditConfig]:
        with self._lock:
            return self._configs.get(config_id)

    async def get_recordings(self, fiche_id: str) -> List[StoredRecording]:
        with self._lock:
            return list(self._recordings.get(fiche_id, []))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> InMemoryAuditRepository:
        """Load a repository from a JSON document.

        Expected keys: "configs" (list of audit configs), "audits" (list of
        stored audits) and "recordings" (mapping of fiche id to a list of
        recordings). Missing keys mean empty collections.
        """
        repo = cls()
        for raw in data.get("configs", []):
            repo.add_config(AuditConfig.from_dict(raw))
        for raw in data.get("audits", []):
            repo.add_audit(StoredAudit.from_dict(raw))
        for fiche_id, raw_recordings in (data.get("recordings") or {}).items():
            repo.set_recordings(
                str(fiche_id), [StoredRecording.from_dict(r) for r in raw_recordings]
            )
        logger.info(
            "Loaded store: %d config(s), %d audit(s), %d case(s) with recordings",
            len(repo._configs), len(repo._audits), len(repo._recordings),
        )
        return repo


class StaticProductContextProvider(ProductContextProvider):
    """Returns the same product documents to every step that asks."""

    def __init__(self, documents: Optional[List[ProductDocument]] = None) -> None:
        self._documents = list(documents or [])

    async def fetch(self, step: AuditStepDefinition) -> List[ProductDocument]:
        return list(self._documents)

    @classmethod
    def from_list(cls, raw: Any) -> StaticProductContextProvider:
        documents = [
            ProductDocument(
                title=str(item.get("title", "")),
                content=str(item.get("content", "")),
                source=str(item.get("source", "")),
            )
            for item in (raw or [])
            if isinstance(item, dict)
        ]
        return cls(documents)
