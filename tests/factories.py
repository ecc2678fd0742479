"""Builders for transcripts, model payloads and a scripted analysis client.

WHY: Most test modules need realistic words, step payloads in the exact
JSON shape the model returns, and an AnalysisClient that answers per
step without touching the network.

HOW: Plain functions build TranscriptWord lists and payload dicts.
FakeAnalysisClient reads the step position from the "ÉTAPE N/M" header
of each prompt and pops the next scripted answer for that step.

RULES:
- Payload builders produce dicts that validate against StepAnalysisPayload
- Scripted answers may be dicts (JSON-encoded), raw strings, or exceptions
- Every fake call reports 150 total tokens
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import Any, Dict, List, Optional, Union

from call_audit.analysis.client import AnalysisClient, AnalysisClientError, AnalysisResponse
from call_audit.analysis.models import StepAnalysisPayload, StepAnalysisResult, TokenUsage
from call_audit.analysis.orchestrator import step_metadata_for
from call_audit.core.ir import AuditStepDefinition, TranscriptWord

FAKE_USAGE = TokenUsage(prompt_tokens=100, completion_tokens=50, total_tokens=150)

QUOTE_INTRO = "Bonjour je suis Marie de Net Courtage Assurance"
QUOTE_ORIAS = "Notre numéro ORIAS est le 12345678"
QUOTE_CONFIRM = "Je vous confirme la souscription du contrat santé"

_STEP_HEADER_RE = re.compile(r"ÉTAPE (\d+)/\d+")

Scripted = Union[str, Dict[str, Any], BaseException]


# ---------------------------------------------------------------------------
# Transcripts
# ---------------------------------------------------------------------------


def turn(speaker: Optional[str], text: str, start: float, word_s: float = 0.4) -> List[TranscriptWord]:
    """Words for one speaker turn, evenly spaced from start."""
    words: List[TranscriptWord] = []
    t = start
    for token in text.split():
        words.append(TranscriptWord(
            text=token,
            start=round(t, 2),
            end=round(t + word_s - 0.05, 2),
            speaker_id=speaker,
        ))
        t += word_s
    return words


# ---------------------------------------------------------------------------
# Model payloads
# ---------------------------------------------------------------------------


def cite(
    texte: str,
    recording_index: int = 0,
    chunk_index: int = 0,
    minutage: str = "00:00",
    seconds: float = 0.0,
    speaker: str = "speaker_0",
) -> Dict[str, Any]:
    return {
        "texte": texte,
        "minutage": minutage,
        "minutage_secondes": seconds,
        "speaker": speaker,
        "recording_index": recording_index,
        "chunk_index": chunk_index,
        "recording_date": "01/01/2000",
        "recording_time": "00:00",
    }


def point(
    text: str,
    statut: str = "PRESENT",
    citations: Optional[List[Dict[str, Any]]] = None,
    commentaire: str = "",
) -> Dict[str, Any]:
    cits = citations or []
    return {
        "point": text,
        "statut": statut,
        "commentaire": commentaire,
        "citations": cits,
        "minutages": [c["minutage"] for c in cits],
        "erreur_transcription_notee": False,
        "variation_phonetique_utilisee": None,
    }


def step_payload(
    score: int = 5,
    conforme: str = "CONFORME",
    niveau: str = "EXCELLENT",
    points: Optional[List[Dict[str, Any]]] = None,
    commentaire: str = "",
) -> Dict[str, Any]:
    pts = points or []
    return {
        "traite": True,
        "conforme": conforme,
        "minutages": [m for p in pts for m in p["minutages"]],
        "score": score,
        "points_controle": pts,
        "mots_cles_trouves": [],
        "commentaire_global": commentaire,
        "niveau_conformite": niveau,
        "erreurs_transcription_tolerees": 0,
    }


def result_for(step: AuditStepDefinition, payload: Dict[str, Any]) -> StepAnalysisResult:
    """A StepAnalysisResult for step, as the orchestrator would produce it."""
    return StepAnalysisResult.from_payload(
        StepAnalysisPayload.model_validate(payload),
        step_metadata_for(step),
        FAKE_USAGE,
    )


# ---------------------------------------------------------------------------
# Scripted client
# ---------------------------------------------------------------------------


def step_position_of(prompt: str) -> Optional[int]:
    match = _STEP_HEADER_RE.search(prompt)
    return int(match.group(1)) if match else None


class FakeAnalysisClient(AnalysisClient):
    """AnalysisClient answering from per-step scripts.

    responses maps a step position to the answers for successive calls;
    once a script is exhausted the last answer is repeated. default is
    used for positions without a script.
    """

    def __init__(
        self,
        responses: Optional[Dict[int, List[Scripted]]] = None,
        default: Optional[Scripted] = None,
        delay_s: float = 0.0,
    ) -> None:
        self.responses = {k: list(v) for k, v in (responses or {}).items()}
        self.default = default
        self.delay_s = delay_s
        self.prompts: List[str] = []
        self.calls: Dict[int, int] = {}

    async def complete(self, prompt: str) -> AnalysisResponse:
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        self.prompts.append(prompt)
        position = step_position_of(prompt) or 0
        self.calls[position] = self.calls.get(position, 0) + 1

        script = self.responses.get(position)
        if script:
            item = script.pop(0) if len(script) > 1 else script[0]
        else:
            item = self.default
        if item is None:
            raise AnalysisClientError("no scripted response for step {}".format(position))
        if isinstance(item, BaseException):
            raise item
        text = item if isinstance(item, str) else json.dumps(item, ensure_ascii=False)
        return AnalysisResponse(text=text, usage=FAKE_USAGE)
