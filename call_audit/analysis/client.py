"""Async client for the AI analysis capability plus response parsing.

WHY: Every audit step is judged by a language model. The engine only needs
"prompt in, JSON text + token usage out", so the orchestrator depends on a
small AnalysisClient port. The production implementation talks to an
OpenAI-compatible chat completions endpoint; tests plug in scripted fakes.

HOW: AnalysisClient is an abstract base with one async method, complete().
OpenAIAnalysisClient wraps httpx.AsyncClient with Bearer auth and is used
as an async context manager. parse_step_payload() runs the repair pass,
decodes the JSON and validates it against StepAnalysisPayload.

RULES:
- Always use the async context manager (async with OpenAIAnalysisClient() as c:)
- Requests use temperature 0 and JSON response format
- Non-2xx responses raise AnalysisAPIError(status_code, message)
- Empty model content raises AnalysisClientError
- Output that still fails validation after repair raises AnalysisParseError
- This module never retries; retry policy belongs to the orchestrator
"""

from __future__ import annotations

import abc
import json
import logging
from dataclasses import dataclass, field

import httpx
from pydantic import ValidationError

from call_audit.analysis.models import StepAnalysisPayload, TokenUsage
from call_audit.analysis.repair import repair_analysis_text
from call_audit.config import (
    ANALYSIS_CALL_TIMEOUT_S,
    OPENAI_BASE_URL,
    OPENAI_MODEL_AUDIT,
    load_api_key,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class AnalysisClientError(Exception):
    """Raised when an analysis call fails in a way worth retrying.

    WHY: The orchestrator retries transient model failures and must tell
    them apart from programming errors, which should propagate.

    RULES:
    - Base class for every analysis transport failure
    """


class AnalysisAPIError(AnalysisClientError):
    """Raised when the model API returns an error response.

    HOW: Wraps the HTTP status code and response body.

    RULES:
    - Always include status_code and message
    - message is the response body text or a summary
    """

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Analysis API error {status_code}: {message}")


class AnalysisParseError(ValueError):
    """Raised when model output is not a valid step analysis, even after repair."""


# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------


@dataclass
class AnalysisResponse:
    """Raw model output for one prompt, before parsing."""

    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)


class AnalysisClient(abc.ABC):
    """Prompt-in, JSON-text-out analysis capability."""

    @abc.abstractmethod
    async def complete(self, prompt: str) -> AnalysisResponse:
        """Send one prompt and return the raw model text plus token usage."""


def parse_step_payload(text: str) -> StepAnalysisPayload:
    """Repair, decode and validate one model response.

    WHY: Models occasionally emit near-miss JSON. The repair pass fixes the
    known cases; anything else must fail loudly so the attempt is retried
    instead of a guessed result being scored.

    RULES:
    - The repair pass always runs before decoding
    - JSON that is not an object is a parse error
    - Schema violations (bad enums, missing fields) are parse errors
    - The citation invariant is not checked here; StepAnalysisResult.from_payload()
      normalizes control points
    """
    repaired = repair_analysis_text(text)
    try:
        data = json.loads(repaired)
    except json.JSONDecodeError as exc:
        raise AnalysisParseError(
            "Model output is not valid JSON after repair: {}".format(exc)
        ) from exc

    if not isinstance(data, dict):
        raise AnalysisParseError(
            "Model output must be a JSON object, got {}".format(type(data).__name__)
        )

    try:
        return StepAnalysisPayload.model_validate(data)
    except ValidationError as exc:
        raise AnalysisParseError(
            "Model output failed schema validation: {}".format(exc)
        ) from exc


# ---------------------------------------------------------------------------
# OpenAI-compatible implementation
# ---------------------------------------------------------------------------


class OpenAIAnalysisClient(AnalysisClient):
    """Async client for an OpenAI-compatible chat completions endpoint.

    WHY: Keeps HTTP details (auth, request body, usage extraction) out of
    the orchestrator.

    HOW: Wraps httpx.AsyncClient with Bearer token auth. One POST to
    /chat/completions per prompt.

    RULES:
    - Use as: async with OpenAIAnalysisClient() as client: ...
    - api_key defaults to load_api_key() from .env
    - base_url and model default to the config values
    - transport is injectable for tests (httpx.MockTransport)
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key or load_api_key()
        self._base_url = (base_url or OPENAI_BASE_URL).rstrip("/")
        self._model = model or OPENAI_MODEL_AUDIT
        self._timeout_s = timeout_s or ANALYSIS_CALL_TIMEOUT_S
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> OpenAIAnalysisClient:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {self._api_key}"},
            timeout=httpx.Timeout(self._timeout_s, connect=30.0),
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._client:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        """Return the active httpx client, raising if not in context manager."""
        if self._client is None:
            raise RuntimeError(
                "OpenAIAnalysisClient must be used as an async context manager: "
                "async with OpenAIAnalysisClient() as client: ..."
            )
        return self._client

    async def complete(self, prompt: str) -> AnalysisResponse:
        """Send one analysis prompt and return the model's JSON text.

        RULES:
        - The whole prompt is sent as a single user message
        - Raises AnalysisAPIError on non-2xx responses
        - Raises AnalysisClientError when the body is not a chat completion
        - Raises AnalysisClientError when the response has no content
        """
        client = self._ensure_client()
        body = {
            "model": self._model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [{"role": "user", "content": prompt}],
        }
        logger.debug("Sending analysis prompt (%d chars) to %s", len(prompt), self._model)

        resp = await client.post("/chat/completions", json=body)
        if resp.status_code != 200:
            raise AnalysisAPIError(resp.status_code, resp.text)

        try:
            data = resp.json()
            choices = data.get("choices") or []
            content = ""
            if choices:
                content = (choices[0].get("message") or {}).get("content") or ""
            raw_usage = data.get("usage") or {}
            usage = TokenUsage(
                prompt_tokens=int(raw_usage.get("prompt_tokens", 0) or 0),
                completion_tokens=int(raw_usage.get("completion_tokens", 0) or 0),
                total_tokens=int(raw_usage.get("total_tokens", 0) or 0),
            )
        except (ValueError, TypeError, AttributeError, IndexError) as exc:
            raise AnalysisClientError(
                "Unexpected chat completion body: {}".format(resp.text[:200])
            ) from exc

        if not isinstance(content, str) or not content.strip():
            raise AnalysisClientError("Model returned an empty response")
        return AnalysisResponse(text=content, usage=usage)
