"""Progress reporting port and a non-blocking, queue-backed emitter.

WHY: Callers want live progress (webhooks, dashboards, CLI status lines)
while an audit runs, but a slow or failing notification sink must never
stall or fail the analysis. Emission is therefore decoupled from the
analysis tasks through a queue.

HOW: ProgressSink is the port: three async callbacks with no-op defaults.
ProgressEmitter owns an asyncio.Queue; the orchestrator calls its plain
(non-async) emit methods, which only enqueue. A single drain task delivers
queued events to the sink in order. Use the emitter as an async context
manager so the drain task is started and flushed around a run.

RULES:
- Emit methods never block and never raise
- Events are delivered at most once, in emission order, with no retry
- Sink exceptions are logged as warnings and dropped
- On exit the emitter waits up to flush_timeout_s for delivery, then
  cancels whatever is left
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_TIMEOUT_S = 5.0


class ProgressSink:
    """Receiver of audit progress notifications. Override what you need."""

    async def step_completed(
        self,
        position: int,
        name: str,
        score: int,
        weight: int,
        compliant: bool,
        citation_count: int,
        tokens: int,
    ) -> None:
        return None

    async def step_failed(self, position: int, name: str, error: str) -> None:
        return None

    async def progress(self, completed: int, total: int, failed: int, phase: str) -> None:
        return None


class LoggingProgressSink(ProgressSink):
    """Writes progress notifications to the log (used by the CLI)."""

    async def step_completed(self, position, name, score, weight, compliant, citation_count, tokens):  # noqa: ANN001
        logger.info(
            "Step %d (%s) completed: %d/%d, %s, %d citation(s), %d tokens",
            position, name, score, weight,
            "compliant" if compliant else "not compliant",
            citation_count, tokens,
        )

    async def step_failed(self, position, name, error):  # noqa: ANN001
        logger.warning("Step %d (%s) failed: %s", position, name, error)

    async def progress(self, completed, total, failed, phase):  # noqa: ANN001
        logger.info("Progress [%s]: %d/%d done, %d failed", phase, completed, total, failed)


@dataclass
class _Event:
    method: str
    kwargs: Dict[str, Any] = field(default_factory=dict)


class ProgressEmitter:
    """Fire-and-forget bridge between the orchestrator and a ProgressSink.

    RULES:
    - Use as: async with ProgressEmitter(sink) as emitter: ...
    - Events emitted outside the context manager are queued and delivered
      once the drain task is running
    """

    def __init__(
        self,
        sink: Optional[ProgressSink] = None,
        flush_timeout_s: float = DEFAULT_FLUSH_TIMEOUT_S,
    ) -> None:
        self._sink = sink or ProgressSink()
        self._flush_timeout_s = flush_timeout_s
        self._queue: asyncio.Queue[_Event] = asyncio.Queue()
        self._drain_task: Optional[asyncio.Task] = None
        self.dropped = 0

    async def __aenter__(self) -> ProgressEmitter:
        self._drain_task = asyncio.create_task(self._drain())
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        await self.aclose()

    # ------------------------------------------------------------------
    # Emission (non-blocking)
    # ------------------------------------------------------------------

    def step_completed(self, **kwargs: Any) -> None:
        self._emit("step_completed", kwargs)

    def step_failed(self, **kwargs: Any) -> None:
        self._emit("step_failed", kwargs)

    def progress(self, **kwargs: Any) -> None:
        self._emit("progress", kwargs)

    def _emit(self, method: str, kwargs: Dict[str, Any]) -> None:
        self._queue.put_nowait(_Event(method, kwargs))

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await getattr(self._sink, event.method)(**event.kwargs)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.dropped += 1
                logger.warning("Progress sink failed on %s: %s", event.method, exc)
            finally:
                self._queue.task_done()

    async def aclose(self) -> None:
        """Flush pending events (bounded by flush_timeout_s) and stop the drain task."""
        if self._drain_task is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=self._flush_timeout_s)
        except asyncio.TimeoutError:
            logger.warning(
                "Progress sink too slow; dropping %d pending event(s)",
                self._queue.qsize(),
            )
        self._drain_task.cancel()
        try:
            await self._drain_task
        except asyncio.CancelledError:
            pass
        self._drain_task = None
