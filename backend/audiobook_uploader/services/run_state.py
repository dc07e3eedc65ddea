"""In-memory run state tracking for live pipeline updates."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Sequence

from ..core.config import get_settings
from ..core.errors import PIPELINE_CANCELLED_MESSAGE, PipelineAlreadyRunningError
from ..schemas.pipeline import (
    PIPELINE_STEP_ORDER,
    PipelineConfig,
    PipelineProgressEvent,
    PipelineResult,
    PipelineRunStatus,
    PipelineRunStatusResponse,
    PipelineStep,
    PipelineStepName,
    StepStatus,
)

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = (PipelineRunStatus.queued, PipelineRunStatus.running)


def summarize_steps(
    steps: Sequence[PipelineStep],
    planned: Sequence[PipelineStepName] | None = None,
) -> tuple[int, StepStatus, PipelineStep | None]:
    """Return overall progress, aggregate status and the step currently running."""

    total = len(planned) if planned else len(steps)
    completed = sum(1 for step in steps if step.status == StepStatus.completed)
    failed = any(step.status == StepStatus.failed for step in steps)
    current = next((step for step in steps if step.status == StepStatus.in_progress), None)

    overall = round(completed / total * 100) if total else 0
    if failed:
        status = StepStatus.failed
    elif total and completed >= total:
        status = StepStatus.completed
    elif current is not None or completed:
        status = StepStatus.in_progress
    else:
        status = StepStatus.pending
    return min(overall, 100), status, current


@dataclass
class RunState:
    """Represents the lifecycle of an individual pipeline run."""

    run_id: str
    config: PipelineConfig
    status: PipelineRunStatus = PipelineRunStatus.queued
    steps: dict[PipelineStepName, PipelineStep] = field(default_factory=dict)
    result: PipelineResult | None = None
    queue: asyncio.Queue[str | None] = field(default_factory=asyncio.Queue)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    finished_at: float | None = None

    def step_snapshots(self) -> list[PipelineStep]:
        return [self.steps[name] for name in PIPELINE_STEP_ORDER if name in self.steps]


class RunStateManager:
    """Singleton manager coordinating run state and event emission.

    Events are queued as Server-Sent Event frames in emission order; ``None``
    closes the stream after the terminal ``complete`` event. Finished runs are
    kept for ``retention_seconds`` and evicted when the next run is created.
    """

    _instance: RunStateManager | None = None

    def __init__(self, retention_seconds: float = 3600.0) -> None:
        self._runs: dict[str, RunState] = {}
        self._lock = asyncio.Lock()
        self.retention_seconds = retention_seconds

    @classmethod
    def instance(cls) -> RunStateManager:
        if cls._instance is None:
            cls._instance = cls(retention_seconds=get_settings().run_retention_seconds)
        return cls._instance

    async def create_run(self, config: PipelineConfig) -> RunState:
        async with self._lock:
            self._prune()
            active = next((run for run in self._runs.values() if run.status in _ACTIVE_STATUSES), None)
            if active is not None:
                raise PipelineAlreadyRunningError(f"Pipeline run {active.run_id} is already in progress")
            run_id = uuid.uuid4().hex
            state = RunState(run_id=run_id, config=config)
            self._runs[run_id] = state

        state.queue.put_nowait(self._serialize_event({
            "event": "init",
            "run_id": run_id,
            "story_title": config.story_title,
            "planned_steps": [name.value for name in config.planned_steps()],
        }))
        return state

    async def mark_run_started(self, run_id: str) -> None:
        state = await self._get_run(run_id)
        if state is None:
            return
        state.status = PipelineRunStatus.running
        state.queue.put_nowait(self._serialize_event({"event": "run", "run_id": run_id, "status": state.status.value}))

    def publish_progress(self, run_id: str, step: PipelineStep) -> None:
        """Record a step snapshot and enqueue it without waiting on consumers."""

        state = self._runs.get(run_id)
        if state is None:
            return
        state.steps[step.name] = step
        overall, _, _ = summarize_steps(state.step_snapshots(), state.config.planned_steps())
        event = PipelineProgressEvent(run_id=run_id, step=step, overall_progress=overall)
        state.queue.put_nowait(self._serialize_event({"event": "progress", **event.model_dump(mode="json")}))

    async def mark_run_finished(self, run_id: str, result: PipelineResult) -> None:
        state = await self._get_run(run_id)
        if state is None:
            return
        if result.success:
            state.status = PipelineRunStatus.completed
        elif state.cancel_event.is_set() and result.error == PIPELINE_CANCELLED_MESSAGE:
            state.status = PipelineRunStatus.cancelled
        else:
            state.status = PipelineRunStatus.failed
        state.result = result
        state.finished_at = time.monotonic()
        for step in result.steps:
            state.steps[step.name] = step

        state.queue.put_nowait(self._serialize_event({"event": "run", "run_id": run_id, "status": state.status.value}))
        state.queue.put_nowait(
            self._serialize_event(
                {
                    "event": "complete",
                    "run_id": run_id,
                    "result": result.model_dump(mode="json"),
                }
            )
        )
        state.queue.put_nowait(None)

    async def request_cancel(self, run_id: str) -> bool | None:
        """Ask a run to stop before its next step. ``None`` means the run is unknown."""

        state = await self._get_run(run_id)
        if state is None:
            return None
        if state.status not in _ACTIVE_STATUSES:
            return False
        state.cancel_event.set()
        return True

    def cancel_event(self, run_id: str) -> asyncio.Event | None:
        state = self._runs.get(run_id)
        return state.cancel_event if state is not None else None

    async def get_status(self, run_id: str) -> PipelineRunStatusResponse | None:
        state = await self._get_run(run_id)
        if state is None:
            return None
        return PipelineRunStatusResponse(
            run_id=run_id,
            story_title=state.config.story_title,
            status=state.status,
            steps=state.step_snapshots(),
            result=state.result,
        )

    def get_queue(self, run_id: str) -> asyncio.Queue[str | None] | None:
        return self._runs.get(run_id).queue if run_id in self._runs else None

    async def _get_run(self, run_id: str) -> RunState | None:
        async with self._lock:
            return self._runs.get(run_id)

    def _serialize_event(self, payload: dict[str, Any]) -> str:
        return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"

    def _prune(self) -> None:
        cutoff = time.monotonic() - self.retention_seconds
        expired = [
            run_id
            for run_id, run in self._runs.items()
            if run.finished_at is not None and run.finished_at <= cutoff
        ]
        for run_id in expired:
            del self._runs[run_id]
        if expired:
            logger.debug("Evicted %s finished run(s)", len(expired))
