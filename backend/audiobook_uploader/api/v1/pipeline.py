"""Pipeline orchestration endpoints."""

from __future__ import annotations

import asyncio
import uuid
from pathlib import Path
from typing import AsyncIterator

from fastapi import APIRouter, BackgroundTasks, HTTPException
from fastapi.responses import StreamingResponse

from ...core.config import Settings, get_settings
from ...core.errors import PipelineAlreadyRunningError
from ...schemas.pipeline import (
    PipelineCancelResponse,
    PipelineConfig,
    PipelineRunRequest,
    PipelineRunStatusResponse,
    PipelineRunTriggerResponse,
)
from ...services.pipeline_runner import PipelineRunner
from ...services.run_state import RunStateManager

router = APIRouter()


def resolve_output_paths(payload: PipelineRunRequest, settings: Settings) -> tuple[PipelineConfig, str | None]:
    """Fill missing output paths with a fresh folder under ``outputs_dir``.

    Returns the run config and, when the folder was generated, the URL under
    which the static outputs mount serves it.
    """

    values = payload.model_dump()
    output_url = None
    if not values["output_video_path"] or not values["output_thumbnail_path"]:
        folder = uuid.uuid4().hex[:12]
        directory = Path(settings.outputs_dir) / folder
        values["output_video_path"] = values["output_video_path"] or str(directory / "final.mp4")
        values["output_thumbnail_path"] = values["output_thumbnail_path"] or str(directory / "thumbnail.png")
        output_url = f"/api/outputs/{folder}"
    return PipelineConfig(**values), output_url


@router.post("/run", response_model=PipelineRunTriggerResponse, status_code=202)
async def trigger_pipeline_run(
    payload: PipelineRunRequest,
    background_tasks: BackgroundTasks,
) -> PipelineRunTriggerResponse:
    """Enqueue a pipeline run and return its identifier."""

    config, output_url = resolve_output_paths(payload, get_settings())
    manager = RunStateManager.instance()
    try:
        state = await manager.create_run(config)
    except PipelineAlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=exc.message) from exc

    runner = PipelineRunner(state_manager=manager)
    background_tasks.add_task(runner.execute_with_tracking, state.run_id, config)

    return PipelineRunTriggerResponse(run_id=state.run_id, output_url=output_url)


@router.get("/run/{run_id}", response_model=PipelineRunStatusResponse)
async def get_pipeline_run_status(run_id: str) -> PipelineRunStatusResponse:
    """Fetch the latest known status for a pipeline run."""

    manager = RunStateManager.instance()
    status = await manager.get_status(run_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return status


@router.post("/run/{run_id}/cancel", response_model=PipelineCancelResponse)
async def cancel_pipeline_run(run_id: str) -> PipelineCancelResponse:
    """Request cancellation; the run stops before its next step."""

    manager = RunStateManager.instance()
    cancelled = await manager.request_cancel(run_id)
    if cancelled is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return PipelineCancelResponse(run_id=run_id, cancelled=cancelled)


@router.get("/run/{run_id}/stream")
async def stream_pipeline_run(run_id: str) -> StreamingResponse:
    """Server-Sent Events stream emitting run lifecycle updates."""

    manager = RunStateManager.instance()
    queue = manager.get_queue(run_id)
    if queue is None:
        raise HTTPException(status_code=404, detail="Run not found")

    async def event_generator() -> AsyncIterator[str]:
        try:
            while True:
                message = await queue.get()
                if message is None:
                    break
                yield message
        except asyncio.CancelledError:  # pragma: no cover - connection dropped
            raise

    return StreamingResponse(event_generator(), media_type="text/event-stream")
