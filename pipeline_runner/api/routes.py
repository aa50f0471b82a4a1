"""REST API routes for the pipeline runner."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from pipeline_runner.pipeline.orchestrator import PipelineConfigError
from pipeline_runner.pipeline.schemas import PipelineConfig, RunRequested, RunResult

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class RunRequest(BaseModel):
    document_id: int = Field(..., description="Document whose pages are read from pdf_texts.")
    pipeline_id: str = Field("adhoc", description="Stored pipeline id; ignored when config is given.")
    config: PipelineConfig | None = Field(None, description="Inline pipeline configuration.")


class HealthResponse(BaseModel):
    status: str
    worker_running: bool


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check(request: Request):
    """Return service health and whether the queue worker is running."""
    task = getattr(request.app.state, "worker_task", None)
    return HealthResponse(status="ok", worker_running=task is not None and not task.done())


@router.post("/runs", response_model=RunResult, tags=["runs"])
async def create_run(body: RunRequest, request: Request):
    """Execute a pipeline on a document synchronously and return the result."""
    executor = request.app.state.executor
    event = RunRequested(
        document_id=body.document_id,
        pipeline_id=body.pipeline_id,
        config=body.config,
    )
    try:
        return await executor.execute(event)
    except PipelineConfigError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
