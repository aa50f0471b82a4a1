"""Application entry-point – creates the FastAPI app and starts the queue worker."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI

from pipeline_runner.api.routes import router
from pipeline_runner.config import settings
from pipeline_runner.pipeline.orchestrator import StepOrchestrator
from pipeline_runner.services import queue as run_queue
from pipeline_runner.services.llm import build_gateway_client
from pipeline_runner.services.page_source import PageSource, PipelineStore, PromptStore
from pipeline_runner.services.run_store import RunStore
from pipeline_runner.services.worker import RunExecutor, RunWorker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


def build_executor() -> RunExecutor:
    client = build_gateway_client(PromptStore())
    return RunExecutor(
        orchestrator=StepOrchestrator(client),
        pages=PageSource(),
        pipelines=PipelineStore(),
        store=RunStore(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: wire the executor and, if enabled, start the queue worker."""
    logger.info("=== Starting pipeline runner (db=%s) ===", settings.sqlite_path)
    app.state.executor = build_executor()
    app.state.worker_task = None

    redis = None
    if settings.start_worker:
        redis = run_queue.connect()
        worker = RunWorker(run_queue.RunQueue(redis), app.state.executor)
        app.state.worker_task = asyncio.create_task(worker.serve())
    else:
        logger.info("Queue worker disabled – HTTP only.")

    logger.info("=== Startup complete ===")
    yield

    if app.state.worker_task is not None:
        app.state.worker_task.cancel()
        with suppress(asyncio.CancelledError):
            await app.state.worker_task
    if redis is not None:
        await redis.aclose()


app = FastAPI(
    title="Document Pipeline Runner",
    description=(
        "Runs configurable extraction / scoring / decision pipelines over "
        "document pages with an LLM and consolidates the per-batch answers."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router, prefix="/api")
