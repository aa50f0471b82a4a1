"""
Run worker.

Consumes ``RunRequested`` events, resolves the pipeline configuration and
document pages, executes the run, persists it and publishes the result.
Up to ``worker_concurrency`` runs execute at once.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone

from pipeline_runner.config import settings
from pipeline_runner.pipeline.orchestrator import PipelineConfigError, StepOrchestrator
from pipeline_runner.pipeline.results import build_run_result, failed_run_result
from pipeline_runner.pipeline.schemas import RunRequested, RunResult
from pipeline_runner.services.page_source import PageSource, PipelineStore
from pipeline_runner.services.queue import RunQueue
from pipeline_runner.services.run_store import RunStore

logger = logging.getLogger(__name__)


class RunExecutor:
    """Executes one run end to end; shared by the worker and the HTTP API."""

    def __init__(
        self,
        orchestrator: StepOrchestrator,
        pages: PageSource,
        pipelines: PipelineStore,
        store: RunStore,
    ) -> None:
        self.orchestrator = orchestrator
        self.pages = pages
        self.pipelines = pipelines
        self.store = store

    async def execute(self, event: RunRequested) -> RunResult:
        run_id = event.run_id or str(uuid.uuid4())
        started_at = datetime.now(timezone.utc).isoformat()
        ids = {"run_id": run_id, "document_id": event.document_id, "pipeline_id": event.pipeline_id}
        logger.info("Run %s: pipeline %s on document %s.", run_id, event.pipeline_id, event.document_id)
        # sqlite calls block, so they run off the event loop
        await asyncio.to_thread(
            self.store.mark_running, run_id, event.pipeline_id, event.document_id, started_at
        )

        try:
            config = event.config or await asyncio.to_thread(
                self.pipelines.get_pipeline, event.pipeline_id
            )
        except KeyError:
            result = failed_run_result(
                **ids, error=f"pipeline {event.pipeline_id} not found", started_at=started_at
            )
            await asyncio.to_thread(self.store.save, result)
            return result

        pages = await asyncio.to_thread(self.pages.get_pages, event.document_id)
        if not pages:
            result = failed_run_result(
                **ids, error=f"document {event.document_id} has no pages", started_at=started_at
            )
            await asyncio.to_thread(self.store.save, result)
            return result

        try:
            outcome = await self.orchestrator.run(config, pages)
        except PipelineConfigError as exc:
            logger.error("Run %s rejected: %s", run_id, exc)
            result = failed_run_result(**ids, error=f"invalid pipeline: {exc}", started_at=started_at)
            await asyncio.to_thread(self.store.save, result)
            raise

        result = build_run_result(outcome, started_at=started_at, **ids)
        await asyncio.to_thread(self.store.save, result)
        logger.info(
            "Run %s finished: status=%s, score=%s, %d field(s).",
            run_id, result.status.value, result.overall_score, len(result.extracted),
        )
        return result


class RunWorker:
    """Queue consumer; stop it by cancelling ``serve()``."""

    def __init__(
        self,
        queue: RunQueue,
        executor: RunExecutor,
        concurrency: int | None = None,
        retry_delay: float = 1.0,
    ) -> None:
        self.queue = queue
        self.executor = executor
        self.concurrency = max(1, concurrency or settings.worker_concurrency)
        self.retry_delay = retry_delay  # seconds between failed queue polls
        self._slots = asyncio.Semaphore(self.concurrency)
        self._tasks: set[asyncio.Task] = set()

    async def handle(self, event: RunRequested) -> RunResult:
        """Execute one run and publish its result, failed or not."""
        if event.run_id is None:
            event = event.model_copy(update={"run_id": str(uuid.uuid4())})
        ids = {"run_id": event.run_id, "document_id": event.document_id, "pipeline_id": event.pipeline_id}
        try:
            result = await self.executor.execute(event)
        except PipelineConfigError as exc:
            result = failed_run_result(**ids, error=f"invalid pipeline: {exc}")
        except Exception as exc:
            logger.exception("Run %s failed.", event.run_id)
            result = failed_run_result(**ids, error=f"{exc.__class__.__name__}: {exc}")
            try:
                await asyncio.to_thread(self.executor.store.save, result)
            except Exception:
                logger.exception("Could not store failed run %s.", event.run_id)
        await self.queue.publish(result)
        return result

    async def _handle_slot(self, event: RunRequested) -> None:
        try:
            await self.handle(event)
        except Exception:
            logger.exception("Run for document %s crashed.", event.document_id)
        finally:
            self._slots.release()

    async def serve(self) -> None:
        logger.info(
            "Worker listening on %s (concurrency %d).", self.queue.run_queue, self.concurrency
        )
        try:
            while True:
                await self._slots.acquire()
                try:
                    event = await self.queue.next_request()
                except Exception:
                    self._slots.release()
                    logger.exception("Polling %s failed; retrying.", self.queue.run_queue)
                    await asyncio.sleep(self.retry_delay)
                    continue
                if event is None:
                    self._slots.release()
                    continue
                task = asyncio.create_task(self._handle_slot(event))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            for task in list(self._tasks):
                task.cancel()
            logger.info("Worker stopped.")
