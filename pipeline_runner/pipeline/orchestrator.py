"""
Step orchestrator – runs one pipeline configuration over one document.

Steps execute strictly in configuration order:
  1. inactive steps and steps bound to another route are skipped
  2. the step's batches are fanned out to the gateway client, bounded by
     ``max_parallel`` in-flight calls
  3. evidence pages are re-anchored against the document text
  4. scoring / decision answers are consolidated at once; extraction
     answers are collected and consolidated per prompt after the last step
  5. one audit entry is appended per executed step

Only a decision step changes the current route.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Iterable, Sequence, TypeVar

from pydantic import BaseModel

from pipeline_runner.pipeline.batching import plan_batches
from pipeline_runner.pipeline.config import (
    ConsolidationConfig,
    PipelineSettings,
    consolidation_settings,
    pipeline_settings,
)
from pipeline_runner.pipeline.consolidation import ConsolidationEngine
from pipeline_runner.pipeline.evidence import resolve_page
from pipeline_runner.pipeline.gateway import GatewayClient
from pipeline_runner.pipeline.run_log import RunLogAssembler
from pipeline_runner.pipeline.schemas import (
    ROOT_ROUTE,
    Batch,
    CanonicalField,
    DecisionOutcome,
    PipelineConfig,
    PipelineStep,
    RawExtraction,
    RunOutcome,
    ScoreOutcome,
    StepKind,
)

logger = logging.getLogger(__name__)

A = TypeVar("A", bound=BaseModel)


class PipelineConfigError(ValueError):
    """The pipeline configuration cannot be executed."""


def validate_config(config: PipelineConfig) -> None:
    """Reject configurations that would fail or silently never run."""
    if not config.steps:
        raise PipelineConfigError("pipeline has no steps")

    seen: set[str] = set()
    for step in config.steps:
        if step.id in seen:
            raise PipelineConfigError(f"duplicate step id {step.id!r}")
        seen.add(step.id)

    labels = {ROOT_ROUTE}
    for step in config.steps:
        if step.kind == StepKind.DECISION:
            labels.update((step.yes_key, step.no_key, *step.targets))

    for step in config.steps:
        if step.route is not None and step.route not in labels:
            raise PipelineConfigError(
                f"step {step.id!r} is bound to route {step.route!r}, "
                "which no decision step can emit"
            )


class StepOrchestrator:
    """Executes a ``PipelineConfig`` against the pages of one document."""

    def __init__(
        self,
        client: GatewayClient,
        consolidation: ConsolidationConfig | None = None,
        settings: PipelineSettings | None = None,
    ) -> None:
        self.client = client
        self.settings = settings or pipeline_settings
        self.engine = ConsolidationEngine(consolidation or consolidation_settings.to_config())

    async def run(
        self,
        config: PipelineConfig,
        pages: Sequence[tuple[int, str]],
    ) -> RunOutcome:
        validate_config(config)
        page_map = dict(pages)

        current_route = ROOT_ROUTE
        route_history = [ROOT_ROUTE]
        log = RunLogAssembler()
        extraction_raw: list[RawExtraction] = []
        scoring: list[ScoreOutcome] = []
        decision: list[DecisionOutcome] = []
        error: str | None = None

        for step in config.steps:
            if not step.active:
                logger.debug("Skipping inactive step %s.", step.id)
                continue
            if step.route not in (None, ROOT_ROUTE, current_route):
                logger.debug(
                    "Skipping step %s: bound to %s, current route is %s.",
                    step.id, step.route, current_route,
                )
                continue

            batches = plan_batches(step.kind, pages, self.settings)
            logger.info(
                "Step %s (%s, prompt %s): %d batch(es) on route %s.",
                step.id, step.kind.value, step.prompt_id, len(batches), current_route,
            )

            try:
                if step.kind == StepKind.EXTRACTION:
                    answers = await self._fan_out(self.client.extract, step, batches)
                    answers = [
                        a.model_copy(update={"json_key": step.final_key})
                        for a in _reanchor(answers, page_map)
                    ]
                    extraction_raw.extend(answers)
                    log.record(step, current_route, batches, answers, None)

                elif step.kind == StepKind.SCORING:
                    answers = await self._fan_out(self.client.score, step, batches)
                    answers = _reanchor(answers, page_map)
                    outcome = self.engine.score(answers, step.prompt_id, step.anchor_page)
                    if outcome is not None:
                        scoring.append(outcome)
                    log.record(step, current_route, batches, answers, outcome)

                else:
                    answers = await self._fan_out(self._decide_for(step), step, batches)
                    answers = _reanchor(answers, page_map)
                    outcome = self.engine.decision(
                        answers, step.prompt_id, step.anchor_page, step.yes_key, step.no_key,
                    )
                    if outcome is not None:
                        decision.append(outcome)
                        if outcome.route != current_route:
                            logger.info("Route %s → %s (step %s).", current_route, outcome.route, step.id)
                            current_route = outcome.route
                            route_history.append(current_route)
                    log.record(step, current_route, batches, answers, outcome)

            except Exception as exc:
                logger.exception("Step %s failed – aborting remaining steps.", step.id)
                error = f"step {step.id} failed: {exc}"
                break

        return RunOutcome(
            extraction=self._finalize_extraction(config.steps, extraction_raw),
            scoring=scoring,
            decision=decision,
            log=list(log.entries()),
            route_history=route_history,
            error=error,
        )

    # ── Internals ────────────────────────────────────────────────────────

    def _decide_for(self, step: PipelineStep) -> Callable[[int, str], Awaitable[BaseModel]]:
        async def call(prompt_id: int, text: str):
            return await self.client.decide(prompt_id, text, step.yes_key, step.no_key)

        return call

    async def _fan_out(
        self,
        call: Callable[[int, str], Awaitable[A]],
        step: PipelineStep,
        batches: Sequence[Batch],
    ) -> list[A]:
        """One call per batch, at most ``max_parallel`` in flight, in batch order."""
        sem = asyncio.Semaphore(max(1, self.settings.max_parallel))

        async def one(batch: Batch) -> A:
            async with sem:
                return await call(step.prompt_id, batch.text)

        tasks = [asyncio.create_task(one(b)) for b in batches]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            # a failed batch aborts its siblings; nothing outlives the step
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    def _finalize_extraction(
        self,
        steps: Iterable[PipelineStep],
        answers: Sequence[RawExtraction],
    ) -> list[CanonicalField]:
        groups: dict[int, list[RawExtraction]] = defaultdict(list)
        for a in answers:
            groups[a.prompt_id].append(a)

        first_step: dict[int, PipelineStep] = {}
        for step in steps:
            if step.kind == StepKind.EXTRACTION:
                first_step.setdefault(step.prompt_id, step)

        fields: list[CanonicalField] = []
        for prompt_id, group in groups.items():
            step = first_step[prompt_id]
            canonical = self.engine.field(group, prompt_id, step.field_type, step.final_key)
            if canonical is not None:
                fields.append(canonical)
            else:
                logger.info("No canonical value for prompt %s (%s).", prompt_id, step.final_key)
        return fields


def _reanchor(answers: list[A], pages: dict[int, str]) -> list[A]:
    """Move each answer's source page to where its quote actually occurs."""
    out: list[A] = []
    for a in answers:
        src = getattr(a, "source", None)
        if src is None or getattr(a, "error", None) is not None:
            out.append(a)
            continue
        value = getattr(a, "value", None)
        hit = resolve_page(src.quote, value if isinstance(value, str) else None, pages)
        if hit is not None and hit[0] != src.page:
            a = a.model_copy(update={"source": src.model_copy(update={"page": hit[0]})})
        out.append(a)
    return out
