"""Ordered audit log of the steps a run actually executed."""

from __future__ import annotations

from typing import Any, Sequence

from pydantic import BaseModel

from pipeline_runner.pipeline.schemas import Batch, PipelineStep, RunStep


class RunLogAssembler:
    """Appends one ``RunStep`` per executed step, numbering them from 1."""

    def __init__(self) -> None:
        self._entries: list[RunStep] = []

    def record(
        self,
        step: PipelineStep,
        route: str,
        batches: Sequence[Batch],
        raw_answers: Sequence[BaseModel],
        consolidated: BaseModel | None,
    ) -> RunStep:
        entry = RunStep(
            seq_no=len(self._entries) + 1,
            step_id=step.id,
            prompt_id=step.prompt_id,
            kind=step.kind,
            route=route,
            batches=[b.summary() for b in batches],
            raw_answers=[_dump(a) for a in raw_answers],
            consolidated=_dump(consolidated) if consolidated is not None else None,
        )
        self._entries.append(entry)
        return entry

    def entries(self) -> tuple[RunStep, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")
