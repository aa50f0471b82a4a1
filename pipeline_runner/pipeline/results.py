"""Turn a ``RunOutcome`` into the flat result persisted and published."""

from __future__ import annotations

from datetime import datetime, timezone
from statistics import fmean
from typing import Any

from pipeline_runner.pipeline.schemas import RunOutcome, RunResult, RunStatus


def extracted_fields(outcome: RunOutcome) -> dict[str, Any]:
    """``{json_key: value}`` of every canonical field, first key wins."""
    out: dict[str, Any] = {}
    for f in outcome.extraction:
        out.setdefault(f.json_key, f.value)
    return out


def overall_score(outcome: RunOutcome) -> float | None:
    """Mean confidence of the consolidated scores, or ``None`` if there are none."""
    if not outcome.scoring:
        return None
    return fmean(s.confidence for s in outcome.scoring)


def build_run_result(
    outcome: RunOutcome,
    *,
    run_id: str,
    document_id: int,
    pipeline_id: str,
    started_at: str | None = None,
) -> RunResult:
    status = RunStatus.FAILED if outcome.error else RunStatus.COMPLETED
    extra = {"started_at": started_at} if started_at else {}
    return RunResult(
        run_id=run_id,
        document_id=document_id,
        pipeline_id=pipeline_id,
        status=status,
        overall_score=overall_score(outcome),
        extracted=extracted_fields(outcome),
        extraction=list(outcome.extraction),
        scoring=list(outcome.scoring),
        decision=list(outcome.decision),
        log=list(outcome.log),
        route_history=list(outcome.route_history),
        error=outcome.error,
        finished_at=datetime.now(timezone.utc).isoformat(),
        **extra,
    )


def failed_run_result(
    *,
    run_id: str,
    document_id: int,
    pipeline_id: str,
    error: str,
    started_at: str | None = None,
) -> RunResult:
    """Result for a run that never got to execute a step."""
    extra = {"started_at": started_at} if started_at else {}
    return RunResult(
        run_id=run_id,
        document_id=document_id,
        pipeline_id=pipeline_id,
        status=RunStatus.FAILED,
        error=error,
        finished_at=datetime.now(timezone.utc).isoformat(),
        **extra,
    )
