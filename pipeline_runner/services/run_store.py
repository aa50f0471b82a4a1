"""Persist run results and their step log to SQLite."""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path

from pipeline_runner.config import settings
from pipeline_runner.pipeline.schemas import RunResult, RunStatus, StepKind
from pipeline_runner.services.page_source import connect

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS pipeline_runs (
    id                   TEXT PRIMARY KEY,
    pipeline_id          TEXT NOT NULL,
    document_id          INTEGER NOT NULL,
    status               TEXT NOT NULL,
    overall_score        REAL,
    extracted_json       TEXT,
    final_scores_json    TEXT,
    final_decisions_json TEXT,
    error                TEXT,
    started_at           TEXT,
    finished_at          TEXT
);
CREATE TABLE IF NOT EXISTS pipeline_run_steps (
    run_id      TEXT NOT NULL,
    seq_no      INTEGER NOT NULL,
    step_id     TEXT NOT NULL,
    prompt_id   INTEGER NOT NULL,
    prompt_type TEXT NOT NULL,
    route       TEXT,
    result_json TEXT,
    is_final    INTEGER NOT NULL DEFAULT 0,
    final_key   TEXT,
    PRIMARY KEY (run_id, seq_no)
);
"""

# columns added after the first release; ALTERed into older databases
_LATE_COLUMNS = ("final_scores_json", "final_decisions_json")


def final_scores(result: RunResult) -> dict[str, dict]:
    return {
        str(s.prompt_id): {"result": s.result, "label": s.label.value, "confidence": s.confidence}
        for s in result.scoring
    }


def final_decisions(result: RunResult) -> dict[str, dict]:
    return {
        str(d.prompt_id): {"route": d.route, "answer": d.answer, "confidence": d.confidence}
        for d in result.decision
    }


class RunStore:
    """Writes ``pipeline_runs`` rows and one ``pipeline_run_steps`` row per log entry.

    Extraction steps are flagged ``is_final`` with the canonical field's
    ``json_key`` when their prompt produced a canonical value.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or settings.sqlite_path
        conn = connect(self.path)
        try:
            conn.executescript(_SCHEMA)
            present = {row[1] for row in conn.execute("PRAGMA table_info(pipeline_runs)")}
            for column in _LATE_COLUMNS:
                if column not in present:
                    conn.execute(f"ALTER TABLE pipeline_runs ADD COLUMN {column} TEXT")
            conn.commit()
        finally:
            conn.close()

    def mark_running(self, run_id: str, pipeline_id: str, document_id: int, started_at: str) -> None:
        conn = connect(self.path)
        try:
            with conn:
                conn.execute(
                    "INSERT OR REPLACE INTO pipeline_runs "
                    "(id, pipeline_id, document_id, status, started_at) VALUES (?, ?, ?, ?, ?)",
                    (run_id, pipeline_id, document_id, RunStatus.RUNNING.value, started_at),
                )
        finally:
            conn.close()

    def save(self, result: RunResult) -> None:
        final_keys = {f.prompt_id: f.json_key for f in result.extraction}
        conn = connect(self.path)
        try:
            with conn:
                conn.execute(
                    "INSERT OR REPLACE INTO pipeline_runs "
                    "(id, pipeline_id, document_id, status, overall_score, extracted_json, "
                    " final_scores_json, final_decisions_json, error, started_at, finished_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        result.run_id,
                        result.pipeline_id,
                        result.document_id,
                        result.status.value,
                        result.overall_score,
                        json.dumps(result.extracted, default=str),
                        json.dumps(final_scores(result)),
                        json.dumps(final_decisions(result)),
                        result.error,
                        result.started_at,
                        result.finished_at,
                    ),
                )
                conn.execute("DELETE FROM pipeline_run_steps WHERE run_id = ?", (result.run_id,))
                rows = []
                for entry in result.log:
                    final_key = (
                        final_keys.get(entry.prompt_id)
                        if entry.kind == StepKind.EXTRACTION
                        else None
                    )
                    rows.append((
                        result.run_id,
                        entry.seq_no,
                        entry.step_id,
                        entry.prompt_id,
                        entry.kind.value,
                        entry.route,
                        entry.model_dump_json(include={"batches", "raw_answers", "consolidated"}),
                        int(final_key is not None),
                        final_key,
                    ))
                conn.executemany(
                    "INSERT INTO pipeline_run_steps "
                    "(run_id, seq_no, step_id, prompt_id, prompt_type, route, result_json, "
                    " is_final, final_key) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    rows,
                )
        finally:
            conn.close()
        logger.info(
            "Run %s stored: status=%s, %d step(s).",
            result.run_id, result.status.value, len(result.log),
        )

    def get_run(self, run_id: str) -> dict | None:
        conn = connect(self.path)
        conn.row_factory = sqlite3.Row
        try:
            row = conn.execute("SELECT * FROM pipeline_runs WHERE id = ?", (run_id,)).fetchone()
            if row is None:
                return None
            steps = conn.execute(
                "SELECT * FROM pipeline_run_steps WHERE run_id = ? ORDER BY seq_no", (run_id,)
            ).fetchall()
        finally:
            conn.close()
        run = dict(row)
        run["extracted"] = json.loads(run.pop("extracted_json") or "{}")
        run["final_scores"] = json.loads(run.pop("final_scores_json") or "{}")
        run["final_decisions"] = json.loads(run.pop("final_decisions_json") or "{}")
        run["steps"] = [dict(s) for s in steps]
        return run
