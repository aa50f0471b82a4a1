"""Read-only access to document pages, prompt texts and stored pipelines."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from pipeline_runner.config import settings
from pipeline_runner.pipeline.schemas import PipelineConfig

logger = logging.getLogger(__name__)


def connect(path: Path | None = None) -> sqlite3.Connection:
    path = path or settings.sqlite_path
    path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite3.connect(str(path))


class PageSource:
    """Pages of a document from ``pdf_texts``, ordered by page number."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or settings.sqlite_path

    def get_pages(self, document_id: int) -> list[tuple[int, str]]:
        conn = connect(self.path)
        try:
            rows = conn.execute(
                "SELECT page_no, text FROM pdf_texts WHERE document_id = ? ORDER BY page_no",
                (document_id,),
            ).fetchall()
        finally:
            conn.close()
        logger.debug("Document %s: %d page(s) loaded.", document_id, len(rows))
        return [(int(page_no), text or "") for page_no, text in rows]


class PromptStore:
    """Prompt texts from the ``prompts`` table."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or settings.sqlite_path

    def get_prompt(self, prompt_id: int) -> str:
        conn = connect(self.path)
        try:
            row = conn.execute("SELECT text FROM prompts WHERE id = ?", (prompt_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise KeyError(prompt_id)
        return row[0]


class PipelineStore:
    """Stored pipeline configurations from the ``pipelines`` table."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or settings.sqlite_path

    def get_pipeline(self, pipeline_id: str) -> PipelineConfig:
        conn = connect(self.path)
        try:
            row = conn.execute(
                "SELECT config_json FROM pipelines WHERE id = ?", (pipeline_id,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            raise KeyError(pipeline_id)
        return PipelineConfig.model_validate_json(row[0])
