"""
Page batching.

Pages   → whitespace-normalised text
Batches → consecutive, non-overlapping page groups bounded by a page count
          and a character budget

``plan_batches`` chooses the bounds per step kind: extraction runs page by
page so evidence pages stay exact, scoring uses the configured page batch
size, and a decision sees the whole document at once whenever it fits the
character budget.
"""

from __future__ import annotations

import logging
import re
from typing import Sequence

from pipeline_runner.pipeline.config import PipelineSettings, pipeline_settings
from pipeline_runner.pipeline.schemas import Batch, StepKind

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")


def normalize_spaces(text: str) -> str:
    """Collapse runs of whitespace to single spaces and trim."""
    return _WS_RE.sub(" ", text).strip()


def build_batches(
    pages: Sequence[tuple[int, str]],
    max_pages: int,
    max_chars: int,
) -> list[Batch]:
    """Group ordered ``(page_no, text)`` pairs into bounded batches.

    A batch is closed *before* adding a page when it already holds
    ``max_pages`` pages or when the page would push it past ``max_chars``
    (pages are joined with a newline, which counts). An empty batch is never
    closed, so a single oversized page becomes its own batch.
    ``max_chars <= 0`` disables the character budget.
    """
    max_pages = max(1, max_pages)
    out: list[Batch] = []
    cur_pages: list[int] = []
    cur_parts: list[str] = []
    cur_chars = 0

    for page_no, raw in pages:
        text = normalize_spaces(raw)
        needed = len(text) + (1 if cur_parts else 0)

        if cur_pages:
            too_many = len(cur_pages) >= max_pages
            too_long = max_chars > 0 and cur_chars + needed > max_chars
            if too_many or too_long:
                out.append(Batch(page_numbers=cur_pages, text="\n".join(cur_parts)))
                cur_pages, cur_parts, cur_chars = [], [], 0
                needed = len(text)

        cur_pages.append(page_no)
        cur_parts.append(text)
        cur_chars += needed

    if cur_pages:
        out.append(Batch(page_numbers=cur_pages, text="\n".join(cur_parts)))
    return out


def plan_batches(
    kind: StepKind,
    pages: Sequence[tuple[int, str]],
    cfg: PipelineSettings | None = None,
) -> list[Batch]:
    """Batch *pages* the way a step of *kind* consumes them."""
    cfg = cfg or pipeline_settings
    if not pages:
        return []

    if kind == StepKind.EXTRACTION:
        return build_batches(pages, cfg.extraction_pages_per_batch, cfg.max_chars)

    if kind == StepKind.DECISION:
        whole = build_batches(pages, len(pages), cfg.max_chars)
        if len(whole) == 1:
            return whole
        logger.debug(
            "Decision input exceeds %d chars – falling back to %d-page batches.",
            cfg.max_chars,
            cfg.page_batch_size,
        )

    return build_batches(pages, cfg.page_batch_size, cfg.max_chars)
