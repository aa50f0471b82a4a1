"""
Pipeline execution and consolidation configuration.

Batching / retry knobs are overridden with ``PIPELINE_``-prefixed variables
(e.g. ``PIPELINE_MAX_PARALLEL=5``); consolidation weights with
``CONSOLIDATION_``-prefixed ones (e.g. ``CONSOLIDATION_EXTRACTION_W_VOTE``).

The consolidation algorithms never read the environment themselves: the
settings are frozen into a ``ConsolidationConfig`` and passed in.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_settings import BaseSettings


@dataclass(frozen=True, slots=True)
class ConsolidationConfig:
    """Parameters shared by the field, score and decision reducers."""

    header_y: float = 120.0
    min_expl_len: int = 20
    min_confidence: float = 0.60

    # Extraction: vote / page proximity / header band / business pattern
    w_extraction: tuple[float, float, float, float] = (0.55, 0.20, 0.15, 0.10)
    # Scoring & decision: vote / anchor proximity / header band / explanation
    w_scoring: tuple[float, float, float, float] = (0.60, 0.20, 0.10, 0.10)

    def validate(self) -> None:
        if self.min_expl_len < 0:
            raise ValueError("min_expl_len must be >= 0")
        if not (0.0 <= self.min_confidence <= 1.0):
            raise ValueError("min_confidence must be within [0, 1]")
        for name in ("w_extraction", "w_scoring"):
            weights = getattr(self, name)
            if len(weights) != 4:
                raise ValueError(f"{name} must have exactly 4 weights")
            if any(w < 0 for w in weights):
                raise ValueError(f"{name} weights must be >= 0")


class PipelineSettings(BaseSettings):
    """Batching, fan-out and retry knobs of the step orchestrator."""

    # ── Batching ─────────────────────────────────────────────────────────
    page_batch_size: int = 5  # pages per scoring / decision batch
    extraction_pages_per_batch: int = 1  # extraction stays page-exact
    max_chars: int = 20_000  # 0 = no character budget

    # ── Model calls ──────────────────────────────────────────────────────
    max_parallel: int = 3  # in-flight gateway calls per step
    openai_timeout_ms: int = 25_000  # per attempt
    openai_retries: int = 2  # additional attempts after the first

    model_config = {
        "env_prefix": "PIPELINE_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


class ConsolidationSettings(BaseSettings):
    """Environment view of ``ConsolidationConfig``."""

    header_y: float = 120.0
    min_expl_len: int = 20
    min_confidence: float = 0.60

    extraction_w_vote: float = 0.55
    extraction_w_page: float = 0.20
    extraction_w_header: float = 0.15
    extraction_w_pattern: float = 0.10

    scoring_w_vote: float = 0.60
    scoring_w_near: float = 0.20
    scoring_w_header: float = 0.10
    scoring_w_expl: float = 0.10

    model_config = {
        "env_prefix": "CONSOLIDATION_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    def to_config(self) -> ConsolidationConfig:
        cfg = ConsolidationConfig(
            header_y=self.header_y,
            min_expl_len=self.min_expl_len,
            min_confidence=self.min_confidence,
            w_extraction=(
                self.extraction_w_vote,
                self.extraction_w_page,
                self.extraction_w_header,
                self.extraction_w_pattern,
            ),
            w_scoring=(
                self.scoring_w_vote,
                self.scoring_w_near,
                self.scoring_w_header,
                self.scoring_w_expl,
            ),
        )
        cfg.validate()
        return cfg


pipeline_settings = PipelineSettings()
consolidation_settings = ConsolidationSettings()
