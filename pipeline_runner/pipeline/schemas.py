"""
Pydantic models for every artifact that flows through a pipeline run.

Three families:
  - configuration  – PipelineStep / PipelineConfig (loaded once, frozen)
  - raw answers    – RawExtraction / RawScore / RawDecision, one per
                     (step, batch) pair, produced by the model gateway
  - outcomes       – CanonicalField / ScoreOutcome / DecisionOutcome,
                     RunStep (audit log) and RunOutcome / RunResult

Route labels are stored trimmed and upper-cased so that a step's ``route``
compares equal to the label the decision consolidator emits.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

ROOT_ROUTE = "ROOT"


# ── Enums ────────────────────────────────────────────────────────────────

class StepKind(str, Enum):
    EXTRACTION = "ExtractionPrompt"
    SCORING = "ScoringPrompt"
    DECISION = "DecisionPrompt"


class FieldType(str, Enum):
    AUTO = "auto"
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"


class ScoreLabel(str, Enum):
    YES = "yes"
    NO = "no"
    UNSURE = "unsure"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def normalize_route(label: str | None) -> str | None:
    if label is None:
        return None
    label = str(label).strip().upper()
    return label or None


# ── Pipeline definition ──────────────────────────────────────────────────

class PipelineStep(BaseModel):
    """One configured unit of work bound to one prompt."""

    id: str
    kind: StepKind = Field(..., alias="type")
    prompt_id: int = Field(..., alias="promptId")
    route: str | None = None
    active: bool = True

    # Decision only
    yes_key: str = Field("YES", alias="yesKey")
    no_key: str = Field("NO", alias="noKey")
    targets: list[str] = Field(default_factory=list)

    # Extraction only
    json_key: str | None = Field(None, alias="jsonKey")
    field_type: FieldType = Field(FieldType.AUTO, alias="fieldType")

    # Scoring / decision proximity reference
    anchor_page: int | None = Field(None, alias="anchorPage")

    model_config = {"populate_by_name": True, "frozen": True}

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, v: Any) -> str:
        return str(v)

    @field_validator("route", mode="before")
    @classmethod
    def _norm_route(cls, v: Any) -> str | None:
        return normalize_route(v)

    @field_validator("yes_key", "no_key", mode="before")
    @classmethod
    def _norm_key(cls, v: Any, info) -> str:
        default = "YES" if info.field_name == "yes_key" else "NO"
        return normalize_route(v) or default

    @field_validator("targets", mode="before")
    @classmethod
    def _norm_targets(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, dict):  # legacy {"true": "<step>", ...} maps: keys are the labels
            v = list(v.keys())
        return [t for t in (normalize_route(x) for x in v) if t]

    @property
    def final_key(self) -> str:
        return self.json_key or f"field_{self.prompt_id}"


class PipelineConfig(BaseModel):
    name: str = ""
    steps: list[PipelineStep] = Field(default_factory=list)

    model_config = {"frozen": True}


# ── Evidence ─────────────────────────────────────────────────────────────

class TextPosition(BaseModel):
    """Where in the document a model claims to have found its evidence."""

    page: int = 0
    bbox: tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)
    quote: str | None = None

    @field_validator("page", mode="before")
    @classmethod
    def _page(cls, v: Any) -> int:
        try:
            return int(v)
        except (TypeError, ValueError):
            return 0

    @field_validator("bbox", mode="before")
    @classmethod
    def _bbox(cls, v: Any) -> tuple[float, float, float, float]:
        if isinstance(v, (list, tuple)) and len(v) == 4:
            try:
                return tuple(float(x) for x in v)  # type: ignore[return-value]
            except (TypeError, ValueError):
                pass
        return (0.0, 0.0, 0.0, 0.0)

    @property
    def y(self) -> float:
        return self.bbox[1]


class Batch(BaseModel):
    """Consecutive pages merged into one text blob for a single model call."""

    page_numbers: list[int]
    text: str

    @property
    def char_count(self) -> int:
        return len(self.text)

    def summary(self) -> dict[str, Any]:
        return {"pages": self.page_numbers, "char_count": self.char_count}


# ── Raw (per-batch) answers ──────────────────────────────────────────────

class RawExtraction(BaseModel):
    prompt_id: int
    value: Any = None
    source: TextPosition | None = None
    json_key: str | None = None
    error: str | None = None


class RawScore(BaseModel):
    prompt_id: int
    result: bool = False
    confidence: float | None = None
    source: TextPosition = Field(default_factory=TextPosition)
    explanation: str = ""
    error: str | None = None


class RawDecision(BaseModel):
    prompt_id: int
    route: str | None = None
    boolean: bool | None = None
    source: TextPosition | None = None
    explanation: str | None = None
    error: str | None = None


# ── Consolidated outcomes ────────────────────────────────────────────────

class CanonicalField(BaseModel):
    prompt_id: int
    json_key: str
    value: Any
    confidence: float = Field(..., ge=0.0, le=1.0)
    page: int | None = None
    quote: str | None = None
    bbox: tuple[float, float, float, float] | None = None


class ScoreOutcome(BaseModel):
    prompt_id: int
    result: bool
    label: ScoreLabel
    confidence: float = Field(..., ge=0.0, le=1.0)
    votes_yes: int = 0
    votes_no: int = 0
    support: list[TextPosition] = Field(default_factory=list)
    explanation: str | None = None


class DecisionOutcome(BaseModel):
    prompt_id: int
    route: str
    answer: bool | None = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    votes_yes: int = 0
    votes_no: int = 0
    support: list[TextPosition] = Field(default_factory=list)
    explanation: str | None = None


# ── Run artifacts ────────────────────────────────────────────────────────

class RunStep(BaseModel):
    """One audit-log entry; handed to persistence verbatim."""

    seq_no: int
    step_id: str
    prompt_id: int
    kind: StepKind
    route: str
    batches: list[dict[str, Any]] = Field(default_factory=list)
    raw_answers: list[dict[str, Any]] = Field(default_factory=list)
    consolidated: dict[str, Any] | None = None


class RunOutcome(BaseModel):
    extraction: list[CanonicalField] = Field(default_factory=list)
    scoring: list[ScoreOutcome] = Field(default_factory=list)
    decision: list[DecisionOutcome] = Field(default_factory=list)
    log: list[RunStep] = Field(default_factory=list)
    route_history: list[str] = Field(default_factory=lambda: [ROOT_ROUTE])
    error: str | None = None

    model_config = {"frozen": True}


class RunRequested(BaseModel):
    """Trigger event delivered on the run queue."""

    document_id: int
    pipeline_id: str
    config: PipelineConfig | None = None
    run_id: str | None = None

    @field_validator("pipeline_id", mode="before")
    @classmethod
    def _pipeline_id_to_str(cls, v: Any) -> str:
        return str(v)


class RunResult(BaseModel):
    """Completion event published on the result queue."""

    run_id: str
    document_id: int
    pipeline_id: str
    status: RunStatus
    overall_score: float | None = None
    extracted: dict[str, Any] = Field(default_factory=dict)
    extraction: list[CanonicalField] = Field(default_factory=list)
    scoring: list[ScoreOutcome] = Field(default_factory=list)
    decision: list[DecisionOutcome] = Field(default_factory=list)
    log: list[RunStep] = Field(default_factory=list)
    route_history: list[str] = Field(default_factory=list)
    error: str | None = None
    started_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    finished_at: str | None = None
