"""
Consolidation engine: many noisy per-batch answers → one canonical answer.

Field     → weighted bucket vote over normalised values
            (vote share, page proximity, header band, business pattern)
Score     → weighted yes/no vote over confident answers
            (vote, anchor proximity, header band, explanation quality)
Decision  → weighted route vote, mapped to a boolean through an alias table

Every reducer is deterministic. Field buckets are kept in insertion order
and the first inserted bucket wins a score tie; decision buckets are visited
in sorted label order, so the lexicographically smallest label wins a tie.
Answers carrying an ``error`` never reach a bucket.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Sequence

from pipeline_runner.pipeline.config import ConsolidationConfig
from pipeline_runner.pipeline.normalize import (
    clamp01,
    normalize_str,
    parse_bool,
    parse_number,
)
from pipeline_runner.pipeline.schemas import (
    CanonicalField,
    DecisionOutcome,
    FieldType,
    RawDecision,
    RawExtraction,
    RawScore,
    ScoreLabel,
    ScoreOutcome,
    TextPosition,
)

logger = logging.getLogger(__name__)

MISSING_PAGE = 9999
TYPE_SHARE = 0.6
TIE_EPS = 1e-6
MAX_SUPPORT = 3
UNKNOWN_ROUTE = "UNKNOWN"

_ID_RUN_RE = re.compile(r"^\d{5,}$")
_BUSINESS_RE = re.compile(
    r"\b(gmbh|ag|kg|gbr|ohg|ug|se|iban|bic)\b|rechnung|\be\.?on\b",
    re.IGNORECASE,
)
_CUSTOMER_NO_RE = re.compile(r"kundennummer", re.IGNORECASE)

ROUTE_ALIASES: dict[str, bool] = {
    "YES": True, "TRUE": True, "JA": True, "Y": True, "1": True,
    "NO": False, "FALSE": False, "NEIN": False, "N": False, "0": False,
}


# ═══════════════════════════════════════════════════════════════════════════
# Field (extraction) consolidation
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class _Bucket:
    sample: RawExtraction
    votes: int = 0
    min_page: int = MISSING_PAGE
    header: bool = False
    pattern: bool = False


def guess_field_type(values: Sequence[Any]) -> FieldType:
    """≥60 % numeric → NUMBER, else ≥60 % boolean → BOOLEAN, else STRING."""
    total = max(len(values), 1)
    n_num = sum(1 for v in values if parse_number(v) is not None)
    n_bool = sum(1 for v in values if parse_bool(v) is not None)
    if n_num / total >= TYPE_SHARE:
        return FieldType.NUMBER
    if n_bool / total >= TYPE_SHARE:
        return FieldType.BOOLEAN
    return FieldType.STRING


def _raw_text(value: Any) -> str:
    return value if isinstance(value, str) else str(value)


def _source_page(src: TextPosition | None) -> int:
    return src.page if src is not None else MISSING_PAGE


def _in_header(src: TextPosition | None, header_y: float) -> bool:
    return src is not None and src.y <= header_y


def _string_key(answer: RawExtraction) -> tuple[str | None, bool]:
    key = normalize_str(_raw_text(answer.value))
    if not key or _ID_RUN_RE.match(key):
        return None, False
    quote = answer.source.quote if answer.source else None
    if quote and _CUSTOMER_NO_RE.search(quote):
        return None, False
    return key, bool(_BUSINESS_RE.search(key))


def consolidate_field(
    answers: Sequence[RawExtraction],
    prompt_id: int,
    field_type: FieldType,
    cfg: ConsolidationConfig,
    json_key: str | None = None,
) -> CanonicalField | None:
    """Reduce every extraction answer of *prompt_id* to one canonical value.

    Returns ``None`` when no candidate survives filtering.
    """
    cands = [
        a for a in answers
        if a.prompt_id == prompt_id and a.error is None and a.value is not None
    ]
    if not cands:
        return None

    eff = field_type
    if eff == FieldType.AUTO:
        eff = guess_field_type([a.value for a in cands])

    any_fraction = False
    if eff == FieldType.NUMBER:
        any_fraction = any(
            (n := parse_number(a.value)) is not None and abs(n - round(n)) > 1e-6
            for a in cands
        )

    buckets: dict[str, _Bucket] = {}
    for a in cands:
        pattern = False
        if eff == FieldType.NUMBER:
            num = parse_number(a.value)
            if num is None:
                continue
            key = f"{num:.2f}" if any_fraction else str(int(round(num)))
        elif eff == FieldType.BOOLEAN:
            b = parse_bool(a.value)
            if b is None:
                continue
            key = "true" if b else "false"
        else:
            key, pattern = _string_key(a)
            if key is None:
                continue

        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = _Bucket(sample=a, min_page=_source_page(a.source))
        bucket.votes += 1
        bucket.min_page = min(bucket.min_page, _source_page(a.source))
        bucket.header = bucket.header or _in_header(a.source, cfg.header_y)
        bucket.pattern = bucket.pattern or pattern

    if not buckets:
        logger.debug("prompt %s: all %d candidates filtered out.", prompt_id, len(cands))
        return None

    wv, wp, wh, wq = cfg.w_extraction
    max_votes = max(b.votes for b in buckets.values())

    def bucket_score(b: _Bucket) -> float:
        return (
            wv * (b.votes / max_votes)
            + wp * (1.0 / (1.0 + b.min_page))
            + wh * float(b.header)
            + wq * float(b.pattern)
        )

    # max() keeps the first maximal bucket, i.e. insertion order breaks ties
    best = max(buckets.values(), key=bucket_score)
    best_score = bucket_score(best)
    src = best.sample.source
    return CanonicalField(
        prompt_id=prompt_id,
        json_key=json_key or best.sample.json_key or f"field_{prompt_id}",
        value=best.sample.value,
        confidence=clamp01(best_score),
        page=src.page if src else None,
        quote=src.quote if src else None,
        bbox=src.bbox if src else None,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Scoring & decision shared strength
# ═══════════════════════════════════════════════════════════════════════════

def evidence_strength(
    src: TextPosition | None,
    explanation: str | None,
    cfg: ConsolidationConfig,
    anchor_page: int | None,
) -> float:
    """``wv + wn·near + wh·header + we·explanation_ok`` for one vote."""
    wv, wn, wh, we = cfg.w_scoring
    page = _source_page(src)
    near = 0.5 if anchor_page is None else 1.0 / (1.0 + abs(page - anchor_page))
    header = 1.0 if _in_header(src, cfg.header_y) else 0.0
    expl_ok = 1.0 if explanation and len(explanation.strip()) >= cfg.min_expl_len else 0.0
    return wv + wn * near + wh * header + we * expl_ok


# ═══════════════════════════════════════════════════════════════════════════
# Score (yes/no) consolidation
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class _Vote:
    source: TextPosition
    strength: float
    explanation: str | None


def consolidate_scoring(
    answers: Sequence[RawScore],
    prompt_id: int,
    cfg: ConsolidationConfig,
    anchor_page: int | None = None,
) -> ScoreOutcome | None:
    """Weighted yes/no vote; ``None`` when no confident vote remains.

    ``confidence`` is the *yes share* of the total weight, whichever side
    wins.
    """
    yes: list[_Vote] = []
    no: list[_Vote] = []
    for a in answers:
        if a.prompt_id != prompt_id or a.error is not None:
            continue
        if a.confidence is None or a.confidence < cfg.min_confidence:
            continue
        vote = _Vote(
            source=a.source,
            strength=evidence_strength(a.source, a.explanation, cfg, anchor_page),
            explanation=a.explanation.strip() or None,
        )
        (yes if a.result else no).append(vote)

    yes_w = sum(v.strength for v in yes)
    no_w = sum(v.strength for v in no)
    total = yes_w + no_w
    if total <= 0.0:
        return None

    if abs(yes_w - no_w) <= TIE_EPS:
        result, label = False, ScoreLabel.UNSURE
        side = yes if yes else no
    elif yes_w > no_w:
        result, label, side = True, ScoreLabel.YES, yes
    else:
        result, label, side = False, ScoreLabel.NO, no

    ranked = sorted(side, key=lambda v: v.strength, reverse=True)
    explanation = next((v.explanation for v in ranked if v.explanation), None)

    return ScoreOutcome(
        prompt_id=prompt_id,
        result=result,
        label=label,
        confidence=clamp01(yes_w / total),
        votes_yes=len(yes),
        votes_no=len(no),
        support=[v.source for v in ranked[:MAX_SUPPORT]],
        explanation=explanation,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Decision (routing) consolidation
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class _RouteBucket:
    votes: int = 0
    score: float = 0.0
    support: list[TextPosition] = field(default_factory=list)
    explanation: str | None = None


def decision_label(answer: RawDecision, yes_key: str = "YES", no_key: str = "NO") -> str:
    if answer.route and answer.route.strip():
        return answer.route.strip().upper()
    if answer.boolean is not None:
        return (yes_key if answer.boolean else no_key).strip().upper()
    return UNKNOWN_ROUTE


def consolidate_decision(
    answers: Sequence[RawDecision],
    prompt_id: int,
    cfg: ConsolidationConfig,
    anchor_page: int | None = None,
    yes_key: str = "YES",
    no_key: str = "NO",
) -> DecisionOutcome | None:
    """Pick the route with the highest accumulated evidence strength."""
    buckets: dict[str, _RouteBucket] = {}
    for a in answers:
        if a.prompt_id != prompt_id or a.error is not None:
            continue
        b = buckets.setdefault(decision_label(a, yes_key, no_key), _RouteBucket())
        b.votes += 1
        b.score += evidence_strength(a.source, a.explanation, cfg, anchor_page)
        if a.source is not None:
            b.support.append(a.source)
        if b.explanation is None and a.explanation:
            b.explanation = a.explanation

    if not buckets:
        return None

    best_route = ""
    best_score = float("-inf")
    total = 0.0
    for route in sorted(buckets):
        score = buckets[route].score
        total += score
        if score > best_score:
            best_route, best_score = route, score

    winner = buckets[best_route]
    confidence = 1.0 if total <= TIE_EPS else clamp01(best_score / total)
    answer = ROUTE_ALIASES.get(best_route)

    return DecisionOutcome(
        prompt_id=prompt_id,
        route=best_route,
        answer=answer,
        confidence=confidence,
        votes_yes=winner.votes if answer is True else 0,
        votes_no=winner.votes if answer is False else 0,
        support=list(winner.support),
        explanation=winner.explanation,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Engine
# ═══════════════════════════════════════════════════════════════════════════

class ConsolidationEngine:
    """Binds the three reducers to one ``ConsolidationConfig``."""

    def __init__(self, config: ConsolidationConfig | None = None) -> None:
        self.config = config or ConsolidationConfig()
        self.config.validate()

    def field(
        self,
        answers: Sequence[RawExtraction],
        prompt_id: int,
        field_type: FieldType = FieldType.AUTO,
        json_key: str | None = None,
    ) -> CanonicalField | None:
        return consolidate_field(answers, prompt_id, field_type, self.config, json_key)

    def score(
        self,
        answers: Sequence[RawScore],
        prompt_id: int,
        anchor_page: int | None = None,
    ) -> ScoreOutcome | None:
        return consolidate_scoring(answers, prompt_id, self.config, anchor_page)

    def decision(
        self,
        answers: Sequence[RawDecision],
        prompt_id: int,
        anchor_page: int | None = None,
        yes_key: str = "YES",
        no_key: str = "NO",
    ) -> DecisionOutcome | None:
        return consolidate_decision(
            answers, prompt_id, self.config, anchor_page, yes_key, no_key
        )
