"""
Model gateway.

``ModelGateway``   – protocol every backend implements (one call per batch)
``OpenAIGateway``  – OpenAI-compatible chat completions with strict JSON
                     contracts appended to the stored prompt text
``GatewayClient``  – per-call timeout, immediate retries and error answers;
                     the orchestrator only ever talks to this wrapper
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from openai import AsyncOpenAI, OpenAIError

from pipeline_runner.pipeline.json_relaxed import RelaxedJSONError, parse_json_relaxed
from pipeline_runner.pipeline.normalize import parse_bool
from pipeline_runner.pipeline.schemas import (
    RawDecision,
    RawExtraction,
    RawScore,
    TextPosition,
)

logger = logging.getLogger(__name__)


class GatewayError(RuntimeError):
    """Raised by a gateway when a model call fails or returns garbage."""


class ModelGateway(Protocol):
    async def extract(self, prompt_id: int, text: str) -> RawExtraction: ...

    async def score(self, prompt_id: int, text: str) -> RawScore: ...

    async def decide(self, prompt_id: int, text: str) -> RawDecision: ...


class PromptSource(Protocol):
    def get_prompt(self, prompt_id: int) -> str: ...


# ── Strict JSON contracts ────────────────────────────────────────────────

EXTRACTION_CONTRACT = """
IMPORTANT EXTRACTION CONTRACT (STRICT):

Return STRICT JSON ONLY:
{
  "value": string|null,
  "source": {
    "page":  integer|null,
    "bbox":  [number,number,number,number],
    "quote": string|null
  }
}

Rules:
- "value" is copied from DOCUMENT (after trivial whitespace fixes), or null.
- "page" is the 1-based page where the value occurs; bbox is [0,0,0,0] if unknown.
- "quote" is at most 120 characters, copied verbatim from DOCUMENT around the value.
- Use ONLY content that appears in DOCUMENT. No placeholders or generic labels.
- If the answer is not present or you are unsure, return
  {"value":null,"source":{"page":null,"bbox":[0,0,0,0],"quote":null}}.
- Output JSON only. No prose, no markdown.
"""

SCORING_CONTRACT = """
You are a tri-state classifier that decides a Yes/No/Unsure question based ONLY on DOCUMENT.
Always return STRICT JSON matching this single-object schema:

{
  "vote": "yes" | "no" | "unsure",
  "strength": number,
  "confidence": number,
  "source": {
    "page":  integer,
    "bbox":  [number,number,number,number],
    "quote": string
  },
  "explanation": string
}

Hard rules:
- "quote" MUST be a verbatim substring of DOCUMENT.
- If evidence is inconclusive, use vote="unsure" with the closest quote.
- strength and confidence are in [0,1] and are not the same thing.
- JSON only. No markdown, no extra keys.
"""

DECISION_CONTRACT = """
You route a decision based ONLY on the provided DOCUMENT.

Return ONE JSON object:
{
  "answer":  true|false|null,
  "route":   string|null,
  "source": {
    "page":  integer|null,
    "bbox":  [number,number,number,number],
    "quote": string|null
  },
  "explanation": "<short reason>"
}

Rules:
- If unsure, answer=null and source may be nulls.
- If answer is true/false, include a verbatim "quote" from DOCUMENT.
- JSON only. No markdown, no extra keys.
"""


def _source(raw: Any) -> TextPosition | None:
    if not isinstance(raw, dict):
        return None
    return TextPosition.model_validate(
        {
            "page": raw.get("page"),
            "bbox": raw.get("bbox"),
            "quote": raw.get("quote") if isinstance(raw.get("quote"), str) else None,
        }
    )


def _float_or_none(raw: Any) -> float | None:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return None
    return float(raw)


def _as_object(text: str) -> dict[str, Any]:
    try:
        data = parse_json_relaxed(text)
    except RelaxedJSONError as exc:
        raise GatewayError(f"unparseable reply: {exc}; head={text[:200]!r}") from exc
    if not isinstance(data, dict):
        raise GatewayError(f"expected a JSON object, got {type(data).__name__}")
    return data


# ═══════════════════════════════════════════════════════════════════════════
# OpenAI-compatible backend
# ═══════════════════════════════════════════════════════════════════════════

class OpenAIGateway:
    """Chat-completions backend; prompt texts are fetched once and cached."""

    def __init__(
        self,
        client: AsyncOpenAI,
        prompts: PromptSource,
        *,
        model: str = "gpt-4o",
        temperature: float = 0.0,
    ) -> None:
        self.client = client
        self.prompts = prompts
        self.model = model
        self.temperature = temperature
        self._prompt_cache: dict[int, str] = {}

    async def _prompt_text(self, prompt_id: int) -> str:
        cached = self._prompt_cache.get(prompt_id)
        if cached is not None:
            return cached
        try:
            text = await asyncio.to_thread(self.prompts.get_prompt, prompt_id)
        except LookupError as exc:
            raise GatewayError(f"prompt {prompt_id} not found") from exc
        self._prompt_cache[prompt_id] = text
        return text

    async def _chat(self, system: str, user: str) -> dict[str, Any]:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=self.temperature,
                response_format={"type": "json_object"},
            )
        except OpenAIError as exc:
            raise GatewayError(f"chat completion failed: {exc}") from exc
        if not response.choices:
            raise GatewayError("chat completion returned no choices")
        content = response.choices[0].message.content or ""
        logger.debug("LLM response (%d chars): %s…", len(content), content[:120])
        return _as_object(content)

    async def extract(self, prompt_id: int, text: str) -> RawExtraction:
        prompt = await self._prompt_text(prompt_id)
        user = f"DOCUMENT:\n{text}\n\nQUESTION:\n{prompt}\n{EXTRACTION_CONTRACT}"
        data = await self._chat("You extract values from documents.", user)
        return RawExtraction(
            prompt_id=prompt_id,
            value=data.get("value"),
            source=_source(data.get("source")),
        )

    async def score(self, prompt_id: int, text: str) -> RawScore:
        question = await self._prompt_text(prompt_id)
        user = f"DOCUMENT:\n{text}\n\nQUESTION:\n{question}\n\n(STRICT JSON.)"
        data = await self._chat(SCORING_CONTRACT, user)

        vote = str(data.get("vote") or "").strip().lower()
        if vote in ("yes", "no"):
            result = vote == "yes"
        else:
            result = data.get("result") is True
        explanation = data.get("explanation")
        return RawScore(
            prompt_id=prompt_id,
            result=result,
            confidence=_float_or_none(data.get("confidence")),
            source=_source(data.get("source")) or TextPosition(),
            explanation=explanation if isinstance(explanation, str) else "",
        )

    async def decide(self, prompt_id: int, text: str) -> RawDecision:
        prompt = await self._prompt_text(prompt_id)
        user = f"{prompt}\n\nDOCUMENT:\n{text}\n\n(STRICT JSON, follow the contract.)"
        data = await self._chat(DECISION_CONTRACT, user)

        answer = data.get("answer")
        route = data.get("route")
        explanation = data.get("explanation")
        return RawDecision(
            prompt_id=prompt_id,
            route=route if isinstance(route, str) and route.strip() else None,
            boolean=answer if isinstance(answer, bool) else None,
            source=_source(data.get("source")),
            explanation=explanation if isinstance(explanation, str) else None,
        )


# ═══════════════════════════════════════════════════════════════════════════
# Timeout / retry wrapper
# ═══════════════════════════════════════════════════════════════════════════

class GatewayClient:
    """Wraps a ``ModelGateway`` with per-attempt timeouts and retries.

    Every attempt gets ``timeout_s`` seconds; failures are retried
    immediately, up to ``retries`` extra attempts. When all attempts fail
    the call returns an answer whose ``error`` is set instead of raising.
    """

    def __init__(self, gateway: ModelGateway, timeout_s: float, retries: int) -> None:
        self.gateway = gateway
        self.timeout_s = timeout_s
        self.retries = max(0, retries)

    async def _attempt(self, kind: str, call, prompt_id: int, text: str) -> tuple[Any, str | None]:
        last_error = "no attempt made"
        for attempt in range(1, self.retries + 2):
            try:
                answer = await asyncio.wait_for(call(prompt_id, text), self.timeout_s)
                return answer, None
            except asyncio.TimeoutError:
                last_error = f"timeout after {self.timeout_s:.1f}s"
            except (GatewayError, ValueError) as exc:
                last_error = str(exc) or exc.__class__.__name__
            logger.warning(
                "%s attempt %d/%d for prompt %s failed: %s",
                kind, attempt, self.retries + 1, prompt_id, last_error,
            )
        return None, last_error

    async def extract(self, prompt_id: int, text: str) -> RawExtraction:
        answer, error = await self._attempt("extract", self.gateway.extract, prompt_id, text)
        if answer is None:
            return RawExtraction(prompt_id=prompt_id, error=error)
        return answer

    async def score(self, prompt_id: int, text: str) -> RawScore:
        answer, error = await self._attempt("score", self.gateway.score, prompt_id, text)
        if answer is None:
            return RawScore(prompt_id=prompt_id, error=error)
        return answer

    async def decide(
        self,
        prompt_id: int,
        text: str,
        yes_key: str = "YES",
        no_key: str = "NO",
    ) -> RawDecision:
        answer, error = await self._attempt("decide", self.gateway.decide, prompt_id, text)
        if answer is None:
            return RawDecision(prompt_id=prompt_id, error=error)
        return complete_decision(answer, yes_key, no_key)


def complete_decision(answer: RawDecision, yes_key: str, no_key: str) -> RawDecision:
    """Fill in the route of a decision answer from its boolean.

    A missing route follows the boolean. A route that is merely a yes/no
    word (``"true"``, ``"ja"``) is mapped onto the step's own keys.
    """
    yes_key = yes_key.strip().upper()
    no_key = no_key.strip().upper()
    route = answer.route.strip().upper() if answer.route else None

    if route is None:
        if answer.boolean is None:
            return answer
        route = yes_key if answer.boolean else no_key
        return answer.model_copy(update={"route": route})

    if route in (yes_key, no_key):
        return answer.model_copy(update={"route": route})

    fuzzy = parse_bool(route)
    if fuzzy is None:
        return answer.model_copy(update={"route": route})
    boolean = answer.boolean if answer.boolean is not None else fuzzy
    return answer.model_copy(
        update={"route": yes_key if fuzzy else no_key, "boolean": boolean}
    )
