"""
Tests for the step orchestrator, config validation and run results.

Run: python -m pytest tests/ -v
"""

from __future__ import annotations

import asyncio

import pytest

PAGES = [
    (1, "Rechnung von ACME GmbH"),
    (2, "Gesamtbetrag 1.234,56 EUR"),
    (3, "Vielen Dank"),
]

EXPLANATION = "The document is clearly an invoice with a total."


class ScriptedGateway:
    """Answers every call from fixed scripts and tracks concurrency."""

    def __init__(self, fail_score: bool = False, delay: float = 0.0, decision_route=None):
        self.fail_score = fail_score
        self.delay = delay
        self.decision_route = decision_route
        self.calls: list[tuple[str, int, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def _enter(self, kind, prompt_id, text):
        self.calls.append((kind, prompt_id, text))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(self.delay)
        self.in_flight -= 1

    async def extract(self, prompt_id, text):
        from pipeline_runner.pipeline.schemas import RawExtraction, TextPosition

        await self._enter("extract", prompt_id, text)
        if "ACME" not in text:
            return RawExtraction(prompt_id=prompt_id, value=None)
        return RawExtraction(
            prompt_id=prompt_id,
            value="ACME GmbH",
            source=TextPosition(page=7, quote="von ACME GmbH"),
        )

    async def score(self, prompt_id, text):
        from pipeline_runner.pipeline.schemas import RawScore, TextPosition

        await self._enter("score", prompt_id, text)
        if self.fail_score:
            raise RuntimeError("backend exploded")
        return RawScore(
            prompt_id=prompt_id,
            result=True,
            confidence=0.9,
            source=TextPosition(page=1, quote="Gesamtbetrag 1.234,56"),
            explanation=EXPLANATION,
        )

    async def decide(self, prompt_id, text):
        from pipeline_runner.pipeline.schemas import RawDecision

        await self._enter("decide", prompt_id, text)
        return RawDecision(prompt_id=prompt_id, route=self.decision_route, boolean=True)


def _config(*steps):
    from pipeline_runner.pipeline.schemas import PipelineConfig

    return PipelineConfig.model_validate({"name": "invoice", "steps": list(steps)})


def _orchestrator(gateway, **settings):
    from pipeline_runner.pipeline.config import ConsolidationConfig, PipelineSettings
    from pipeline_runner.pipeline.gateway import GatewayClient
    from pipeline_runner.pipeline.orchestrator import StepOrchestrator

    values = dict(page_batch_size=5, extraction_pages_per_batch=1, max_chars=20_000, max_parallel=3)
    values.update(settings)
    return StepOrchestrator(
        GatewayClient(gateway, timeout_s=1.0, retries=0),
        ConsolidationConfig(),
        PipelineSettings(**values),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Config validation
# ═══════════════════════════════════════════════════════════════════════════

class TestValidateConfig:
    def test_empty_pipeline(self):
        from pipeline_runner.pipeline.orchestrator import PipelineConfigError, validate_config

        with pytest.raises(PipelineConfigError):
            validate_config(_config())

    def test_duplicate_step_ids(self):
        from pipeline_runner.pipeline.orchestrator import PipelineConfigError, validate_config

        step = {"id": "s1", "type": "ExtractionPrompt", "promptId": 1}
        with pytest.raises(PipelineConfigError, match="duplicate"):
            validate_config(_config(step, step))

    def test_unknown_route(self):
        from pipeline_runner.pipeline.orchestrator import PipelineConfigError, validate_config

        config = _config(
            {"id": "d", "type": "DecisionPrompt", "promptId": 2, "yesKey": "paid", "noKey": "open"},
            {"id": "s", "type": "ScoringPrompt", "promptId": 3, "route": "MAYBE"},
        )
        with pytest.raises(PipelineConfigError, match="MAYBE"):
            validate_config(config)

    def test_known_routes_are_case_insensitive(self):
        from pipeline_runner.pipeline.orchestrator import validate_config

        config = _config(
            {"id": "d", "type": "DecisionPrompt", "promptId": 2, "targets": ["Escalate"]},
            {"id": "a", "type": "ScoringPrompt", "promptId": 3, "route": "yes"},
            {"id": "b", "type": "ScoringPrompt", "promptId": 4, "route": "escalate"},
            {"id": "c", "type": "ScoringPrompt", "promptId": 5, "route": "root"},
        )
        validate_config(config)

    def test_step_defaults(self):
        config = _config({"id": 10, "type": "ExtractionPrompt", "promptId": 42})
        step = config.steps[0]
        assert step.id == "10"
        assert step.final_key == "field_42"
        assert step.active is True


# ═══════════════════════════════════════════════════════════════════════════
# Orchestration
# ═══════════════════════════════════════════════════════════════════════════

class TestStepOrchestrator:
    @pytest.mark.asyncio
    async def test_routes_and_skips(self):
        from pipeline_runner.pipeline.schemas import StepKind

        config = _config(
            {"id": "e1", "type": "ExtractionPrompt", "promptId": 1, "jsonKey": "supplier"},
            {"id": "d1", "type": "DecisionPrompt", "promptId": 2},
            {"id": "s-yes", "type": "ScoringPrompt", "promptId": 3, "route": "YES"},
            {"id": "s-no", "type": "ScoringPrompt", "promptId": 4, "route": "NO"},
            {"id": "e-off", "type": "ExtractionPrompt", "promptId": 5, "active": False},
        )
        gateway = ScriptedGateway()
        outcome = await _orchestrator(gateway).run(config, PAGES)

        assert outcome.error is None
        assert outcome.route_history == ["ROOT", "YES"]
        assert [d.route for d in outcome.decision] == ["YES"]
        assert [s.prompt_id for s in outcome.scoring] == [3]
        assert [e.step_id for e in outcome.log] == ["e1", "d1", "s-yes"]
        assert [e.seq_no for e in outcome.log] == [1, 2, 3]
        assert [e.kind for e in outcome.log] == [
            StepKind.EXTRACTION, StepKind.DECISION, StepKind.SCORING,
        ]
        assert outcome.log[0].consolidated is None
        assert outcome.log[2].route == "YES"
        assert {c[1] for c in gateway.calls} == {1, 2, 3}

    @pytest.mark.asyncio
    async def test_extraction_is_deferred_and_reanchored(self):
        config = _config(
            {"id": "e1", "type": "ExtractionPrompt", "promptId": 1, "jsonKey": "supplier"},
            {"id": "e2", "type": "ExtractionPrompt", "promptId": 1, "jsonKey": "ignored"},
        )
        outcome = await _orchestrator(ScriptedGateway()).run(config, PAGES)

        assert len(outcome.extraction) == 1
        field = outcome.extraction[0]
        assert field.json_key == "supplier"
        assert field.value == "ACME GmbH"
        assert field.page == 1
        assert len(outcome.log[0].batches) == 3
        assert outcome.log[0].raw_answers[0]["source"]["page"] == 1

    @pytest.mark.asyncio
    async def test_scoring_anchor_is_reanchored(self):
        config = _config({"id": "s", "type": "ScoringPrompt", "promptId": 3})
        outcome = await _orchestrator(ScriptedGateway()).run(config, PAGES)
        assert outcome.scoring[0].support[0].page == 2

    @pytest.mark.asyncio
    async def test_bounded_parallelism(self):
        pages = [(i, f"page {i} ACME") for i in range(1, 9)]
        config = _config({"id": "e", "type": "ExtractionPrompt", "promptId": 1})
        gateway = ScriptedGateway(delay=0.02)
        outcome = await _orchestrator(gateway, max_parallel=2).run(config, pages)

        assert len(gateway.calls) == 8
        assert gateway.max_in_flight <= 2
        assert [a["prompt_id"] for a in outcome.log[0].raw_answers] == [1] * 8

    @pytest.mark.asyncio
    async def test_run_failure_keeps_earlier_results(self):
        config = _config(
            {"id": "e1", "type": "ExtractionPrompt", "promptId": 1},
            {"id": "s1", "type": "ScoringPrompt", "promptId": 3},
            {"id": "e2", "type": "ExtractionPrompt", "promptId": 9},
        )
        gateway = ScriptedGateway(fail_score=True)
        outcome = await _orchestrator(gateway).run(config, PAGES)

        assert "s1" in outcome.error
        assert [f.prompt_id for f in outcome.extraction] == [1]
        assert [e.step_id for e in outcome.log] == ["e1"]
        assert all(c[1] != 9 for c in gateway.calls)

    @pytest.mark.asyncio
    async def test_failed_batch_cancels_sibling_batches(self):
        class OneBadBatch(ScriptedGateway):
            def __init__(self):
                super().__init__()
                self.finished: list[str] = []

            async def score(self, prompt_id, text):
                if "ACME" in text:
                    raise RuntimeError("backend exploded")
                await asyncio.sleep(0.2)
                self.finished.append(text)
                return await super().score(prompt_id, text)

        config = _config({"id": "s1", "type": "ScoringPrompt", "promptId": 3})
        gateway = OneBadBatch()
        outcome = await _orchestrator(gateway, page_batch_size=1).run(config, PAGES)

        assert "s1" in outcome.error
        await asyncio.sleep(0.3)
        assert gateway.finished == []

    @pytest.mark.asyncio
    async def test_invalid_config_raises_before_any_call(self):
        from pipeline_runner.pipeline.orchestrator import PipelineConfigError

        config = _config({"id": "s", "type": "ScoringPrompt", "promptId": 3, "route": "NOWHERE"})
        gateway = ScriptedGateway()
        with pytest.raises(PipelineConfigError):
            await _orchestrator(gateway).run(config, PAGES)
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_target_route_is_followed(self):
        config = _config(
            {"id": "d", "type": "DecisionPrompt", "promptId": 2, "targets": ["MANUAL"]},
            {"id": "m", "type": "ScoringPrompt", "promptId": 3, "route": "MANUAL"},
        )
        gateway = ScriptedGateway(decision_route="manual")
        outcome = await _orchestrator(gateway).run(config, PAGES)
        assert outcome.route_history == ["ROOT", "MANUAL"]
        assert [s.prompt_id for s in outcome.scoring] == [3]


# ═══════════════════════════════════════════════════════════════════════════
# Run results
# ═══════════════════════════════════════════════════════════════════════════

class TestRunResults:
    def _outcome(self, confidences, error=None):
        from pipeline_runner.pipeline.schemas import (
            CanonicalField, RunOutcome, ScoreLabel, ScoreOutcome,
        )

        return RunOutcome(
            extraction=[CanonicalField(prompt_id=1, json_key="supplier", value="ACME", confidence=0.9)],
            scoring=[
                ScoreOutcome(prompt_id=i, result=True, label=ScoreLabel.YES, confidence=c)
                for i, c in enumerate(confidences)
            ],
            error=error,
        )

    def test_overall_score_is_mean(self):
        from pipeline_runner.pipeline.results import overall_score

        assert overall_score(self._outcome([0.5, 1.0])) == pytest.approx(0.75)
        assert overall_score(self._outcome([])) is None

    def test_build_result(self):
        from pipeline_runner.pipeline.results import build_run_result
        from pipeline_runner.pipeline.schemas import RunStatus

        result = build_run_result(self._outcome([0.8]), run_id="r1", document_id=4, pipeline_id="p")
        assert result.status == RunStatus.COMPLETED
        assert result.extracted == {"supplier": "ACME"}
        assert result.overall_score == pytest.approx(0.8)
        assert result.route_history == ["ROOT"]
        assert result.finished_at is not None

    def test_failed_result(self):
        from pipeline_runner.pipeline.results import build_run_result
        from pipeline_runner.pipeline.schemas import RunStatus

        result = build_run_result(
            self._outcome([], error="step x failed"), run_id="r1", document_id=4, pipeline_id="p"
        )
        assert result.status == RunStatus.FAILED
        assert result.error == "step x failed"
