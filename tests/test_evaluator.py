from datetime import datetime

from nodecascade.config import RunConfig, SelfImprovementSettings
from nodecascade.service.completion import CompletionResult
from nodecascade.service.errors import ProviderError
from nodecascade.service.evaluator import (
    derive_flags,
    overall_score,
    parse_score,
    round_half_up,
    trend_summary,
)
from nodecascade.storage.models import EvaluationRecord, NodeOutputRecord, SystemPrompt

ALL_ON = {"hallucination": True, "data_quality": True, "complexity": True}


def _seed_templates(store):
    store.upsert_system_prompt(
        SystemPrompt("p1", "Hallucinations", "H q={{question}} ref={{reference}} out={{response}}")
    )
    store.upsert_system_prompt(SystemPrompt("p2", "Data Quality", "D q={{question}} data={{data}}"))
    store.upsert_system_prompt(SystemPrompt("p3", "Complexity", "C q={{question}}"))


def _scores(h, d, c):
    replies = {"H": h, "D": d, "C": c}

    def responder(model, prompt):
        reply = replies[prompt[0]]
        if isinstance(reply, (Exception, CompletionResult)):
            return reply
        return f'```json\n{{"score": {reply}, "reasoning": "r{prompt[0]}"}}\n```'

    return responder


async def _evaluate(engine, run_config=None):
    return await engine.evaluator.evaluate(
        question="What is the market?",
        reference="input data",
        response="The market is big.",
        run_config=run_config or RunConfig(),
        tenant_id="acme",
        workflow_id="wf",
        node_id="n1",
    )


def test_weighted_overall_score():
    assert overall_score({"hallucination": 80, "data_quality": 60, "complexity": 40}, ALL_ON) == 66
    partial = {"hallucination": True, "data_quality": True, "complexity": False}
    assert overall_score({"hallucination": 80, "data_quality": 60, "complexity": 0}, partial) == 73
    assert overall_score({"hallucination": 80, "data_quality": 60, "complexity": 40}, {}) == 0
    assert round_half_up(72.5) == 73


def test_flags_use_inclusive_thresholds():
    scores = {"hallucination": 40, "data_quality": 30, "complexity": 21}
    assert derive_flags(scores, ALL_ON) == ["HIGH_HALLUCINATION", "INSUFFICIENT_DATA"]
    assert derive_flags(scores, {"hallucination": False, "data_quality": True}) == [
        "INSUFFICIENT_DATA"
    ]


def test_parse_score_clamps_and_defaults():
    assert parse_score('{"score": 140, "reasoning": "x"}').score == 100
    assert parse_score('{"score": "n/a"}').score == 50
    assert parse_score('{"score": 0}').reasoning == "No reasoning provided"
    assert parse_score('{"score": 0}').score == 0


async def test_evaluation_runs_enabled_metrics(engine):
    _seed_templates(engine.store)
    engine.completion.responder = _scores(80, 60, 40)

    result = await _evaluate(engine)

    assert result.overall_score == 66
    assert result.flags == []
    assert result.scores["data_quality"].reasoning == "rD"
    prompts = [call["messages"][-1]["content"] for call in engine.completion.calls]
    assert "H q=What is the market? ref=input data out=The market is big." in prompts
    assert "D q=What is the market? data=input data" in prompts
    assert all(call["model"] == "google/gemini-2.5-flash-lite" for call in engine.completion.calls)


async def test_disabled_metric_is_not_called(engine):
    _seed_templates(engine.store)
    engine.completion.responder = _scores(80, 60, 10)
    run_config = RunConfig(
        self_improvement=SelfImprovementSettings(metrics_complexity_enabled=False)
    )

    result = await _evaluate(engine, run_config)

    assert len(engine.completion.calls) == 2
    assert result.scores["complexity"].score == 0
    assert result.scores["complexity"].reasoning == "Metric disabled"
    assert result.overall_score == 73
    assert "TOO_COMPLEX" not in result.flags


async def test_all_metrics_disabled_short_circuits(engine):
    run_config = RunConfig(
        self_improvement=SelfImprovementSettings(
            metrics_hallucination_enabled=False,
            metrics_data_quality_enabled=False,
            metrics_complexity_enabled=False,
        )
    )
    result = await _evaluate(engine, run_config)
    assert result.overall_score == 0
    assert engine.completion.calls == []


async def test_missing_templates_give_neutral_scores(engine):
    result = await _evaluate(engine)
    assert result.overall_score == 50
    assert result.scores["hallucination"].reasoning == "System prompts not found"
    assert engine.completion.calls == []


async def test_failed_assessments_degrade_to_fifty(engine):
    _seed_templates(engine.store)
    usage = CompletionResult(
        text="not json", prompt_tokens=100, completion_tokens=10, total_tokens=110, has_usage=True
    )
    engine.completion.responder = _scores(ProviderError(500, "down"), usage, 90)

    result = await _evaluate(engine)

    assert result.scores["hallucination"].score == 50
    assert result.scores["hallucination"].reasoning == "Evaluation failed"
    assert result.scores["data_quality"].reasoning == "Evaluation parsing failed"
    assert result.scores["complexity"].score == 90
    usage_rows = engine.store.list_usage("acme")
    assert [row.usage_category for row in usage_rows] == ["evaluation_data_quality"]
    assert usage_rows[0].total_tokens == 110


async def test_record_attaches_block_and_raises_quality_alerts(engine):
    _seed_templates(engine.store)
    engine.completion.responder = _scores(80, 20, 60)
    result = await _evaluate(engine)
    output = NodeOutputRecord(tenant_id="acme", workflow_id="wf", node_id="n1", output="x")

    engine.evaluator.record(
        output, result, run_config=RunConfig(), tenant_name="Acme Corp", node_label="Market"
    )

    assert output.evaluation["dataQuality"] == {"score": 20, "reasoning": "rD"}
    assert output.evaluation["overallScore"] == result.overall_score
    assert output.flags == ["INSUFFICIENT_DATA"]
    assert output.low_quality_fields[0]["field"] == "Market"
    alerts = engine.store.list_alerts("quality_data_quality")
    assert len(alerts) == 1
    assert alerts[0].title == "Low Data Quality: Acme Corp - Market"
    assert alerts[0].severity == "critical"
    assert engine.store.list_alerts("quality_hallucination") == []
    assert len(engine.store.list_evaluations("acme", "n1")) == 1


def _history(*overall):
    return [
        EvaluationRecord(
            id=str(index),
            tenant_id="acme",
            workflow_id="wf",
            node_id="n1",
            node_label=None,
            hallucination_score=score,
            hallucination_reasoning="",
            data_quality_score=score,
            data_quality_reasoning="",
            complexity_score=score,
            complexity_reasoning="",
            overall_score=score,
            evaluated_at=datetime(2024, 1, 1),
        )
        for index, score in enumerate(overall)
    ]


def test_trend_summary():
    assert trend_summary([]) == {"sample_count": 0, "trend": "stable"}
    improving = trend_summary(_history(90, 80, 50, 40))
    assert improving["trend"] == "improving"
    assert improving["average_overall"] == 65.0
    assert trend_summary(_history(40, 90))["trend"] == "declining"
    assert trend_summary(_history(70, 72))["trend"] == "stable"
