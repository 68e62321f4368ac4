"""Concurrent quality evaluation of generated node outputs."""

from __future__ import annotations

import asyncio
import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx

from nodecascade.config import RunConfig
from nodecascade.logging import get_logger
from nodecascade.service.alerts import AlertService
from nodecascade.service.completion import CompletionClient
from nodecascade.service.errors import MissingCredentialsError, ProviderError
from nodecascade.service.text_utils import extract_fenced_json
from nodecascade.storage.models import EvaluationRecord, NodeOutputRecord, UsageRecord

logger = get_logger(__name__)

EVALUATION_MODEL = "google/gemini-2.5-flash-lite"
EVALUATOR_SYSTEM_PROMPT = "You are an evaluator. Output only valid JSON."

METRICS = ("hallucination", "data_quality", "complexity")
TEMPLATE_NAMES = {
    "hallucination": "Hallucinations",
    "data_quality": "Data Quality",
    "complexity": "Complexity",
}
WEIGHTS = {"hallucination": 0.5, "data_quality": 0.3, "complexity": 0.2}
FLAG_RULES = (
    ("hallucination", 40, "HIGH_HALLUCINATION"),
    ("data_quality", 30, "INSUFFICIENT_DATA"),
    ("complexity", 20, "TOO_COMPLEX"),
)
BLOCK_KEYS = {"hallucination": "hallucination", "data_quality": "dataQuality", "complexity": "complexity"}


@dataclass
class MetricScore:
    score: int
    reasoning: str

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "reasoning": self.reasoning}


@dataclass
class EvaluationResult:
    scores: Dict[str, MetricScore]
    overall_score: int
    flags: List[str] = field(default_factory=list)

    def to_block(self, evaluated_at: datetime) -> Dict[str, Any]:
        block: Dict[str, Any] = {
            BLOCK_KEYS[metric]: self.scores[metric].to_dict() for metric in METRICS
        }
        block["overallScore"] = self.overall_score
        block["evaluatedAt"] = evaluated_at.isoformat()
        block["evaluationModel"] = EVALUATION_MODEL
        return block


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def enabled_metrics(run_config: RunConfig) -> Dict[str, bool]:
    settings = run_config.self_improvement
    return {
        "hallucination": settings.metrics_hallucination_enabled,
        "data_quality": settings.metrics_data_quality_enabled,
        "complexity": settings.metrics_complexity_enabled,
    }


def overall_score(scores: Dict[str, int], enabled: Dict[str, bool]) -> int:
    """Weighted mean over enabled metrics (0.5 / 0.3 / 0.2), rounded half up."""
    total_weight = sum(WEIGHTS[m] for m in METRICS if enabled.get(m))
    if not total_weight:
        return 0
    weighted = sum(scores[m] * WEIGHTS[m] for m in METRICS if enabled.get(m))
    return round_half_up(weighted / total_weight)


def derive_flags(scores: Dict[str, int], enabled: Dict[str, bool]) -> List[str]:
    return [
        flag for metric, limit, flag in FLAG_RULES if enabled.get(metric) and scores[metric] <= limit
    ]


def _uniform(score: int, reasoning: str) -> Dict[str, MetricScore]:
    return {metric: MetricScore(score, reasoning) for metric in METRICS}


def parse_score(content: str) -> MetricScore:
    """Parse an evaluator reply; raises ValueError when it is not a JSON object."""
    parsed = json.loads(extract_fenced_json(content))
    if not isinstance(parsed, dict):
        raise ValueError("evaluation reply is not an object")
    try:
        score = int(float(parsed.get("score")))
    except (TypeError, ValueError):
        score = 50
    return MetricScore(
        score=max(0, min(100, score)),
        reasoning=parsed.get("reasoning") or "No reasoning provided",
    )


def trend_summary(history: Sequence[EvaluationRecord]) -> Dict[str, Any]:
    """Averages and direction over an evaluation history (newest first)."""
    count = len(history)
    if not count:
        return {"sample_count": 0, "trend": "stable"}

    def _avg(values: List[int]) -> float:
        return round(sum(values) / len(values), 1) if values else 0.0

    summary: Dict[str, Any] = {
        "sample_count": count,
        "average_overall": _avg([r.overall_score for r in history]),
        "average_hallucination": _avg([r.hallucination_score for r in history]),
        "average_data_quality": _avg([r.data_quality_score for r in history]),
        "average_complexity": _avg([r.complexity_score for r in history]),
        "trend": "stable",
    }
    if count >= 2:
        half = count // 2
        newer = _avg([r.overall_score for r in history[:half]])
        older = _avg([r.overall_score for r in history[half:]])
        if newer - older > 5:
            summary["trend"] = "improving"
        elif older - newer > 5:
            summary["trend"] = "declining"
    return summary


class Evaluator:
    """Scores generated output for groundedness, input sufficiency and scope.

    Enabled assessments run concurrently against the completion gateway. A
    failed assessment degrades to a neutral 50 instead of raising.
    """

    def __init__(self, store, completion: CompletionClient, alerts: AlertService) -> None:
        self.store = store
        self.completion = completion
        self.alerts = alerts

    def _templates(self) -> Dict[str, str]:
        rows = self.store.list_system_prompts(names=list(TEMPLATE_NAMES.values()))
        by_name = {row.name: row.prompt for row in rows}
        return {
            metric: by_name[name] for metric, name in TEMPLATE_NAMES.items() if name in by_name
        }

    @staticmethod
    def _render(template: str, **values: str) -> str:
        for key, value in values.items():
            template = template.replace("{{" + key + "}}", value, 1)
        return template

    async def _run_single(
        self,
        metric: str,
        message: str,
        *,
        run_config: RunConfig,
        tenant_id: str,
        workflow_id: str,
        node_id: str,
    ) -> MetricScore:
        try:
            result = await self.completion.complete(
                model=EVALUATION_MODEL,
                messages=[
                    {"role": "system", "content": EVALUATOR_SYSTEM_PROMPT},
                    {"role": "user", "content": message},
                ],
                max_tokens=300,
                temperature=0.3,
                token_field="max_tokens",
            )
        except (ProviderError, MissingCredentialsError) as exc:
            logger.warning("evaluation_call_failed", metric=metric, node_id=node_id, error=str(exc))
            return MetricScore(50, "Evaluation failed")
        except httpx.HTTPError as exc:
            logger.warning("evaluation_call_error", metric=metric, node_id=node_id, error=str(exc))
            return MetricScore(50, "Evaluation parsing failed")

        if result.has_usage:
            self.store.record_usage(
                UsageRecord(
                    tenant_id=tenant_id,
                    workflow_id=workflow_id,
                    node_id=node_id,
                    model=EVALUATION_MODEL,
                    prompt_tokens=result.prompt_tokens,
                    completion_tokens=result.completion_tokens,
                    total_tokens=result.total_tokens,
                    estimated_cost=run_config.estimate_cost(
                        EVALUATION_MODEL, result.prompt_tokens, result.completion_tokens
                    ),
                    usage_category=f"evaluation_{metric}",
                )
            )
        try:
            return parse_score(result.text)
        except ValueError as exc:
            logger.warning("evaluation_parse_failed", metric=metric, node_id=node_id, error=str(exc))
            return MetricScore(50, "Evaluation parsing failed")

    async def evaluate(
        self,
        *,
        question: str,
        reference: str,
        response: str,
        run_config: RunConfig,
        tenant_id: str,
        workflow_id: str,
        node_id: str,
    ) -> EvaluationResult:
        enabled = enabled_metrics(run_config)
        if not any(enabled.values()):
            return EvaluationResult(_uniform(0, "Metric disabled"), 0, [])

        templates = self._templates()
        if len(templates) < len(METRICS):
            logger.error("evaluation_templates_missing", found=sorted(templates))
            return EvaluationResult(_uniform(50, "System prompts not found"), 50, [])

        messages = {
            "hallucination": self._render(
                templates["hallucination"], question=question, reference=reference, response=response
            ),
            "data_quality": self._render(
                templates["data_quality"], question=question, data=reference
            ),
            "complexity": self._render(templates["complexity"], question=question),
        }
        active = [metric for metric in METRICS if enabled[metric]]
        outcomes = await asyncio.gather(
            *(
                self._run_single(
                    metric,
                    messages[metric],
                    run_config=run_config,
                    tenant_id=tenant_id,
                    workflow_id=workflow_id,
                    node_id=node_id,
                )
                for metric in active
            )
        )
        scores = _uniform(0, "Metric disabled")
        scores.update(dict(zip(active, outcomes)))
        raw = {metric: scores[metric].score for metric in METRICS}
        return EvaluationResult(
            scores=scores,
            overall_score=overall_score(raw, enabled),
            flags=derive_flags(raw, enabled),
        )

    def record(
        self,
        output: NodeOutputRecord,
        result: EvaluationResult,
        *,
        run_config: RunConfig,
        tenant_name: str,
        node_label: str,
    ) -> NodeOutputRecord:
        """Attach ``result`` to ``output`` and raise follow-up quality alerts.

        The record is changed in place; the caller persists it.
        """
        now = datetime.utcnow()
        settings = run_config.self_improvement
        enabled = enabled_metrics(run_config)
        output.evaluation = result.to_block(now)
        output.flags = list(result.flags)

        self.store.append_evaluation(
            EvaluationRecord(
                id=str(uuid.uuid4()),
                tenant_id=output.tenant_id,
                workflow_id=output.workflow_id,
                node_id=output.node_id,
                node_label=node_label,
                hallucination_score=result.scores["hallucination"].score,
                hallucination_reasoning=result.scores["hallucination"].reasoning,
                data_quality_score=result.scores["data_quality"].score,
                data_quality_reasoning=result.scores["data_quality"].reasoning,
                complexity_score=result.scores["complexity"].score,
                complexity_reasoning=result.scores["complexity"].reasoning,
                overall_score=result.overall_score,
                flags=list(result.flags),
                evaluated_at=now,
            ),
            retain=settings.evaluation_limit,
        )

        for metric in METRICS:
            score = result.scores[metric]
            if not enabled[metric] or score.score >= settings.alert_threshold:
                continue
            alert = self.alerts.quality(
                tenant_id=output.tenant_id,
                tenant_name=tenant_name,
                node_id=output.node_id,
                node_label=node_label,
                metric=metric,
                score=score.score,
                reasoning=score.reasoning,
            )
            if metric == "data_quality" and alert is not None and settings.auto_tag_low_quality:
                output.low_quality_fields = list(output.low_quality_fields or []) + [
                    {
                        "field": node_label,
                        "score": score.score,
                        "reasoning": score.reasoning,
                        "flagged_at": now.isoformat(),
                    }
                ]
        return output
