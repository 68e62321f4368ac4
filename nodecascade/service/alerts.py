from __future__ import annotations

from typing import Any, Dict, List, Optional

from nodecascade.logging import get_logger
from nodecascade.storage.models import Alert

logger = get_logger(__name__)

QUALITY_TITLES = {
    "hallucination": "High Hallucination",
    "data_quality": "Low Data Quality",
    "complexity": "High Complexity",
}


def quality_severity(score: int) -> str:
    if score < 30:
        return "critical"
    if score < 50:
        return "warning"
    return "info"


def summary_severity(summary: Dict[str, Any]) -> str:
    total_nodes = summary.get("totalNodes") or 0
    paused_ratio = (summary.get("pausedNodes") or 0) / total_nodes if total_nodes else 0.0
    if summary.get("executedWorkflows") == 0 and (summary.get("totalWorkflows") or 0) > 0:
        return "critical"
    if (summary.get("emptyOutputs") or 0) > total_nodes * 0.2:
        return "warning"
    if paused_ratio > 0.5 or (summary.get("skippedWorkflows") or 0) > 0:
        return "warning"
    if summary.get("issues"):
        return "warning"
    return "info"


def summary_description(summary: Dict[str, Any]) -> str:
    text = (
        f"{summary.get('executedWorkflows', 0)}/{summary.get('totalWorkflows', 0)} workflows ran. "
        f"{summary.get('executedNodes', 0)} nodes executed, {summary.get('cachedNodes', 0)} cached"
    )
    if summary.get("pausedNodes"):
        text += f", {summary['pausedNodes']} paused"
    if summary.get("emptyOutputs"):
        text += f", {summary['emptyOutputs']} empty outputs"
    issues = summary.get("issues") or []
    return text + (f". {len(issues)} issues detected." if issues else ".")


class AlertService:
    """Deduplicated operational alerts.

    Every call is an upsert on ``(alert_type, dedup_key)``: repeats bump the
    occurrence counter and last-seen time instead of adding rows. Failures
    are logged and swallowed so alerting never breaks a cascade.
    """

    def __init__(self, store) -> None:
        self.store = store

    def _upsert(self, alert_type: str, dedup_key: str, **kwargs: Any) -> Optional[Alert]:
        try:
            alert = self.store.upsert_alert(alert_type, dedup_key, **kwargs)
        except Exception as exc:
            logger.error(
                "alert_upsert_failed", alert_type=alert_type, dedup_key=dedup_key, error=str(exc)
            )
            return None
        logger.info(
            "alert_upserted",
            alert_type=alert_type,
            dedup_key=dedup_key,
            occurrences=alert.occurrence_count,
        )
        return alert

    def model_unavailable(
        self, model: str, status_code: int, error_text: str, *, node_id: str
    ) -> Optional[Alert]:
        if status_code == 404:
            title = f"Model Not Found: {model}"
        elif status_code == 410:
            title = f"Model Deprecated: {model}"
        else:
            title = f"Model Error: {model}"
        return self._upsert(
            "model_unavailable",
            model,
            severity="critical" if status_code in (404, 410) else "warning",
            title=title,
            description=(error_text or "")[:500],
            context={"node_id": node_id, "status_code": status_code},
        )

    def max_tokens_hit(
        self,
        *,
        tenant_id: str,
        workflow_id: str,
        node_id: str,
        node_label: str,
        completion_tokens: int,
        max_tokens: int,
    ) -> Optional[Alert]:
        percent_over = round((completion_tokens - max_tokens) / max_tokens * 100) if max_tokens else 0
        if percent_over > 100:
            severity = "critical"
        elif percent_over > 50:
            severity = "warning"
        else:
            severity = "info"
        return self._upsert(
            "max_tokens_hit",
            f"{workflow_id}:{node_id}:max_tokens_hit",
            severity=severity,
            title=f"Performance Issue: {node_label or node_id}",
            description=(
                f"Output truncated at {completion_tokens} tokens (limit: {max_tokens}). "
                "Increase max_tokens to allow longer outputs."
            ),
            tenant_id=tenant_id,
            context={
                "workflow_id": workflow_id,
                "node_id": node_id,
                "value": completion_tokens,
                "threshold": max_tokens,
            },
        )

    def quality(
        self,
        *,
        tenant_id: str,
        tenant_name: str,
        node_id: str,
        node_label: str,
        metric: str,
        score: int,
        reasoning: str,
    ) -> Optional[Alert]:
        prefix = QUALITY_TITLES.get(metric)
        title = (
            f"{prefix}: {tenant_name} - {node_label or node_id}"
            if prefix
            else f"Quality Issue: {tenant_name}"
        )
        return self._upsert(
            f"quality_{metric}",
            f"{tenant_id}:{node_id}:{metric}",
            severity=quality_severity(score),
            title=title,
            description=f"Score: {score}%. " + (reasoning or "")[:500],
            tenant_id=tenant_id,
            context={"node_id": node_id, "node_label": node_label, "score": score},
        )

    def change_pending(
        self, *, tenant_id: str, pending_change_id: str, change_id: str, action: str, path: List[str]
    ) -> Optional[Alert]:
        return self._upsert(
            "ssot_change_pending",
            f"ssot:{pending_change_id}",
            severity="warning" if action == "create_field" else "info",
            title=f"SSOT Change: {change_id}",
            description=f"{action} at {' → '.join(path)}",
            tenant_id=tenant_id,
            context={"pending_change_id": pending_change_id},
        )

    def change_rejected(
        self, *, tenant_id: str, pending_change_id: str, change_id: str, errors: List[str]
    ) -> Optional[Alert]:
        return self._upsert(
            "ssot_change_rejected",
            f"ssot:{pending_change_id}",
            severity="warning",
            title=f"SSOT Change Rejected: {change_id}",
            description=f"Validation failed: {', '.join(errors)}",
            tenant_id=tenant_id,
            context={"pending_change_id": pending_change_id},
        )

    def structure_pending(
        self,
        *,
        tenant_id: str,
        pending_change_id: str,
        level: str,
        field_key: str,
        display_name: str,
        parent_path: Dict[str, Any],
    ) -> Optional[Alert]:
        location = parent_path.get("l1") or ""
        if parent_path.get("l2"):
            location += f" → {parent_path['l2']}"
        return self._upsert(
            "ssot_structure_pending",
            f"ssot:{pending_change_id}",
            severity="warning",
            title=f"New {level} Field: {display_name}",
            description=f'Create {level} field "{field_key}" under {location}',
            tenant_id=tenant_id,
            context={"pending_change_id": pending_change_id},
        )

    def execution_summary(
        self,
        *,
        tenant_id: str,
        tenant_name: str,
        workflow_ids: List[str],
        summary: Dict[str, Any],
    ) -> Optional[Alert]:
        return self._upsert(
            "execution_summary",
            tenant_id,
            severity=summary_severity(summary),
            title=f"Execution Summary: {tenant_name}",
            description=summary_description(summary),
            tenant_id=tenant_id,
            context={"workflow_ids": workflow_ids, "issues": summary.get("issues") or []},
        )
