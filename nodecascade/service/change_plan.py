"""Change plans: parsing, shape validation and application to the shared schema."""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from jsonschema import Draft202012Validator

from nodecascade.logging import get_logger
from nodecascade.service.alerts import AlertService
from nodecascade.service.text_utils import bracket_balance, extract_fenced_json
from nodecascade.storage.models import ContextFact, FieldDefinition, PendingChange

logger = get_logger(__name__)

_PLAN_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "plan_summary": {"type": "array"},
        "plan_exceptions": {"type": "array"},
    },
    "required": ["plan_summary"],
    "anyOf": [
        {
            "required": ["validated_changes"],
            "properties": {"validated_changes": {"type": "array"}},
        },
        {
            "required": ["new_structure_additions"],
            "properties": {"new_structure_additions": {"type": "array", "minItems": 1}},
        },
    ],
}

_CHANGE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "change_id": {"type": "string", "minLength": 1},
        "target_path": {
            "type": "object",
            "properties": {"l1": {"type": "string", "minLength": 1}},
            "required": ["l1"],
        },
        "target_level": {"type": "string", "minLength": 1},
        "action": {"type": "string", "minLength": 1},
    },
    "required": ["change_id", "target_path", "target_level", "action", "value_to_write"],
}

# Sink submissions also check every change entry.
_STRICT_PLAN_SCHEMA: Dict[str, Any] = {
    **_PLAN_SCHEMA,
    "properties": {
        **_PLAN_SCHEMA["properties"],
        "validated_changes": {"type": "array", "items": _CHANGE_SCHEMA},
    },
}

_PLAN_VALIDATOR = Draft202012Validator(_PLAN_SCHEMA)
_STRICT_PLAN_VALIDATOR = Draft202012Validator(_STRICT_PLAN_SCHEMA)

L4_ONLY_TYPES = ("attribute_fact", "measurement", "evidence")
_UUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)


class ChangePlanParseError(ValueError):
    """Source output could not be read as a change plan."""


def parse_change_plan(source: Any) -> Any:
    """Return the plan object from a node output.

    Strings are read as JSON, optionally fenced. When parsing fails and the
    text has unclosed braces or brackets the error explains that the output
    was probably cut off at the token limit.
    """
    if isinstance(source, (dict, list)):
        return source
    if not isinstance(source, str):
        raise ChangePlanParseError("Invalid format")
    json_str = extract_fenced_json(source)
    try:
        return json.loads(json_str)
    except ValueError as exc:
        reason = str(exc)
        if json_str:
            missing_braces, missing_brackets = bracket_balance(json_str)
            if missing_braces > 0 or missing_brackets > 0:
                logger.warning(
                    "change_plan_truncated",
                    missing_braces=missing_braces,
                    missing_brackets=missing_brackets,
                    length=len(json_str),
                )
                reason = (
                    f"JSON appears truncated (missing {missing_braces} '}}' and "
                    f"{missing_brackets} ']'). The source node may need a higher max_tokens "
                    f"setting. Current output was {len(json_str)} characters."
                )
        raise ChangePlanParseError(reason) from exc


def _describe(error) -> str:
    path = list(error.absolute_path)
    if not path:
        if error.validator == "required":
            missing = [key for key in error.validator_value if key not in error.instance]
            return ", ".join(f'Missing "{key}"' for key in missing)
        if error.validator == "anyOf":
            return 'Missing "validated_changes" or "new_structure_additions"'
        if error.validator == "type":
            return "Plan must be a JSON object"
        return error.message
    if path[0] == "plan_summary":
        return 'Missing "plan_summary"'
    if path[0] == "validated_changes" and len(path) > 1:
        where = "".join(f".{p}" for p in path[2:])
        return f"validated_changes[{path[1]}]{where}: {error.message}"
    return error.message


def plan_shape_errors(plan: Any, *, strict: bool = False) -> List[str]:
    validator = _STRICT_PLAN_VALIDATOR if strict else _PLAN_VALIDATOR
    messages: List[str] = []
    for error in sorted(validator.iter_errors(plan), key=lambda e: list(map(str, e.absolute_path))):
        message = _describe(error)
        if message and message not in messages:
            messages.append(message)
    return messages


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_change(change: Dict[str, Any]) -> ValidationResult:
    result = ValidationResult()
    level = change.get("target_level")
    scored = bool(change.get("is_scored"))
    if level == "L4" and scored:
        result.errors.append("L4 (Input) fields cannot be scored")
    if level == "L1C" and scored:
        result.errors.append("L1C (Context) entries cannot be scored")
    if level == "L2" and not scored:
        result.errors.append("L2 (Primary Datapoint) must be scored")
    if scored and not change.get("evaluation_method"):
        result.errors.append("Scored fields require evaluation_method")
    if scored and not change.get("input_field_ids"):
        result.errors.append("Scored fields require input_field_ids for lineage")
    data_type = change.get("data_type")
    if data_type in L4_ONLY_TYPES and level != "L4":
        result.errors.append(f'Data type "{data_type}" can only be stored at L4')
    if level == "L4" and not (change.get("provenance") or {}).get("source"):
        result.warnings.append("L4 inputs should include provenance source")
    if change.get("action") == "create_field" and level == "L2":
        result.warnings.append("Check L2 field count (soft cap: 5-7 per domain)")
    return result


def validate_structure_addition(addition: Dict[str, Any]) -> ValidationResult:
    result = ValidationResult()
    scored = bool(addition.get("is_scored"))
    if addition.get("type") == "L2" and not scored:
        result.errors.append("L2 fields must be scored")
    if scored and not addition.get("evaluation_method"):
        result.errors.append("Scored fields require evaluation_method")
    if addition.get("type") == "L2":
        result.warnings.append("Verify L2 field count stays within 5-7 per domain")
    return result


def _valid_uuids(ids: Any) -> Optional[List[str]]:
    if not isinstance(ids, list):
        return None
    kept = [i for i in ids if isinstance(i, str) and _UUID.match(i)]
    return kept or None


def _title_case(key: str) -> str:
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), key.replace("_", " "))


@dataclass(frozen=True)
class ApplyOptions:
    mode: str = "data"
    auto_approve_l4: bool = False
    require_approval_create: bool = True

    @classmethod
    def from_config(cls, raw: Optional[Dict[str, Any]]) -> "ApplyOptions":
        raw = raw or {}
        mode = raw.get("mode") or ("schema" if raw.get("schema_only") else "data")
        require = raw.get("require_approval_create")
        return cls(
            mode=mode,
            auto_approve_l4=bool(raw.get("auto_approve_l4")),
            require_approval_create=True if require is None else bool(require),
        )


@dataclass
class ApplyOutcome:
    results: List[Dict[str, Any]] = field(default_factory=list)
    pending_count: int = 0
    auto_approved_count: int = 0

    @property
    def changes_processed(self) -> int:
        return len(self.results)


class ChangePlanService:
    """Records proposed shared-schema changes and applies the approved ones.

    Mode ``schema`` only accepts ``create_field``; mode ``data`` rejects it.
    Valid L4 changes are applied straight away when ``auto_approve_l4`` is
    set; everything else waits in the pending-change queue.
    """

    def __init__(self, store, alerts: AlertService) -> None:
        self.store = store
        self.alerts = alerts

    def apply_plan(
        self,
        plan: Dict[str, Any],
        *,
        tenant_id: str,
        workflow_id: str,
        node_id: str,
        options: ApplyOptions,
    ) -> ApplyOutcome:
        outcome = ApplyOutcome()
        changes = plan.get("validated_changes") or []
        additions = plan.get("new_structure_additions") or []
        logger.info(
            "change_plan_apply_started",
            tenant_id=tenant_id,
            node_id=node_id,
            mode=options.mode,
            changes=len(changes),
            additions=len(additions),
        )
        for change in changes:
            if isinstance(change, dict):
                self._process_change(change, outcome, tenant_id, workflow_id, node_id, options)
        for addition in additions:
            if isinstance(addition, dict):
                self._process_addition(addition, outcome, tenant_id, workflow_id, node_id, options)
        for exception in plan.get("plan_exceptions") or []:
            reason = exception.get("reason") if isinstance(exception, dict) else exception
            logger.info("change_plan_exception", node_id=node_id, reason=reason)
        logger.info(
            "change_plan_apply_completed",
            tenant_id=tenant_id,
            node_id=node_id,
            processed=outcome.changes_processed,
            pending=outcome.pending_count,
            auto_approved=outcome.auto_approved_count,
        )
        return outcome

    def _process_change(
        self,
        change: Dict[str, Any],
        outcome: ApplyOutcome,
        tenant_id: str,
        workflow_id: str,
        node_id: str,
        options: ApplyOptions,
    ) -> None:
        change_id = change.get("change_id") or ""
        action = change.get("action")
        if options.mode == "schema" and action != "create_field":
            outcome.results.append(
                {
                    "change_id": change_id,
                    "pending_change_id": None,
                    "validation_status": "invalid",
                    "errors": [f'Schema mode: Only field creation allowed (rejecting "{action}" action)'],
                    "warnings": [],
                }
            )
            return
        if options.mode == "data" and action == "create_field":
            outcome.results.append(
                {
                    "change_id": change_id,
                    "pending_change_id": None,
                    "validation_status": "invalid",
                    "errors": [f'Data mode: Cannot create new fields (use Schema mode for "{change_id}")'],
                    "warnings": [],
                }
            )
            return

        validation = validate_change(change)
        level = change.get("target_level") or ""
        auto_approve = (
            options.auto_approve_l4
            and level == "L4"
            and action != "create_field"
            and validation.valid
        )
        if not validation.valid:
            status = "rejected"
        elif auto_approve:
            status = "approved"
        else:
            status = "pending"
        target_path = change.get("target_path") if isinstance(change.get("target_path"), dict) else {}
        pending = self.store.create_pending_change(
            PendingChange(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                workflow_id=workflow_id,
                node_id=node_id,
                change_id=change_id,
                target_level=level,
                target_domain=target_path.get("l1") or "",
                target_path=target_path,
                action=action or "",
                proposed_value=change.get("value_to_write"),
                status=status,
                data_type=change.get("data_type"),
                is_scored=bool(change.get("is_scored")),
                evaluation_method=change.get("evaluation_method"),
                input_field_ids=_valid_uuids(change.get("input_field_ids")),
                current_value=change.get("current_value"),
                provenance=change.get("provenance"),
                validation_status="valid" if validation.valid else "invalid",
                validation_errors=list(validation.errors),
                validation_warnings=list(validation.warnings),
            )
        )
        result: Dict[str, Any] = {
            "change_id": change_id,
            "pending_change_id": pending.id,
            "validation_status": "valid" if validation.valid else "invalid",
            "errors": list(validation.errors),
            "warnings": list(validation.warnings),
        }

        if auto_approve:
            ok, error = self.apply_change(tenant_id, change, pending.id)
            result["errors"] = [] if ok else [error or "Unknown error"]
            result["auto_approved"] = True
            outcome.auto_approved_count += 1
        elif validation.valid:
            path = [target_path.get(k) for k in ("l1", "l2", "l3", "l4") if target_path.get(k)]
            alert = self.alerts.change_pending(
                tenant_id=tenant_id,
                pending_change_id=pending.id,
                change_id=change_id,
                action=action or "",
                path=path,
            )
            result["auto_approved"] = False
            outcome.pending_count += 1
            if alert:
                self.store.update_pending_change(pending.id, alert_id=alert.id)
                result["alert_id"] = alert.id
        else:
            alert = self.alerts.change_rejected(
                tenant_id=tenant_id,
                pending_change_id=pending.id,
                change_id=change_id,
                errors=validation.errors,
            )
            if alert:
                self.store.update_pending_change(pending.id, alert_id=alert.id)
                result["alert_id"] = alert.id
        outcome.results.append(result)

    def _process_addition(
        self,
        addition: Dict[str, Any],
        outcome: ApplyOutcome,
        tenant_id: str,
        workflow_id: str,
        node_id: str,
        options: ApplyOptions,
    ) -> None:
        validation = validate_structure_addition(addition)
        needs_approval = options.require_approval_create or not validation.valid
        if validation.valid and not needs_approval:
            status = "approved"
        elif validation.valid:
            status = "pending"
        else:
            status = "rejected"
        level = addition.get("type") or ""
        field_key = addition.get("field_key") or ""
        parent_path = addition.get("parent_path") if isinstance(addition.get("parent_path"), dict) else {}
        proposed = {
            "field_key": field_key,
            "display_name": addition.get("display_name"),
            "field_type": addition.get("field_type"),
            "score_weight": addition.get("score_weight"),
        }
        pending = self.store.create_pending_change(
            PendingChange(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                workflow_id=workflow_id,
                node_id=node_id,
                change_id=f"NEW-{level}-{field_key}",
                target_level=level,
                target_domain=parent_path.get("l1") or "",
                target_path=parent_path,
                action="create_field",
                proposed_value=proposed,
                status=status,
                data_type="metric",
                is_scored=bool(addition.get("is_scored")),
                evaluation_method=addition.get("evaluation_method"),
                validation_status="valid" if validation.valid else "invalid",
                validation_errors=list(validation.errors),
                validation_warnings=list(validation.warnings),
            )
        )
        if status == "approved":
            self.apply_change(
                tenant_id,
                {
                    "change_id": pending.change_id,
                    "action": "create_field",
                    "target_level": level,
                    "target_path": parent_path,
                    "is_scored": bool(addition.get("is_scored")),
                    "evaluation_method": addition.get("evaluation_method"),
                    "value_to_write": proposed,
                },
                pending.id,
            )
            return
        if status != "pending":
            return
        alert = self.alerts.structure_pending(
            tenant_id=tenant_id,
            pending_change_id=pending.id,
            level=level,
            field_key=field_key,
            display_name=addition.get("display_name") or field_key,
            parent_path=parent_path,
        )
        if alert:
            self.store.update_pending_change(pending.id, alert_id=alert.id)
        outcome.pending_count += 1
        outcome.results.append(
            {
                "change_id": pending.change_id,
                "pending_change_id": pending.id,
                "alert_id": alert.id if alert else None,
                "validation_status": "valid",
                "errors": [],
                "warnings": list(validation.warnings),
            }
        )

    def apply_change(
        self, tenant_id: str, change: Dict[str, Any], pending_change_id: str
    ) -> Tuple[bool, Optional[str]]:
        """Write one approved change. Returns ``(ok, error)``."""
        target_path = change.get("target_path") or {}
        level = change.get("target_level")
        provenance = change.get("provenance") or {}
        source_reference = {"pending_change_id": pending_change_id, **provenance}
        try:
            if change.get("action") == "create_field":
                definition = change.get("value_to_write")
                if not isinstance(definition, dict) or not definition.get("field_key"):
                    return False, "create_field requires a field description"
                self.store.upsert_field_definition(
                    FieldDefinition(
                        id=str(uuid.uuid4()),
                        domain=target_path.get("l1") or "",
                        field_key=definition["field_key"],
                        display_name=definition.get("display_name") or definition["field_key"],
                        field_type=definition.get("field_type") or "text",
                        level=level or "L4",
                        is_scored=bool(change.get("is_scored")),
                        evaluation_method=change.get("evaluation_method"),
                        score_weight=definition.get("score_weight") or 1.0,
                    )
                )
                logger.info("field_definition_created", field_key=definition["field_key"])
            elif level == "L1C":
                fact_key = (
                    target_path.get("l4")
                    or target_path.get("l3")
                    or target_path.get("l2")
                    or change.get("change_id")
                )
                if not fact_key:
                    return False, "No fact key found in target path"
                self.store.upsert_context_fact(
                    ContextFact(
                        tenant_id=tenant_id,
                        fact_key=fact_key,
                        fact_value=change.get("value_to_write"),
                        fact_type=change.get("data_type") or "text",
                        category="attribute",
                        display_name=_title_case(fact_key),
                        source_type="generated",
                        source_reference=source_reference,
                    )
                )
                logger.info("context_fact_written", tenant_id=tenant_id, fact_key=fact_key)
            elif level in ("L2", "L3", "L4"):
                field_key = (
                    target_path.get("l4")
                    or target_path.get("l3")
                    or target_path.get("l2")
                    or (change.get("change_id") or "").replace("CHG-", "field_", 1)
                )
                if not field_key:
                    return False, "No field key found in target path"
                self.store.upsert_master_data(
                    tenant_id,
                    target_path.get("l1") or "",
                    field_key,
                    change.get("value_to_write"),
                    field_type="number" if change.get("data_type") == "measurement" else "text",
                    source_type="generated",
                    source_reference=source_reference,
                )
                logger.info(
                    "master_data_written",
                    tenant_id=tenant_id,
                    domain=target_path.get("l1"),
                    field_key=field_key,
                )
        except Exception as exc:
            logger.error(
                "change_apply_failed",
                tenant_id=tenant_id,
                pending_change_id=pending_change_id,
                error=str(exc),
            )
            return False, str(exc)
        return True, None
