from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from nodecascade.logging import get_correlation_id

MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000

_VALID_ERROR_CODES = frozenset(
    {
        "not_found",
        "validation_error",
        "conflict",
        "server_error",
        "configuration_error",
    }
)


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized JSON payloads."""
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: Optional[str] = Field(default_factory=get_correlation_id)


class CascadeRunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    tenant_id: str = Field(..., min_length=1, max_length=128, alias="companyId")
    submission_id: str = Field(..., min_length=1, max_length=128, alias="submissionId")
    workflow_id: Optional[str] = Field(default=None, max_length=128, alias="workflowId")
    empty_only: bool = Field(default=False, alias="emptyOnly")
    force: bool = Field(default=False, alias="forceRun")
    start_from_node_id: Optional[str] = Field(
        default=None, max_length=128, alias="startFromNodeId"
    )


class BulkRunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    all_tenants: bool = Field(..., alias="allCompanies")
    empty_only: bool = Field(default=False, alias="emptyOnly")


class SubmissionCreateRequest(BaseModel):
    raw_data: Dict[str, Any]
    source_type: str = Field(default="manual", max_length=64)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("raw_data", "metadata")
    @classmethod
    def _validate_payload(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value


class SubmissionResponse(BaseModel):
    id: str
    tenant_id: str
    source_type: str
    status: str
    submitted_at: datetime


class NodeOutputResponse(BaseModel):
    tenant_id: str
    workflow_id: str
    node_id: str
    node_type: Optional[str] = None
    node_label: Optional[str] = None
    output: Any = None
    content_hash: Optional[str] = None
    dependency_hashes: Dict[str, str] = Field(default_factory=dict)
    version: int
    evaluation: Optional[Dict[str, Any]] = None
    flags: List[str] = Field(default_factory=list)
    low_quality_fields: List[Dict[str, Any]] = Field(default_factory=list)
    last_executed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class EvaluationEntry(BaseModel):
    id: str
    workflow_id: str
    node_label: Optional[str] = None
    hallucination_score: int
    data_quality_score: int
    complexity_score: int
    overall_score: int
    flags: List[str] = Field(default_factory=list)
    evaluated_at: datetime


class EvaluationHistoryResponse(BaseModel):
    node_id: str
    history: List[EvaluationEntry]
    summary: Dict[str, Any]


class AlertResponse(BaseModel):
    id: str
    alert_type: str
    dedup_key: str
    severity: str
    title: str
    description: str = ""
    tenant_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    status: str
    occurrence_count: int
    first_seen_at: datetime
    last_seen_at: datetime


class ResetResponse(BaseModel):
    tenant_id: str
    workflow_id: Optional[str] = None
    deleted: int
