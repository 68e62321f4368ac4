from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class Tenant:
    id: str
    name: str
    status: str = "active"
    created_at: datetime = field(default_factory=datetime.utcnow)
    meta: Dict | None = None


@dataclass
class WorkflowRecord:
    """Stored workflow definition; nodes keep their raw configuration blobs."""

    id: str
    name: str
    nodes: List[Dict[str, Any]] = field(default_factory=list)
    edges: List[Dict[str, Any]] = field(default_factory=list)
    variables: List[Dict[str, Any]] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)
    parent_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Submission:
    id: str
    tenant_id: str
    raw_data: Any
    source_type: str = "manual"
    status: str = "pending"
    metadata: Dict[str, Any] = field(default_factory=dict)
    submitted_at: datetime = field(default_factory=datetime.utcnow)
    processed_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        tenant_id: str,
        raw_data: Any,
        *,
        source_type: str = "manual",
        metadata: Dict[str, Any] | None = None,
    ) -> "Submission":
        return cls(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            raw_data=raw_data,
            source_type=source_type,
            metadata=metadata or {},
        )

    @property
    def is_trigger_only(self) -> bool:
        raw = self.raw_data if isinstance(self.raw_data, dict) else {}
        return bool(raw.get("_trigger")) and not raw.get("intake_fields")


@dataclass
class NodeOutputRecord:
    tenant_id: str
    workflow_id: str
    node_id: str
    output: Any = None
    content_hash: Optional[str] = None
    dependency_hashes: Dict[str, str] = field(default_factory=dict)
    version: int = 0
    node_type: Optional[str] = None
    node_label: Optional[str] = None
    evaluation: Optional[Dict[str, Any]] = None
    flags: List[str] = field(default_factory=list)
    low_quality_fields: List[Dict[str, Any]] = field(default_factory=list)
    last_executed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.tenant_id, self.workflow_id, self.node_id)


@dataclass
class EvaluationRecord:
    id: str
    tenant_id: str
    workflow_id: str
    node_id: str
    node_label: Optional[str]
    hallucination_score: int
    hallucination_reasoning: str
    data_quality_score: int
    data_quality_reasoning: str
    complexity_score: int
    complexity_reasoning: str
    overall_score: int
    flags: List[str] = field(default_factory=list)
    evaluated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Alert:
    id: str
    alert_type: str
    dedup_key: str
    severity: str
    title: str
    description: str = ""
    tenant_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    status: str = "open"
    occurrence_count: int = 1
    first_seen_at: datetime = field(default_factory=datetime.utcnow)
    last_seen_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class UsageRecord:
    tenant_id: str
    workflow_id: str
    node_id: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated_cost: float
    usage_category: str = "generation"
    execution_time_ms: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class SystemPrompt:
    id: str
    name: str
    prompt: str


@dataclass
class Framework:
    id: str
    name: str
    schema: Any = None
    type: str = "rating_scale"
    description: str = ""


@dataclass
class Dataset:
    """Named bundle of node outputs; dependencies are {workflowId, nodeId, nodeName}."""

    id: str
    name: str
    dependencies: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class DomainDefinition:
    domain: str
    display_name: str
    description: str = ""
    icon_name: Optional[str] = None
    color: Optional[str] = None
    sort_order: int = 0


@dataclass
class FieldDefinition:
    id: str
    domain: str
    field_key: str
    display_name: str
    field_type: str = "text"
    level: str = "L4"
    description: str = ""
    is_required: bool = False
    sort_order: int = 0
    parent_field_id: Optional[str] = None
    is_scored: bool = False
    evaluation_method: Optional[str] = None
    evaluation_config: Optional[Dict[str, Any]] = None
    score_weight: float = 1.0


@dataclass
class ContextFactDefinition:
    fact_key: str
    display_name: str
    description: str = ""
    fact_type: str = "text"
    category: str = "attribute"
    default_domains: List[str] = field(default_factory=list)
    sort_order: int = 0


@dataclass
class MasterDataValue:
    tenant_id: str
    domain: str
    field_key: str
    field_value: Any
    field_type: str = "text"
    source_type: str = "generated"
    source_reference: Dict[str, Any] = field(default_factory=dict)
    version: int = 1
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ContextFact:
    tenant_id: str
    fact_key: str
    fact_value: Any
    fact_type: str = "text"
    category: str = "attribute"
    display_name: str = ""
    source_type: str = "generated"
    source_reference: Dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class SharedCacheEntry:
    shared_cache_id: str
    tenant_id: str
    workflow_id: str
    node_id: str
    node_label: Optional[str]
    output: Any
    content_hash: Optional[str] = None
    version: int = 1
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class PendingChange:
    id: str
    tenant_id: str
    workflow_id: str
    node_id: str
    change_id: str
    target_level: str
    target_domain: str
    target_path: Dict[str, Any]
    action: str
    proposed_value: Any
    status: str = "pending"
    data_type: Optional[str] = None
    is_scored: bool = False
    evaluation_method: Optional[str] = None
    input_field_ids: Optional[List[str]] = None
    current_value: Any = None
    provenance: Optional[Dict[str, Any]] = None
    validation_status: str = "valid"
    validation_errors: List[str] = field(default_factory=list)
    validation_warnings: List[str] = field(default_factory=list)
    alert_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
