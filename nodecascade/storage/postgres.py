from __future__ import annotations

import json
import uuid
from dataclasses import fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from nodecascade.logging import get_logger
from nodecascade.storage.errors import ConstraintViolation, VersionConflict
from nodecascade.storage.models import (
    Alert,
    ContextFact,
    ContextFactDefinition,
    Dataset,
    DomainDefinition,
    EvaluationRecord,
    FieldDefinition,
    Framework,
    MasterDataValue,
    NodeOutputRecord,
    PendingChange,
    SharedCacheEntry,
    Submission,
    SystemPrompt,
    Tenant,
    UsageRecord,
    WorkflowRecord,
)


def _dump(value: Any) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


def _to_model(model: type, row: Optional[Dict[str, Any]]) -> Any:
    if not row:
        return None
    known = {f.name for f in fields(model)}
    return model(**{k: v for k, v in row.items() if k in known})


class PostgresStore:
    """Postgres-backed store for workflows, node outputs and the shared schema."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the cascade tables exist before serving requests."""

        required_tables = [
            "tenant",
            "workflow",
            "submission",
            "node_output",
            "node_evaluation",
            "alert",
            "usage_log",
            "app_setting",
            "model_pricing",
            "system_prompt",
            "framework",
            "dataset",
            "domain_definition",
            "field_definition",
            "context_fact_definition",
            "master_data",
            "master_data_history",
            "context_fact",
            "shared_cache_entry",
            "pending_change",
        ]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    # ------------------------------------------------------------------
    # tenants & workflows
    # ------------------------------------------------------------------

    def upsert_tenant(self, tenant: Tenant) -> Tenant:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                INSERT INTO tenant (id, name, status, created_at, meta)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name, status = EXCLUDED.status, meta = EXCLUDED.meta
                """,
                (tenant.id, tenant.name, tenant.status, tenant.created_at, _dump(tenant.meta)),
            )
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenant WHERE id = %s", (tenant_id,)).fetchone()
        return _to_model(Tenant, row)

    def list_tenants(self, status: Optional[str] = None) -> List[Tenant]:
        query = "SELECT * FROM tenant"
        params: Tuple[Any, ...] = ()
        if status:
            query += " WHERE status = %s"
            params = (status,)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at", params).fetchall()
        return [_to_model(Tenant, row) for row in rows]

    def save_workflow(self, workflow: WorkflowRecord) -> WorkflowRecord:
        workflow.updated_at = datetime.utcnow()
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                INSERT INTO workflow (id, name, nodes, edges, variables, settings, parent_id, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name, nodes = EXCLUDED.nodes, edges = EXCLUDED.edges,
                    variables = EXCLUDED.variables, settings = EXCLUDED.settings,
                    parent_id = EXCLUDED.parent_id, updated_at = EXCLUDED.updated_at
                """,
                (
                    workflow.id,
                    workflow.name,
                    _dump(workflow.nodes),
                    _dump(workflow.edges),
                    _dump(workflow.variables),
                    _dump(workflow.settings),
                    workflow.parent_id,
                    workflow.created_at,
                    workflow.updated_at,
                ),
            )
        return workflow

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM workflow WHERE id = %s", (workflow_id,)).fetchone()
        return _to_model(WorkflowRecord, row)

    def list_workflows(self) -> List[WorkflowRecord]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM workflow ORDER BY created_at").fetchall()
        return [_to_model(WorkflowRecord, row) for row in rows]

    # ------------------------------------------------------------------
    # submissions
    # ------------------------------------------------------------------

    def create_submission(self, submission: Submission) -> Submission:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO submission (id, tenant_id, raw_data, source_type, status, metadata, submitted_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        submission.id,
                        submission.tenant_id,
                        _dump(submission.raw_data),
                        submission.source_type,
                        submission.status,
                        _dump(submission.metadata),
                        submission.submitted_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "submission already exists", {"submission_id": submission.id}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant not found", {"tenant_id": submission.tenant_id})
        return submission

    def get_submission(
        self, submission_id: str, tenant_id: Optional[str] = None
    ) -> Optional[Submission]:
        query = "SELECT * FROM submission WHERE id = %s"
        params: Tuple[Any, ...] = (submission_id,)
        if tenant_id:
            query += " AND tenant_id = %s"
            params = (submission_id, tenant_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return _to_model(Submission, row)

    def update_submission_status(
        self, submission_id: str, status: str, *, processed_at: Optional[datetime] = None
    ) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                "UPDATE submission SET status = %s, processed_at = COALESCE(%s, processed_at) WHERE id = %s",
                (status, processed_at, submission_id),
            )

    def list_submissions(
        self,
        tenant_id: str,
        *,
        source_types: Optional[Iterable[str]] = None,
        limit: int = 50,
    ) -> List[Submission]:
        query = "SELECT * FROM submission WHERE tenant_id = %s"
        params: List[Any] = [tenant_id]
        if source_types:
            query += " AND source_type = ANY(%s)"
            params.append(list(source_types))
        query += " ORDER BY submitted_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_to_model(Submission, row) for row in rows]

    # ------------------------------------------------------------------
    # node outputs
    # ------------------------------------------------------------------

    def get_node_output(
        self, tenant_id: str, workflow_id: str, node_id: str
    ) -> Optional[NodeOutputRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM node_output WHERE tenant_id = %s AND workflow_id = %s AND node_id = %s",
                (tenant_id, workflow_id, node_id),
            ).fetchone()
        return _to_model(NodeOutputRecord, row)

    def list_node_outputs(
        self, tenant_id: str, workflow_id: Optional[str] = None
    ) -> List[NodeOutputRecord]:
        query = "SELECT * FROM node_output WHERE tenant_id = %s"
        params: Tuple[Any, ...] = (tenant_id,)
        if workflow_id:
            query += " AND workflow_id = %s"
            params = (tenant_id, workflow_id)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_to_model(NodeOutputRecord, row) for row in rows]

    def write_node_output(
        self, record: NodeOutputRecord, *, expected_version: int
    ) -> NodeOutputRecord:
        """Compare-and-swap write keyed by (tenant, workflow, node)."""
        now = datetime.utcnow()
        values = (
            _dump(record.output),
            record.content_hash,
            _dump(record.dependency_hashes),
            record.node_type,
            record.node_label,
            _dump(record.evaluation),
            _dump(record.flags),
            _dump(record.low_quality_fields),
            record.last_executed_at,
            now,
        )
        with self._connect() as conn, conn.transaction():
            if expected_version == 0:
                row = conn.execute(
                    """
                    INSERT INTO node_output (
                        output, content_hash, dependency_hashes, node_type, node_label,
                        evaluation, flags, low_quality_fields, last_executed_at, updated_at,
                        tenant_id, workflow_id, node_id, version, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 1, %s)
                    ON CONFLICT (tenant_id, workflow_id, node_id) DO NOTHING
                    RETURNING *
                    """,
                    values + (record.tenant_id, record.workflow_id, record.node_id, now),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    UPDATE node_output SET
                        output = %s, content_hash = %s, dependency_hashes = %s, node_type = %s,
                        node_label = %s, evaluation = %s, flags = %s, low_quality_fields = %s,
                        last_executed_at = %s, updated_at = %s, version = version + 1
                    WHERE tenant_id = %s AND workflow_id = %s AND node_id = %s AND version = %s
                    RETURNING *
                    """,
                    values
                    + (record.tenant_id, record.workflow_id, record.node_id, expected_version),
                ).fetchone()
            if not row:
                current = conn.execute(
                    "SELECT version FROM node_output WHERE tenant_id = %s AND workflow_id = %s AND node_id = %s",
                    (record.tenant_id, record.workflow_id, record.node_id),
                ).fetchone()
                raise VersionConflict(
                    "node output version changed",
                    expected_version=expected_version,
                    actual_version=current["version"] if current else 0,
                    detail={"node_id": record.node_id, "workflow_id": record.workflow_id},
                )
        return _to_model(NodeOutputRecord, row)

    def reset_node_outputs(self, tenant_id: str, workflow_id: Optional[str] = None) -> int:
        query = "DELETE FROM node_output WHERE tenant_id = %s"
        params: Tuple[Any, ...] = (tenant_id,)
        if workflow_id:
            query += " AND workflow_id = %s"
            params = (tenant_id, workflow_id)
        with self._connect() as conn, conn.transaction():
            removed = conn.execute(query, params).rowcount
        self.logger.info(
            "node_outputs_reset", tenant_id=tenant_id, workflow_id=workflow_id, removed=removed
        )
        return removed

    # ------------------------------------------------------------------
    # evaluations, usage, alerts
    # ------------------------------------------------------------------

    def append_evaluation(self, record: EvaluationRecord, *, retain: int) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                INSERT INTO node_evaluation (
                    id, tenant_id, workflow_id, node_id, node_label,
                    hallucination_score, hallucination_reasoning,
                    data_quality_score, data_quality_reasoning,
                    complexity_score, complexity_reasoning,
                    overall_score, flags, evaluated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.tenant_id,
                    record.workflow_id,
                    record.node_id,
                    record.node_label,
                    record.hallucination_score,
                    record.hallucination_reasoning,
                    record.data_quality_score,
                    record.data_quality_reasoning,
                    record.complexity_score,
                    record.complexity_reasoning,
                    record.overall_score,
                    _dump(record.flags),
                    record.evaluated_at,
                ),
            )
            conn.execute(
                """
                DELETE FROM node_evaluation WHERE id IN (
                    SELECT id FROM node_evaluation
                    WHERE tenant_id = %s AND workflow_id = %s AND node_id = %s
                    ORDER BY evaluated_at DESC OFFSET %s
                )
                """,
                (record.tenant_id, record.workflow_id, record.node_id, retain),
            )

    def list_evaluations(
        self,
        tenant_id: str,
        node_id: str,
        *,
        workflow_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[EvaluationRecord]:
        query = "SELECT * FROM node_evaluation WHERE tenant_id = %s AND node_id = %s"
        params: List[Any] = [tenant_id, node_id]
        if workflow_id:
            query += " AND workflow_id = %s"
            params.append(workflow_id)
        query += " ORDER BY evaluated_at DESC"
        if limit:
            query += " LIMIT %s"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_to_model(EvaluationRecord, row) for row in rows]

    def record_usage(self, record: UsageRecord) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                INSERT INTO usage_log (
                    tenant_id, workflow_id, node_id, model, prompt_tokens, completion_tokens,
                    total_tokens, estimated_cost, usage_category, execution_time_ms, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.tenant_id,
                    record.workflow_id,
                    record.node_id,
                    record.model,
                    record.prompt_tokens,
                    record.completion_tokens,
                    record.total_tokens,
                    record.estimated_cost,
                    record.usage_category,
                    record.execution_time_ms,
                    record.created_at,
                ),
            )

    def list_usage(self, tenant_id: Optional[str] = None) -> List[UsageRecord]:
        query = "SELECT * FROM usage_log"
        params: Tuple[Any, ...] = ()
        if tenant_id:
            query += " WHERE tenant_id = %s"
            params = (tenant_id,)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at", params).fetchall()
        return [_to_model(UsageRecord, row) for row in rows]

    def upsert_alert(
        self,
        alert_type: str,
        dedup_key: str,
        *,
        severity: str,
        title: str,
        description: str = "",
        tenant_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Alert:
        now = datetime.utcnow()
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                INSERT INTO alert (
                    id, alert_type, dedup_key, severity, title, description, tenant_id,
                    context, status, occurrence_count, first_seen_at, last_seen_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 'open', 1, %s, %s)
                ON CONFLICT (alert_type, dedup_key) DO UPDATE SET
                    severity = EXCLUDED.severity, title = EXCLUDED.title,
                    description = EXCLUDED.description, context = EXCLUDED.context,
                    status = 'open', occurrence_count = alert.occurrence_count + 1,
                    last_seen_at = EXCLUDED.last_seen_at
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    alert_type,
                    dedup_key,
                    severity,
                    title,
                    description,
                    tenant_id,
                    _dump(context or {}),
                    now,
                    now,
                ),
            ).fetchone()
        return _to_model(Alert, row)

    def list_alerts(self, alert_type: Optional[str] = None) -> List[Alert]:
        query = "SELECT * FROM alert"
        params: Tuple[Any, ...] = ()
        if alert_type:
            query += " WHERE alert_type = %s"
            params = (alert_type,)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY last_seen_at DESC", params).fetchall()
        return [_to_model(Alert, row) for row in rows]

    # ------------------------------------------------------------------
    # settings & reference data
    # ------------------------------------------------------------------

    def get_app_settings(self) -> Dict[str, Any]:
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM app_setting").fetchall()
        return {row["key"]: row["value"] for row in rows}

    def set_app_settings(self, settings: Dict[str, Any]) -> None:
        with self._connect() as conn, conn.transaction():
            for key, value in settings.items():
                conn.execute(
                    """
                    INSERT INTO app_setting (key, value) VALUES (%s, %s)
                    ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value
                    """,
                    (key, _dump(value)),
                )

    def list_pricing_overrides(self) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT model_id, input_cost_per_million, output_cost_per_million FROM model_pricing"
            ).fetchall()
        return [dict(row) for row in rows]

    def set_pricing_override(
        self,
        model_id: str,
        input_cost_per_million: Optional[float] = None,
        output_cost_per_million: Optional[float] = None,
    ) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                INSERT INTO model_pricing (model_id, input_cost_per_million, output_cost_per_million)
                VALUES (%s, %s, %s)
                ON CONFLICT (model_id) DO UPDATE SET
                    input_cost_per_million = EXCLUDED.input_cost_per_million,
                    output_cost_per_million = EXCLUDED.output_cost_per_million
                """,
                (model_id, input_cost_per_million, output_cost_per_million),
            )

    def upsert_system_prompt(self, prompt: SystemPrompt) -> SystemPrompt:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                INSERT INTO system_prompt (id, name, prompt) VALUES (%s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name, prompt = EXCLUDED.prompt
                """,
                (prompt.id, prompt.name, prompt.prompt),
            )
        return prompt

    def get_system_prompt(self, prompt_id: str) -> Optional[SystemPrompt]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM system_prompt WHERE id = %s", (prompt_id,)).fetchone()
        return _to_model(SystemPrompt, row)

    def list_system_prompts(self, names: Optional[Iterable[str]] = None) -> List[SystemPrompt]:
        query = "SELECT * FROM system_prompt"
        params: Tuple[Any, ...] = ()
        if names:
            query += " WHERE name = ANY(%s)"
            params = (list(names),)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_to_model(SystemPrompt, row) for row in rows]

    def upsert_framework(self, framework: Framework) -> Framework:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                INSERT INTO framework (id, name, schema, type, description) VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name, schema = EXCLUDED.schema,
                    type = EXCLUDED.type, description = EXCLUDED.description
                """,
                (
                    framework.id,
                    framework.name,
                    _dump(framework.schema),
                    framework.type,
                    framework.description,
                ),
            )
        return framework

    def get_framework(self, framework_id: str) -> Optional[Framework]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM framework WHERE id = %s", (framework_id,)).fetchone()
        return _to_model(Framework, row)

    def upsert_dataset(self, dataset: Dataset) -> Dataset:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                INSERT INTO dataset (id, name, dependencies) VALUES (%s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name, dependencies = EXCLUDED.dependencies
                """,
                (dataset.id, dataset.name, _dump(dataset.dependencies)),
            )
        return dataset

    def get_dataset(self, dataset_id: str) -> Optional[Dataset]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM dataset WHERE id = %s", (dataset_id,)).fetchone()
        return _to_model(Dataset, row)

    # ------------------------------------------------------------------
    # shared schema
    # ------------------------------------------------------------------

    def upsert_domain_definition(self, domain: DomainDefinition) -> DomainDefinition:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                INSERT INTO domain_definition (domain, display_name, description, icon_name, color, sort_order)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (domain) DO UPDATE SET display_name = EXCLUDED.display_name,
                    description = EXCLUDED.description, icon_name = EXCLUDED.icon_name,
                    color = EXCLUDED.color, sort_order = EXCLUDED.sort_order
                """,
                (
                    domain.domain,
                    domain.display_name,
                    domain.description,
                    domain.icon_name,
                    domain.color,
                    domain.sort_order,
                ),
            )
        return domain

    def list_domain_definitions(self) -> List[DomainDefinition]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM domain_definition ORDER BY sort_order").fetchall()
        return [_to_model(DomainDefinition, row) for row in rows]

    def upsert_field_definition(self, definition: FieldDefinition) -> FieldDefinition:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                INSERT INTO field_definition (
                    id, domain, field_key, display_name, field_type, level, description,
                    is_required, sort_order, parent_field_id, is_scored, evaluation_method,
                    evaluation_config, score_weight
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (domain, field_key) DO UPDATE SET
                    display_name = EXCLUDED.display_name, field_type = EXCLUDED.field_type,
                    level = EXCLUDED.level, description = EXCLUDED.description,
                    parent_field_id = EXCLUDED.parent_field_id, is_scored = EXCLUDED.is_scored,
                    evaluation_method = EXCLUDED.evaluation_method,
                    evaluation_config = EXCLUDED.evaluation_config,
                    score_weight = EXCLUDED.score_weight
                RETURNING *
                """,
                (
                    definition.id,
                    definition.domain,
                    definition.field_key,
                    definition.display_name,
                    definition.field_type,
                    definition.level,
                    definition.description,
                    definition.is_required,
                    definition.sort_order,
                    definition.parent_field_id,
                    definition.is_scored,
                    definition.evaluation_method,
                    _dump(definition.evaluation_config),
                    definition.score_weight,
                ),
            ).fetchone()
        return _to_model(FieldDefinition, row)

    def list_field_definitions(self) -> List[FieldDefinition]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM field_definition ORDER BY domain, level, sort_order"
            ).fetchall()
        return [_to_model(FieldDefinition, row) for row in rows]

    def upsert_context_fact_definition(
        self, definition: ContextFactDefinition
    ) -> ContextFactDefinition:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                INSERT INTO context_fact_definition (
                    fact_key, display_name, description, fact_type, category, default_domains, sort_order
                ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (fact_key) DO UPDATE SET display_name = EXCLUDED.display_name,
                    description = EXCLUDED.description, fact_type = EXCLUDED.fact_type,
                    category = EXCLUDED.category, default_domains = EXCLUDED.default_domains,
                    sort_order = EXCLUDED.sort_order
                """,
                (
                    definition.fact_key,
                    definition.display_name,
                    definition.description,
                    definition.fact_type,
                    definition.category,
                    _dump(definition.default_domains),
                    definition.sort_order,
                ),
            )
        return definition

    def list_context_fact_definitions(self) -> List[ContextFactDefinition]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM context_fact_definition ORDER BY sort_order"
            ).fetchall()
        return [_to_model(ContextFactDefinition, row) for row in rows]

    def get_master_data(
        self, tenant_id: str, domain: str, field_key: str
    ) -> Optional[MasterDataValue]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM master_data WHERE tenant_id = %s AND domain = %s AND field_key = %s",
                (tenant_id, domain, field_key),
            ).fetchone()
        return _to_model(MasterDataValue, row)

    def upsert_master_data(
        self,
        tenant_id: str,
        domain: str,
        field_key: str,
        value: Any,
        *,
        field_type: str = "text",
        source_type: str = "generated",
        source_reference: Optional[Dict[str, Any]] = None,
    ) -> Tuple[MasterDataValue, bool]:
        """Write a master-data value, archiving the prior one. Returns (row, created)."""
        with self._connect() as conn, conn.transaction():
            existing = conn.execute(
                "SELECT * FROM master_data WHERE tenant_id = %s AND domain = %s AND field_key = %s FOR UPDATE",
                (tenant_id, domain, field_key),
            ).fetchone()
            if existing:
                conn.execute(
                    """
                    INSERT INTO master_data_history (
                        tenant_id, domain, field_key, field_value, field_type, source_type,
                        source_reference, version, updated_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        tenant_id,
                        domain,
                        field_key,
                        _dump(existing["field_value"]),
                        existing["field_type"],
                        existing["source_type"],
                        _dump(existing["source_reference"]),
                        existing["version"],
                        existing["updated_at"],
                    ),
                )
            row = conn.execute(
                """
                INSERT INTO master_data (
                    tenant_id, domain, field_key, field_value, field_type, source_type,
                    source_reference, version, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, 1, now())
                ON CONFLICT (tenant_id, domain, field_key) DO UPDATE SET
                    field_value = EXCLUDED.field_value, field_type = EXCLUDED.field_type,
                    source_type = EXCLUDED.source_type, source_reference = EXCLUDED.source_reference,
                    version = master_data.version + 1, updated_at = now()
                RETURNING *
                """,
                (
                    tenant_id,
                    domain,
                    field_key,
                    _dump(value),
                    field_type,
                    source_type,
                    _dump(source_reference or {}),
                ),
            ).fetchone()
        return _to_model(MasterDataValue, row), existing is None

    def list_master_data(self, tenant_id: str) -> List[MasterDataValue]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM master_data WHERE tenant_id = %s", (tenant_id,)
            ).fetchall()
        return [_to_model(MasterDataValue, row) for row in rows]

    def list_master_data_history(
        self, tenant_id: str, domain: str, field_key: str
    ) -> List[MasterDataValue]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM master_data_history
                WHERE tenant_id = %s AND domain = %s AND field_key = %s ORDER BY version
                """,
                (tenant_id, domain, field_key),
            ).fetchall()
        return [_to_model(MasterDataValue, row) for row in rows]

    def upsert_context_fact(self, fact: ContextFact) -> ContextFact:
        fact.updated_at = datetime.utcnow()
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                INSERT INTO context_fact (
                    tenant_id, fact_key, fact_value, fact_type, category, display_name,
                    source_type, source_reference, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (tenant_id, fact_key) DO UPDATE SET
                    fact_value = EXCLUDED.fact_value, fact_type = EXCLUDED.fact_type,
                    category = EXCLUDED.category, display_name = EXCLUDED.display_name,
                    source_type = EXCLUDED.source_type, source_reference = EXCLUDED.source_reference,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    fact.tenant_id,
                    fact.fact_key,
                    _dump(fact.fact_value),
                    fact.fact_type,
                    fact.category,
                    fact.display_name,
                    fact.source_type,
                    _dump(fact.source_reference),
                    fact.updated_at,
                ),
            )
        return fact

    def get_context_fact(self, tenant_id: str, fact_key: str) -> Optional[ContextFact]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM context_fact WHERE tenant_id = %s AND fact_key = %s",
                (tenant_id, fact_key),
            ).fetchone()
        return _to_model(ContextFact, row)

    def upsert_shared_cache_entry(self, entry: SharedCacheEntry) -> SharedCacheEntry:
        entry.updated_at = datetime.utcnow()
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                INSERT INTO shared_cache_entry (
                    shared_cache_id, tenant_id, workflow_id, node_id, node_label, output,
                    content_hash, version, updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (shared_cache_id, tenant_id, workflow_id, node_id) DO UPDATE SET
                    node_label = EXCLUDED.node_label, output = EXCLUDED.output,
                    content_hash = EXCLUDED.content_hash, version = EXCLUDED.version,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    entry.shared_cache_id,
                    entry.tenant_id,
                    entry.workflow_id,
                    entry.node_id,
                    entry.node_label,
                    _dump(entry.output),
                    entry.content_hash,
                    entry.version,
                    entry.updated_at,
                ),
            )
        return entry

    def list_shared_cache_entries(
        self, shared_cache_id: str, tenant_id: str
    ) -> List[SharedCacheEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM shared_cache_entry WHERE shared_cache_id = %s AND tenant_id = %s
                ORDER BY updated_at DESC
                """,
                (shared_cache_id, tenant_id),
            ).fetchall()
        return [_to_model(SharedCacheEntry, row) for row in rows]

    def create_pending_change(self, change: PendingChange) -> PendingChange:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                INSERT INTO pending_change (
                    id, tenant_id, workflow_id, node_id, change_id, target_level, target_domain,
                    target_path, action, proposed_value, status, data_type, is_scored,
                    evaluation_method, input_field_ids, current_value, provenance,
                    validation_status, validation_errors, validation_warnings, alert_id, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    change.id,
                    change.tenant_id,
                    change.workflow_id,
                    change.node_id,
                    change.change_id,
                    change.target_level,
                    change.target_domain,
                    _dump(change.target_path),
                    change.action,
                    _dump(change.proposed_value),
                    change.status,
                    change.data_type,
                    change.is_scored,
                    change.evaluation_method,
                    _dump(change.input_field_ids),
                    _dump(change.current_value),
                    _dump(change.provenance),
                    change.validation_status,
                    _dump(change.validation_errors),
                    _dump(change.validation_warnings),
                    change.alert_id,
                    change.created_at,
                ),
            )
        return change

    _PENDING_JSON_COLUMNS = {
        "target_path",
        "proposed_value",
        "input_field_ids",
        "current_value",
        "provenance",
        "validation_errors",
        "validation_warnings",
    }

    def update_pending_change(self, change_id: str, **updates: Any) -> Optional[PendingChange]:
        known = {f.name for f in fields(PendingChange)} - {"id"}
        assignments = []
        params: List[Any] = []
        for name, value in updates.items():
            if name not in known:
                raise ValueError(f"unknown pending change column: {name}")
            assignments.append(f"{name} = %s")
            params.append(_dump(value) if name in self._PENDING_JSON_COLUMNS else value)
        if not assignments:
            return None
        params.append(change_id)
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                f"UPDATE pending_change SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        return _to_model(PendingChange, row)

    def list_pending_changes(self, tenant_id: str) -> List[PendingChange]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM pending_change WHERE tenant_id = %s ORDER BY created_at",
                (tenant_id,),
            ).fetchall()
        return [_to_model(PendingChange, row) for row in rows]
