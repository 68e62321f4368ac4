from __future__ import annotations

import copy
import json
import threading
import uuid
from dataclasses import asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

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

# table name -> (model, attribute names forming the key)
_TABLES: Dict[str, Tuple[type, Tuple[str, ...]]] = {
    "tenants": (Tenant, ("id",)),
    "workflows": (WorkflowRecord, ("id",)),
    "submissions": (Submission, ("id",)),
    "node_outputs": (NodeOutputRecord, ("tenant_id", "workflow_id", "node_id")),
    "alerts": (Alert, ("alert_type", "dedup_key")),
    "system_prompts": (SystemPrompt, ("id",)),
    "frameworks": (Framework, ("id",)),
    "datasets": (Dataset, ("id",)),
    "domain_definitions": (DomainDefinition, ("domain",)),
    "field_definitions": (FieldDefinition, ("domain", "field_key")),
    "context_fact_definitions": (ContextFactDefinition, ("fact_key",)),
    "master_data": (MasterDataValue, ("tenant_id", "domain", "field_key")),
    "context_facts": (ContextFact, ("tenant_id", "fact_key")),
    "shared_cache": (
        SharedCacheEntry,
        ("shared_cache_id", "tenant_id", "workflow_id", "node_id"),
    ),
    "pending_changes": (PendingChange, ("id",)),
}

_LOGS: Dict[str, type] = {
    "evaluations": EvaluationRecord,
    "usage": UsageRecord,
    "master_data_history": MasterDataValue,
}


def _row_key(obj: Any, key_fields: Tuple[str, ...]) -> Tuple[Any, ...]:
    return tuple(getattr(obj, name) for name in key_fields)


class MemoryStore:
    """In-process store with a JSON snapshot on the shared filesystem.

    Used for tests and single-node development. All reads and writes hold
    one re-entrant lock, so a compare-and-swap on a node output is atomic
    with respect to other threads in the process.
    """

    def __init__(self, fs_root: str = "/tmp/nodecascade", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.persist = persist
        self._data_lock = threading.RLock()
        self.tables: Dict[str, Dict[Tuple[Any, ...], Any]] = {
            name: {} for name in _TABLES
        }
        self.logs: Dict[str, List[Any]] = {name: [] for name in _LOGS}
        self.app_settings: Dict[str, Any] = {}
        self.pricing_overrides: Dict[str, Dict[str, Any]] = {}
        if self.persist:
            self._load_state()

    # ------------------------------------------------------------------
    # snapshot persistence
    # ------------------------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "cascade_store.json"

    @staticmethod
    def _encode(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, dict):
            return {k: MemoryStore._encode(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [MemoryStore._encode(v) for v in value]
        return value

    @staticmethod
    def _decode(model: type, row: Dict[str, Any]) -> Any:
        values = dict(row)
        for f in fields(model):
            raw = values.get(f.name)
            if isinstance(raw, str) and "datetime" in str(f.type):
                values[f.name] = datetime.fromisoformat(raw)
        known = {f.name for f in fields(model)}
        return model(**{k: v for k, v in values.items() if k in known})

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "tables": {
                name: [self._encode(asdict(obj)) for obj in rows.values()]
                for name, rows in self.tables.items()
            },
            "logs": {
                name: [self._encode(asdict(obj)) for obj in rows]
                for name, rows in self.logs.items()
            },
            "app_settings": self.app_settings,
            "pricing_overrides": list(self.pricing_overrides.values()),
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2, default=str))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for name, rows in data.get("tables", {}).items():
            if name not in _TABLES:
                continue
            model, key_fields = _TABLES[name]
            decoded = [self._decode(model, row) for row in rows]
            self.tables[name] = {_row_key(obj, key_fields): obj for obj in decoded}
        for name, rows in data.get("logs", {}).items():
            if name in _LOGS:
                self.logs[name] = [self._decode(_LOGS[name], row) for row in rows]
        self.app_settings = data.get("app_settings", {}) or {}
        self.pricing_overrides = {
            row["model_id"]: row for row in data.get("pricing_overrides", [])
        }
        self.logger.info(
            "memory_store_loaded",
            path=str(path),
            node_outputs=len(self.tables["node_outputs"]),
        )
        return True

    def _put(self, table: str, obj: Any) -> Any:
        _, key_fields = _TABLES[table]
        with self._data_lock:
            self.tables[table][_row_key(obj, key_fields)] = obj
            self._persist_state()
        return obj

    def _get(self, table: str, *key: Any) -> Any:
        with self._data_lock:
            found = self.tables[table].get(tuple(key))
            return copy.deepcopy(found) if found is not None else None

    def _all(self, table: str) -> List[Any]:
        with self._data_lock:
            return [copy.deepcopy(obj) for obj in self.tables[table].values()]

    # ------------------------------------------------------------------
    # tenants & workflows
    # ------------------------------------------------------------------

    def upsert_tenant(self, tenant: Tenant) -> Tenant:
        return self._put("tenants", tenant)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        return self._get("tenants", tenant_id)

    def list_tenants(self, status: Optional[str] = None) -> List[Tenant]:
        tenants = self._all("tenants")
        if status:
            tenants = [t for t in tenants if t.status == status]
        return sorted(tenants, key=lambda t: t.created_at)

    def save_workflow(self, workflow: WorkflowRecord) -> WorkflowRecord:
        workflow.updated_at = datetime.utcnow()
        return self._put("workflows", workflow)

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowRecord]:
        return self._get("workflows", workflow_id)

    def list_workflows(self) -> List[WorkflowRecord]:
        return sorted(self._all("workflows"), key=lambda w: w.created_at)

    # ------------------------------------------------------------------
    # submissions
    # ------------------------------------------------------------------

    def create_submission(self, submission: Submission) -> Submission:
        with self._data_lock:
            if (submission.id,) in self.tables["submissions"]:
                raise ConstraintViolation(
                    "submission already exists", {"submission_id": submission.id}
                )
            return self._put("submissions", submission)

    def get_submission(
        self, submission_id: str, tenant_id: Optional[str] = None
    ) -> Optional[Submission]:
        submission = self._get("submissions", submission_id)
        if submission and tenant_id and submission.tenant_id != tenant_id:
            return None
        return submission

    def update_submission_status(
        self, submission_id: str, status: str, *, processed_at: Optional[datetime] = None
    ) -> None:
        with self._data_lock:
            submission = self.tables["submissions"].get((submission_id,))
            if not submission:
                return
            submission.status = status
            if processed_at:
                submission.processed_at = processed_at
            self._persist_state()

    def list_submissions(
        self,
        tenant_id: str,
        *,
        source_types: Optional[Iterable[str]] = None,
        limit: int = 50,
    ) -> List[Submission]:
        allowed = set(source_types) if source_types else None
        rows = [
            s
            for s in self._all("submissions")
            if s.tenant_id == tenant_id and (allowed is None or s.source_type in allowed)
        ]
        rows.sort(key=lambda s: s.submitted_at, reverse=True)
        return rows[:limit]

    # ------------------------------------------------------------------
    # node outputs
    # ------------------------------------------------------------------

    def get_node_output(
        self, tenant_id: str, workflow_id: str, node_id: str
    ) -> Optional[NodeOutputRecord]:
        return self._get("node_outputs", tenant_id, workflow_id, node_id)

    def list_node_outputs(
        self, tenant_id: str, workflow_id: Optional[str] = None
    ) -> List[NodeOutputRecord]:
        return [
            r
            for r in self._all("node_outputs")
            if r.tenant_id == tenant_id and (workflow_id is None or r.workflow_id == workflow_id)
        ]

    def write_node_output(
        self, record: NodeOutputRecord, *, expected_version: int
    ) -> NodeOutputRecord:
        """Replace the record only if the stored version equals ``expected_version``.

        A missing record counts as version 0. The written record carries
        ``expected_version + 1``.
        """
        with self._data_lock:
            current = self.tables["node_outputs"].get(record.key)
            actual = current.version if current else 0
            if actual != expected_version:
                raise VersionConflict(
                    "node output version changed",
                    expected_version=expected_version,
                    actual_version=actual,
                    detail={"node_id": record.node_id, "workflow_id": record.workflow_id},
                )
            stored = copy.deepcopy(record)
            stored.version = expected_version + 1
            stored.updated_at = datetime.utcnow()
            if current:
                stored.created_at = current.created_at
            self.tables["node_outputs"][record.key] = stored
            self._persist_state()
            return copy.deepcopy(stored)

    def reset_node_outputs(self, tenant_id: str, workflow_id: Optional[str] = None) -> int:
        with self._data_lock:
            doomed = [
                key
                for key, r in self.tables["node_outputs"].items()
                if r.tenant_id == tenant_id and (workflow_id is None or r.workflow_id == workflow_id)
            ]
            for key in doomed:
                del self.tables["node_outputs"][key]
            self._persist_state()
        self.logger.info(
            "node_outputs_reset", tenant_id=tenant_id, workflow_id=workflow_id, removed=len(doomed)
        )
        return len(doomed)

    # ------------------------------------------------------------------
    # evaluations, usage, alerts
    # ------------------------------------------------------------------

    def append_evaluation(self, record: EvaluationRecord, *, retain: int) -> None:
        with self._data_lock:
            history = self.logs["evaluations"]
            history.append(copy.deepcopy(record))
            same_node = [
                r
                for r in history
                if (r.tenant_id, r.workflow_id, r.node_id)
                == (record.tenant_id, record.workflow_id, record.node_id)
            ]
            if len(same_node) > retain:
                same_node.sort(key=lambda r: r.evaluated_at)
                drop = {id(r) for r in same_node[: len(same_node) - retain]}
                self.logs["evaluations"] = [r for r in history if id(r) not in drop]
            self._persist_state()

    def list_evaluations(
        self,
        tenant_id: str,
        node_id: str,
        *,
        workflow_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[EvaluationRecord]:
        with self._data_lock:
            rows = [
                copy.deepcopy(r)
                for r in self.logs["evaluations"]
                if r.tenant_id == tenant_id
                and r.node_id == node_id
                and (workflow_id is None or r.workflow_id == workflow_id)
            ]
        rows.sort(key=lambda r: r.evaluated_at, reverse=True)
        return rows[:limit] if limit else rows

    def record_usage(self, record: UsageRecord) -> None:
        with self._data_lock:
            self.logs["usage"].append(copy.deepcopy(record))
            self._persist_state()

    def list_usage(self, tenant_id: Optional[str] = None) -> List[UsageRecord]:
        with self._data_lock:
            return [
                copy.deepcopy(r)
                for r in self.logs["usage"]
                if tenant_id is None or r.tenant_id == tenant_id
            ]

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
        with self._data_lock:
            existing = self.tables["alerts"].get((alert_type, dedup_key))
            if existing:
                existing.occurrence_count += 1
                existing.last_seen_at = now
                existing.severity = severity
                existing.title = title
                existing.description = description
                existing.context = context or {}
                existing.status = "open"
                alert = existing
            else:
                alert = Alert(
                    id=str(uuid.uuid4()),
                    alert_type=alert_type,
                    dedup_key=dedup_key,
                    severity=severity,
                    title=title,
                    description=description,
                    tenant_id=tenant_id,
                    context=context or {},
                    first_seen_at=now,
                    last_seen_at=now,
                )
                self.tables["alerts"][(alert_type, dedup_key)] = alert
            self._persist_state()
            return copy.deepcopy(alert)

    def list_alerts(self, alert_type: Optional[str] = None) -> List[Alert]:
        alerts = [
            a for a in self._all("alerts") if alert_type is None or a.alert_type == alert_type
        ]
        return sorted(alerts, key=lambda a: a.last_seen_at, reverse=True)

    # ------------------------------------------------------------------
    # settings & reference data
    # ------------------------------------------------------------------

    def get_app_settings(self) -> Dict[str, Any]:
        with self._data_lock:
            return copy.deepcopy(self.app_settings)

    def set_app_settings(self, settings: Dict[str, Any]) -> None:
        with self._data_lock:
            self.app_settings = copy.deepcopy(settings)
            self._persist_state()

    def list_pricing_overrides(self) -> List[Dict[str, Any]]:
        with self._data_lock:
            return [dict(row) for row in self.pricing_overrides.values()]

    def set_pricing_override(
        self,
        model_id: str,
        input_cost_per_million: Optional[float] = None,
        output_cost_per_million: Optional[float] = None,
    ) -> None:
        with self._data_lock:
            self.pricing_overrides[model_id] = {
                "model_id": model_id,
                "input_cost_per_million": input_cost_per_million,
                "output_cost_per_million": output_cost_per_million,
            }
            self._persist_state()

    def upsert_system_prompt(self, prompt: SystemPrompt) -> SystemPrompt:
        return self._put("system_prompts", prompt)

    def get_system_prompt(self, prompt_id: str) -> Optional[SystemPrompt]:
        return self._get("system_prompts", prompt_id)

    def list_system_prompts(self, names: Optional[Iterable[str]] = None) -> List[SystemPrompt]:
        wanted = set(names) if names else None
        return [p for p in self._all("system_prompts") if wanted is None or p.name in wanted]

    def upsert_framework(self, framework: Framework) -> Framework:
        return self._put("frameworks", framework)

    def get_framework(self, framework_id: str) -> Optional[Framework]:
        return self._get("frameworks", framework_id)

    def upsert_dataset(self, dataset: Dataset) -> Dataset:
        return self._put("datasets", dataset)

    def get_dataset(self, dataset_id: str) -> Optional[Dataset]:
        return self._get("datasets", dataset_id)

    # ------------------------------------------------------------------
    # shared schema
    # ------------------------------------------------------------------

    def upsert_domain_definition(self, domain: DomainDefinition) -> DomainDefinition:
        return self._put("domain_definitions", domain)

    def list_domain_definitions(self) -> List[DomainDefinition]:
        return sorted(self._all("domain_definitions"), key=lambda d: d.sort_order)

    def upsert_field_definition(self, definition: FieldDefinition) -> FieldDefinition:
        with self._data_lock:
            existing = self.tables["field_definitions"].get(
                (definition.domain, definition.field_key)
            )
            if existing:
                definition.id = existing.id
            return self._put("field_definitions", definition)

    def list_field_definitions(self) -> List[FieldDefinition]:
        return sorted(
            self._all("field_definitions"),
            key=lambda f: (f.domain, f.level, f.sort_order),
        )

    def upsert_context_fact_definition(
        self, definition: ContextFactDefinition
    ) -> ContextFactDefinition:
        return self._put("context_fact_definitions", definition)

    def list_context_fact_definitions(self) -> List[ContextFactDefinition]:
        return sorted(self._all("context_fact_definitions"), key=lambda c: c.sort_order)

    def get_master_data(
        self, tenant_id: str, domain: str, field_key: str
    ) -> Optional[MasterDataValue]:
        return self._get("master_data", tenant_id, domain, field_key)

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
        with self._data_lock:
            key = (tenant_id, domain, field_key)
            existing = self.tables["master_data"].get(key)
            if existing:
                self.logs["master_data_history"].append(copy.deepcopy(existing))
            row = MasterDataValue(
                tenant_id=tenant_id,
                domain=domain,
                field_key=field_key,
                field_value=copy.deepcopy(value),
                field_type=field_type,
                source_type=source_type,
                source_reference=source_reference or {},
                version=(existing.version + 1) if existing else 1,
            )
            self.tables["master_data"][key] = row
            self._persist_state()
            return copy.deepcopy(row), existing is None

    def list_master_data(self, tenant_id: str) -> List[MasterDataValue]:
        return [m for m in self._all("master_data") if m.tenant_id == tenant_id]

    def list_master_data_history(
        self, tenant_id: str, domain: str, field_key: str
    ) -> List[MasterDataValue]:
        with self._data_lock:
            return [
                copy.deepcopy(m)
                for m in self.logs["master_data_history"]
                if (m.tenant_id, m.domain, m.field_key) == (tenant_id, domain, field_key)
            ]

    def upsert_context_fact(self, fact: ContextFact) -> ContextFact:
        fact.updated_at = datetime.utcnow()
        return self._put("context_facts", fact)

    def get_context_fact(self, tenant_id: str, fact_key: str) -> Optional[ContextFact]:
        return self._get("context_facts", tenant_id, fact_key)

    def upsert_shared_cache_entry(self, entry: SharedCacheEntry) -> SharedCacheEntry:
        entry.updated_at = datetime.utcnow()
        return self._put("shared_cache", entry)

    def list_shared_cache_entries(
        self, shared_cache_id: str, tenant_id: str
    ) -> List[SharedCacheEntry]:
        rows = [
            e
            for e in self._all("shared_cache")
            if e.shared_cache_id == shared_cache_id and e.tenant_id == tenant_id
        ]
        return sorted(rows, key=lambda e: e.updated_at, reverse=True)

    def create_pending_change(self, change: PendingChange) -> PendingChange:
        return self._put("pending_changes", change)

    def update_pending_change(self, change_id: str, **updates: Any) -> Optional[PendingChange]:
        with self._data_lock:
            change = self.tables["pending_changes"].get((change_id,))
            if not change:
                return None
            for name, value in updates.items():
                setattr(change, name, value)
            self._persist_state()
            return copy.deepcopy(change)

    def list_pending_changes(self, tenant_id: str) -> List[PendingChange]:
        rows = [c for c in self._all("pending_changes") if c.tenant_id == tenant_id]
        return sorted(rows, key=lambda c: c.created_at)
