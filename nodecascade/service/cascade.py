"""Cascade controller: runs a tenant's workflows against one submission.

For every relevant workflow the source node is recorded first. Nodes then
run one at a time in logical dependency order; each is either served from
its stored output, skipped (paused, or outside a partial start), or
executed and persisted with compare-and-swap on its version. Node failures
never abort the run: they become marker outputs. After the workflows in
scope finish, sinks are flushed and sibling workflows depending on freshly
executed nodes are cascaded into, at most once per trigger chain.
"""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from nodecascade.config import RunConfig, Settings
from nodecascade.logging import get_logger, log_cascade_trace, sanitize_error_message
from nodecascade.service.alerts import AlertService
from nodecascade.service.change_plan import ChangePlanService
from nodecascade.service.completion import CompletionClient
from nodecascade.service.errors import ConflictError, NotFoundError
from nodecascade.service.evaluator import Evaluator
from nodecascade.service.executors import (
    ExecutionContext,
    NodeResult,
    execute_node,
    has_stop_signal,
    submission_json,
)
from nodecascade.service.fingerprint import content_hash, dependency_hashes, needs_execution
from nodecascade.service.graph import DependencyRef, downstream_closure, topological_order
from nodecascade.service.nodes import STOP_SENTINEL, Node, NodeKind, WorkflowGraph, parse_workflow
from nodecascade.service.sync import SyncBatch, SyncFanout
from nodecascade.service.web_retrieval import FirecrawlClient
from nodecascade.storage.errors import VersionConflict
from nodecascade.storage.models import NodeOutputRecord, Submission, Tenant

SYNC_SOURCE_TYPES = ("abivc_sync", "abi_sync", "api")
ERROR_MARKERS = (
    "[Node error:",
    "[AI Error:",
    "[Error:",
    "[Firecrawl error:",
    "[Unknown integration:",
    "[Agent error:",
    "[Agent not configured:",
)


class NodeStatus(str, Enum):
    PENDING = "pending"
    SKIPPED_PAUSED = "skipped_paused"
    SKIPPED_OUT_OF_SCOPE = "skipped_out_of_scope"
    CACHED = "cached"
    EXECUTING = "executing"
    EXECUTED = "executed"
    FAILED = "failed"


def is_error_marker(output: Any) -> bool:
    return isinstance(output, str) and output.startswith(ERROR_MARKERS)


def is_empty_output(output: Any) -> bool:
    return output is None or output == "" or (isinstance(output, (dict, list)) and not output)


@dataclass
class WorkflowRun:
    workflow_id: str
    workflow_name: str
    status: str = "completed"
    message: Optional[str] = None
    node_status: Dict[str, NodeStatus] = field(default_factory=dict)

    def ids(self, status: NodeStatus) -> List[str]:
        return [node_id for node_id, s in self.node_status.items() if s is status]

    @property
    def produced(self) -> List[str]:
        """Nodes whose stored output was rewritten in this run."""
        if self.status != "completed":
            return []
        return self.ids(NodeStatus.EXECUTED) + self.ids(NodeStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "status": self.status,
            "executed": self.ids(NodeStatus.EXECUTED),
            "cached": self.ids(NodeStatus.CACHED),
            "skipped_paused": self.ids(NodeStatus.SKIPPED_PAUSED),
            "skipped_out_of_scope": self.ids(NodeStatus.SKIPPED_OUT_OF_SCOPE),
            "failed": self.ids(NodeStatus.FAILED),
            "node_status": {node_id: s.value for node_id, s in self.node_status.items()},
        }
        if self.message:
            data["message"] = self.message
        return data


@dataclass
class TriggerState:
    """Mutable bookkeeping for one trigger chain."""

    tenant: Tenant
    submission: Submission
    run_config: RunConfig
    batch: SyncBatch = field(default_factory=SyncBatch)
    runs: List[WorkflowRun] = field(default_factory=list)
    visited: Set[str] = field(default_factory=set)
    degraded: List[Dict[str, Any]] = field(default_factory=list)


def build_summary(
    runs: List[WorkflowRun], records: Iterable[NodeOutputRecord]
) -> Dict[str, Any]:
    summary: Dict[str, Any] = {
        "totalWorkflows": len(runs),
        "executedWorkflows": sum(1 for r in runs if r.status == "completed"),
        "cachedWorkflows": sum(1 for r in runs if r.status == "cached"),
        "skippedWorkflows": sum(1 for r in runs if r.status == "skipped"),
        "totalNodes": 0,
        "executedNodes": 0,
        "cachedNodes": 0,
        "pausedNodes": 0,
        "emptyOutputs": 0,
        "issues": [],
    }
    for run in runs:
        executed = len(run.ids(NodeStatus.EXECUTED)) + len(run.ids(NodeStatus.FAILED))
        cached = len(run.ids(NodeStatus.CACHED))
        paused = len(run.ids(NodeStatus.SKIPPED_PAUSED))
        summary["executedNodes"] += executed
        summary["cachedNodes"] += cached
        summary["pausedNodes"] += paused
        summary["totalNodes"] += executed + cached + paused

    for record in records:
        if not is_empty_output(record.output):
            continue
        summary["emptyOutputs"] += 1
        summary["issues"].append(
            {
                "type": "empty_output",
                "node_id": record.node_id,
                "node_label": record.node_label,
                "workflow_id": record.workflow_id,
                "message": f'Node "{record.node_label or record.node_id}" has empty output',
            }
        )
    for run in runs:
        if run.status == "cached":
            summary["issues"].append(
                {
                    "type": "workflow_cached",
                    "workflow_id": run.workflow_id,
                    "workflow_name": run.workflow_name,
                    "message": f'Workflow "{run.workflow_name}" was cached (data unchanged)',
                }
            )
        if run.message and "no source" in run.message.lower():
            summary["issues"].append(
                {
                    "type": "no_source",
                    "workflow_id": run.workflow_id,
                    "workflow_name": run.workflow_name,
                    "message": f'Workflow "{run.workflow_name}" has no source node',
                }
            )
    return summary


class CascadeService:
    def __init__(
        self,
        store,
        *,
        completion: CompletionClient,
        web: FirecrawlClient,
        evaluator: Evaluator,
        alerts: AlertService,
        change_plans: ChangePlanService,
        sync: SyncFanout,
        cache=None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.completion = completion
        self.web = web
        self.evaluator = evaluator
        self.alerts = alerts
        self.change_plans = change_plans
        self.sync = sync
        self.cache = cache
        self.settings = settings
        self.logger = get_logger(__name__)
        self._local_reports: Dict[str, Dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # submissions and workflow selection
    # ------------------------------------------------------------------

    def find_latest_data_submission(self, tenant_id: str) -> Optional[Submission]:
        """Newest submission that carries real tenant data."""

        def _raw(s: Submission) -> Dict[str, Any]:
            return s.raw_data if isinstance(s.raw_data, dict) else {}

        with_intake = [
            s for s in self.store.list_submissions(tenant_id, limit=50) if _raw(s).get("intake_fields")
        ]
        if with_intake:
            return with_intake[0]
        for submission in self.store.list_submissions(
            tenant_id, source_types=SYNC_SOURCE_TYPES, limit=10
        ):
            raw = _raw(submission)
            if raw and not raw.get("_trigger") and len(raw) > 1:
                return submission
        for submission in self.store.list_submissions(tenant_id, limit=50):
            raw = _raw(submission)
            if raw and not raw.get("_trigger") and (raw.get("intake_fields") or len(raw) > 2):
                return submission
        return None

    def _load_submission(self, tenant_id: str, submission_id: str) -> Submission:
        submission = self.store.get_submission(submission_id, tenant_id=tenant_id)
        if not submission:
            raise NotFoundError("Submission not found", detail={"submission_id": submission_id})
        submission = copy.deepcopy(submission)
        if submission.is_trigger_only:
            real = self.find_latest_data_submission(tenant_id)
            if real is not None:
                self.logger.info(
                    "cascade_submission_rehydrated",
                    submission_id=submission_id,
                    source_submission_id=real.id,
                )
                submission.raw_data = copy.deepcopy(real.raw_data)
            else:
                self.logger.warning("cascade_no_data_submission", tenant_id=tenant_id)
        return submission

    def _is_relevant(self, graph: WorkflowGraph, submission: Submission) -> bool:
        source = graph.source_node
        if source is None or not graph.is_company_relevant:
            return False
        metadata = submission.metadata or {}
        if metadata.get("synced_from") == "abivc" and source.config.integration_id == "abivc":
            wanted = metadata.get("ingest_point") or "initial_submission"
            have = source.config.ingest_point_id or "initial_submission"
            if wanted != have:
                self.logger.info(
                    "cascade_ingest_point_mismatch", workflow_id=graph.id, workflow=have, submission=wanted
                )
                return False
        return True

    def _has_empty_nodes(self, tenant_id: str, workflow_id: str) -> bool:
        records = self.store.list_node_outputs(tenant_id, workflow_id)
        return not records or any(not r.last_executed_at or not r.output for r in records)

    def _select_workflows(
        self,
        submission: Submission,
        workflow_id: Optional[str],
        empty_only: bool,
    ) -> List[WorkflowGraph]:
        if workflow_id:
            record = self.store.get_workflow(workflow_id)
            records = [record] if record else []
        else:
            records = self.store.list_workflows()
        graphs = [parse_workflow(record) for record in records]
        relevant = [g for g in graphs if self._is_relevant(g, submission)]
        if empty_only:
            relevant = [g for g in relevant if self._has_empty_nodes(submission.tenant_id, g.id)]
        self.logger.info(
            "cascade_workflows_selected",
            fetched=len(graphs),
            relevant=len(relevant),
            empty_only=empty_only,
        )
        return relevant

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def _hash_lookup(self, tenant_id: str, graph: WorkflowGraph):
        def _hash_of(ref: DependencyRef) -> Optional[str]:
            record = self.store.get_node_output(tenant_id, ref.workflow_id or graph.id, ref.node_id)
            return record.content_hash if record else None

        return _hash_of

    def _write_output(self, record: NodeOutputRecord, retries: int) -> NodeOutputRecord:
        """Compare-and-swap write, re-reading the stored version on conflict."""
        for attempt in range(retries + 1):
            current = self.store.get_node_output(*record.key)
            expected = current.version if current else 0
            try:
                return self.store.write_node_output(record, expected_version=expected)
            except VersionConflict as exc:
                self.logger.warning(
                    "node_output_version_conflict",
                    node_id=record.node_id,
                    workflow_id=record.workflow_id,
                    attempt=attempt + 1,
                    expected=exc.expected_version,
                    actual=exc.actual_version,
                )
        raise ConflictError(
            "node output kept changing during write",
            detail={"workflow_id": record.workflow_id, "node_id": record.node_id},
        )

    # ------------------------------------------------------------------
    # single workflow
    # ------------------------------------------------------------------

    def _record_source(
        self, state: TriggerState, graph: WorkflowGraph, source: Node
    ) -> Tuple[str, Optional[str]]:
        """Store the submission as the source output; returns it with the prior hash."""
        incoming = submission_json(state.submission)
        incoming_hash = content_hash(incoming)
        tenant_id = state.tenant.id
        existing = self.store.get_node_output(tenant_id, graph.id, source.id)
        previous = existing.content_hash if existing else None
        self._write_output(
            NodeOutputRecord(
                tenant_id=tenant_id,
                workflow_id=graph.id,
                node_id=source.id,
                output=copy.deepcopy(state.submission.raw_data),
                content_hash=incoming_hash,
                node_type=source.type_tag,
                node_label=source.label,
                last_executed_at=datetime.utcnow(),
            ),
            state.run_config.cas_retries,
        )
        return incoming, previous

    async def _run_workflow(
        self,
        state: TriggerState,
        graph: WorkflowGraph,
        *,
        force: bool = False,
        start_from_node_id: Optional[str] = None,
        short_circuit: bool = True,
    ) -> WorkflowRun:
        run = WorkflowRun(workflow_id=graph.id, workflow_name=graph.name)
        source = graph.source_node
        if source is None:
            run.status = "skipped"
            run.message = "No source node"
            return run

        tenant_id = state.tenant.id
        incoming, previous = self._record_source(state, graph, source)
        results: Dict[str, Any] = {source.id: incoming}
        run.node_status[source.id] = NodeStatus.EXECUTED

        if short_circuit and not force and previous and previous == content_hash(incoming):
            run.status = "cached"
            run.message = "Data unchanged - no cascade needed"
            run.node_status = {node.id: NodeStatus.CACHED for node in graph.nodes}
            self.logger.info("cascade_workflow_cached", workflow_id=graph.id)
            return run

        order = topological_order(graph)
        in_scope = (
            downstream_closure(graph, [start_from_node_id]) if start_from_node_id else set(order)
        )
        paused = downstream_closure(graph, [n.id for n in graph.nodes if n.config.paused])
        if paused:
            self.logger.info("cascade_paused_nodes", workflow_id=graph.id, blocked=len(paused))

        ctx = ExecutionContext(
            store=self.store,
            tenant=state.tenant,
            graph=graph,
            submission=state.submission,
            run_config=state.run_config,
            results=results,
            completion=self.completion,
            web=self.web,
            evaluator=self.evaluator,
            alerts=self.alerts,
            change_plans=self.change_plans,
        )
        hash_of = self._hash_lookup(tenant_id, graph)

        for node_id in order:
            if node_id == source.id:
                continue
            node = graph.get(node_id)
            if node is None:
                continue
            run.node_status[node_id] = NodeStatus.PENDING
            stored = self.store.get_node_output(tenant_id, graph.id, node_id)

            if node_id not in in_scope:
                if stored and stored.output:
                    results[node_id] = stored.output
                run.node_status[node_id] = NodeStatus.SKIPPED_OUT_OF_SCOPE
                continue
            if node_id in paused:
                run.node_status[node_id] = NodeStatus.SKIPPED_PAUSED
                continue
            if not needs_execution(node, graph, stored, hash_of, force=force):
                results[node_id] = stored.output if stored and stored.output is not None else ""
                run.node_status[node_id] = NodeStatus.CACHED
                continue

            run.node_status[node_id] = NodeStatus.EXECUTING
            stop = node.kind is NodeKind.PROMPT and has_stop_signal(ctx, node)
            if stop:
                self.logger.info("cascade_stop_propagated", workflow_id=graph.id, node_id=node_id)
                result = NodeResult(STOP_SENTINEL)
            else:
                result = await self._execute(ctx, node)

            results[node_id] = result.output
            written = self._persist(state, graph, node, result)
            failed = is_error_marker(result.output)
            run.node_status[node_id] = NodeStatus.FAILED if failed else NodeStatus.EXECUTED
            if failed:
                state.degraded.append(
                    {
                        "workflow_id": graph.id,
                        "node_id": node_id,
                        "node_label": node.label,
                        "output": result.output,
                    }
                )
            if not stop:
                state.batch.collect(
                    graph, node, result.output, version=written.version, updated_at=written.updated_at
                )
                self.sync.write_shared_caches(
                    tenant_id,
                    graph,
                    node,
                    result.output,
                    content_hash=written.content_hash or "",
                    version=written.version,
                )

        log_cascade_trace(
            graph.id, {node_id: s.value for node_id, s in run.node_status.items()}, self.logger
        )
        return run

    async def _execute(self, ctx: ExecutionContext, node: Node) -> NodeResult:
        started = time.monotonic()
        try:
            result = await execute_node(ctx, node)
        except Exception as exc:
            self.logger.error(
                "node_execution_failed",
                workflow_id=ctx.graph.id,
                node_id=node.id,
                node_type=node.type_tag,
                error=str(exc),
            )
            return NodeResult(f"[Node error: {sanitize_error_message(str(exc))}]")
        self.logger.info(
            "node_executed",
            workflow_id=ctx.graph.id,
            node_id=node.id,
            node_type=node.type_tag,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return result

    def _persist(
        self, state: TriggerState, graph: WorkflowGraph, node: Node, result: NodeResult
    ) -> NodeOutputRecord:
        tenant_id = state.tenant.id
        record = NodeOutputRecord(
            tenant_id=tenant_id,
            workflow_id=graph.id,
            node_id=node.id,
            output=result.output,
            content_hash=content_hash(result.output),
            dependency_hashes=dependency_hashes(node, graph, self._hash_lookup(tenant_id, graph)),
            node_type=node.type_tag,
            node_label=node.label,
            last_executed_at=datetime.utcnow(),
        )
        if result.evaluation is not None and node.kind is NodeKind.PROMPT:
            self.evaluator.record(
                record,
                result.evaluation,
                run_config=state.run_config,
                tenant_name=state.tenant.name,
                node_label=node.label,
            )
        return self._write_output(record, state.run_config.cas_retries)

    # ------------------------------------------------------------------
    # cross-workflow cascade
    # ------------------------------------------------------------------

    @staticmethod
    def _depends_on(graph: WorkflowGraph, produced: Set[Tuple[str, str]]) -> bool:
        return any(
            part.workflow_id and (part.workflow_id, part.value) in produced
            for node in graph.nodes
            for part in node.dependency_parts
        )

    async def _cascade_dependents(self, state: TriggerState, frontier: Set[Tuple[str, str]]) -> None:
        while frontier:
            candidates = [
                graph
                for graph in (parse_workflow(r) for r in self.store.list_workflows())
                if graph.id not in state.visited
                and graph.is_company_relevant
                and graph.source_node is not None
                and self._depends_on(graph, frontier)
            ]
            next_frontier: Set[Tuple[str, str]] = set()
            for graph in candidates:
                state.visited.add(graph.id)
                self.logger.info("cascade_cross_workflow", workflow_id=graph.id, workflow=graph.name)
                try:
                    run = await self._run_workflow(state, graph, short_circuit=False)
                except Exception as exc:
                    self.logger.error(
                        "cascade_cross_workflow_failed", workflow_id=graph.id, error=str(exc)
                    )
                    continue
                state.runs.append(run)
                next_frontier.update((graph.id, node_id) for node_id in run.produced)
            frontier = next_frontier

    # ------------------------------------------------------------------
    # entrypoints
    # ------------------------------------------------------------------

    async def run_submission(
        self,
        tenant_id: str,
        submission_id: str,
        *,
        workflow_id: Optional[str] = None,
        empty_only: bool = False,
        force: bool = False,
        start_from_node_id: Optional[str] = None,
        run_config: Optional[RunConfig] = None,
    ) -> Dict[str, Any]:
        started = time.monotonic()
        submission = self._load_submission(tenant_id, submission_id)
        tenant = self.store.get_tenant(tenant_id) or Tenant(id=tenant_id, name="Unknown Company")
        run_config = run_config or RunConfig.load(self.store, self.settings)
        self.store.update_submission_status(submission_id, "processing")
        await self._persist_run_state(tenant_id, submission_id, {"status": "processing"})

        try:
            graphs = self._select_workflows(submission, workflow_id, empty_only)
            if not graphs:
                self.store.update_submission_status(
                    submission_id, "completed", processed_at=datetime.utcnow()
                )
                await self._persist_run_state(tenant_id, submission_id, {"status": "completed"})
                return {
                    "success": True,
                    "submission_id": submission_id,
                    "tenant_id": tenant_id,
                    "message": "No workflows with empty nodes found"
                    if empty_only
                    else "No workflows with company_ingest nodes found",
                    "workflows_processed": 0,
                }

            state = TriggerState(tenant=tenant, submission=submission, run_config=run_config)
            for graph in graphs:
                state.visited.add(graph.id)
                state.runs.append(
                    await self._run_workflow(
                        state, graph, force=force, start_from_node_id=start_from_node_id
                    )
                )

            if not workflow_id:
                frontier = {(run.workflow_id, node_id) for run in state.runs for node_id in run.produced}
                await self._cascade_dependents(state, frontier)

            self.store.update_submission_status(
                submission_id, "completed", processed_at=datetime.utcnow()
            )
            counts = await self.sync.flush(state.batch, tenant_id)
        except Exception as exc:
            self.logger.error("cascade_failed", tenant_id=tenant_id, submission_id=submission_id, error=str(exc))
            self.store.update_submission_status(submission_id, "failed")
            await self._persist_run_state(tenant_id, submission_id, {"status": "failed", "error": str(exc)})
            raise

        run_ids = [run.workflow_id for run in state.runs]
        run_id_set = set(run_ids)
        records = [r for r in self.store.list_node_outputs(tenant_id) if r.workflow_id in run_id_set]
        summary = build_summary(state.runs, records)
        if summary["totalWorkflows"] > 0:
            self.alerts.execution_summary(
                tenant_id=tenant_id,
                tenant_name=tenant.name,
                workflow_ids=run_ids,
                summary=summary,
            )

        report: Dict[str, Any] = {
            "success": True,
            "submission_id": submission_id,
            "tenant_id": tenant_id,
            "workflows_processed": len(state.runs),
            "execution_time_ms": int((time.monotonic() - started) * 1000),
            "workflows": [run.to_dict() for run in state.runs],
            **counts,
            "degraded_nodes": state.degraded,
            "execution_summary": summary,
        }
        self.logger.info(
            "cascade_completed",
            tenant_id=tenant_id,
            submission_id=submission_id,
            workflows=len(state.runs),
            degraded=len(state.degraded),
            execution_time_ms=report["execution_time_ms"],
        )
        await self._store_report(tenant_id, report)
        await self._persist_run_state(tenant_id, submission_id, {"status": "completed"})
        return report

    async def run_all_tenants(self, *, empty_only: bool = False) -> Dict[str, Any]:
        """Process every active tenant one at a time with a bulk trigger submission."""
        run_config = RunConfig.load(self.store, self.settings)
        results: List[Dict[str, Any]] = []
        total = 0
        for tenant in self.store.list_tenants(status="active"):
            entry: Dict[str, Any] = {"tenant_id": tenant.id, "tenant_name": tenant.name}
            if self.find_latest_data_submission(tenant.id) is None:
                self.logger.info("bulk_tenant_skipped", tenant_id=tenant.id)
                results.append({**entry, "status": "skipped", "reason": "no_data_submission"})
                continue
            try:
                submission = self.store.create_submission(
                    Submission.new(
                        tenant.id,
                        {
                            "_trigger": "bulk_run",
                            "timestamp": datetime.utcnow().isoformat(),
                            "empty_only": empty_only,
                        },
                        source_type="manual",
                    )
                )
                report = await self.run_submission(
                    tenant.id, submission.id, empty_only=empty_only, run_config=run_config
                )
            except Exception as exc:
                self.logger.error("bulk_tenant_failed", tenant_id=tenant.id, error=str(exc))
                results.append({**entry, "status": "error", "error": str(exc)})
                continue
            total += report["workflows_processed"]
            results.append(
                {**entry, "status": "completed", "workflows_processed": report["workflows_processed"]}
            )
        return {
            "success": True,
            "all_tenants": True,
            "tenants_processed": len(results),
            "total_workflows_processed": total,
            "results": results,
        }

    # ------------------------------------------------------------------
    # report cache
    # ------------------------------------------------------------------

    def _report_ttl(self) -> int:
        return self.settings.run_report_ttl_seconds if self.settings else 86400

    async def _store_report(self, tenant_id: str, report: Dict[str, Any]) -> None:
        if self.cache is None:
            self._local_reports[tenant_id] = report
            return
        try:
            await self.cache.set_run_report(tenant_id, report, ttl_seconds=self._report_ttl())
        except Exception as exc:
            self.logger.warning("run_report_cache_failed", tenant_id=tenant_id, error=str(exc))
            self._local_reports[tenant_id] = report

    async def latest_report(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        if self.cache is not None:
            try:
                cached = await self.cache.get_run_report(tenant_id)
            except Exception as exc:
                self.logger.warning("run_report_cache_read_failed", tenant_id=tenant_id, error=str(exc))
            else:
                if cached is not None:
                    return cached
        return self._local_reports.get(tenant_id)

    async def _persist_run_state(self, tenant_id: str, submission_id: str, state: dict) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set_run_state(
                tenant_id,
                submission_id,
                {**state, "updated_at": datetime.utcnow().isoformat()},
            )
        except Exception as exc:
            self.logger.warning("run_state_cache_failed", submission_id=submission_id, error=str(exc))
