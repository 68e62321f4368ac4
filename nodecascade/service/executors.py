"""Per-kind node executors.

Every executable ``NodeKind`` has exactly one coroutine registered here.
Executors read resolved dependency outputs from the run's in-memory results
(falling back to the store for cross-workflow references) and return a
``NodeResult``. Recoverable failures become bracketed marker strings; any
other exception is left for the cascade controller to contain.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from nodecascade.config import RunConfig
from nodecascade.logging import get_logger
from nodecascade.service.alerts import AlertService
from nodecascade.service.change_plan import (
    ApplyOptions,
    ChangePlanParseError,
    ChangePlanService,
    parse_change_plan,
    plan_shape_errors,
)
from nodecascade.service.completion import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    CompletionClient,
    map_model_name,
)
from nodecascade.service.errors import (
    MissingCredentialsError,
    ModelUnavailableError,
    ProviderError,
    WebRetrievalError,
)
from nodecascade.service.evaluator import EvaluationResult, Evaluator
from nodecascade.service.graph import all_dependencies
from nodecascade.service.nodes import (
    EXECUTABLE_KINDS,
    STOP_INSTRUCTION,
    STOP_SENTINEL,
    AgentConfig,
    DatasetConfig,
    FrameworkConfig,
    Node,
    NodeKind,
    PromptConfig,
    PromptFragmentConfig,
    VariableConfig,
    WebIntegrationConfig,
    WorkflowGraph,
)
from nodecascade.service.text_utils import (
    MISSING,
    get_value_by_path,
    snake_key,
    strip_code_fences,
    to_text,
)
from nodecascade.service.web_retrieval import PAGE_SEPARATOR, FirecrawlClient
from nodecascade.storage.models import Submission, Tenant, UsageRecord

logger = get_logger(__name__)

LEVELS = ("L1C", "L2", "L3", "L4")


@dataclass
class NodeResult:
    output: Any
    evaluation: Optional[EvaluationResult] = None


@dataclass
class ExecutionContext:
    """Everything an executor may touch during one workflow run."""

    store: Any
    tenant: Tenant
    graph: WorkflowGraph
    submission: Submission
    run_config: RunConfig
    results: Dict[str, Any]
    completion: CompletionClient
    web: FirecrawlClient
    evaluator: Evaluator
    alerts: AlertService
    change_plans: ChangePlanService

    def dependency_output(self, node_id: str, workflow_id: Optional[str] = None) -> Any:
        """Current output of a dependency, or ``MISSING``."""
        if workflow_id and workflow_id != self.graph.id:
            record = self.store.get_node_output(self.tenant.id, workflow_id, node_id)
            return record.output if record else MISSING
        return self.results.get(node_id, MISSING)

    def stored_output(self, node_id: str) -> Any:
        if node_id in self.results:
            return self.results[node_id]
        record = self.store.get_node_output(self.tenant.id, self.graph.id, node_id)
        return record.output if record else MISSING


def submission_json(submission: Submission) -> str:
    return json.dumps(submission.raw_data, ensure_ascii=False, separators=(",", ":"))


def has_stop_signal(ctx: ExecutionContext, node: Node) -> bool:
    """True when any dependency output carries the stop sentinel."""
    for ref in all_dependencies(node):
        if ref.workflow_id and ref.workflow_id != ctx.graph.id:
            value = ctx.dependency_output(ref.node_id, ref.workflow_id)
        else:
            value = ctx.stored_output(ref.node_id)
        if value is MISSING or value is None:
            continue
        if STOP_SENTINEL in to_text(value, pretty=False):
            logger.info("stop_signal_detected", node_id=node.id, dependency=ref.key)
            return True
    return False


def schema_snapshot(store, tenant_id: str) -> Dict[str, Any]:
    """Live description of the shared schema: domains, leveled fields, context facts."""
    domains = sorted(store.list_domain_definitions(), key=lambda d: d.sort_order)
    fields = sorted(
        store.list_field_definitions(), key=lambda f: (f.domain, f.level, f.sort_order)
    )
    context_defs = sorted(store.list_context_fact_definitions(), key=lambda c: c.sort_order)
    context_rows = [asdict(c) for c in context_defs]

    described = []
    for domain in domains:
        domain_fields = [asdict(f) for f in fields if f.domain == domain.domain]
        entry = asdict(domain)
        entry["fields"] = domain_fields
        entry["fields_by_level"] = {
            level: [f for f in domain_fields if f["level"] == level] for level in LEVELS
        }
        entry["field_count"] = len(domain_fields)
        entry["context_facts"] = [
            c for c in context_rows if domain.domain in (c.get("default_domains") or [])
        ]
        described.append(entry)

    return {
        "company_id": tenant_id,
        "domains": described,
        "context_fact_definitions": context_rows,
        "total_domains": len(domains),
        "total_fields": len(fields),
        "total_context_facts": len(context_defs),
        "generated_at": datetime.utcnow().isoformat(),
    }


Executor = Callable[[ExecutionContext, Node], Awaitable[NodeResult]]
EXECUTORS: Dict[NodeKind, Executor] = {}


def executor(kind: NodeKind) -> Callable[[Executor], Executor]:
    def register(func: Executor) -> Executor:
        if kind in EXECUTORS:
            raise RuntimeError(f"duplicate executor for {kind.value}")
        EXECUTORS[kind] = func
        return func

    return register


async def execute_node(ctx: ExecutionContext, node: Node) -> NodeResult:
    return await EXECUTORS[node.kind](ctx, node)


def _is_live_schema(node: Optional[Node]) -> bool:
    config = node.config if node else None
    return (
        isinstance(config, DatasetConfig)
        and config.fetch_live
        and config.source_type == "ssot_schema"
    )


@executor(NodeKind.PROMPT)
async def run_prompt(ctx: ExecutionContext, node: Node) -> NodeResult:
    config: PromptConfig = node.config
    model = map_model_name(config.model)
    temperature = DEFAULT_TEMPERATURE if config.temperature is None else config.temperature
    max_tokens = config.max_tokens or DEFAULT_MAX_TOKENS

    system_prompt = ""
    for part in config.prompt_parts:
        if not part.system_prompt_id:
            continue
        row = ctx.store.get_system_prompt(part.system_prompt_id)
        if row:
            system_prompt = row.prompt
            break
        logger.warning("system_prompt_missing", node_id=node.id, system_prompt_id=part.system_prompt_id)

    prompt = ""
    reference = ""
    last_kind: Optional[str] = None
    for part in config.prompt_parts:
        if part.system_prompt_id:
            continue
        needs_separator = last_kind is not None and (
            last_kind != part.type or part.type == "dependency"
        )
        if part.type in ("text", "prompt"):
            if needs_separator:
                prompt += PAGE_SEPARATOR
            prompt += part.value
            last_kind = "text"
        elif part.type == "dependency":
            if needs_separator:
                prompt += PAGE_SEPARATOR
            if not part.workflow_id and _is_live_schema(ctx.graph.get(part.value)):
                text = json.dumps(schema_snapshot(ctx.store, ctx.tenant.id), indent=2, default=str)
                prompt += text
                reference += text + "\n"
                last_kind = "dependency"
                continue
            value = ctx.dependency_output(part.value, part.workflow_id)
            if value is not MISSING:
                text = strip_code_fences(to_text(value))
                prompt += text
                reference += text + "\n"
                last_kind = "dependency"
        elif part.type == "framework":
            framework = ctx.store.get_framework(part.value)
            if framework and framework.schema:
                schema = to_text(framework.schema)
                prompt += f"\n\n--- {framework.name} ---\n{schema}\n"
                reference += f"[Framework: {framework.name}]\n"
                last_kind = "framework"
            else:
                logger.warning("framework_missing", node_id=node.id, framework_id=part.value)
                prompt += f"\n[Framework not found: {part.framework_name or part.value}]\n"

    if config.enable_stop_trigger:
        prompt += STOP_INSTRUCTION

    question = prompt.strip()
    if not question:
        logger.warning("prompt_empty", node_id=node.id)
        return NodeResult("[No data available - prompt was empty]")

    messages = [{"role": "user", "content": question}]
    if system_prompt:
        messages.insert(0, {"role": "system", "content": system_prompt})

    started = time.monotonic()
    try:
        result = await ctx.completion.complete(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
            web_search=config.web_search,
        )
    except MissingCredentialsError as exc:
        logger.error("completion_credentials_missing", node_id=node.id, key=exc.key_name)
        return NodeResult(f"[Error: {exc.key_name} not configured]")
    except ModelUnavailableError as exc:
        ctx.alerts.model_unavailable(model, exc.status_code, exc.body, node_id=node.id)
        return NodeResult(f"[AI Error: {exc.status_code}]")
    except ProviderError as exc:
        return NodeResult(f"[AI Error: {exc.status_code}]")
    elapsed_ms = int((time.monotonic() - started) * 1000)

    output = strip_code_fences(result.text)
    if not output:
        logger.warning("completion_empty", node_id=node.id, model=model)
    if result.truncated:
        logger.warning("completion_truncated", node_id=node.id, max_tokens=max_tokens)
        ctx.alerts.max_tokens_hit(
            tenant_id=ctx.tenant.id,
            workflow_id=ctx.graph.id,
            node_id=node.id,
            node_label=node.label,
            completion_tokens=result.completion_tokens,
            max_tokens=max_tokens,
        )
    if result.has_usage:
        cost = ctx.run_config.estimate_cost(model, result.prompt_tokens, result.completion_tokens)
        logger.info(
            "completion_usage",
            node_id=node.id,
            model=model,
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            total_tokens=result.total_tokens,
            estimated_cost=round(cost, 6),
            duration_ms=elapsed_ms,
        )
        ctx.store.record_usage(
            UsageRecord(
                tenant_id=ctx.tenant.id,
                workflow_id=ctx.graph.id,
                node_id=node.id,
                model=model,
                prompt_tokens=result.prompt_tokens,
                completion_tokens=result.completion_tokens,
                total_tokens=result.total_tokens,
                estimated_cost=cost,
                execution_time_ms=elapsed_ms,
            )
        )

    evaluation = None
    if (
        ctx.run_config.self_improvement.enabled
        and isinstance(output, str)
        and len(output) > 10
        and not output.startswith("[")
    ):
        evaluation = await ctx.evaluator.evaluate(
            question=question,
            reference=reference.strip() or question,
            response=output,
            run_config=ctx.run_config,
            tenant_id=ctx.tenant.id,
            workflow_id=ctx.graph.id,
            node_id=node.id,
        )
        logger.info(
            "node_evaluated",
            node_id=node.id,
            overall_score=evaluation.overall_score,
            flags=evaluation.flags,
        )
    return NodeResult(output, evaluation)


@executor(NodeKind.PROMPT_FRAGMENT)
async def run_prompt_fragment(ctx: ExecutionContext, node: Node) -> NodeResult:
    config: PromptFragmentConfig = node.config
    text = ""
    for part in config.prompt_parts:
        if part.type in ("text", "prompt"):
            text += part.value
        elif part.type == "dependency":
            value = ctx.dependency_output(part.value, part.workflow_id)
            if value is not MISSING:
                text += to_text(value, pretty=False)
    return NodeResult(text or config.text or "")


@executor(NodeKind.DATASET)
async def run_dataset(ctx: ExecutionContext, node: Node) -> NodeResult:
    config: DatasetConfig = node.config
    if config.source_type == "ssot_schema":
        snapshot = schema_snapshot(ctx.store, ctx.tenant.id)
        logger.info(
            "schema_snapshot_built",
            node_id=node.id,
            domains=snapshot["total_domains"],
            fields=snapshot["total_fields"],
        )
        return NodeResult(json.dumps(snapshot, indent=2, default=str))

    if config.source_type == "dataset" and config.dataset_id:
        dataset = ctx.store.get_dataset(config.dataset_id)
        aggregated: Dict[str, Any] = {}
        for dep in (dataset.dependencies if dataset else []):
            record = ctx.store.get_node_output(ctx.tenant.id, dep.get("workflowId"), dep.get("nodeId"))
            if record and record.output:
                aggregated[snake_key(dep.get("nodeName") or "")] = record.output
        logger.info("dataset_aggregated", node_id=node.id, entries=len(aggregated))
        return NodeResult(json.dumps(aggregated, ensure_ascii=False, separators=(",", ":")))

    if config.source_type == "shared_cache" and config.shared_cache_id:
        aggregated = {}
        for entry in ctx.store.list_shared_cache_entries(config.shared_cache_id, ctx.tenant.id):
            key = snake_key(entry.node_label or "data")
            if key not in aggregated:
                aggregated[key] = entry.output
        logger.info(
            "shared_cache_loaded",
            node_id=node.id,
            cache=config.shared_cache_name or config.shared_cache_id,
            entries=len(aggregated),
        )
        return NodeResult(json.dumps(aggregated, ensure_ascii=False, separators=(",", ":")))

    if config.source_type == "company_ingest":
        return NodeResult(submission_json(ctx.submission))

    return NodeResult(
        json.dumps(config.data or [], ensure_ascii=False, separators=(",", ":"), default=str)
    )


@executor(NodeKind.INGEST)
async def run_ingest(ctx: ExecutionContext, node: Node) -> NodeResult:
    return NodeResult(submission_json(ctx.submission))


@executor(NodeKind.VARIABLE)
async def run_variable(ctx: ExecutionContext, node: Node) -> NodeResult:
    config: VariableConfig = node.config
    if not config.ssot_map_mode:
        return NodeResult(ctx.graph.variable_value(config.name))

    mappings = config.ssot_map_dependencies
    results = []
    for mapping in mappings:
        if not mapping.target_domain or not mapping.target_field_key:
            logger.info("schema_mapping_target_missing", node_id=node.id, source=mapping.node_id)
            continue
        field = f"{mapping.target_domain}.{mapping.target_field_key}"
        source = ctx.dependency_output(mapping.node_id or "", mapping.workflow_id)
        if source is MISSING:
            results.append({"field": field, "status": "skipped", "reason": "no_output"})
            continue
        path = mapping.json_path
        if path.startswith("output."):
            path = path[len("output."):]
        value = get_value_by_path(source, path)
        if value is MISSING:
            results.append(
                {"field": field, "status": "skipped", "reason": f"No value at path: {mapping.json_path}"}
            )
            continue
        try:
            _, created = ctx.store.upsert_master_data(
                ctx.tenant.id,
                mapping.target_domain,
                mapping.target_field_key,
                value,
                source_type="generated",
                source_reference={
                    "workflow_id": ctx.graph.id,
                    "node_id": node.id,
                    "node_label": node.label,
                    "source_node_id": mapping.node_id,
                    "source_node_label": mapping.node_label,
                    "json_path": mapping.json_path,
                    "mapped_at": datetime.utcnow().isoformat(),
                },
            )
        except Exception as exc:
            logger.error("schema_mapping_write_failed", node_id=node.id, field=field, error=str(exc))
            results.append({"field": field, "status": "error", "reason": str(exc)})
            continue
        results.append({"field": field, "status": "created" if created else "updated", "value": value})

    written = sum(1 for r in results if r["status"] in ("created", "updated"))
    logger.info("schema_mapping_completed", node_id=node.id, written=written, total=len(mappings))
    return NodeResult(
        json.dumps(
            {"mappings_processed": len(mappings), "mappings_written": written, "results": results},
            ensure_ascii=False,
            separators=(",", ":"),
            default=str,
        )
    )


@executor(NodeKind.FRAMEWORK)
async def run_framework(ctx: ExecutionContext, node: Node) -> NodeResult:
    config: FrameworkConfig = node.config
    schema: Any = {}
    if config.schema_:
        schema = config.schema_
        if config.type != "document" and isinstance(schema, str):
            try:
                schema = json.loads(schema)
            except ValueError:
                schema = config.schema_
    return NodeResult(
        json.dumps(
            {
                "name": config.name or "Unnamed Framework",
                "description": config.description or "",
                "type": config.type or "rating_scale",
                "schema": schema,
            },
            ensure_ascii=False,
            separators=(",", ":"),
        )
    )


@executor(NodeKind.WEB_INTEGRATION)
async def run_web_integration(ctx: ExecutionContext, node: Node) -> NodeResult:
    config: WebIntegrationConfig = node.config
    if config.integration_id != "firecrawl":
        return NodeResult(f"[Unknown integration: {config.integration_id}]")

    raw_input = ""
    for part in config.prompt_parts:
        if part.type in ("text", "prompt"):
            raw_input += part.value
        elif part.type == "dependency":
            value = ctx.dependency_output(part.value, part.workflow_id)
            if value is not MISSING:
                raw_input += to_text(value, pretty=False)
    try:
        output = await ctx.web.execute(config.capability, raw_input.strip(), config.options)
    except WebRetrievalError as exc:
        logger.error("web_retrieval_failed", node_id=node.id, capability=config.capability, error=str(exc))
        return NodeResult(f"[Firecrawl error: {exc}]")
    logger.info("web_retrieval_completed", node_id=node.id, capability=config.capability)
    return NodeResult(output or "")


@executor(NodeKind.AGENT)
async def run_agent(ctx: ExecutionContext, node: Node) -> NodeResult:
    config: AgentConfig = node.config
    if not config.source_node_id:
        logger.warning("agent_source_missing", node_id=node.id)
        return NodeResult("[Agent not configured: No source node selected]")
    if config.execution_type != "ssot_update":
        return NodeResult(f'[Agent error: Unknown execution type "{config.execution_type}"]')

    source = ctx.stored_output(config.source_node_id)
    if source is MISSING or not source:
        label = config.source_node_label or config.source_node_id
        return NodeResult(f'[Agent error: Source node "{label}" has no output]')

    try:
        plan = parse_change_plan(source)
    except ChangePlanParseError as exc:
        logger.error("agent_plan_unparseable", node_id=node.id, error=str(exc))
        return NodeResult(f"[Agent error: Could not parse SSOT change plan from source. {exc}]")

    errors = plan_shape_errors(plan)
    if errors:
        logger.error("agent_plan_invalid", node_id=node.id, errors=errors)
        return NodeResult(f"[Agent error: Invalid SSOT_CHANGE_PLAN - {', '.join(errors)}]")

    try:
        outcome = ctx.change_plans.apply_plan(
            plan,
            tenant_id=ctx.tenant.id,
            workflow_id=ctx.graph.id,
            node_id=node.id,
            options=ApplyOptions.from_config(config.ssot_config),
        )
    except Exception as exc:
        logger.error("agent_plan_apply_failed", node_id=node.id, error=str(exc))
        return NodeResult(f"[Agent error: Failed to execute SSOT changes - {exc}]")
    return NodeResult(
        json.dumps(
            {
                "status": "success",
                "changes_processed": len(plan.get("validated_changes") or []),
                "pending_approvals": outcome.pending_count,
                "auto_approved": outcome.auto_approved_count,
                "message": "SSOT changes processed",
            },
            separators=(",", ":"),
        )
    )


_unregistered = EXECUTABLE_KINDS - set(EXECUTORS)
if _unregistered:
    raise RuntimeError(
        "no executor registered for: " + ", ".join(sorted(k.value for k in _unregistered))
    )
