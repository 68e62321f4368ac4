from __future__ import annotations

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Query

from nodecascade.api.schemas import (
    AlertResponse,
    BulkRunRequest,
    CascadeRunRequest,
    Envelope,
    EvaluationEntry,
    EvaluationHistoryResponse,
    NodeOutputResponse,
    ResetResponse,
    SubmissionCreateRequest,
    SubmissionResponse,
)
from nodecascade.logging import get_logger
from nodecascade.service.errors import NotFoundError, ValidationError
from nodecascade.service.evaluator import trend_summary
from nodecascade.service.runtime import get_runtime
from nodecascade.storage.models import Submission

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


@router.post("/cascades/run", response_model=Envelope, tags=["cascades"])
async def run_cascade(body: CascadeRunRequest):
    runtime = get_runtime()
    report = await runtime.cascade.run_submission(
        body.tenant_id,
        body.submission_id,
        workflow_id=body.workflow_id,
        empty_only=body.empty_only,
        force=body.force,
        start_from_node_id=body.start_from_node_id,
    )
    return Envelope(status="ok", data=report)


@router.post("/cascades/run-all", response_model=Envelope, tags=["cascades"])
async def run_all_cascades(body: BulkRunRequest):
    if not body.all_tenants:
        raise ValidationError("all_tenants must be true for a bulk run")
    runtime = get_runtime()
    report = await runtime.cascade.run_all_tenants(empty_only=body.empty_only)
    return Envelope(status="ok", data=report)


@router.post("/tenants/{tenant_id}/submissions", response_model=Envelope, tags=["submissions"])
async def create_submission(tenant_id: str, body: SubmissionCreateRequest):
    runtime = get_runtime()
    submission = runtime.store.create_submission(
        Submission.new(
            tenant_id, body.raw_data, source_type=body.source_type, metadata=body.metadata
        )
    )
    logger.info(
        "submission_created",
        tenant_id=tenant_id,
        submission_id=submission.id,
        source_type=submission.source_type,
    )
    return Envelope(
        status="ok",
        data=SubmissionResponse(
            id=submission.id,
            tenant_id=submission.tenant_id,
            source_type=submission.source_type,
            status=submission.status,
            submitted_at=submission.submitted_at,
        ),
    )


@router.get("/tenants/{tenant_id}/runs/latest", response_model=Envelope, tags=["cascades"])
async def latest_run(tenant_id: str):
    runtime = get_runtime()
    report = await runtime.cascade.latest_report(tenant_id)
    if report is None:
        raise NotFoundError("no run report cached", detail={"tenant_id": tenant_id})
    return Envelope(status="ok", data=report)


@router.get(
    "/tenants/{tenant_id}/workflows/{workflow_id}/nodes/{node_id}/output",
    response_model=Envelope,
    tags=["outputs"],
)
async def get_node_output(tenant_id: str, workflow_id: str, node_id: str):
    runtime = get_runtime()
    record = runtime.store.get_node_output(tenant_id, workflow_id, node_id)
    if record is None:
        raise NotFoundError(
            "node output not found",
            detail={"workflow_id": workflow_id, "node_id": node_id},
        )
    return Envelope(status="ok", data=NodeOutputResponse(**asdict(record)))


@router.get(
    "/tenants/{tenant_id}/nodes/{node_id}/evaluations",
    response_model=Envelope,
    tags=["outputs"],
)
async def node_evaluations(
    tenant_id: str,
    node_id: str,
    workflow_id: Optional[str] = Query(default=None, max_length=128),
    limit: int = Query(default=20, ge=1, le=200),
):
    runtime = get_runtime()
    history = runtime.store.list_evaluations(
        tenant_id, node_id, workflow_id=workflow_id, limit=limit
    )
    return Envelope(
        status="ok",
        data=EvaluationHistoryResponse(
            node_id=node_id,
            history=[EvaluationEntry(**asdict(row)) for row in history],
            summary=trend_summary(history),
        ),
    )


@router.get("/alerts", response_model=Envelope, tags=["alerts"])
async def list_alerts(alert_type: Optional[str] = Query(default=None, max_length=64)):
    runtime = get_runtime()
    alerts = runtime.store.list_alerts(alert_type)
    return Envelope(status="ok", data=[AlertResponse(**asdict(alert)) for alert in alerts])


@router.delete("/tenants/{tenant_id}/outputs", response_model=Envelope, tags=["outputs"])
async def reset_outputs(
    tenant_id: str, workflow_id: Optional[str] = Query(default=None, max_length=128)
):
    runtime = get_runtime()
    deleted = runtime.store.reset_node_outputs(tenant_id, workflow_id)
    return Envelope(
        status="ok",
        data=ResetResponse(tenant_id=tenant_id, workflow_id=workflow_id, deleted=deleted),
    )
