"""Fan-out of executed node outputs to downstream sinks.

Outputs are collected per node while workflows run and flushed once after
every workflow in scope has finished. Shared-cache writes are the
exception: they happen as soon as the node output is persisted. No sink
failure ever reaches the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from nodecascade.logging import get_logger
from nodecascade.service.change_plan import (
    ApplyOptions,
    ChangePlanParseError,
    ChangePlanService,
    parse_change_plan,
    plan_shape_errors,
)
from nodecascade.service.nodes import Node, WorkflowGraph
from nodecascade.storage.models import SharedCacheEntry

logger = get_logger(__name__)

PLATFORM_SINK = "Abi Platform"
VC_PLATFORM_SINK = "AbiVC"
MASTER_DATA_SINK = "Master Data"
CHANGE_PLAN_SINK = "SSOT Update"


@dataclass
class SyncBatch:
    """Outputs gathered during one trigger, grouped by sink."""

    platform: List[Dict[str, Any]] = field(default_factory=list)
    vc_platform: List[Dict[str, Any]] = field(default_factory=list)
    master_data: List[Dict[str, Any]] = field(default_factory=list)
    change_plans: List[Dict[str, Any]] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            "abi_outputs_synced": len(self.platform),
            "abivc_outputs_synced": len(self.vc_platform),
            "master_data_outputs_synced": len(self.master_data),
            "ssot_updates_processed": len(self.change_plans),
        }

    def collect(
        self,
        graph: WorkflowGraph,
        node: Node,
        output: Any,
        *,
        version: int,
        updated_at: datetime,
    ) -> None:
        config = node.config
        platform_entry = {
            "node_id": node.id,
            "node_label": node.label,
            "node_type": node.type_tag,
            "workflow_id": graph.id,
            "workflow_name": graph.name,
            "data": {"output": output},
            "version": version,
            "updated_at": updated_at.isoformat(),
        }

        if config.output_destinations:
            for dest in config.output_destinations:
                if not dest.enabled:
                    continue
                name = dest.destination_name
                mapping = dest.field_mapping
                if PLATFORM_SINK in name:
                    self.platform.append(dict(platform_entry))
                elif VC_PLATFORM_SINK in name:
                    self.vc_platform.append(dict(platform_entry))
                elif MASTER_DATA_SINK in name and mapping and mapping.domain and mapping.field_key:
                    self._add_master_data(graph, node, output, mapping.domain, mapping.field_key)
                elif CHANGE_PLAN_SINK in name:
                    self.change_plans.append(
                        {
                            "node_id": node.id,
                            "node_label": node.label,
                            "workflow_id": graph.id,
                            "output": output,
                            "config": dict(dest.config or {}),
                        }
                    )
            return

        if config.is_abi_output:
            self.platform.append(dict(platform_entry))
        if config.is_abivc_output:
            self.vc_platform.append(dict(platform_entry))
        mapping = config.master_data_mapping
        if config.is_master_data_output and mapping and mapping.domain and mapping.field_key:
            self._add_master_data(graph, node, output, mapping.domain, mapping.field_key)

    def _add_master_data(
        self, graph: WorkflowGraph, node: Node, output: Any, domain: str, field_key: str
    ) -> None:
        self.master_data.append(
            {
                "node_id": node.id,
                "node_label": node.label,
                "workflow_id": graph.id,
                "domain": domain,
                "field_key": field_key,
                "value": output,
            }
        )


class PlatformSyncClient:
    """Posts output batches to the external platform endpoints."""

    def __init__(
        self,
        *,
        platform_url: Optional[str],
        vc_platform_url: Optional[str],
        api_key: Optional[str],
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.urls = {"platform": platform_url, "vc_platform": vc_platform_url}
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def push(self, target: str, tenant_id: str, outputs: List[Dict[str, Any]]) -> None:
        url = self.urls.get(target)
        if not url:
            logger.warning("sync_sink_not_configured", sink=target, outputs=len(outputs))
            return
        client = await self._get_client()
        response = await client.post(url, json={"tenant_id": tenant_id, "outputs": outputs})
        response.raise_for_status()
        logger.info("sync_sink_pushed", sink=target, outputs=len(outputs), status_code=response.status_code)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class SyncFanout:
    def __init__(self, store, client: PlatformSyncClient, change_plans: ChangePlanService) -> None:
        self.store = store
        self.client = client
        self.change_plans = change_plans

    def write_shared_caches(
        self,
        tenant_id: str,
        graph: WorkflowGraph,
        node: Node,
        output: Any,
        *,
        content_hash: str,
        version: int,
    ) -> int:
        """Upsert the output into every enabled shared cache of ``node``."""
        written = 0
        for cache in node.config.shared_cache_outputs:
            if not cache.enabled or not cache.shared_cache_id:
                continue
            try:
                self.store.upsert_shared_cache_entry(
                    SharedCacheEntry(
                        shared_cache_id=cache.shared_cache_id,
                        tenant_id=tenant_id,
                        workflow_id=graph.id,
                        node_id=node.id,
                        node_label=node.label,
                        output=output,
                        content_hash=content_hash,
                        version=version,
                    )
                )
            except Exception as exc:
                logger.error(
                    "sync_sink_failed",
                    sink="shared_cache",
                    shared_cache_id=cache.shared_cache_id,
                    node_id=node.id,
                    error=str(exc),
                )
                continue
            written += 1
            logger.info(
                "shared_cache_written",
                shared_cache=cache.shared_cache_name or cache.shared_cache_id,
                node_id=node.id,
            )
        return written

    async def flush(self, batch: SyncBatch, tenant_id: str) -> Dict[str, int]:
        for target, outputs in (("platform", batch.platform), ("vc_platform", batch.vc_platform)):
            if not outputs:
                continue
            try:
                await self.client.push(target, tenant_id, outputs)
            except httpx.HTTPError as exc:
                logger.error("sync_sink_failed", sink=target, outputs=len(outputs), error=str(exc))
        if batch.master_data:
            self._write_master_data(tenant_id, batch.master_data)
        for entry in batch.change_plans:
            self._submit_change_plan(tenant_id, entry)
        return batch.counts()

    def _write_master_data(self, tenant_id: str, entries: List[Dict[str, Any]]) -> None:
        field_types = {(f.domain, f.field_key): f.field_type for f in self.store.list_field_definitions()}
        for entry in entries:
            value = entry["value"]
            try:
                self.store.upsert_master_data(
                    tenant_id,
                    entry["domain"],
                    entry["field_key"],
                    value if isinstance(value, (dict, list)) else {"value": value},
                    field_type=field_types.get((entry["domain"], entry["field_key"]), "text"),
                    source_type="generated",
                    source_reference={
                        "workflow_id": entry["workflow_id"],
                        "node_id": entry["node_id"],
                        "node_label": entry["node_label"],
                        "synced_at": datetime.utcnow().isoformat(),
                    },
                )
            except Exception as exc:
                logger.error(
                    "sync_sink_failed",
                    sink="master_data",
                    node_id=entry["node_id"],
                    field=f"{entry['domain']}.{entry['field_key']}",
                    error=str(exc),
                )

    def _submit_change_plan(self, tenant_id: str, entry: Dict[str, Any]) -> None:
        label = entry["node_label"]
        try:
            plan = parse_change_plan(entry["output"])
        except ChangePlanParseError as exc:
            logger.error("sync_change_plan_unparseable", node_label=label, error=str(exc))
            return
        errors = plan_shape_errors(plan, strict=True)
        if errors:
            logger.error("sync_change_plan_invalid", node_label=label, errors=errors)
            return
        try:
            outcome = self.change_plans.apply_plan(
                plan,
                tenant_id=tenant_id,
                workflow_id=entry["workflow_id"],
                node_id=entry["node_id"],
                options=ApplyOptions.from_config(entry["config"]),
            )
        except Exception as exc:
            logger.error("sync_sink_failed", sink="change_plan", node_label=label, error=str(exc))
            return
        logger.info(
            "sync_change_plan_applied",
            node_label=label,
            processed=outcome.changes_processed,
            pending=outcome.pending_count,
        )
