import json
from datetime import datetime

import httpx

from nodecascade.service.nodes import WorkflowGraph, parse_node
from nodecascade.service.sync import PlatformSyncClient, SyncBatch, SyncFanout
from nodecascade.storage.models import FieldDefinition

NOW = datetime(2024, 5, 1, 12, 0, 0)

PLAN = {
    "plan_summary": ["x"],
    "validated_changes": [
        {
            "change_id": "CHG-1",
            "target_path": {"l1": "market", "l4": "tam"},
            "target_level": "L4",
            "action": "update",
            "value_to_write": "10B",
            "provenance": {"source": "deck"},
        }
    ],
}


def _collect(batch, config, output="out", node_id="n"):
    node = parse_node({"id": node_id, "type": "promptTemplate", "label": "Node", "config": config})
    graph = WorkflowGraph(id="wf", name="Flow", nodes=[node])
    batch.collect(graph, node, output, version=3, updated_at=NOW)


def test_destinations_route_to_sinks():
    batch = SyncBatch()
    _collect(
        batch,
        {
            "outputDestinations": [
                {"destination_name": "Abi Platform", "enabled": True},
                {"destination_name": "AbiVC", "enabled": False},
                {
                    "destination_name": "Master Data",
                    "enabled": True,
                    "field_mapping": {"domain": "market", "field_key": "tam"},
                },
                {"destination_name": "SSOT Update", "enabled": True, "config": {"auto_approve_l4": True}},
            ],
            "isAbiVCOutput": True,
        },
    )

    assert batch.counts() == {
        "abi_outputs_synced": 1,
        "abivc_outputs_synced": 0,
        "master_data_outputs_synced": 1,
        "ssot_updates_processed": 1,
    }
    entry = batch.platform[0]
    assert entry["workflow_name"] == "Flow"
    assert entry["data"] == {"output": "out"}
    assert entry["version"] == 3
    assert entry["updated_at"] == "2024-05-01T12:00:00"
    assert batch.change_plans[0]["config"] == {"auto_approve_l4": True}


def test_legacy_flags_apply_without_destinations():
    batch = SyncBatch()
    _collect(
        batch,
        {
            "isAbiOutput": True,
            "isAbiVCOutput": True,
            "isMasterDataOutput": True,
            "masterDataMapping": {"domain": "market"},
        },
    )
    assert len(batch.platform) == 1
    assert len(batch.vc_platform) == 1
    assert batch.master_data == []


async def test_flush_pushes_and_swallows_sink_failures(engine):
    seen = []

    def handler(request):
        seen.append((request.url.host, json.loads(request.content)))
        if request.url.host == "vc.test":
            return httpx.Response(500)
        return httpx.Response(200, json={"ok": True})

    client = PlatformSyncClient(
        platform_url="https://platform.test/sync",
        vc_platform_url="https://vc.test/sync",
        api_key="k",
        transport=httpx.MockTransport(handler),
    )
    fanout = SyncFanout(engine.store, client, engine.change_plans)
    batch = SyncBatch()
    _collect(batch, {"isAbiOutput": True, "isAbiVCOutput": True})

    counts = await fanout.flush(batch, "acme")
    await client.close()

    assert counts["abi_outputs_synced"] == 1
    assert counts["abivc_outputs_synced"] == 1
    assert [host for host, _ in seen] == ["platform.test", "vc.test"]
    assert seen[0][1]["tenant_id"] == "acme"
    assert seen[0][1]["outputs"][0]["node_id"] == "n"


async def test_master_data_and_change_plan_sinks(engine):
    engine.store.upsert_field_definition(
        FieldDefinition(id="f", domain="market", field_key="size", display_name="Size", field_type="number")
    )
    batch = SyncBatch()
    _collect(
        batch,
        {
            "outputDestinations": [
                {
                    "destination_name": "Master Data",
                    "enabled": True,
                    "field_mapping": {"domain": "market", "field_key": "size"},
                }
            ]
        },
        output="42",
    )
    _collect(
        batch,
        {"outputDestinations": [{"destination_name": "SSOT Update", "enabled": True, "config": {"auto_approve_l4": True}}]},
        output=json.dumps(PLAN),
        node_id="planner",
    )
    _collect(
        batch,
        {"outputDestinations": [{"destination_name": "SSOT Update", "enabled": True}]},
        output=json.dumps({"plan_summary": [], "validated_changes": [{"change_id": "bad"}]}),
        node_id="sloppy",
    )

    await engine.sync.flush(batch, "acme")

    size = engine.store.get_master_data("acme", "market", "size")
    assert size.field_value == {"value": "42"}
    assert size.field_type == "number"
    assert size.source_reference["node_id"] == "n"
    assert engine.store.get_master_data("acme", "market", "tam").field_value == "10B"
    assert [c.node_id for c in engine.store.list_pending_changes("acme")] == ["planner"]


async def test_cascade_writes_shared_cache_and_reports_sync_counts(engine, nodes):
    engine.add_workflow(
        "wf",
        [
            nodes.ingest(),
            nodes.prompt(
                "a",
                nodes.text("Describe"),
                nodes.dep("ingest"),
                label="Market Size",
                sharedCacheOutputs=[{"enabled": True, "shared_cache_id": "c1"}],
                isAbiOutput=True,
            ),
        ],
    )

    report = await engine.run({"x": 1})

    entries = engine.store.list_shared_cache_entries("c1", "acme")
    assert [(e.node_id, e.node_label) for e in entries] == [("a", "Market Size")]
    assert entries[0].output.startswith("answer to: Describe")
    assert entries[0].version == 1
    assert report["abi_outputs_synced"] == 1
    assert report["abivc_outputs_synced"] == 0
