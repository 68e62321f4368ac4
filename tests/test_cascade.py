"""Cascade controller behaviour against a real MemoryStore and fake providers."""

import pytest

from nodecascade.service.cascade import NodeStatus, WorkflowRun, build_summary, is_error_marker
from nodecascade.service.completion import CompletionResult
from nodecascade.service.errors import ModelUnavailableError, NotFoundError, ProviderError
from nodecascade.service.nodes import STOP_SENTINEL
from nodecascade.storage.errors import VersionConflict
from nodecascade.storage.models import NodeOutputRecord, Tenant


def _workflow(report, workflow_id):
    return next(w for w in report["workflows"] if w["workflow_id"] == workflow_id)


def _chain(nodes):
    return [
        nodes.ingest(),
        nodes.prompt("a", nodes.text("Summarise"), nodes.dep("ingest")),
        nodes.prompt("b", nodes.text("Refine"), nodes.dep("a")),
    ]


async def test_first_run_executes_every_node(engine, nodes):
    engine.add_workflow("wf", _chain(nodes))

    report = await engine.run({"x": 1})

    wf = _workflow(report, "wf")
    assert wf["status"] == "completed"
    assert set(wf["executed"]) == {"ingest", "a", "b"}
    assert wf["cached"] == []
    assert report["workflows_processed"] == 1
    assert engine.output("wf", "ingest") == {"x": 1}
    assert engine.output("wf", "a").startswith("answer to: Summarise")
    assert len(engine.completion.calls) == 2


async def test_identical_submission_is_fully_cached(engine, nodes):
    engine.add_workflow("wf", _chain(nodes))
    await engine.run({"x": 1})
    calls_after_first = len(engine.completion.calls)

    report = await engine.run({"x": 1})

    wf = _workflow(report, "wf")
    assert wf["status"] == "cached"
    assert wf["message"] == "Data unchanged - no cascade needed"
    assert wf["executed"] == []
    assert set(wf["cached"]) == {"ingest", "a", "b"}
    assert len(engine.completion.calls) == calls_after_first


async def test_changed_submission_reexecutes_dependents(engine, nodes):
    engine.add_workflow("wf", _chain(nodes))
    await engine.run({"x": 1})
    await engine.run({"x": 1})

    report = await engine.run({"x": 2})

    wf = _workflow(report, "wf")
    assert wf["status"] == "completed"
    assert set(wf["executed"]) == {"ingest", "a", "b"}
    assert engine.output("wf", "ingest") == {"x": 2}


async def test_agent_reruns_when_source_output_changes(engine, nodes):
    engine.add_workflow(
        "wf",
        [
            nodes.ingest(),
            nodes.prompt("p", nodes.text("Plan"), nodes.dep("ingest")),
            {"id": "a", "type": "agent", "config": {"sourceNodeId": "p"}},
        ],
    )
    await engine.run({"x": 1})
    first = engine.store.get_node_output("acme", "wf", "a")
    assert first.dependency_hashes["p"] == engine.store.get_node_output("acme", "wf", "p").content_hash

    report = await engine.run({"x": 2})

    status = _workflow(report, "wf")["node_status"]
    assert status["p"] == "executed"
    assert status["a"] in ("executed", "failed")
    assert engine.store.get_node_output("acme", "wf", "a").version == 2


async def test_sibling_branch_stays_cached(engine, nodes):
    engine.add_workflow(
        "wf",
        _chain(nodes) + [nodes.prompt("static", nodes.text("Company boilerplate"))],
    )
    await engine.run({"x": 1})

    report = await engine.run({"x": 2})

    wf = _workflow(report, "wf")
    assert set(wf["executed"]) == {"ingest", "a", "b"}
    assert wf["cached"] == ["static"]


async def test_force_reexecutes_unchanged_workflow(engine, nodes):
    engine.add_workflow("wf", _chain(nodes))
    await engine.run({"x": 1})

    report = await engine.run({"x": 1}, force=True)

    wf = _workflow(report, "wf")
    assert wf["status"] == "completed"
    assert set(wf["executed"]) == {"ingest", "a", "b"}
    assert len(engine.completion.calls) == 4


async def test_node_versions_increase_on_each_write(engine, nodes):
    engine.add_workflow("wf", _chain(nodes))
    await engine.run({"x": 1})
    await engine.run({"x": 2})

    record = engine.store.get_node_output("acme", "wf", "a")
    assert record.version == 2
    assert record.dependency_hashes == {
        "ingest": engine.store.get_node_output("acme", "wf", "ingest").content_hash
    }


async def test_paused_node_and_dependents_are_skipped(engine, nodes):
    engine.add_workflow(
        "wf",
        [
            nodes.ingest(),
            nodes.prompt("a", nodes.text("Paused"), nodes.dep("ingest"), paused=True),
            nodes.prompt("b", nodes.text("Downstream"), nodes.dep("a")),
            nodes.prompt("c", nodes.text("Unrelated"), nodes.dep("ingest")),
        ],
    )

    report = await engine.run({"x": 1})

    wf = _workflow(report, "wf")
    assert set(wf["skipped_paused"]) == {"a", "b"}
    assert set(wf["executed"]) == {"ingest", "c"}
    assert engine.output("wf", "a") is None
    assert [call["messages"][-1]["content"].split("\n")[0] for call in engine.completion.calls] == [
        "Unrelated"
    ]
    assert report["execution_summary"]["pausedNodes"] == 2


async def test_stop_sentinel_propagates_without_provider_call(engine, nodes):
    engine.completion.responder = lambda model, prompt: STOP_SENTINEL if "Match" in prompt else "ok"
    engine.add_workflow(
        "wf",
        [
            nodes.ingest(),
            nodes.prompt("a", nodes.text("Match"), nodes.dep("ingest"), enableStopTrigger=True),
            nodes.prompt("b", nodes.text("Follow up"), nodes.dep("a")),
        ],
    )

    report = await engine.run({"x": 1})

    assert engine.output("wf", "b") == STOP_SENTINEL
    assert len(engine.completion.calls) == 1
    assert "b" in _workflow(report, "wf")["executed"]


async def test_partial_start_runs_only_downstream(engine, nodes):
    engine.add_workflow(
        "wf",
        _chain(nodes) + [nodes.prompt("c", nodes.text("Final"), nodes.dep("b"))],
    )
    await engine.run({"x": 1})
    engine.completion.calls.clear()

    report = await engine.run({"x": 1}, force=True, start_from_node_id="b")

    wf = _workflow(report, "wf")
    assert wf["skipped_out_of_scope"] == ["a"]
    assert set(wf["executed"]) == {"ingest", "b", "c"}
    prompts = [call["messages"][-1]["content"] for call in engine.completion.calls]
    assert len(prompts) == 2
    # b still sees the stored output of a
    assert engine.output("wf", "a") in prompts[0]


async def test_node_exception_becomes_marker_and_run_completes(engine, nodes):
    def responder(model, prompt):
        if prompt.startswith("Summarise"):
            raise RuntimeError("boom")
        return "fine"

    engine.completion.responder = responder
    engine.add_workflow("wf", _chain(nodes))
    submission = engine.submit({"x": 1})

    report = await engine.run(submission=submission)

    wf = _workflow(report, "wf")
    assert engine.output("wf", "a") == "[Node error: boom]"
    assert wf["failed"] == ["a"]
    assert "b" in wf["executed"]
    assert report["degraded_nodes"][0]["node_id"] == "a"
    assert engine.store.get_submission(submission.id).status == "completed"


async def test_provider_errors_map_to_markers_and_alerts(engine, nodes):
    def responder(model, prompt):
        if prompt.startswith("Summarise"):
            return ModelUnavailableError(404, "model not found", model=model)
        return ProviderError(503, "unavailable", model=model)

    engine.completion.responder = responder
    engine.add_workflow("wf", _chain(nodes))

    await engine.run({"x": 1})

    assert engine.output("wf", "a") == "[AI Error: 404]"
    assert engine.output("wf", "b") == "[AI Error: 503]"
    alerts = engine.store.list_alerts("model_unavailable")
    assert len(alerts) == 1
    assert alerts[0].severity == "critical"


async def test_missing_credentials_marker(engine, nodes):
    engine.completion.configured = False
    engine.add_workflow("wf", _chain(nodes))

    report = await engine.run({"x": 1})

    assert engine.output("wf", "a") == "[Error: COMPLETION_API_KEY not configured]"
    assert set(_workflow(report, "wf")["failed"]) == {"a", "b"}


async def test_truncated_output_raises_max_tokens_alert(engine, nodes):
    engine.completion.responder = lambda model, prompt: CompletionResult(
        text="partial", completion_tokens=120, finish_reason="length"
    )
    engine.add_workflow(
        "wf",
        [nodes.ingest(), nodes.prompt("a", nodes.text("Long"), nodes.dep("ingest"), maxTokens=100)],
    )

    await engine.run({"x": 1})

    assert engine.output("wf", "a") == "partial"
    alert = engine.store.list_alerts("max_tokens_hit")[0]
    assert alert.description.startswith("Output truncated at 120 tokens (limit: 100).")


async def test_cyclic_graph_executes_each_node_once(engine, nodes):
    engine.add_workflow(
        "wf",
        [
            nodes.ingest(),
            nodes.prompt("a", nodes.text("A"), nodes.dep("b")),
            nodes.prompt("b", nodes.text("B"), nodes.dep("a")),
        ],
    )

    report = await engine.run({"x": 1})

    assert set(_workflow(report, "wf")["executed"]) == {"ingest", "a", "b"}
    assert len(engine.completion.calls) == 2


async def test_workflow_without_ingest_is_not_selected(engine, nodes):
    engine.add_workflow("wf", [nodes.prompt("a", nodes.text("Orphan"))])
    submission = engine.submit({"x": 1})

    report = await engine.run(submission=submission)

    assert report["workflows_processed"] == 0
    assert report["message"] == "No workflows with company_ingest nodes found"
    assert engine.store.get_submission(submission.id).status == "completed"


async def test_non_company_attribution_is_not_selected(engine, nodes):
    engine.add_workflow("wf", _chain(nodes), settings={"data_attribution": "market_data"})

    report = await engine.run({"x": 1})

    assert report["workflows_processed"] == 0


async def test_abivc_ingest_point_must_match(engine, nodes):
    engine.add_workflow(
        "wf",
        [nodes.ingest(integrationId="abivc", ingestPointId="quarterly_update")],
    )
    submission = engine.submit(
        {"x": 1}, metadata={"synced_from": "abivc", "ingest_point": "initial_submission"}
    )

    report = await engine.run(submission=submission)

    assert report["workflows_processed"] == 0


async def test_empty_only_skips_complete_workflows(engine, nodes):
    engine.add_workflow("wf", _chain(nodes))
    await engine.run({"x": 1})

    report = await engine.run({"x": 2}, empty_only=True)

    assert report["workflows_processed"] == 0
    assert report["message"] == "No workflows with empty nodes found"


async def test_missing_submission_raises(engine):
    with pytest.raises(NotFoundError):
        await engine.cascade.run_submission("acme", "does-not-exist")


async def test_trigger_submission_is_rehydrated(engine, nodes):
    engine.add_workflow("wf", _chain(nodes))
    engine.submit({"intake_fields": {"name": "Acme"}, "sector": "retail"})
    trigger = engine.submit({"_trigger": "manual"})

    await engine.run(submission=trigger)

    assert engine.output("wf", "ingest") == {"intake_fields": {"name": "Acme"}, "sector": "retail"}


async def test_find_latest_data_submission_prefers_sync_sources(engine):
    engine.submit({"only": "one"})
    synced = engine.submit({"a": 1, "b": 2}, source_type="abi_sync")
    engine.submit({"_trigger": "bulk_run", "timestamp": "now", "empty_only": False})

    assert engine.cascade.find_latest_data_submission("acme").id == synced.id


async def test_version_conflict_is_retried(engine, nodes, monkeypatch):
    engine.add_workflow("wf", _chain(nodes))
    original = engine.store.write_node_output
    conflicts = {"left": 1}

    def flaky(record, *, expected_version):
        if record.node_id == "a" and conflicts["left"]:
            conflicts["left"] -= 1
            raise VersionConflict("changed", expected_version=expected_version, actual_version=9)
        return original(record, expected_version=expected_version)

    monkeypatch.setattr(engine.store, "write_node_output", flaky)

    report = await engine.run({"x": 1})

    assert "a" in _workflow(report, "wf")["executed"]
    assert engine.store.get_node_output("acme", "wf", "a").version == 1


async def test_execution_summary_alert_and_cached_report(engine, nodes):
    engine.add_workflow("wf", _chain(nodes))

    report = await engine.run({"x": 1})

    summary = report["execution_summary"]
    assert summary["totalWorkflows"] == 1
    assert summary["executedNodes"] == 3
    alert = engine.store.list_alerts("execution_summary")[0]
    assert alert.title == "Execution Summary: Acme Corp"
    assert await engine.cascade.latest_report("acme") == report


async def test_run_all_tenants(engine, nodes):
    engine.store.upsert_tenant(Tenant(id="globex", name="Globex"))
    engine.add_workflow("wf", _chain(nodes))
    engine.submit({"intake_fields": {"name": "Acme"}})

    result = await engine.cascade.run_all_tenants()

    assert result["all_tenants"] is True
    assert result["tenants_processed"] == 2
    by_tenant = {entry["tenant_id"]: entry for entry in result["results"]}
    assert by_tenant["acme"]["status"] == "completed"
    assert by_tenant["acme"]["workflows_processed"] == 1
    assert by_tenant["globex"] == {
        "tenant_id": "globex",
        "tenant_name": "Globex",
        "status": "skipped",
        "reason": "no_data_submission",
    }
    assert engine.output("wf", "ingest") == {"intake_fields": {"name": "Acme"}}


def test_build_summary_reports_issues():
    cached = WorkflowRun("w1", "Cached flow", status="cached")
    skipped = WorkflowRun("w2", "Bare flow", status="skipped", message="No source node")
    ran = WorkflowRun("w3", "Live flow")
    ran.node_status = {"i": NodeStatus.EXECUTED, "p": NodeStatus.EXECUTED, "q": NodeStatus.CACHED}
    records = [NodeOutputRecord("acme", "w3", "p", output="", node_label="Pitch")]

    summary = build_summary([cached, skipped, ran], records)

    assert summary["totalWorkflows"] == 3
    assert summary["executedWorkflows"] == 1
    assert summary["cachedWorkflows"] == 1
    assert summary["skippedWorkflows"] == 1
    assert summary["totalNodes"] == 3
    assert summary["emptyOutputs"] == 1
    assert [issue["type"] for issue in summary["issues"]] == [
        "empty_output",
        "workflow_cached",
        "no_source",
    ]
    assert summary["issues"][0]["message"] == 'Node "Pitch" has empty output'


def test_error_marker_detection():
    assert is_error_marker("[AI Error: 500]")
    assert is_error_marker("[Node error: boom]")
    assert not is_error_marker("[No data available - prompt was empty]")
    assert not is_error_marker({"status": "ok"})
