from datetime import datetime, timedelta

import pytest

from nodecascade.storage.errors import ConstraintViolation, VersionConflict
from nodecascade.storage.memory import MemoryStore
from nodecascade.storage.models import (
    EvaluationRecord,
    NodeOutputRecord,
    Submission,
    Tenant,
)


def _output(node_id="n1", output="hello"):
    return NodeOutputRecord(
        tenant_id="t1", workflow_id="wf", node_id=node_id, output=output, content_hash="h"
    )


def _evaluation(index, base):
    return EvaluationRecord(
        id=f"e{index}",
        tenant_id="t1",
        workflow_id="wf",
        node_id="n1",
        node_label="Node",
        hallucination_score=80,
        hallucination_reasoning="",
        data_quality_score=70,
        data_quality_reasoning="",
        complexity_score=60,
        complexity_reasoning="",
        overall_score=70,
        evaluated_at=base + timedelta(minutes=index),
    )


def test_node_output_compare_and_swap(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    first = store.write_node_output(_output(), expected_version=0)
    assert first.version == 1

    second = store.write_node_output(_output(output="again"), expected_version=1)
    assert second.version == 2
    assert second.created_at == first.created_at

    with pytest.raises(VersionConflict) as excinfo:
        store.write_node_output(_output(output="stale"), expected_version=1)
    assert excinfo.value.actual_version == 2
    assert store.get_node_output("t1", "wf", "n1").output == "again"


def test_reads_are_copies(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    store.write_node_output(_output(output={"a": 1}), expected_version=0)
    fetched = store.get_node_output("t1", "wf", "n1")
    fetched.output["a"] = 2
    assert store.get_node_output("t1", "wf", "n1").output == {"a": 1}


def test_reset_node_outputs_scopes_by_workflow(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    store.write_node_output(_output("n1"), expected_version=0)
    other = _output("n2")
    other.workflow_id = "wf2"
    store.write_node_output(other, expected_version=0)

    assert store.reset_node_outputs("t1", "wf2") == 1
    assert [r.node_id for r in store.list_node_outputs("t1")] == ["n1"]


def test_duplicate_submission_rejected(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    submission = store.create_submission(Submission.new("t1", {"a": 1}))
    with pytest.raises(ConstraintViolation):
        store.create_submission(submission)


def test_submissions_listed_newest_first(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    base = datetime(2024, 1, 1)
    for index, source in enumerate(["manual", "api", "manual"]):
        submission = Submission.new("t1", {"i": index}, source_type=source)
        submission.submitted_at = base + timedelta(hours=index)
        store.create_submission(submission)

    assert [s.raw_data["i"] for s in store.list_submissions("t1")] == [2, 1, 0]
    assert [s.raw_data["i"] for s in store.list_submissions("t1", source_types=["api"])] == [1]
    assert len(store.list_submissions("t1", limit=1)) == 1


def test_master_data_versions_and_history(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    row, created = store.upsert_master_data("t1", "market", "size", "10B")
    assert created and row.version == 1

    row, created = store.upsert_master_data("t1", "market", "size", "12B")
    assert not created and row.version == 2
    history = store.list_master_data_history("t1", "market", "size")
    assert [h.field_value for h in history] == ["10B"]


def test_evaluation_history_is_trimmed_to_retention(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    base = datetime(2024, 1, 1)
    for index in range(5):
        store.append_evaluation(_evaluation(index, base), retain=3)

    rows = store.list_evaluations("t1", "n1")
    assert [r.id for r in rows] == ["e4", "e3", "e2"]
    assert len(store.list_evaluations("t1", "n1", limit=1)) == 1


def test_alerts_deduplicate(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    first = store.upsert_alert("model_unavailable", "gpt-x", severity="high", title="gone")
    again = store.upsert_alert(
        "model_unavailable", "gpt-x", severity="critical", title="still gone"
    )
    assert again.id == first.id
    assert again.occurrence_count == 2
    assert again.severity == "critical"
    assert len(store.list_alerts("model_unavailable")) == 1
    assert store.list_alerts("other") == []


def test_snapshot_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.upsert_tenant(Tenant(id="t1", name="Tenant"))
    store.write_node_output(_output(output={"k": [1, 2]}), expected_version=0)
    store.set_app_settings({"self_improvement_settings": {"enabled": False}})

    reloaded = MemoryStore(fs_root=str(tmp_path))
    record = reloaded.get_node_output("t1", "wf", "n1")
    assert record.output == {"k": [1, 2]}
    assert record.version == 1
    assert isinstance(record.updated_at, datetime)
    assert reloaded.get_tenant("t1").name == "Tenant"
    assert reloaded.get_app_settings() == {"self_improvement_settings": {"enabled": False}}
