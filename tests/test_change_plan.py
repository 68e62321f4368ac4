import pytest

from nodecascade.service.change_plan import (
    ApplyOptions,
    ChangePlanParseError,
    parse_change_plan,
    plan_shape_errors,
    validate_change,
)

L4_CHANGE = {
    "change_id": "CHG-1",
    "target_path": {"l1": "market", "l4": "tam"},
    "target_level": "L4",
    "action": "update",
    "value_to_write": "10B",
    "provenance": {"source": "deck"},
}


def _apply(engine, plan, **options):
    return engine.change_plans.apply_plan(
        plan,
        tenant_id="acme",
        workflow_id="wf",
        node_id="plan",
        options=ApplyOptions.from_config(options),
    )


def test_parse_accepts_fenced_json_and_objects():
    assert parse_change_plan('```json\n{"plan_summary": []}\n```') == {"plan_summary": []}
    assert parse_change_plan({"a": 1}) == {"a": 1}
    with pytest.raises(ChangePlanParseError, match="Invalid format"):
        parse_change_plan(42)


def test_parse_explains_truncation():
    with pytest.raises(ChangePlanParseError) as excinfo:
        parse_change_plan('{"plan_summary": [{"a": 1}')
    assert "truncated" in str(excinfo.value)
    assert "max_tokens" in str(excinfo.value)


def test_shape_errors():
    errors = plan_shape_errors({})
    assert 'Missing "plan_summary"' in errors
    assert 'Missing "validated_changes" or "new_structure_additions"' in errors
    assert plan_shape_errors([]) == ["Plan must be a JSON object"]
    assert plan_shape_errors({"plan_summary": [], "validated_changes": []}) == []
    assert plan_shape_errors({"plan_summary": [], "new_structure_additions": []}) != []


def test_strict_shape_checks_each_change():
    plan = {"plan_summary": [], "validated_changes": [{"change_id": "C1"}]}
    assert plan_shape_errors(plan) == []
    strict = plan_shape_errors(plan, strict=True)
    assert strict and all(message.startswith("validated_changes[0]") for message in strict)


def test_level_rules():
    assert validate_change({"target_level": "L2"}).errors == ["L2 (Primary Datapoint) must be scored"]
    scored_l4 = validate_change(
        {"target_level": "L4", "is_scored": True, "evaluation_method": "x", "input_field_ids": ["a"]}
    )
    assert scored_l4.errors == ["L4 (Input) fields cannot be scored"]
    evidence = validate_change({"target_level": "L3", "data_type": "evidence"})
    assert evidence.errors == ['Data type "evidence" can only be stored at L4']
    assert validate_change({"target_level": "L4"}).warnings == [
        "L4 inputs should include provenance source"
    ]


def test_options_from_config():
    assert ApplyOptions.from_config(None) == ApplyOptions()
    assert ApplyOptions.from_config({"schema_only": True}).mode == "schema"
    assert not ApplyOptions.from_config({"require_approval_create": False}).require_approval_create


def test_auto_approved_l4_change_writes_master_data(engine):
    outcome = _apply(
        engine, {"plan_summary": [], "validated_changes": [L4_CHANGE]}, auto_approve_l4=True
    )

    assert outcome.auto_approved_count == 1
    assert outcome.results[0]["auto_approved"] is True
    assert outcome.results[0]["errors"] == []
    row = engine.store.get_master_data("acme", "market", "tam")
    assert row.field_value == "10B"
    assert row.source_reference["source"] == "deck"
    assert row.source_reference["pending_change_id"] == outcome.results[0]["pending_change_id"]
    assert engine.store.list_pending_changes("acme")[0].status == "approved"


def test_valid_change_waits_for_approval_with_alert(engine):
    outcome = _apply(engine, {"plan_summary": [], "validated_changes": [L4_CHANGE]})

    assert outcome.pending_count == 1
    pending = engine.store.list_pending_changes("acme")[0]
    assert pending.status == "pending"
    alert = engine.store.list_alerts("ssot_change_pending")[0]
    assert pending.alert_id == alert.id
    assert alert.description == "update at market → tam"
    assert engine.store.get_master_data("acme", "market", "tam") is None


def test_invalid_change_is_rejected(engine):
    change = {**L4_CHANGE, "target_level": "L2", "change_id": "CHG-2"}
    outcome = _apply(engine, {"plan_summary": [], "validated_changes": [change]})

    assert outcome.results[0]["validation_status"] == "invalid"
    assert engine.store.list_pending_changes("acme")[0].status == "rejected"
    assert engine.store.list_alerts("ssot_change_rejected")


def test_mode_gates_field_creation(engine):
    create = {**L4_CHANGE, "action": "create_field"}
    data_mode = _apply(engine, {"plan_summary": [], "validated_changes": [create]})
    assert data_mode.results[0]["errors"][0].startswith("Data mode")

    schema_mode = _apply(
        engine, {"plan_summary": [], "validated_changes": [L4_CHANGE]}, mode="schema"
    )
    assert schema_mode.results[0]["errors"][0].startswith("Schema mode")
    assert engine.store.list_pending_changes("acme") == []


def test_structure_addition_applied_without_approval(engine):
    addition = {
        "type": "L3",
        "field_key": "churn_rate",
        "display_name": "Churn Rate",
        "field_type": "number",
        "parent_path": {"l1": "retention"},
    }
    _apply(
        engine,
        {"plan_summary": [], "new_structure_additions": [addition]},
        mode="schema",
        require_approval_create=False,
    )

    definitions = engine.store.list_field_definitions()
    assert [(d.domain, d.field_key, d.level) for d in definitions] == [
        ("retention", "churn_rate", "L3")
    ]
    assert definitions[0].display_name == "Churn Rate"


def test_structure_addition_needing_approval_is_queued(engine):
    addition = {"type": "L3", "field_key": "nps", "parent_path": {"l1": "retention", "l2": "loyalty"}}
    outcome = _apply(engine, {"plan_summary": [], "new_structure_additions": [addition]}, mode="schema")

    assert outcome.pending_count == 1
    assert outcome.results[0]["change_id"] == "NEW-L3-nps"
    alert = engine.store.list_alerts("ssot_structure_pending")[0]
    assert alert.description == 'Create L3 field "nps" under retention → loyalty'
    assert engine.store.list_field_definitions() == []


def test_context_fact_change(engine):
    ok, error = engine.change_plans.apply_change(
        "acme",
        {
            "change_id": "CHG-9",
            "target_level": "L1C",
            "target_path": {"l1": "company", "l2": "hq_city"},
            "action": "update",
            "value_to_write": "Berlin",
        },
        "pc-1",
    )
    assert ok and error is None
    fact = engine.store.get_context_fact("acme", "hq_city")
    assert fact.fact_value == "Berlin"
    assert fact.display_name == "Hq City"
