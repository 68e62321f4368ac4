import json
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient

from nodecascade.app import app
from nodecascade.service.runtime import reset_runtime_for_tests
from nodecascade.storage.models import Tenant, WorkflowRecord

REPLY = "Acme sells widgets worldwide"


@pytest.fixture
def api():
    requests = []

    def handler(request):
        requests.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"content": REPLY}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 6},
            },
        )

    runtime = reset_runtime_for_tests(transport=httpx.MockTransport(handler))
    runtime.completion.api_key = "test-key"
    runtime.store.upsert_tenant(Tenant(id="acme", name="Acme Corp"))
    runtime.store.save_workflow(
        WorkflowRecord(
            id="wf",
            name="Profile",
            nodes=[
                {"id": "ingest", "type": "ingest", "label": "Company Ingest"},
                {
                    "id": "summary",
                    "type": "promptTemplate",
                    "label": "Summary",
                    "config": {
                        "promptParts": [
                            {"type": "text", "value": "Summarise the company"},
                            {"type": "dependency", "value": "ingest"},
                        ]
                    },
                },
            ],
        )
    )
    return SimpleNamespace(client=TestClient(app), runtime=runtime, requests=requests)


def _submit(client, raw_data=None):
    response = client.post(
        "/v1/tenants/acme/submissions", json={"raw_data": raw_data or {"name": "Acme"}}
    )
    assert response.status_code == 200
    return response.json()["data"]["id"]


def test_submission_run_and_read_back(api):
    client = api.client
    submission_id = _submit(client)

    response = client.post(
        "/v1/cascades/run", json={"companyId": "acme", "submissionId": submission_id}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    report = body["data"]
    assert report["workflows_processed"] == 1
    assert report["workflows"][0]["executed"] == ["ingest", "summary"]
    assert api.requests[0]["model"] == "openai/gpt-5-mini"

    output = client.get("/v1/tenants/acme/workflows/wf/nodes/summary/output").json()["data"]
    assert output["output"] == REPLY
    assert output["version"] == 1
    assert output["evaluation"]["overallScore"] == 50

    latest = client.get("/v1/tenants/acme/runs/latest").json()["data"]
    assert latest["submission_id"] == submission_id

    history = client.get(
        "/v1/tenants/acme/nodes/summary/evaluations", params={"workflow_id": "wf"}
    ).json()["data"]
    assert len(history["history"]) == 1
    assert history["summary"]["sample_count"] == 1

    alerts = client.get("/v1/alerts", params={"alert_type": "execution_summary"}).json()["data"]
    assert [a["title"] for a in alerts] == ["Execution Summary: Acme Corp"]

    usage = api.runtime.store.list_usage("acme")
    assert [u.total_tokens for u in usage] == [18]


def test_second_identical_run_is_cached(api):
    client = api.client
    first = _submit(client, {"name": "Acme"})
    client.post("/v1/cascades/run", json={"companyId": "acme", "submissionId": first})
    second = _submit(client, {"name": "Acme"})

    report = client.post(
        "/v1/cascades/run", json={"companyId": "acme", "submissionId": second}
    ).json()["data"]

    assert report["workflows"][0]["status"] == "cached"
    assert len(api.requests) == 1


def test_reset_outputs(api):
    client = api.client
    submission_id = _submit(client)
    client.post("/v1/cascades/run", json={"companyId": "acme", "submissionId": submission_id})

    response = client.delete("/v1/tenants/acme/outputs", params={"workflow_id": "wf"})
    assert response.json()["data"] == {"tenant_id": "acme", "workflow_id": "wf", "deleted": 2}

    missing = client.get("/v1/tenants/acme/workflows/wf/nodes/summary/output")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "not_found"


def test_unknown_submission_is_not_found(api):
    response = api.client.post(
        "/v1/cascades/run", json={"companyId": "acme", "submissionId": "missing"}
    )
    assert response.status_code == 404
    body = response.json()
    assert body["status"] == "error"
    assert body["error"] == {
        "code": "not_found",
        "message": "Submission not found",
        "details": {"submission_id": "missing"},
    }


def test_request_validation_uses_envelope(api):
    response = api.client.post("/v1/cascades/run", json={"companyId": "acme"})
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "validation_error"
    assert any("submissionId" in entry["loc"] for entry in error["details"])


def test_bulk_run_requires_flag(api):
    refused = api.client.post("/v1/cascades/run-all", json={"allCompanies": False})
    assert refused.status_code == 400
    assert refused.json()["error"]["message"] == "all_tenants must be true for a bulk run"

    accepted = api.client.post("/v1/cascades/run-all", json={"allCompanies": True})
    data = accepted.json()["data"]
    assert data["all_tenants"] is True
    assert data["results"] == [
        {
            "tenant_id": "acme",
            "tenant_name": "Acme Corp",
            "status": "skipped",
            "reason": "no_data_submission",
        }
    ]


def test_latest_run_missing(api):
    response = api.client.get("/v1/tenants/ghost/runs/latest")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"
