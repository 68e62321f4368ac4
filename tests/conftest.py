import asyncio
import inspect
import os
import shutil
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="nodecascade_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from nodecascade.config import RunConfig  # noqa: E402
from nodecascade.service.alerts import AlertService  # noqa: E402
from nodecascade.service.cascade import CascadeService  # noqa: E402
from nodecascade.service.change_plan import ChangePlanService  # noqa: E402
from nodecascade.service.completion import CompletionResult  # noqa: E402
from nodecascade.service.errors import MissingCredentialsError  # noqa: E402
from nodecascade.service.evaluator import Evaluator  # noqa: E402
from nodecascade.service.runtime import reset_runtime_for_tests  # noqa: E402
from nodecascade.service.sync import PlatformSyncClient, SyncFanout  # noqa: E402
from nodecascade.storage.memory import MemoryStore  # noqa: E402
from nodecascade.storage.models import Submission, Tenant, WorkflowRecord  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    # each test starts from an empty memory-store snapshot
    shutil.rmtree(Path(os.environ["SHARED_FS_ROOT"]) / "state", ignore_errors=True)
    reset_runtime_for_tests()
    yield
    shutil.rmtree(Path(os.environ["SHARED_FS_ROOT"]) / "state", ignore_errors=True)
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeCompletion:
    """Stands in for ``CompletionClient``; replies are produced by ``responder``."""

    def __init__(self, responder=None, *, configured=True):
        self.responder = responder or (lambda model, prompt: f"answer to: {prompt}")
        self.configured = configured
        self.calls = []

    async def complete(self, *, model, messages, max_tokens, temperature=None, web_search=False, token_field="max_completion_tokens"):
        if not self.configured:
            raise MissingCredentialsError("COMPLETION_API_KEY")
        prompt = messages[-1]["content"]
        self.calls.append(
            {"model": model, "messages": messages, "max_tokens": max_tokens, "temperature": temperature}
        )
        reply = self.responder(model, prompt)
        if isinstance(reply, CompletionResult):
            return reply
        if isinstance(reply, Exception):
            raise reply
        return CompletionResult(text=reply)

    async def close(self):
        return None


class FakeWeb:
    def __init__(self, reply="page text"):
        self.reply = reply
        self.calls = []

    async def execute(self, capability, raw_input, options=None):
        self.calls.append((capability, raw_input))
        return self.reply

    async def close(self):
        return None


def prompt_node(node_id, *parts, label=None, **config):
    return {
        "id": node_id,
        "type": "promptTemplate",
        "label": label or node_id,
        "config": {"promptParts": list(parts), **config},
    }


def text(value):
    return {"type": "text", "value": value}


def dep(node_id, workflow_id=None, triggers=None):
    part = {"type": "dependency", "value": node_id}
    if workflow_id:
        part["workflowId"] = workflow_id
    if triggers is not None:
        part["triggersExecution"] = triggers
    return part


def ingest_node(node_id="ingest", **config):
    return {"id": node_id, "type": "ingest", "label": "Company Ingest", "config": config}


@pytest.fixture
def engine(tmp_path):
    """A cascade wired to a real MemoryStore and fake outbound clients."""
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    store.upsert_tenant(Tenant(id="acme", name="Acme Corp"))
    completion = FakeCompletion()
    web = FakeWeb()
    alerts = AlertService(store)
    evaluator = Evaluator(store, completion, alerts)
    change_plans = ChangePlanService(store, alerts)
    platform = PlatformSyncClient(platform_url=None, vc_platform_url=None, api_key=None)
    sync = SyncFanout(store, platform, change_plans)
    cascade = CascadeService(
        store,
        completion=completion,
        web=web,
        evaluator=evaluator,
        alerts=alerts,
        change_plans=change_plans,
        sync=sync,
    )
    # evaluation off unless a test opts in
    store.set_app_settings({"self_improvement_settings": {"enabled": False}})

    def add_workflow(workflow_id, nodes, *, name=None, settings=None, variables=None):
        store.save_workflow(
            WorkflowRecord(
                id=workflow_id,
                name=name or workflow_id,
                nodes=nodes,
                settings=settings or {},
                variables=variables or [],
            )
        )

    def submit(raw_data, **kwargs):
        return store.create_submission(Submission.new("acme", raw_data, **kwargs))

    async def run(raw_data=None, *, submission=None, **kwargs):
        submission = submission or submit(raw_data if raw_data is not None else {"x": 1})
        return await cascade.run_submission("acme", submission.id, **kwargs)

    def output(workflow_id, node_id):
        record = store.get_node_output("acme", workflow_id, node_id)
        return record.output if record else None

    return SimpleNamespace(
        store=store,
        completion=completion,
        web=web,
        alerts=alerts,
        evaluator=evaluator,
        change_plans=change_plans,
        sync=sync,
        cascade=cascade,
        add_workflow=add_workflow,
        submit=submit,
        run=run,
        output=output,
        run_config=RunConfig(),
    )


@pytest.fixture
def nodes():
    return SimpleNamespace(prompt=prompt_node, text=text, dep=dep, ingest=ingest_node)
